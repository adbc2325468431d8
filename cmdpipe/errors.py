"""Exception types for cmdpipe.

:class:`CopyError` is the aggregate raised by :func:`cmdpipe.pipeline.copy`
when one or more pipeline stages fail.  It keeps every stage's outcome in
pipeline order so the rendered report always shows the whole pipeline, and
it can be searched for a specific original cause with
:meth:`CopyError.is_caused_by`.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Iterator, Union

SUCCESS_MARKER = "<success>"

ErrorTarget = Union[BaseException, type]


# ---------------------------------------------------------------------------
# Stream errors
# ---------------------------------------------------------------------------


class ReadOnlyError(Exception):
    """Raised when writing to a stream that does not accept input."""

    def __init__(self, message: str = "command is read-only") -> None:
        super().__init__(message)


class ShortWriteError(Exception):
    """Raised when a destination accepts fewer bytes than it was given."""

    def __init__(self, written: int, expected: int) -> None:
        super().__init__(f"short write: {written} of {expected} bytes")
        self.written = written
        self.expected = expected


# ---------------------------------------------------------------------------
# Joined errors
# ---------------------------------------------------------------------------


class JoinedError(Exception):
    """Several errors reported as one (e.g. a copy error plus a close error)."""

    def __init__(self, *errors: BaseException) -> None:
        self.errors: tuple[BaseException, ...] = errors
        super().__init__("\n".join(str(e) for e in errors))


def join_errors(*errors: BaseException | None) -> BaseException | None:
    """Combine *errors*, dropping ``None`` entries.

    Returns ``None`` if nothing is left, the error itself if only one is
    left, and a :class:`JoinedError` otherwise.
    """
    present = [e for e in errors if e is not None]
    if not present:
        return None
    if len(present) == 1:
        return present[0]
    return JoinedError(*present)


def iter_causes(err: BaseException) -> Iterator[BaseException]:
    """Yield *err* and every error reachable from it.

    Follows joined/aggregate members (``errors``, or ``exceptions`` on an
    ``ExceptionGroup``) and explicit ``__cause__`` links, depth first.
    """
    seen: set[int] = set()
    stack = [err]
    while stack:
        current = stack.pop()
        if id(current) in seen:
            continue
        seen.add(id(current))
        yield current
        children: list[BaseException] = []
        for attr in ("errors", "exceptions"):
            members = getattr(current, attr, None)
            if isinstance(members, (list, tuple)):
                children.extend(m for m in members if isinstance(m, BaseException))
        if current.__cause__ is not None:
            children.append(current.__cause__)
        stack.extend(reversed(children))


def is_caused_by(err: BaseException, target: ErrorTarget) -> bool:
    """Return True if *target* is *err* or one of its causes.

    *target* may be an exception instance (matched by identity) or an
    exception class (matched with ``isinstance``).
    """
    for cause in iter_causes(err):
        if isinstance(target, type):
            if isinstance(cause, target):
                return True
        elif cause is target:
            return True
    return False


# ---------------------------------------------------------------------------
# Pipeline aggregate
# ---------------------------------------------------------------------------


@dataclass
class StageOutcome:
    """Result of one pipeline stage."""

    descriptor: str = ""
    error: BaseException | None = None
    written: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None


class CopyError(Exception):
    """Aggregate of every stage outcome in a failed pipeline.

    Stages record their outcome concurrently, each at its own index, so
    access to the outcome list is serialised with a lock.  Reads are only
    meaningful once the engine has joined every stage.
    """

    def __init__(self, stages: int) -> None:
        super().__init__()
        self._lock = threading.Lock()
        self._outcomes: list[StageOutcome] = [StageOutcome() for _ in range(stages)]
        self.written = 0

    def set(self, index: int, outcome: StageOutcome) -> None:
        """Record *outcome* for the stage at *index*."""
        with self._lock:
            self._outcomes[index] = outcome

    @property
    def outcomes(self) -> list[StageOutcome]:
        """Copy of all stage outcomes, source to destination."""
        with self._lock:
            return list(self._outcomes)

    @property
    def errors(self) -> list[BaseException]:
        """The stage errors that are set, in pipeline order."""
        with self._lock:
            return [o.error for o in self._outcomes if o.error is not None]

    @property
    def failed(self) -> bool:
        with self._lock:
            return any(o.error is not None for o in self._outcomes)

    def is_caused_by(self, target: ErrorTarget) -> bool:
        """Return True if any stage failed because of *target*."""
        return is_caused_by(self, target)

    def __str__(self) -> str:
        with self._lock:
            parts = []
            for outcome in self._outcomes:
                if outcome.error is not None:
                    message = str(outcome.error).replace("\n", "\n\t")
                else:
                    message = SUCCESS_MARKER
                parts.append(f"{outcome.descriptor}\n\t{message}")
        return "\n\n".join(parts)

    def __repr__(self) -> str:
        return f"CopyError(stages={len(self._outcomes)}, errors={len(self.errors)})"
