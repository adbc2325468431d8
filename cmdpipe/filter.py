"""Adapter turning a backend command handle into a pipeline stage."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from cmdpipe.errors import ReadOnlyError
from cmdpipe.stream import Readable, copy_stream, describe, is_writable

if TYPE_CHECKING:
    from cmdpipe.machine import Buffer, Machine

logger = logging.getLogger(__name__)


class Filter:
    """Bidirectional view of a command: read its output, write its input.

    ``write`` raises :exc:`ReadOnlyError` if the command takes no input, and
    ``close`` is then a no-op.  When used as a copy destination,
    :meth:`read_from` closes the command's input as soon as the source is
    exhausted so the command sees EOF.
    """

    def __init__(self, buffer: Buffer) -> None:
        self._buffer = buffer

    @property
    def buffer(self) -> Buffer:
        return self._buffer

    @property
    def writable(self) -> bool:
        return is_writable(self._buffer)

    def read(self, size: int = -1) -> bytes:
        return self._buffer.read(size)

    def write(self, data: bytes) -> int | None:
        if not self.writable:
            raise ReadOnlyError(f"{self} is read-only")
        return self._buffer.write(data)  # type: ignore[attr-defined]

    def close(self) -> None:
        if self.writable:
            self._buffer.close()  # type: ignore[attr-defined]

    def read_from(self, src: Readable) -> int:
        """Copy *src* into the command's input, then close the input.

        The copy error wins if both the copy and the close fail; a close
        error alone is raised after a successful copy.
        """
        if not self.writable:
            raise ReadOnlyError(f"{self} is read-only")

        try:
            written = copy_stream(self._buffer, src)  # type: ignore[arg-type]
        except Exception:
            try:
                self._buffer.close()  # type: ignore[attr-defined]
            except Exception as close_exc:
                logger.debug("Close after failed copy into %s also failed: %s", self, close_exc)
            raise
        self._buffer.close()  # type: ignore[attr-defined]
        return written

    def __str__(self) -> str:
        return describe(self._buffer)

    def __repr__(self) -> str:
        return f"Filter({self._buffer!r})"


def new_filter(machine: Machine, *args: str) -> Filter:
    """Run ``args`` on *machine* and wrap the command as a pipeline stage.

    Example::

        out = read_all(src, new_filter(m, "sort"), new_filter(m, "uniq", "-c"))
    """
    return Filter(machine.command(*args))
