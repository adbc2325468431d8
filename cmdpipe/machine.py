"""The contract every command backend implements, plus helpers built on it.

A :class:`Machine` runs commands.  ``machine.command(*args)`` starts one and
returns a :class:`Buffer`: a handle whose ``read`` yields the command's
output and raises when the command fails.  Handles that also accept input
implement :class:`WriteBuffer`; closing one closes the command's stdin.

Backends:

- :class:`cmdpipe.local.LocalMachine` — local processes
- :class:`cmdpipe.remote.SSHMachine` — commands over SSH
- :class:`cmdpipe.ctr.ContainerMachine` — commands inside a container
- :class:`cmdpipe.mock.MockMachine` — in-memory double for tests
"""

from __future__ import annotations

import logging
import sys
from typing import Protocol, Sequence, runtime_checkable

from cmdpipe.errors import iter_causes
from cmdpipe.filter import Filter
from cmdpipe.pipeline import copy, read_all
from cmdpipe.utils.quoting import join_args

logger = logging.getLogger(__name__)
trace_logger = logging.getLogger("cmdpipe.trace")

NOT_FOUND_EXIT_CODE = 127


# ---------------------------------------------------------------------------
# Protocols
# ---------------------------------------------------------------------------


@runtime_checkable
class Buffer(Protocol):
    """Output side of a running command."""

    def read(self, size: int = -1) -> bytes: ...


@runtime_checkable
class WriteBuffer(Buffer, Protocol):
    """A command that also accepts input."""

    def write(self, data: bytes) -> int | None: ...

    def close(self) -> None: ...


@runtime_checkable
class Machine(Protocol):
    def command(self, *args: str) -> Buffer: ...


@runtime_checkable
class ShutdownMachine(Machine, Protocol):
    """A machine holding resources that must be released."""

    def shutdown(self, timeout: float = 30.0) -> None: ...


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class CommandError(Exception):
    """A command could not start or exited unsuccessfully.

    Attributes:
        argv: The command line.
        code: Exit status, or ``127`` when the executable was not found.
        stderr: Captured standard error, if any.
    """

    def __init__(
        self,
        argv: Sequence[str],
        code: int | None = None,
        stderr: str = "",
        message: str = "",
    ) -> None:
        self.argv = list(argv)
        self.code = code
        self.stderr = stderr
        if not message:
            message = f"command failed: {join_args(self.argv)}"
            if code is not None:
                message += f" (exit status {code})"
        detail = stderr.strip()
        if detail:
            message += f"\n{detail}"
        super().__init__(message)


def not_found(err: BaseException | None) -> bool:
    """Return True if *err* means the command's executable does not exist."""
    if err is None:
        return False
    for cause in iter_causes(err):
        if isinstance(cause, FileNotFoundError):
            return True
        if isinstance(cause, CommandError) and cause.code == NOT_FOUND_EXIT_CODE:
            return True
    return False


def trace(argv: Sequence[str]) -> None:
    """Log a command about to start, shell-trace style."""
    trace_logger.debug("+ %s", join_args(argv))


# ---------------------------------------------------------------------------
# Buffers and machines
# ---------------------------------------------------------------------------


class FailedBuffer:
    """A command that failed before producing output; every read raises."""

    def __init__(self, error: BaseException) -> None:
        self.error = error

    def read(self, size: int = -1) -> bytes:
        raise self.error


def fail(error: BaseException) -> FailedBuffer:
    """Return a :class:`Buffer` that fails with *error*."""
    return FailedBuffer(error)


class SubMachine:
    """Run every command on *host* with a fixed argument prefix.

        >>> git = SubMachine(LocalMachine(), "git", "-C", "/src")
        >>> read(git, "rev-parse", "HEAD")
    """

    def __init__(self, host: Machine, *prefix: str) -> None:
        self.host = host
        self.prefix = tuple(prefix)

    def command(self, *args: str) -> Buffer:
        return self.host.command(*self.prefix, *args)

    def __repr__(self) -> str:
        return f"SubMachine({self.host!r}, {join_args(self.prefix)})"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class _Discard:
    """Destination that accepts and drops everything."""

    def write(self, data: bytes) -> int:
        return len(data)


def _start(machine: Machine, args: Sequence[str]) -> Buffer:
    buf = machine.command(*args)
    if isinstance(buf, WriteBuffer):
        # No input: close stdin so commands that read it see EOF.
        buf.close()
    return buf


def read(machine: Machine, *args: str) -> str:
    """Run a command with empty input and return its output as text.

    Trailing newlines are stripped.  Raises :class:`cmdpipe.errors.CopyError`
    if the command fails.
    """
    return read_all(_start(machine, args))


def do(machine: Machine, *args: str) -> None:
    """Run a command with empty input, discarding its output."""
    copy(_Discard(), _start(machine, args))


def run(machine: Machine, *args: str, stdout: object | None = None) -> int:
    """Run a command with empty input, streaming its output to *stdout*.

    *stdout* defaults to the process's binary standard output.  Returns the
    number of bytes written.
    """
    dst = stdout if stdout is not None else sys.stdout.buffer
    return copy(dst, _start(machine, args))


def pipe(machine: Machine, src: object, *commands: Sequence[str]) -> str:
    """Feed *src* through one command per entry in *commands*.

        >>> pipe(m, io.BytesIO(b"b\\na\\n"), ["sort"], ["head", "-1"])
        'a'
    """
    return read_all(src, *(Filter(machine.command(*argv)) for argv in commands))
