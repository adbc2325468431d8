"""In-memory machine for tests.

Every command is recorded.  Output is canned per exact argument list with
:meth:`MockMachine.returns`; unregistered commands succeed with no output
and accept (and keep) any input.

    m = MockMachine()
    m.returns(b"abc123\\n", "docker", "container", "run", "alpine")
    m.returns(CommandError(["podman"], code=127), "podman", "--version")
"""

from __future__ import annotations

import io
import threading
from dataclasses import dataclass, field
from typing import Union

from cmdpipe.machine import Buffer
from cmdpipe.utils.quoting import join_args

Result = Union[bytes, str, BaseException, Buffer]


class MockBuffer:
    """A command with canned output; raises *error* once output is exhausted."""

    def __init__(self, args: list[str], output: bytes = b"", error: BaseException | None = None) -> None:
        self.args = args
        self.error = error
        self._output = io.BytesIO(output)
        self._input = bytearray()
        self.closed = False
        self._lock = threading.Lock()

    @property
    def input(self) -> bytes:
        with self._lock:
            return bytes(self._input)

    def read(self, size: int = -1) -> bytes:
        chunk = self._output.read(size)
        if not chunk and self.error is not None:
            raise self.error
        return chunk

    def write(self, data: bytes) -> int:
        with self._lock:
            if self.closed:
                raise ValueError(f"write to closed input of {join_args(self.args)}")
            self._input.extend(data)
        return len(data)

    def close(self) -> None:
        with self._lock:
            self.closed = True

    def __str__(self) -> str:
        return join_args(self.args)


@dataclass
class Call:
    """One recorded command."""

    args: list[str]
    buffer: Buffer | None = field(default=None, compare=False, repr=False)

    @property
    def input(self) -> bytes:
        """Bytes the command received on stdin."""
        if isinstance(self.buffer, MockBuffer):
            return self.buffer.input
        return b""


class MockMachine:
    """Records commands and replays canned results."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._calls: list[Call] = []
        self._results: dict[tuple[str, ...], Result] = {}

    def returns(self, result: Result, *args: str) -> None:
        """Make the command ``args`` produce *result*.

        *result* is output (``bytes`` or ``str``), an exception the command
        fails with after producing no output, or a ready-made buffer.
        """
        with self._lock:
            self._results[tuple(args)] = result

    def command(self, *args: str) -> Buffer:
        argv = list(args)
        with self._lock:
            result = self._results.get(tuple(args), b"")
        if isinstance(result, str):
            buffer: Buffer = MockBuffer(argv, result.encode("utf-8"))
        elif isinstance(result, bytes):
            buffer = MockBuffer(argv, result)
        elif isinstance(result, BaseException):
            buffer = MockBuffer(argv, error=result)
        else:
            buffer = result
        with self._lock:
            self._calls.append(Call(argv, buffer))
        return buffer

    @property
    def calls(self) -> list[Call]:
        with self._lock:
            return list(self._calls)
