"""Shared stream doubles for pipeline tests."""

from __future__ import annotations

import threading

import pytest

_READ_TIMEOUT = 5.0  # seconds; a stuck pipeline fails instead of hanging


class PipeStage:
    """In-memory pass-through stage behaving like a pipe.

    Bytes written come back out of ``read``; ``read`` blocks until data
    arrives or ``close`` signals EOF.
    """

    def __init__(self, name: str = "pipe") -> None:
        self.name = name
        self.close_calls = 0
        self._cond = threading.Condition()
        self._data = bytearray()
        self._eof = False

    def write(self, data: bytes) -> int:
        with self._cond:
            if self._eof:
                raise BrokenPipeError(f"write to closed {self.name}")
            self._data.extend(data)
            self._cond.notify_all()
        return len(data)

    def read(self, size: int = -1) -> bytes:
        with self._cond:
            ready = self._cond.wait_for(lambda: self._data or self._eof, timeout=_READ_TIMEOUT)
            if not ready:
                raise TimeoutError(f"{self.name}: no data and no EOF")
            n = len(self._data) if size < 0 else min(size, len(self._data))
            chunk = bytes(self._data[:n])
            del self._data[:n]
            return chunk

    def close(self) -> None:
        with self._cond:
            self.close_calls += 1
            self._eof = True
            self._cond.notify_all()

    def __str__(self) -> str:
        return self.name


class ErrReader:
    """Source whose every read fails with *error*."""

    def __init__(self, error: Exception, name: str = "") -> None:
        self.error = error
        self.name = name

    def read(self, size: int = -1) -> bytes:
        raise self.error

    def __str__(self) -> str:
        return self.name or "err-reader"


class FailingStage:
    """Stage whose reads fail with *error* and whose writes are discarded.

    Defines no ``__str__``, so it is described by its type name.
    """

    def __init__(self, error: Exception) -> None:
        self.error = error

    def read(self, size: int = -1) -> bytes:
        raise self.error

    def write(self, data: bytes) -> int:
        return len(data)


class Discard:
    def write(self, data: bytes) -> int:
        return len(data)


class RecordingWriter:
    """Destination that keeps what it receives and counts closes."""

    def __init__(self, close_error: Exception | None = None, write_error: Exception | None = None) -> None:
        self.data = bytearray()
        self.close_calls = 0
        self.close_error = close_error
        self.write_error = write_error

    def write(self, data: bytes) -> int:
        if self.write_error is not None:
            raise self.write_error
        self.data.extend(data)
        return len(data)

    def close(self) -> None:
        self.close_calls += 1
        if self.close_error is not None:
            raise self.close_error


@pytest.fixture()
def pipe_stage() -> PipeStage:
    return PipeStage()
