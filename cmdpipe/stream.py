"""Stream capabilities used by the pipeline engine.

A pipeline stage only needs a small subset of the file-object protocol:

- a *readable* exposes ``read(size) -> bytes`` and returns ``b""`` once
  exhausted;
- a *writable* exposes ``write(data)``;
- a *closable* exposes ``close()``, which signals "no more input" to
  whatever consumes the stream's output.

Two optional methods allow faster transfers, mirroring each other:
``write_to(dst)`` on a source and ``read_from(src)`` on a destination.
:func:`copy_stream` prefers them over the generic chunked loop.
"""

from __future__ import annotations

import io
from typing import Protocol, runtime_checkable

from cmdpipe.errors import ReadOnlyError, ShortWriteError

CHUNK_SIZE = 32 * 1024  # 32 KB per read/write call


# ---------------------------------------------------------------------------
# Capabilities
# ---------------------------------------------------------------------------


@runtime_checkable
class Readable(Protocol):
    def read(self, size: int = -1) -> bytes: ...


@runtime_checkable
class Writable(Protocol):
    def write(self, data: bytes) -> int | None: ...


@runtime_checkable
class Closable(Protocol):
    def close(self) -> None: ...


@runtime_checkable
class Stream(Readable, Writable, Closable, Protocol):
    """A bidirectional pipeline stage: read output, write input, close input."""


def is_writable(obj: object) -> bool:
    return isinstance(obj, Writable)


def describe(stream: object) -> str:
    """Return a human-readable descriptor for *stream*.

    Uses ``str(stream)`` when the stream's type defines its own ``__str__``;
    otherwise falls back to the type name in angle brackets, e.g.
    ``<BytesIO>``.
    """
    if type(stream).__str__ is not object.__str__:
        return str(stream)
    return f"<{type(stream).__name__}>"


# ---------------------------------------------------------------------------
# Transfer
# ---------------------------------------------------------------------------


def copy_stream(dst: Writable, src: Readable, chunk_size: int = CHUNK_SIZE) -> int:
    """Copy *src* into *dst* until *src* is exhausted.

    Returns the number of bytes written to *dst*.

    Raises:
        ReadOnlyError: *dst* does not accept input.
        ShortWriteError: *dst* stopped accepting bytes mid-chunk.
        Exception: Whatever *src* or *dst* raise, unmodified.
    """
    write_to = getattr(src, "write_to", None)
    if callable(write_to):
        return write_to(dst)

    read_from = getattr(dst, "read_from", None)
    if callable(read_from):
        return read_from(src)

    if not is_writable(dst):
        raise ReadOnlyError(f"{describe(dst)} is not writable")

    written = 0
    while True:
        chunk = src.read(chunk_size)
        if not chunk:
            break
        written += _write_all(dst, chunk)
    return written


def _write_all(dst: Writable, chunk: bytes) -> int:
    """Write *chunk* to *dst*, retrying partial writes of raw file objects."""
    offset = 0
    while offset < len(chunk):
        n = dst.write(chunk[offset:] if offset else chunk)
        if n is None:
            # Buffered file objects and most custom writers return None.
            n = len(chunk) - offset
        if n <= 0:
            raise ShortWriteError(offset, len(chunk))
        offset += n
    return offset


def close_writer(dst: object, is_destination: bool = False) -> None:
    """Signal end of input to *dst*.

    A pipeline's final destination, when it is a standard file object
    (``io.IOBase``: in-memory buffers, files, ``sys.stdout.buffer``),
    belongs to the caller and is only flushed.  Every other output with a
    ``close()`` method is closed, file objects included, so the stage
    reading from it sees EOF.
    """
    if is_destination and isinstance(dst, io.IOBase):
        if not dst.closed:
            dst.flush()
        return
    if isinstance(dst, Closable):
        dst.close()
