"""cmdpipe — run commands on local, remote and container machines and join
them into shell-style pipelines.

    >>> m = LocalMachine()
    >>> read_all(io.BytesIO(b"b\\na\\n"), new_filter(m, "sort"))
    'a\\nb'
"""

from __future__ import annotations

from cmdpipe.errors import CopyError, JoinedError, ReadOnlyError, StageOutcome, is_caused_by
from cmdpipe.filter import Filter, new_filter
from cmdpipe.local import LocalMachine
from cmdpipe.machine import CommandError, Machine, SubMachine, do, fail, not_found, pipe, read, run
from cmdpipe.pipeline import copy, read_all
from cmdpipe.stream import Closable, Readable, Stream, Writable

__all__ = [
    "Closable",
    "CommandError",
    "CopyError",
    "Filter",
    "JoinedError",
    "LocalMachine",
    "Machine",
    "ReadOnlyError",
    "Readable",
    "StageOutcome",
    "Stream",
    "SubMachine",
    "Writable",
    "copy",
    "do",
    "fail",
    "is_caused_by",
    "new_filter",
    "not_found",
    "pipe",
    "read",
    "read_all",
    "run",
]
