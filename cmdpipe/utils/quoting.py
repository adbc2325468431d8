"""Argument quoting and formatting helpers.

Remote and container backends hand a single command line to a POSIX shell,
so every argument is quoted with the same single-quote escaping rules.
"""

from __future__ import annotations

import re
from typing import Iterable

_SAFE_ARG = re.compile(r"^[A-Za-z0-9_@%+=:,./-]+$")


def quote_arg(arg: str) -> str:
    """Quote *arg* for a POSIX shell.

    Arguments made only of safe characters are returned unchanged; anything
    else is wrapped in single quotes with embedded quotes escaped.

        >>> quote_arg("it's")
        "'it'\\\\''s'"
    """
    if arg and _SAFE_ARG.match(arg):
        return arg
    return "'" + arg.replace("'", "'\\''") + "'"


def join_args(args: Iterable[str]) -> str:
    """Render *args* as one shell command line."""
    return " ".join(quote_arg(a) for a in args)


def human_readable_size(size_bytes: int | float) -> str:
    """Convert a byte count to a human-readable string (e.g. "4.2 MB").

    Uses 1024-based units (KiB/MiB/GiB) but labels them KB/MB/GB.
    """
    if size_bytes < 0:
        return "0 B"
    for unit in ("B", "KB", "MB", "GB", "TB"):
        if size_bytes < 1024.0:
            if unit == "B":
                return f"{int(size_bytes)} B"
            return f"{size_bytes:.1f} {unit}"
        size_bytes /= 1024.0
    return f"{size_bytes:.1f} PB"
