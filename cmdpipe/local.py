"""Local process backend."""

from __future__ import annotations

import logging
import os
import subprocess
import threading
from pathlib import Path
from typing import Mapping, Sequence

from cmdpipe.machine import NOT_FOUND_EXIT_CODE, Buffer, CommandError, fail, trace
from cmdpipe.stream import CHUNK_SIZE
from cmdpipe.utils.quoting import join_args

logger = logging.getLogger(__name__)


class LocalCommand:
    """A running local process.

    Reads drain stdout; at EOF the process is reaped and a non-zero exit
    raises :class:`CommandError` carrying the captured stderr.  Writes go to
    stdin and are flushed immediately so downstream commands see data as it
    arrives.
    """

    def __init__(
        self,
        argv: Sequence[str],
        cwd: str | os.PathLike[str] | None = None,
        env: Mapping[str, str] | None = None,
    ) -> None:
        self.argv = list(argv)
        trace(self.argv)
        self._proc = subprocess.Popen(
            self.argv,
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            cwd=cwd,
            env=dict(env) if env is not None else None,
        )
        self._stderr = bytearray()
        self._stderr_thread = threading.Thread(
            target=self._drain_stderr,
            name=f"stderr-{self._proc.pid}",
            daemon=True,
        )
        self._stderr_thread.start()
        self._error: CommandError | None = None
        self._finished = False
        self._lock = threading.Lock()

    @property
    def pid(self) -> int:
        return self._proc.pid

    def _drain_stderr(self) -> None:
        assert self._proc.stderr is not None
        try:
            for line in self._proc.stderr:
                self._stderr.extend(line)
        finally:
            self._proc.stderr.close()

    def _finish(self) -> None:
        """Reap the process once stdout is exhausted."""
        with self._lock:
            if self._finished:
                return
            self._finished = True
            code = self._proc.wait()
            self._stderr_thread.join()
            if code != 0:
                self._error = CommandError(
                    self.argv,
                    code=code,
                    stderr=self._stderr.decode("utf-8", errors="replace"),
                )
            logger.debug("Process %d exited with status %d", self._proc.pid, code)

    def read(self, size: int = -1) -> bytes:
        assert self._proc.stdout is not None
        chunk = self._proc.stdout.read1(size if size > 0 else CHUNK_SIZE)
        if chunk:
            return chunk
        self._finish()
        if self._error is not None:
            raise self._error
        return b""

    def write(self, data: bytes) -> int:
        assert self._proc.stdin is not None
        self._proc.stdin.write(data)
        self._proc.stdin.flush()
        return len(data)

    def close(self) -> None:
        assert self._proc.stdin is not None
        if not self._proc.stdin.closed:
            self._proc.stdin.close()

    def __str__(self) -> str:
        return join_args(self.argv)


class LocalMachine:
    """Runs commands as local processes.

    Args:
        workdir: Working directory for every command (default: current).
        env: Environment for every command (default: inherited).
    """

    def __init__(
        self,
        workdir: str | os.PathLike[str] | None = None,
        env: Mapping[str, str] | None = None,
    ) -> None:
        self.workdir = Path(workdir).expanduser().resolve() if workdir else None
        self.env = dict(env) if env is not None else None

    def command(self, *args: str) -> Buffer:
        if not args:
            return fail(CommandError(args, message="no command given"))
        try:
            return LocalCommand(args, cwd=self.workdir, env=self.env)
        except FileNotFoundError as exc:
            error = CommandError(args, code=NOT_FOUND_EXIT_CODE, message=f"command not found: {args[0]}")
            error.__cause__ = exc
            return fail(error)
        except OSError as exc:
            error = CommandError(args, message=f"failed to start {args[0]}: {exc}")
            error.__cause__ = exc
            return fail(error)

    def __repr__(self) -> str:
        return f"LocalMachine(workdir={self.workdir!s})"
