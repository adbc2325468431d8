"""Tests for cmdpipe/local.py — real local processes (POSIX only)."""

from __future__ import annotations

import io
import os
import shutil
import sys
from pathlib import Path

import pytest

from cmdpipe.errors import CopyError
from cmdpipe.filter import new_filter
from cmdpipe.local import LocalMachine
from cmdpipe.machine import CommandError, not_found, pipe, read
from cmdpipe.pipeline import copy

pytestmark = pytest.mark.skipif(
    sys.platform == "win32" or shutil.which("sh") is None,
    reason="requires a POSIX shell",
)


@pytest.fixture()
def machine() -> LocalMachine:
    return LocalMachine()


class TestLocalCommands:
    def test_read_output(self, machine: LocalMachine) -> None:
        assert read(machine, "echo", "hello") == "hello"

    def test_pipeline(self, machine: LocalMachine) -> None:
        assert pipe(machine, io.BytesIO(b"b\nc\na\n"), ["sort"], ["tr", "a-z", "A-Z"]) == "A\nB\nC"

    def test_large_payload_through_several_processes(self, machine: LocalMachine) -> None:
        payload = b"0123456789abcdef\n" * 50_000
        out = io.BytesIO()
        n = copy(out, io.BytesIO(payload), new_filter(machine, "cat"), new_filter(machine, "cat"))
        assert n == len(payload)
        assert out.getvalue() == payload

    def test_descriptor_is_command_line(self, machine: LocalMachine) -> None:
        assert str(new_filter(machine, "grep", "-v", "a b")) == "grep -v 'a b'"

    def test_workdir(self, tmp_path: Path) -> None:
        out = read(LocalMachine(workdir=tmp_path), "pwd")
        assert os.path.realpath(out) == os.path.realpath(tmp_path)

    def test_env(self) -> None:
        m = LocalMachine(env={"CMDPIPE_TEST": "value", "PATH": os.environ.get("PATH", "")})
        assert read(m, "sh", "-c", "echo $CMDPIPE_TEST") == "value"


class TestLocalFailures:
    def test_nonzero_exit(self, machine: LocalMachine) -> None:
        with pytest.raises(CopyError) as excinfo:
            read(machine, "sh", "-c", "echo oops >&2; exit 3")
        errors = excinfo.value.errors
        assert len(errors) == 1
        assert isinstance(errors[0], CommandError)
        assert errors[0].code == 3
        assert "oops" in errors[0].stderr

    def test_command_not_found(self, machine: LocalMachine) -> None:
        with pytest.raises(CopyError) as excinfo:
            read(machine, "cmdpipe-no-such-command")
        assert not_found(excinfo.value)

    def test_failing_middle_stage_reported(self, machine: LocalMachine) -> None:
        with pytest.raises(CopyError) as excinfo:
            pipe(machine, io.BytesIO(b"x\n"), ["cat"], ["sh", "-c", "cat >/dev/null; exit 4"], ["cat"])
        descriptors = [o.descriptor for o in excinfo.value.outcomes]
        assert descriptors == ["<BytesIO>", "cat", "sh -c 'cat >/dev/null; exit 4'", "cat"]
        assert [o.ok for o in excinfo.value.outcomes] == [True, True, False, True]
