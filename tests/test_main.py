"""Tests for main.py — machine selection and the typer command line."""

from __future__ import annotations

import json
import sys
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
import typer
from typer.testing import CliRunner

from cmdpipe.config import ConfigManager, Profile
from cmdpipe.ctr import ContainerError, ContainerMachine
from cmdpipe.local import LocalMachine
from cmdpipe.remote import SSHMachine, UnknownHostError
from main import _build_machine, _shutdown, app

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="needs POSIX commands")


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("CMDPIPE_HOME", "CMDPIPE_PROFILE", "CMDPIPE_IMAGE"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def config(tmp_path: Path) -> ConfigManager:
    return ConfigManager(base_dir=tmp_path)


@pytest.fixture()
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture()
def cli(runner: CliRunner, tmp_path: Path):
    """Invoke the app against a config directory under tmp_path."""

    def invoke(*args: str, **kwargs):
        return runner.invoke(app, ["--config-dir", str(tmp_path), *args], **kwargs)

    return invoke


# ---------------------------------------------------------------------------
# Machine selection and shutdown
# ---------------------------------------------------------------------------


class TestBuildMachine:
    def test_local_by_default(self, config: ConfigManager) -> None:
        assert isinstance(_build_machine(config), LocalMachine)

    def test_ssh_profile(self, config: ConfigManager) -> None:
        config.add_profile(Profile("build", "10.0.0.5", username="ci"))
        config.set("ssh_timeout", 4)
        machine = _build_machine(config, profile_name="build")
        assert isinstance(machine, SSHMachine)
        assert (machine.host, machine.username, machine.timeout) == ("10.0.0.5", "ci", 4)

    def test_unknown_profile(self, config: ConfigManager) -> None:
        with pytest.raises(typer.BadParameter, match="no such profile: ghost"):
            _build_machine(config, profile_name="ghost")

    def test_container_on_ssh_host(self, config: ConfigManager) -> None:
        config.add_profile(Profile("build", "10.0.0.5"))
        machine = _build_machine(config, profile_name="build", image="alpine")
        assert isinstance(machine, ContainerMachine)
        assert isinstance(machine.host, SSHMachine)

    def test_configured_container_cli(self, config: ConfigManager) -> None:
        config.set("container_cli", "lima nerdctl")
        machine = _build_machine(config, image="alpine")
        assert machine.ctl.candidates == (("lima", "nerdctl"),)  # type: ignore[attr-defined]


class TestShutdown:
    def test_container_and_its_host(self) -> None:
        host = MagicMock(spec=["command", "shutdown"])
        assert _shutdown(ContainerMachine(host, "alpine"), timeout=5) is True
        host.shutdown.assert_called_once_with(timeout=5)

    def test_host_shut_down_when_container_removal_fails(self) -> None:
        host = MagicMock(spec=["command", "shutdown"])
        machine = MagicMock(spec=["command", "shutdown", "host"], host=host)
        machine.shutdown.side_effect = ContainerError("container rm timed out")
        assert _shutdown(machine, timeout=5) is False
        host.shutdown.assert_called_once_with(timeout=5)

    def test_local_machine_needs_nothing(self) -> None:
        assert _shutdown(LocalMachine(), timeout=5) is True


# ---------------------------------------------------------------------------
# cmdpipe run
# ---------------------------------------------------------------------------


class TestRun:
    def test_no_arguments_prints_usage(self, runner: CliRunner) -> None:
        result = runner.invoke(app, [])
        assert "run" in result.output
        assert "profile" in result.output

    @posix_only
    def test_pipes_stdin_through_commands(self, cli) -> None:
        result = cli("run", "sort", "uniq", input="b\na\nb\n")
        assert result.exit_code == 0, result.output
        assert result.output == "a\nb\n"

    @posix_only
    def test_failing_command_exits_1(self, cli) -> None:
        result = cli("run", "cat", "false", input="x\n")
        assert result.exit_code == 1

    def test_unknown_profile(self, cli) -> None:
        result = cli("run", "--profile", "ghost", "cat", input="")
        assert result.exit_code == 2
        assert "no such profile: ghost" in result.output

    def test_unbalanced_quotes(self, cli) -> None:
        result = cli("run", "echo 'oops", input="")
        assert result.exit_code == 2


# ---------------------------------------------------------------------------
# cmdpipe profile
# ---------------------------------------------------------------------------


class TestProfileCommands:
    def test_add_list_remove(self, cli, tmp_path: Path) -> None:
        result = cli("profile", "add", "build", "10.0.0.5", "--port", "2200", "-u", "ci")
        assert result.exit_code == 0, result.output
        assert "Saved profile build" in result.output
        assert ConfigManager(base_dir=tmp_path).profile("build") == Profile("build", "10.0.0.5", 2200, "ci")

        result = cli("profile", "ls")
        assert "build\tci@10.0.0.5:2200\tkey" in result.output

        result = cli("profile", "rm", "build")
        assert result.exit_code == 0
        assert ConfigManager(base_dir=tmp_path).profiles() == []

    def test_add_with_password_uses_keyring(self, cli, tmp_path: Path) -> None:
        with patch("cmdpipe.remote.keyring.set_password") as set_password:
            result = cli("profile", "add", "build", "10.0.0.5", "-u", "ci", "--password", input="s3cret\n")
        assert result.exit_code == 0, result.output
        set_password.assert_called_once_with("cmdpipe", "ci@10.0.0.5", "s3cret")
        saved = json.loads((tmp_path / "profiles.json").read_text(encoding="utf-8"))
        assert saved[0]["auth_type"] == "password"
        assert "s3cret" not in json.dumps(saved)

    def test_remove_password_profile_clears_keyring(self, cli, config: ConfigManager) -> None:
        config.add_profile(Profile("build", "10.0.0.5", username="ci", auth_type="password"))
        with patch("cmdpipe.remote.keyring.delete_password") as delete_password:
            result = cli("profile", "rm", "build")
        assert result.exit_code == 0
        delete_password.assert_called_once_with("cmdpipe", "ci@10.0.0.5")

    def test_remove_missing(self, cli) -> None:
        result = cli("profile", "rm", "ghost")
        assert result.exit_code == 1
        assert "no such profile: ghost" in result.output

    def test_add_invalid_port(self, cli) -> None:
        result = cli("profile", "add", "build", "10.0.0.5", "--port", "ssh")
        assert result.exit_code == 2


class TestProfileTrust:
    @pytest.fixture()
    def ssh_client(self) -> MagicMock:
        with patch("cmdpipe.remote.paramiko.SSHClient") as cls:
            yield cls.return_value

    @pytest.fixture(autouse=True)
    def _saved_profile(self, config: ConfigManager) -> None:
        config.add_profile(Profile("build", "10.0.0.5"))

    def _unknown_host(self, ssh_client: MagicMock) -> MagicMock:
        key = MagicMock()
        ssh_client.connect.side_effect = UnknownHostError(
            "not in known_hosts",
            hostname="10.0.0.5",
            key_type="ssh-ed25519",
            fingerprint="01:ab:ff",
            key=key,
        )
        return key

    def test_saves_unknown_key(self, cli, ssh_client: MagicMock) -> None:
        key = self._unknown_host(ssh_client)
        with patch("main.accept_host_key") as accept:
            result = cli("profile", "trust", "build", "--yes")
        assert result.exit_code == 0, result.output
        assert "01:ab:ff" in result.output
        accept.assert_called_once_with("10.0.0.5", key)

    def test_declined(self, cli, ssh_client: MagicMock) -> None:
        self._unknown_host(ssh_client)
        with patch("main.accept_host_key") as accept:
            result = cli("profile", "trust", "build", input="n\n")
        assert result.exit_code == 1
        accept.assert_not_called()

    def test_already_trusted(self, cli, ssh_client: MagicMock) -> None:
        with patch("main.accept_host_key") as accept:
            result = cli("profile", "trust", "build")
        assert result.exit_code == 0
        assert "10.0.0.5 is already trusted" in result.output
        accept.assert_not_called()
        ssh_client.close.assert_called_once()

    def test_unreachable(self, cli, ssh_client: MagicMock) -> None:
        ssh_client.connect.side_effect = OSError("connection refused")
        result = cli("profile", "trust", "build")
        assert result.exit_code == 1
        assert "cannot connect to 10.0.0.5" in result.output


# ---------------------------------------------------------------------------
# cmdpipe config
# ---------------------------------------------------------------------------


class TestConfigCommands:
    def test_set_parses_json(self, cli, tmp_path: Path) -> None:
        result = cli("config", "set", "ssh_timeout", "4")
        assert result.exit_code == 0, result.output
        assert ConfigManager(base_dir=tmp_path).get("ssh_timeout") == 4

    def test_set_plain_string(self, cli, tmp_path: Path) -> None:
        cli("config", "set", "container_cli", "podman")
        assert ConfigManager(base_dir=tmp_path).get("container_cli") == "podman"

    def test_set_unknown_key(self, cli) -> None:
        result = cli("config", "set", "colour", "blue")
        assert result.exit_code == 2
        assert "unknown setting" in result.output

    def test_show(self, cli) -> None:
        result = cli("config", "show")
        assert json.loads(result.output)["container_shutdown_timeout"] == 30
