"""cmdpipe — command-line entry point.

Pipes standard input through one command per argument and writes the result
to standard output::

    cmdpipe run "grep -v '^#'" sort "uniq -c" < hosts.txt
    cmdpipe run --profile build "make -C /src" "tail -n 20"
    cmdpipe run --image alpine:3 "apk info" sort

Saved SSH hosts and settings are managed with ``cmdpipe profile ...`` and
``cmdpipe config ...``.
"""

import json
import logging
import shlex
import sys
from pathlib import Path
from typing import List, Optional

import paramiko
import typer

from cmdpipe.config import HOME_ENV, ConfigError, ConfigManager, Profile
from cmdpipe.ctr import CLIS, ContainerError, ContainerMachine, Ctl
from cmdpipe.errors import CopyError
from cmdpipe.filter import new_filter
from cmdpipe.local import LocalMachine
from cmdpipe.machine import Machine, ShutdownMachine
from cmdpipe.pipeline import copy
from cmdpipe.remote import SSHMachine, UnknownHostError, accept_host_key

_LOG_FORMAT = "%(asctime)s  %(levelname)-8s  %(name)s — %(message)s"
_DATE_FORMAT = "%H:%M:%S"

log = logging.getLogger(__name__)

app = typer.Typer(
    name="cmdpipe",
    help="Run commands on local, SSH and container machines and pipe them together.",
    no_args_is_help=True,
    add_completion=False,
)
profile_app = typer.Typer(help="Saved SSH host profiles.", no_args_is_help=True)
config_app = typer.Typer(help="cmdpipe settings.", no_args_is_help=True)
app.add_typer(profile_app, name="profile")
app.add_typer(config_app, name="config")


def _configure_logging(trace: bool) -> None:
    """Set up root logging to stderr."""
    logging.basicConfig(
        level=logging.DEBUG if trace else logging.WARNING,
        format=_LOG_FORMAT,
        datefmt=_DATE_FORMAT,
        stream=sys.stderr,
    )
    # Quieten noisy third-party loggers
    logging.getLogger("paramiko").setLevel(logging.WARNING)


def _fail(message: str, code: int = 1) -> typer.Exit:
    typer.echo(f"cmdpipe: {message}", err=True)
    return typer.Exit(code)


@app.callback()
def callback(
    ctx: typer.Context,
    config_dir: Optional[Path] = typer.Option(
        None,
        "--config-dir",
        envvar=HOME_ENV,
        help="Directory holding config.json and profiles.json (default ~/.cmdpipe).",
    ),
    trace: bool = typer.Option(False, "--trace", help="Log every command and pipeline stage."),
):
    config = ConfigManager(config_dir)
    _configure_logging(trace or bool(config.get("trace")))
    ctx.obj = config


# ---------------------------------------------------------------------------
# run
# ---------------------------------------------------------------------------


def _build_machine(config: ConfigManager, profile_name: Optional[str] = None, image: Optional[str] = None) -> Machine:
    """Pick the machine commands run on: local, a saved SSH host, or a container on either."""
    host: Machine = LocalMachine()

    if profile_name:
        profile = config.profile(profile_name)
        if profile is None:
            raise typer.BadParameter(f"no such profile: {profile_name}", param_hint="--profile")
        host = SSHMachine.from_profile(
            profile,
            timeout=config.get("ssh_timeout"),
            command_timeout=config.get("ssh_command_timeout"),
        )

    if image:
        cli = config.get("container_cli")
        candidates = (tuple(shlex.split(cli)),) if cli else CLIS
        return ContainerMachine(host, image, ctl=Ctl(host, candidates))
    return host


def _shutdown(machine: Machine, timeout: float) -> bool:
    """Release *machine* and the host it runs on; False if anything failed."""
    ok = True
    for m in (machine, getattr(machine, "host", None)):
        if not isinstance(m, ShutdownMachine):
            continue
        try:
            m.shutdown(timeout=timeout)
        except ContainerError as exc:
            typer.echo(f"cmdpipe: {exc}", err=True)
            ok = False
    return ok


@app.command()
def run(
    ctx: typer.Context,
    commands: List[str] = typer.Argument(..., help="One command line per argument, e.g. \"sort -u\"."),
    profile: Optional[str] = typer.Option(
        None, "--profile", "-p", envvar="CMDPIPE_PROFILE", help="Run on this saved SSH host."
    ),
    image: Optional[str] = typer.Option(
        None, "--image", "-i", envvar="CMDPIPE_IMAGE", help="Run inside a container of this image."
    ),
):
    """Pipe stdin through COMMANDS and write the result to stdout."""
    config: ConfigManager = ctx.obj
    try:
        argvs = [shlex.split(command) for command in commands]
    except ValueError as exc:
        raise typer.BadParameter(str(exc), param_hint="COMMANDS") from exc

    machine = _build_machine(config, profile, image)
    log.debug("Running %d command(s) on %r", len(argvs), machine)

    status = 0
    try:
        copy(sys.stdout.buffer, sys.stdin.buffer, *(new_filter(machine, *argv) for argv in argvs))
    except CopyError as exc:
        typer.echo(str(exc), err=True)
        status = 1
    finally:
        if not _shutdown(machine, config.get("container_shutdown_timeout")):
            status = status or 1
    if status:
        raise typer.Exit(status)


# ---------------------------------------------------------------------------
# profile
# ---------------------------------------------------------------------------


@profile_app.command("add")
def profile_add(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Profile name, used with --profile."),
    host: str = typer.Argument(..., help="Hostname or IP address."),
    port: int = typer.Option(22, "--port", help="SSH port."),
    user: Optional[str] = typer.Option(None, "--user", "-u", help="SSH username."),
    key: Optional[str] = typer.Option(None, "--key", "-k", help="Private key file."),
    password: bool = typer.Option(
        False, "--password", help="Prompt for a password and keep it in the OS keyring."
    ),
):
    """Save (or replace) an SSH host profile."""
    config: ConfigManager = ctx.obj
    try:
        profile = Profile(
            name=name,
            host=host,
            port=port,
            username=user,
            auth_type="password" if password else "key",
            key_path=key,
        )
    except ConfigError as exc:
        raise typer.BadParameter(str(exc)) from exc

    if password:
        secret = typer.prompt("Password", hide_input=True)
        SSHMachine.from_profile(profile).store_password(secret)
    config.add_profile(profile)
    typer.echo(f"Saved profile {name}")


@profile_app.command("rm")
def profile_rm(ctx: typer.Context, name: str = typer.Argument(..., help="Profile to remove.")):
    """Remove a profile and any password stored for it."""
    config: ConfigManager = ctx.obj
    profile = config.profile(name)
    if profile is None:
        raise _fail(f"no such profile: {name}")
    if profile.auth_type == "password":
        SSHMachine.from_profile(profile).delete_password()
    config.remove_profile(name)
    typer.echo(f"Removed profile {name}")


@profile_app.command("ls")
def profile_ls(ctx: typer.Context):
    """List saved profiles."""
    config: ConfigManager = ctx.obj
    for p in config.profiles():
        target = f"{p.username}@{p.host}" if p.username else p.host
        typer.echo(f"{p.name}\t{target}:{p.port}\t{p.auth_type}")


@profile_app.command("trust")
def profile_trust(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Profile whose host key to trust."),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation."),
):
    """Connect once and add the host's key to ~/.ssh/known_hosts."""
    config: ConfigManager = ctx.obj
    profile = config.profile(name)
    if profile is None:
        raise _fail(f"no such profile: {name}")

    machine = SSHMachine.from_profile(profile, timeout=config.get("ssh_timeout"))
    try:
        machine.connect()
    except UnknownHostError as exc:
        if exc.key is None:
            raise _fail(str(exc)) from exc
        typer.echo(f"Host:        {exc.hostname}")
        typer.echo(f"Key type:    {exc.key_type}")
        typer.echo(f"Fingerprint: {exc.fingerprint}")
        if not yes and not typer.confirm("Trust this host?"):
            raise _fail("host key not saved") from exc
        accept_host_key(exc.hostname, exc.key)
        typer.echo(f"Saved host key for {exc.hostname}")
    except (paramiko.SSHException, OSError) as exc:
        raise _fail(f"cannot connect to {profile.host}: {exc}") from exc
    else:
        typer.echo(f"{profile.host} is already trusted")
    finally:
        machine.shutdown()


# ---------------------------------------------------------------------------
# config
# ---------------------------------------------------------------------------


@config_app.command("show")
def config_show(ctx: typer.Context):
    """Print all settings as JSON."""
    config: ConfigManager = ctx.obj
    typer.echo(json.dumps(config.settings(), indent=2))


@config_app.command("set")
def config_set(
    ctx: typer.Context,
    key: str = typer.Argument(..., help="Setting name."),
    value: str = typer.Argument(..., help="New value; parsed as JSON when possible."),
):
    """Change a setting."""
    config: ConfigManager = ctx.obj
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError:
        parsed = value
    try:
        config.set(key, parsed)
    except ConfigError as exc:
        raise typer.BadParameter(str(exc), param_hint="KEY") from exc
    typer.echo(f"{key} = {json.dumps(parsed)}")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
