"""Container backend: run commands inside a container via docker, podman,
nerdctl or lima nerdctl.

The container CLI is looked up on a *host* machine, so a container can be
driven from the local machine, over SSH, or from a mock in tests.  Nothing
runs until the first command, so constructing a :class:`ContainerMachine`
has no side effects.
"""

from __future__ import annotations

import logging
import threading
from typing import Sequence

from cmdpipe.machine import Buffer, Machine, SubMachine, do, fail, not_found, read

logger = logging.getLogger(__name__)

CLIS: tuple[tuple[str, ...], ...] = (
    ("docker",),
    ("podman",),
    ("nerdctl",),
    ("lima", "nerdctl"),
)

SHUTDOWN_TIMEOUT = 30.0  # seconds


class ContainerError(Exception):
    """Raised when the container CLI or container cannot be used."""


# ---------------------------------------------------------------------------
# Ctl
# ---------------------------------------------------------------------------


class Ctl:
    """The container controller CLI found on *host*.

    The first of *candidates* whose ``--version`` does not fail with
    "command not found" is used for every later command.  The lookup runs
    once; its result, success or failure, is cached.

        >>> ctl = Ctl(LocalMachine())
        >>> read(ctl, "container", "ls", "-q")
    """

    def __init__(self, host: Machine, candidates: Sequence[Sequence[str]] = CLIS) -> None:
        self.host = host
        self.candidates = tuple(tuple(c) for c in candidates)
        self._lock = threading.Lock()
        self._machine: Machine | None = None
        self._error: ContainerError | None = None

    def _init(self) -> Machine:
        with self._lock:
            if self._machine is not None:
                return self._machine
            if self._error is not None:
                raise self._error

            for cli in self.candidates:
                try:
                    do(self.host, *cli, "--version")
                except Exception as exc:
                    if not_found(exc):
                        logger.debug("Container CLI %s not found", " ".join(cli))
                        continue
                    logger.debug("%s --version failed (%s); using it anyway", " ".join(cli), exc)
                logger.info("Using container CLI: %s", " ".join(cli))
                self._machine = SubMachine(self.host, *cli)
                return self._machine

            names = ", ".join(" ".join(c) for c in self.candidates)
            self._error = ContainerError(f"no container CLI found: {names}")
            raise self._error

    def command(self, *args: str) -> Buffer:
        try:
            ctl = self._init()
        except ContainerError as exc:
            return fail(exc)
        return ctl.command(*args)


# ---------------------------------------------------------------------------
# ContainerMachine
# ---------------------------------------------------------------------------


class ContainerMachine:
    """Runs commands inside a long-lived container.

    The container is started on the first command with
    ``container run --rm -d -i <run_args> <image> cat`` (``cat`` keeps it
    alive) and every command becomes ``container exec -i <id> <args>``.
    Call :meth:`shutdown` to remove it; commands issued afterwards fail.

    Args:
        host: Machine that has the container CLI.
        image: Image name.
        *run_args: Extra ``container run`` arguments, e.g. ``"-v", "/data:/data"``.
    """

    def __init__(self, host: Machine, image: str, *run_args: str, ctl: Machine | None = None) -> None:
        self.host = host
        self.image = image
        self.run_args = tuple(run_args)
        self._ctl: Machine = ctl if ctl is not None else Ctl(host)
        self._lock = threading.Lock()
        self._container_id: str | None = None
        self._start_error: ContainerError | None = None
        self._done = False

    @property
    def ctl(self) -> Machine:
        """The machine ``container ...`` commands are sent to."""
        return self._ctl

    @property
    def container_id(self) -> str | None:
        with self._lock:
            return self._container_id

    def _start(self) -> str:
        with self._lock:
            if self._done:
                raise ContainerError("machine shut down")
            if self._start_error is not None:
                raise self._start_error
            if self._container_id is None:
                try:
                    self._container_id = self._run_container()
                except Exception as exc:
                    error = ContainerError(f"failed to start container: {exc}")
                    self._start_error = error
                    raise error from exc
            return self._container_id

    def _run_container(self) -> str:
        args = ["container", "run", "--rm", "-d", "-i", *self.run_args, self.image, "cat"]
        container_id = read(self._ctl, *args).strip()
        if not container_id:
            raise ContainerError(f"no container id returned for {self.image}")
        logger.info("Started container %s from %s", container_id[:12], self.image)
        return container_id

    def command(self, *args: str) -> Buffer:
        try:
            container_id = self._start()
        except ContainerError as exc:
            return fail(exc)
        return self._ctl.command("container", "exec", "-i", container_id, *args)

    def shutdown(self, timeout: float = SHUTDOWN_TIMEOUT) -> None:
        """Remove the container, waiting at most *timeout* seconds.

        Raises:
            ContainerError: Removal failed or did not finish in time.
        """
        with self._lock:
            self._done = True
            container_id = self._container_id
        if container_id is None:
            return

        errors: list[Exception] = []

        def _remove() -> None:
            try:
                do(self._ctl, "container", "rm", "-f", container_id)
            except Exception as exc:
                errors.append(exc)

        worker = threading.Thread(target=_remove, name=f"ctr-rm-{container_id[:12]}", daemon=True)
        worker.start()
        worker.join(timeout=timeout)
        if worker.is_alive():
            raise ContainerError(f"timed out after {timeout:g}s removing container {container_id[:12]}")
        if errors:
            raise ContainerError(f"failed to remove container {container_id[:12]}: {errors[0]}") from errors[0]
        logger.info("Removed container %s", container_id[:12])

    def __repr__(self) -> str:
        return f"ContainerMachine({self.image!r})"
