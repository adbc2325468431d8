"""Remote command backend over SSH.

Connects lazily on the first command and runs every command on its own
channel of the shared transport, so several pipeline stages can run on the
same host at once.  All methods are safe to call from stage threads.
"""

from __future__ import annotations

import logging
import socket
import threading
from enum import Enum, auto
from pathlib import Path
from typing import Any, Callable, Optional, Sequence

import keyring
from keyring.errors import PasswordDeleteError
import paramiko

from cmdpipe.config import Profile
from cmdpipe.machine import Buffer, CommandError, fail, trace
from cmdpipe.stream import CHUNK_SIZE
from cmdpipe.utils.quoting import join_args

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Types
# ---------------------------------------------------------------------------

StateChangeCallback = Callable[["ConnectionState", Optional[str]], None]

KEYRING_SERVICE = "cmdpipe"
_KEEPALIVE_INTERVAL = 30  # seconds


# ---------------------------------------------------------------------------
# Custom exceptions
# ---------------------------------------------------------------------------


class UnknownHostError(Exception):
    """Raised when the remote host key is not in known_hosts.

    Carries the fingerprint and key so the caller can confirm it and save it
    with :func:`accept_host_key`.
    """

    def __init__(
        self,
        message: str,
        hostname: str = "",
        key_type: str = "",
        fingerprint: str = "",
        key: paramiko.PKey | None = None,
    ) -> None:
        super().__init__(message)
        self.hostname = hostname
        self.key_type = key_type
        self.fingerprint = fingerprint
        self.key = key


class SSHConnectionError(Exception):
    """Raised when a command is attempted on a machine that cannot connect."""


# ---------------------------------------------------------------------------
# Host-key policy
# ---------------------------------------------------------------------------


class _CapturingPolicy(paramiko.MissingHostKeyPolicy):
    """Raises UnknownHostError with fingerprint info instead of silently rejecting."""

    def missing_host_key(
        self,
        client: paramiko.SSHClient,
        hostname: str,
        key: paramiko.PKey,
    ) -> None:
        raw = key.get_fingerprint()
        fingerprint = ":".join(f"{b:02x}" for b in raw)
        raise UnknownHostError(
            f"Host '{hostname}' is not in known_hosts.\n"
            f"Key type: {key.get_name()}\n"
            f"Fingerprint (MD5): {fingerprint}",
            hostname=hostname,
            key_type=key.get_name(),
            fingerprint=fingerprint,
            key=key,
        )


def _close_client_safely(client: paramiko.SSHClient) -> None:
    """Close *client*, logging rather than raising socket cleanup noise."""
    try:
        client.close()
    except OSError as exc:
        logger.debug("Ignoring error while closing SSH client: %s", exc)


def accept_host_key(hostname: str, key: paramiko.PKey) -> None:
    """Append *key* for *hostname* to ``~/.ssh/known_hosts`` and save."""
    ssh_dir = Path.home() / ".ssh"
    ssh_dir.mkdir(mode=0o700, exist_ok=True)
    known_hosts_path = ssh_dir / "known_hosts"

    host_keys = paramiko.HostKeys(str(known_hosts_path)) if known_hosts_path.exists() else paramiko.HostKeys()
    host_keys.add(hostname, key.get_name(), key)
    host_keys.save(str(known_hosts_path))
    logger.info("Saved host key for %s to known_hosts", hostname)


# ---------------------------------------------------------------------------
# Remote command
# ---------------------------------------------------------------------------


class SSHCommand:
    """A command running on its own SSH channel.

    Reads come from the channel's stdout; at EOF the exit status is checked
    and a non-zero status raises :class:`CommandError` with the remote
    stderr.  ``close`` half-closes the channel so the command sees EOF on
    stdin.
    """

    def __init__(self, client: paramiko.SSHClient, argv: Sequence[str], timeout: float | None = None) -> None:
        self.argv = list(argv)
        trace(self.argv)
        _, stdout, stderr = client.exec_command(join_args(self.argv), timeout=timeout)
        self._channel = stdout.channel
        self._stderr = stderr
        self._write_closed = False
        self._error: CommandError | None = None
        self._finished = False
        self._lock = threading.Lock()

    def _finish(self) -> None:
        with self._lock:
            if self._finished:
                return
            self._finished = True
            code = self._channel.recv_exit_status()
            if code != 0:
                self._error = CommandError(
                    self.argv,
                    code=code,
                    stderr=self._stderr.read().decode("utf-8", errors="replace"),
                )

    def read(self, size: int = -1) -> bytes:
        chunk = self._channel.recv(size if size > 0 else CHUNK_SIZE)
        if chunk:
            return chunk
        self._finish()
        if self._error is not None:
            raise self._error
        return b""

    def write(self, data: bytes) -> int:
        self._channel.sendall(data)
        return len(data)

    def close(self) -> None:
        with self._lock:
            if self._write_closed:
                return
            self._write_closed = True
        self._channel.shutdown_write()

    def __str__(self) -> str:
        return join_args(self.argv)


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------


class ConnectionState(Enum):
    """States for the SSH connection lifecycle."""

    DISCONNECTED = auto()
    CONNECTING = auto()
    CONNECTED = auto()
    ERROR = auto()


# ---------------------------------------------------------------------------
# SSHMachine
# ---------------------------------------------------------------------------


class SSHMachine:
    """Runs commands on a remote host over SSH.

    Thread-safety:
    - ``_lock`` protects the client and all state transitions.
    - Connecting happens at most once at a time; concurrent first commands
      wait for it.
    """

    def __init__(
        self,
        host: str,
        port: int = 22,
        username: str | None = None,
        auth_type: str = "key",
        key_path: str | None = None,
        timeout: float = 15.0,
        command_timeout: float | None = None,
        on_state_change: StateChangeCallback | None = None,
    ) -> None:
        """Initialise connection parameters (does NOT connect yet).

        Args:
            host: Hostname or IP address.
            port: SSH port (default 22).
            username: SSH username (default: paramiko's choice, the local user).
            auth_type: "password" (from the OS keyring) or "key".
            key_path: Private key file (used when auth_type="key").
            timeout: Connection timeout in seconds.
            command_timeout: Per-channel read timeout in seconds (default none).
            on_state_change: Called with ``(new_state, optional_message)`` on
                every state transition.
        """
        self.host = host
        self.port = port
        self.username = username
        self.auth_type = auth_type
        self.key_path = key_path
        self.timeout = timeout
        self.command_timeout = command_timeout
        self._on_state_change = on_state_change

        self._client: paramiko.SSHClient | None = None
        self._state = ConnectionState.DISCONNECTED
        self._lock = threading.RLock()

    @classmethod
    def from_profile(cls, profile: Profile, **kwargs: Any) -> "SSHMachine":
        """Build a machine from a saved :class:`cmdpipe.config.Profile`."""
        return cls(
            host=profile.host,
            port=profile.port,
            username=profile.username,
            auth_type=profile.auth_type,
            key_path=profile.key_path,
            **kwargs,
        )

    # ------------------------------------------------------------------
    # State management
    # ------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        """Current connection state (thread-safe read)."""
        with self._lock:
            return self._state

    def _set_state(self, new_state: ConnectionState, message: str | None = None) -> None:
        """Update state and fire the state-change callback (must hold lock)."""
        self._state = new_state
        logger.debug(
            "Connection state → %s%s",
            new_state.name,
            f" ({message})" if message else "",
        )
        if self._on_state_change:
            try:
                self._on_state_change(new_state, message)
            except Exception:
                logger.exception("Exception in on_state_change callback")

    # ------------------------------------------------------------------
    # Connect / shutdown
    # ------------------------------------------------------------------

    def connect(self) -> paramiko.SSHClient:
        """Return the connected client, connecting first if necessary.

        Raises:
            UnknownHostError: Host key is not in known_hosts (carries fingerprint).
            paramiko.AuthenticationException: Wrong credentials.
            socket.timeout: Connection timed out.
            OSError: Network-level failure.
        """
        with self._lock:
            if self._state == ConnectionState.CONNECTED and self._client is not None:
                return self._client
            self._set_state(ConnectionState.CONNECTING)
            try:
                self._client = self._do_connect()
            except Exception as exc:
                self._set_state(ConnectionState.ERROR, str(exc))
                raise
            self._set_state(ConnectionState.CONNECTED)
            return self._client

    def _connect_kwargs(self) -> dict[str, Any]:
        connect_kwargs: dict[str, Any] = {
            "hostname": self.host,
            "port": self.port,
            "username": self.username,
            "timeout": self.timeout,
            "allow_agent": True,
            "look_for_keys": self.auth_type == "key",
        }

        if self.auth_type == "password":
            password = keyring.get_password(KEYRING_SERVICE, self._profile_key)
            if password:
                connect_kwargs["password"] = password
        elif self.auth_type == "key" and self.key_path:
            connect_kwargs["key_filename"] = self.key_path
        return connect_kwargs

    def _do_connect(self) -> paramiko.SSHClient:
        logger.info("Connecting to %s:%d", self.host, self.port)

        client = paramiko.SSHClient()
        known_hosts_path = Path.home() / ".ssh" / "known_hosts"
        if known_hosts_path.exists():
            client.load_host_keys(str(known_hosts_path))
        client.set_missing_host_key_policy(_CapturingPolicy())

        try:
            client.connect(**self._connect_kwargs())
        except UnknownHostError:
            _close_client_safely(client)
            raise
        except paramiko.BadHostKeyException as exc:
            _close_client_safely(client)
            raise UnknownHostError(
                f"Host key mismatch for {self.host} — check ~/.ssh/known_hosts",
                hostname=self.host,
            ) from exc
        except (paramiko.SSHException, socket.timeout, OSError):
            _close_client_safely(client)
            raise

        transport = client.get_transport()
        if transport:
            transport.set_keepalive(_KEEPALIVE_INTERVAL)

        logger.info("Connected to %s", self.host)
        return client

    def shutdown(self, timeout: float = 30.0) -> None:
        """Close the SSH client; the next command reconnects."""
        with self._lock:
            if self._client is not None:
                _close_client_safely(self._client)
                self._client = None
            self._set_state(ConnectionState.DISCONNECTED)
        logger.info("Disconnected from %s", self.host)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def command(self, *args: str) -> Buffer:
        if not args:
            return fail(CommandError(args, message="no command given"))
        try:
            client = self.connect()
            return SSHCommand(client, args, timeout=self.command_timeout)
        except (UnknownHostError, paramiko.SSHException, OSError) as exc:
            error = SSHConnectionError(f"{self.host}: {exc}")
            error.__cause__ = exc
            return fail(error)

    # ------------------------------------------------------------------
    # Credential helpers
    # ------------------------------------------------------------------

    @property
    def _profile_key(self) -> str:
        """Keyring account key for this machine (user@host)."""
        return f"{self.username or ''}@{self.host}"

    def store_password(self, password: str) -> None:
        """Store *password* in the OS keyring for this machine."""
        keyring.set_password(KEYRING_SERVICE, self._profile_key, password)
        logger.debug("Password stored in keyring for %s", self._profile_key)

    def delete_password(self) -> None:
        """Remove the stored password from the OS keyring."""
        try:
            keyring.delete_password(KEYRING_SERVICE, self._profile_key)
        except PasswordDeleteError:
            logger.debug("No stored password for %s", self._profile_key)
        else:
            logger.debug("Password deleted from keyring for %s", self._profile_key)

    def __repr__(self) -> str:
        return f"SSHMachine({self.host!r}, port={self.port})"
