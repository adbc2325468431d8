"""Settings and saved SSH host profiles.

Both live as JSON under ``~/.cmdpipe/`` (or ``$CMDPIPE_HOME``):

- ``config.json`` — engine and backend settings, see :data:`DEFAULT_CONFIG`
- ``profiles.json`` — a list of :class:`Profile` records

Passwords never reach these files; ``cmdpipe profile add --password``
hands them to the OS keyring through :class:`cmdpipe.remote.SSHMachine`.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

HOME_ENV = "CMDPIPE_HOME"

DEFAULT_CONFIG: dict[str, Any] = {
    "ssh_timeout": 15,
    "ssh_command_timeout": None,
    "container_cli": None,
    "container_shutdown_timeout": 30,
    "trace": False,
}

AUTH_TYPES = ("key", "password")


class ConfigError(Exception):
    """Raised for an unknown setting or an invalid profile."""


# ---------------------------------------------------------------------------
# Profile
# ---------------------------------------------------------------------------


@dataclass
class Profile:
    """Connection details for one SSH host."""

    name: str
    host: str
    port: int = 22
    username: str | None = None
    auth_type: str = "key"
    key_path: str | None = None

    def __post_init__(self) -> None:
        if not self.name:
            raise ConfigError("profile needs a name")
        if not self.host:
            raise ConfigError(f"profile {self.name!r} needs a host")
        if self.auth_type not in AUTH_TYPES:
            raise ConfigError(f"profile {self.name!r}: auth_type must be one of {', '.join(AUTH_TYPES)}")
        try:
            self.port = int(self.port)
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"profile {self.name!r}: invalid port {self.port!r}") from exc

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Profile":
        """Build a profile, ignoring keys it does not know (e.g. ``password``)."""
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# ---------------------------------------------------------------------------
# ConfigManager
# ---------------------------------------------------------------------------


def _default_base_dir() -> Path:
    env = os.environ.get(HOME_ENV)
    return Path(env).expanduser() if env else Path.home() / ".cmdpipe"


class ConfigManager:
    """Reads and writes cmdpipe's settings and host profiles.

    Files are replaced atomically.  A file that cannot be parsed, or whose
    root has the wrong JSON type, is logged and rewritten from defaults.
    """

    def __init__(self, base_dir: Path | None = None) -> None:
        self.base_dir = Path(base_dir) if base_dir is not None else _default_base_dir()
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self._settings_path = self.base_dir / "config.json"
        self._profiles_path = self.base_dir / "profiles.json"

        stored = self._load(self._settings_path, dict, {})
        self._settings: dict[str, Any] = {**DEFAULT_CONFIG, **stored}
        if not self._settings_path.exists():
            self._save(self._settings_path, self._settings)

        self._profiles: dict[str, Profile] = {}
        for entry in self._load(self._profiles_path, list, []):
            try:
                profile = Profile.from_dict(entry)
            except (ConfigError, TypeError) as exc:
                logger.warning("Skipping invalid profile in %s: %s", self._profiles_path, exc)
                continue
            self._profiles[profile.name] = profile

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    def _load(self, path: Path, root_type: type, empty: Any) -> Any:
        if not path.exists():
            return empty
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Cannot read %s (%s); starting from defaults", path.name, exc)
            data = None
        if isinstance(data, root_type):
            return data
        if data is not None:
            logger.warning("%s must hold a JSON %s; starting from defaults", path.name, root_type.__name__)
        self._save(path, empty)
        return empty

    def _save(self, path: Path, data: Any) -> None:
        tmp = path.with_suffix(".tmp")
        try:
            tmp.write_text(json.dumps(data, indent=2), encoding="utf-8")
            tmp.replace(path)
        except OSError as exc:
            logger.error("Failed to write %s: %s", path, exc)
            raise

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    def get(self, key: str, default: Any = None) -> Any:
        return self._settings.get(key, default)

    def set(self, key: str, value: Any) -> None:
        """Change a setting from :data:`DEFAULT_CONFIG` and save it."""
        if key not in DEFAULT_CONFIG:
            raise ConfigError(f"unknown setting {key!r} (known: {', '.join(sorted(DEFAULT_CONFIG))})")
        self._settings[key] = value
        self._save(self._settings_path, self._settings)
        logger.debug("Setting %s = %r", key, value)

    def settings(self) -> dict[str, Any]:
        return dict(self._settings)

    # ------------------------------------------------------------------
    # Profiles
    # ------------------------------------------------------------------

    def profiles(self) -> list[Profile]:
        """Saved profiles, sorted by name."""
        return [self._profiles[name] for name in sorted(self._profiles)]

    def profile(self, name: str) -> Profile | None:
        return self._profiles.get(name)

    def add_profile(self, profile: Profile) -> None:
        """Save *profile*, replacing any profile of the same name."""
        replaced = profile.name in self._profiles
        self._profiles[profile.name] = profile
        self._save_profiles()
        logger.info("Profile %s %s", profile.name, "updated" if replaced else "added")

    def remove_profile(self, name: str) -> bool:
        """Delete the profile *name*; returns False if there was none."""
        if self._profiles.pop(name, None) is None:
            return False
        self._save_profiles()
        logger.info("Profile %s removed", name)
        return True

    def _save_profiles(self) -> None:
        self._save(self._profiles_path, [p.to_dict() for p in self.profiles()])
