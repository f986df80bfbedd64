"""YAML configuration loader and validator."""

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

import yaml

from tessera.scheduler.runner import DEFAULT_PURGE_INTERVAL
from tessera.storage.sessions import DEFAULT_LOGIN_TTL, DEFAULT_SESSION_TTL

DEFAULT_STORAGE_PATH = Path.home() / ".local" / "share" / "tessera"

_USER_VERIFICATION = ("required", "preferred", "discouraged")
_ORIGIN_RE = re.compile(r"^https?://[^/\s]+$")
_MIN_TTL = 30
_MAX_TTL = 3600
_MAX_LOGIN_TTL = DEFAULT_LOGIN_TTL
_MIN_PURGE_INTERVAL = 60
_MAX_PURGE_INTERVAL = 86400


class ConfigError(Exception):
    """Raised for invalid or missing configuration."""


@dataclass(frozen=True)
class Settings:
    """Resolved runtime settings with defaults applied."""

    rp_id: str = "localhost"
    rp_name: str = "Tessera"
    origin: str = "http://localhost:8000"
    storage_path: Path = DEFAULT_STORAGE_PATH
    session_ttl: int = DEFAULT_SESSION_TTL
    session_login_ttl: int = DEFAULT_LOGIN_TTL
    session_purge_interval: int = DEFAULT_PURGE_INTERVAL
    session_secret: str = ""
    cookie_name: str = "tessera_session"
    user_verification: str = "preferred"
    reveal_unknown_users: bool = True
    allow_counterless_authenticators: bool = False

    @property
    def secure_cookies(self) -> bool:
        return self.origin.startswith("https://")


def is_localhost(rp_id: str) -> bool:
    return rp_id in ("localhost", "127.0.0.1", "::1")


def default_origin(rp_id: str) -> str:
    """Origin browsers will report when no explicit origin is configured."""
    if is_localhost(rp_id):
        return "http://localhost:8000"
    return f"https://{rp_id}"


def load_config(path: Path) -> Optional[dict[str, Any]]:
    """
    Load configuration from a YAML file.

    Args:
        path: Path to the YAML config file

    Returns:
        Parsed configuration dictionary, or None if file is empty

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
    """
    with open(path) as f:
        result: Optional[dict[str, Any]] = yaml.safe_load(f)
        return result


def validate_config(config: dict[str, Any]) -> list[str]:
    """
    Validate a loaded configuration dictionary.

    Every section is optional; only present values are checked.

    Returns:
        List of validation error messages (empty list = valid)
    """
    errors: list[str] = []

    if not isinstance(config, dict):
        return ["Config root must be a YAML mapping"]

    for section in ("relying_party", "storage", "session", "security"):
        value = config.get(section)
        if value is not None and not isinstance(value, dict):
            errors.append(f"'{section}' must be a mapping")
    if errors:
        return errors

    rp = config.get("relying_party") or {}
    rp_id = rp.get("id")
    if rp_id is not None and (not isinstance(rp_id, str) or not rp_id.strip()):
        errors.append("relying_party.id must be a non-empty hostname")
    origin = rp.get("origin")
    if origin is not None and not (isinstance(origin, str) and _ORIGIN_RE.match(origin)):
        errors.append(f"relying_party.origin '{origin}' is not a scheme://host[:port] origin")

    session = config.get("session") or {}
    ttl = session.get("ttl")
    if ttl is not None:
        if not isinstance(ttl, int) or isinstance(ttl, bool):
            errors.append("session.ttl must be an integer number of seconds")
        elif not _MIN_TTL <= ttl <= _MAX_TTL:
            errors.append(f"session.ttl must be between {_MIN_TTL} and {_MAX_TTL} seconds")
    login_ttl = session.get("login_ttl")
    if login_ttl is not None:
        if not isinstance(login_ttl, int) or isinstance(login_ttl, bool):
            errors.append("session.login_ttl must be an integer number of seconds")
        elif not _MIN_TTL <= login_ttl <= _MAX_LOGIN_TTL:
            errors.append(
                f"session.login_ttl must be between {_MIN_TTL} and {_MAX_LOGIN_TTL} seconds"
            )
    interval = session.get("purge_interval")
    if interval is not None:
        if not isinstance(interval, int) or isinstance(interval, bool):
            errors.append("session.purge_interval must be an integer number of seconds")
        elif interval != 0 and not _MIN_PURGE_INTERVAL <= interval <= _MAX_PURGE_INTERVAL:
            errors.append(
                "session.purge_interval must be 0 (off) or between "
                f"{_MIN_PURGE_INTERVAL} and {_MAX_PURGE_INTERVAL} seconds"
            )
    secret = session.get("secret")
    if secret is not None and (not isinstance(secret, str) or len(secret) < 32):
        errors.append("session.secret must be a string of at least 32 characters")

    security = config.get("security") or {}
    uv = security.get("user_verification")
    if uv is not None and uv not in _USER_VERIFICATION:
        errors.append(
            f"security.user_verification '{uv}' must be one of {', '.join(_USER_VERIFICATION)}"
        )
    for flag in ("reveal_unknown_users", "allow_counterless_authenticators"):
        value = security.get(flag)
        if value is not None and not isinstance(value, bool):
            errors.append(f"security.{flag} must be true or false")

    return errors


def settings_from_config(config: dict[str, Any]) -> Settings:
    """
    Construct Settings from a validated config dict.

    Args:
        config: Parsed and validated config dictionary

    Returns:
        Settings instance
    """
    rp = config.get("relying_party") or {}
    storage = config.get("storage") or {}
    session = config.get("session") or {}
    security = config.get("security") or {}

    rp_id = str(rp.get("id", "localhost")).strip()
    storage_path = storage.get("path")
    return Settings(
        rp_id=rp_id,
        rp_name=str(rp.get("name", "Tessera")),
        origin=str(rp.get("origin") or default_origin(rp_id)),
        storage_path=Path(storage_path).expanduser() if storage_path else DEFAULT_STORAGE_PATH,
        session_ttl=int(session.get("ttl", DEFAULT_SESSION_TTL)),
        session_login_ttl=int(session.get("login_ttl", DEFAULT_LOGIN_TTL)),
        session_purge_interval=int(session.get("purge_interval", DEFAULT_PURGE_INTERVAL)),
        session_secret=str(session.get("secret", "")),
        cookie_name=str(session.get("cookie_name", "tessera_session")),
        user_verification=str(security.get("user_verification", "preferred")),
        reveal_unknown_users=bool(security.get("reveal_unknown_users", True)),
        allow_counterless_authenticators=bool(
            security.get("allow_counterless_authenticators", False)
        ),
    )
