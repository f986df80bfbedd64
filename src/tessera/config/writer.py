"""Config write-back for Tessera: defaults, secret seeding, atomic writes."""

import logging
from pathlib import Path
from typing import Any, Optional

from tessera.auth.session import generate_secret
from tessera.config.loader import default_origin, load_config
from tessera.scheduler.runner import DEFAULT_PURGE_INTERVAL
from tessera.storage.kv import write_yaml
from tessera.storage.sessions import DEFAULT_LOGIN_TTL, DEFAULT_SESSION_TTL

logger = logging.getLogger(__name__)


def write_config(path: Path, config: dict[str, Any]) -> None:
    """
    Atomically write a config dict to a YAML file.

    Args:
        path: Destination config.yaml path.
        config: Full config dict.
    """
    write_yaml(path, config)


def build_config_dict(
    rp_id: str = "localhost",
    origin: Optional[str] = None,
    storage_path: Optional[str] = None,
    secret: Optional[str] = None,
) -> dict[str, Any]:
    """
    Build a complete default config dict.

    Returns:
        Config dict ready for write_config().
    """
    result: dict[str, Any] = {
        "relying_party": {
            "id": rp_id,
            "name": "Tessera",
            "origin": origin or default_origin(rp_id),
        },
        "session": {
            "ttl": DEFAULT_SESSION_TTL,
            "login_ttl": DEFAULT_LOGIN_TTL,
            "purge_interval": DEFAULT_PURGE_INTERVAL,
            "secret": secret or generate_secret(),
        },
        "security": {
            "user_verification": "preferred",
            "reveal_unknown_users": True,
            "allow_counterless_authenticators": False,
        },
    }
    if storage_path:
        result["storage"] = {"path": storage_path}
    return result


def seed_session_secret(path: Path) -> dict[str, Any]:
    """
    Ensure the config at ``path`` carries a session secret, writing one if absent.

    Returns:
        The (possibly updated) raw config dict.
    """
    raw = load_config(path) or {}
    session: dict[str, Any] = raw.get("session") or {}
    if not session.get("secret"):
        session["secret"] = generate_secret()
        raw["session"] = session
        write_config(path, raw)
        logger.info("Seeded session secret in %s", path)
    return raw
