"""User and authenticator records, persisted by user handle."""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from tessera.storage.kv import (
    KeyValueStore,
    RecordError,
    b64url_decode,
    b64url_encode,
)

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class AuthenticatorRecord:
    """A registered authenticator: the credential id, its public key and counter."""

    credential_id: bytes
    public_key: bytes
    sign_count: int
    transports: list[str] = field(default_factory=list)
    added_at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "credential_id": b64url_encode(self.credential_id),
            "public_key": b64url_encode(self.public_key),
            "sign_count": self.sign_count,
            "transports": list(self.transports),
            "added_at": self.added_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "AuthenticatorRecord":
        try:
            sign_count = d["sign_count"]
            if not isinstance(sign_count, int) or isinstance(sign_count, bool) or sign_count < 0:
                raise ValueError(f"invalid sign_count {sign_count!r}")
            return cls(
                credential_id=b64url_decode(d["credential_id"]),
                public_key=b64url_decode(d["public_key"]),
                sign_count=sign_count,
                transports=[str(t) for t in d.get("transports") or []],
                added_at=datetime.fromisoformat(d["added_at"]),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise RecordError(f"Malformed authenticator record: {exc}") from exc


@dataclass
class UserRecord:
    """
    A registered user.

    ``user_id`` is the opaque WebAuthn user handle sent to authenticators. It is
    random, never derived from ``handle``, and fixed for the user's lifetime.
    """

    user_id: bytes
    handle: str
    display_name: str
    authenticators: list[AuthenticatorRecord] = field(default_factory=list)
    created_at: datetime = field(default_factory=_utcnow)

    def find_authenticator(self, credential_id: bytes) -> Optional[AuthenticatorRecord]:
        """Return the authenticator whose id equals ``credential_id`` byte-for-byte."""
        return next(
            (a for a in self.authenticators if a.credential_id == credential_id),
            None,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": b64url_encode(self.user_id),
            "handle": self.handle,
            "display_name": self.display_name,
            "authenticators": [a.to_dict() for a in self.authenticators],
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "UserRecord":
        try:
            authenticators = [AuthenticatorRecord.from_dict(a) for a in d["authenticators"]]
            record = cls(
                user_id=b64url_decode(d["user_id"]),
                handle=str(d["handle"]),
                display_name=str(d.get("display_name") or d["handle"]),
                authenticators=authenticators,
                created_at=datetime.fromisoformat(d["created_at"]),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise RecordError(f"Malformed user record: {exc}") from exc
        if not record.authenticators:
            raise RecordError(f"User {record.handle!r} has no authenticators")
        return record


class CredentialStore:
    """
    Durable mapping from user handle to :class:`UserRecord`.

    Every read returns a fresh copy; every write replaces the whole record.
    """

    def __init__(self, kv: KeyValueStore) -> None:
        self._kv = kv

    def get(self, handle: str) -> Optional[UserRecord]:
        raw = self._kv.get(handle)
        if raw is None:
            return None
        return UserRecord.from_dict(raw)

    def exists(self, handle: str) -> bool:
        return self._kv.exists(handle)

    def put(self, handle: str, record: UserRecord) -> None:
        """Overwrite the stored record (last writer wins)."""
        self._kv.put(handle, record.to_dict())

    def create(self, handle: str, record: UserRecord) -> None:
        """
        Store a new user.

        Raises:
            RecordExists: If ``handle`` is already registered.
        """
        self._kv.create(handle, record.to_dict())
        logger.info("Created user %r with %d authenticator(s)", handle, len(record.authenticators))

    def update(self, handle: str, fn: Callable[[UserRecord], UserRecord]) -> UserRecord:
        """
        Read-modify-write a user record under the handle's lock.

        ``fn`` receives a freshly loaded copy and returns the record to persist.
        Exceptions raised by ``fn`` abort the write and propagate.

        Raises:
            KeyError: If ``handle`` is not registered.
        """
        with self._kv.locked(handle):
            current = self.get(handle)
            if current is None:
                raise KeyError(handle)
            updated = fn(current)
            self.put(handle, updated)
            return updated

    def handles(self) -> list[str]:
        return self._kv.keys()
