"""TTL-bound ceremony state keyed by the transport's session identifier."""

import enum
import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Iterator, Optional

from tessera.storage.kv import (
    KeyValueStore,
    RecordError,
    StoreError,
    b64url_decode,
    b64url_encode,
)

logger = logging.getLogger(__name__)

# Long enough to find and tap an authenticator, short enough that an unconsumed
# challenge does not stay replayable.
DEFAULT_SESSION_TTL = 300
# Authenticated sessions last as long as the signed cookie that names them.
DEFAULT_LOGIN_TTL = 86400


class CeremonyKind(enum.Enum):
    REGISTRATION = "registration"
    LOGIN = "login"


@dataclass
class SessionState:
    """
    Ephemeral state of one browser session.

    A session has at most one outstanding ceremony: ``pending_ceremony`` names
    it and ``pending_challenge`` is the challenge it must answer.
    ``pending_user_id`` is only set while a registration is pending.
    """

    logged_in: bool = False
    pending_ceremony: Optional[CeremonyKind] = None
    pending_handle: Optional[str] = None
    pending_user_id: Optional[bytes] = None
    pending_challenge: Optional[bytes] = None
    authenticated_handle: Optional[str] = None

    def clear_pending(self) -> None:
        self.pending_ceremony = None
        self.pending_handle = None
        self.pending_user_id = None
        self.pending_challenge = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "logged_in": self.logged_in,
            "pending_ceremony": self.pending_ceremony.value if self.pending_ceremony else None,
            "pending_handle": self.pending_handle,
            "pending_user_id": (
                b64url_encode(self.pending_user_id) if self.pending_user_id is not None else None
            ),
            "pending_challenge": (
                b64url_encode(self.pending_challenge)
                if self.pending_challenge is not None
                else None
            ),
            "authenticated_handle": self.authenticated_handle,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "SessionState":
        """
        Build a state from its stored form, validating every field.

        Raises:
            RecordError: If any field has the wrong type or an unknown value.
        """
        try:
            logged_in = d.get("logged_in", False)
            if not isinstance(logged_in, bool):
                raise ValueError(f"logged_in must be a bool, got {logged_in!r}")
            kind = d.get("pending_ceremony")
            state = cls(
                logged_in=logged_in,
                pending_ceremony=CeremonyKind(kind) if kind is not None else None,
                pending_handle=_optional_str(d, "pending_handle"),
                pending_user_id=_optional_bytes(d, "pending_user_id"),
                pending_challenge=_optional_bytes(d, "pending_challenge"),
                authenticated_handle=_optional_str(d, "authenticated_handle"),
            )
        except (TypeError, ValueError) as exc:
            raise RecordError(f"Malformed session state: {exc}") from exc
        if state.logged_in and not state.authenticated_handle:
            raise RecordError("Malformed session state: logged in without a handle")
        if state.pending_user_id is not None and state.pending_ceremony is not CeremonyKind.REGISTRATION:
            raise RecordError("Malformed session state: user id pending outside registration")
        return state


def _optional_str(d: dict[str, Any], key: str) -> Optional[str]:
    value = d.get(key)
    if value is not None and not isinstance(value, str):
        raise ValueError(f"{key} must be a string, got {value!r}")
    return value


def _optional_bytes(d: dict[str, Any], key: str) -> Optional[bytes]:
    value = _optional_str(d, key)
    return b64url_decode(value) if value is not None else None


class SessionStore:
    """
    Durable mapping from session id to :class:`SessionState` with expiry.

    Session ids come from the transport layer; this store never mints or
    checks them. Expiry uses wall-clock time so it survives restarts.

    An outstanding challenge always expires after ``ttl``. A logged-in
    session as a whole is kept for ``login_ttl``, so an abandoned ceremony
    never signs the user out.
    """

    def __init__(
        self,
        kv: KeyValueStore,
        ttl: int = DEFAULT_SESSION_TTL,
        login_ttl: int = DEFAULT_LOGIN_TTL,
    ) -> None:
        self._kv = kv
        self.ttl = ttl
        self.login_ttl = login_ttl

    @contextmanager
    def locked(self, session_id: str) -> Iterator[None]:
        """Serialize load/save sequences for one session."""
        with self._kv.locked(session_id):
            yield

    def load(self, session_id: str) -> SessionState:
        """Return the stored state, or a fresh default if absent, expired or malformed."""
        try:
            raw = self._kv.get(session_id)
        except RecordError:
            logger.warning("Discarding unreadable session %s…", session_id[:8])
            return SessionState()
        if raw is None:
            return SessionState()
        now = time.time()
        expires_at = raw.get("expires_at")
        if not isinstance(expires_at, (int, float)) or now >= expires_at:
            logger.debug("Session %s… expired", session_id[:8])
            return SessionState()
        try:
            state = SessionState.from_dict(raw.get("state") or {})
        except RecordError as exc:
            logger.warning("Discarding session %s…: %s", session_id[:8], exc)
            return SessionState()
        if state.pending_ceremony is not None or state.pending_challenge is not None:
            pending_until = raw.get("pending_expires_at", expires_at)
            if not isinstance(pending_until, (int, float)) or now >= pending_until:
                logger.debug("Pending ceremony of session %s… expired", session_id[:8])
                state.clear_pending()
        return state

    def save(self, session_id: str, state: SessionState, ttl: Optional[int] = None) -> None:
        """
        Persist ``state``.

        ``ttl`` bounds the pending challenge (default ``self.ttl``). The entry
        itself lives for ``login_ttl`` while the state is logged in.
        """
        ttl = self.ttl if ttl is None else ttl
        now = time.time()
        lifetime = max(ttl, self.login_ttl) if state.logged_in else ttl
        doc: dict[str, Any] = {"expires_at": now + lifetime, "state": state.to_dict()}
        if state.pending_challenge is not None:
            doc["pending_expires_at"] = now + ttl
        self._kv.put(session_id, doc)

    def clear(self, session_id: str) -> None:
        self._kv.delete(session_id)

    def purge_expired(self) -> int:
        """Delete expired or unreadable sessions. Returns the number removed."""
        now = time.time()
        removed = 0
        for session_id in self._kv.keys():
            with self._kv.locked(session_id):
                try:
                    raw = self._kv.get(session_id)
                except RecordError:
                    raw = None
                except StoreError:
                    logger.exception("Could not read session %s… during purge", session_id[:8])
                    continue
                expires_at = (raw or {}).get("expires_at")
                if isinstance(expires_at, (int, float)) and now < expires_at:
                    continue
                if self._kv.delete(session_id):
                    removed += 1
        if removed:
            logger.info("Purged %d expired session(s)", removed)
        return removed
