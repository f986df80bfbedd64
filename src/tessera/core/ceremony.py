"""
Registration and login ceremonies.

Each session moves through::

    Anonymous ──begin_registration──> PendingRegistration ──complete──> Authenticated
    Anonymous ──begin_login─────────> PendingLogin ─────────complete──> Authenticated
    Authenticated ──logout──> Anonymous

A pending challenge is single-use: ``complete`` removes it from the session and
persists that removal before any verification runs, so a replayed response
finds nothing to answer. Failures leave the session without a pending
ceremony; the caller starts over with a fresh ``begin_*``.
"""

import hashlib
import hmac
import logging
import secrets
import unicodedata
from dataclasses import dataclass
from typing import Any, Callable, Optional, TypeVar, Union

from tessera.auth.verifier import MalformedResponse, VerificationFailed, WebAuthnVerifier
from tessera.config.loader import Settings
from tessera.core.errors import BadRequest, CeremonyError, Conflict, Unauthorized, Unavailable
from tessera.storage.credentials import AuthenticatorRecord, CredentialStore, UserRecord
from tessera.storage.kv import RecordExists, StoreError
from tessera.storage.sessions import CeremonyKind, SessionState, SessionStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

CHALLENGE_BYTES = 32
USER_ID_BYTES = 32
MAX_HANDLE_BYTES = 128
_DECOY_TRANSPORTS = ("internal", "hybrid")


# ── Response shapes ───────────────────────────────────────────────────────────


@dataclass
class AttestationResponse:
    """A browser's answer to ``navigator.credentials.create``."""

    payload: dict[str, Any]


@dataclass
class AssertionResponse:
    """A browser's answer to ``navigator.credentials.get``."""

    payload: dict[str, Any]


CeremonyResponse = Union[AttestationResponse, AssertionResponse]

_RESPONSE_TYPES = {
    CeremonyKind.REGISTRATION: AttestationResponse,
    CeremonyKind.LOGIN: AssertionResponse,
}


def parse_ceremony_response(body: Any) -> CeremonyResponse:
    """
    Classify a JSON body as an attestation or an assertion.

    An explicit ``"ceremony"`` field decides when present. Otherwise the
    ``response`` object must carry exactly one of ``attestationObject`` or
    ``authenticatorData``.

    Raises:
        BadRequest: If the body is not an object or its kind is ambiguous.
    """
    if not isinstance(body, dict):
        raise BadRequest("Expected a JSON object")
    response = body.get("response")
    if not isinstance(response, dict):
        raise BadRequest("Missing 'response' object")

    tag = body.get("ceremony")
    if tag is not None:
        try:
            kind = CeremonyKind(tag)
        except ValueError:
            raise BadRequest(f"Unknown ceremony {tag!r}") from None
        return _RESPONSE_TYPES[kind](payload=body)

    has_attestation = response.get("attestationObject") is not None
    has_assertion = response.get("authenticatorData") is not None
    if has_attestation and not has_assertion:
        return AttestationResponse(payload=body)
    if has_assertion and not has_attestation:
        return AssertionResponse(payload=body)
    raise BadRequest("Response is neither an attestation nor an assertion")


def validate_handle(handle: Any) -> str:
    """
    Normalize a user handle.

    Raises:
        BadRequest: If the handle is empty, too long or contains control characters.
    """
    if not isinstance(handle, str):
        raise BadRequest("User handle is required")
    handle = handle.strip()
    if not handle:
        raise BadRequest("User handle is required")
    if len(handle.encode("utf-8")) > MAX_HANDLE_BYTES:
        raise BadRequest(f"User handle must be at most {MAX_HANDLE_BYTES} bytes")
    if any(unicodedata.category(c).startswith("C") for c in handle):
        raise BadRequest("User handle contains control characters")
    return handle


@dataclass
class CeremonyResult:
    kind: CeremonyKind
    handle: str


# ── Orchestrator ──────────────────────────────────────────────────────────────


class CeremonyOrchestrator:
    """
    Drives ceremonies for any number of sessions.

    Constructed once at startup with its collaborators and shared by every
    request. Each public method runs one ceremony step for one session while
    holding that session's lock, so two racing requests for the same session
    are applied one after the other. Sessions never block each other.
    """

    def __init__(
        self,
        credentials: CredentialStore,
        sessions: SessionStore,
        verifier: WebAuthnVerifier,
        settings: Settings,
    ) -> None:
        self._credentials = credentials
        self._sessions = sessions
        self._verifier = verifier
        self._settings = settings

    @property
    def sessions(self) -> SessionStore:
        return self._sessions

    # ── Store and verifier access ─────────────────────────────────────────────

    def _store(self, fn: Callable[..., T], *args: Any) -> T:
        try:
            return fn(*args)
        except StoreError as exc:
            logger.exception("Store operation %s failed", getattr(fn, "__name__", fn))
            raise Unavailable(str(exc)) from exc

    def _verify(self, fn: Callable[..., T], *args: Any) -> T:
        try:
            return fn(*args)
        except MalformedResponse as exc:
            raise BadRequest("Malformed credential response") from exc
        except VerificationFailed as exc:
            raise Unauthorized(str(exc)) from exc
        except Exception as exc:
            logger.exception("Verifier call %s failed", getattr(fn, "__name__", fn))
            raise Unavailable(str(exc)) from exc

    def _save(self, session_id: str, state: SessionState) -> None:
        self._store(self._sessions.save, session_id, state)

    def _decoy_authenticator(self, handle: str) -> AuthenticatorRecord:
        # Stable per handle, shaped like a platform passkey record.
        digest = hmac.new(
            self._settings.session_secret.encode(),
            b"decoy-credential:" + handle.encode("utf-8"),
            hashlib.sha256,
        ).digest()
        return AuthenticatorRecord(
            credential_id=digest,
            public_key=b"",
            sign_count=0,
            transports=list(_DECOY_TRANSPORTS),
        )

    def _counter_advances(self, stored: int, new: int) -> bool:
        if new > stored:
            return True
        return self._settings.allow_counterless_authenticators and stored == 0 and new == 0

    # ── Operations ────────────────────────────────────────────────────────────

    def current(self, session_id: str) -> SessionState:
        """Return the session's state without modifying it."""
        return self._store(self._sessions.load, session_id)

    def begin_registration(self, session_id: str, handle: Any) -> dict[str, Any]:
        """
        Start registering a new user, or another authenticator for the user
        this session is logged in as.

        Returns:
            PublicKeyCredentialCreationOptions as a JSON-ready dict.

        Raises:
            BadRequest: Invalid handle.
            Conflict: Handle already registered (to someone other than this session's user).
            Unavailable: Store or verifier failure.
        """
        handle = validate_handle(handle)
        with self._sessions.locked(session_id):
            state = self._store(self._sessions.load, session_id)
            user: Optional[UserRecord] = None
            if state.logged_in and state.authenticated_handle == handle:
                user = self._store(self._credentials.get, handle)
            if user is None and self._store(self._credentials.exists, handle):
                logger.info("Registration refused: %r already exists", handle)
                raise Conflict(f"handle {handle!r} exists")

            # An existing user keeps their user id; a new one gets a random id.
            user_id = user.user_id if user else secrets.token_bytes(USER_ID_BYTES)
            challenge = secrets.token_bytes(CHALLENGE_BYTES)
            options = self._verify(
                self._verifier.registration_options,
                user_id,
                handle,
                user.display_name if user else handle,
                challenge,
                user.authenticators if user else [],
            )

            state.clear_pending()
            state.pending_ceremony = CeremonyKind.REGISTRATION
            state.pending_handle = handle
            state.pending_user_id = user_id
            state.pending_challenge = challenge
            self._save(session_id, state)

        logger.info("Registration started for %r", handle)
        return options

    def begin_login(self, session_id: str, handle: Any) -> dict[str, Any]:
        """
        Start a login for an existing user.

        Returns:
            PublicKeyCredentialRequestOptions as a JSON-ready dict, listing the
            user's registered credential ids.

        Raises:
            BadRequest: Invalid handle.
            Unauthorized: Unknown handle (unless ``reveal_unknown_users`` is off).
            Unavailable: Store or verifier failure.
        """
        handle = validate_handle(handle)
        with self._sessions.locked(session_id):
            state = self._store(self._sessions.load, session_id)
            user = self._store(self._credentials.get, handle)
            if user is not None:
                authenticators = user.authenticators
            elif self._settings.reveal_unknown_users:
                logger.info("Login refused: unknown user %r", handle)
                raise Unauthorized(f"unknown user {handle!r}")
            else:
                # Indistinguishable from a real user until completion fails.
                logger.info("Issuing decoy login challenge for unknown user %r", handle)
                authenticators = [self._decoy_authenticator(handle)]

            challenge = secrets.token_bytes(CHALLENGE_BYTES)
            options = self._verify(self._verifier.authentication_options, challenge, authenticators)

            state.clear_pending()
            state.pending_ceremony = CeremonyKind.LOGIN
            state.pending_handle = handle
            state.pending_challenge = challenge
            self._save(session_id, state)

        logger.info("Login started for %r", handle)
        return options

    def complete(self, session_id: str, response: CeremonyResponse) -> CeremonyResult:
        """
        Finish the session's pending ceremony with the authenticator's response.

        Raises:
            BadRequest: Malformed response.
            Unauthorized: No pending ceremony, kind mismatch or failed verification.
            Conflict: The handle was registered by someone else meanwhile.
            Unavailable: Store or verifier failure.
        """
        with self._sessions.locked(session_id):
            state = self._store(self._sessions.load, session_id)
            kind = state.pending_ceremony
            handle = state.pending_handle
            user_id = state.pending_user_id
            challenge = state.pending_challenge
            if kind is None or handle is None or challenge is None:
                raise Unauthorized("no pending ceremony")

            # Consume the challenge before verifying so it can never be reused.
            state.clear_pending()
            self._save(session_id, state)

            try:
                if not isinstance(response, _RESPONSE_TYPES[kind]):
                    raise Unauthorized(
                        f"{type(response).__name__} does not answer a pending {kind.value}"
                    )
                if isinstance(response, AttestationResponse):
                    self._complete_registration(response, state, handle, user_id, challenge)
                else:
                    self._complete_login(response, handle, challenge)
            except CeremonyError as exc:
                logger.warning(
                    "%s for %r failed (%s): %s",
                    kind.value.capitalize(),
                    handle,
                    type(exc).__name__,
                    exc,
                )
                raise

            state.logged_in = True
            state.authenticated_handle = handle
            self._save(session_id, state)

        logger.info("%s complete for %r", kind.value.capitalize(), handle)
        return CeremonyResult(kind=kind, handle=handle)

    def _complete_registration(
        self,
        response: AttestationResponse,
        state: SessionState,
        handle: str,
        user_id: Optional[bytes],
        challenge: bytes,
    ) -> None:
        if user_id is None:
            raise Unauthorized("registration pending without a user id")
        verified = self._verify(
            self._verifier.verify_registration,
            response.payload,
            challenge,
            self._settings.origin,
        )
        authenticator = AuthenticatorRecord(
            credential_id=verified.credential_id,
            public_key=verified.public_key,
            sign_count=verified.sign_count,
            transports=verified.transports,
        )

        existing = self._store(self._credentials.get, handle)
        if existing is not None and existing.user_id == user_id:
            if not (state.logged_in and state.authenticated_handle == handle):
                raise Unauthorized(f"session no longer logged in as {handle!r}")
            self._add_authenticator(handle, user_id, authenticator)
            return

        record = UserRecord(
            user_id=user_id,
            handle=handle,
            display_name=handle,
            authenticators=[authenticator],
        )
        try:
            self._credentials.create(handle, record)
        except RecordExists as exc:
            raise Conflict(f"handle {handle!r} registered concurrently") from exc
        except StoreError as exc:
            logger.exception("Could not persist new user %r", handle)
            raise Unavailable(str(exc)) from exc

    def _add_authenticator(
        self, handle: str, user_id: bytes, authenticator: AuthenticatorRecord
    ) -> None:
        def _append(record: UserRecord) -> UserRecord:
            if record.user_id != user_id:
                raise Conflict(f"handle {handle!r} re-registered during ceremony")
            if record.find_authenticator(authenticator.credential_id) is not None:
                raise Conflict("credential already registered")
            record.authenticators.append(authenticator)
            return record

        try:
            updated = self._credentials.update(handle, _append)
        except KeyError as exc:
            raise Unauthorized(f"user {handle!r} removed during registration") from exc
        except StoreError as exc:
            logger.exception("Could not persist new authenticator for %r", handle)
            raise Unavailable(str(exc)) from exc
        logger.info("User %r now has %d authenticator(s)", handle, len(updated.authenticators))

    def _complete_login(self, response: AssertionResponse, handle: str, challenge: bytes) -> None:
        # Parse before the lookup so a malformed body fails the same way for any handle.
        credential_id = self._verify(self._verifier.claimed_credential_id, response.payload)
        user = self._store(self._credentials.get, handle)
        if user is None:
            raise Unauthorized(f"unknown user {handle!r}")
        authenticator = user.find_authenticator(credential_id)
        if authenticator is None:
            raise Unauthorized("credential id not registered to this user")

        verified = self._verify(
            self._verifier.verify_assertion,
            response.payload,
            challenge,
            self._settings.origin,
            authenticator,
            authenticator.sign_count,
        )
        new_count = verified.new_sign_count

        def _advance(record: UserRecord) -> UserRecord:
            current = record.find_authenticator(credential_id)
            if current is None:
                raise Unauthorized("credential removed during login")
            if not self._counter_advances(current.sign_count, new_count):
                raise Unauthorized(
                    f"signature counter did not advance ({current.sign_count} -> {new_count}); "
                    "possible cloned authenticator"
                )
            current.sign_count = new_count
            return record

        try:
            self._credentials.update(handle, _advance)
        except KeyError as exc:
            raise Unauthorized(f"user {handle!r} removed during login") from exc
        except StoreError as exc:
            logger.exception("Could not persist counter for %r", handle)
            raise Unavailable(str(exc)) from exc

    def logout(self, session_id: str) -> None:
        """End the session's login and any pending ceremony. Idempotent."""
        with self._sessions.locked(session_id):
            state = self._store(self._sessions.load, session_id)
            if state.authenticated_handle:
                logger.info("Logout for %r", state.authenticated_handle)
            self._store(self._sessions.clear, session_id)
