"""Shared fixtures: real stores on tmp_path and a scripted stand-in verifier."""

from pathlib import Path
from typing import Any, Iterable, Optional

import pytest

from tessera.auth.verifier import (
    MalformedResponse,
    VerificationFailed,
    VerifiedAssertion,
    VerifiedRegistration,
)
from tessera.config.loader import Settings
from tessera.core.ceremony import CeremonyOrchestrator
from tessera.storage.credentials import AuthenticatorRecord, CredentialStore
from tessera.storage.kv import KeyValueStore, b64url_decode, b64url_encode
from tessera.storage.sessions import SessionStore

SECRET = "0123456789abcdef" * 4
ORIGIN = "http://localhost:8000"


class FakeVerifier:
    """
    Stands in for WebAuthnVerifier without any cryptography.

    A payload "verifies" when its ``challenge`` field equals the expected
    challenge and, for assertions, its ``public_key`` matches the stored key.
    The authenticator's counter is taken from the payload as-is.
    """

    def __init__(self) -> None:
        self.registration_calls: list[dict[str, Any]] = []
        self.assertion_calls: list[dict[str, Any]] = []
        self.fail_with: Optional[Exception] = None

    def registration_options(
        self,
        user_id: bytes,
        handle: str,
        display_name: str,
        challenge: bytes,
        exclude: Iterable[AuthenticatorRecord] = (),
    ) -> dict[str, Any]:
        return {
            "challenge": b64url_encode(challenge),
            "rp": {"id": "localhost", "name": "Tessera"},
            "user": {"id": b64url_encode(user_id), "name": handle, "displayName": display_name},
            "excludeCredentials": [
                {"type": "public-key", "id": b64url_encode(c.credential_id)} for c in exclude
            ],
        }

    def authentication_options(
        self, challenge: bytes, credentials: Iterable[AuthenticatorRecord]
    ) -> dict[str, Any]:
        return {
            "challenge": b64url_encode(challenge),
            "allowCredentials": [
                {
                    "type": "public-key",
                    "id": b64url_encode(c.credential_id),
                    "transports": list(c.transports),
                }
                for c in credentials
            ],
        }

    def claimed_credential_id(self, payload: dict[str, Any]) -> bytes:
        try:
            return b64url_decode(payload["rawId"])
        except (KeyError, TypeError, ValueError) as exc:
            raise MalformedResponse(str(exc)) from exc

    def _check(self, payload: dict[str, Any], expected_challenge: bytes, origin: str) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        if payload.get("challenge") != b64url_encode(expected_challenge):
            raise VerificationFailed("challenge mismatch")
        if origin != ORIGIN:
            raise VerificationFailed("origin mismatch")

    def verify_registration(
        self, payload: dict[str, Any], expected_challenge: bytes, expected_origin: str
    ) -> VerifiedRegistration:
        self.registration_calls.append(payload)
        self._check(payload, expected_challenge, expected_origin)
        return VerifiedRegistration(
            credential_id=b64url_decode(payload["rawId"]),
            public_key=b64url_decode(payload["public_key"]),
            sign_count=payload.get("counter", 0),
            transports=payload["response"].get("transports", []),
        )

    def verify_assertion(
        self,
        payload: dict[str, Any],
        expected_challenge: bytes,
        expected_origin: str,
        credential: AuthenticatorRecord,
        prev_counter: int,
    ) -> VerifiedAssertion:
        self.assertion_calls.append({"payload": payload, "prev_counter": prev_counter})
        self._check(payload, expected_challenge, expected_origin)
        if b64url_decode(payload["public_key"]) != credential.public_key:
            raise VerificationFailed("bad signature")
        return VerifiedAssertion(
            credential_id=credential.credential_id,
            new_sign_count=payload["counter"],
        )


def attestation(
    options: dict[str, Any],
    credential_id: bytes = b"cred-1",
    public_key: bytes = b"pk-1",
    counter: int = 0,
    transports: Optional[list[str]] = None,
) -> dict[str, Any]:
    """Build a browser-shaped attestation body answering ``options``."""
    return {
        "id": b64url_encode(credential_id),
        "rawId": b64url_encode(credential_id),
        "type": "public-key",
        "response": {
            "clientDataJSON": "e30",
            "attestationObject": "o2NmbXRkbm9uZQ",
            "transports": transports or ["internal"],
        },
        "challenge": options["challenge"],
        "public_key": b64url_encode(public_key),
        "counter": counter,
    }


def assertion(
    options: dict[str, Any],
    credential_id: bytes = b"cred-1",
    public_key: bytes = b"pk-1",
    counter: int = 1,
) -> dict[str, Any]:
    """Build a browser-shaped assertion body answering ``options``."""
    return {
        "id": b64url_encode(credential_id),
        "rawId": b64url_encode(credential_id),
        "type": "public-key",
        "response": {
            "clientDataJSON": "e30",
            "authenticatorData": "SZYN5YgO",
            "signature": "MEUCIQ",
        },
        "challenge": options["challenge"],
        "public_key": b64url_encode(public_key),
        "counter": counter,
    }


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(storage_path=tmp_path, session_secret=SECRET, origin=ORIGIN)


@pytest.fixture()
def credentials(settings: Settings) -> CredentialStore:
    return CredentialStore(KeyValueStore(settings.storage_path / "users"))


@pytest.fixture()
def sessions(settings: Settings) -> SessionStore:
    return SessionStore(
        KeyValueStore(settings.storage_path / "sessions"),
        settings.session_ttl,
        settings.session_login_ttl,
    )


@pytest.fixture()
def verifier() -> FakeVerifier:
    return FakeVerifier()


@pytest.fixture()
def orchestrator(
    credentials: CredentialStore,
    sessions: SessionStore,
    verifier: FakeVerifier,
    settings: Settings,
) -> CeremonyOrchestrator:
    return CeremonyOrchestrator(credentials, sessions, verifier, settings)  # type: ignore[arg-type]
