"""Adapter around py_webauthn: option generation and response verification for Tessera."""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Union

import webauthn
from webauthn.helpers import (
    parse_authentication_credential_json,
    parse_registration_credential_json,
)
from webauthn.helpers.exceptions import WebAuthnException
from webauthn.helpers.structs import (
    AuthenticatorSelectionCriteria,
    AuthenticatorTransport,
    PublicKeyCredentialDescriptor,
    ResidentKeyRequirement,
    UserVerificationRequirement,
)

from tessera.storage.credentials import AuthenticatorRecord

logger = logging.getLogger(__name__)

CredentialPayload = Union[str, dict[str, Any]]


class VerificationFailed(Exception):
    """The verifier rejected a registration or assertion response."""


class MalformedResponse(VerificationFailed):
    """The response could not be parsed into a credential structure."""


@dataclass
class VerifiedRegistration:
    """Authenticator material returned by a successful attestation check."""

    credential_id: bytes
    public_key: bytes
    sign_count: int
    transports: list[str] = field(default_factory=list)


@dataclass
class VerifiedAssertion:
    credential_id: bytes
    new_sign_count: int


def _descriptor(record: AuthenticatorRecord) -> PublicKeyCredentialDescriptor:
    transports = []
    for t in record.transports:
        try:
            transports.append(AuthenticatorTransport(t))
        except ValueError:
            logger.debug("Ignoring unknown transport hint %r", t)
    return PublicKeyCredentialDescriptor(id=record.credential_id, transports=transports or None)


class WebAuthnVerifier:
    """
    Relying-party front end to py_webauthn.

    Performs no cryptography of its own. Library exceptions are translated to
    :class:`VerificationFailed` / :class:`MalformedResponse`; anything else
    propagates to the caller.
    """

    def __init__(
        self,
        rp_id: str,
        rp_name: str = "Tessera",
        user_verification: str = "preferred",
        timeout_ms: int = 60000,
    ) -> None:
        self.rp_id = rp_id
        self.rp_name = rp_name
        self.user_verification = UserVerificationRequirement(user_verification)
        self.timeout_ms = timeout_ms

    @property
    def require_user_verification(self) -> bool:
        return self.user_verification is UserVerificationRequirement.REQUIRED

    # ── Options ───────────────────────────────────────────────────────────────

    def registration_options(
        self,
        user_id: bytes,
        handle: str,
        display_name: str,
        challenge: bytes,
        exclude: Iterable[AuthenticatorRecord] = (),
    ) -> dict[str, Any]:
        """
        Build PublicKeyCredentialCreationOptions for ``navigator.credentials.create``.

        ``exclude`` lists credentials the user already has, so an authenticator
        is not registered twice.

        Returns:
            JSON-ready dict with bytes fields base64url-encoded.
        """
        options = webauthn.generate_registration_options(
            rp_id=self.rp_id,
            rp_name=self.rp_name,
            user_id=user_id,
            user_name=handle,
            user_display_name=display_name,
            challenge=challenge,
            timeout=self.timeout_ms,
            exclude_credentials=[_descriptor(c) for c in exclude],
            authenticator_selection=AuthenticatorSelectionCriteria(
                resident_key=ResidentKeyRequirement.PREFERRED,
                user_verification=self.user_verification,
            ),
        )
        return json.loads(webauthn.options_to_json(options))

    def authentication_options(
        self,
        challenge: bytes,
        credentials: Iterable[AuthenticatorRecord],
    ) -> dict[str, Any]:
        """Build PublicKeyCredentialRequestOptions listing the acceptable credential ids."""
        options = webauthn.generate_authentication_options(
            rp_id=self.rp_id,
            challenge=challenge,
            timeout=self.timeout_ms,
            allow_credentials=[_descriptor(c) for c in credentials],
            user_verification=self.user_verification,
        )
        return json.loads(webauthn.options_to_json(options))

    # ── Verification ──────────────────────────────────────────────────────────

    def claimed_credential_id(self, payload: CredentialPayload) -> bytes:
        """
        Return the raw credential id an assertion response claims to come from.

        Raises:
            MalformedResponse: If the payload is not an assertion structure.
        """
        try:
            credential = parse_authentication_credential_json(payload)
        except (WebAuthnException, ValueError, TypeError, KeyError) as exc:
            raise MalformedResponse(f"Unparseable assertion: {exc}") from exc
        return bytes(credential.raw_id)

    def verify_registration(
        self,
        payload: CredentialPayload,
        expected_challenge: bytes,
        expected_origin: str,
    ) -> VerifiedRegistration:
        """
        Verify an attestation response against the issued challenge.

        Raises:
            MalformedResponse: If the payload cannot be parsed.
            VerificationFailed: If py_webauthn rejects the attestation.
        """
        try:
            credential = parse_registration_credential_json(payload)
        except (WebAuthnException, ValueError, TypeError, KeyError) as exc:
            raise MalformedResponse(f"Unparseable attestation: {exc}") from exc
        try:
            verification = webauthn.verify_registration_response(
                credential=credential,
                expected_challenge=expected_challenge,
                expected_rp_id=self.rp_id,
                expected_origin=expected_origin,
                require_user_verification=self.require_user_verification,
            )
        except WebAuthnException as exc:
            raise VerificationFailed(f"Attestation rejected: {exc}") from exc
        transports = [t.value for t in (credential.response.transports or [])]
        return VerifiedRegistration(
            credential_id=verification.credential_id,
            public_key=verification.credential_public_key,
            sign_count=verification.sign_count,
            transports=transports,
        )

    def verify_assertion(
        self,
        payload: CredentialPayload,
        expected_challenge: bytes,
        expected_origin: str,
        credential: AuthenticatorRecord,
        prev_counter: int,
    ) -> VerifiedAssertion:
        """
        Verify an assertion signature with the stored public key.

        Returns:
            The new signature counter reported by the authenticator. The caller
            is responsible for enforcing counter monotonicity and persisting it.

        Raises:
            MalformedResponse: If the payload cannot be parsed.
            VerificationFailed: If py_webauthn rejects the assertion.
        """
        try:
            parsed = parse_authentication_credential_json(payload)
        except (WebAuthnException, ValueError, TypeError, KeyError) as exc:
            raise MalformedResponse(f"Unparseable assertion: {exc}") from exc
        try:
            verification = webauthn.verify_authentication_response(
                credential=parsed,
                expected_challenge=expected_challenge,
                expected_rp_id=self.rp_id,
                expected_origin=expected_origin,
                credential_public_key=credential.public_key,
                credential_current_sign_count=prev_counter,
                require_user_verification=self.require_user_verification,
            )
        except WebAuthnException as exc:
            raise VerificationFailed(f"Assertion rejected: {exc}") from exc
        return VerifiedAssertion(
            credential_id=verification.credential_id,
            new_sign_count=verification.new_sign_count,
        )
