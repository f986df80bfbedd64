"""Session identifiers for Tessera: minting and cookie signing (itsdangerous)."""

import secrets
from typing import Optional

from itsdangerous import BadSignature, SignatureExpired, TimestampSigner

COOKIE_NAME = "tessera_session"
DEFAULT_MAX_AGE = 86400  # 24 hours


def generate_secret() -> str:
    """Generate a cryptographically secure 32-byte hex secret for cookie signing."""
    return secrets.token_hex(32)


def new_session_id() -> str:
    """Mint an unguessable session identifier."""
    return secrets.token_urlsafe(32)


def sign_session_id(session_id: str, secret: str) -> str:
    """
    Create a signed cookie value carrying ``session_id``.

    Args:
        session_id: Identifier from :func:`new_session_id`.
        secret: Hex secret from config (session.secret).

    Returns:
        Signed string to set as the cookie value.
    """
    signer = TimestampSigner(secret, salt="tessera.session")
    return signer.sign(session_id).decode()


def unsign_session_id(
    cookie: str, secret: str, max_age: int = DEFAULT_MAX_AGE
) -> Optional[str]:
    """
    Verify a session cookie and extract its session id.

    Args:
        cookie: Cookie value from the request.
        secret: Hex secret from config (session.secret).
        max_age: Maximum age in seconds before the cookie is considered expired.

    Returns:
        The session id, or None if the cookie is missing, tampered or expired.
    """
    if not cookie:
        return None
    signer = TimestampSigner(secret, salt="tessera.session")
    try:
        return signer.unsign(cookie, max_age=max_age).decode()
    except (BadSignature, SignatureExpired):
        return None
