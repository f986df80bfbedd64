"""Tessera: passkey relying party for WebAuthn registration and login."""

__version__ = "0.1.0"
