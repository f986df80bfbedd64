"""Ceremony error taxonomy and its HTTP status mapping."""


class CeremonyError(Exception):
    """
    Base class for failures surfaced to the caller of a ceremony step.

    ``message`` is the externally visible text. Details that could act as an
    oracle belong in the log, never in the message.
    """

    status_code = 500
    message = "Internal error"

    def __init__(self, detail: str = "") -> None:
        super().__init__(detail or self.message)
        self.detail = detail


class BadRequest(CeremonyError):
    """Malformed or missing input, or an ambiguous response shape."""

    status_code = 400
    message = "Bad request"

    def __init__(self, detail: str = "") -> None:
        super().__init__(detail)
        # Input problems are safe to describe to the client.
        if detail:
            self.message = detail


class Unauthorized(CeremonyError):
    """Unknown user at login, stale or mismatched challenge, or failed verification."""

    status_code = 401
    message = "Unauthorized"


class Conflict(CeremonyError):
    status_code = 409
    message = "User handle already registered"


class Unavailable(CeremonyError):
    """Store or verifier I/O failure; the caller may retry."""

    status_code = 503
    message = "Service temporarily unavailable"
