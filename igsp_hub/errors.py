"""
Error taxonomy for the hook endpoint.

Every failure that reaches a caller is a ``HubError`` carrying a stable
``code`` and an HTTP status. Callers branch on ``code``; ``message`` is for
humans only.
"""


class HubError(Exception):
    code = "Internal"
    status_code = 500

    def __init__(self, message: str | None = None):
        self.message = message or self.code
        super().__init__(self.message)

    def to_envelope(self) -> dict:
        return {"error": self.code, "message": self.message}


class InvalidSignature(HubError):
    code = "InvalidSignature"
    status_code = 401


class InvalidCredentials(HubError):
    code = "InvalidCredentials"
    status_code = 403


class StaleRequest(HubError):
    code = "StaleRequest"
    status_code = 401


class ReplayedRequest(HubError):
    code = "ReplayedRequest"
    status_code = 401


class ValidationError(HubError):
    code = "ValidationError"
    status_code = 400


class UnsupportedCurrency(ValidationError):
    code = "UnsupportedCurrency"


class UnknownGame(HubError):
    code = "UnknownGame"
    status_code = 400


class UnknownSession(HubError):
    code = "UnknownSession"
    status_code = 400


class InactiveSession(HubError):
    code = "InactiveSession"
    status_code = 409


class SessionConflict(HubError):
    code = "SessionConflict"
    status_code = 409


class InsufficientFunds(HubError):
    code = "InsufficientFunds"
    status_code = 400


class UnknownReferencedTransaction(HubError):
    code = "UnknownReferencedTransaction"
    status_code = 400


class AlreadyRefunded(HubError):
    code = "AlreadyRefunded"
    status_code = 409


class TransactionIdConflict(HubError):
    code = "TransactionIdConflict"
    status_code = 409


class Internal(HubError):
    code = "Internal"
    status_code = 500


class Busy(Internal):
    """Work could not start inside the caller's time budget; safe to retry."""

    status_code = 503
