"""Typed failures raised by the ledger services.

Every error carries a machine readable ``Kind``, a human readable message and
optional ``Details`` (for example the remaining spending allowance). Routers
translate them into HTTP responses; services never import the web layer.
"""


class LedgerError(Exception):
    Kind = "LedgerError"

    def __init__(self, message: str, details: dict | None = None) -> None:
        super().__init__(message)
        self.Message = message
        self.Details = details or {}

    def ToPayload(self) -> dict:
        payload = {"kind": self.Kind, "message": self.Message}
        payload.update(self.Details)
        return payload


class ValidationError(LedgerError):
    Kind = "ValidationError"


class NotFoundError(LedgerError):
    Kind = "NotFoundError"


class InsufficientFundsError(LedgerError):
    Kind = "InsufficientFundsError"


class PolicyViolationError(LedgerError):
    Kind = "PolicyViolationError"


class ConflictError(LedgerError):
    Kind = "ConflictError"


class TransientError(LedgerError):
    """Infrastructure failure (lock timeout, lost connection). Safe to retry."""

    Kind = "TransientError"
