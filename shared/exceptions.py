"""
shared/exceptions.py
Error kinds raised by the booking/payment lifecycle.

Every error carries a stable ``kind`` and an HTTP status; the handler in
main.py renders them as {"success": false, "error": kind, "message": ...}.
"""

from typing import Any, Dict, Optional


class AppError(Exception):
    """Base exception for all domain errors."""

    kind = "InternalError"
    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"success": False, "error": self.kind, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(AppError):
    """Missing or malformed input."""
    kind = "ValidationError"
    status_code = 400


class AuthenticationError(AppError):
    kind = "AuthenticationError"
    status_code = 401


class PermissionDenied(AppError):
    """Actor is not allowed to act on this booking."""
    kind = "PermissionError"
    status_code = 403


class NotFoundError(AppError):
    kind = "NotFoundError"
    status_code = 404


class ConflictError(AppError):
    """The record was already processed (or another caller won the race)."""
    kind = "ConflictError"
    status_code = 409


class InvalidStateError(AppError):
    """The requested transition is not an edge from the current status."""
    kind = "InvalidStateError"
    status_code = 409


class NotEligibleError(AppError):
    kind = "NotEligibleError"
    status_code = 400


class NotOnboardedError(NotEligibleError):
    """Expert has no connected account or has not finished onboarding."""
    kind = "NotOnboardedError"


class PaymentProcessingError(AppError):
    """Provider returned an unexpected or failed state. Ledger is left unchanged."""
    kind = "PaymentProcessingError"
    status_code = 500


class ProviderUnavailableError(AppError):
    """Network failure or provider outage. Safe to retry."""
    kind = "ProviderUnavailableError"
    status_code = 502
