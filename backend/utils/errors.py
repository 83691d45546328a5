"""Billing error taxonomy.

Every service-level failure raised by the billing core is a BillingError
subclass carrying the HTTP status the API layer should answer with and a
stable machine-readable error_code.
"""
from typing import Any, Dict, Optional


class BillingError(Exception):
    """Base exception for billing operations."""
    status_code = 500
    error_code = "BILLING_ERROR"

    def __init__(self, message: str, error_code: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        body = {"detail": self.message, "error_code": self.error_code}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(BillingError):
    """Malformed plan, quota or patch input."""
    status_code = 400
    error_code = "VALIDATION_ERROR"


class AuthError(BillingError):
    """Signature mismatch on a webhook or checkout payment."""
    status_code = 401
    error_code = "INVALID_SIGNATURE"


class NotFoundError(BillingError):
    status_code = 404
    error_code = "NOT_FOUND"


class ConflictError(BillingError):
    """Duplicate live subscription, referenced plan, disallowed transition, over-refund."""
    status_code = 409
    error_code = "CONFLICT"


class TransientError(BillingError):
    """Gateway, network or persistence failure; the caller may retry."""
    status_code = 503
    error_code = "TRANSIENT_FAILURE"
