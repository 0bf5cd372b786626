"""
quoteledger/errors.py

Error taxonomy for the lifecycle engine.

Each failure has a stable code so the API layer can render messaging without the
engine knowing about presentation. The app factory turns any DomainError into a
JSON response (see quoteledger/__init__.py).
"""

from __future__ import annotations

from typing import Any


class DomainError(Exception):
    """Base class for errors returned to the caller as structured results."""

    code = "DOMAIN_ERROR"
    status_code = 400
    default_message = "Request could not be processed."

    def __init__(self, message: str | None = None, *, details: Any = None):
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> dict:
        body: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details is not None:
            body["details"] = self.details
        return {"error": body}


class Unauthorized(DomainError):
    code = "UNAUTHORIZED"
    status_code = 401
    default_message = "Authentication required."


class Forbidden(DomainError):
    code = "FORBIDDEN"
    status_code = 403
    default_message = "You are not allowed to perform this action."


class ValidationFailed(DomainError):
    code = "VALIDATION_ERROR"
    status_code = 400
    default_message = "Validation failed."


class InvalidTransition(DomainError):
    code = "INVALID_TRANSITION"
    status_code = 409
    default_message = "This transition is not allowed from the current status."


class InvalidDocumentState(DomainError):
    code = "INVALID_DOCUMENT_STATE"
    status_code = 409
    default_message = "Operation not permitted in the document's current status."


class Overpayment(DomainError):
    code = "OVERPAYMENT"
    status_code = 422
    default_message = "Payment amount exceeds the balance due."


class NegativeAdjustedTotal(DomainError):
    code = "NEGATIVE_ADJUSTED_TOTAL"
    status_code = 422
    default_message = "Adjusted total cannot be negative."


class InvalidDiscount(DomainError):
    code = "INVALID_DISCOUNT"
    status_code = 422
    default_message = "Discount cannot exceed subtotal plus markup."


class NotFound(DomainError):
    code = "NOT_FOUND"
    status_code = 404
    default_message = "Resource not found."


class Conflict(DomainError):
    code = "CONFLICT"
    status_code = 409
    default_message = "The document was modified concurrently. Reload and retry."


class ImmutableRecordError(Exception):
    """Raised when attempting to modify or delete an append-only record."""
    pass
