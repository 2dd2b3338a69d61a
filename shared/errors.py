"""
Shared error handling for the Accounts Ledger.
"""

from typing import Dict, Any, Optional

from opentelemetry import trace
from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """Standard error response format."""

    trace_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class LedgerException(Exception):
    """Base exception for ledger services."""

    status_code = 400

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        # Get trace ID from current span
        trace_id = None
        current_span = trace.get_current_span()
        if current_span and current_span.is_recording():
            span_context = current_span.get_span_context()
            if span_context.trace_id != 0:
                trace_id = f"{span_context.trace_id:032x}"

        return ErrorResponse(
            trace_id=trace_id,
            code=self.code,
            message=self.message,
            details=self.details
        )


class NotFoundError(LedgerException):
    """Account, coupon or other record is absent."""

    status_code = 404

    def __init__(self, message: str = "Not found", details: Optional[Dict[str, Any]] = None):
        super().__init__("NOT_FOUND", message, details)


class AlreadyExistsError(LedgerException):
    """Unique record already present (duplicate email)."""

    status_code = 409

    def __init__(self, message: str = "Already exists", details: Optional[Dict[str, Any]] = None):
        super().__init__("ALREADY_EXISTS", message, details)


class ValidationError(LedgerException):
    """Validation-related errors."""

    status_code = 422

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)


class InvalidCouponError(LedgerException):
    """Coupon cannot be redeemed: unknown, inactive, expired or exhausted."""

    def __init__(self, reason: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.reason = reason
        super().__init__("INVALID_COUPON", message, {"reason": reason, **(details or {})})


class AuthenticationError(LedgerException):
    """Authentication-related errors."""

    status_code = 401

    def __init__(self, message: str = "Authentication failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("AUTHENTICATION_ERROR", message, details)


class AuthorizationError(LedgerException):
    """Authorization-related errors."""

    status_code = 403

    def __init__(self, message: str = "Unauthorized", details: Optional[Dict[str, Any]] = None):
        super().__init__("AUTHORIZATION_ERROR", message, details)


class ConcurrencyConflict(LedgerException):
    """A guarded write lost a race against another writer of the same row."""

    status_code = 409

    def __init__(self, message: str = "Concurrent modification", details: Optional[Dict[str, Any]] = None):
        super().__init__("CONCURRENCY_CONFLICT", message, details)


class DuplicateEventError(LedgerException):
    """Provider event id was already recorded."""

    status_code = 409

    def __init__(self, event_id: str):
        self.event_id = event_id
        super().__init__("DUPLICATE_EVENT", f"Provider event {event_id} already processed", {"event_id": event_id})


class ServiceError(LedgerException):
    """Service-related errors."""

    status_code = 500

    def __init__(self, message: str = "Service error", details: Optional[Dict[str, Any]] = None):
        super().__init__("SERVICE_ERROR", message, details)
