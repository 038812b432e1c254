"""
Shared error handling for the rate limiter service.
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


class RateLimiterException(Exception):
    """Base exception for rate limiter errors."""

    status_code = 500

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
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


class InvalidLimitError(RateLimiterException):
    """Requested rate cannot be enforced (non-positive requests per minute)."""

    status_code = 400

    def __init__(self, message: str = "Invalid rate limit", details: Optional[Dict[str, Any]] = None):
        super().__init__("INVALID_LIMIT", message, details)


class StoreUnavailableError(RateLimiterException):
    """The counter store could not be reached or timed out."""

    status_code = 503

    def __init__(self, message: str = "Store unavailable", details: Optional[Dict[str, Any]] = None):
        super().__init__("STORE_UNAVAILABLE", message, details)


class StoreProtocolError(RateLimiterException):
    """The counter store answered with a reply that cannot be interpreted."""

    status_code = 502

    def __init__(self, message: str = "Unexpected store reply", details: Optional[Dict[str, Any]] = None):
        super().__init__("STORE_PROTOCOL_ERROR", message, details)
