"""
Request and response models for the rate limiter HTTP API.
"""

from typing import Optional

from pydantic import BaseModel, Field

from .ratelimit.token_bucket import MAX_LIMIT, Decision


class CheckRequest(BaseModel):
    """Rate limit check request."""
    limit: int = Field(..., le=MAX_LIMIT, description="Requests per minute")
    burst: Optional[int] = Field(
        default=None,
        ge=0,
        le=MAX_LIMIT,
        description="Bucket capacity; defaults to the limit"
    )


class CheckResponse(BaseModel):
    """Rate limit check response."""
    allowed: bool
    remaining: int
    retry_after_ms: int

    @classmethod
    def from_decision(cls, decision: Decision) -> "CheckResponse":
        return cls(
            allowed=decision.allowed,
            remaining=decision.remaining,
            retry_after_ms=decision.retry_after_ms
        )
