"""Pydantic schemas for rate limit requests and responses."""

from __future__ import annotations

from typing import Any, Dict

from pydantic import BaseModel, Field

from app.adapters.rate_limit.base import RateLimitResult


class RateLimitCheckRequest(BaseModel):
    """Identifiers of the caller being throttled.

    The key is the session id when present, otherwise the LINE user id,
    otherwise the shared ``guest`` bucket.
    """

    order_session_id: str | int | None = Field(
        default=None,
        description="Order session identifier (preferred limiter key).",
    )
    line_user_id: str | None = Field(
        default=None,
        description="LINE user id, used when no order session exists.",
    )
    limit: int | None = Field(
        default=None,
        description="Per-window limit for this caller; defaults to the configured limit.",
    )


class RateLimitStatusResponse(BaseModel):
    """Outcome of a rate limit check or a window snapshot."""

    status: str = Field("ok", description="'ok' for allowed checks.")
    allowed: bool = Field(..., description="Whether the request may proceed.")
    limit: int = Field(..., description="Maximum requests per window.")
    count: int = Field(..., description="Requests counted in the current window.")
    remaining: int = Field(..., description="Requests left in the current window.")
    reset_at: int = Field(
        ..., description="UNIX seconds at which a new window opens (0 when limiting is disabled)."
    )
    meta: Dict[str, Any] = Field(
        default_factory=dict,
        description="Limiter metadata (window length, backend).",
    )

    @classmethod
    def from_result(cls, result: RateLimitResult, **meta: Any) -> "RateLimitStatusResponse":
        return cls(
            allowed=result.allowed,
            limit=result.limit,
            count=result.count,
            remaining=result.remaining,
            reset_at=result.reset_at,
            meta=meta,
        )
