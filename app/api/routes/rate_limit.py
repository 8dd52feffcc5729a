from __future__ import annotations

import logging

from fastapi import APIRouter

from app.core.config import settings
from app.core.rate_limit import build_rate_limiter, enforce_rate_limit, get_window_store
from app.schemas.rate_limit import RateLimitCheckRequest, RateLimitStatusResponse
from app.services.rate_limiter import hash_rate_limit_key, resolve_rate_limit_key

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Rate limit"])


@router.post("/rate-limit/check", response_model=RateLimitStatusResponse)
def check_rate_limit(payload: RateLimitCheckRequest) -> RateLimitStatusResponse:
    """Count one request for the caller and report whether it may proceed.

    Chat and cart handlers call this once per request before doing any work.

    Args:
        payload: Caller identifiers and an optional per-caller limit.

    Returns:
        RateLimitStatusResponse: Decision and window metadata (HTTP 200).

    Raises:
        RateLimitExceededAppError: Rendered as HTTP 429
            ``{"status": "error", "message": "rate limit"}``.
        InvalidArgumentAppError: Rendered as HTTP 400 when limit <= 0.
    """
    key = resolve_rate_limit_key(payload.order_session_id, payload.line_user_id)
    result = enforce_rate_limit(key, payload.limit)
    return RateLimitStatusResponse.from_result(
        result,
        window_seconds=settings.rate_limit.window_seconds,
        enabled=settings.rate_limit.enabled,
    )


@router.get("/rate-limit/{key}", response_model=RateLimitStatusResponse)
def get_rate_limit_status(key: str, limit: int | None = None) -> RateLimitStatusResponse:
    """Show the key's current window without counting a request."""
    limiter = build_rate_limiter(key, limit)
    result = limiter.peek()
    logger.debug(
        "rate_limit.peek",
        extra={"key_hash": hash_rate_limit_key(limiter.key), "count": result.count},
    )
    return RateLimitStatusResponse.from_result(
        result,
        window_seconds=limiter.window_seconds,
        backend=get_window_store().name,
    )
