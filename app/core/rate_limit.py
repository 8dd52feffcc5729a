"""Rate limiting wiring for FastAPI routes.

This module connects the limiter service to configuration and the HTTP layer.

Design goals:
- Minimal coupling: routes call ``enforce_rate_limit`` with the request's key.
- Swap-friendly: the window store is chosen by settings behind an abstract
  interface.
- Handlers short-circuit with HTTP 429 by letting ``RateLimitExceededAppError``
  reach the global exception handler.
"""

from __future__ import annotations

import logging
import threading

from app.adapters.rate_limit import AbstractWindowStore, RateLimitResult, create_window_store
from app.core.config import settings
from app.core.errors import RateLimitExceededAppError
from app.services.rate_limiter import RateLimiter, hash_rate_limit_key

logger = logging.getLogger(__name__)


_store: AbstractWindowStore | None = None
_store_config: tuple[str, str | None, str] | None = None
_store_lock = threading.Lock()


def get_window_store() -> AbstractWindowStore:
    """Return the process-wide window store.

    The instance is cached in-module so per-key locks are shared across
    requests. If the store configuration changes (primarily in tests), the
    store is rebuilt.

    Returns:
        AbstractWindowStore: Configured store instance.
    """

    global _store, _store_config

    cfg = settings.rate_limit
    config = (cfg.backend, cfg.storage_dir, cfg.file_prefix)

    with _store_lock:
        if _store is None or _store_config != config:
            _store = create_window_store(cfg)
            _store_config = config
            logger.info("rate_limit.store_ready", extra=_store.describe())
        return _store


def build_rate_limiter(key: str | None, limit: int | None = None) -> RateLimiter:
    """Build a limiter for key using configured defaults.

    Args:
        key: Limiter key (session id, LINE user id, ...).
        limit: Per-window limit overriding ``RATE_LIMIT_REQUESTS_PER_WINDOW``.

    Raises:
        InvalidArgumentAppError: If limit is not a positive integer.
    """

    cfg = settings.rate_limit
    return RateLimiter(
        key,
        cfg.requests_per_window if limit is None else limit,
        store=get_window_store(),
        window_seconds=cfg.window_seconds,
        strict_storage=cfg.strict_storage,
    )


def enforce_rate_limit(key: str | None, limit: int | None = None) -> RateLimitResult:
    """Consume one request from key's budget.

    When rate limiting is disabled the request is allowed without touching
    storage.

    Args:
        key: Limiter key for the caller.
        limit: Optional per-call limit override.

    Returns:
        RateLimitResult for an allowed request.

    Raises:
        RateLimitExceededAppError: When the key is over its limit (HTTP 429).
    """

    limiter = build_rate_limiter(key, limit)

    if not settings.rate_limit.enabled:
        return RateLimitResult(
            allowed=True,
            limit=limiter.limit,
            count=0,
            remaining=limiter.limit,
            reset_at=0,
            retry_after_seconds=None,
        )

    result = limiter.consume()
    key_hash = hash_rate_limit_key(limiter.key)

    if result.allowed:
        logger.debug(
            "rate_limit.allowed",
            extra={
                "key_hash": key_hash,
                "limit": result.limit,
                "remaining": result.remaining,
                "window_s": limiter.window_seconds,
            },
        )
        return result

    logger.warning(
        "rate_limit.exceeded",
        extra={
            "key_hash": key_hash,
            "limit": result.limit,
            "count": result.count,
            "window_s": limiter.window_seconds,
            "retry_after_s": result.retry_after_seconds,
        },
    )
    raise RateLimitExceededAppError(
        code="rate_limit_exceeded",
        message="rate limit",
        details={
            "limit": result.limit,
            "remaining": result.remaining,
            "reset_at": result.reset_at,
            "retry_after": result.retry_after_seconds or 0,
        },
        result=result,
    )


def rate_limit_headers(result: RateLimitResult) -> dict[str, str]:
    """Build Retry-After and X-RateLimit-* headers for a throttled response."""

    if not settings.rate_limit.include_headers:
        return {}

    headers = {
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": str(result.reset_at),
    }
    if result.retry_after_seconds is not None:
        headers["Retry-After"] = str(result.retry_after_seconds)
    return headers
