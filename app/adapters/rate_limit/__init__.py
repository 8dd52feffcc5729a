"""Rate limit window stores.

A small abstraction layer so the limiter can run against per-key files in a
shared temp dir (default), an in-memory map, or another keyed store later
without changing the limiter or the API layer.
"""

from __future__ import annotations

from app.adapters.rate_limit.base import AbstractWindowStore, RateLimitResult, RateWindow
from app.adapters.rate_limit.file_store import FileWindowStore
from app.adapters.rate_limit.in_memory import InMemoryWindowStore
from app.core.config import RateLimitSettings
from app.core.errors import ValidationAppError


def create_window_store(cfg: RateLimitSettings) -> AbstractWindowStore:
    """Build the window store selected by configuration.

    Args:
        cfg: Rate limit settings.

    Returns:
        AbstractWindowStore: Configured store instance.

    Raises:
        ValidationAppError: If the backend name is unknown.
    """
    backend = cfg.backend.lower()
    if backend == "file":
        return FileWindowStore(cfg.storage_dir, prefix=cfg.file_prefix)
    if backend == "memory":
        return InMemoryWindowStore()

    raise ValidationAppError(
        code="unknown_rate_limit_backend",
        message=f"Unknown rate limit backend: {cfg.backend}",
        details={"field": "backend", "value": cfg.backend, "hint": "Use 'file' or 'memory'"},
    )


__all__ = [
    "AbstractWindowStore",
    "FileWindowStore",
    "InMemoryWindowStore",
    "RateLimitResult",
    "RateWindow",
    "create_window_store",
]
