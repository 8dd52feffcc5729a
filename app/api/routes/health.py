from __future__ import annotations

from fastapi import APIRouter

from app.core.rate_limit import get_window_store

router = APIRouter(tags=["Health"])


@router.get("/health")
def health_check() -> dict:
    """Liveness check reporting which window store is in use."""

    return {"status": "ok", "store": get_window_store().describe()}
