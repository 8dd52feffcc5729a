"""Application factory for the FastAPI app.

Centralizes app construction (metadata, middleware, handlers, routers) so
tests can build fresh instances.
"""

from __future__ import annotations

from fastapi import FastAPI

from app.api.routes import health_router, rate_limit_router
from app.core.config import settings
from app.core.exception_handlers import setup_exception_handlers
from app.core.logging import configure_logging
from app.core.middleware import request_id_middleware


def create_app() -> FastAPI:
    """Create and configure the FastAPI application instance.

    Returns:
        Configured FastAPI app with middleware, handlers and routers.
    """
    # Logging first so subsequent init logs are formatted as desired
    configure_logging(settings.log)

    app = FastAPI(
        title="Session Throttle API",
        description=(
            "Per-session fixed-window rate limiting for chat and order endpoints. "
            "Callers report a session id (or LINE user id) once per request and "
            "receive either an allowed decision or HTTP 429 "
            '{"status": "error", "message": "rate limit"}.'
        ),
        version="0.1.0",
    )

    app.middleware("http")(request_id_middleware)

    setup_exception_handlers(app)

    app.include_router(rate_limit_router, prefix="/v1")
    app.include_router(health_router)

    return app
