"""Global exception handlers for consistent error responses.

Design:
- RateLimitExceededAppError → 429 with the chat endpoints' body
  ``{"status": "error", "message": "rate limit"}`` plus throttling headers
- ValidationAppError (incl. InvalidArgumentAppError) → 400
- StorageAppError → 503
- Unexpected Exception → generic 500 (safety net)
- All error bodies carry ``status: "error"`` and the request_id
"""

import logging

from fastapi import Request
from fastapi.responses import JSONResponse

from app.core.errors import (
    AppError,
    RateLimitExceededAppError,
    StorageAppError,
    ValidationAppError,
)
from app.core.logging import get_request_id
from app.core.rate_limit import rate_limit_headers

logger = logging.getLogger(__name__)


def _status_for(exc: AppError) -> int:
    if isinstance(exc, RateLimitExceededAppError):
        return 429
    if isinstance(exc, StorageAppError):
        return 503
    if isinstance(exc, ValidationAppError):
        return 400
    return 500


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    """Render domain errors as ``{"status": "error", "message", "code", ...}``.

    Args:
        request: FastAPI request object.
        exc: AppError instance (or subclass).

    Returns:
        JSONResponse with the mapped status code.
    """
    status_code = _status_for(exc)

    logger.warning(
        "app_error_handled",
        extra={
            "error_code": exc.code,
            "status_code": status_code,
            "request_path": request.url.path,
            "has_details": bool(exc.details),
        },
    )

    content: dict = {
        "status": "error",
        "message": exc.message,
        "code": exc.code,
        "request_id": get_request_id(),
    }
    if exc.details:
        content["details"] = exc.details

    headers = None
    if isinstance(exc, RateLimitExceededAppError) and exc.result is not None:
        headers = rate_limit_headers(exc.result) or None

    return JSONResponse(status_code=status_code, content=content, headers=headers)


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Fallback for unexpected errors; never leaks internals to the client."""
    logger.error(
        "unhandled_exception",
        extra={
            "error_type": type(exc).__name__,
            "error_msg": str(exc),
            "request_path": request.url.path,
            "request_method": request.method,
        },
    )

    return JSONResponse(
        status_code=500,
        content={
            "status": "error",
            "message": "internal server error",
            "code": "internal_server_error",
            "request_id": get_request_id(),
        },
    )


def setup_exception_handlers(app) -> None:
    """Register all exception handlers with the FastAPI app."""
    app.exception_handler(AppError)(app_error_handler)
    app.exception_handler(Exception)(general_exception_handler)
