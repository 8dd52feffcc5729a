"""Application-level exception types.

Domain errors raised by the limiter, its stores and the HTTP layer. Each maps
to one HTTP status in ``app.core.exception_handlers``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, NotRequired, TypedDict


class ErrorDetails(TypedDict, total=False):
    """Structured error context for observability and clients."""

    code: str
    message: str
    hint: str
    field: str
    value: Any
    backend: str
    operation: str
    limit: int
    remaining: int
    reset_at: int
    retry_after: int
    request_id: str
    context: NotRequired[dict[str, Any]]


@dataclass
class AppError(Exception):
    """Base error for application/domain failures.

    Attributes:
        code: Stable, machine-readable error code.
        message: Human-readable error message.
        details: Optional structured details for debugging/observability.
    """

    code: str
    message: str
    details: ErrorDetails | None = None

    def __post_init__(self) -> None:
        # Populate Exception args so str(error) is useful in logs/tracebacks.
        super().__init__(self.message)


class ValidationAppError(AppError):
    """Raised when input/config validation fails."""


class InvalidArgumentAppError(ValidationAppError):
    """Raised when a limiter is constructed with unusable arguments."""


class StorageAppError(AppError):
    """Raised when the window store cannot read or persist state."""


@dataclass
class RateLimitExceededAppError(AppError):
    """Raised when a key has used up its budget for the current window.

    The triggering ``RateLimitResult`` is attached so the HTTP layer can build
    Retry-After and X-RateLimit-* headers.
    """

    result: Any = None
