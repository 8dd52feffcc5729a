"""Window store interfaces and the persisted window record.

The limiter depends on this abstraction (not a concrete store) so the file
backend can be swapped for an in-memory fake in tests or a shared counter
service later without touching callers.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from contextlib import AbstractContextManager
from dataclasses import dataclass
from typing import Any

RECORD_VERSION = 1


class WindowDecodeError(ValueError):
    """Raised when persisted window state cannot be decoded."""


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


@dataclass
class RateWindow:
    """Counting window for one key.

    Attributes:
        window_start: UNIX epoch seconds when the window began.
        count: Requests observed since ``window_start``.
    """

    window_start: int
    count: int

    def to_json(self) -> str:
        """Serialize as ``{"t": ..., "c": ..., "v": 1}``."""
        return json.dumps(
            {"t": self.window_start, "c": self.count, "v": RECORD_VERSION},
            separators=(",", ":"),
        )

    @classmethod
    def from_json(cls, raw: str | bytes) -> "RateWindow":
        """Decode a persisted record.

        Records written without a version field are read as version 1.

        Raises:
            WindowDecodeError: If the payload is not a valid window record.
        """
        try:
            data = json.loads(raw)
        except (TypeError, ValueError) as exc:
            raise WindowDecodeError(f"window record is not JSON: {exc}") from exc

        if not isinstance(data, dict):
            raise WindowDecodeError("window record must be a JSON object")

        version = data.get("v", RECORD_VERSION)
        if version != RECORD_VERSION:
            raise WindowDecodeError(f"unsupported window record version: {version!r}")

        window_start = data.get("t")
        count = data.get("c")
        if not _is_int(window_start) or not _is_int(count):
            raise WindowDecodeError("window record needs integer 't' and 'c'")
        if count < 0:
            raise WindowDecodeError("window count must be >= 0")

        return cls(window_start=window_start, count=count)


@dataclass(frozen=True)
class RateLimitResult:
    """Result of a rate limit check.

    Attributes:
        allowed: Whether the request is allowed to proceed.
        limit: Max requests per window.
        count: Requests counted in the current window, this one included.
        remaining: Remaining requests in the current window (0 when blocked).
        reset_at: UNIX epoch seconds after which the window resets.
        retry_after_seconds: Suggested wait time in seconds when blocked.
    """

    allowed: bool
    limit: int
    count: int
    remaining: int
    reset_at: int
    retry_after_seconds: int | None


class AbstractWindowStore(ABC):
    """Keyed storage for ``RateWindow`` records."""

    name: str = "abstract"

    @abstractmethod
    def get(self, key: str) -> RateWindow | None:
        """Return the stored window for key.

        Returns:
            The window, or None when nothing usable is stored.

        Raises:
            StorageAppError: If the backend cannot be read.
        """
        raise NotImplementedError

    @abstractmethod
    def put(self, key: str, window: RateWindow) -> None:
        """Persist the window for key.

        Raises:
            StorageAppError: If the backend cannot be written.
        """
        raise NotImplementedError

    @abstractmethod
    def lock(self, key: str) -> AbstractContextManager[Any]:
        """Return a context manager that serializes updates for key."""
        raise NotImplementedError

    def describe(self) -> dict[str, Any]:
        """Return safe, non-secret metadata about the backend."""
        return {"backend": self.name}
