"""Per-key fixed-window request limiter.

Each key owns one ``RateWindow``. A check either opens a fresh window
(``count = 1``) or adds one to the current window, persists the result, and
admits the request while ``count <= limit``. A window only expires once
strictly more than ``window_seconds`` have elapsed since it began, so a check
at exactly ``window_start + 60`` still counts against the old window.

Fixed windows under-count bursts that straddle a boundary: a caller can get up
to ``2 * limit`` requests through within a couple of seconds. That trade-off is
kept deliberately; callers may rely on it.
"""

from __future__ import annotations

import hashlib
import logging
import time
from typing import Any, Callable

from app.adapters.rate_limit.base import AbstractWindowStore, RateLimitResult, RateWindow
from app.core.errors import InvalidArgumentAppError, StorageAppError

logger = logging.getLogger(__name__)

GUEST_KEY = "guest"
DEFAULT_WINDOW_SECONDS = 60


def resolve_rate_limit_key(*candidates: Any) -> str:
    """Pick the limiter key from request identifiers.

    Returns the first candidate that is not None and not blank, in order
    (e.g. session id, then LINE user id), falling back to ``"guest"``.

    Examples:
        >>> resolve_rate_limit_key(None, "U123")
        'U123'
        >>> resolve_rate_limit_key("", None)
        'guest'
    """
    for candidate in candidates:
        if candidate is None:
            continue
        value = str(candidate).strip()
        if value:
            return value
    return GUEST_KEY


def hash_rate_limit_key(key: str) -> str:
    """Hash a limiter key for logging without exposing session identifiers."""
    return hashlib.sha256(key.encode()).hexdigest()[:16]


class RateLimiter:
    """Fixed-window limiter bound to one key.

    Args:
        key: Caller identifier. Empty or None falls back to ``"guest"``.
        limit: Maximum requests admitted per window.
        store: Where windows are persisted.
        window_seconds: Window length.
        clock: Time source returning UNIX time in seconds.
        strict_storage: Re-raise storage failures instead of logging them.

    Raises:
        InvalidArgumentAppError: If key, limit or window_seconds are unusable.
    """

    def __init__(
        self,
        key: str | None,
        limit: int,
        *,
        store: AbstractWindowStore,
        window_seconds: int = DEFAULT_WINDOW_SECONDS,
        clock: Callable[[], float] = time.time,
        strict_storage: bool = False,
    ) -> None:
        if key is not None and not isinstance(key, str):
            raise InvalidArgumentAppError(
                code="invalid_rate_limit_key",
                message="key must be a string",
                details={"field": "key"},
            )
        if isinstance(limit, bool) or not isinstance(limit, int) or limit < 1:
            raise InvalidArgumentAppError(
                code="invalid_rate_limit",
                message="limit must be a positive integer",
                details={"field": "limit", "value": limit},
            )
        if isinstance(window_seconds, bool) or not isinstance(window_seconds, int) or window_seconds < 1:
            raise InvalidArgumentAppError(
                code="invalid_rate_limit_window",
                message="window_seconds must be a positive integer",
                details={"field": "window_seconds", "value": window_seconds},
            )

        self._key = key or GUEST_KEY
        self._limit = limit
        self._store = store
        self._window_seconds = window_seconds
        self._clock = clock
        self._strict_storage = strict_storage

    @property
    def key(self) -> str:
        return self._key

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def window_seconds(self) -> int:
        return self._window_seconds

    def check(self) -> bool:
        """Count this request and report whether it may proceed."""
        return self.consume().allowed

    def consume(self) -> RateLimitResult:
        """Count this request against the key's window.

        State is persisted on every call, including the call that pushes the
        count over the limit.

        Returns:
            RateLimitResult describing the decision and the window.

        Raises:
            StorageAppError: Only when ``strict_storage`` is enabled.
        """
        with self._store.lock(self._key):
            now = int(self._clock())
            current = self._load()

            if current is None or now - current.window_start > self._window_seconds:
                window = RateWindow(window_start=now, count=1)
            else:
                window = RateWindow(window_start=current.window_start, count=current.count + 1)

            self._save(window)

        return self._build_result(window, now, count=window.count, allowed=window.count <= self._limit)

    def peek(self) -> RateLimitResult:
        """Report the key's current window without counting a request.

        ``allowed`` tells whether one more request would be admitted now.
        Nothing is persisted.
        """
        with self._store.lock(self._key):
            now = int(self._clock())
            current = self._load()

        if current is None or now - current.window_start > self._window_seconds:
            window = RateWindow(window_start=now, count=0)
        else:
            window = current

        return self._build_result(window, now, count=window.count, allowed=window.count < self._limit)

    def _load(self) -> RateWindow | None:
        try:
            return self._store.get(self._key)
        except StorageAppError as exc:
            self._report_storage_error(exc)
            return None

    def _save(self, window: RateWindow) -> None:
        try:
            self._store.put(self._key, window)
        except StorageAppError as exc:
            self._report_storage_error(exc)

    def _report_storage_error(self, exc: StorageAppError) -> None:
        logger.warning(
            "rate_limit.storage_error",
            extra={
                "error_code": exc.code,
                "backend": self._store.name,
                "key_hash": hash_rate_limit_key(self._key),
                "strict": self._strict_storage,
            },
        )
        if self._strict_storage:
            raise exc

    def _build_result(self, window: RateWindow, now: int, *, count: int, allowed: bool) -> RateLimitResult:
        # First timestamp at which a check opens a new window
        reset_at = window.window_start + self._window_seconds + 1
        return RateLimitResult(
            allowed=allowed,
            limit=self._limit,
            count=count,
            remaining=max(0, self._limit - count),
            reset_at=reset_at,
            retry_after_seconds=None if allowed else max(1, reset_at - now),
        )
