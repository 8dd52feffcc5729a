"""In-memory window store.

Notes:
- Per-process only: running multiple workers multiplies the effective limit.
- Thread-safe: a store-wide lock guards the maps, plus one lock per key for
  the limiter's read-modify-write.
"""

from __future__ import annotations

import threading
from typing import Any

from app.adapters.rate_limit.base import AbstractWindowStore, RateWindow


class InMemoryWindowStore(AbstractWindowStore):
    """Dict-backed store used in tests and single-process deployments."""

    name = "memory"

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._windows: dict[str, RateWindow] = {}
        self._key_locks: dict[str, threading.Lock] = {}

    def get(self, key: str) -> RateWindow | None:
        with self._lock:
            window = self._windows.get(key)
            if window is None:
                return None
            # Hand out a copy so callers can't mutate stored state in place
            return RateWindow(window_start=window.window_start, count=window.count)

    def put(self, key: str, window: RateWindow) -> None:
        with self._lock:
            self._windows[key] = RateWindow(
                window_start=window.window_start, count=window.count
            )

    def lock(self, key: str) -> threading.Lock:
        with self._lock:
            key_lock = self._key_locks.get(key)
            if key_lock is None:
                key_lock = threading.Lock()
                self._key_locks[key] = key_lock
            return key_lock

    def clear(self) -> None:
        """Drop every stored window."""
        with self._lock:
            self._windows.clear()

    def describe(self) -> dict[str, Any]:
        with self._lock:
            return {"backend": self.name, "keys": len(self._windows)}
