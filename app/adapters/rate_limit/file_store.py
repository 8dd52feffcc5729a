"""File-backed window store.

One small JSON file per key (``<prefix><key>``) in a shared directory, which
defaults to the system temp dir. Files are never removed; abandoned keys
accumulate until someone cleans the directory.

Notes:
- Writes go to a sibling temp file and are moved into place with
  ``os.replace`` so a reader never sees half-written JSON.
- ``lock(key)`` is process-local. Several worker processes sharing one
  directory can still lose updates for the same key.
"""

from __future__ import annotations

import hashlib
import logging
import os
import re
import tempfile
import threading
from pathlib import Path
from typing import Any

from app.adapters.rate_limit.base import AbstractWindowStore, RateWindow, WindowDecodeError
from app.core.errors import StorageAppError

logger = logging.getLogger(__name__)

_SAFE_KEY_RE = re.compile(r"^[A-Za-z0-9_-][A-Za-z0-9_.-]{0,127}$")


def key_to_filename(prefix: str, key: str) -> str:
    """Map a limiter key to a filename inside the store directory.

    Simple keys are used verbatim. Anything else (path separators, leading
    dots, very long or non-ASCII keys) is replaced by its sha256 digest behind
    a "~" marker, which no verbatim key can contain.

    Examples:
        >>> key_to_filename("rate_", "sess1")
        'rate_sess1'
        >>> key_to_filename("rate_", "../etc/passwd").startswith("rate_~")
        True
    """
    if _SAFE_KEY_RE.match(key):
        return f"{prefix}{key}"
    digest = hashlib.sha256(key.encode("utf-8")).hexdigest()
    return f"{prefix}~{digest}"


class FileWindowStore(AbstractWindowStore):
    """Persist one ``RateWindow`` per key as a JSON file."""

    name = "file"

    def __init__(self, directory: str | os.PathLike[str] | None = None, *, prefix: str = "rate_") -> None:
        if os.sep in prefix or (os.altsep and os.altsep in prefix):
            raise ValueError("prefix must not contain path separators")

        self._directory = Path(directory) if directory else Path(tempfile.gettempdir())
        self._prefix = prefix
        self._guard = threading.Lock()
        self._key_locks: dict[str, threading.Lock] = {}

    @property
    def directory(self) -> Path:
        return self._directory

    def path_for(self, key: str) -> Path:
        return self._directory / key_to_filename(self._prefix, key)

    def get(self, key: str) -> RateWindow | None:
        path = self.path_for(key)
        try:
            raw = path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise StorageAppError(
                code="rate_limit_storage_read_failed",
                message="Failed to read rate limit state",
                details={"backend": self.name, "operation": "read", "hint": type(exc).__name__},
            ) from exc

        try:
            return RateWindow.from_json(raw)
        except WindowDecodeError as exc:
            logger.warning(
                "rate_limit.state_malformed",
                extra={"file_name": path.name, "reason": str(exc)},
            )
            return None

    def put(self, key: str, window: RateWindow) -> None:
        path = self.path_for(key)
        tmp_name: str | None = None
        try:
            self._directory.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{path.name}.", suffix=".tmp", dir=self._directory
            )
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(window.to_json())
            os.replace(tmp_name, path)
            tmp_name = None
        except OSError as exc:
            raise StorageAppError(
                code="rate_limit_storage_write_failed",
                message="Failed to persist rate limit state",
                details={"backend": self.name, "operation": "write", "hint": type(exc).__name__},
            ) from exc
        finally:
            if tmp_name is not None:
                try:
                    os.unlink(tmp_name)
                except OSError:
                    logger.debug("rate_limit.tmp_cleanup_failed", extra={"file_name": tmp_name})

    def lock(self, key: str) -> threading.Lock:
        with self._guard:
            key_lock = self._key_locks.get(key)
            if key_lock is None:
                key_lock = threading.Lock()
                self._key_locks[key] = key_lock
            return key_lock

    def describe(self) -> dict[str, Any]:
        return {
            "backend": self.name,
            "directory": str(self._directory),
            "prefix": self._prefix,
        }
