"""Tests for the per-key fixed-window RateLimiter."""

from __future__ import annotations

import hashlib
import json
import logging
import threading
from pathlib import Path
from unittest.mock import Mock

import pytest

from app.adapters.rate_limit import create_window_store
from app.adapters.rate_limit.base import RateWindow
from app.adapters.rate_limit.file_store import FileWindowStore
from app.adapters.rate_limit.in_memory import InMemoryWindowStore
from app.core.config import RateLimitSettings
from app.core.errors import InvalidArgumentAppError, StorageAppError
from app.services.rate_limiter import GUEST_KEY, RateLimiter, resolve_rate_limit_key


class FakeClock:
    """Deterministic clock that can be moved forward."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.current = start

    def __call__(self) -> float:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += seconds


class FailingStore(InMemoryWindowStore):
    """Store whose reads and/or writes fail like a broken disk."""

    def __init__(self, *, fail_get: bool = False, fail_put: bool = False) -> None:
        super().__init__()
        self.fail_get = fail_get
        self.fail_put = fail_put

    def get(self, key: str) -> RateWindow | None:
        if self.fail_get:
            raise StorageAppError(code="rate_limit_storage_read_failed", message="read failed")
        return super().get(key)

    def put(self, key: str, window: RateWindow) -> None:
        if self.fail_put:
            raise StorageAppError(code="rate_limit_storage_write_failed", message="write failed")
        super().put(key, window)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> InMemoryWindowStore:
    return InMemoryWindowStore()


def _limiter(key, limit, store, clock, **kwargs) -> RateLimiter:
    return RateLimiter(key, limit, store=store, clock=clock, **kwargs)


def test_first_call_admits_and_persists_count_one(store, clock) -> None:
    limiter = _limiter("sess1", 3, store, clock)

    assert limiter.check() is True
    assert store.get("sess1") == RateWindow(window_start=1000, count=1)


@pytest.mark.parametrize("limit", [1, 2, 5, 30])
def test_admits_limit_calls_then_rejects(store, clock, limit: int) -> None:
    limiter = _limiter("sess1", limit, store, clock)

    for _ in range(limit):
        assert limiter.check() is True
        clock.advance(0.5)

    assert limiter.check() is False


def test_rejected_calls_are_still_persisted(store, clock) -> None:
    limiter = _limiter("sess1", 2, store, clock)

    results = [limiter.check() for _ in range(5)]

    assert results == [True, True, False, False, False]
    assert store.get("sess1").count == 5


def test_reference_scenario(store, clock) -> None:
    clock.current = 0
    limiter = _limiter("sess1", 3, store, clock)

    outcomes = []
    for t in (0, 1, 2, 3):
        clock.current = t
        outcomes.append(limiter.check())

    assert outcomes == [True, True, True, False]
    assert store.get("sess1").count == 4

    clock.current = 61
    assert limiter.check() is True
    assert store.get("sess1") == RateWindow(window_start=61, count=1)


def test_window_resets_after_more_than_sixty_seconds(store, clock) -> None:
    limiter = _limiter("sess1", 1, store, clock)
    limiter.check()
    for _ in range(10):
        limiter.check()

    clock.advance(61)

    assert limiter.check() is True
    assert store.get("sess1") == RateWindow(window_start=1061, count=1)


def test_exactly_sixty_seconds_is_still_current_window(store, clock) -> None:
    limiter = _limiter("sess1", 1, store, clock)
    assert limiter.check() is True

    clock.advance(60)

    assert limiter.check() is False
    assert store.get("sess1") == RateWindow(window_start=1000, count=2)


def test_fractional_clock_is_truncated_to_seconds(store) -> None:
    clock = Mock(return_value=1000.9)
    limiter = _limiter("sess1", 1, store, clock)
    limiter.check()

    clock.return_value = 1060.99
    assert limiter.check() is False

    clock.return_value = 1061.0
    assert limiter.check() is True


def test_keys_are_independent(store, clock) -> None:
    a = _limiter("A", 1, store, clock)
    b = _limiter("B", 1, store, clock)

    assert a.check() is True
    assert a.check() is False

    assert b.check() is True
    assert store.get("A").count == 2
    assert store.get("B").count == 1


def test_new_limiter_instance_sees_persisted_state(store, clock) -> None:
    assert _limiter("sess1", 2, store, clock).check() is True
    assert _limiter("sess1", 2, store, clock).check() is True
    assert _limiter("sess1", 2, store, clock).check() is False


def test_window_start_never_moves_backwards(store, clock) -> None:
    limiter = _limiter("sess1", 10, store, clock)
    limiter.check()

    clock.current = 900
    limiter.check()

    assert store.get("sess1") == RateWindow(window_start=1000, count=2)


@pytest.mark.parametrize("key", [None, ""])
def test_empty_key_falls_back_to_guest(store, clock, key) -> None:
    limiter = _limiter(key, 1, store, clock)

    assert limiter.key == GUEST_KEY
    limiter.check()
    assert store.get("guest").count == 1


@pytest.mark.parametrize("limit", [0, -1, True, 1.5, "3", None])
def test_invalid_limit_fails_fast(store, limit) -> None:
    with pytest.raises(InvalidArgumentAppError) as exc_info:
        RateLimiter("k", limit, store=store)

    assert exc_info.value.code == "invalid_rate_limit"


@pytest.mark.parametrize("window_seconds", [0, -60, 2.5])
def test_invalid_window_fails_fast(store, window_seconds) -> None:
    with pytest.raises(InvalidArgumentAppError):
        RateLimiter("k", 1, store=store, window_seconds=window_seconds)


def test_non_string_key_is_rejected(store) -> None:
    with pytest.raises(InvalidArgumentAppError):
        RateLimiter(123, 1, store=store)  # type: ignore[arg-type]


def test_custom_window_length(store, clock) -> None:
    limiter = _limiter("k", 1, store, clock, window_seconds=10)
    limiter.check()

    clock.advance(10)
    assert limiter.check() is False

    clock.advance(1)
    assert limiter.check() is True


def test_consume_reports_window_metadata(store, clock) -> None:
    limiter = _limiter("k", 2, store, clock)

    first = limiter.consume()
    assert first.allowed is True
    assert first.count == 1
    assert first.remaining == 1
    assert first.reset_at == 1061
    assert first.retry_after_seconds is None

    limiter.consume()
    clock.advance(20)
    blocked = limiter.consume()

    assert blocked.allowed is False
    assert blocked.count == 3
    assert blocked.remaining == 0
    assert blocked.retry_after_seconds == 41


def test_peek_does_not_count_or_persist(store, clock) -> None:
    limiter = _limiter("k", 2, store, clock)

    empty = limiter.peek()
    assert empty.count == 0
    assert empty.allowed is True
    assert store.get("k") is None

    limiter.check()
    limiter.check()

    full = limiter.peek()
    assert full.count == 2
    assert full.allowed is False
    assert full.remaining == 0
    assert store.get("k").count == 2


def test_peek_reports_expired_window_as_empty(store, clock) -> None:
    limiter = _limiter("k", 1, store, clock)
    limiter.check()
    clock.advance(61)

    assert limiter.peek().count == 0
    assert store.get("k") == RateWindow(window_start=1000, count=1)


class TestFileBackedLimiter:
    def test_persisted_record_shape(self, tmp_path: Path, clock) -> None:
        store = FileWindowStore(tmp_path, prefix="rate_")
        limiter = _limiter("sess1", 3, store, clock)

        for _ in range(4):
            limiter.check()
            data = json.loads((tmp_path / "rate_sess1").read_text())
            assert isinstance(data["t"], int)
            assert isinstance(data["c"], int)
            assert data["c"] >= 0

        assert data == {"t": 1000, "c": 4, "v": 1}

    def test_malformed_state_fails_open_to_fresh_window(self, tmp_path: Path, clock) -> None:
        (tmp_path / "rate_sess1").write_text("not json at all")
        limiter = _limiter("sess1", 1, FileWindowStore(tmp_path), clock)

        assert limiter.check() is True
        assert json.loads((tmp_path / "rate_sess1").read_text())["c"] == 1

    def test_reference_state_file_is_honoured(self, tmp_path: Path, clock) -> None:
        (tmp_path / "rate_sess1").write_text(json.dumps({"t": 990, "c": 3}))
        limiter = _limiter("sess1", 3, FileWindowStore(tmp_path), clock)

        assert limiter.check() is False

    def test_invalid_utf8_state_fails_open_in_strict_mode(self, tmp_path: Path, clock) -> None:
        (tmp_path / "rate_sess1").write_bytes(b'{"t": 990, "c": \xff}')
        limiter = _limiter("sess1", 1, FileWindowStore(tmp_path), clock, strict_storage=True)

        assert limiter.check() is True
        assert json.loads((tmp_path / "rate_sess1").read_text())["c"] == 1

    def test_digest_shaped_key_is_limited_independently(self, tmp_path: Path, clock) -> None:
        store = FileWindowStore(tmp_path)
        lookalike = "h_" + hashlib.sha256(b"a/b").hexdigest()

        assert _limiter("a/b", 1, store, clock).check() is True

        other = _limiter(lookalike, 1, store, clock)
        assert other.peek().count == 0
        assert other.check() is True

    def test_default_prefix_reads_existing_chat_state_files(self, tmp_path: Path, clock) -> None:
        (tmp_path / "mobes_ai_rate_sess1").write_text(json.dumps({"t": 990, "c": 3}))
        cfg = RateLimitSettings(backend="file", storage_dir=str(tmp_path))
        limiter = _limiter("sess1", 3, create_window_store(cfg), clock)

        assert limiter.check() is False


class TestStorageFailures:
    def test_write_failure_is_logged_and_decision_returned(self, clock, caplog) -> None:
        limiter = _limiter("sess1", 1, FailingStore(fail_put=True), clock)

        with caplog.at_level(logging.WARNING, logger="app.services.rate_limiter"):
            assert limiter.check() is True

        records = [r for r in caplog.records if r.getMessage() == "rate_limit.storage_error"]
        assert len(records) == 1
        assert records[0].error_code == "rate_limit_storage_write_failed"
        assert "sess1" not in str(records[0].__dict__)

    def test_read_failure_is_treated_as_fresh_window(self, clock) -> None:
        store = FailingStore()
        store.put("sess1", RateWindow(window_start=1000, count=50))
        store.fail_get = True

        assert _limiter("sess1", 1, store, clock).check() is True

    def test_strict_mode_raises_write_failures(self, clock) -> None:
        limiter = _limiter("sess1", 1, FailingStore(fail_put=True), clock, strict_storage=True)

        with pytest.raises(StorageAppError):
            limiter.check()

    def test_strict_mode_raises_read_failures(self, clock) -> None:
        limiter = _limiter("sess1", 1, FailingStore(fail_get=True), clock, strict_storage=True)

        with pytest.raises(StorageAppError):
            limiter.peek()


class TestConcurrency:
    @pytest.mark.parametrize("backend", ["memory", "file"])
    def test_never_admits_more_than_limit_under_contention(self, tmp_path: Path, backend: str) -> None:
        store = InMemoryWindowStore() if backend == "memory" else FileWindowStore(tmp_path)
        clock = Mock(return_value=1000.0)
        limit = 10
        total = 60
        results: list[bool] = []
        results_lock = threading.Lock()
        start = threading.Barrier(total)

        def _worker() -> None:
            limiter = RateLimiter("shared", limit, store=store, clock=clock)
            start.wait()
            allowed = limiter.check()
            with results_lock:
                results.append(allowed)

        threads = [threading.Thread(target=_worker) for _ in range(total)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(True) == limit
        assert store.get("shared").count == total


class TestResolveRateLimitKey:
    def test_prefers_first_non_empty(self) -> None:
        assert resolve_rate_limit_key("sess1", "U1") == "sess1"
        assert resolve_rate_limit_key(None, "U1") == "U1"
        assert resolve_rate_limit_key("  ", "U1") == "U1"

    def test_stringifies_numeric_ids(self) -> None:
        assert resolve_rate_limit_key(42, None) == "42"

    def test_falls_back_to_guest(self) -> None:
        assert resolve_rate_limit_key() == "guest"
        assert resolve_rate_limit_key(None, "") == "guest"
