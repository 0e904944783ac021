"""Tests for SQLiteStateAdapter: TTL cache, thread locks, subscriptions."""

import sqlite3
import threading
import time

import pytest

from sandbox.errors import LockLostError, LockUnavailableError
from storage.state import Lock, LockPolicy, SQLiteStateAdapter, acquire_lock_with_retry, thread_lock


@pytest.fixture
def state(db_path):
    adapter = SQLiteStateAdapter(db_path)
    adapter.connect()
    yield adapter
    adapter.close()


def _stored_expiry(db_path, thread_id):
    with sqlite3.connect(str(db_path)) as conn:
        row = conn.execute("SELECT expires_at FROM state_locks WHERE thread_id = ?", (thread_id,)).fetchone()
        return row[0] if row else None


class TestCache:
    def test_get_immediately_after_set(self, state):
        state.set("k", {"a": 1}, ttl_ms=100)
        assert state.get("k") == {"a": 1}

    def test_expired_entry_returns_none(self, state, db_path):
        state.set("k", "v", ttl_ms=100)
        time.sleep(0.15)
        assert state.get("k") is None
        with sqlite3.connect(str(db_path)) as conn:
            assert conn.execute("SELECT COUNT(*) FROM state_cache").fetchone()[0] == 0

    def test_no_ttl_never_expires(self, state):
        state.set("k", [1, 2, 3])
        assert state.get("k") == [1, 2, 3]

    def test_set_upserts_value_and_expiry(self, state):
        state.set("k", "old", ttl_ms=50)
        state.set("k", "new")
        time.sleep(0.08)
        assert state.get("k") == "new"

    def test_delete(self, state):
        state.set("k", "v")
        state.delete("k")
        assert state.get("k") is None
        state.delete("missing")

    def test_missing_key(self, state):
        assert state.get("nope") is None


class TestLocks:
    def test_second_acquire_returns_none(self, state):
        lock = state.acquire_lock("T1", 5000)
        assert lock is not None
        assert state.acquire_lock("T1", 5000) is None

    def test_locks_are_per_thread(self, state):
        assert state.acquire_lock("T1", 5000) is not None
        assert state.acquire_lock("T2", 5000) is not None

    def test_acquire_after_expiry(self, state):
        first = state.acquire_lock("T1", 100)
        assert first is not None
        time.sleep(0.15)
        second = state.acquire_lock("T1", 100)
        assert second is not None
        assert second.token != first.token

    def test_release_then_reacquire(self, state):
        lock = state.acquire_lock("T1", 5000)
        assert state.release_lock(lock) is True
        assert state.acquire_lock("T1", 5000) is not None

    def test_extend_live_lock(self, state, db_path):
        lock = state.acquire_lock("T1", 1000)
        before = _stored_expiry(db_path, "T1")
        time.sleep(0.01)
        assert state.extend_lock(lock, 60_000) is True
        assert _stored_expiry(db_path, "T1") > before

    def test_extend_with_wrong_token(self, state, db_path):
        lock = state.acquire_lock("T1", 5000)
        before = _stored_expiry(db_path, "T1")
        forged = Lock(thread_id="T1", token="not-the-token", expires_at=lock.expires_at)
        assert state.extend_lock(forged, 60_000) is False
        assert _stored_expiry(db_path, "T1") == before

    def test_extend_expired_lock(self, state, db_path):
        lock = state.acquire_lock("T1", 50)
        time.sleep(0.1)
        before = _stored_expiry(db_path, "T1")
        assert state.extend_lock(lock, 60_000) is False
        assert _stored_expiry(db_path, "T1") == before

    def test_stale_holder_cannot_release_new_lock(self, state):
        stale = state.acquire_lock("T1", 50)
        time.sleep(0.1)
        fresh = state.acquire_lock("T1", 5000)
        assert fresh is not None
        assert state.release_lock(stale) is False
        assert state.acquire_lock("T1", 5000) is None

    def test_connect_purges_expired(self, state, db_path):
        state.acquire_lock("T1", 10)
        state.set("k", "v", ttl_ms=10)
        time.sleep(0.05)
        state.connect()
        with sqlite3.connect(str(db_path)) as conn:
            assert conn.execute("SELECT COUNT(*) FROM state_locks").fetchone()[0] == 0
            assert conn.execute("SELECT COUNT(*) FROM state_cache").fetchone()[0] == 0


class TestLockPolicy:
    def test_fail_fast(self, state):
        state.acquire_lock("T1", 5000)
        policy = LockPolicy(ttl_ms=5000, attempts=1, backoff_sec=0.01)
        assert acquire_lock_with_retry(state, "T1", policy) is None

    def test_retry_succeeds_after_release(self, state):
        held = state.acquire_lock("T1", 5000)
        timer = threading.Timer(0.05, state.release_lock, args=(held,))
        timer.start()
        policy = LockPolicy(ttl_ms=5000, attempts=20, backoff_sec=0.01, max_backoff_sec=0.02)
        lock = acquire_lock_with_retry(state, "T1", policy)
        timer.join()
        assert lock is not None

    def test_thread_lock_releases_on_exit(self, state):
        policy = LockPolicy(ttl_ms=5000, attempts=1)
        with thread_lock(state, "T1", policy):
            assert state.acquire_lock("T1", 5000) is None
        assert state.acquire_lock("T1", 5000) is not None

    def test_thread_lock_releases_on_error(self, state):
        policy = LockPolicy(ttl_ms=5000, attempts=1)
        with pytest.raises(ValueError):
            with thread_lock(state, "T1", policy):
                raise ValueError("boom")
        assert state.acquire_lock("T1", 5000) is not None

    def test_thread_lock_unavailable(self, state):
        state.acquire_lock("T1", 5000)
        with pytest.raises(LockUnavailableError):
            with thread_lock(state, "T1", LockPolicy(attempts=2, backoff_sec=0.01)):
                pass

    def test_keepalive_extends_past_ttl(self, state):
        policy = LockPolicy(ttl_ms=150, attempts=1)
        with thread_lock(state, "T1", policy, keepalive=True):
            time.sleep(0.3)
            assert state.acquire_lock("T1", 5000) is None

    def test_ensure_held_passes_while_owned(self, state):
        with thread_lock(state, "T1", LockPolicy(ttl_ms=5000, attempts=1)) as held:
            held.ensure_held()
            assert held.thread_id == "T1"

    def test_ensure_held_after_takeover(self, state):
        with thread_lock(state, "T1", LockPolicy(ttl_ms=5000, attempts=1)) as held:
            state.release_lock(held.lock)
            assert state.acquire_lock("T1", 5000) is not None
            with pytest.raises(LockLostError):
                held.ensure_held()

    def test_ensure_held_after_keepalive_failure(self, state, monkeypatch):
        monkeypatch.setattr(state, "extend_lock", lambda lock, ttl_ms: False)
        with thread_lock(state, "T1", LockPolicy(ttl_ms=150, attempts=1), keepalive=True) as held:
            time.sleep(0.2)
            assert held.keeper.lost is True
            with pytest.raises(LockLostError):
                held.ensure_held()


class TestSubscriptions:
    def test_subscribe_idempotent(self, state):
        state.subscribe("T1")
        state.subscribe("T1")
        assert state.is_subscribed("T1") is True

    def test_unsubscribe(self, state):
        state.subscribe("T1")
        state.unsubscribe("T1")
        assert state.is_subscribed("T1") is False

    def test_unknown_thread(self, state):
        assert state.is_subscribed("nope") is False
