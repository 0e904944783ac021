"""StateAdapter - durable TTL cache, thread lock and subscription set.

All three live in one SQLite database so a thread's lock, cache entries and
registry rows share the same authority.

Lock contract:
- At most one non-expired lock row per thread_id.
- acquire_lock() purges expired rows for the thread, then inserts; a primary
  key collision means someone else holds a live lock and returns None.
- extend_lock()/release_lock() match on (thread_id, token), so a holder whose
  lock expired and was re-acquired by another caller can never touch it.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
import uuid
from abc import ABC, abstractmethod
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

from sandbox.errors import LockLostError, LockUnavailableError
from storage.db import connect, prepare_db_path

logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class Lock:
    thread_id: str
    token: str
    expires_at: int  # epoch milliseconds


@dataclass(frozen=True)
class LockPolicy:
    """Caller-selected acquisition policy. attempts=1 is fail-fast."""

    ttl_ms: int = 120_000
    attempts: int = 10
    backoff_sec: float = 0.5
    max_backoff_sec: float = 5.0


class StateAdapter(ABC):
    """Abstract interface for durable thread state."""

    @abstractmethod
    def connect(self) -> None:
        """Prepare the store and purge expired rows."""

    @abstractmethod
    def close(self) -> None:
        """Release resources."""

    # ==================== Cache ====================

    @abstractmethod
    def get(self, key: str) -> Any | None: ...

    @abstractmethod
    def set(self, key: str, value: Any, ttl_ms: int | None = None) -> None: ...

    @abstractmethod
    def delete(self, key: str) -> None: ...

    # ==================== Locks ====================

    @abstractmethod
    def acquire_lock(self, thread_id: str, ttl_ms: int) -> Lock | None: ...

    @abstractmethod
    def extend_lock(self, lock: Lock, ttl_ms: int) -> bool: ...

    @abstractmethod
    def release_lock(self, lock: Lock) -> bool: ...

    # ==================== Subscriptions ====================

    @abstractmethod
    def subscribe(self, thread_id: str) -> None: ...

    @abstractmethod
    def unsubscribe(self, thread_id: str) -> None: ...

    @abstractmethod
    def is_subscribed(self, thread_id: str) -> bool: ...


class SQLiteStateAdapter(StateAdapter):
    def __init__(self, db_path: str | Path | None = None):
        self.db_path = prepare_db_path(db_path)
        self._ensure_tables()

    def _ensure_tables(self) -> None:
        with connect(self.db_path) as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS thread_subscriptions (
                    thread_id TEXT PRIMARY KEY,
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS state_cache (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    expires_at INTEGER,
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS state_locks (
                    thread_id TEXT PRIMARY KEY,
                    token TEXT NOT NULL,
                    expires_at INTEGER NOT NULL,
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_state_cache_expires_at ON state_cache(expires_at)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_state_locks_expires_at ON state_locks(expires_at)")
            conn.commit()

    def connect(self) -> None:
        now = _now_ms()
        with connect(self.db_path) as conn:
            locks = conn.execute("DELETE FROM state_locks WHERE expires_at <= ?", (now,)).rowcount
            entries = conn.execute(
                "DELETE FROM state_cache WHERE expires_at IS NOT NULL AND expires_at <= ?",
                (now,),
            ).rowcount
            conn.commit()
        if locks or entries:
            logger.info("Purged %d expired lock(s) and %d expired cache entr(ies)", locks, entries)

    def close(self) -> None:
        return None

    # ==================== Cache ====================

    def get(self, key: str) -> Any | None:
        # @@@read-time-expiry - expired entries are removed on read, never by a background sweep.
        with connect(self.db_path) as conn:
            conn.execute(
                "DELETE FROM state_cache WHERE key = ? AND expires_at IS NOT NULL AND expires_at <= ?",
                (key, _now_ms()),
            )
            row = conn.execute("SELECT value FROM state_cache WHERE key = ?", (key,)).fetchone()
            conn.commit()
        if row is None:
            return None
        return json.loads(row[0])

    def set(self, key: str, value: Any, ttl_ms: int | None = None) -> None:
        expires_at = _now_ms() + ttl_ms if ttl_ms is not None else None
        payload = json.dumps(value)
        with connect(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO state_cache (key, value, expires_at, created_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value,
                    expires_at = excluded.expires_at
                """,
                (key, payload, expires_at, datetime.now().isoformat()),
            )
            conn.commit()

    def delete(self, key: str) -> None:
        with connect(self.db_path) as conn:
            conn.execute("DELETE FROM state_cache WHERE key = ?", (key,))
            conn.commit()

    # ==================== Locks ====================

    def acquire_lock(self, thread_id: str, ttl_ms: int) -> Lock | None:
        now = _now_ms()
        lock = Lock(thread_id=thread_id, token=uuid.uuid4().hex, expires_at=now + ttl_ms)
        with connect(self.db_path) as conn:
            conn.execute(
                "DELETE FROM state_locks WHERE thread_id = ? AND expires_at <= ?",
                (thread_id, now),
            )
            try:
                conn.execute(
                    """
                    INSERT INTO state_locks (thread_id, token, expires_at, created_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    (lock.thread_id, lock.token, lock.expires_at, datetime.now().isoformat()),
                )
            except sqlite3.IntegrityError:
                conn.commit()
                return None
            conn.commit()
        return lock

    def extend_lock(self, lock: Lock, ttl_ms: int) -> bool:
        now = _now_ms()
        with connect(self.db_path) as conn:
            cursor = conn.execute(
                """
                UPDATE state_locks
                SET expires_at = ?
                WHERE thread_id = ? AND token = ? AND expires_at > ?
                """,
                (now + ttl_ms, lock.thread_id, lock.token, now),
            )
            conn.commit()
            return cursor.rowcount > 0

    def release_lock(self, lock: Lock) -> bool:
        with connect(self.db_path) as conn:
            cursor = conn.execute(
                "DELETE FROM state_locks WHERE thread_id = ? AND token = ?",
                (lock.thread_id, lock.token),
            )
            conn.commit()
            return cursor.rowcount > 0

    # ==================== Subscriptions ====================

    def subscribe(self, thread_id: str) -> None:
        with connect(self.db_path) as conn:
            conn.execute(
                "INSERT OR IGNORE INTO thread_subscriptions (thread_id, created_at) VALUES (?, ?)",
                (thread_id, datetime.now().isoformat()),
            )
            conn.commit()

    def unsubscribe(self, thread_id: str) -> None:
        with connect(self.db_path) as conn:
            conn.execute("DELETE FROM thread_subscriptions WHERE thread_id = ?", (thread_id,))
            conn.commit()

    def is_subscribed(self, thread_id: str) -> bool:
        with connect(self.db_path) as conn:
            row = conn.execute(
                "SELECT 1 FROM thread_subscriptions WHERE thread_id = ?",
                (thread_id,),
            ).fetchone()
            return row is not None


def acquire_lock_with_retry(state: StateAdapter, thread_id: str, policy: LockPolicy) -> Lock | None:
    """Try up to policy.attempts times with exponential backoff between tries."""
    delay = policy.backoff_sec
    for attempt in range(1, policy.attempts + 1):
        lock = state.acquire_lock(thread_id, policy.ttl_ms)
        if lock is not None:
            return lock
        if attempt < policy.attempts:
            logger.debug("Lock busy for thread %s (attempt %d/%d)", thread_id, attempt, policy.attempts)
            time.sleep(delay)
            delay = min(delay * 2, policy.max_backoff_sec)
    return None


class LockKeepAlive(threading.Thread):
    """Extends a held lock every ttl/3 until stopped or the lock is lost."""

    def __init__(self, state: StateAdapter, lock: Lock, ttl_ms: int):
        super().__init__(name=f"lock-keepalive-{lock.thread_id}", daemon=True)
        self.state = state
        self.lock = lock
        self.ttl_ms = ttl_ms
        self.lost = False
        self._stop_event = threading.Event()

    def run(self) -> None:
        interval = max(self.ttl_ms / 3000, 0.05)
        while not self._stop_event.wait(interval):
            if not self.state.extend_lock(self.lock, self.ttl_ms):
                self.lost = True
                logger.warning("Lost lock for thread %s before work finished", self.lock.thread_id)
                return

    def stop(self) -> None:
        self._stop_event.set()
        self.join(timeout=5)


@dataclass
class HeldLock:
    """A lock inside a thread_lock() block."""

    state: StateAdapter
    lock: Lock
    ttl_ms: int
    keeper: LockKeepAlive | None = None

    @property
    def thread_id(self) -> str:
        return self.lock.thread_id

    def ensure_held(self) -> None:
        """Refresh the lock before a write; raise LockLostError if it is no longer ours."""
        if self.keeper is not None and self.keeper.lost:
            raise LockLostError(self.thread_id)
        if not self.state.extend_lock(self.lock, self.ttl_ms):
            raise LockLostError(self.thread_id)


@contextmanager
def thread_lock(
    state: StateAdapter,
    thread_id: str,
    policy: LockPolicy,
    *,
    keepalive: bool = False,
) -> Iterator[HeldLock]:
    """Hold the thread's lock for the block. Raises LockUnavailableError when the policy is exhausted."""
    lock = acquire_lock_with_retry(state, thread_id, policy)
    if lock is None:
        raise LockUnavailableError(thread_id, policy.attempts)
    keeper = LockKeepAlive(state, lock, policy.ttl_ms) if keepalive else None
    if keeper:
        keeper.start()
    try:
        yield HeldLock(state=state, lock=lock, ttl_ms=policy.ttl_ms, keeper=keeper)
    finally:
        if keeper:
            keeper.stop()
        if not state.release_lock(lock):
            logger.warning("Lock for thread %s expired before release", thread_id)
