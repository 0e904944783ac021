"""Sandbox session manager.

Orchestrates: Thread -> thread lock -> SessionRegistry row -> SandboxBackend session

Every read-then-write on a thread's registry row happens while holding that
thread's lock from the StateAdapter. Process-local maps are never used for
session bookkeeping, so any number of instances can share one database.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

from sandbox.client import SandboxClient
from sandbox.errors import DuplicateSessionError
from sandbox.lifecycle import SessionStatus, is_live
from sandbox.provider import SandboxBackend, SandboxSession
from storage.messages import MessageStore
from storage.sessions import Session, SessionRegistry
from storage.state import LockPolicy, SQLiteStateAdapter, StateAdapter, thread_lock

logger = logging.getLogger(__name__)


@dataclass
class SandboxHandle:
    """What callers get back: the registry view plus a ready client."""

    thread_id: str
    session_id: str
    volume_id: str
    endpoint: str | None
    client: SandboxClient
    reused: bool


class SandboxManager:
    def __init__(
        self,
        backend: SandboxBackend,
        db_path: Path | None = None,
        *,
        lock_policy: LockPolicy | None = None,
        idle_timeout_sec: float = 30 * 60,
        state: StateAdapter | None = None,
    ):
        self.backend = backend
        self.lock_policy = lock_policy or LockPolicy()
        self.idle_timeout_sec = idle_timeout_sec
        self.registry = SessionRegistry(db_path)
        self.messages = MessageStore(self.registry.db_path)
        self.state = state or SQLiteStateAdapter(self.registry.db_path)
        self.state.connect()

    def close(self) -> None:
        self.state.close()

    # ==================== Get or create ====================

    def get_or_create_session(
        self,
        thread_id: str,
        user_id: str,
        context: dict[str, Any] | None = None,
    ) -> SandboxHandle:
        with thread_lock(self.state, thread_id, self.lock_policy):
            return self.get_or_create_session_locked(thread_id, user_id, context)

    def get_or_create_session_locked(
        self,
        thread_id: str,
        user_id: str,
        context: dict[str, Any] | None = None,
    ) -> SandboxHandle:
        """Lookup-then-provision. Caller must hold the thread's lock."""
        existing = self.registry.get_session(thread_id)

        if existing and is_live(existing.status):
            if self.backend.is_sandbox_active(existing.backend_session_id):
                logger.info(
                    "Reusing active session %s for thread %s",
                    existing.backend_session_id,
                    thread_id,
                )
                self.registry.update_last_activity(thread_id)
                if existing.status != SessionStatus.ACTIVE:
                    self.registry.update_status(thread_id, SessionStatus.ACTIVE)
                return self._handle(existing, reused=True)

            # @@@stale-session - registry says live but the backend disagrees; tear down before re-provisioning.
            logger.info(
                "Session %s for thread %s is no longer active, stopping",
                existing.backend_session_id,
                thread_id,
            )
            self.backend.stop_sandbox(existing.backend_session_id)

        sandbox = self.backend.get_or_create_session(thread_id, user_id)
        try:
            session = self._persist(thread_id, sandbox, existing, context)
        except DuplicateSessionError:
            return self._resolve_insert_race(thread_id, sandbox)
        return self._fresh_handle(session, sandbox)

    def _persist(
        self,
        thread_id: str,
        sandbox: SandboxSession,
        existing: Session | None,
        context: dict[str, Any] | None,
    ) -> Session:
        if existing is not None:
            session = self.registry.reactivate_session(
                thread_id,
                sandbox.session_id,
                sandbox.volume_id,
                sandbox.endpoint,
            )
            if session is not None:
                return session

        return self.registry.create_session(
            thread_id,
            sandbox.session_id,
            sandbox.volume_id,
            context=context,
            endpoint=sandbox.endpoint,
        )

    def _resolve_insert_race(self, thread_id: str, sandbox: SandboxSession) -> SandboxHandle:
        """Another caller registered the thread while we provisioned (its lock had expired).

        A live winner keeps the thread and our sandbox is stopped; a stale
        winner row is rebound to what we provisioned.
        """
        winner = self.registry.get_session(thread_id)
        if winner is not None and winner.backend_session_id == sandbox.session_id:
            return self._fresh_handle(winner, sandbox)

        if (
            winner is not None
            and is_live(winner.status)
            and self.backend.is_sandbox_active(winner.backend_session_id)
        ):
            logger.warning(
                "Thread %s registered concurrently with session %s, stopping duplicate %s",
                thread_id,
                winner.backend_session_id,
                sandbox.session_id,
            )
            self.backend.stop_sandbox(sandbox.session_id)
            return self._handle(winner, reused=True)

        logger.warning("Session row for thread %s appeared concurrently but is stale, rebinding", thread_id)
        session = self.registry.reactivate_session(
            thread_id,
            sandbox.session_id,
            sandbox.volume_id,
            sandbox.endpoint,
        )
        if session is None:
            raise DuplicateSessionError(thread_id)
        return self._fresh_handle(session, sandbox)

    def _fresh_handle(self, session: Session, sandbox: SandboxSession) -> SandboxHandle:
        return SandboxHandle(
            thread_id=session.thread_id,
            session_id=session.backend_session_id,
            volume_id=session.volume_id,
            endpoint=session.endpoint,
            client=sandbox.client,
            reused=False,
        )

    def _handle(self, session: Session, *, reused: bool) -> SandboxHandle:
        return SandboxHandle(
            thread_id=session.thread_id,
            session_id=session.backend_session_id,
            volume_id=session.volume_id,
            endpoint=session.endpoint,
            client=self.backend.create_client_for_session(session.backend_session_id, session.endpoint),
            reused=reused,
        )

    # ==================== Lifecycle ====================

    def get_session(self, thread_id: str) -> Session | None:
        return self.registry.get_session(thread_id)

    def touch(self, thread_id: str) -> None:
        self.registry.update_last_activity(thread_id)

    def stop_session(self, thread_id: str) -> bool:
        """Stop the thread's sandbox and mark it stopped. Volume and row are kept."""
        with thread_lock(self.state, thread_id, self.lock_policy):
            session = self.registry.get_session(thread_id)
            if session is None or not is_live(session.status):
                return False
            self._stop_locked(session, reason="manual")
            return True

    def destroy_thread(self, thread_id: str) -> bool:
        """Explicit thread deletion: stop the sandbox, drop the row and history. The volume survives."""
        with thread_lock(self.state, thread_id, self.lock_policy):
            session = self.registry.get_session(thread_id)
            if session is None:
                self.state.unsubscribe(thread_id)
                return False
            if is_live(session.status):
                self.backend.stop_sandbox(session.backend_session_id)
            self.registry.delete_session(thread_id)
            self.state.unsubscribe(thread_id)
            logger.info("Destroyed thread %s (volume %s preserved)", thread_id, session.volume_id)
            return True

    def enforce_idle_timeouts(self, now: datetime | None = None) -> int:
        """Stop sandboxes idle past idle_timeout_sec.

        Threads whose lock is held are mid-request and skipped; the rest are
        re-read under the lock before stopping.
        """
        count = 0
        for candidate in self.registry.list_idle(self.idle_timeout_sec, now=now):
            thread_id = candidate.thread_id
            lock = self.state.acquire_lock(thread_id, self.lock_policy.ttl_ms)
            if lock is None:
                logger.debug("Skipping idle thread %s: lock held", thread_id)
                continue
            try:
                fresh = self.registry.get_session(thread_id)
                if fresh is None or not is_live(fresh.status):
                    continue
                if fresh.last_activity != candidate.last_activity:
                    continue
                self._stop_locked(fresh, reason="idle_timeout")
                count += 1
            finally:
                self.state.release_lock(lock)
        return count

    def _stop_locked(self, session: Session, *, reason: str) -> None:
        logger.info(
            "Stopping session %s for thread %s (%s)",
            session.backend_session_id,
            session.thread_id,
            reason,
        )
        self.backend.stop_sandbox(session.backend_session_id)
        self.registry.update_status(session.thread_id, SessionStatus.STOPPED)

    def list_sessions(self) -> list[Session]:
        return self.registry.list_all()
