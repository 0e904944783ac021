"""SessionRegistry - durable thread -> sandbox mapping.

One row per thread. Rows survive sandbox stops (status=stopped) so the next
request can re-provision against the same volume; only explicit thread
deletion removes a row, and it never touches the volume.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from sandbox.errors import DuplicateSessionError
from sandbox.lifecycle import SessionStatus, parse_session_status
from storage.db import connect, prepare_db_path

logger = logging.getLogger(__name__)

REQUIRED_SESSION_COLUMNS = {
    "thread_id",
    "backend_session_id",
    "volume_id",
    "endpoint",
    "status",
    "context_json",
    "created_at",
    "last_activity",
}


@dataclass
class Session:
    thread_id: str
    backend_session_id: str
    volume_id: str
    status: SessionStatus
    created_at: datetime
    last_activity: datetime
    endpoint: str | None = None
    context: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> Session:
        return cls(
            thread_id=row["thread_id"],
            backend_session_id=row["backend_session_id"],
            volume_id=row["volume_id"],
            status=parse_session_status(row["status"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            last_activity=datetime.fromisoformat(row["last_activity"]),
            endpoint=row["endpoint"],
            context=json.loads(row["context_json"] or "{}"),
        )


class SessionRegistry:
    def __init__(self, db_path: str | Path | None = None):
        self.db_path = prepare_db_path(db_path)
        self._ensure_tables()

    def _ensure_tables(self) -> None:
        with connect(self.db_path) as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS sessions (
                    thread_id TEXT PRIMARY KEY,
                    backend_session_id TEXT NOT NULL,
                    volume_id TEXT NOT NULL,
                    endpoint TEXT,
                    status TEXT NOT NULL DEFAULT 'active'
                        CHECK (status IN ('active', 'idle', 'stopped')),
                    context_json TEXT NOT NULL DEFAULT '{}',
                    created_at TEXT NOT NULL,
                    last_activity TEXT NOT NULL
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_sessions_status ON sessions(status)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_sessions_last_activity ON sessions(last_activity)")
            columns = {row[1] for row in conn.execute("PRAGMA table_info(sessions)").fetchall()}
            missing = REQUIRED_SESSION_COLUMNS - columns
            if missing:
                raise RuntimeError(f"sessions table missing columns: {sorted(missing)} (db={self.db_path})")
            conn.commit()

    def get_session(self, thread_id: str) -> Session | None:
        with connect(self.db_path) as conn:
            conn.row_factory = sqlite3.Row
            row = conn.execute("SELECT * FROM sessions WHERE thread_id = ?", (thread_id,)).fetchone()
            return Session.from_row(row) if row else None

    def create_session(
        self,
        thread_id: str,
        backend_session_id: str,
        volume_id: str,
        context: dict[str, Any] | None = None,
        endpoint: str | None = None,
    ) -> Session:
        now = datetime.now()
        try:
            with connect(self.db_path) as conn:
                conn.execute(
                    """
                    INSERT INTO sessions (
                        thread_id, backend_session_id, volume_id, endpoint, status,
                        context_json, created_at, last_activity
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        thread_id,
                        backend_session_id,
                        volume_id,
                        endpoint,
                        SessionStatus.ACTIVE.value,
                        json.dumps(context or {}),
                        now.isoformat(),
                        now.isoformat(),
                    ),
                )
                conn.commit()
        except sqlite3.IntegrityError as e:
            raise DuplicateSessionError(thread_id) from e

        logger.info(
            "Created session for thread %s (backend_session=%s, volume=%s)",
            thread_id,
            backend_session_id,
            volume_id,
        )
        return Session(
            thread_id=thread_id,
            backend_session_id=backend_session_id,
            volume_id=volume_id,
            status=SessionStatus.ACTIVE,
            created_at=now,
            last_activity=now,
            endpoint=endpoint,
            context=dict(context or {}),
        )

    def reactivate_session(
        self,
        thread_id: str,
        backend_session_id: str,
        volume_id: str,
        endpoint: str | None = None,
    ) -> Session | None:
        """Rebind an existing row to a freshly provisioned backend session."""
        now = datetime.now().isoformat()
        with connect(self.db_path) as conn:
            cursor = conn.execute(
                """
                UPDATE sessions
                SET backend_session_id = ?,
                    volume_id = ?,
                    endpoint = ?,
                    status = ?,
                    last_activity = ?
                WHERE thread_id = ?
                """,
                (backend_session_id, volume_id, endpoint, SessionStatus.ACTIVE.value, now, thread_id),
            )
            conn.commit()
            if cursor.rowcount == 0:
                return None
        logger.info("Reactivated session for thread %s (backend_session=%s)", thread_id, backend_session_id)
        return self.get_session(thread_id)

    def update_last_activity(self, thread_id: str) -> None:
        with connect(self.db_path) as conn:
            conn.execute(
                "UPDATE sessions SET last_activity = ? WHERE thread_id = ?",
                (datetime.now().isoformat(), thread_id),
            )
            conn.commit()

    def update_status(self, thread_id: str, status: str | SessionStatus) -> None:
        parsed = parse_session_status(str(status))
        with connect(self.db_path) as conn:
            conn.execute(
                "UPDATE sessions SET status = ? WHERE thread_id = ?",
                (parsed.value, thread_id),
            )
            conn.commit()

    def delete_session(self, thread_id: str) -> None:
        with connect(self.db_path) as conn:
            conn.execute("DELETE FROM sessions WHERE thread_id = ?", (thread_id,))
            conn.commit()
        logger.info("Deleted session for thread %s", thread_id)

    def list_all(self) -> list[Session]:
        with connect(self.db_path) as conn:
            conn.row_factory = sqlite3.Row
            rows = conn.execute("SELECT * FROM sessions ORDER BY created_at").fetchall()
            return [Session.from_row(row) for row in rows]

    def list_idle(self, idle_timeout_sec: float, now: datetime | None = None) -> list[Session]:
        """Live (active/idle) sessions whose last activity is older than the threshold."""
        cutoff = (now or datetime.now()) - timedelta(seconds=idle_timeout_sec)
        with connect(self.db_path) as conn:
            conn.row_factory = sqlite3.Row
            rows = conn.execute(
                """
                SELECT * FROM sessions
                WHERE status IN ('active', 'idle') AND last_activity < ?
                ORDER BY last_activity
                """,
                (cutoff.isoformat(),),
            ).fetchall()
            return [Session.from_row(row) for row in rows]
