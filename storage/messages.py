"""Append-only per-thread message history.

Rows reference sessions(thread_id) and are removed with the thread's registry
row; construct the SessionRegistry on the same database first.
"""

from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Literal

from storage.db import connect, prepare_db_path

MessageRole = Literal["user", "assistant", "system"]


@dataclass
class Message:
    thread_id: str
    sequence_number: int
    role: str
    content: str
    created_at: datetime
    metadata: dict[str, Any] = field(default_factory=dict)


class MessageStore:
    def __init__(self, db_path: str | Path | None = None):
        self.db_path = prepare_db_path(db_path)
        self._ensure_tables()

    def _ensure_tables(self) -> None:
        with connect(self.db_path) as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS messages (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    thread_id TEXT NOT NULL REFERENCES sessions(thread_id) ON DELETE CASCADE,
                    sequence_number INTEGER NOT NULL,
                    role TEXT NOT NULL CHECK (role IN ('user', 'assistant', 'system')),
                    content TEXT NOT NULL,
                    metadata TEXT NOT NULL DEFAULT '{}',
                    created_at TEXT NOT NULL,
                    UNIQUE (thread_id, sequence_number)
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_messages_thread_sequence ON messages(thread_id, sequence_number)"
            )
            conn.commit()

    def save_message(
        self,
        thread_id: str,
        role: MessageRole,
        content: str,
        metadata: dict[str, Any] | None = None,
    ) -> int:
        """Append a message and return its sequence number."""
        with connect(self.db_path) as conn:
            # @@@single-statement-sequence - next sequence is computed inside the INSERT so it cannot interleave.
            conn.execute(
                """
                INSERT INTO messages (thread_id, sequence_number, role, content, metadata, created_at)
                SELECT ?, COALESCE(MAX(sequence_number), 0) + 1, ?, ?, ?, ?
                FROM messages WHERE thread_id = ?
                """,
                (
                    thread_id,
                    role,
                    content,
                    json.dumps(metadata or {}, default=str),
                    datetime.now().isoformat(),
                    thread_id,
                ),
            )
            row = conn.execute(
                "SELECT MAX(sequence_number) FROM messages WHERE thread_id = ?",
                (thread_id,),
            ).fetchone()
            conn.commit()
            return int(row[0])

    def get_conversation_history(self, thread_id: str, limit: int = 10) -> list[Message]:
        """Most recent `limit` messages, oldest first."""
        with connect(self.db_path) as conn:
            conn.row_factory = sqlite3.Row
            rows = conn.execute(
                """
                SELECT * FROM messages
                WHERE thread_id = ?
                ORDER BY sequence_number DESC
                LIMIT ?
                """,
                (thread_id, limit),
            ).fetchall()
        return [
            Message(
                thread_id=row["thread_id"],
                sequence_number=row["sequence_number"],
                role=row["role"],
                content=row["content"],
                created_at=datetime.fromisoformat(row["created_at"]),
                metadata=json.loads(row["metadata"] or "{}"),
            )
            for row in reversed(rows)
        ]
