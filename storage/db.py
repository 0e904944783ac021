"""SQLite helpers shared by the state, session and message stores."""

from __future__ import annotations

import os
import sqlite3
from pathlib import Path

# @@@env-at-import - evaluated at import time; export THREADBOX_DB_PATH before process start.
DEFAULT_DB_PATH = Path(os.getenv("THREADBOX_DB_PATH") or (Path.home() / ".threadbox" / "threadbox.db"))


def connect(db_path: Path) -> sqlite3.Connection:
    conn = sqlite3.connect(str(db_path), timeout=30)
    conn.execute("PRAGMA busy_timeout=30000")
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


def prepare_db_path(db_path: str | Path | None) -> Path:
    path = Path(db_path) if db_path else DEFAULT_DB_PATH
    path.parent.mkdir(parents=True, exist_ok=True)
    with connect(path) as conn:
        conn.execute("PRAGMA journal_mode=WAL")
    return path
