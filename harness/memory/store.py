"""SQLite session store — durable holder of agent state.

Two tables:
    sessions  one row per session (summary, metadata, extension state)
    messages  ordered append log keyed by session_id
"""

from __future__ import annotations

import json
import sqlite3
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from langchain_core.messages import BaseMessage, message_to_dict, messages_from_dict
from loguru import logger


class SessionStore:
    """SQLite store — single source of truth for session state."""

    def __init__(self, db_path: str = "data/harness.db"):
        self.db_path = db_path
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()
        logger.info(f"SessionStore initialized: {db_path}")

    @contextmanager
    def _get_conn(self):
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        try:
            yield conn
        finally:
            conn.close()

    def _init_db(self):
        with self._get_conn() as conn:
            conn.executescript(_SCHEMA)
            conn.commit()

    # ════════════════════════════════════════════════════════════
    # SESSIONS
    # ════════════════════════════════════════════════════════════

    def create_session(self, session_id: str | None = None) -> str:
        if session_id is None:
            session_id = str(uuid.uuid4())
        with self._get_conn() as conn:
            conn.execute(
                "INSERT INTO sessions (session_id) VALUES (?)", (session_id,)
            )
            conn.commit()
        logger.info(f"Session created: {session_id}")
        return session_id

    def get_session(self, session_id: str) -> dict[str, Any] | None:
        with self._get_conn() as conn:
            row = conn.execute(
                "SELECT * FROM sessions WHERE session_id = ?", (session_id,)
            ).fetchone()
        if not row:
            return None
        session = dict(row)
        for key in ("metadata", "todos", "tasks"):
            session[key] = json.loads(session[key]) if session[key] else (
                {} if key == "metadata" else []
            )
        return session

    def get_or_create_session(self, session_id: str) -> dict[str, Any]:
        session = self.get_session(session_id)
        if session is None:
            self.create_session(session_id)
            session = self.get_session(session_id)
        assert session is not None
        return session

    def update_session(self, session_id: str, **fields: Any) -> None:
        """Update summary / metadata / todos / tasks on the session row."""
        allowed = {"summary", "metadata", "todos", "tasks"}
        unknown = set(fields) - allowed
        if unknown:
            raise ValueError(f"Unknown session fields: {sorted(unknown)}")
        if not fields:
            return

        assignments = []
        values: list[Any] = []
        for key, value in fields.items():
            assignments.append(f"{key} = ?")
            values.append(value if key == "summary" else json.dumps(value, default=str))
        assignments.append("updated_at = CURRENT_TIMESTAMP")
        with self._get_conn() as conn:
            conn.execute(
                f"UPDATE sessions SET {', '.join(assignments)} WHERE session_id = ?",
                (*values, session_id),
            )
            conn.commit()

    def list_sessions(self, limit: int = 50) -> list[dict[str, Any]]:
        with self._get_conn() as conn:
            rows = conn.execute(
                """SELECT s.session_id, s.summary, s.created_at, s.updated_at,
                          COUNT(m.id) AS message_count
                   FROM sessions s LEFT JOIN messages m ON m.session_id = s.session_id
                   GROUP BY s.session_id
                   ORDER BY s.updated_at DESC LIMIT ?""",
                (limit,),
            ).fetchall()
        return [dict(r) for r in rows]

    def delete_session(self, session_id: str) -> bool:
        with self._get_conn() as conn:
            conn.execute("DELETE FROM messages WHERE session_id = ?", (session_id,))
            cursor = conn.execute(
                "DELETE FROM sessions WHERE session_id = ?", (session_id,)
            )
            conn.commit()
        deleted = cursor.rowcount > 0
        if deleted:
            logger.info(f"Session deleted: {session_id}")
        return deleted

    # ════════════════════════════════════════════════════════════
    # MESSAGES
    # ════════════════════════════════════════════════════════════

    def add_messages(self, session_id: str, messages: list[BaseMessage]) -> None:
        if not messages:
            return
        with self._get_conn() as conn:
            conn.executemany(
                "INSERT INTO messages (session_id, role, payload) VALUES (?, ?, ?)",
                [
                    (session_id, m.type, json.dumps(message_to_dict(m), default=str))
                    for m in messages
                ],
            )
            conn.execute(
                "UPDATE sessions SET updated_at = CURRENT_TIMESTAMP WHERE session_id = ?",
                (session_id,),
            )
            conn.commit()

    def replace_messages(self, session_id: str, messages: list[BaseMessage]) -> None:
        with self._get_conn() as conn:
            conn.execute("DELETE FROM messages WHERE session_id = ?", (session_id,))
            conn.commit()
        self.add_messages(session_id, messages)

    def get_messages(self, session_id: str) -> list[BaseMessage]:
        with self._get_conn() as conn:
            rows = conn.execute(
                "SELECT payload FROM messages WHERE session_id = ? ORDER BY id ASC",
                (session_id,),
            ).fetchall()
        return messages_from_dict([json.loads(r["payload"]) for r in rows])

    def count_messages(self, session_id: str) -> int:
        with self._get_conn() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM messages WHERE session_id = ?",
                (session_id,),
            ).fetchone()
        return row["n"]


_SCHEMA = """
-- 1. Sessions (one row per session)
CREATE TABLE IF NOT EXISTS sessions (
    session_id TEXT PRIMARY KEY,
    summary TEXT,
    metadata TEXT DEFAULT '{}',
    todos TEXT DEFAULT '[]',
    tasks TEXT DEFAULT '[]',
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

-- 2. Messages (ordered append log)
CREATE TABLE IF NOT EXISTS messages (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id TEXT NOT NULL,
    role TEXT NOT NULL,
    payload TEXT NOT NULL,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    FOREIGN KEY (session_id) REFERENCES sessions(session_id)
);
CREATE INDEX IF NOT EXISTS idx_messages_session ON messages(session_id, id);
"""
