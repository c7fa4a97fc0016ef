"""
Conversation History Manager - SQLite-backed.

Responsibility:
- Store user/assistant turns per session_id
- Provide recent history as model chat messages
- Clear history when a session is reset

Prohibitions:
- Never holds engine state (that lives in SessionState)
"""

import json
import sqlite3
import threading
from datetime import datetime, timezone


class ConversationManager:
    """SQLite-backed conversation history with a persistent connection."""

    def __init__(self, db_path: str = "conversations.db"):
        self.db_path = db_path
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(
            db_path,
            check_same_thread=False,
            isolation_level="DEFERRED",
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA synchronous=NORMAL")
        self._init_db()

    def _init_db(self) -> None:
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS conversations (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                session_id TEXT NOT NULL,
                domain_id TEXT NOT NULL DEFAULT '',
                role TEXT NOT NULL,
                content TEXT NOT NULL,
                metadata TEXT DEFAULT '{}',
                created_at TEXT NOT NULL
            )
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_conversations_session_id
            ON conversations(session_id)
        """)
        self._conn.commit()

    def save(
        self,
        session_id: str,
        role: str,
        content: str,
        domain_id: str = "",
        metadata: dict | None = None,
    ) -> None:
        """Persist one turn."""
        with self._lock:
            self._conn.execute(
                """INSERT INTO conversations (session_id, domain_id, role, content, metadata, created_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (
                    session_id,
                    domain_id,
                    role,
                    content,
                    json.dumps(metadata or {}, default=str),
                    datetime.now(timezone.utc).isoformat(),
                ),
            )
            self._conn.commit()

    def get_history(self, session_id: str, limit: int = 20) -> list[dict]:
        """Most recent turns of a session, oldest first."""
        with self._lock:
            rows = self._conn.execute(
                """SELECT role, content, created_at
                   FROM conversations
                   WHERE session_id = ?
                   ORDER BY id DESC
                   LIMIT ?""",
                (session_id, limit),
            ).fetchall()
        return [
            {"role": row["role"], "content": row["content"], "created_at": row["created_at"]}
            for row in reversed(rows)
        ]

    def as_messages(self, session_id: str, limit: int = 10) -> list[dict[str, str]]:
        """History shaped as chat messages for a model prompt."""
        return [
            {"role": item["role"] if item["role"] in ("user", "assistant") else "user", "content": item["content"]}
            for item in self.get_history(session_id, limit=limit)
        ]

    def clear_session(self, session_id: str) -> None:
        with self._lock:
            self._conn.execute("DELETE FROM conversations WHERE session_id = ?", (session_id,))
            self._conn.commit()

    def close(self) -> None:
        self._conn.close()
