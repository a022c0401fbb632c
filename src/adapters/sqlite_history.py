"""SQLite history adapter.

Implements the core HistoryPort using a simple SQLite database shared by all
topics.
"""

from __future__ import annotations

import sqlite3
from datetime import datetime, timezone

from core.models import ChatTurn
from core.topic_keys import TopicIdentity


class SQLiteHistoryStore:
    """Thin SQLite wrapper holding every topic's conversation history."""

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def init_db(self) -> None:
        """Create tables if they do not exist.

        Tables:
        - history: append-only turns, one row per message, per topic
        """

        with self._connect() as conn:
            # history is append-only; rows are never updated or deleted so a
            # topic's order is simply its insertion order.
            # Fields:
            # - id: auto-increment primary key, defines order within a topic
            # - topic_key: sanitized "<channel>:<subtopic>" key
            # - role: "user" or "assistant"
            # - content: message text as submitted to the model
            # - timestamp: epoch seconds the turn refers to
            # - created_at: when the row was written
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS history (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    topic_key TEXT NOT NULL,
                    role TEXT NOT NULL,
                    content TEXT NOT NULL,
                    timestamp REAL NOT NULL,
                    created_at TIMESTAMP NOT NULL
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS history_topic ON history (topic_key, id)")

    def turns(self, topic_key: str) -> list[ChatTurn]:
        """Return a topic's turns in insertion order."""

        with self._connect() as conn:
            rows = conn.execute(
                "SELECT role, content, timestamp FROM history WHERE topic_key = ? ORDER BY id",
                (topic_key,),
            ).fetchall()
        return [ChatTurn(role=row["role"], content=row["content"], timestamp=row["timestamp"]) for row in rows]

    def append(self, topic_key: str, turn: ChatTurn) -> None:
        """Append one turn to a topic's history."""

        created_at = datetime.now(timezone.utc)
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO history (topic_key, role, content, timestamp, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (topic_key, turn.role, turn.content, turn.timestamp, created_at.isoformat()),
            )

    def for_topic(self, identity: TopicIdentity) -> "TopicHistory":
        return TopicHistory(self, identity.key)


class TopicHistory:
    """HistoryPort view bound to a single topic."""

    def __init__(self, store: SQLiteHistoryStore, topic_key: str) -> None:
        self._store = store
        self._topic_key = topic_key

    def turns(self) -> list[ChatTurn]:
        return self._store.turns(self._topic_key)

    def append(self, turn: ChatTurn) -> None:
        self._store.append(self._topic_key, turn)
