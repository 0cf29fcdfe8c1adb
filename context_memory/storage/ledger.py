"""SQLiteLedger: append-only transcript for standalone use and tests."""

from __future__ import annotations

import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path

from ..types import LedgerMessage, Message, PersistenceError

LEDGER_SCHEMA_SQL = """\
CREATE TABLE IF NOT EXISTS ledger_messages (
    message_id INTEGER PRIMARY KEY AUTOINCREMENT,
    conversation_id TEXT NOT NULL,
    role TEXT NOT NULL,
    content TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_ledger_conv ON ledger_messages(conversation_id, message_id);
"""


def _row_to_ledger_message(row: sqlite3.Row) -> LedgerMessage:
    ts = datetime.fromisoformat(row["created_at"])
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return LedgerMessage(
        message_id=row["message_id"],
        conversation_id=row["conversation_id"],
        role=row["role"],
        content=row["content"],
        timestamp=ts,
    )


class SQLiteLedger:
    """Raw message transcript. Ids are global and strictly increasing."""

    def __init__(self, db_path: str | Path) -> None:
        self.db_path = Path(db_path)
        if str(db_path) != ":memory:":
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.executescript(LEDGER_SCHEMA_SQL)
        self._conn.commit()

    def append(self, conversation_id: str, message: Message) -> tuple[int, datetime]:
        ts = message.timestamp or datetime.now(timezone.utc)
        with self._lock:
            try:
                cursor = self._conn.execute(
                    """INSERT INTO ledger_messages (conversation_id, role, content, created_at)
                    VALUES (?, ?, ?, ?)""",
                    (conversation_id, message.role, message.content, ts.isoformat()),
                )
                self._conn.commit()
            except sqlite3.Error as e:
                self._conn.rollback()
                raise PersistenceError(f"Ledger append failed: {e}") from e
        return cursor.lastrowid, ts

    def read_range(self, conversation_id: str, start_id: int, end_id: int) -> list[LedgerMessage]:
        with self._lock:
            rows = self._conn.execute(
                """SELECT * FROM ledger_messages
                WHERE conversation_id = ? AND message_id BETWEEN ? AND ?
                ORDER BY message_id""",
                (conversation_id, start_id, end_id),
            ).fetchall()
        return [_row_to_ledger_message(r) for r in rows]

    def read_recent(self, conversation_id: str, limit: int) -> list[LedgerMessage]:
        with self._lock:
            rows = self._conn.execute(
                """SELECT * FROM ledger_messages
                WHERE conversation_id = ? ORDER BY message_id DESC LIMIT ?""",
                (conversation_id, limit),
            ).fetchall()
        return [_row_to_ledger_message(r) for r in reversed(rows)]

    def delete_conversation(self, conversation_id: str) -> int:
        with self._lock:
            cursor = self._conn.execute(
                "DELETE FROM ledger_messages WHERE conversation_id = ?", (conversation_id,),
            )
            self._conn.commit()
        return cursor.rowcount

    def close(self) -> None:
        with self._lock:
            self._conn.close()
