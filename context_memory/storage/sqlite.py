"""SQLiteStore: primary storage backend using stdlib sqlite3."""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Iterator

from ..core.store import MemoryStore
from ..types import (
    AnalyticsRecord,
    CompressionTrendPoint,
    ContextCacheEntry,
    Conversation,
    EmbeddingRef,
    FactType,
    KeyFact,
    MessageMetadata,
    OperationMetrics,
    OperationType,
    PersistenceError,
    Segment,
    SegmentType,
)

logger = logging.getLogger(__name__)

SCHEMA_SQL = """\
CREATE TABLE IF NOT EXISTS conversations (
    conversation_id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL DEFAULT '',
    title TEXT NOT NULL DEFAULT '',
    total_messages INTEGER NOT NULL DEFAULT 0,
    total_tokens INTEGER NOT NULL DEFAULT 0,
    max_context_tokens INTEGER,
    last_activity TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS message_metadata (
    message_id INTEGER PRIMARY KEY,
    conversation_id TEXT NOT NULL,
    position INTEGER NOT NULL,
    role TEXT NOT NULL DEFAULT 'user',
    importance_score REAL NOT NULL DEFAULT 0.5,
    user_marked INTEGER NOT NULL DEFAULT 0,
    compression_level INTEGER NOT NULL DEFAULT 0,
    token_count INTEGER NOT NULL DEFAULT 0,
    entities_json TEXT NOT NULL DEFAULT '[]',
    topics_json TEXT NOT NULL DEFAULT '[]',
    semantic_hash TEXT NOT NULL DEFAULT '',
    created_at TEXT NOT NULL,
    UNIQUE (conversation_id, position),
    FOREIGN KEY (conversation_id) REFERENCES conversations(conversation_id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS conversation_segments (
    segment_id TEXT PRIMARY KEY,
    conversation_id TEXT NOT NULL,
    segment_type TEXT NOT NULL,
    start_position INTEGER NOT NULL,
    end_position INTEGER NOT NULL,
    start_message_id INTEGER NOT NULL DEFAULT 0,
    end_message_id INTEGER NOT NULL DEFAULT 0,
    summary TEXT NOT NULL DEFAULT '',
    importance_score REAL NOT NULL DEFAULT 0.5,
    token_count INTEGER NOT NULL DEFAULT 0,
    original_tokens INTEGER NOT NULL DEFAULT 0,
    message_count INTEGER NOT NULL DEFAULT 0,
    compression_level INTEGER NOT NULL DEFAULT 0,
    sealed INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    FOREIGN KEY (conversation_id) REFERENCES conversations(conversation_id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS key_facts (
    fact_id TEXT PRIMARY KEY,
    conversation_id TEXT NOT NULL,
    text TEXT NOT NULL,
    fact_type TEXT NOT NULL DEFAULT 'fact',
    importance_score REAL NOT NULL DEFAULT 1.0,
    source_message_id INTEGER,
    source TEXT NOT NULL DEFAULT 'user',
    extracted_at TEXT NOT NULL,
    expires_at TEXT,
    FOREIGN KEY (conversation_id) REFERENCES conversations(conversation_id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS context_cache (
    cache_key TEXT PRIMARY KEY,
    conversation_id TEXT NOT NULL,
    window_json TEXT NOT NULL,
    token_count INTEGER NOT NULL DEFAULT 0,
    hit_count INTEGER NOT NULL DEFAULT 0,
    expires_at TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS context_analytics (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    conversation_id TEXT NOT NULL,
    operation_type TEXT NOT NULL,
    input_tokens INTEGER NOT NULL DEFAULT 0,
    output_tokens INTEGER NOT NULL DEFAULT 0,
    compression_ratio REAL,
    processing_time_ms REAL NOT NULL DEFAULT 0.0,
    cache_hit INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS embeddings_metadata (
    conversation_id TEXT NOT NULL,
    item_id TEXT NOT NULL,
    item_type TEXT NOT NULL,
    vector_ref TEXT NOT NULL DEFAULT '',
    created_at TEXT NOT NULL,
    PRIMARY KEY (conversation_id, item_id)
);

CREATE INDEX IF NOT EXISTS idx_message_metadata_conv ON message_metadata(conversation_id, position);
CREATE INDEX IF NOT EXISTS idx_message_metadata_marked ON message_metadata(conversation_id, user_marked);
CREATE INDEX IF NOT EXISTS idx_segments_conv ON conversation_segments(conversation_id, start_position);
CREATE INDEX IF NOT EXISTS idx_key_facts_conv ON key_facts(conversation_id);
CREATE INDEX IF NOT EXISTS idx_context_cache_conv ON context_cache(conversation_id);
CREATE INDEX IF NOT EXISTS idx_context_cache_expires ON context_cache(expires_at);
CREATE INDEX IF NOT EXISTS idx_analytics_conv ON context_analytics(conversation_id);
CREATE INDEX IF NOT EXISTS idx_analytics_created ON context_analytics(created_at);
"""


def _dt_to_str(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat()


def _str_to_dt(s: str) -> datetime:
    dt = datetime.fromisoformat(s)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _row_to_conversation(row: sqlite3.Row) -> Conversation:
    return Conversation(
        conversation_id=row["conversation_id"],
        user_id=row["user_id"],
        title=row["title"],
        total_messages=row["total_messages"],
        total_tokens=row["total_tokens"],
        max_context_tokens=row["max_context_tokens"],
        last_activity=_str_to_dt(row["last_activity"]),
        created_at=_str_to_dt(row["created_at"]),
    )


def _row_to_metadata(row: sqlite3.Row) -> MessageMetadata:
    return MessageMetadata(
        message_id=row["message_id"],
        conversation_id=row["conversation_id"],
        position=row["position"],
        role=row["role"],
        importance_score=row["importance_score"],
        user_marked=bool(row["user_marked"]),
        compression_level=row["compression_level"],
        token_count=row["token_count"],
        entities=set(json.loads(row["entities_json"])),
        topics=set(json.loads(row["topics_json"])),
        semantic_hash=row["semantic_hash"],
        created_at=_str_to_dt(row["created_at"]),
    )


def _row_to_segment(row: sqlite3.Row) -> Segment:
    return Segment(
        segment_id=row["segment_id"],
        conversation_id=row["conversation_id"],
        segment_type=SegmentType(row["segment_type"]),
        start_position=row["start_position"],
        end_position=row["end_position"],
        start_message_id=row["start_message_id"],
        end_message_id=row["end_message_id"],
        summary=row["summary"],
        importance_score=row["importance_score"],
        token_count=row["token_count"],
        original_tokens=row["original_tokens"],
        message_count=row["message_count"],
        compression_level=row["compression_level"],
        sealed=bool(row["sealed"]),
        created_at=_str_to_dt(row["created_at"]),
        updated_at=_str_to_dt(row["updated_at"]),
    )


def _row_to_fact(row: sqlite3.Row) -> KeyFact:
    return KeyFact(
        fact_id=row["fact_id"],
        conversation_id=row["conversation_id"],
        text=row["text"],
        fact_type=FactType(row["fact_type"]),
        importance_score=row["importance_score"],
        source_message_id=row["source_message_id"],
        source=row["source"],
        extracted_at=_str_to_dt(row["extracted_at"]),
        expires_at=_str_to_dt(row["expires_at"]) if row["expires_at"] else None,
    )


def _row_to_cache_entry(row: sqlite3.Row) -> ContextCacheEntry:
    return ContextCacheEntry(
        cache_key=row["cache_key"],
        conversation_id=row["conversation_id"],
        window_json=row["window_json"],
        token_count=row["token_count"],
        hit_count=row["hit_count"],
        expires_at=_str_to_dt(row["expires_at"]),
        created_at=_str_to_dt(row["created_at"]),
    )


class SQLiteStore(MemoryStore):
    """SQLite-backed memory store. One connection shared behind a lock."""

    def __init__(self, db_path: str | Path) -> None:
        self.db_path = Path(db_path)
        if str(db_path) != ":memory:":
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()
        self._ensure_schema()

    def _get_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA foreign_keys=ON")
        return self._conn

    def _ensure_schema(self) -> None:
        with self._lock:
            conn = self._get_conn()
            conn.executescript(SCHEMA_SQL)
            conn.commit()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block in one transaction; sqlite errors become PersistenceError."""
        with self._lock:
            conn = self._get_conn()
            try:
                yield conn
                conn.commit()
            except sqlite3.Error as e:
                conn.rollback()
                raise PersistenceError(f"SQLite write failed: {e}") from e

    @contextmanager
    def _reading(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                yield self._get_conn()
            except sqlite3.Error as e:
                raise PersistenceError(f"SQLite read failed: {e}") from e

    # -- conversations --

    def save_conversation(self, conversation: Conversation) -> None:
        with self._transaction() as conn:
            conn.execute(
                """INSERT INTO conversations
                (conversation_id, user_id, title, total_messages, total_tokens,
                 max_context_tokens, last_activity, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(conversation_id) DO UPDATE SET
                    user_id = excluded.user_id,
                    title = excluded.title,
                    total_messages = excluded.total_messages,
                    total_tokens = excluded.total_tokens,
                    max_context_tokens = excluded.max_context_tokens,
                    last_activity = excluded.last_activity""",
                (
                    conversation.conversation_id,
                    conversation.user_id,
                    conversation.title,
                    conversation.total_messages,
                    conversation.total_tokens,
                    conversation.max_context_tokens,
                    _dt_to_str(conversation.last_activity),
                    _dt_to_str(conversation.created_at),
                ),
            )

    def get_conversation(self, conversation_id: str) -> Conversation | None:
        with self._reading() as conn:
            row = conn.execute(
                "SELECT * FROM conversations WHERE conversation_id = ?",
                (conversation_id,),
            ).fetchone()
        return _row_to_conversation(row) if row else None

    def list_conversations(self, limit: int | None = None) -> list[Conversation]:
        query = "SELECT * FROM conversations ORDER BY last_activity DESC"
        params: tuple = ()
        if limit is not None:
            query += " LIMIT ?"
            params = (limit,)
        with self._reading() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_conversation(r) for r in rows]

    def delete_conversation(self, conversation_id: str) -> bool:
        with self._transaction() as conn:
            for table in ("context_cache", "context_analytics", "embeddings_metadata"):
                conn.execute(f"DELETE FROM {table} WHERE conversation_id = ?", (conversation_id,))
            cursor = conn.execute(
                "DELETE FROM conversations WHERE conversation_id = ?", (conversation_id,),
            )
        return cursor.rowcount > 0

    # -- message metadata --

    def append_message_metadata(self, metadata: MessageMetadata) -> MessageMetadata:
        now = _dt_to_str(metadata.created_at)
        with self._transaction() as conn:
            existing = conn.execute(
                "SELECT * FROM message_metadata WHERE message_id = ?",
                (metadata.message_id,),
            ).fetchone()
            if existing:
                return _row_to_metadata(existing)

            conn.execute(
                """INSERT OR IGNORE INTO conversations
                (conversation_id, last_activity, created_at) VALUES (?, ?, ?)""",
                (metadata.conversation_id, now, now),
            )
            position = conn.execute(
                "SELECT COALESCE(MAX(position), 0) + 1 FROM message_metadata WHERE conversation_id = ?",
                (metadata.conversation_id,),
            ).fetchone()[0]
            metadata.position = position
            conn.execute(
                """INSERT INTO message_metadata
                (message_id, conversation_id, position, role, importance_score,
                 user_marked, compression_level, token_count, entities_json,
                 topics_json, semantic_hash, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    metadata.message_id,
                    metadata.conversation_id,
                    position,
                    metadata.role,
                    metadata.importance_score,
                    int(metadata.user_marked),
                    metadata.compression_level,
                    metadata.token_count,
                    json.dumps(sorted(metadata.entities)),
                    json.dumps(sorted(metadata.topics)),
                    metadata.semantic_hash,
                    now,
                ),
            )
            conn.execute(
                """UPDATE conversations SET
                    total_messages = total_messages + 1,
                    total_tokens = total_tokens + ?,
                    last_activity = ?
                WHERE conversation_id = ?""",
                (metadata.token_count, now, metadata.conversation_id),
            )
        return metadata

    def get_message_metadata(self, message_id: int) -> MessageMetadata | None:
        with self._reading() as conn:
            row = conn.execute(
                "SELECT * FROM message_metadata WHERE message_id = ?", (message_id,),
            ).fetchone()
        return _row_to_metadata(row) if row else None

    def get_messages_by_position(
        self, conversation_id: str, start_position: int, end_position: int,
    ) -> list[MessageMetadata]:
        with self._reading() as conn:
            rows = conn.execute(
                """SELECT * FROM message_metadata
                WHERE conversation_id = ? AND position BETWEEN ? AND ?
                ORDER BY position""",
                (conversation_id, start_position, end_position),
            ).fetchall()
        return [_row_to_metadata(r) for r in rows]

    def get_last_position(self, conversation_id: str) -> int:
        with self._reading() as conn:
            row = conn.execute(
                "SELECT COALESCE(MAX(position), 0) FROM message_metadata WHERE conversation_id = ?",
                (conversation_id,),
            ).fetchone()
        return row[0]

    def get_last_message_id(self, conversation_id: str) -> int:
        with self._reading() as conn:
            row = conn.execute(
                "SELECT COALESCE(MAX(message_id), 0) FROM message_metadata WHERE conversation_id = ?",
                (conversation_id,),
            ).fetchone()
        return row[0]

    def update_message_importance(
        self, message_id: int, importance: float, user_marked: bool,
    ) -> MessageMetadata | None:
        with self._transaction() as conn:
            conn.execute(
                "UPDATE message_metadata SET importance_score = ?, user_marked = ? WHERE message_id = ?",
                (importance, int(user_marked), message_id),
            )
            row = conn.execute(
                "SELECT * FROM message_metadata WHERE message_id = ?", (message_id,),
            ).fetchone()
        return _row_to_metadata(row) if row else None

    def get_user_marked(self, conversation_id: str) -> list[MessageMetadata]:
        with self._reading() as conn:
            rows = conn.execute(
                """SELECT * FROM message_metadata
                WHERE conversation_id = ? AND user_marked = 1 ORDER BY position""",
                (conversation_id,),
            ).fetchall()
        return [_row_to_metadata(r) for r in rows]

    # -- segments --

    def get_segments(self, conversation_id: str) -> list[Segment]:
        with self._reading() as conn:
            rows = conn.execute(
                """SELECT * FROM conversation_segments
                WHERE conversation_id = ? ORDER BY start_position""",
                (conversation_id,),
            ).fetchall()
        return [_row_to_segment(r) for r in rows]

    def get_segment(self, segment_id: str) -> Segment | None:
        with self._reading() as conn:
            row = conn.execute(
                "SELECT * FROM conversation_segments WHERE segment_id = ?", (segment_id,),
            ).fetchone()
        return _row_to_segment(row) if row else None

    def apply_segment_changes(
        self,
        conversation_id: str,
        upserts: list[Segment],
        deletes: list[str] | None = None,
        compression_levels: list[tuple[int, int, int]] | None = None,
    ) -> None:
        with self._transaction() as conn:
            for segment_id in deletes or []:
                conn.execute(
                    "DELETE FROM conversation_segments WHERE segment_id = ?", (segment_id,),
                )
            for seg in upserts:
                conn.execute(
                    """INSERT OR REPLACE INTO conversation_segments
                    (segment_id, conversation_id, segment_type, start_position,
                     end_position, start_message_id, end_message_id, summary,
                     importance_score, token_count, original_tokens, message_count,
                     compression_level, sealed, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        seg.segment_id,
                        conversation_id,
                        seg.segment_type.value,
                        seg.start_position,
                        seg.end_position,
                        seg.start_message_id,
                        seg.end_message_id,
                        seg.summary,
                        seg.importance_score,
                        seg.token_count,
                        seg.original_tokens,
                        seg.message_count,
                        seg.compression_level,
                        int(seg.sealed),
                        _dt_to_str(seg.created_at),
                        _dt_to_str(seg.updated_at),
                    ),
                )
            for start, end, level in compression_levels or []:
                conn.execute(
                    """UPDATE message_metadata SET compression_level = ?
                    WHERE conversation_id = ? AND position BETWEEN ? AND ?""",
                    (level, conversation_id, start, end),
                )

    # -- key facts --

    def save_key_fact(self, fact: KeyFact) -> None:
        with self._transaction() as conn:
            now = _dt_to_str(fact.extracted_at)
            conn.execute(
                """INSERT OR IGNORE INTO conversations
                (conversation_id, last_activity, created_at) VALUES (?, ?, ?)""",
                (fact.conversation_id, now, now),
            )
            conn.execute(
                """INSERT OR REPLACE INTO key_facts
                (fact_id, conversation_id, text, fact_type, importance_score,
                 source_message_id, source, extracted_at, expires_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    fact.fact_id,
                    fact.conversation_id,
                    fact.text,
                    fact.fact_type.value,
                    fact.importance_score,
                    fact.source_message_id,
                    fact.source,
                    now,
                    _dt_to_str(fact.expires_at) if fact.expires_at else None,
                ),
            )

    def get_key_facts(
        self,
        conversation_id: str,
        include_expired: bool = False,
        now: datetime | None = None,
    ) -> list[KeyFact]:
        query = "SELECT * FROM key_facts WHERE conversation_id = ?"
        params: list = [conversation_id]
        if not include_expired:
            query += " AND (expires_at IS NULL OR expires_at > ?)"
            params.append(_dt_to_str(now or datetime.now(timezone.utc)))
        query += " ORDER BY importance_score DESC, extracted_at DESC"
        with self._reading() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_fact(r) for r in rows]

    def key_fact_exists(self, conversation_id: str, text: str) -> bool:
        with self._reading() as conn:
            row = conn.execute(
                "SELECT 1 FROM key_facts WHERE conversation_id = ? AND lower(text) = lower(?) LIMIT 1",
                (conversation_id, text.strip()),
            ).fetchone()
        return row is not None

    def delete_key_facts(
        self,
        conversation_id: str,
        older_than: datetime | None = None,
        importance_below: float | None = None,
    ) -> int:
        query = "DELETE FROM key_facts WHERE conversation_id = ?"
        params: list = [conversation_id]
        if older_than is not None:
            query += " AND extracted_at < ?"
            params.append(_dt_to_str(older_than))
        if importance_below is not None:
            query += " AND importance_score < ?"
            params.append(importance_below)
        with self._transaction() as conn:
            cursor = conn.execute(query, params)
        return cursor.rowcount

    # -- context cache --

    def get_cache_entry(self, cache_key: str) -> ContextCacheEntry | None:
        with self._reading() as conn:
            row = conn.execute(
                "SELECT * FROM context_cache WHERE cache_key = ?", (cache_key,),
            ).fetchone()
        return _row_to_cache_entry(row) if row else None

    def put_cache_entry(self, entry: ContextCacheEntry) -> None:
        with self._transaction() as conn:
            conn.execute(
                """INSERT OR REPLACE INTO context_cache
                (cache_key, conversation_id, window_json, token_count, hit_count,
                 expires_at, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (
                    entry.cache_key,
                    entry.conversation_id,
                    entry.window_json,
                    entry.token_count,
                    entry.hit_count,
                    _dt_to_str(entry.expires_at),
                    _dt_to_str(entry.created_at),
                ),
            )

    def increment_cache_hit(self, cache_key: str) -> None:
        with self._transaction() as conn:
            conn.execute(
                "UPDATE context_cache SET hit_count = hit_count + 1 WHERE cache_key = ?",
                (cache_key,),
            )

    def delete_cache_entries(self, conversation_id: str | None = None) -> int:
        with self._transaction() as conn:
            if conversation_id is None:
                cursor = conn.execute("DELETE FROM context_cache")
            else:
                cursor = conn.execute(
                    "DELETE FROM context_cache WHERE conversation_id = ?", (conversation_id,),
                )
        return cursor.rowcount

    def delete_expired_cache_entries(self, now: datetime | None = None) -> int:
        cutoff = _dt_to_str(now or datetime.now(timezone.utc))
        with self._transaction() as conn:
            cursor = conn.execute("DELETE FROM context_cache WHERE expires_at <= ?", (cutoff,))
        return cursor.rowcount

    # -- analytics --

    def record_analytics(self, record: AnalyticsRecord) -> None:
        with self._transaction() as conn:
            conn.execute(
                """INSERT INTO context_analytics
                (conversation_id, operation_type, input_tokens, output_tokens,
                 compression_ratio, processing_time_ms, cache_hit, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    record.conversation_id,
                    record.operation_type.value,
                    record.input_tokens,
                    record.output_tokens,
                    record.compression_ratio,
                    record.processing_time_ms,
                    int(record.cache_hit),
                    _dt_to_str(record.created_at),
                ),
            )

    def get_analytics_totals(self, conversation_id: str | None = None) -> dict:
        query = """SELECT
                COUNT(*) AS operations,
                COALESCE(SUM(input_tokens), 0) AS input_tokens,
                COALESCE(SUM(output_tokens), 0) AS output_tokens,
                AVG(compression_ratio) AS avg_compression,
                COALESCE(AVG(processing_time_ms), 0.0) AS avg_processing_time_ms,
                COALESCE(SUM(CASE WHEN operation_type = ? THEN 1 ELSE 0 END), 0) AS retrievals,
                COALESCE(SUM(CASE WHEN operation_type = ? THEN cache_hit ELSE 0 END), 0) AS cache_hits
            FROM context_analytics"""
        params: list = [OperationType.RETRIEVE.value, OperationType.RETRIEVE.value]
        if conversation_id is not None:
            query += " WHERE conversation_id = ?"
            params.append(conversation_id)
        with self._reading() as conn:
            row = conn.execute(query, params).fetchone()
        return {
            "operations": row["operations"],
            "input_tokens": row["input_tokens"],
            "output_tokens": row["output_tokens"],
            "avg_compression": row["avg_compression"],
            "avg_processing_time_ms": row["avg_processing_time_ms"],
            "retrievals": row["retrievals"],
            "cache_hits": row["cache_hits"],
        }

    def get_operation_metrics(self) -> list[OperationMetrics]:
        with self._reading() as conn:
            rows = conn.execute(
                """SELECT operation_type,
                    COUNT(*) AS count,
                    AVG(processing_time_ms) AS avg_time,
                    COALESCE(AVG(compression_ratio), 0.0) AS avg_ratio,
                    SUM(input_tokens) AS input_tokens,
                    SUM(output_tokens) AS output_tokens
                FROM context_analytics
                GROUP BY operation_type
                ORDER BY operation_type"""
            ).fetchall()
        return [
            OperationMetrics(
                operation_type=r["operation_type"],
                count=r["count"],
                avg_processing_time_ms=r["avg_time"] or 0.0,
                avg_compression_ratio=r["avg_ratio"],
                total_input_tokens=r["input_tokens"] or 0,
                total_output_tokens=r["output_tokens"] or 0,
            )
            for r in rows
        ]

    def get_compression_trends(self, days: int) -> list[CompressionTrendPoint]:
        cutoff = _dt_to_str(datetime.now(timezone.utc) - timedelta(days=days))
        with self._reading() as conn:
            rows = conn.execute(
                """SELECT substr(created_at, 1, 10) AS day,
                    AVG(compression_ratio) AS avg_ratio,
                    COUNT(*) AS operations
                FROM context_analytics
                WHERE compression_ratio IS NOT NULL AND created_at >= ?
                GROUP BY day
                ORDER BY day""",
                (cutoff,),
            ).fetchall()
        return [
            CompressionTrendPoint(
                date=r["day"],
                average_compression=r["avg_ratio"],
                operations=r["operations"],
            )
            for r in rows
        ]

    def delete_analytics_before(self, cutoff: datetime) -> int:
        with self._transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM context_analytics WHERE created_at < ?", (_dt_to_str(cutoff),),
            )
        return cursor.rowcount

    # -- embedding references --

    def save_embedding_ref(self, ref: EmbeddingRef) -> None:
        with self._transaction() as conn:
            conn.execute(
                """INSERT OR REPLACE INTO embeddings_metadata
                (conversation_id, item_id, item_type, vector_ref, created_at)
                VALUES (?, ?, ?, ?, ?)""",
                (
                    ref.conversation_id,
                    ref.item_id,
                    ref.item_type,
                    ref.vector_ref,
                    _dt_to_str(ref.created_at),
                ),
            )

    def get_embedding_refs(self, conversation_id: str) -> list[EmbeddingRef]:
        with self._reading() as conn:
            rows = conn.execute(
                "SELECT * FROM embeddings_metadata WHERE conversation_id = ? ORDER BY created_at",
                (conversation_id,),
            ).fetchall()
        return [
            EmbeddingRef(
                item_id=r["item_id"],
                conversation_id=r["conversation_id"],
                item_type=r["item_type"],
                vector_ref=r["vector_ref"],
                created_at=_str_to_dt(r["created_at"]),
            )
            for r in rows
        ]

    def delete_embedding_refs(self, conversation_id: str, item_ids: list[str] | None = None) -> int:
        with self._transaction() as conn:
            if item_ids is None:
                cursor = conn.execute(
                    "DELETE FROM embeddings_metadata WHERE conversation_id = ?", (conversation_id,),
                )
                return cursor.rowcount
            deleted = 0
            for item_id in item_ids:
                cursor = conn.execute(
                    "DELETE FROM embeddings_metadata WHERE conversation_id = ? AND item_id = ?",
                    (conversation_id, item_id),
                )
                deleted += cursor.rowcount
        return deleted

    def close(self) -> None:
        with self._lock:
            if self._conn:
                self._conn.close()
                self._conn = None
