"""MemoryStore abstract base class — persistence interface for engine state."""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime

from ..types import (
    AnalyticsRecord,
    CompressionTrendPoint,
    ContextCacheEntry,
    Conversation,
    EmbeddingRef,
    KeyFact,
    MessageMetadata,
    OperationMetrics,
    Segment,
)


class MemoryStore(ABC):
    """Pluggable storage backend for conversation memory.

    Every write either fully applies or raises ``PersistenceError``.
    """

    # -- conversations --

    @abstractmethod
    def save_conversation(self, conversation: Conversation) -> None:
        """Insert or update a conversation row."""

    @abstractmethod
    def get_conversation(self, conversation_id: str) -> Conversation | None:
        """Return a conversation by id. None if not found."""

    @abstractmethod
    def list_conversations(self, limit: int | None = None) -> list[Conversation]:
        """List conversations, most recently active first."""

    @abstractmethod
    def delete_conversation(self, conversation_id: str) -> bool:
        """Delete a conversation and everything the engine stored for it."""

    # -- message metadata --

    @abstractmethod
    def append_message_metadata(self, metadata: MessageMetadata) -> MessageMetadata:
        """Persist metadata for a new message.

        Assigns the next position in the conversation and bumps the
        conversation's running totals in the same transaction. Creates the
        conversation row when missing.
        """

    @abstractmethod
    def get_message_metadata(self, message_id: int) -> MessageMetadata | None:
        """Return metadata for one message. None if not found."""

    @abstractmethod
    def get_messages_by_position(
        self, conversation_id: str, start_position: int, end_position: int,
    ) -> list[MessageMetadata]:
        """Return metadata for an inclusive position range, oldest first."""

    @abstractmethod
    def get_last_position(self, conversation_id: str) -> int:
        """Highest assigned position in a conversation (0 when empty)."""

    @abstractmethod
    def get_last_message_id(self, conversation_id: str) -> int:
        """Highest ledger message id with recorded metadata (0 when none)."""

    @abstractmethod
    def update_message_importance(
        self, message_id: int, importance: float, user_marked: bool,
    ) -> MessageMetadata | None:
        """Set importance and the user-marked flag. Returns updated metadata."""

    @abstractmethod
    def get_user_marked(self, conversation_id: str) -> list[MessageMetadata]:
        """All user-marked messages in a conversation, oldest first."""

    # -- segments --

    @abstractmethod
    def get_segments(self, conversation_id: str) -> list[Segment]:
        """All segments of a conversation ordered by start position."""

    @abstractmethod
    def get_segment(self, segment_id: str) -> Segment | None:
        """Return one segment. None if not found."""

    @abstractmethod
    def apply_segment_changes(
        self,
        conversation_id: str,
        upserts: list[Segment],
        deletes: list[str] | None = None,
        compression_levels: list[tuple[int, int, int]] | None = None,
    ) -> None:
        """Atomically upsert/delete segments and relabel message levels.

        ``compression_levels`` holds ``(start_position, end_position, level)``
        ranges applied to message metadata in the same transaction.
        """

    # -- key facts --

    @abstractmethod
    def save_key_fact(self, fact: KeyFact) -> None:
        """Insert or update a key fact."""

    @abstractmethod
    def get_key_facts(
        self,
        conversation_id: str,
        include_expired: bool = False,
        now: datetime | None = None,
    ) -> list[KeyFact]:
        """Facts for a conversation, highest importance then newest first."""

    @abstractmethod
    def key_fact_exists(self, conversation_id: str, text: str) -> bool:
        """True if a fact with identical text exists (case-insensitive)."""

    @abstractmethod
    def delete_key_facts(
        self,
        conversation_id: str,
        older_than: datetime | None = None,
        importance_below: float | None = None,
    ) -> int:
        """Delete facts matching all given criteria. Returns count deleted."""

    # -- context cache --

    @abstractmethod
    def get_cache_entry(self, cache_key: str) -> ContextCacheEntry | None:
        """Return a cache entry (expired or not). None if absent."""

    @abstractmethod
    def put_cache_entry(self, entry: ContextCacheEntry) -> None:
        """Insert or replace a cache entry."""

    @abstractmethod
    def increment_cache_hit(self, cache_key: str) -> None:
        """Bump the persisted hit counter of an entry."""

    @abstractmethod
    def delete_cache_entries(self, conversation_id: str | None = None) -> int:
        """Delete entries for one conversation, or all when None."""

    @abstractmethod
    def delete_expired_cache_entries(self, now: datetime | None = None) -> int:
        """Delete entries whose expiry has passed."""

    # -- analytics --

    @abstractmethod
    def record_analytics(self, record: AnalyticsRecord) -> None:
        """Append one analytics record."""

    @abstractmethod
    def get_analytics_totals(self, conversation_id: str | None = None) -> dict:
        """Aggregate analytics for one conversation or the whole system.

        Keys: operations, input_tokens, output_tokens, avg_compression,
        avg_processing_time_ms, retrievals, cache_hits.
        """

    @abstractmethod
    def get_operation_metrics(self) -> list[OperationMetrics]:
        """Aggregates grouped by operation type."""

    @abstractmethod
    def get_compression_trends(self, days: int) -> list[CompressionTrendPoint]:
        """Daily average compression ratio over the last ``days`` days."""

    @abstractmethod
    def delete_analytics_before(self, cutoff: datetime) -> int:
        """Delete analytics records older than cutoff."""

    # -- embedding references --

    @abstractmethod
    def save_embedding_ref(self, ref: EmbeddingRef) -> None:
        """Record that an item was indexed by the vector service."""

    @abstractmethod
    def get_embedding_refs(self, conversation_id: str) -> list[EmbeddingRef]:
        """All indexed item references for a conversation."""

    @abstractmethod
    def delete_embedding_refs(self, conversation_id: str, item_ids: list[str] | None = None) -> int:
        """Delete references for given items, or all in the conversation."""

    def close(self) -> None:
        """Release resources. Default no-op."""
