"""RetrievalIndexer: keeps the vector gateway and embedding references in sync."""

from __future__ import annotations

import logging

from ..types import (
    EmbeddingRef,
    PersistenceError,
    RetrievalGateway,
    RetrievalGatewayError,
    Segment,
)
from ..core.store import MemoryStore

logger = logging.getLogger(__name__)


def message_item_id(message_id: int) -> str:
    return f"message:{message_id}"


def segment_item_id(segment_id: str) -> str:
    return f"segment:{segment_id}"


class RetrievalIndexer:
    """Index messages and segment summaries. Gateway failures are logged,
    never raised: an unindexed item is only missing from semantic recall."""

    def __init__(
        self,
        gateway: RetrievalGateway | None,
        store: MemoryStore,
        index_segments: bool = True,
    ) -> None:
        self.gateway = gateway
        self.store = store
        self.index_segments = index_segments

    def _index(self, conversation_id: str, item_id: str, text: str, item_type: str) -> bool:
        if self.gateway is None or not text.strip():
            return False
        try:
            vector_ref = self.gateway.index(conversation_id, item_id, text, item_type)
        except RetrievalGatewayError as e:
            logger.warning("Indexing %s in %s failed: %s", item_id, conversation_id, e)
            return False
        try:
            self.store.save_embedding_ref(EmbeddingRef(
                item_id=item_id,
                conversation_id=conversation_id,
                item_type=item_type,
                vector_ref=vector_ref or "",
            ))
        except PersistenceError as e:
            logger.warning("Embedding reference for %s not saved: %s", item_id, e)
        return True

    def index_message(self, conversation_id: str, message_id: int, text: str) -> bool:
        return self._index(conversation_id, message_item_id(message_id), text, "message")

    def index_segment(self, segment: Segment) -> bool:
        if not self.index_segments:
            return False
        return self._index(
            segment.conversation_id, segment_item_id(segment.segment_id), segment.summary, "summary",
        )

    def remove(self, conversation_id: str, item_ids: list[str] | None = None) -> None:
        """Remove items (or the whole conversation when None) from the index."""
        if item_ids is not None and not item_ids:
            return
        if self.gateway is not None:
            try:
                self.gateway.delete(conversation_id, item_ids)
            except RetrievalGatewayError as e:
                logger.warning("Removing index entries for %s failed: %s", conversation_id, e)
        try:
            self.store.delete_embedding_refs(conversation_id, item_ids)
        except PersistenceError as e:
            logger.warning("Embedding references for %s not removed: %s", conversation_id, e)
