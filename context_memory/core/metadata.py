"""MessageMetadataStore: importance, token counts, entities and topics per message."""

from __future__ import annotations

import hashlib
import logging
import re
import time
from datetime import datetime, timezone
from typing import Callable, TypeVar

from ..patterns import (
    ACRONYM_PATTERN,
    DATE_PATTERN,
    DECISION_MARKERS,
    EMPHASIS_MARKERS,
    ENTITY_STOPWORDS,
    MONEY_PATTERN,
    PREFERENCE_MARKERS,
    PROPER_NOUN_PATTERN,
    TOPIC_KEYWORDS,
)
from ..token_counter import estimate_tokens
from ..types import ImportanceConfig, MessageMetadata, PersistenceError
from .store import MemoryStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

BASE_IMPORTANCE = 0.5
LONG_CONTENT_CHARS = 400

_DECISION_RE = [re.compile(p, re.IGNORECASE) for p in DECISION_MARKERS]
_EMPHASIS_RE = [re.compile(p, re.IGNORECASE) for p in EMPHASIS_MARKERS]
_PREFERENCE_RE = [re.compile(p, re.IGNORECASE) for p in PREFERENCE_MARKERS]
_PROPER_NOUN_RE = re.compile(PROPER_NOUN_PATTERN)
_ACRONYM_RE = re.compile(ACRONYM_PATTERN)
_MONEY_RE = re.compile(MONEY_PATTERN, re.IGNORECASE)
_DATE_RE = re.compile(DATE_PATTERN)


def score_importance(content: str, role: str) -> float:
    """Default importance heuristic for a message without an explicit score."""
    score = BASE_IMPORTANCE
    if "?" in content:
        score += 0.1
    if any(p.search(content) for p in _DECISION_RE):
        score += 0.2
    if any(p.search(content) for p in _EMPHASIS_RE):
        score += 0.15
    if any(p.search(content) for p in _PREFERENCE_RE):
        score += 0.1
    if role == "user":
        score += 0.1
    if len(content) > LONG_CONTENT_CHARS:
        score += 0.05
    return round(min(score, 1.0), 4)


def extract_entities(text: str) -> set[str]:
    """Proper nouns, acronyms, money amounts and dates mentioned in text."""
    entities: set[str] = set()
    for match in _PROPER_NOUN_RE.findall(text):
        words = [w for w in match.split() if w not in ENTITY_STOPWORDS]
        if words:
            entities.add(" ".join(words))
    entities.update(m for m in _ACRONYM_RE.findall(text) if m not in ENTITY_STOPWORDS)
    entities.update(m.replace(" ", "") for m in _MONEY_RE.findall(text))
    entities.update(_DATE_RE.findall(text))
    return entities


def extract_topics(text: str) -> set[str]:
    lowered = text.lower()
    return {
        topic
        for topic, keywords in TOPIC_KEYWORDS.items()
        if any(k in lowered for k in keywords)
    }


def semantic_hash(text: str) -> str:
    """sha256[:16] of whitespace/case-normalized content."""
    normalized = " ".join(text.lower().split())
    return hashlib.sha256(normalized.encode()).hexdigest()[:16]


def _as_utc(dt: datetime | None) -> datetime:
    if dt is None:
        return datetime.now(timezone.utc)
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def clamp_score(value: float) -> float:
    return max(0.0, min(1.0, float(value)))


class MessageMetadataStore:
    """Records engine metadata for ledger messages.

    Persistence failures are retried once; a second failure degrades the
    message to a conservative low importance instead of failing the turn.
    """

    def __init__(
        self,
        store: MemoryStore,
        config: ImportanceConfig | None = None,
        token_counter: Callable[[str], int] | None = None,
        retry_backoff_seconds: float = 0.05,
    ) -> None:
        self.store = store
        self.config = config or ImportanceConfig()
        self.token_counter = token_counter or estimate_tokens
        self.retry_backoff_seconds = retry_backoff_seconds

    def _with_retry(self, fn: Callable[..., T], *args) -> T:
        try:
            return fn(*args)
        except PersistenceError as e:
            logger.warning("Metadata write failed, retrying once: %s", e)
            time.sleep(self.retry_backoff_seconds)
            return fn(*args)

    def record_message(
        self,
        conversation_id: str,
        message_id: int,
        role: str,
        content: str,
        explicit_importance: float | None = None,
        created_at: datetime | None = None,
    ) -> MessageMetadata:
        if explicit_importance is not None:
            importance = clamp_score(explicit_importance)
        else:
            importance = score_importance(content, role)

        metadata = MessageMetadata(
            message_id=message_id,
            conversation_id=conversation_id,
            role=role,
            importance_score=importance,
            token_count=self.token_counter(content),
            entities=extract_entities(content),
            topics=extract_topics(content),
            semantic_hash=semantic_hash(content),
            created_at=_as_utc(created_at),
        )
        try:
            return self._with_retry(self.store.append_message_metadata, metadata)
        except PersistenceError as e:
            logger.error(
                "Metadata for message %s in %s not persisted, continuing degraded: %s",
                message_id, conversation_id, e,
            )
            metadata.importance_score = min(importance, self.config.degraded_score)
            metadata.degraded = True
            return metadata

    def mark_important(self, message_id: int, important: bool = True) -> MessageMetadata:
        """Set or explicitly clear the sticky user-marked flag."""
        current = self.store.get_message_metadata(message_id)
        if current is None:
            raise KeyError(f"Unknown message id: {message_id}")
        if important:
            importance = self.config.marked_score
        else:
            importance = round(current.importance_score / 2, 4)
        updated = self._with_retry(
            self.store.update_message_importance, message_id, importance, important,
        )
        logger.info(
            "Message %s %s (importance %.2f)",
            message_id, "marked important" if important else "unmarked", importance,
        )
        return updated

    def get(self, message_id: int) -> MessageMetadata | None:
        return self.store.get_message_metadata(message_id)
