"""KeyFactStore: pinned facts that are always eligible for context."""

from __future__ import annotations

import logging
import re
import uuid
from datetime import datetime, timedelta, timezone

from ..patterns import FACT_EXTRACTION_PATTERNS
from ..types import FactType, KeyFact, KeyFactConfig
from .store import MemoryStore

logger = logging.getLogger(__name__)

_EXTRACTORS = [
    (FactType(fact_type), re.compile(pattern, re.IGNORECASE))
    for fact_type, pattern in FACT_EXTRACTION_PATTERNS
]


def _parse_fact_type(fact_type: FactType | str) -> FactType:
    try:
        return FactType(fact_type)
    except ValueError:
        valid = ", ".join(t.value for t in FactType)
        raise ValueError(f"Unknown fact type: {fact_type!r} (expected one of {valid})") from None


class KeyFactStore:
    """Key facts live outside the segment hierarchy and are never evicted
    by compression. Expired facts are simply filtered out on read."""

    def __init__(self, store: MemoryStore, config: KeyFactConfig | None = None) -> None:
        self.store = store
        self.config = config or KeyFactConfig()

    def add_key_fact(
        self,
        conversation_id: str,
        text: str,
        fact_type: FactType | str = FactType.FACT,
        source_message_id: int | None = None,
        expires_at: datetime | None = None,
        importance: float = 1.0,
        source: str = "user",
    ) -> KeyFact:
        text = (text or "").strip()
        if not text:
            raise ValueError("Key fact text must not be empty")
        if expires_at is not None and expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        fact = KeyFact(
            fact_id=uuid.uuid4().hex,
            conversation_id=conversation_id,
            text=text,
            fact_type=_parse_fact_type(fact_type),
            importance_score=max(0.0, min(1.0, importance)),
            source_message_id=source_message_id,
            source=source,
            expires_at=expires_at,
        )
        self.store.save_key_fact(fact)
        logger.debug("Stored %s fact %s for %s", fact.fact_type.value, fact.fact_id, conversation_id)
        return fact

    def active_facts(self, conversation_id: str, now: datetime | None = None) -> list[KeyFact]:
        """Unexpired facts, highest importance first."""
        return self.store.get_key_facts(conversation_id, include_expired=False, now=now)

    def list_facts(self, conversation_id: str, include_expired: bool = False) -> list[KeyFact]:
        return self.store.get_key_facts(conversation_id, include_expired=include_expired)

    def extract_facts(
        self,
        conversation_id: str,
        message_id: int,
        content: str,
        role: str = "user",
    ) -> list[KeyFact]:
        """Pull facts out of marker phrases ("remember that ...", "I prefer ...")."""
        if not self.config.auto_extract or role != "user":
            return []
        expires_at = None
        if self.config.auto_ttl_days:
            expires_at = datetime.now(timezone.utc) + timedelta(days=self.config.auto_ttl_days)

        found: list[KeyFact] = []
        for fact_type, pattern in _EXTRACTORS:
            for match in pattern.finditer(content):
                body = match.group("body").strip(" ,;:")
                if not body:
                    continue
                text = body[0].upper() + body[1:]
                if self.store.key_fact_exists(conversation_id, text):
                    continue
                found.append(self.add_key_fact(
                    conversation_id,
                    text,
                    fact_type=fact_type,
                    source_message_id=message_id,
                    expires_at=expires_at,
                    importance=self.config.auto_importance,
                    source="auto",
                ))
        if found:
            logger.info("Extracted %d key fact(s) from message %s", len(found), message_id)
        return found

    def forget(
        self,
        conversation_id: str,
        older_than: datetime | None = None,
        importance_below: float | None = None,
    ) -> int:
        return self.store.delete_key_facts(
            conversation_id, older_than=older_than, importance_below=importance_below,
        )
