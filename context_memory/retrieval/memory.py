"""InMemoryRetrievalGateway: lexical similarity search for development and tests."""

from __future__ import annotations

import re
import threading
import uuid
from collections import Counter

from ..core.math_utils import cosine_similarity
from ..types import RetrievalHit

_TOKEN_RE = re.compile(r"[a-z0-9$€£][a-z0-9'$.,€£]*[a-z0-9]|[a-z0-9]")

STOPWORDS = frozenset({
    "the", "and", "for", "are", "but", "not", "you", "all", "any", "can",
    "had", "her", "was", "one", "our", "out", "has", "his", "how", "its",
    "let", "may", "who", "did", "get", "him", "she", "too", "use", "that",
    "with", "have", "this", "will", "your", "from", "they", "been", "were",
    "what", "when", "which", "there", "their", "would", "about", "could",
    "should", "into", "than", "then", "them", "these", "some", "also",
    "just", "like", "more", "very", "does", "is", "it", "to", "of", "in",
    "on", "at", "we", "me", "my", "do", "so", "be", "as", "an", "or", "if",
})


def tokenize(text: str) -> list[str]:
    return [t for t in _TOKEN_RE.findall(text.lower()) if t not in STOPWORDS]


def term_vector(text: str) -> dict[str, float]:
    return {term: float(count) for term, count in Counter(tokenize(text)).items()}


class InMemoryRetrievalGateway:
    """Term-frequency cosine similarity over indexed items, per conversation.

    Not a semantic model; enough to exercise retrieval paths without an
    external vector service.
    """

    def __init__(self) -> None:
        self._items: dict[str, dict[str, tuple[dict[str, float], str]]] = {}
        self._lock = threading.Lock()

    def index(self, conversation_id: str, item_id: str, text: str, item_type: str) -> str:
        vector = term_vector(text)
        with self._lock:
            self._items.setdefault(conversation_id, {})[item_id] = (vector, item_type)
        return f"mem-{uuid.uuid5(uuid.NAMESPACE_URL, f'{conversation_id}/{item_id}').hex[:12]}"

    def search(self, conversation_id: str, query: str, top_k: int) -> list[RetrievalHit]:
        query_vector = term_vector(query)
        if not query_vector or top_k <= 0:
            return []
        with self._lock:
            items = list(self._items.get(conversation_id, {}).items())
        hits = [
            RetrievalHit(item_id=item_id, similarity=round(cosine_similarity(query_vector, vector), 6))
            for item_id, (vector, _) in items
        ]
        hits = [h for h in hits if h.similarity > 0.0]
        hits.sort(key=lambda h: h.similarity, reverse=True)
        return hits[:top_k]

    def delete(self, conversation_id: str, item_ids: list[str] | None = None) -> None:
        with self._lock:
            if item_ids is None:
                self._items.pop(conversation_id, None)
                return
            items = self._items.get(conversation_id, {})
            for item_id in item_ids:
                items.pop(item_id, None)

    def count(self, conversation_id: str) -> int:
        with self._lock:
            return len(self._items.get(conversation_id, {}))
