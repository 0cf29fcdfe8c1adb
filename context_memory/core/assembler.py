"""ContextAssembler: build a token-budgeted context window for one turn.

Priority order when spending the budget:

    1. active key facts, fitted against the whole budget (highest importance
       first only when the facts alone do not fit)
    2. user-marked messages (any tier; truncated, never dropped)
    3. recent-tier messages, newest first
    4. retrieved history and segment summaries, by similarity x importance

Marked messages that no longer fit are merged into one truncated entry, so
at most one item ever pushes the window past its budget.

Retrieval runs on the shared executor next to the key-fact lookup and is
bounded by ``retrieval_timeout_ms``; any gateway trouble degrades the window
to recency + key facts instead of failing the turn.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Executor, Future
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from typing import Callable

from ..token_counter import estimate_tokens
from ..types import (
    AssemblerConfig,
    AssemblyCancelled,
    ContextWindow,
    EmptyContextError,
    KeyFact,
    Ledger,
    Message,
    MessageMetadata,
    PersistenceError,
    RetrievalGateway,
    RetrievalHit,
    Segment,
    SegmentType,
)
from .key_facts import KeyFactStore
from .store import MemoryStore

logger = logging.getLogger(__name__)

TRUNCATION_MARK = "…"


@dataclass
class _Candidate:
    key: str
    kind: str  # "message" or "summary"
    tokens: int
    score: float
    position: int
    importance: float = 0.5
    message: Message | None = None
    segment: Segment | None = None


@dataclass
class _Selection:
    recent: list[tuple[MessageMetadata, Message]] = field(default_factory=list)
    marked_history: list[tuple[MessageMetadata, Message]] = field(default_factory=list)
    tokens: int = 0


def truncate_to_tokens(text: str, max_tokens: int, token_counter: Callable[[str], int]) -> str:
    """Shorten text until token_counter(text) <= max_tokens (at least one char kept)."""
    if token_counter(text) <= max_tokens:
        return text
    cut = max(1, max_tokens * 4 - len(TRUNCATION_MARK))
    truncated = text[:cut].rstrip() + TRUNCATION_MARK
    while len(truncated) > 2 and token_counter(truncated) > max_tokens:
        cut = max(1, int(cut * 0.9))
        truncated = text[:cut].rstrip() + TRUNCATION_MARK
    return truncated


class ContextAssembler:
    """Assemble a ContextWindow under a token budget."""

    def __init__(
        self,
        store: MemoryStore,
        ledger: Ledger,
        key_facts: KeyFactStore,
        executor: Executor,
        gateway: RetrievalGateway | None = None,
        config: AssemblerConfig | None = None,
        token_counter: Callable[[str], int] | None = None,
        ledger_tail_size: int = 10,
        importance_threshold: float = 0.0,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.key_facts = key_facts
        self.executor = executor
        self.gateway = gateway
        self.config = config or AssemblerConfig()
        self.token_counter = token_counter or estimate_tokens
        self.ledger_tail_size = ledger_tail_size
        self.importance_threshold = importance_threshold

    # ------------------------------------------------------------------
    # Public
    # ------------------------------------------------------------------

    def assemble(
        self,
        conversation_id: str,
        query: str | None = None,
        max_context_tokens: int | None = None,
        cancel_event: threading.Event | None = None,
    ) -> ContextWindow:
        budget = max_context_tokens or self.config.max_context_tokens
        query = query.strip() if query else None
        window = ContextWindow()

        retrieval_future = self._submit_retrieval(conversation_id, query)
        submitted_at = time.monotonic()
        facts_future = self.executor.submit(self.key_facts.active_facts, conversation_id)

        try:
            segments = self.store.get_segments(conversation_id)
            conversation = self.store.get_conversation(conversation_id)
            recent_rows, marked_rows = self._load_recent_and_marked(conversation_id, segments)
        except PersistenceError as e:
            logger.warning("Metadata store unavailable for %s, using ledger tail: %s", conversation_id, e)
            if retrieval_future is not None:
                retrieval_future.cancel()
            facts_future.cancel()
            return self._ledger_tail_window(conversation_id, query, budget, cancel_event, str(e))

        facts = self._collect_facts(conversation_id, facts_future, window)
        window.key_facts, fact_tokens = self._fit_facts(facts, budget)

        contents = self._load_contents(conversation_id, recent_rows + marked_rows)
        selection = self._select_recent(recent_rows, marked_rows, contents, budget - fact_tokens)
        window.recent_messages = [m for _, m in selection.recent]
        used = fact_tokens + selection.tokens
        included_ids = {meta.message_id for meta, _ in selection.recent + selection.marked_history}
        included_ids.update(r.message_id for r in recent_rows)

        hits = self._collect_hits(conversation_id, query, retrieval_future, submitted_at, window)
        candidates = self._resolve_hits(conversation_id, hits, segments, included_ids)
        chosen, retrieved_tokens = self._fit_candidates(candidates, budget - used)
        used += retrieved_tokens

        history = [(meta.position, m) for meta, m in selection.marked_history]
        history += [(c.position, c.message) for c in chosen if c.kind == "message"]
        window.relevant_history = [m for _, m in sorted(history, key=lambda pair: pair[0])]
        window.summaries = sorted(
            (c.segment for c in chosen if c.kind == "summary"), key=lambda s: s.start_position,
        )

        if query and window.is_empty():
            used += self._inject_query(window, query, budget)
        window.total_tokens = used

        original = (conversation.total_tokens if conversation else 0) + sum(
            self.token_counter(f.text) for f in facts
        )
        window.compression_ratio = self._ratio(original, used)
        window.degraded = bool(window.degradation_reasons)

        if query and window.is_empty():
            raise EmptyContextError(f"Empty context for {conversation_id} despite query")
        if cancel_event is not None and cancel_event.is_set():
            raise AssemblyCancelled(f"Context assembly for {conversation_id} cancelled")

        logger.debug(
            "Assembled %s: %d recent, %d history, %d summaries, %d facts, %d/%d tokens%s",
            conversation_id, len(window.recent_messages), len(window.relevant_history),
            len(window.summaries), len(window.key_facts), used, budget,
            " (degraded)" if window.degraded else "",
        )
        return window

    # ------------------------------------------------------------------
    # Recent tier & user-marked messages
    # ------------------------------------------------------------------

    def _load_recent_and_marked(
        self, conversation_id: str, segments: list[Segment],
    ) -> tuple[list[MessageMetadata], list[MessageMetadata]]:
        recent_seg = next((s for s in reversed(segments) if s.segment_type == SegmentType.RECENT), None)
        recent_rows: list[MessageMetadata] = []
        if recent_seg is not None:
            recent_rows = self.store.get_messages_by_position(
                conversation_id, recent_seg.start_position, recent_seg.end_position,
            )
        recent_ids = {r.message_id for r in recent_rows}
        marked_rows = [m for m in self.store.get_user_marked(conversation_id) if m.message_id not in recent_ids]
        return recent_rows, marked_rows

    def _load_contents(self, conversation_id: str, rows: list[MessageMetadata]) -> dict[int, Message]:
        if not rows:
            return {}
        ids = sorted(r.message_id for r in rows)
        wanted = set(ids)
        meta_by_id = {r.message_id: r for r in rows}
        out: dict[int, Message] = {}
        for lm in self.ledger.read_range(conversation_id, ids[0], ids[-1]):
            if lm.message_id in wanted:
                msg = lm.to_message()
                meta = meta_by_id[lm.message_id]
                msg.metadata = {
                    "message_id": lm.message_id,
                    "position": meta.position,
                    "importance": meta.importance_score,
                }
                out[lm.message_id] = msg
        return out

    def _select_recent(
        self,
        recent_rows: list[MessageMetadata],
        marked_rows: list[MessageMetadata],
        contents: dict[int, Message],
        budget: int,
    ) -> _Selection:
        selection = _Selection()
        remaining = budget
        kept: dict[int, tuple[MessageMetadata, Message]] = {}

        # User-marked first, newest first; whatever does not fit is merged
        # into a single truncated entry rather than dropped
        marked = [r for r in recent_rows if r.user_marked] + marked_rows
        overflow: list[tuple[MessageMetadata, Message]] = []
        for meta in sorted(marked, key=lambda r: r.position, reverse=True):
            msg = contents.get(meta.message_id)
            if msg is None:
                continue
            if meta.token_count > remaining:
                overflow.append((meta, msg))
                continue
            kept[meta.message_id] = (meta, msg)
            remaining -= meta.token_count
            selection.tokens += meta.token_count

        if overflow:
            meta, msg = self._truncate_overflow(overflow, max(remaining, 1))
            tokens = self.token_counter(msg.content)
            kept[meta.message_id] = (meta, msg)
            remaining -= tokens
            selection.tokens += tokens

        # Remaining recent messages, newest first; oldest are dropped first
        for meta in reversed(recent_rows):
            if meta.message_id in kept:
                continue
            msg = contents.get(meta.message_id)
            if msg is None:
                continue
            if meta.token_count > remaining:
                break
            kept[meta.message_id] = (meta, msg)
            remaining -= meta.token_count
            selection.tokens += meta.token_count

        recent_ids = {r.message_id for r in recent_rows}
        ordered = sorted(kept.values(), key=lambda pair: pair[0].position)
        selection.recent = [pair for pair in ordered if pair[0].message_id in recent_ids]
        selection.marked_history = [pair for pair in ordered if pair[0].message_id not in recent_ids]
        return selection

    def _truncate_overflow(
        self, overflow: list[tuple[MessageMetadata, Message]], allowed: int,
    ) -> tuple[MessageMetadata, Message]:
        """Collapse marked messages that did not fit into one truncated message.

        ``overflow`` is newest first; the merged entry is keyed on the newest
        message and keeps the others' ids in ``merged_message_ids``.
        """
        anchor_meta, anchor = overflow[0]
        oldest_first = list(reversed(overflow))
        content = "\n\n".join(m.content for _, m in oldest_first)
        shortened = truncate_to_tokens(content, allowed, self.token_counter)
        metadata = {**(anchor.metadata or {}), "truncated": shortened != content}
        if len(overflow) > 1:
            metadata["merged_message_ids"] = [meta.message_id for meta, _ in oldest_first]
        msg = Message(
            role=anchor.role,
            content=shortened,
            timestamp=anchor.timestamp,
            metadata=metadata,
        )
        logger.info(
            "Truncated %d user-marked message(s) ending at %s to %d tokens",
            len(overflow), anchor_meta.message_id, self.token_counter(msg.content),
        )
        return anchor_meta, msg

    # ------------------------------------------------------------------
    # Key facts
    # ------------------------------------------------------------------

    def _collect_facts(self, conversation_id: str, future: Future, window: ContextWindow) -> list[KeyFact]:
        try:
            return future.result()
        except PersistenceError as e:
            logger.warning("Key facts unavailable for %s: %s", conversation_id, e)
            window.degradation_reasons.append("key facts unavailable")
            return []

    def _fit_facts(self, facts: list[KeyFact], remaining: int) -> tuple[list[KeyFact], int]:
        costs = [(f, self.token_counter(f.text)) for f in facts]
        total = sum(c for _, c in costs)
        if total <= remaining:
            return facts, total
        kept: list[KeyFact] = []
        used = 0
        for fact, cost in sorted(costs, key=lambda fc: fc[0].importance_score, reverse=True):
            if used + cost <= remaining:
                kept.append(fact)
                used += cost
        return kept, used

    # ------------------------------------------------------------------
    # Retrieval
    # ------------------------------------------------------------------

    def _submit_retrieval(self, conversation_id: str, query: str | None) -> Future | None:
        if not query or self.gateway is None or self.config.retrieval_top_k <= 0:
            return None
        return self.executor.submit(self.gateway.search, conversation_id, query, self.config.retrieval_top_k)

    def _collect_hits(
        self,
        conversation_id: str,
        query: str | None,
        future: Future | None,
        submitted_at: float,
        window: ContextWindow,
    ) -> list[RetrievalHit]:
        if not query:
            return []
        if future is None:
            if self.gateway is None:
                logger.debug("No retrieval gateway configured, recency + key facts only")
                window.degradation_reasons.append("retrieval gateway not configured")
            return []
        deadline = self.config.retrieval_timeout_ms / 1000
        remaining = max(0.0, deadline - (time.monotonic() - submitted_at))
        try:
            hits = future.result(timeout=remaining)
        except FutureTimeoutError:
            future.cancel()
            logger.warning(
                "Retrieval for %s exceeded %d ms, falling back to recency + key facts",
                conversation_id, self.config.retrieval_timeout_ms,
            )
            window.degradation_reasons.append("retrieval timed out")
            return []
        except Exception as e:
            logger.warning("Retrieval for %s failed, falling back to recency + key facts: %s", conversation_id, e)
            window.degradation_reasons.append(f"retrieval failed: {e}")
            return []
        return [h for h in hits if h.similarity >= self.config.min_similarity]

    def _resolve_hits(
        self,
        conversation_id: str,
        hits: list[RetrievalHit],
        segments: list[Segment],
        included_ids: set[int],
    ) -> list[_Candidate]:
        by_id = {s.segment_id: s for s in segments}
        candidates: dict[str, _Candidate] = {}

        def add_summary(seg: Segment, similarity: float) -> None:
            key = f"segment:{seg.segment_id}"
            score = similarity * seg.importance_score
            existing = candidates.get(key)
            if existing is None or existing.score < score:
                candidates[key] = _Candidate(
                    key=key, kind="summary", tokens=seg.token_count or self.token_counter(seg.summary),
                    score=score, position=seg.start_position, segment=seg,
                    importance=seg.importance_score,
                )

        for hit in hits:
            if hit.item_type == "segment":
                seg = by_id.get(hit.ref)
                if seg is not None and seg.segment_type != SegmentType.RECENT and seg.summary:
                    add_summary(seg, hit.similarity)
                continue
            if hit.item_type != "message":
                continue
            try:
                message_id = int(hit.ref)
            except ValueError:
                continue
            if message_id in included_ids:
                continue
            meta = self.store.get_message_metadata(message_id)
            if meta is None or meta.conversation_id != conversation_id:
                continue
            seg = next((s for s in segments if s.covers(meta.position)), None)
            if seg is None or seg.segment_type == SegmentType.RECENT:
                continue
            if seg.summary:
                add_summary(seg, hit.similarity)
            if seg.segment_type == SegmentType.ANCIENT:
                continue
            key = f"message:{message_id}"
            if key in candidates:
                continue
            raw = self.ledger.read_range(conversation_id, message_id, message_id)
            if not raw:
                continue
            msg = raw[0].to_message()
            msg.metadata = {
                "message_id": message_id,
                "position": meta.position,
                "importance": meta.importance_score,
                "similarity": hit.similarity,
            }
            candidates[key] = _Candidate(
                key=key, kind="message", tokens=meta.token_count,
                score=hit.similarity * meta.importance_score, position=meta.position, message=msg,
                importance=meta.importance_score,
            )
        return list(candidates.values())

    def _fit_candidates(self, candidates: list[_Candidate], remaining: int) -> tuple[list[_Candidate], int]:
        """Drop lowest similarity x importance first (oldest first on ties).

        Items below the importance threshold go before everything else.
        """
        kept = sorted(
            candidates,
            key=lambda c: (c.importance >= self.importance_threshold, c.score, c.position),
            reverse=True,
        )
        total = sum(c.tokens for c in kept)
        while kept and total > max(remaining, 0):
            dropped = kept.pop()
            total -= dropped.tokens
        return kept, total

    # ------------------------------------------------------------------
    # Fallbacks & invariants
    # ------------------------------------------------------------------

    def _inject_query(self, window: ContextWindow, query: str, budget: int) -> int:
        content = truncate_to_tokens(query, max(budget, 1), self.token_counter)
        window.recent_messages = [Message(role="user", content=content, metadata={"injected": True})]
        window.query_injected = True
        return self.token_counter(content)

    def _ledger_tail_window(
        self,
        conversation_id: str,
        query: str | None,
        budget: int,
        cancel_event: threading.Event | None,
        reason: str,
    ) -> ContextWindow:
        window = ContextWindow(degraded=True, degradation_reasons=[f"metadata store unavailable: {reason}"])
        tail = self.ledger.read_recent(conversation_id, self.ledger_tail_size)
        kept: list[Message] = []
        used = 0
        original = 0
        for lm in reversed(tail):
            tokens = self.token_counter(lm.content)
            original += tokens
            if used + tokens > budget:
                continue
            kept.append(lm.to_message())
            used += tokens
        window.recent_messages = list(reversed(kept))
        if query and window.is_empty():
            used += self._inject_query(window, query, budget)
        window.total_tokens = used
        window.compression_ratio = self._ratio(original, used)
        if query and window.is_empty():
            raise EmptyContextError(f"Empty context for {conversation_id} despite query")
        if cancel_event is not None and cancel_event.is_set():
            raise AssemblyCancelled(f"Context assembly for {conversation_id} cancelled")
        return window

    @staticmethod
    def _ratio(original: int, selected: int) -> float:
        if selected <= 0 or original <= selected:
            return 1.0
        return round(original / selected, 4)
