"""SegmentationManager: progressive summarization of older conversation history.

Tiers, newest to oldest:

    recent   (level 0)    last N raw messages
    medium   (level 1/2)  rolled-out messages, summary updated as they arrive;
                          sealed (level 2) once it holds S messages
    long     (level 3/4)  merged sealed mediums; older half relabeled level 4
    ancient  (level 5)    a single head segment folding the oldest longs

Segments of a conversation always tile positions 1..last without gaps.
"""

from __future__ import annotations

import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Callable

from ..retrieval.indexer import RetrievalIndexer, segment_item_id
from ..token_counter import estimate_tokens
from ..types import (
    Ledger,
    Message,
    MessageMetadata,
    OperationType,
    PersistenceError,
    Segment,
    SegmentationConfig,
    SegmentType,
    Summarizer,
)
from .analytics import AnalyticsRecorder
from .store import MemoryStore

logger = logging.getLogger(__name__)

LEVEL_RECENT = 0
LEVEL_MEDIUM_OPEN = 1
LEVEL_MEDIUM_SEALED = 2
LEVEL_LONG = 3
LEVEL_LONG_OLD = 4
LEVEL_ANCIENT = 5


def _new_segment_id() -> str:
    return uuid.uuid4().hex


def _now() -> datetime:
    return datetime.now(timezone.utc)


class SegmentationManager:
    """Drives per-conversation segment transitions as messages arrive.

    Callers must hold the conversation's lock around ``on_message``.
    """

    def __init__(
        self,
        store: MemoryStore,
        ledger: Ledger,
        summarizer: Summarizer,
        config: SegmentationConfig | None = None,
        token_counter: Callable[[str], int] | None = None,
        analytics: AnalyticsRecorder | None = None,
        indexer: RetrievalIndexer | None = None,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.summarizer = summarizer
        self.config = config or SegmentationConfig()
        self.token_counter = token_counter or estimate_tokens
        self.analytics = analytics
        self.indexer = indexer

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_segments(self, conversation_id: str) -> list[Segment]:
        return self.store.get_segments(conversation_id)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def on_message(self, metadata: MessageMetadata) -> bool:
        """Account for a newly recorded message. Returns True if segments changed."""
        if metadata.degraded or metadata.position < 1:
            logger.warning(
                "Skipping segmentation for message %s: metadata not persisted", metadata.message_id,
            )
            return False

        cid = metadata.conversation_id
        segments = self.store.get_segments(cid)
        recent = next((s for s in reversed(segments) if s.segment_type == SegmentType.RECENT), None)

        if recent is None:
            start = segments[-1].end_position + 1 if segments else 1
            recent = Segment(
                segment_id=_new_segment_id(),
                conversation_id=cid,
                segment_type=SegmentType.RECENT,
                start_position=start,
                end_position=metadata.position,
                start_message_id=metadata.message_id,
                end_message_id=metadata.message_id,
                importance_score=metadata.importance_score,
                token_count=metadata.token_count,
                original_tokens=metadata.token_count,
                message_count=metadata.position - start + 1,
                compression_level=LEVEL_RECENT,
            )
            segments.append(recent)
        else:
            recent.end_position = metadata.position
            recent.end_message_id = metadata.message_id
            recent.message_count = recent.end_position - recent.start_position + 1
            recent.token_count += metadata.token_count
            recent.original_tokens = recent.token_count
            recent.updated_at = _now()

        self.store.apply_segment_changes(cid, [recent])

        if recent.message_count > self.config.recent_threshold:
            self._roll_recent(cid, segments, recent)
        self._merge_mediums(cid)
        self._fold_longs(cid)
        return True

    def _messages_for(self, conversation_id: str, rows: list[MessageMetadata]) -> list[Message]:
        if not rows:
            return []
        wanted = {r.message_id for r in rows}
        ledger_rows = self.ledger.read_range(conversation_id, rows[0].message_id, rows[-1].message_id)
        return [m.to_message() for m in ledger_rows if m.message_id in wanted]

    def _summarize(self, messages: list[Message], what: str) -> str | None:
        try:
            summary = self.summarizer.summarize(messages)
        except Exception as e:
            logger.warning("Summarizer failed while %s, will retry on next message: %s", what, e)
            return None
        if not summary or not summary.strip():
            logger.warning("Summarizer returned nothing while %s, will retry on next message", what)
            return None
        return summary.strip()

    def _record(
        self, conversation_id: str, op: OperationType, input_tokens: int, output_tokens: int, started: float,
    ) -> None:
        if self.analytics is None:
            return
        self.analytics.record_operation(
            conversation_id,
            op,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            processing_time_ms=(time.perf_counter() - started) * 1000,
            compression_ratio=round(input_tokens / output_tokens, 4) if output_tokens else None,
        )

    def _roll_recent(self, cid: str, segments: list[Segment], recent: Segment) -> None:
        """Move the oldest recent messages past N into the open medium segment."""
        size = self.config.effective_segment_size
        while recent.message_count > self.config.recent_threshold:
            mediums = [s for s in segments if s.segment_type == SegmentType.MEDIUM]
            medium = mediums[-1] if mediums and not mediums[-1].sealed else None
            room = size - medium.message_count if medium else size
            take = min(recent.message_count - self.config.recent_threshold, room)

            chunk_start = recent.start_position
            chunk_end = chunk_start + take - 1
            rows = self.store.get_messages_by_position(cid, chunk_start, chunk_end)
            messages = self._messages_for(cid, rows)
            chunk_tokens = sum(r.token_count for r in rows)

            prompt_messages = list(messages)
            prev_tokens = 0
            if medium and medium.summary:
                prompt_messages.insert(0, Message(role="system", content=f"Summary so far: {medium.summary}"))
                prev_tokens = medium.token_count

            started = time.perf_counter()
            summary = self._summarize(prompt_messages, f"rolling messages {chunk_start}-{chunk_end} of {cid}")
            if summary is None:
                return

            chunk_importance = sum(r.importance_score for r in rows)
            if medium is None:
                medium = Segment(
                    segment_id=_new_segment_id(),
                    conversation_id=cid,
                    segment_type=SegmentType.MEDIUM,
                    start_position=chunk_start,
                    end_position=chunk_end,
                    start_message_id=rows[0].message_id if rows else 0,
                    end_message_id=rows[-1].message_id if rows else 0,
                    importance_score=chunk_importance / len(rows) if rows else 0.5,
                    message_count=take,
                    original_tokens=chunk_tokens,
                )
                segments.insert(segments.index(recent), medium)
            else:
                total = medium.importance_score * medium.message_count + chunk_importance
                medium.end_position = chunk_end
                if rows:
                    medium.end_message_id = rows[-1].message_id
                medium.message_count += take
                medium.original_tokens += chunk_tokens
                medium.importance_score = total / medium.message_count
            medium.summary = summary
            medium.token_count = self.token_counter(summary)
            medium.sealed = medium.message_count >= size
            medium.compression_level = LEVEL_MEDIUM_SEALED if medium.sealed else LEVEL_MEDIUM_OPEN
            medium.updated_at = _now()

            remaining = self.store.get_messages_by_position(cid, chunk_end + 1, recent.end_position)
            recent.start_position = chunk_end + 1
            recent.start_message_id = remaining[0].message_id if remaining else recent.end_message_id
            recent.message_count = recent.end_position - recent.start_position + 1
            recent.token_count = sum(r.token_count for r in remaining)
            recent.original_tokens = recent.token_count
            recent.updated_at = _now()

            self.store.apply_segment_changes(
                cid,
                [medium, recent],
                compression_levels=[(medium.start_position, medium.end_position, medium.compression_level)],
            )
            logger.debug(
                "Rolled messages %d-%d of %s into medium segment %s (%d/%d)",
                chunk_start, chunk_end, cid, medium.segment_id, medium.message_count, size,
            )
            self._record(cid, OperationType.SUMMARIZE, chunk_tokens + prev_tokens, medium.token_count, started)
            if self.indexer is not None:
                self.indexer.index_segment(medium)

    def _combine(
        self, cid: str, group: list[Segment], segment_type: SegmentType, level: int, base: Segment | None = None,
    ) -> Segment | None:
        """Merge ``group`` (and an optional preceding ``base``) into one segment."""
        parts = ([base] if base else []) + group
        inputs = [
            Message(role="system", content=f"Messages {s.start_position}-{s.end_position}: {s.summary}")
            for s in parts
        ]
        started = time.perf_counter()
        summary = self._summarize(inputs, f"merging {len(parts)} {segment_type.value} segments of {cid}")
        if summary is None:
            return None

        count = sum(s.message_count for s in parts)
        merged = Segment(
            segment_id=base.segment_id if base else _new_segment_id(),
            conversation_id=cid,
            segment_type=segment_type,
            start_position=parts[0].start_position,
            end_position=parts[-1].end_position,
            start_message_id=parts[0].start_message_id,
            end_message_id=parts[-1].end_message_id,
            summary=summary,
            importance_score=sum(s.importance_score * s.message_count for s in parts) / count if count else 0.5,
            token_count=self.token_counter(summary),
            original_tokens=sum(s.original_tokens for s in parts),
            message_count=count,
            compression_level=level,
            sealed=True,
            created_at=base.created_at if base else _now(),
        )
        self._record(
            cid, OperationType.COMPRESS, sum(s.token_count for s in parts), merged.token_count, started,
        )
        return merged

    def _merge_mediums(self, cid: str) -> None:
        factor = self.config.merge_factor
        while True:
            segments = self.store.get_segments(cid)
            sealed = [s for s in segments if s.segment_type == SegmentType.MEDIUM and s.sealed]
            if len(sealed) <= self.config.max_medium_segments:
                return
            group = sealed[:factor]
            merged = self._combine(cid, group, SegmentType.LONG, LEVEL_LONG)
            if merged is None:
                return
            longs = [s for s in segments if s.segment_type == SegmentType.LONG] + [merged]
            upserts, levels = self._relabel_longs(longs)
            removed = [s.segment_id for s in group]
            self.store.apply_segment_changes(cid, upserts, deletes=removed, compression_levels=levels)
            logger.info(
                "Merged %d medium segments of %s into long segment %s (messages %d-%d)",
                len(group), cid, merged.segment_id, merged.start_position, merged.end_position,
            )
            self._reindex(cid, removed, merged)

    @staticmethod
    def _relabel_longs(longs: list[Segment]) -> tuple[list[Segment], list[tuple[int, int, int]]]:
        """Older half of the long tier goes to level 4, newer half stays at 3."""
        longs = sorted(longs, key=lambda s: s.start_position)
        older = len(longs) // 2
        levels: list[tuple[int, int, int]] = []
        for i, seg in enumerate(longs):
            seg.compression_level = LEVEL_LONG_OLD if i < older else LEVEL_LONG
            levels.append((seg.start_position, seg.end_position, seg.compression_level))
        return longs, levels

    def _fold_longs(self, cid: str) -> None:
        factor = self.config.merge_factor
        while True:
            segments = self.store.get_segments(cid)
            longs = [s for s in segments if s.segment_type == SegmentType.LONG]
            if len(longs) <= self.config.max_long_segments:
                return
            ancient = next((s for s in segments if s.segment_type == SegmentType.ANCIENT), None)
            group = longs[:factor]
            merged = self._combine(cid, group, SegmentType.ANCIENT, LEVEL_ANCIENT, base=ancient)
            if merged is None:
                return
            rest, levels = self._relabel_longs(longs[factor:])
            levels.insert(0, (merged.start_position, merged.end_position, LEVEL_ANCIENT))
            removed = [s.segment_id for s in group]
            self.store.apply_segment_changes(cid, [merged] + rest, deletes=removed, compression_levels=levels)
            logger.info(
                "Folded %d long segments of %s into ancient segment (messages %d-%d)",
                len(group), cid, merged.start_position, merged.end_position,
            )
            self._reindex(cid, removed, merged)

    def _reindex(self, cid: str, removed: list[str], merged: Segment) -> None:
        if self.indexer is None:
            return
        self.indexer.remove(cid, [segment_item_id(sid) for sid in removed])
        self.indexer.index_segment(merged)

    # ------------------------------------------------------------------
    # Ad hoc summaries
    # ------------------------------------------------------------------

    def summarize_range(
        self,
        conversation_id: str,
        start_position: int = 1,
        end_position: int | None = None,
        style: str = "brief",
    ) -> str:
        """Summarize any position range without touching stored segments."""
        if end_position is None:
            end_position = self.store.get_last_position(conversation_id)
        if start_position < 1 or end_position < start_position:
            raise ValueError(f"Invalid message range {start_position}-{end_position}")
        rows = self.store.get_messages_by_position(conversation_id, start_position, end_position)
        messages = self._messages_for(conversation_id, rows)
        if not messages:
            return ""
        started = time.perf_counter()
        summary = self.summarizer.summarize(messages, style=style)
        self._record(
            conversation_id,
            OperationType.SUMMARIZE,
            sum(r.token_count for r in rows),
            self.token_counter(summary),
            started,
        )
        return summary

    def validate_contiguity(self, conversation_id: str) -> bool:
        """True when segments tile positions without gaps or overlaps."""
        try:
            segments = self.store.get_segments(conversation_id)
        except PersistenceError:
            return False
        return all(
            a.end_position + 1 == b.start_position for a, b in zip(segments, segments[1:])
        )
