"""AnalyticsRecorder: append-only operation log plus per-conversation and system rollups."""

from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime, timedelta, timezone

from ..types import (
    AnalyticsConfig,
    AnalyticsRecord,
    CompressionTrendPoint,
    ConversationMetrics,
    OperationMetrics,
    OperationType,
    PersistenceError,
    SystemMetrics,
    TopConversation,
)
from .store import MemoryStore

logger = logging.getLogger(__name__)


class AnalyticsRecorder:
    """Track token usage, compression and latency of engine operations.

    Recording never fails the caller: write errors are logged and dropped.
    """

    def __init__(self, store: MemoryStore, config: AnalyticsConfig | None = None) -> None:
        self.store = store
        self.config = config or AnalyticsConfig()

    def record_operation(
        self,
        conversation_id: str,
        operation_type: OperationType | str,
        input_tokens: int = 0,
        output_tokens: int = 0,
        processing_time_ms: float = 0.0,
        compression_ratio: float | None = None,
        cache_hit: bool = False,
    ) -> None:
        """Append one analytics record."""
        if not self.config.enabled:
            return
        record = AnalyticsRecord(
            conversation_id=conversation_id,
            operation_type=OperationType(operation_type),
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            compression_ratio=compression_ratio,
            processing_time_ms=round(processing_time_ms, 3),
            cache_hit=cache_hit,
        )
        try:
            self.store.record_analytics(record)
        except PersistenceError as e:
            logger.error("Failed to record %s analytics for %s: %s", record.operation_type.value, conversation_id, e)

    def _savings(self, totals: dict) -> tuple[int, float]:
        tokens_saved = max(0, totals["input_tokens"] - totals["output_tokens"])
        return tokens_saved, round(tokens_saved / 1000 * self.config.cost_per_1k_tokens, 6)

    def conversation_metrics(self, conversation_id: str) -> ConversationMetrics:
        """Rollup for one conversation. Raises KeyError if it does not exist."""
        conversation = self.store.get_conversation(conversation_id)
        if conversation is None:
            raise KeyError(f"Unknown conversation: {conversation_id}")

        segments = Counter(s.segment_type.value for s in self.store.get_segments(conversation_id))
        totals = self.store.get_analytics_totals(conversation_id)
        tokens_saved, cost_savings = self._savings(totals)
        return ConversationMetrics(
            conversation_id=conversation_id,
            total_messages=conversation.total_messages,
            total_tokens=conversation.total_tokens,
            segments=dict(segments),
            key_facts=len(self.store.get_key_facts(conversation_id)),
            user_marked=len(self.store.get_user_marked(conversation_id)),
            average_compression=round(totals["avg_compression"] or 1.0, 4),
            retrievals=totals["retrievals"],
            cache_hits=totals["cache_hits"],
            tokens_saved=tokens_saved,
            cost_savings=cost_savings,
            last_activity=conversation.last_activity,
        )

    def system_metrics(self) -> SystemMetrics:
        conversations = self.store.list_conversations()
        totals = self.store.get_analytics_totals()
        tokens_saved, cost_savings = self._savings(totals)
        retrievals = totals["retrievals"]
        return SystemMetrics(
            total_conversations=len(conversations),
            total_messages=sum(c.total_messages for c in conversations),
            total_tokens=sum(c.total_tokens for c in conversations),
            average_compression=round(totals["avg_compression"] or 1.0, 4),
            cache_hit_rate=round(totals["cache_hits"] / retrievals, 4) if retrievals else 0.0,
            average_processing_time_ms=round(totals["avg_processing_time_ms"], 3),
            processing_time_by_operation={
                m.operation_type: round(m.avg_processing_time_ms, 3)
                for m in self.store.get_operation_metrics()
            },
            tokens_saved=tokens_saved,
            cost_savings=cost_savings,
        )

    def performance_by_operation(self) -> list[OperationMetrics]:
        return self.store.get_operation_metrics()

    def compression_trends(self, days: int = 7) -> list[CompressionTrendPoint]:
        return self.store.get_compression_trends(days)

    def top_conversations(self, limit: int = 10) -> list[TopConversation]:
        """Conversations with the most messages."""
        conversations = sorted(
            self.store.list_conversations(),
            key=lambda c: (c.total_messages, c.total_tokens),
            reverse=True,
        )
        return [
            TopConversation(
                conversation_id=c.conversation_id,
                title=c.title,
                total_messages=c.total_messages,
                total_tokens=c.total_tokens,
                last_activity=c.last_activity,
            )
            for c in conversations[:limit]
        ]

    def cleanup_old_data(self, retention_days: int | None = None) -> int:
        """Delete analytics records past the retention window. Returns count."""
        days = retention_days if retention_days is not None else self.config.retention_days
        cutoff = datetime.now(timezone.utc) - timedelta(days=days)
        deleted = self.store.delete_analytics_before(cutoff)
        logger.info("Removed %d analytics records older than %d days", deleted, days)
        return deleted

    def generate_report(self) -> str:
        """Render a markdown report of system metrics, operations and trends."""
        system = self.system_metrics()
        lines = [
            "# Context Memory Analytics Report",
            "",
            f"Generated: {datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M UTC')}",
            "",
            "## System Overview",
            "",
            f"- Conversations: {system.total_conversations}",
            f"- Messages: {system.total_messages}",
            f"- Tokens: {system.total_tokens:,}",
            f"- Average compression: {system.average_compression:.2f}x",
            f"- Cache hit rate: {system.cache_hit_rate:.1%}",
            f"- Average processing time: {system.average_processing_time_ms:.1f} ms",
            f"- Tokens saved: {system.tokens_saved:,}",
            f"- Estimated cost savings: ${system.cost_savings:.4f}",
            "",
        ]

        operations = self.performance_by_operation()
        if operations:
            lines += [
                "## Performance by Operation",
                "",
                "| Operation | Count | Avg time (ms) | Avg compression |",
                "|---|---|---|---|",
            ]
            for m in operations:
                lines.append(
                    f"| {m.operation_type} | {m.count} | "
                    f"{m.avg_processing_time_ms:.1f} | {m.avg_compression_ratio:.2f} |"
                )
            lines.append("")

        trends = self.compression_trends(7)
        if trends:
            lines += ["## Compression Trend (7 days)", ""]
            lines += [f"- {t.date}: {t.average_compression:.2f}x over {t.operations} operations" for t in trends]
            lines.append("")

        top = self.top_conversations(5)
        if top:
            lines += ["## Top Conversations", ""]
            for t in top:
                label = f"{t.conversation_id} ({t.title})" if t.title else t.conversation_id
                lines.append(f"- {label}: {t.total_messages} messages, {t.total_tokens:,} tokens")
            lines.append("")

        return "\n".join(lines)
