"""ContextMemoryEngine: main orchestrator wiring all components together."""

from __future__ import annotations

import logging
import os
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from pathlib import Path

from .config import load_config
from .core.analytics import AnalyticsRecorder
from .core.assembler import ContextAssembler
from .core.cache import ContextCache
from .core.key_facts import KeyFactStore
from .core.locks import ConversationLocks
from .core.metadata import MessageMetadataStore
from .core.segmenter import SegmentationManager
from .core.store import MemoryStore
from .core.summarizer import ExtractiveSummarizer, LLMSummarizer
from .retrieval.indexer import RetrievalIndexer, message_item_id
from .storage.ledger import SQLiteLedger
from .storage.sqlite import SQLiteStore
from .token_counter import create_token_counter
from .types import (
    AppendResult,
    AssemblyCancelled,
    CacheStats,
    ConfigurationError,
    Conversation,
    ConversationCacheStats,
    ConversationMetrics,
    ContextWindow,
    FactType,
    KeyFact,
    Ledger,
    Message,
    MemoryEngineConfig,
    MessageMetadata,
    OperationType,
    PersistenceError,
    RetrievalGateway,
    RetrievalGatewayError,
    Segment,
    Summarizer,
    SystemMetrics,
)

logger = logging.getLogger(__name__)


class ContextMemoryEngine:
    """Main orchestrator: record messages as they arrive, assemble a
    token-budgeted context window before each LLM call.

    Usage:
        with ContextMemoryEngine(config_path="./context-memory.yaml") as engine:
            engine.append_message("chat-1", Message(role="user", content="..."))
            window = engine.get_optimized_context("chat-1", query="...")
            messages = window.to_messages()

    Collaborators (ledger, gateway, summarizer, store) may be injected;
    otherwise they are built from config.
    """

    def __init__(
        self,
        config_path: str | Path | None = None,
        config: MemoryEngineConfig | None = None,
        *,
        store: MemoryStore | None = None,
        ledger: Ledger | None = None,
        gateway: RetrievalGateway | None = None,
        summarizer: Summarizer | None = None,
    ) -> None:
        self.config = config or load_config(config_path)
        self._token_counter = create_token_counter(self.config.token_counter)
        self._locks = ConversationLocks()
        self._initialized = False
        self._gateway: RetrievalGateway | None = gateway

        self._init_store(store)
        self._init_ledger(ledger)
        self._init_analytics()
        self._init_metadata()
        self._init_key_facts()
        self._init_summarizer(summarizer)
        self._init_indexer()
        self._init_segmenter()
        self._init_cache()
        self._executor = ThreadPoolExecutor(
            max_workers=self.config.assembler.max_workers,
            thread_name_prefix="context-memory",
        )
        self._init_assembler()

    # ------------------------------------------------------------------
    # Component construction
    # ------------------------------------------------------------------

    def _init_store(self, store: MemoryStore | None) -> None:
        """Initialize the storage backend."""
        if store is not None:
            self._store = store
            return
        if self.config.storage.backend != "sqlite":
            raise ConfigurationError(f"Unknown storage backend '{self.config.storage.backend}'")
        self._store = SQLiteStore(db_path=self.config.storage.sqlite_path)

    def _init_ledger(self, ledger: Ledger | None) -> None:
        self._owns_ledger = ledger is None
        self._ledger = ledger if ledger is not None else SQLiteLedger(self.config.storage.sqlite_path)

    def _init_analytics(self) -> None:
        self._analytics = AnalyticsRecorder(self._store, self.config.analytics)

    def _init_metadata(self) -> None:
        self._metadata = MessageMetadataStore(
            store=self._store,
            config=self.config.importance,
            token_counter=self._token_counter,
            retry_backoff_seconds=self.config.storage.retry_backoff_seconds,
        )

    def _init_key_facts(self) -> None:
        self._key_facts = KeyFactStore(self._store, self.config.key_facts)

    def _init_summarizer(self, summarizer: Summarizer | None) -> None:
        """Build the summarizer: LLM-backed when a provider is configured."""
        if summarizer is not None:
            self._summarizer = summarizer
            return

        cfg = self.config.summarization
        extractive = ExtractiveSummarizer(max_chars=cfg.max_summary_chars)
        if not cfg.provider:
            self._summarizer = extractive
            return

        provider = self._build_provider(cfg.provider, self.config.providers.get(cfg.provider, {}))
        if provider is None:
            logger.warning(
                "Summarization provider '%s' unavailable, using extractive summaries", cfg.provider,
            )
            self._summarizer = extractive
            return
        self._summarizer = LLMSummarizer(
            provider,
            max_tokens=cfg.max_tokens,
            max_chars=cfg.max_summary_chars,
            fallback=extractive if cfg.fallback_extractive else None,
        )

    def _build_provider(self, provider_name: str, provider_config: dict):
        """Build an LLM provider from config."""
        ptype = provider_config.get("type", provider_name)

        if ptype == "generic_openai":
            from .providers.generic_openai import GenericOpenAIProvider
            return GenericOpenAIProvider(
                base_url=provider_config.get("base_url", "http://127.0.0.1:11434/v1"),
                model=provider_config.get("model", self.config.summarization.model),
                temperature=self.config.summarization.temperature,
                api_key=provider_config.get("api_key", "not-needed"),
            )

        if ptype == "anthropic":
            api_key_env = provider_config.get("api_key_env", "ANTHROPIC_API_KEY")
            api_key = provider_config.get("api_key") or os.environ.get(api_key_env, "")
            if api_key:
                from .providers.anthropic import AnthropicProvider
                return AnthropicProvider(
                    api_key=api_key,
                    model=provider_config.get("model", self.config.summarization.model or "claude-haiku-4-5"),
                    temperature=self.config.summarization.temperature,
                )

        return None

    def _build_gateway(self) -> RetrievalGateway | None:
        """Build the retrieval gateway from config. Raises ConfigurationError."""
        cfg = self.config.retrieval
        if cfg.provider == "none":
            return None
        if cfg.provider == "memory":
            from .retrieval.memory import InMemoryRetrievalGateway
            return InMemoryRetrievalGateway()
        if cfg.provider == "http":
            from .retrieval.http import HttpRetrievalGateway
            return HttpRetrievalGateway(
                endpoint=cfg.endpoint,
                api_key=cfg.api_key or None,
                api_key_env=cfg.api_key_env,
                collection=cfg.collection,
                timeout_ms=cfg.timeout_ms,
            )
        raise ConfigurationError(f"Unknown retrieval provider '{cfg.provider}'")

    def _init_indexer(self) -> None:
        self._indexer = RetrievalIndexer(
            self._gateway, self._store, index_segments=self.config.retrieval.index_segments,
        )

    def _init_segmenter(self) -> None:
        self._segmenter = SegmentationManager(
            store=self._store,
            ledger=self._ledger,
            summarizer=self._summarizer,
            config=self.config.segmentation,
            token_counter=self._token_counter,
            analytics=self._analytics,
            indexer=self._indexer,
        )

    def _init_cache(self) -> None:
        self._cache = ContextCache(self.config.cache, store=self._store)

    def _init_assembler(self) -> None:
        self._assembler = ContextAssembler(
            store=self._store,
            ledger=self._ledger,
            key_facts=self._key_facts,
            executor=self._executor,
            gateway=self._gateway,
            config=self.config.assembler,
            token_counter=self._token_counter,
            ledger_tail_size=self.config.segmentation.recent_threshold,
            importance_threshold=self.config.importance.threshold,
        )

    def _set_gateway(self, gateway: RetrievalGateway | None) -> None:
        self._gateway = gateway
        self._indexer.gateway = gateway
        self._assembler.gateway = gateway

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize(self) -> None:
        """Start the cache and connect the retrieval gateway.

        Raises ConfigurationError when retrieval is misconfigured; the engine
        remains usable in recency-only mode afterwards.
        """
        if self._initialized:
            return
        self._initialized = True
        self._cache.init()
        if self._gateway is None:
            self._set_gateway(self._build_gateway())
        logger.info(
            "Context memory engine ready (retrieval=%s, summarizer=%s, store=%s)",
            type(self._gateway).__name__ if self._gateway else "none",
            type(self._summarizer).__name__,
            type(self._store).__name__,
        )

    def _ensure_initialized(self) -> None:
        if self._initialized:
            return
        try:
            self.initialize()
        except ConfigurationError as e:
            logger.warning("Retrieval disabled, continuing recency-only: %s", e)

    def cleanup(self) -> None:
        """Release the executor, cache, gateway and storage handles."""
        self._executor.shutdown(wait=False, cancel_futures=True)
        self._cache.cleanup()
        close = getattr(self._gateway, "close", None)
        if callable(close):
            close()
        if self._owns_ledger:
            self._ledger.close()
        self._store.close()
        self._initialized = False
        logger.info("Context memory engine shut down")

    def __enter__(self) -> ContextMemoryEngine:
        self._ensure_initialized()
        return self

    def __exit__(self, *exc_info) -> None:
        self.cleanup()

    # ------------------------------------------------------------------
    # Conversations & messages
    # ------------------------------------------------------------------

    def create_conversation(
        self,
        conversation_id: str,
        user_id: str | None = None,
        title: str | None = None,
        max_context_tokens: int | None = None,
    ) -> Conversation:
        """Create a conversation, or update the given fields if it exists."""
        with self._locks.hold(conversation_id):
            conversation = self._store.get_conversation(conversation_id) or Conversation(
                conversation_id=conversation_id,
            )
            if user_id is not None:
                conversation.user_id = user_id
            if title is not None:
                conversation.title = title
            if max_context_tokens is not None:
                conversation.max_context_tokens = max_context_tokens
            self._store.save_conversation(conversation)
            self._cache.invalidate(conversation_id)
        return conversation

    def add_message(
        self,
        conversation_id: str,
        message_id: int,
        message: Message,
        importance: float | None = None,
    ) -> AppendResult:
        """Record a message already appended to the ledger under ``message_id``."""
        self._ensure_initialized()
        with self._locks.hold(conversation_id):
            self._backfill_unrecorded(conversation_id, message_id)
            metadata = self._metadata.record_message(
                conversation_id,
                message_id,
                message.role,
                message.content,
                explicit_importance=importance,
                created_at=message.timestamp,
            )
            degraded = metadata.degraded

            segments_changed = False
            if not degraded:
                try:
                    segments_changed = self._segmenter.on_message(metadata)
                except PersistenceError as e:
                    logger.error("Segmentation for %s failed, continuing degraded: %s", conversation_id, e)
                    degraded = True

            extracted: list[KeyFact] = []
            try:
                extracted = self._key_facts.extract_facts(
                    conversation_id, message_id, message.content, role=message.role,
                )
            except PersistenceError as e:
                logger.error("Key fact extraction for message %s failed: %s", message_id, e)
                degraded = True

            self._indexer.index_message(conversation_id, message_id, message.content)
            self._cache.invalidate(conversation_id)

        logger.debug(
            "Recorded message %s in %s (position %d, importance %.2f)",
            message_id, conversation_id, metadata.position, metadata.importance_score,
        )
        return AppendResult(
            conversation_id=conversation_id,
            message_id=message_id,
            metadata=metadata,
            degraded=degraded,
            segments_changed=segments_changed,
            extracted_facts=extracted,
        )

    def _backfill_unrecorded(self, conversation_id: str, message_id: int) -> int:
        """Record ledger messages that an earlier degraded append left without metadata.

        Runs under the conversation lock before ``message_id`` is recorded, so
        positions stay in ledger order. Stops at the first write that still fails.
        """
        try:
            last_id = self._store.get_last_message_id(conversation_id)
        except PersistenceError as e:
            logger.warning("Cannot check %s for unrecorded messages: %s", conversation_id, e)
            return 0
        if message_id - last_id <= 1:
            return 0

        recorded = 0
        for lm in self._ledger.read_range(conversation_id, last_id + 1, message_id - 1):
            metadata = self._metadata.record_message(
                conversation_id, lm.message_id, lm.role, lm.content, created_at=lm.timestamp,
            )
            if metadata.degraded:
                break
            try:
                self._segmenter.on_message(metadata)
            except PersistenceError as e:
                logger.error("Segmentation for backfilled message %s failed: %s", lm.message_id, e)
                break
            recorded += 1
        if recorded:
            logger.info("Backfilled metadata for %d message(s) in %s", recorded, conversation_id)
        return recorded

    def append_message(
        self,
        conversation_id: str,
        message: Message,
        importance: float | None = None,
    ) -> AppendResult:
        """Append to the ledger and record the message in one step."""
        with self._locks.hold(conversation_id):
            message_id, timestamp = self._ledger.append(conversation_id, message)
            if message.timestamp is None:
                message = Message(
                    role=message.role,
                    content=message.content,
                    timestamp=timestamp,
                    metadata=message.metadata,
                )
            return self.add_message(conversation_id, message_id, message, importance=importance)

    def mark_message_important(self, message_id: int, important: bool = True) -> MessageMetadata:
        """Set (or explicitly clear) the sticky user-marked flag."""
        current = self._metadata.get(message_id)
        if current is None:
            raise KeyError(f"Unknown message id: {message_id}")
        with self._locks.hold(current.conversation_id):
            updated = self._metadata.mark_important(message_id, important)
            self._cache.invalidate(current.conversation_id)
        return updated

    # ------------------------------------------------------------------
    # Context assembly
    # ------------------------------------------------------------------

    def get_optimized_context(
        self,
        conversation_id: str,
        query: str | None = None,
        max_context_tokens: int | None = None,
        cancel_event: threading.Event | None = None,
    ) -> ContextWindow:
        """Assemble (or serve from cache) the context window for one turn."""
        self._ensure_initialized()
        budget = max_context_tokens or self._conversation_budget(conversation_id)
        fingerprint = ContextCache.fingerprint(query)
        if max_context_tokens is not None:
            fingerprint = f"{fingerprint}:{budget}"

        started = time.perf_counter()
        window = self._cache.get_or_compute(
            conversation_id,
            fingerprint,
            lambda: self._assembler.assemble(conversation_id, query, budget, cancel_event),
            cancel_event=cancel_event,
        )
        if cancel_event is not None and cancel_event.is_set():
            raise AssemblyCancelled(f"Context assembly for {conversation_id} cancelled")

        elapsed_ms = (time.perf_counter() - started) * 1000
        self._analytics.record_operation(
            conversation_id,
            OperationType.RETRIEVE,
            input_tokens=round(window.total_tokens * window.compression_ratio),
            output_tokens=window.total_tokens,
            processing_time_ms=elapsed_ms,
            compression_ratio=window.compression_ratio,
            cache_hit=window.cache_hit,
        )
        return window

    def _conversation_budget(self, conversation_id: str) -> int:
        try:
            conversation = self._store.get_conversation(conversation_id)
        except PersistenceError:
            conversation = None
        if conversation is not None and conversation.max_context_tokens:
            return conversation.max_context_tokens
        return self.config.assembler.max_context_tokens

    # ------------------------------------------------------------------
    # Key facts
    # ------------------------------------------------------------------

    def add_key_fact(
        self,
        conversation_id: str,
        text: str,
        fact_type: FactType | str = FactType.FACT,
        source_message_id: int | None = None,
        expires_at: datetime | None = None,
        importance: float = 1.0,
    ) -> KeyFact:
        with self._locks.hold(conversation_id):
            fact = self._key_facts.add_key_fact(
                conversation_id,
                text,
                fact_type=fact_type,
                source_message_id=source_message_id,
                expires_at=expires_at,
                importance=importance,
            )
            self._cache.invalidate(conversation_id)
        return fact

    def list_key_facts(self, conversation_id: str, include_expired: bool = False) -> list[KeyFact]:
        return self._key_facts.list_facts(conversation_id, include_expired=include_expired)

    # ------------------------------------------------------------------
    # Search, summaries, forgetting
    # ------------------------------------------------------------------

    def search_memory(
        self,
        conversation_id: str,
        query: str,
        limit: int = 5,
        threshold: float = 0.0,
    ) -> list[dict]:
        """Semantic search over indexed messages and segment summaries."""
        self._ensure_initialized()
        if self._gateway is None or not query.strip():
            return []
        try:
            hits = self._gateway.search(conversation_id, query, limit)
        except RetrievalGatewayError as e:
            logger.warning("Memory search for %s failed: %s", conversation_id, e)
            return []

        results: list[dict] = []
        for hit in hits:
            if hit.similarity < threshold:
                continue
            if hit.item_type == "message":
                result = self._message_result(conversation_id, hit.ref, hit.similarity)
            else:
                result = self._segment_result(hit.ref, hit.similarity)
            if result is not None:
                results.append(result)
        return results

    def _message_result(self, conversation_id: str, ref: str, similarity: float) -> dict | None:
        try:
            message_id = int(ref)
        except ValueError:
            return None
        meta = self._store.get_message_metadata(message_id)
        if meta is None or meta.conversation_id != conversation_id:
            return None
        raw = self._ledger.read_range(conversation_id, message_id, message_id)
        content = raw[0].content if raw else ""
        return {
            "type": "message",
            "message_id": message_id,
            "position": meta.position,
            "role": meta.role,
            "importance": meta.importance_score,
            "similarity": round(similarity, 4),
            "content": content[:200] + ("..." if len(content) > 200 else ""),
        }

    def _segment_result(self, segment_id: str, similarity: float) -> dict | None:
        segment = self._store.get_segment(segment_id)
        if segment is None:
            return None
        return {
            "type": "summary",
            "segment_id": segment.segment_id,
            "segment_type": segment.segment_type.value,
            "start_position": segment.start_position,
            "end_position": segment.end_position,
            "similarity": round(similarity, 4),
            "content": segment.summary,
        }

    def summarize_range(
        self,
        conversation_id: str,
        start_position: int = 1,
        end_position: int | None = None,
        style: str = "brief",
    ) -> str:
        """Ad hoc summary of a position range; stored segments are untouched."""
        return self._segmenter.summarize_range(conversation_id, start_position, end_position, style=style)

    def forget_context(
        self,
        conversation_id: str,
        older_than_days: float | None = None,
        importance_threshold: float | None = None,
    ) -> dict:
        """Delete matching key facts and drop matching messages from the index.

        Without criteria, everything below ``importance.threshold`` is
        forgotten. User-marked messages are never unindexed. The ledger and
        segment summaries are kept.
        """
        self._ensure_initialized()
        if older_than_days is None and importance_threshold is None:
            importance_threshold = self.config.importance.threshold
        cutoff = None
        if older_than_days is not None:
            cutoff = datetime.now(timezone.utc) - timedelta(days=older_than_days)

        with self._locks.hold(conversation_id):
            facts_removed = self._key_facts.forget(
                conversation_id, older_than=cutoff, importance_below=importance_threshold,
            )
            last = self._store.get_last_position(conversation_id)
            rows = self._store.get_messages_by_position(conversation_id, 1, last) if last else []
            forgotten = [
                message_item_id(m.message_id)
                for m in rows
                if not m.user_marked
                and (cutoff is None or m.created_at < cutoff)
                and (importance_threshold is None or m.importance_score < importance_threshold)
            ]
            self._indexer.remove(conversation_id, forgotten)
            self._cache.invalidate(conversation_id)

        logger.info(
            "Forgot %d fact(s) and unindexed %d message(s) in %s",
            facts_removed, len(forgotten), conversation_id,
        )
        return {
            "conversation_id": conversation_id,
            "facts_removed": facts_removed,
            "messages_unindexed": len(forgotten),
        }

    def purge_conversation(self, conversation_id: str) -> bool:
        """Remove every trace of a conversation (metadata, segments, facts,
        cache, analytics, index entries and, for the owned ledger, messages)."""
        self._ensure_initialized()
        with self._locks.hold(conversation_id):
            self._indexer.remove(conversation_id)
            self._cache.invalidate(conversation_id)
            existed = self._store.delete_conversation(conversation_id)
            if self._owns_ledger:
                self._ledger.delete_conversation(conversation_id)
        self._locks.discard(conversation_id)
        logger.info("Purged conversation %s", conversation_id)
        return existed

    # ------------------------------------------------------------------
    # Stats & analytics
    # ------------------------------------------------------------------

    def get_conversation_stats(self, conversation_id: str) -> ConversationMetrics:
        return self._analytics.conversation_metrics(conversation_id)

    def get_system_metrics(self) -> SystemMetrics:
        return self._analytics.system_metrics()

    def generate_report(self) -> str:
        return self._analytics.generate_report()

    def get_memory_cache_stats(self) -> CacheStats:
        return self._cache.stats()

    def get_conversation_cache_stats(self, conversation_id: str) -> ConversationCacheStats:
        return self._cache.conversation_stats(conversation_id)

    def clear_memory_cache(self) -> None:
        self._cache.clear()

    def cleanup_old_data(self, retention_days: int | None = None) -> dict:
        """Drop expired cache entries and analytics past retention."""
        return {
            "cache_entries_removed": self._cache.purge_expired(),
            "analytics_records_removed": self._analytics.cleanup_old_data(retention_days),
        }

    def get_segments(self, conversation_id: str) -> list[Segment]:
        return self._segmenter.get_segments(conversation_id)

    def list_conversations(self, limit: int | None = None) -> list[Conversation]:
        return self._store.list_conversations(limit)
