"""All dataclasses, Protocols, enums and errors for context-memory."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Protocol, runtime_checkable


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Messages & Conversations
# ---------------------------------------------------------------------------

@dataclass
class Message:
    role: str  # "user", "assistant", "system", "tool"
    content: str
    timestamp: datetime | None = None
    metadata: dict | None = None


@dataclass
class LedgerMessage:
    """A message as persisted by the transcript ledger."""
    message_id: int
    conversation_id: str
    role: str
    content: str
    timestamp: datetime = field(default_factory=_utcnow)

    def to_message(self) -> Message:
        return Message(
            role=self.role,
            content=self.content,
            timestamp=self.timestamp,
            metadata={"message_id": self.message_id},
        )


@dataclass
class Conversation:
    conversation_id: str
    user_id: str = ""
    title: str = ""
    total_messages: int = 0
    total_tokens: int = 0
    max_context_tokens: int | None = None  # per-conversation override
    last_activity: datetime = field(default_factory=_utcnow)
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class MessageMetadata:
    """Engine-side bookkeeping for one ledger message."""
    message_id: int
    conversation_id: str
    position: int = 0              # 1-based ordinal within the conversation
    role: str = "user"
    importance_score: float = 0.5
    user_marked: bool = False      # sticky, only cleared explicitly
    compression_level: int = 0     # 0 = raw/recent .. 5 = ancient
    token_count: int = 0
    entities: set[str] = field(default_factory=set)
    topics: set[str] = field(default_factory=set)
    semantic_hash: str = ""
    created_at: datetime = field(default_factory=_utcnow)
    degraded: bool = False         # True when metadata could not be persisted


# ---------------------------------------------------------------------------
# Segments
# ---------------------------------------------------------------------------

class SegmentType(str, Enum):
    RECENT = "recent"
    MEDIUM = "medium"
    LONG = "long"
    ANCIENT = "ancient"


@dataclass
class Segment:
    """A contiguous run of messages sharing one compression tier."""
    segment_id: str
    conversation_id: str
    segment_type: SegmentType
    start_position: int
    end_position: int
    start_message_id: int = 0
    end_message_id: int = 0
    summary: str = ""
    importance_score: float = 0.5
    token_count: int = 0           # tokens of the summary (raw tokens for recent)
    original_tokens: int = 0       # tokens of the raw messages covered
    message_count: int = 0
    compression_level: int = 0
    sealed: bool = False
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    def covers(self, position: int) -> bool:
        return self.start_position <= position <= self.end_position


# ---------------------------------------------------------------------------
# Key Facts
# ---------------------------------------------------------------------------

class FactType(str, Enum):
    DECISION = "decision"
    PREFERENCE = "preference"
    FACT = "fact"
    GOAL = "goal"


@dataclass
class KeyFact:
    fact_id: str
    conversation_id: str
    text: str
    fact_type: FactType = FactType.FACT
    importance_score: float = 1.0
    source_message_id: int | None = None
    source: str = "user"  # "user" or "auto"
    extracted_at: datetime = field(default_factory=_utcnow)
    expires_at: datetime | None = None

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at <= (now or _utcnow())


# ---------------------------------------------------------------------------
# Retrieval
# ---------------------------------------------------------------------------

@dataclass
class RetrievalHit:
    """One similarity match returned by a retrieval gateway."""
    item_id: str  # "message:<id>" or "segment:<id>"
    similarity: float

    @property
    def item_type(self) -> str:
        return self.item_id.split(":", 1)[0]

    @property
    def ref(self) -> str:
        return self.item_id.split(":", 1)[1] if ":" in self.item_id else self.item_id


@dataclass
class EmbeddingRef:
    """Reference to an item indexed by the external vector service."""
    item_id: str
    conversation_id: str
    item_type: str  # "message", "segment", "summary"
    vector_ref: str = ""
    created_at: datetime = field(default_factory=_utcnow)


# ---------------------------------------------------------------------------
# Context Window
# ---------------------------------------------------------------------------

def _message_to_dict(m: Message) -> dict:
    return {
        "role": m.role,
        "content": m.content,
        "timestamp": m.timestamp.isoformat() if m.timestamp else None,
        "metadata": m.metadata,
    }


def _message_from_dict(d: dict) -> Message:
    ts = d.get("timestamp")
    return Message(
        role=d["role"],
        content=d["content"],
        timestamp=datetime.fromisoformat(ts) if ts else None,
        metadata=d.get("metadata"),
    )


@dataclass
class ContextWindow:
    """The selected context handed to the LLM call for one turn."""
    recent_messages: list[Message] = field(default_factory=list)
    relevant_history: list[Message] = field(default_factory=list)
    summaries: list[Segment] = field(default_factory=list)
    key_facts: list[KeyFact] = field(default_factory=list)
    total_tokens: int = 0
    compression_ratio: float = 1.0
    degraded: bool = False
    degradation_reasons: list[str] = field(default_factory=list)
    cache_hit: bool = False
    query_injected: bool = False

    def is_empty(self) -> bool:
        return not (
            self.recent_messages
            or self.relevant_history
            or self.summaries
            or self.key_facts
        )

    def to_messages(self) -> list[Message]:
        """Flatten into an ordered message list for the LLM call."""
        out: list[Message] = []
        preamble: list[str] = []
        if self.key_facts:
            preamble.append("Key facts:")
            preamble.extend(f"- [{f.fact_type.value}] {f.text}" for f in self.key_facts)
        if self.summaries:
            if preamble:
                preamble.append("")
            preamble.append("Earlier conversation:")
            preamble.extend(
                f"- (messages {s.start_position}-{s.end_position}) {s.summary}"
                for s in self.summaries
            )
        if preamble:
            out.append(Message(role="system", content="\n".join(preamble)))
        out.extend(self.relevant_history)
        out.extend(self.recent_messages)
        return out

    def to_dict(self) -> dict:
        return {
            "recent_messages": [_message_to_dict(m) for m in self.recent_messages],
            "relevant_history": [_message_to_dict(m) for m in self.relevant_history],
            "summaries": [
                {
                    "segment_id": s.segment_id,
                    "conversation_id": s.conversation_id,
                    "segment_type": s.segment_type.value,
                    "start_position": s.start_position,
                    "end_position": s.end_position,
                    "start_message_id": s.start_message_id,
                    "end_message_id": s.end_message_id,
                    "summary": s.summary,
                    "importance_score": s.importance_score,
                    "token_count": s.token_count,
                    "original_tokens": s.original_tokens,
                    "message_count": s.message_count,
                    "compression_level": s.compression_level,
                    "sealed": s.sealed,
                }
                for s in self.summaries
            ],
            "key_facts": [
                {
                    "fact_id": f.fact_id,
                    "conversation_id": f.conversation_id,
                    "text": f.text,
                    "fact_type": f.fact_type.value,
                    "importance_score": f.importance_score,
                    "source_message_id": f.source_message_id,
                    "source": f.source,
                    "extracted_at": f.extracted_at.isoformat(),
                    "expires_at": f.expires_at.isoformat() if f.expires_at else None,
                }
                for f in self.key_facts
            ],
            "total_tokens": self.total_tokens,
            "compression_ratio": self.compression_ratio,
            "degraded": self.degraded,
            "degradation_reasons": list(self.degradation_reasons),
            "query_injected": self.query_injected,
        }

    @classmethod
    def from_dict(cls, data: dict) -> ContextWindow:
        summaries = [
            Segment(
                segment_id=s["segment_id"],
                conversation_id=s["conversation_id"],
                segment_type=SegmentType(s["segment_type"]),
                start_position=s["start_position"],
                end_position=s["end_position"],
                start_message_id=s.get("start_message_id", 0),
                end_message_id=s.get("end_message_id", 0),
                summary=s.get("summary", ""),
                importance_score=s.get("importance_score", 0.5),
                token_count=s.get("token_count", 0),
                original_tokens=s.get("original_tokens", 0),
                message_count=s.get("message_count", 0),
                compression_level=s.get("compression_level", 0),
                sealed=s.get("sealed", False),
            )
            for s in data.get("summaries", [])
        ]
        facts = [
            KeyFact(
                fact_id=f["fact_id"],
                conversation_id=f["conversation_id"],
                text=f["text"],
                fact_type=FactType(f.get("fact_type", "fact")),
                importance_score=f.get("importance_score", 1.0),
                source_message_id=f.get("source_message_id"),
                source=f.get("source", "user"),
                extracted_at=datetime.fromisoformat(f["extracted_at"]),
                expires_at=datetime.fromisoformat(f["expires_at"]) if f.get("expires_at") else None,
            )
            for f in data.get("key_facts", [])
        ]
        return cls(
            recent_messages=[_message_from_dict(m) for m in data.get("recent_messages", [])],
            relevant_history=[_message_from_dict(m) for m in data.get("relevant_history", [])],
            summaries=summaries,
            key_facts=facts,
            total_tokens=data.get("total_tokens", 0),
            compression_ratio=data.get("compression_ratio", 1.0),
            degraded=data.get("degraded", False),
            degradation_reasons=list(data.get("degradation_reasons", [])),
            query_injected=data.get("query_injected", False),
        )


@dataclass
class AppendResult:
    """Outcome of recording one new message."""
    conversation_id: str
    message_id: int
    metadata: MessageMetadata
    degraded: bool = False
    segments_changed: bool = False
    extracted_facts: list[KeyFact] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Analytics
# ---------------------------------------------------------------------------

class OperationType(str, Enum):
    RETRIEVE = "retrieve"
    COMPRESS = "compress"
    SUMMARIZE = "summarize"


@dataclass
class AnalyticsRecord:
    conversation_id: str
    operation_type: OperationType
    input_tokens: int = 0
    output_tokens: int = 0
    compression_ratio: float | None = None
    processing_time_ms: float = 0.0
    cache_hit: bool = False
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class ConversationMetrics:
    """Per-conversation rollup."""
    conversation_id: str
    total_messages: int = 0
    total_tokens: int = 0
    segments: dict[str, int] = field(default_factory=dict)  # segment_type → count
    key_facts: int = 0
    user_marked: int = 0
    average_compression: float = 1.0
    retrievals: int = 0
    cache_hits: int = 0
    tokens_saved: int = 0
    cost_savings: float = 0.0
    last_activity: datetime | None = None


@dataclass
class OperationMetrics:
    operation_type: str
    count: int = 0
    avg_processing_time_ms: float = 0.0
    avg_compression_ratio: float = 0.0
    total_input_tokens: int = 0
    total_output_tokens: int = 0


@dataclass
class SystemMetrics:
    total_conversations: int = 0
    total_messages: int = 0
    total_tokens: int = 0
    average_compression: float = 1.0
    cache_hit_rate: float = 0.0
    average_processing_time_ms: float = 0.0
    processing_time_by_operation: dict[str, float] = field(default_factory=dict)
    tokens_saved: int = 0
    cost_savings: float = 0.0


@dataclass
class CompressionTrendPoint:
    date: str  # YYYY-MM-DD
    average_compression: float
    operations: int


@dataclass
class TopConversation:
    conversation_id: str
    title: str
    total_messages: int
    total_tokens: int
    last_activity: datetime | None = None


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------

@dataclass
class ContextCacheEntry:
    """Persisted form of a cached ContextWindow."""
    cache_key: str
    conversation_id: str
    window_json: str
    token_count: int = 0
    hit_count: int = 0
    expires_at: datetime = field(default_factory=_utcnow)
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class CacheStats:
    total_items: int = 0
    hits: int = 0
    misses: int = 0
    hit_rate: float = 0.0
    evictions: int = 0
    invalidations: int = 0
    memory_bytes: int = 0
    oldest_item_age_s: float = 0.0
    newest_item_age_s: float = 0.0


@dataclass
class ConversationCacheStats:
    conversation_id: str
    hits: int = 0
    misses: int = 0
    hit_rate: float = 0.0


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class ContextMemoryError(Exception):
    """Base class for engine errors."""


class ConfigurationError(ContextMemoryError):
    """Missing or invalid configuration (endpoint, credentials, ranges)."""


class RetrievalGatewayError(ContextMemoryError):
    """The vector retrieval gateway failed or is unavailable."""


class RetrievalTimeoutError(RetrievalGatewayError):
    """The vector retrieval gateway did not answer within the deadline."""


class PersistenceError(ContextMemoryError):
    """A metadata, segment, fact or cache write failed."""


class CacheError(ContextMemoryError):
    """The context cache could not read or write an entry."""


class SummarizationError(ContextMemoryError):
    """The summarizer could not produce a summary."""


class AssemblyCancelled(ContextMemoryError):
    """The caller cancelled a context assembly before it was committed."""


class EmptyContextError(AssertionError):
    """A context window came back empty although a query was supplied."""


class LLMProviderError(Exception):
    def __init__(self, message: str, provider: str, status_code: int | None = None):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


# ---------------------------------------------------------------------------
# Collaborator Protocols
# ---------------------------------------------------------------------------

@runtime_checkable
class Ledger(Protocol):
    """Append-only raw transcript owned outside the engine."""

    def append(self, conversation_id: str, message: Message) -> tuple[int, datetime]: ...

    def read_range(self, conversation_id: str, start_id: int, end_id: int) -> list[LedgerMessage]: ...

    def read_recent(self, conversation_id: str, limit: int) -> list[LedgerMessage]: ...


@runtime_checkable
class RetrievalGateway(Protocol):
    """Semantic similarity search over indexed messages and summaries."""

    def search(self, conversation_id: str, query: str, top_k: int) -> list[RetrievalHit]: ...

    def index(self, conversation_id: str, item_id: str, text: str, item_type: str) -> str: ...

    def delete(self, conversation_id: str, item_ids: list[str] | None = None) -> None: ...


@runtime_checkable
class Summarizer(Protocol):
    """``style`` is one of "brief", "detailed", "key_points"."""

    def summarize(self, messages: list[Message], style: str = "brief") -> str: ...


@runtime_checkable
class LLMProvider(Protocol):
    def complete(self, system: str, user: str, max_tokens: int) -> str: ...


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

@dataclass
class SegmentationConfig:
    recent_threshold: int = 10         # N: raw messages kept in the recent tier
    segment_size: int | None = None    # S: messages per medium segment (defaults to N)
    max_medium_segments: int = 3
    max_long_segments: int = 3
    merge_factor: int = 2

    @property
    def effective_segment_size(self) -> int:
        return self.segment_size or self.recent_threshold


@dataclass
class AssemblerConfig:
    max_context_tokens: int = 8000
    retrieval_top_k: int = 5
    retrieval_timeout_ms: int = 250
    min_similarity: float = 0.0
    max_workers: int = 4


@dataclass
class ImportanceConfig:
    threshold: float = 0.3             # below this, retrieved history is dropped first
    degraded_score: float = 0.2
    marked_score: float = 1.0


@dataclass
class KeyFactConfig:
    auto_extract: bool = True
    auto_importance: float = 0.7
    auto_ttl_days: int | None = None


@dataclass
class CacheConfig:
    enabled: bool = True
    max_size: int = 1000
    ttl_minutes: int = 30
    persistent: bool = True


@dataclass
class AnalyticsConfig:
    enabled: bool = True
    retention_days: int = 30
    cost_per_1k_tokens: float = 0.01


@dataclass
class RetrievalConfig:
    provider: str = "memory"  # "http", "memory", or "none"
    endpoint: str = ""
    api_key: str = ""
    api_key_env: str = "VECTOR_STORE_API_KEY"
    collection: str = "conversation-context"
    timeout_ms: int = 2000
    index_segments: bool = True


@dataclass
class SummarizationConfig:
    provider: str = ""  # empty → extractive summarizer
    model: str = ""
    max_tokens: int = 600
    temperature: float = 0.3
    max_summary_chars: int = 1200
    fallback_extractive: bool = False  # summarize locally when the LLM call fails


@dataclass
class StorageConfig:
    backend: str = "sqlite"
    sqlite_path: str = ".contextmemory/memory.db"
    retry_backoff_seconds: float = 0.05


@dataclass
class MemoryEngineConfig:
    version: str = "1.0"
    token_counter: str = "estimate"
    segmentation: SegmentationConfig = field(default_factory=SegmentationConfig)
    assembler: AssemblerConfig = field(default_factory=AssemblerConfig)
    importance: ImportanceConfig = field(default_factory=ImportanceConfig)
    key_facts: KeyFactConfig = field(default_factory=KeyFactConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    analytics: AnalyticsConfig = field(default_factory=AnalyticsConfig)
    retrieval: RetrievalConfig = field(default_factory=RetrievalConfig)
    summarization: SummarizationConfig = field(default_factory=SummarizationConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    providers: dict[str, dict] = field(default_factory=dict)
