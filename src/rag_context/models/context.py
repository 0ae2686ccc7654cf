"""Context pipeline models."""

from dataclasses import dataclass, field
from typing import Any, Literal

from rag_context.models.intent import ContextSizeConfig, QueryIntent, RetrievalStage


@dataclass
class ContextChunk:
    """Retrieved unit of text moved through retrieval, pruning and caching.

    `score` is stage-relative (vector similarity, hybrid blend or attention)
    and is not comparable across stages without renormalization.
    """

    id: str
    content: str
    metadata: dict[str, Any] = field(default_factory=dict)
    score: float = 0.0
    tokens: int = 0
    source: str = "unknown"
    stage: str | None = None

    def __post_init__(self) -> None:
        # Negative estimates are meaningless; zero means zero-cost
        if self.tokens < 0:
            self.tokens = 0

    @property
    def content_type(self) -> str | None:
        """Content type tag from metadata, if any."""
        value = self.metadata.get("content_type")
        return value if isinstance(value, str) and value else None

    @property
    def technologies(self) -> list[str]:
        """Technologies listed in metadata (empty when absent or malformed)."""
        value = self.metadata.get("technologies")
        if isinstance(value, list):
            return [str(tech) for tech in value]
        return []


@dataclass
class PruningResult:
    """Result of fitting a chunk set to a token budget."""

    pruned_chunks: list[ContextChunk]
    original_tokens: int
    final_tokens: int
    compression_rate: float
    coherence_score: float
    quality_score: float
    processing_time: float


@dataclass
class StageResult:
    """Outcome of a single retrieval pass."""

    stage: RetrievalStage
    chunks: list[ContextChunk]
    total_found: int
    relevance_score: float
    processing_time: float
    error: str | None = None


@dataclass
class MultiStageResult:
    """Merged outcome of the staged retrieval state machine."""

    best_stage: RetrievalStage
    stages: list[StageResult]
    final_chunks: list[ContextChunk]
    total_processing_time: float
    confidence: float
    used_fallback: bool = False

    @property
    def all_stages_failed(self) -> bool:
        """True when every executed stage raised instead of returning."""
        return bool(self.stages) and all(stage.error is not None for stage in self.stages)


@dataclass
class CacheEntryMetadata:
    """Bookkeeping attached to a cache entry."""

    query_intent: QueryIntent
    original_tokens: int
    compressed: bool
    hit_count: int = 0


@dataclass
class CacheEntry:
    """Cache entry owned exclusively by the context cache."""

    key: str
    query: str
    value: list[ContextChunk]
    timestamp: float
    ttl: float
    access_count: int
    last_accessed: float
    size_bytes: int
    priority: float
    metadata: CacheEntryMetadata

    def is_expired(self, now: float) -> bool:
        """Check whether the entry outlived its TTL."""
        return now - self.timestamp > self.ttl


@dataclass
class CacheStats:
    """Cache statistics."""

    total_entries: int
    memory_usage_mb: float
    hit_rate: float
    total_hits: int
    total_misses: int
    eviction_count: int
    cleanup_count: int
    rejected_count: int
    ttl_multiplier: float


@dataclass
class ProcessingStat:
    """Timing record for one pipeline step."""

    stage: str
    duration: float
    success: bool
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class ResponseMetadata:
    """Descriptive metadata attached to a chat response."""

    query_intent: str
    context_size: int
    compression_rate: float
    cache_hit: bool
    total_tokens: int
    sources: list[str]
    processing_steps: list[str]
    completed_stages: list[str] = field(default_factory=list)
    fallbacks_used: list[str] = field(default_factory=list)
    size_config: ContextSizeConfig | None = None
    emergency: bool = False
    history_messages: int = 0


@dataclass
class ResponsePerformance:
    """Per-phase timings in milliseconds."""

    retrieval_time: float = 0.0
    compression_time: float = 0.0
    cache_time: float = 0.0
    generation_time: float = 0.0


@dataclass
class ChatResponse:
    """Result of processing a query; always well formed."""

    response: str
    confidence: float
    processing_time: float
    metadata: ResponseMetadata
    performance: ResponsePerformance


@dataclass
class BenchmarkResult:
    """Aggregate figures over repeated query processing."""

    avg_response_time: float
    avg_confidence: float
    avg_compression_rate: float
    cache_hit_rate: float
    success_rate: float
    total_runs: int


@dataclass
class ConversationMessage:
    """One turn remembered for a conversation."""

    role: Literal["user", "assistant"]
    content: str
    timestamp: float
    topics: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class ConversationSession:
    """Recent turns of one conversation.

    `messages` holds at most the configured number of turns while
    `total_messages` counts every turn ever recorded.
    """

    session_id: str
    messages: list[ConversationMessage] = field(default_factory=list)
    last_active: float = 0.0
    total_messages: int = 0
    dominant_topics: list[str] = field(default_factory=list)


@dataclass
class ConversationStats:
    """Conversation memory statistics."""

    total_sessions: int
    active_sessions: int
    avg_messages_per_session: float
    common_topics: list[str]
    expired_count: int
