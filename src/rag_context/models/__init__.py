"""Data models for RAG Context."""

from rag_context.models.context import (
    BenchmarkResult,
    CacheEntry,
    CacheEntryMetadata,
    CacheStats,
    ChatResponse,
    ContextChunk,
    ConversationMessage,
    ConversationSession,
    ConversationStats,
    MultiStageResult,
    ProcessingStat,
    PruningResult,
    ResponseMetadata,
    ResponsePerformance,
    StageResult,
)
from rag_context.models.intent import (
    ContextSizeConfig,
    QueryComplexity,
    QueryIntent,
    RetrievalStage,
)
from rag_context.models.metadata import (
    ChunkMetadata,
    ContactMetadata,
    ExperimentMetadata,
    GenericMetadata,
    LeadershipMetadata,
    TimelineMetadata,
    WorkMetadata,
    normalize_metadata,
    parse_metadata,
)

__all__ = [
    # Intent models
    "QueryIntent",
    "QueryComplexity",
    "RetrievalStage",
    "ContextSizeConfig",
    # Context models
    "ContextChunk",
    "PruningResult",
    "StageResult",
    "MultiStageResult",
    "CacheEntry",
    "CacheEntryMetadata",
    "CacheStats",
    "ProcessingStat",
    "ResponseMetadata",
    "ResponsePerformance",
    "ChatResponse",
    "BenchmarkResult",
    "ConversationMessage",
    "ConversationSession",
    "ConversationStats",
    # Metadata models
    "ChunkMetadata",
    "WorkMetadata",
    "TimelineMetadata",
    "ExperimentMetadata",
    "LeadershipMetadata",
    "ContactMetadata",
    "GenericMetadata",
    "normalize_metadata",
    "parse_metadata",
]
