"""Service layer for the context pipeline."""

from rag_context.services.context_cache import CacheConfig, ContextCache
from rag_context.services.context_pruner import ContextPruner
from rag_context.services.conversation_memory import ConversationConfig, ConversationMemory
from rag_context.services.embedding_service import EmbeddingService
from rag_context.services.hybrid_search import HybridSearch
from rag_context.services.multi_stage_retrieval import MultiStageRetrieval
from rag_context.services.orchestrator import PipelineOrchestrator
from rag_context.services.resilience import ResilienceConfig, ResilienceManager

__all__ = [
    "CacheConfig",
    "ContextCache",
    "ContextPruner",
    "ConversationConfig",
    "ConversationMemory",
    "EmbeddingService",
    "HybridSearch",
    "MultiStageRetrieval",
    "PipelineOrchestrator",
    "ResilienceConfig",
    "ResilienceManager",
]
