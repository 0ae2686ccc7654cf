"""MCP server implementation for RAG Context."""

import logging
from typing import Any

from mcp.server.fastmcp import FastMCP

from rag_context.config.settings import Settings
from rag_context.embeddings.base import EmbeddingProvider
from rag_context.embeddings.local import LocalEmbeddingProvider
from rag_context.embeddings.openai import OpenAIEmbeddingProvider
from rag_context.llm.base import LanguageModelProvider
from rag_context.llm.openai import OpenAIChatProvider
from rag_context.services.corpus_loader import load_corpus
from rag_context.services.embedding_service import EmbeddingService
from rag_context.services.orchestrator import PipelineOrchestrator
from rag_context.tools import pipeline_tools
from rag_context.vectorstore.memory import InMemoryVectorSearchClient

logger = logging.getLogger(__name__)

# Initialize FastMCP server
mcp = FastMCP("rag-context")

# Global service instances (initialized in main)
orchestrator: PipelineOrchestrator | None = None
vector_client: InMemoryVectorSearchClient | None = None


def create_embedding_provider(settings: Settings) -> EmbeddingProvider:
    """Build the configured embedding provider."""
    if settings.embedding_provider == "local":
        return LocalEmbeddingProvider(settings.embedding_model)
    if not settings.openai_api_key:
        raise ValueError("OpenAI API key required for openai provider")
    return OpenAIEmbeddingProvider(
        api_key=settings.openai_api_key,
        model=settings.openai_embedding_model,
    )


def create_language_model(settings: Settings) -> LanguageModelProvider | None:
    """Build the configured language model, or None to answer with raw context."""
    if settings.llm_provider == "none":
        return None
    if not settings.openai_api_key:
        raise ValueError("OpenAI API key required for openai language model")
    return OpenAIChatProvider(
        api_key=settings.openai_api_key,
        model=settings.llm_model,
        temperature=settings.llm_temperature,
    )


async def initialize_services(settings: Settings) -> PipelineOrchestrator:
    """Initialize the vector index, the pipeline and its background tasks.

    Args:
        settings: Application settings

    Returns:
        The initialized orchestrator
    """
    global orchestrator, vector_client

    embedding_service = EmbeddingService(create_embedding_provider(settings))
    vector_client = InMemoryVectorSearchClient()

    if settings.corpus_path:
        loaded = await load_corpus(
            settings.corpus_path,
            vector_client,
            embedding_service,
            namespace=settings.vector_namespace,
            batch_size=settings.corpus_batch_size,
        )
        logger.info("Loaded %d corpus records from %s", loaded, settings.corpus_path)
    else:
        logger.warning("No corpus configured; retrieval will return empty context")

    orchestrator = PipelineOrchestrator.from_settings(
        settings,
        vector_client,
        embedding_service,
        llm=create_language_model(settings),
    )
    orchestrator.start()
    return orchestrator


async def shutdown_services() -> None:
    """Stop background tasks and release services."""
    global orchestrator, vector_client
    if orchestrator:
        await orchestrator.close()
    orchestrator = None
    vector_client = None


def _require_orchestrator() -> PipelineOrchestrator:
    if not orchestrator:
        raise RuntimeError("Services not initialized")
    return orchestrator


# Pipeline Tools
@mcp.tool()
async def context_process_query(
    query: str,
    conversation_id: str | None = None,
    user_id: str | None = None,
) -> dict[str, Any]:
    """Answer a question using retrieved, pruned and cached context.

    Args:
        query: User question (Polish or English)
        conversation_id: Optional conversation identifier; follow-ups see earlier turns
        user_id: Optional user identifier

    Returns:
        Response text, confidence (0.3 or below means degraded), metadata
        and per-phase timings in milliseconds
    """
    return await pipeline_tools.context_process_query(
        _require_orchestrator(), query, conversation_id, user_id
    )


@mcp.tool()
async def context_processing_stats() -> dict[str, Any]:
    """Get step-by-step timings of the most recent query.

    Returns:
        Steps with duration, success flag and details
    """
    return await pipeline_tools.context_processing_stats(_require_orchestrator())


@mcp.tool()
async def context_warmup_cache(queries: list[str]) -> dict[str, Any]:
    """Pre-populate the context cache by processing queries.

    Args:
        queries: Queries to process ahead of time (max 100)

    Returns:
        Number of warmed queries and the resulting cache size
    """
    return await pipeline_tools.context_warmup_cache(_require_orchestrator(), queries)


@mcp.tool()
async def context_benchmark(queries: list[str], iterations: int = 10) -> dict[str, Any]:
    """Benchmark the pipeline over a query set.

    Args:
        queries: Queries to run (max 100)
        iterations: Repetitions of the whole set (1-100)

    Returns:
        Average response time, confidence, compression rate, cache hit rate
        and success rate
    """
    return await pipeline_tools.context_benchmark(
        _require_orchestrator(), queries, iterations
    )


@mcp.tool()
async def context_cache_stats() -> dict[str, Any]:
    """Get context cache statistics.

    Returns:
        Entry count, estimated memory, hit rate, evictions and TTL multiplier
    """
    return await pipeline_tools.context_cache_stats(_require_orchestrator())


@mcp.tool()
async def context_cache_invalidate(pattern: str | None = None) -> dict[str, Any]:
    """Invalidate cached context.

    Args:
        pattern: Regex matched against cache keys, queries and content
            (omit to clear the whole cache)

    Returns:
        Number of invalidated entries
    """
    return await pipeline_tools.context_cache_invalidate(_require_orchestrator(), pattern)


@mcp.tool()
async def context_health() -> dict[str, Any]:
    """Report cache statistics and per-operation resilience health.

    Returns:
        Cache stats, circuit states, success rates and overall health
    """
    return await pipeline_tools.context_health(_require_orchestrator())


def create_server() -> FastMCP:
    """Create and return MCP server instance.

    Returns:
        FastMCP server instance
    """
    return mcp
