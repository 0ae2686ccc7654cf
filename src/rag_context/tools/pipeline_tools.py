"""Context pipeline MCP tools."""

import logging
from dataclasses import asdict
from typing import Any

from rag_context.services.orchestrator import PipelineOrchestrator
from rag_context.tools import create_error_response, utc_timestamp, validation_error

logger = logging.getLogger(__name__)

MAX_QUERY_LENGTH = 4000
MAX_BATCH_QUERIES = 100
MAX_BENCHMARK_ITERATIONS = 100


def _validate_queries(queries: list[str] | None) -> dict[str, Any] | None:
    if not queries:
        return validation_error("queries must contain at least one query")
    if len(queries) > MAX_BATCH_QUERIES:
        return validation_error(
            f"Too many queries: {len(queries)} (max {MAX_BATCH_QUERIES})",
            max_queries=MAX_BATCH_QUERIES,
        )
    invalid = [i for i, q in enumerate(queries) if not isinstance(q, str) or not q.strip()]
    if invalid:
        return validation_error("Every query must be a non-empty string", invalid_indices=invalid)
    return None


async def context_process_query(
    orchestrator: PipelineOrchestrator,
    query: str,
    conversation_id: str | None = None,
    user_id: str | None = None,
) -> dict[str, Any]:
    """Answer a query through the context pipeline.

    Args:
        orchestrator: Pipeline orchestrator instance
        query: User query
        conversation_id: Optional conversation identifier; follow-ups see earlier turns
        user_id: Optional user identifier

    Returns:
        Response text, confidence, metadata and per-phase timings
    """
    if not query or not query.strip():
        return validation_error("Query cannot be empty")
    if len(query) > MAX_QUERY_LENGTH:
        return validation_error(
            f"Query too long: {len(query)} characters (max {MAX_QUERY_LENGTH})",
            max_length=MAX_QUERY_LENGTH,
        )

    try:
        response = await orchestrator.process_query(
            query, conversation_id=conversation_id, user_id=user_id
        )
    except Exception as e:
        logger.exception("Unexpected error in context_process_query: %s", e)
        return create_error_response(
            message=f"Failed to process query: {str(e)}",
            error_type="RuntimeError",
        )

    return asdict(response)


async def context_processing_stats(orchestrator: PipelineOrchestrator) -> dict[str, Any]:
    """Get step timings of the most recent query."""
    stats = orchestrator.get_processing_stats()
    return {
        "steps": [asdict(stat) for stat in stats],
        "total_duration_ms": sum(stat.duration for stat in stats),
        "failed_steps": [stat.stage for stat in stats if not stat.success],
    }


async def context_warmup_cache(
    orchestrator: PipelineOrchestrator,
    queries: list[str],
) -> dict[str, Any]:
    """Pre-populate the context cache.

    Args:
        orchestrator: Pipeline orchestrator instance
        queries: Queries to process ahead of time

    Returns:
        Number of warmed queries and resulting cache size
    """
    error = _validate_queries(queries)
    if error:
        return error

    try:
        warmed = await orchestrator.warmup_cache(queries)
    except Exception as e:
        logger.exception("Unexpected error in context_warmup_cache: %s", e)
        return create_error_response(
            message=f"Failed to warm up cache: {str(e)}",
            error_type="RuntimeError",
        )

    return {
        "requested": len(queries),
        "warmed": warmed,
        "cache_entries": len(orchestrator.cache),
        "timestamp": utc_timestamp(),
    }


async def context_benchmark(
    orchestrator: PipelineOrchestrator,
    queries: list[str],
    iterations: int = 10,
) -> dict[str, Any]:
    """Benchmark the pipeline over a query set.

    Args:
        orchestrator: Pipeline orchestrator instance
        queries: Queries to run
        iterations: Repetitions of the whole query set (1-100)

    Returns:
        Average timings, confidence, compression, hit rate and success rate
    """
    error = _validate_queries(queries)
    if error:
        return error
    if not 1 <= iterations <= MAX_BENCHMARK_ITERATIONS:
        return validation_error(f"iterations must be between 1 and {MAX_BENCHMARK_ITERATIONS}")

    try:
        result = await orchestrator.benchmark(queries, iterations)
    except Exception as e:
        logger.exception("Unexpected error in context_benchmark: %s", e)
        return create_error_response(
            message=f"Benchmark failed: {str(e)}",
            error_type="RuntimeError",
        )

    return asdict(result)


async def context_cache_stats(orchestrator: PipelineOrchestrator) -> dict[str, Any]:
    """Get context cache statistics."""
    try:
        stats = orchestrator.cache.get_stats()
    except Exception as e:
        return create_error_response(
            message=f"Failed to get cache stats: {str(e)}",
            error_type="RuntimeError",
        )
    return asdict(stats)


async def context_cache_invalidate(
    orchestrator: PipelineOrchestrator,
    pattern: str | None = None,
) -> dict[str, Any]:
    """Invalidate cache entries.

    Args:
        orchestrator: Pipeline orchestrator instance
        pattern: Regex or literal matched against keys, queries and content
            (None = clear all)

    Returns:
        Number of invalidated entries and timestamp
    """
    if pattern is not None and not pattern.strip():
        return validation_error("pattern cannot be blank (omit it to clear the whole cache)")

    try:
        invalidated = orchestrator.cache.invalidate(pattern)
    except Exception as e:
        return create_error_response(
            message=f"Failed to invalidate cache: {str(e)}",
            error_type="RuntimeError",
        )

    return {
        "invalidated_count": invalidated,
        "pattern": pattern,
        "timestamp": utc_timestamp(),
    }


async def context_health(orchestrator: PipelineOrchestrator) -> dict[str, Any]:
    """Report cache and resilience health."""
    try:
        health = orchestrator.health()
    except Exception as e:
        return create_error_response(
            message=f"Failed to get health: {str(e)}",
            error_type="RuntimeError",
        )
    health["timestamp"] = utc_timestamp()
    return health
