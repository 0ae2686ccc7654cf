"""Pipeline orchestrator composing sizing, retrieval, pruning and caching."""

import logging
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING, Any, Literal, Self, TypeVar

from rag_context.exceptions import (
    ContextManagementError,
    PipelineAbortedError,
    RetrievalError,
)
from rag_context.llm.base import LanguageModelProvider
from rag_context.models.context import (
    BenchmarkResult,
    ChatResponse,
    ContextChunk,
    ProcessingStat,
    PruningResult,
    ResponseMetadata,
    ResponsePerformance,
)
from rag_context.models.intent import ContextSizeConfig, QueryIntent
from rag_context.services.context_cache import CacheConfig, ContextCache
from rag_context.services.context_pruner import ContextPruner
from rag_context.services.conversation_memory import ConversationConfig, ConversationMemory
from rag_context.services.embedding_service import EmbeddingService
from rag_context.services.hybrid_search import HybridSearch
from rag_context.services.multi_stage_retrieval import MultiStageRetrieval
from rag_context.services.query_intelligence import (
    build_system_prompt,
    classify_intent,
    size_context,
)
from rag_context.services.resilience import ResilienceConfig, ResilienceManager
from rag_context.utils.text import content_hash
from rag_context.utils.token_counter import estimate_tokens, get_token_count
from rag_context.vectorstore.base import VectorSearchClient

if TYPE_CHECKING:
    from rag_context.config.settings import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

FailurePolicy = Literal["graceful-degradation", "fail-fast"]

STAGE_SIZING = "context-sizing"
STAGE_RETRIEVAL = "multi-stage-retrieval"
STAGE_HYBRID = "hybrid-search"
STAGE_PRUNING = "context-pruning"
STAGE_CACHING = "smart-caching"
STAGE_GENERATION = "response-generation"

PIPELINE_STAGES = (STAGE_SIZING, STAGE_RETRIEVAL, STAGE_HYBRID, STAGE_PRUNING, STAGE_CACHING)

FALLBACK_SIZE = ContextSizeConfig(1500, 5, False, False, 1.0)
GENERIC_SIZE = ContextSizeConfig(2000, 5, False, False, 1.0)
FALLBACK_PRUNE_COUNT = 3
PLACEHOLDER_SCORE = 0.5
PLACEHOLDER_SOURCES = frozenset({"fallback", "generic-fallback"})

EMERGENCY_CONFIDENCE = 0.3
MIN_CONFIDENCE = 0.1
MAX_CONFIDENCE = 1.0

NO_CONTEXT_RESPONSE = "No relevant context was found for this question."


class _Skipped(Exception):
    """Internal marker: a non-critical stage produced no usable output."""


@dataclass
class _PipelineRun:
    """Mutable state of one process_query call."""

    query: str
    intent: QueryIntent = QueryIntent.CASUAL
    size: ContextSizeConfig = FALLBACK_SIZE
    retrieved: list[ContextChunk] = field(default_factory=list)
    candidates: list[ContextChunk] = field(default_factory=list)
    final_chunks: list[ContextChunk] = field(default_factory=list)
    pruning: PruningResult | None = None
    cache_hit: bool = False
    steps: list[str] = field(default_factory=list)
    completed: list[str] = field(default_factory=list)
    fallbacks: list[str] = field(default_factory=list)
    stats: list[ProcessingStat] = field(default_factory=list)
    timings: dict[str, float] = field(default_factory=dict)
    history: str = ""
    history_messages: int = 0


def _placeholder_chunk(query: str, source: str = "fallback") -> ContextChunk:
    content = f"Fallback content for query: {query}"
    return ContextChunk(
        id=f"{source}-0",
        content=content,
        metadata={"type": "fallback-result"},
        score=PLACEHOLDER_SCORE,
        tokens=estimate_tokens(content),
        source=source,
    )


def _merge_candidates(
    hybrid: list[ContextChunk], retrieved: list[ContextChunk], limit: int
) -> list[ContextChunk]:
    seen: set[str] = set()
    merged: list[ContextChunk] = []
    for chunk in [*hybrid, *retrieved]:
        key = content_hash(chunk.content)
        if key in seen:
            continue
        seen.add(key)
        merged.append(chunk)
    return merged[:limit]


def _confidence(chunks: list[ContextChunk]) -> float:
    if not chunks:
        return MIN_CONFIDENCE
    mean = sum(chunk.score for chunk in chunks) / len(chunks)
    return max(MIN_CONFIDENCE, min(MAX_CONFIDENCE, mean))


def _unique_sources(chunks: list[ContextChunk]) -> list[str]:
    return list(dict.fromkeys(chunk.source for chunk in chunks))


def _cacheable(run: _PipelineRun) -> bool:
    # Degraded output must not outlive the outage that produced it
    if not run.final_chunks or STAGE_RETRIEVAL in run.fallbacks:
        return False
    return not any(chunk.source in PLACEHOLDER_SOURCES for chunk in run.final_chunks)


class PipelineOrchestrator:
    """Runs the context pipeline with per-stage resilience.

    Stages run strictly in order: context-sizing, multi-stage-retrieval,
    hybrid-search, context-pruning, smart-caching. A cache lookup follows
    sizing; on a hit the retrieval and pruning stages are skipped.
    """

    def __init__(
        self,
        multi_stage: MultiStageRetrieval,
        hybrid_search: HybridSearch,
        pruner: ContextPruner,
        cache: ContextCache,
        resilience: ResilienceManager,
        llm: LanguageModelProvider | None = None,
        failure_policy: FailurePolicy = "graceful-degradation",
        memory: ConversationMemory | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            multi_stage: Staged retrieval service
            hybrid_search: Hybrid retrieval service
            pruner: Context pruner
            cache: Context cache owned by this orchestrator
            resilience: Resilience manager owned by this orchestrator
            llm: Optional language model turning context into prose
            failure_policy: "fail-fast" aborts on a failed critical stage,
                "graceful-degradation" continues with degraded output
            memory: Conversation memory (a default one if omitted)
        """
        self.multi_stage = multi_stage
        self.hybrid_search = hybrid_search
        self.pruner = pruner
        self.cache = cache
        self.resilience = resilience
        self.llm = llm
        self.failure_policy = failure_policy
        self.memory = memory if memory is not None else ConversationMemory()
        self._last_stats: list[ProcessingStat] = []

    @classmethod
    def from_settings(
        cls,
        settings: "Settings",
        vector_client: VectorSearchClient,
        embedding_service: EmbeddingService,
        llm: LanguageModelProvider | None = None,
    ) -> Self:
        """Build a fully wired orchestrator from application settings."""

        def token_counter(text: str) -> int:
            return get_token_count(
                text, settings.token_counting, settings.token_counter_model
            )

        rng = (
            random.Random(settings.expansion_seed)
            if settings.expansion_seed is not None
            else None
        )
        return cls(
            multi_stage=MultiStageRetrieval(
                vector_client,
                embedding_service,
                namespace=settings.vector_namespace,
                rng=rng,
                token_counter=token_counter,
            ),
            hybrid_search=HybridSearch(
                vector_client,
                embedding_service,
                namespace=settings.vector_namespace,
                token_counter=token_counter,
            ),
            pruner=ContextPruner(),
            cache=ContextCache(CacheConfig.from_settings(settings)),
            resilience=ResilienceManager(ResilienceConfig.from_settings(settings)),
            llm=llm,
            failure_policy=settings.failure_policy,
            memory=ConversationMemory(ConversationConfig.from_settings(settings)),
        )

    # -- lifecycle ---------------------------------------------------------

    def start(self) -> None:
        """Start background maintenance (cache and conversation sweeps)."""
        self.cache.start_cleanup_task()
        self.memory.start_cleanup_task()

    async def close(self) -> None:
        """Stop background maintenance."""
        await self.cache.close()
        await self.memory.close()

    async def __aenter__(self) -> Self:
        self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    # -- stage execution ---------------------------------------------------

    async def _run_stage(
        self,
        run: _PipelineRun,
        name: str,
        critical: bool,
        primary: Callable[[], Awaitable[T]],
        fallback: Callable[[], Awaitable[T]],
        generic: Callable[[], T] | None = None,
    ) -> T:
        """Execute one stage through the resilience manager.

        Raises:
            PipelineAbortedError: If a critical stage cannot produce output
            _Skipped: If a non-critical stage cannot produce output
        """
        start = time.perf_counter()
        used_fallback = False

        async def tracked_fallback() -> T:
            nonlocal used_fallback
            used_fallback = True
            return await fallback()

        def finish(success: bool, **details: Any) -> None:
            duration = (time.perf_counter() - start) * 1000
            run.timings[name] = run.timings.get(name, 0.0) + duration
            run.stats.append(ProcessingStat(name, duration, success, details))

        try:
            value = await self.resilience.execute(primary, tracked_fallback, name)
        except ContextManagementError as e:
            if critical and self.failure_policy == "fail-fast":
                finish(False, error=str(e))
                raise PipelineAbortedError(name, e) from e

            if generic is not None:
                try:
                    value = generic()
                except Exception as generic_error:
                    logger.error(
                        "Generic fallback for stage '%s' failed: %s", name, generic_error
                    )
                else:
                    logger.warning("Stage '%s' used generic fallback", name)
                    run.fallbacks.append(name)
                    run.completed.append(name)
                    run.steps.append(f"{name}-fallback")
                    finish(False, fallback="generic")
                    return value

            finish(False, error=str(e), skipped=not critical)
            if critical:
                raise PipelineAbortedError(name, e) from e
            run.steps.append(f"{name}-skipped")
            raise _Skipped(name) from e

        run.completed.append(name)
        if used_fallback:
            run.fallbacks.append(name)
            run.steps.append(f"{name}-fallback")
        else:
            run.steps.append(name)
        finish(True, fallback=used_fallback)
        return value

    def _record_step(self, run: _PipelineRun, name: str, start: float, **details: Any) -> None:
        duration = (time.perf_counter() - start) * 1000
        run.timings[name] = run.timings.get(name, 0.0) + duration
        run.stats.append(ProcessingStat(name, duration, True, details))
        run.steps.append(name)

    async def _size(self, run: _PipelineRun) -> None:
        query = run.query

        async def primary() -> tuple[QueryIntent, ContextSizeConfig]:
            return classify_intent(query), size_context(query)

        async def fallback() -> tuple[QueryIntent, ContextSizeConfig]:
            return QueryIntent.CASUAL, FALLBACK_SIZE

        run.intent, run.size = await self._run_stage(
            run,
            STAGE_SIZING,
            True,
            primary,
            fallback,
            generic=lambda: (QueryIntent.CASUAL, GENERIC_SIZE),
        )

    def _check_cache(self, run: _PipelineRun) -> None:
        start = time.perf_counter()
        try:
            cached = self.cache.get(run.query, run.size.max_tokens, run.intent)
        except Exception as e:
            logger.warning("Cache lookup failed, treating as miss: %s", e)
            cached = None

        if cached is not None:
            run.cache_hit = True
            run.final_chunks = cached
            run.candidates = cached
            self._record_step(run, "cache-hit", start, chunks=len(cached))
        else:
            self._record_step(run, "cache-miss", start)

    async def _retrieve(self, run: _PipelineRun) -> None:
        query, intent = run.query, run.intent

        async def primary() -> list[ContextChunk]:
            result = await self.multi_stage.search(query, intent)
            if result.all_stages_failed:
                errors = "; ".join(s.error or "" for s in result.stages)
                raise RetrievalError(f"All retrieval stages failed: {errors}")
            return result.final_chunks

        async def fallback() -> list[ContextChunk]:
            plain = await self.multi_stage.fallback_search(query)
            return plain.chunks or [_placeholder_chunk(query)]

        run.retrieved = await self._run_stage(
            run,
            STAGE_RETRIEVAL,
            True,
            primary,
            fallback,
            generic=lambda: [_placeholder_chunk(query, source="generic-fallback")],
        )

    async def _hybrid(self, run: _PipelineRun) -> None:
        query, intent, size = run.query, run.intent, run.size
        limit = max(size.chunk_count, 1) * 2

        async def primary() -> list[ContextChunk]:
            hybrid = await self.hybrid_search.search(
                query, top_k=size.chunk_count, size_config=size, intent=intent
            )
            return _merge_candidates(hybrid, run.retrieved, limit)

        async def fallback() -> list[ContextChunk]:
            return list(run.retrieved)

        try:
            run.candidates = await self._run_stage(run, STAGE_HYBRID, False, primary, fallback)
        except _Skipped:
            run.candidates = list(run.retrieved)

    async def _prune(self, run: _PipelineRun) -> None:
        query, intent, candidates = run.query, run.intent, run.candidates
        target = run.size.max_tokens

        async def primary() -> PruningResult:
            return self.pruner.prune(candidates, query, target, intent)

        async def fallback() -> PruningResult:
            kept = candidates[:FALLBACK_PRUNE_COUNT]
            original = sum(c.tokens for c in candidates)
            final = sum(c.tokens for c in kept)
            return PruningResult(
                pruned_chunks=kept,
                original_tokens=original,
                final_tokens=final,
                compression_rate=1 - final / original if original else 0.0,
                coherence_score=0.5,
                quality_score=0.5,
                processing_time=0.0,
            )

        try:
            run.pruning = await self._run_stage(run, STAGE_PRUNING, False, primary, fallback)
            run.final_chunks = run.pruning.pruned_chunks
        except _Skipped:
            run.final_chunks = list(candidates)

    async def _store(self, run: _PipelineRun) -> None:
        async def primary() -> bool:
            if run.cache_hit or not _cacheable(run):
                return False
            return self.cache.set(
                run.query,
                run.size.max_tokens,
                run.final_chunks,
                intent=run.intent,
                original_tokens=run.pruning.original_tokens if run.pruning else None,
            )

        async def fallback() -> bool:
            return False

        try:
            await self._run_stage(run, STAGE_CACHING, False, primary, fallback)
        except _Skipped:
            pass

    async def _generate(self, run: _PipelineRun, context: str) -> str:
        if not run.final_chunks:
            return NO_CONTEXT_RESPONSE
        if self.llm is None:
            return context

        llm = self.llm
        prompt = build_system_prompt(run.intent, context, run.query, run.history)
        start = time.perf_counter()

        async def primary() -> str:
            return await llm.generate(prompt, run.query)

        async def fallback() -> str:
            return context

        try:
            response = await self.resilience.execute(primary, fallback, STAGE_GENERATION)
        except ContextManagementError:
            logger.error("Response generation failed, returning context", exc_info=True)
            response = context
        run.timings[STAGE_GENERATION] = (time.perf_counter() - start) * 1000
        return response

    def _recall(self, run: _PipelineRun, conversation_id: str) -> None:
        run.history_messages = len(self.memory.get_relevant_history(conversation_id, run.query))
        run.history = self.memory.get_conversational_context(conversation_id, run.query)

    def _remember(
        self, run: _PipelineRun, conversation_id: str, response: str, started: float
    ) -> None:
        metadata = {
            "query_intent": run.intent.value,
            "context_tokens": sum(chunk.tokens for chunk in run.final_chunks),
            "response_time": (time.perf_counter() - started) * 1000,
        }
        self.memory.add_message(conversation_id, "user", run.query, metadata)
        self.memory.add_message(conversation_id, "assistant", response, metadata)

    # -- public API --------------------------------------------------------

    def _emergency_response(
        self, run: _PipelineRun, started: float, reason: str
    ) -> ChatResponse:
        return ChatResponse(
            response=f"Emergency fallback response for query: {run.query}",
            confidence=EMERGENCY_CONFIDENCE,
            processing_time=(time.perf_counter() - started) * 1000,
            metadata=ResponseMetadata(
                query_intent=run.intent.value,
                context_size=0,
                compression_rate=0.0,
                cache_hit=False,
                total_tokens=0,
                sources=[],
                processing_steps=[*run.steps, f"emergency:{reason}"],
                completed_stages=list(run.completed),
                fallbacks_used=list(run.fallbacks),
                emergency=True,
            ),
            performance=ResponsePerformance(),
        )

    async def process_query(
        self,
        user_query: str,
        conversation_id: str | None = None,
        user_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> ChatResponse:
        """Answer a query. Never raises.

        Args:
            user_query: Raw user query
            conversation_id: Optional conversation identifier; relevant earlier
                turns reach the language model and this turn is remembered
            user_id: Optional user identifier (logged only)
            metadata: Optional request metadata (logged only)

        Returns:
            A well-formed response; confidence 0.3 or below signals degraded output
        """
        started = time.perf_counter()
        query = user_query if isinstance(user_query, str) else str(user_query or "")
        run = _PipelineRun(query=query)
        logger.debug(
            "Processing query (conversation=%s, user=%s, metadata=%s)",
            conversation_id,
            user_id,
            metadata,
        )

        try:
            await self._size(run)
            self._check_cache(run)
            if not run.cache_hit:
                await self._retrieve(run)
                await self._hybrid(run)
                await self._prune(run)
            await self._store(run)

            if conversation_id:
                self._recall(run, conversation_id)
            context = "\n\n".join(chunk.content for chunk in run.final_chunks)
            response = await self._generate(run, context)
            if conversation_id:
                self._remember(run, conversation_id, response, started)
        except PipelineAbortedError as e:
            logger.error("Pipeline aborted at stage '%s'", e.stage, exc_info=True)
            self._last_stats = run.stats
            return self._emergency_response(run, started, e.stage)
        except Exception:
            logger.error("Unexpected pipeline failure", exc_info=True)
            self._last_stats = run.stats
            return self._emergency_response(run, started, "unexpected")

        self._last_stats = run.stats
        t = run.timings
        return ChatResponse(
            response=response,
            confidence=_confidence(run.final_chunks),
            processing_time=(time.perf_counter() - started) * 1000,
            metadata=ResponseMetadata(
                query_intent=run.intent.value,
                context_size=run.size.max_tokens,
                compression_rate=run.pruning.compression_rate if run.pruning else 0.0,
                cache_hit=run.cache_hit,
                total_tokens=sum(chunk.tokens for chunk in run.final_chunks),
                sources=_unique_sources(run.final_chunks),
                processing_steps=list(run.steps),
                completed_stages=list(run.completed),
                fallbacks_used=list(run.fallbacks),
                size_config=run.size,
                history_messages=run.history_messages,
            ),
            performance=ResponsePerformance(
                retrieval_time=t.get(STAGE_RETRIEVAL, 0.0) + t.get(STAGE_HYBRID, 0.0),
                compression_time=t.get(STAGE_PRUNING, 0.0),
                cache_time=(
                    t.get("cache-hit", 0.0) + t.get("cache-miss", 0.0) + t.get(STAGE_CACHING, 0.0)
                ),
                generation_time=t.get(STAGE_GENERATION, 0.0),
            ),
        )

    def get_processing_stats(self) -> list[ProcessingStat]:
        """Step timings of the most recent process_query call."""
        return list(self._last_stats)

    async def warmup_cache(self, queries: list[str]) -> int:
        """Pre-populate the cache by processing queries. Never raises.

        Returns:
            Number of queries that produced a non-emergency response
        """
        warmed = 0
        for query in queries:
            try:
                response = await self.process_query(query)
            except Exception:
                logger.warning("Warmup failed for %r", query, exc_info=True)
                continue
            if not response.metadata.emergency:
                warmed += 1
        logger.info("Cache warmup completed: %d/%d queries", warmed, len(queries))
        return warmed

    async def benchmark(self, queries: list[str], iterations: int = 10) -> BenchmarkResult:
        """Process every query `iterations` times and aggregate the results.

        A run counts as successful when its confidence exceeds 0.3.
        """
        samples: list[ChatResponse | None] = []
        for _ in range(max(iterations, 0)):
            for query in queries:
                try:
                    samples.append(await self.process_query(query))
                except Exception:
                    logger.warning("Benchmark run failed for %r", query, exc_info=True)
                    samples.append(None)

        if not samples:
            return BenchmarkResult(0.0, 0.0, 0.0, 0.0, 0.0, 0)

        n = len(samples)
        ok = [s for s in samples if s is not None]
        return BenchmarkResult(
            avg_response_time=sum(s.processing_time for s in ok) / n,
            avg_confidence=sum(s.confidence for s in ok) / n,
            avg_compression_rate=sum(s.metadata.compression_rate for s in ok) / n,
            cache_hit_rate=sum(1 for s in ok if s.metadata.cache_hit) / n,
            success_rate=sum(1 for s in ok if s.confidence > EMERGENCY_CONFIDENCE) / n,
            total_runs=n,
        )

    async def recover_cache(self) -> bool:
        """Validate the cache and rebuild it from a snapshot if corrupted.

        Raises:
            CacheCorruptionError: If the cache is still invalid afterwards
        """
        return await self.resilience.recover_from_corruption(
            self.cache,
            self.cache.validate,
            backup=self.cache.export_entries,
            restore=self.cache.import_entries,
        )

    def health(self) -> dict[str, Any]:
        """Cache statistics, resilience health and conversation statistics."""
        return {
            "cache": asdict(self.cache.get_stats()),
            "resilience": self.resilience.get_health_metrics(),
            "conversations": asdict(self.memory.get_stats()),
        }
