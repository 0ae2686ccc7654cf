"""Staged retrieval: FINE -> MEDIUM -> COARSE with early termination."""

import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from rag_context.models.context import ContextChunk, MultiStageResult, StageResult
from rag_context.models.intent import QueryIntent, RetrievalStage
from rag_context.models.metadata import normalize_metadata
from rag_context.services.embedding_service import EmbeddingService
from rag_context.services.query_intelligence import classify_intent, infer_topic
from rag_context.utils.text import content_hash
from rag_context.utils.token_counter import estimate_tokens
from rag_context.vectorstore.base import VectorMatch, VectorSearchClient

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StageConfig:
    """Parameters of one retrieval pass."""

    stage: RetrievalStage
    top_k: int
    min_similarity: float
    expansion_factors: tuple[str, ...] = field(default_factory=tuple)
    diversity_boost: bool = False


def _stage(
    stage: RetrievalStage,
    top_k: int,
    min_similarity: float,
    expansion: tuple[str, ...],
    diversity: bool,
) -> StageConfig:
    return StageConfig(stage, top_k, min_similarity, expansion, diversity)


FINE, MEDIUM, COARSE = RetrievalStage.FINE, RetrievalStage.MEDIUM, RetrievalStage.COARSE

STAGE_CONFIGS: dict[QueryIntent, list[StageConfig]] = {
    QueryIntent.FACTUAL: [
        _stage(FINE, 3, 0.85, (), False),
        _stage(MEDIUM, 6, 0.75, ("related", "context"), False),
    ],
    QueryIntent.CASUAL: [
        _stage(FINE, 2, 0.80, (), False),
    ],
    QueryIntent.EXPLORATION: [
        _stage(FINE, 4, 0.80, ("detailed", "process"), True),
        _stage(MEDIUM, 8, 0.70, ("related", "context", "methodology"), True),
        _stage(COARSE, 12, 0.60, ("background", "overview"), True),
    ],
    QueryIntent.COMPARISON: [
        _stage(FINE, 6, 0.75, ("contrast", "versus"), True),
        _stage(MEDIUM, 10, 0.65, ("different", "similar", "between"), True),
        _stage(COARSE, 14, 0.55, ("background", "context", "overall"), True),
    ],
    QueryIntent.SYNTHESIS: [
        _stage(FINE, 8, 0.75, ("abilities", "competencies"), True),
        _stage(MEDIUM, 12, 0.65, ("achievements", "projects", "results"), True),
        _stage(COARSE, 16, 0.55, ("background", "overview", "comprehensive"), True),
    ],
}

SYNONYMS: dict[str, tuple[str, ...]] = {
    "related": ("similar", "connected", "associated"),
    "context": ("background", "setting", "environment"),
    "detailed": ("specific", "particular", "precise"),
    "process": ("method", "approach", "technique"),
    "methodology": ("system", "framework", "strategy"),
    "contrast": ("difference", "comparison", "distinction"),
    "versus": ("against", "compared to", "relative to"),
    "different": ("distinct", "separate", "unique"),
    "similar": ("alike", "comparable", "equivalent"),
    "between": ("among", "within", "across"),
    "abilities": ("skills", "talents", "capabilities"),
    "competencies": ("expertise", "proficiency", "knowledge"),
    "achievements": ("accomplishments", "successes", "results"),
    "projects": ("work", "assignments", "tasks"),
    "results": ("outcomes", "impact", "effects"),
    "background": ("history", "experience", "foundation"),
    "overview": ("summary", "outline", "general"),
    "comprehensive": ("complete", "thorough", "extensive"),
}

STAGE_WEIGHTS: dict[RetrievalStage, int] = {FINE: 3, MEDIUM: 2, COARSE: 1}

# Early termination thresholds: (relevance strictly above, minimum found)
EARLY_STOP: dict[RetrievalStage, tuple[float, int]] = {
    FINE: (0.85, 3),
    MEDIUM: (0.75, 5),
}

MAX_PER_GROUP = 3
FALLBACK_TOP_K = 5
FALLBACK_MIN_SCORE = 0.7
FALLBACK_RELEVANCE = 0.5
FALLBACK_CONFIDENCE = 0.3


def match_to_chunk(
    match: VectorMatch,
    stage: RetrievalStage | None = None,
    token_counter: Callable[[str], int] = estimate_tokens,
) -> ContextChunk:
    """Convert a vector match into a context chunk."""
    metadata = normalize_metadata(match.metadata)
    source = metadata.get("content_id") or match.id
    return ContextChunk(
        id=match.id,
        content=match.text,
        metadata=metadata,
        score=float(match.score),
        tokens=token_counter(match.text),
        source=str(source),
        stage=stage.value if stage is not None else None,
    )


def calculate_relevance(chunks: list[ContextChunk]) -> float:
    """Mean score minus a variance penalty, clamped to [0, 1]."""
    if not chunks:
        return 0.0
    scores = [chunk.score for chunk in chunks]
    mean = sum(scores) / len(scores)
    variance = sum((s - mean) ** 2 for s in scores) / len(scores)
    normalized_variance = variance / (mean or 1.0)
    return max(0.0, min(1.0, mean - normalized_variance * 0.1))


def apply_diversity_boost(chunks: list[ContextChunk]) -> list[ContextChunk]:
    """Rebalance chunks across (source, topic) groups.

    Reorders without dropping: the best chunk of every group comes first,
    then up to two more per group by score, then the overflow of crowded
    groups by score.
    """
    if len(chunks) <= 1:
        return list(chunks)

    ranked = sorted(chunks, key=lambda c: c.score, reverse=True)
    group_counts: dict[tuple[str, str], int] = {}
    leaders: list[ContextChunk] = []
    followers: list[ContextChunk] = []
    overflow: list[ContextChunk] = []

    for chunk in ranked:
        topic = chunk.metadata.get("topic") or infer_topic(chunk.content)
        group = (chunk.source, str(topic))
        count = group_counts.get(group, 0)
        group_counts[group] = count + 1
        if count == 0:
            leaders.append(chunk)
        elif count < MAX_PER_GROUP:
            followers.append(chunk)
        else:
            overflow.append(chunk)

    return leaders + followers + overflow


class MultiStageRetrieval:
    """Bounded state machine over FINE, MEDIUM and COARSE retrieval passes."""

    def __init__(
        self,
        vector_client: VectorSearchClient,
        embedding_service: EmbeddingService,
        namespace: str = "production",
        rng: random.Random | None = None,
        token_counter: Callable[[str], int] = estimate_tokens,
    ) -> None:
        """Initialize multi-stage retrieval.

        Args:
            vector_client: Nearest-neighbor search backend
            embedding_service: Service used to embed (expanded) queries
            namespace: Vector namespace to search
            rng: Source of randomness for synonym picks. None picks the first
                synonym deterministically.
            token_counter: Function estimating chunk token counts
        """
        self.vector_client = vector_client
        self.embedding_service = embedding_service
        self.namespace = namespace
        self.rng = rng
        self.token_counter = token_counter

    def get_stage_configs(self, intent: QueryIntent) -> list[StageConfig]:
        """Stage plan for an intent."""
        return STAGE_CONFIGS.get(intent, STAGE_CONFIGS[QueryIntent.CASUAL])

    def expand_query(self, query: str, expansion_factors: tuple[str, ...]) -> str:
        """Append one synonym per known expansion factor."""
        if not expansion_factors:
            return query

        expanded = query
        for factor in expansion_factors:
            synonyms = SYNONYMS.get(factor)
            if not synonyms:
                continue
            synonym = self.rng.choice(synonyms) if self.rng is not None else synonyms[0]
            expanded += f" {synonym}"
        return expanded

    async def _search(
        self, query: str, stage: RetrievalStage, top_k: int, min_score: float
    ) -> list[ContextChunk]:
        embedding = await self.embedding_service.generate(query, is_query=True)
        matches = await self.vector_client.search(
            embedding, top_k=top_k, namespace=self.namespace, min_score=min_score
        )
        return [match_to_chunk(m, stage, self.token_counter) for m in matches]

    async def execute_stage(self, query: str, config: StageConfig) -> StageResult:
        """Run one retrieval pass.

        Failures are logged and reported through `StageResult.error` with no
        chunks, so later stages still run.
        """
        start = time.perf_counter()
        try:
            expanded = self.expand_query(query, config.expansion_factors)
            chunks = await self._search(
                expanded, config.stage, config.top_k, config.min_similarity
            )
            if config.diversity_boost:
                chunks = apply_diversity_boost(chunks)
            relevance = calculate_relevance(chunks)
        except Exception as e:
            logger.warning("Retrieval stage %s failed: %s", config.stage.value, e)
            return StageResult(
                stage=config.stage,
                chunks=[],
                total_found=0,
                relevance_score=0.0,
                processing_time=(time.perf_counter() - start) * 1000,
                error=str(e) or type(e).__name__,
            )

        elapsed = (time.perf_counter() - start) * 1000
        logger.debug(
            "Stage %s found %d chunks (relevance=%.3f, %.1fms)",
            config.stage.value,
            len(chunks),
            relevance,
            elapsed,
        )
        return StageResult(
            stage=config.stage,
            chunks=chunks,
            total_found=len(chunks),
            relevance_score=relevance,
            processing_time=elapsed,
        )

    @staticmethod
    def _should_stop(result: StageResult) -> bool:
        threshold = EARLY_STOP.get(result.stage)
        if threshold is None:
            return False
        min_relevance, min_found = threshold
        return result.relevance_score > min_relevance and result.total_found >= min_found

    @staticmethod
    def merge_stage_results(results: list[StageResult]) -> list[ContextChunk]:
        """Merge, deduplicate and rank chunks from all executed stages."""
        seen: set[str] = set()
        merged: list[ContextChunk] = []
        for result in results:
            for chunk in result.chunks:
                key = content_hash(chunk.content)
                if key in seen:
                    continue
                seen.add(key)
                if chunk.stage is None:
                    chunk.stage = result.stage.value
                merged.append(chunk)

        def rank(chunk: ContextChunk) -> float:
            weight = STAGE_WEIGHTS.get(RetrievalStage(chunk.stage), 1) if chunk.stage else 1
            return chunk.score + weight * 0.1

        merged.sort(key=rank, reverse=True)
        return merged

    @staticmethod
    def calculate_confidence(results: list[StageResult]) -> float:
        """Blend best-stage relevance, cross-stage agreement and efficiency."""
        if not results:
            return 0.0

        best = max(r.relevance_score for r in results)
        avg = sum(r.relevance_score for r in results) / len(results)
        # Results found per millisecond
        efficiency = sum(
            r.total_found / max(r.processing_time, 1e-3) for r in results
        ) / len(results)

        confidence = best * 0.6
        if len(results) > 1:
            confidence += avg * 0.2
        confidence += min(0.2, efficiency * 0.1)
        return max(0.0, min(1.0, confidence))

    async def fallback_search(self, query: str) -> StageResult:
        """Single plain vector search used when the staged run breaks."""
        start = time.perf_counter()
        try:
            chunks = await self._search(query, FINE, FALLBACK_TOP_K, FALLBACK_MIN_SCORE)
        except Exception as e:
            logger.error("Fallback retrieval failed: %s", e)
            return StageResult(
                stage=FINE,
                chunks=[],
                total_found=0,
                relevance_score=0.0,
                processing_time=(time.perf_counter() - start) * 1000,
                error=str(e) or type(e).__name__,
            )

        return StageResult(
            stage=FINE,
            chunks=chunks,
            total_found=len(chunks),
            relevance_score=FALLBACK_RELEVANCE,
            processing_time=(time.perf_counter() - start) * 1000,
        )

    async def search(self, query: str, intent: QueryIntent | None = None) -> MultiStageResult:
        """Run the staged retrieval for a query.

        Args:
            query: Raw user query
            intent: Pre-computed intent (classified from the query if omitted)

        Returns:
            Merged multi-stage result
        """
        start = time.perf_counter()
        intent = intent or classify_intent(query)

        try:
            results: list[StageResult] = []
            for config in self.get_stage_configs(intent):
                result = await self.execute_stage(query, config)
                results.append(result)
                if self._should_stop(result):
                    logger.debug("Early termination after stage %s", config.stage.value)
                    break

            best = results[0]
            for result in results[1:]:
                if result.relevance_score > best.relevance_score:
                    best = result

            return MultiStageResult(
                best_stage=best.stage,
                stages=results,
                final_chunks=self.merge_stage_results(results),
                total_processing_time=(time.perf_counter() - start) * 1000,
                confidence=self.calculate_confidence(results),
            )
        except Exception as e:
            logger.warning("Multi-stage retrieval failed, using plain search: %s", e)
            fallback = await self.fallback_search(query)
            for chunk in fallback.chunks:
                chunk.stage = FINE.value
            return MultiStageResult(
                best_stage=FINE,
                stages=[fallback],
                final_chunks=list(fallback.chunks),
                total_processing_time=(time.perf_counter() - start) * 1000,
                confidence=FALLBACK_CONFIDENCE,
                used_fallback=True,
            )
