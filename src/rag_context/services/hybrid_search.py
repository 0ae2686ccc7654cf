"""Hybrid retrieval blending vector similarity with lexical overlap."""

import logging
import re
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from rag_context.models.context import ContextChunk
from rag_context.models.intent import ContextSizeConfig, QueryIntent
from rag_context.services.embedding_service import EmbeddingService
from rag_context.services.multi_stage_retrieval import match_to_chunk
from rag_context.services.query_intelligence import classify_intent, size_context
from rag_context.utils.text import content_hash, extract_words
from rag_context.utils.token_counter import estimate_tokens
from rag_context.vectorstore.base import VectorSearchClient

logger = logging.getLogger(__name__)

BASE_VECTOR_WEIGHTS: dict[QueryIntent, float] = {
    QueryIntent.SYNTHESIS: 0.9,
    QueryIntent.EXPLORATION: 0.8,
    QueryIntent.COMPARISON: 0.7,
    QueryIntent.FACTUAL: 0.6,
    QueryIntent.CASUAL: 0.5,
}

CONTENT_TYPE_FILTERS: dict[QueryIntent, list[str]] = {
    QueryIntent.FACTUAL: ["work", "timeline"],
    QueryIntent.EXPLORATION: ["work", "experiment", "leadership"],
    QueryIntent.SYNTHESIS: ["work", "leadership", "experiment"],
    QueryIntent.COMPARISON: ["work", "timeline"],
}

TECH_KEYWORDS = (
    "react",
    "typescript",
    "javascript",
    "node",
    "aws",
    "docker",
    "kubernetes",
    "figma",
    "design",
    "ux",
    "ui",
    "frontend",
    "backend",
)

RECENCY_WORDS = ("recent", "latest", "current", "now")
RECENCY_WINDOW = timedelta(days=730)
MAX_PER_TYPE_SOURCE = 2

_SPECIFIC_TERMS_RE = re.compile(
    r"\b(specific|konkretnie|exactly|dokładnie|precisely|precyzyjnie)\b", re.IGNORECASE
)
_DIGIT_RE = re.compile(r"\d")


@dataclass(frozen=True)
class SearchWeights:
    """Blend weights for one hybrid query (they sum to 1)."""

    vector: float
    lexical: float


def calculate_dynamic_weights(
    query: str, intent: QueryIntent, diversity_boost: bool = False
) -> SearchWeights:
    """Derive vector/lexical blend weights for a query.

    Args:
        query: Raw user query
        intent: Classified intent
        diversity_boost: Whether the sizing config requested diversity

    Returns:
        Weights rounded to two decimals
    """
    vector = BASE_VECTOR_WEIGHTS.get(intent, 0.5)
    lexical = 1.0 - vector

    if _DIGIT_RE.search(query) or _SPECIFIC_TERMS_RE.search(query):
        lexical = min(0.6, lexical + 0.2)
        vector = 1.0 - lexical

    if len(query) > 100 or len(query.split()) > 15:
        vector = min(0.9, vector + 0.1)
        lexical = 1.0 - vector

    if diversity_boost:
        vector = min(0.8, vector + 0.05)
        lexical = max(0.2, lexical - 0.05)

    return SearchWeights(vector=round(vector, 2), lexical=round(lexical, 2))


def create_metadata_filters(
    query: str, intent: QueryIntent, now: datetime | None = None
) -> dict[str, Any]:
    """Derive vector backend metadata filters from the query.

    Args:
        query: Raw user query
        intent: Classified intent
        now: Reference time for the recency filter

    Returns:
        Filter document (empty when nothing applies)
    """
    lowered = query.lower()
    filters: dict[str, Any] = {}

    content_types = CONTENT_TYPE_FILTERS.get(intent)
    if content_types:
        filters["content_type"] = {"$in": list(content_types)}

    mentioned = [t for t in TECH_KEYWORDS if re.search(rf"\b{t}\b", lowered)]
    if mentioned:
        filters["technologies"] = {"$in": mentioned}

    if any(re.search(rf"\b{word}\b", lowered) for word in RECENCY_WORDS):
        reference = now or datetime.now(timezone.utc)
        filters["date"] = {"$gte": (reference - RECENCY_WINDOW).date().isoformat()}

    return filters


def lexical_score(query_words: list[str], text: str) -> float:
    """Fraction of query words present in the text."""
    if not query_words:
        return 0.0
    lowered = text.lower()
    present = sum(1 for word in query_words if word in lowered)
    return present / len(query_words)


def diversify(chunks: list[ContextChunk], limit: int) -> list[ContextChunk]:
    """Prefer chunks whose (content type, source) pair is not yet crowded.

    A pair already seen twice is skipped on the first pass. Skipped chunks
    refill any remaining slots in their original order.
    """
    selected: list[ContextChunk] = []
    skipped: list[ContextChunk] = []
    pair_counts: dict[tuple[str | None, str], int] = {}

    for chunk in chunks:
        pair = (chunk.content_type, chunk.source)
        if pair_counts.get(pair, 0) >= MAX_PER_TYPE_SOURCE:
            skipped.append(chunk)
            continue
        pair_counts[pair] = pair_counts.get(pair, 0) + 1
        selected.append(chunk)

    for chunk in skipped:
        if len(selected) >= limit:
            break
        selected.append(chunk)

    return selected[:limit]


class HybridSearch:
    """Single-pass vector plus lexical retrieval."""

    def __init__(
        self,
        vector_client: VectorSearchClient,
        embedding_service: EmbeddingService,
        namespace: str = "production",
        token_counter: Callable[[str], int] = estimate_tokens,
        use_metadata_filters: bool = True,
    ) -> None:
        """Initialize hybrid search.

        Args:
            vector_client: Nearest-neighbor search backend
            embedding_service: Service used to embed queries
            namespace: Vector namespace to search
            token_counter: Function estimating chunk token counts
            use_metadata_filters: Derive backend filters from the query
        """
        self.vector_client = vector_client
        self.embedding_service = embedding_service
        self.namespace = namespace
        self.token_counter = token_counter
        self.use_metadata_filters = use_metadata_filters

    async def search(
        self,
        query: str,
        top_k: int | None = None,
        size_config: ContextSizeConfig | None = None,
        intent: QueryIntent | None = None,
    ) -> list[ContextChunk]:
        """Retrieve and re-rank chunks for a query.

        Backend failures are logged and produce an empty list.

        Args:
            query: Raw user query
            top_k: Number of chunks to return (defaults to the sized chunk count)
            size_config: Pre-computed sizing (derived from the query if omitted)
            intent: Pre-computed intent (classified from the query if omitted)

        Returns:
            Chunks with blended scores, best first
        """
        start = time.perf_counter()
        try:
            intent = intent or classify_intent(query)
            size_config = size_config or size_context(query)
            limit = top_k if top_k is not None else size_config.chunk_count
            if limit <= 0:
                return []

            weights = calculate_dynamic_weights(query, intent, size_config.diversity_boost)
            filters = (
                create_metadata_filters(query, intent) if self.use_metadata_filters else {}
            )

            embedding = await self.embedding_service.generate(query, is_query=True)
            matches = await self.vector_client.search(
                embedding,
                top_k=limit * 2,
                namespace=self.namespace,
                filter=filters or None,
            )
            if not matches and filters:
                logger.debug("Filtered hybrid search returned nothing, retrying unfiltered")
                matches = await self.vector_client.search(
                    embedding, top_k=limit * 2, namespace=self.namespace
                )

            query_words = extract_words(query, min_length=2)
            chunks: list[ContextChunk] = []
            for match in matches:
                chunk = match_to_chunk(match, token_counter=self.token_counter)
                lexical = lexical_score(query_words, chunk.content)
                chunk.score = weights.vector * chunk.score + weights.lexical * lexical
                chunks.append(chunk)

            chunks.sort(key=lambda c: c.score, reverse=True)

            seen: set[str] = set()
            unique: list[ContextChunk] = []
            for chunk in chunks:
                key = content_hash(chunk.content)
                if key not in seen:
                    seen.add(key)
                    unique.append(chunk)

            results = diversify(unique, limit)
        except Exception as e:
            logger.warning("Hybrid search failed for query %r: %s", query[:80], e)
            return []

        logger.debug(
            "Hybrid search returned %d chunks (vector=%.2f, lexical=%.2f, %.1fms)",
            len(results),
            weights.vector,
            weights.lexical,
            (time.perf_counter() - start) * 1000,
        )
        return results
