"""Attention-weighted context pruning.

Fits a chunk set to a token budget: score every chunk, greedily drop the
weakest, filter for diversity, then reorder for coherence.
"""

import functools
import logging
import math
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from rag_context.models.context import ContextChunk, PruningResult
from rag_context.models.intent import QueryIntent
from rag_context.services.query_intelligence import classify_intent
from rag_context.utils.text import extract_words, jaccard, word_set

logger = logging.getLogger(__name__)

SECONDS_PER_YEAR = 60 * 60 * 24 * 365

# Novelty compares each chunk against at most this many top-scored peers
NOVELTY_SAMPLE_SIZE = 50

HIGH_SCORE_THRESHOLD = 0.8

CONTENT_TYPE_IMPORTANCE: dict[str, float] = {
    "work": 0.9,
    "leadership": 0.8,
    "experiment": 0.7,
    "timeline": 0.6,
    "contact": 0.3,
}
DEFAULT_TYPE_IMPORTANCE = 0.5

CONTENT_TYPE_ORDER: dict[str, int] = {
    "work": 1,
    "leadership": 2,
    "experiment": 3,
    "timeline": 4,
    "contact": 5,
}
UNKNOWN_TYPE_ORDER = 999


@dataclass(frozen=True)
class AttentionWeights:
    """Weights of the five attention signals."""

    query: float
    content: float
    metadata: float
    position: float
    novelty: float


@dataclass(frozen=True)
class PruningConfig:
    """Intent-specific pruning parameters."""

    compression_rate: float
    preserve_coherence: bool
    attention_weights: AttentionWeights
    diversity_threshold: float


PRUNING_CONFIGS: dict[QueryIntent, PruningConfig] = {
    QueryIntent.FACTUAL: PruningConfig(
        0.4, True, AttentionWeights(0.4, 0.3, 0.2, 0.05, 0.05), 0.3
    ),
    QueryIntent.CASUAL: PruningConfig(
        0.6, False, AttentionWeights(0.5, 0.2, 0.1, 0.1, 0.1), 0.2
    ),
    QueryIntent.EXPLORATION: PruningConfig(
        0.3, True, AttentionWeights(0.3, 0.4, 0.1, 0.1, 0.1), 0.4
    ),
    QueryIntent.COMPARISON: PruningConfig(
        0.35, True, AttentionWeights(0.35, 0.3, 0.15, 0.1, 0.1), 0.5
    ),
    QueryIntent.SYNTHESIS: PruningConfig(
        0.25, True, AttentionWeights(0.25, 0.4, 0.15, 0.1, 0.1), 0.6
    ),
}


def parse_date(value: Any) -> datetime | None:
    """Parse a metadata date or timestamp into an aware datetime.

    Accepts epoch seconds or milliseconds and ISO strings (including bare
    "YYYY" and "YYYY-MM"). Returns None for anything else.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        seconds = value / 1000 if value > 1e11 else value
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        text = value.strip()
        if len(text) == 4 and text.isdigit():
            text = f"{text}-01-01"
        elif len(text) == 7 and text[4] == "-":
            text = f"{text}-01"
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


def _chunk_date(chunk: ContextChunk) -> datetime | None:
    return parse_date(chunk.metadata.get("timestamp")) or parse_date(chunk.metadata.get("date"))


def _empty_result() -> PruningResult:
    return PruningResult(
        pruned_chunks=[],
        original_tokens=0,
        final_tokens=0,
        compression_rate=0.0,
        coherence_score=1.0,
        quality_score=1.0,
        processing_time=0.0,
    )


class ContextPruner:
    """Fits chunk sets to a token budget using attention scoring."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        """Initialize the pruner.

        Args:
            clock: Wall clock in epoch seconds, used for recency decay
        """
        self.clock = clock

    @staticmethod
    def get_config(intent: QueryIntent) -> PruningConfig:
        """Pruning parameters for an intent (FACTUAL when unknown)."""
        return PRUNING_CONFIGS.get(intent, PRUNING_CONFIGS[QueryIntent.FACTUAL])

    # -- attention signals -------------------------------------------------

    @staticmethod
    def query_relevance(query_words: list[str], content: str) -> float:
        if not query_words:
            return 0.0
        lowered = content.lower()
        return sum(1 for w in query_words if w in lowered) / len(query_words)

    @staticmethod
    def content_quality(content: str) -> float:
        quality = min(1.0, len(content) / 200) * 0.5
        if "." in content:
            quality += 0.3
        if "?" in content or "!" in content:
            quality += 0.2
        return quality

    def metadata_importance(self, metadata: dict[str, Any]) -> float:
        """Score content type, featured flag, technologies and recency."""
        importance = 0.0

        content_type = metadata.get("content_type")
        if isinstance(content_type, str) and content_type:
            importance += CONTENT_TYPE_IMPORTANCE.get(content_type, DEFAULT_TYPE_IMPORTANCE)

        if metadata.get("featured"):
            importance += 0.2

        technologies = metadata.get("technologies")
        if isinstance(technologies, list):
            importance += min(0.3, len(technologies) * 0.1)

        when = parse_date(metadata.get("timestamp")) or parse_date(metadata.get("date"))
        if when is not None:
            years = (self.clock() - when.timestamp()) / SECONDS_PER_YEAR
            importance += max(0.0, 1 - years / 3) * 0.2

        return min(1.0, importance)

    @staticmethod
    def novelty_scores(chunks: list[ContextChunk], words: list[set[str]]) -> list[float]:
        """1 minus the average Jaccard overlap with other chunks.

        Each chunk is compared against at most NOVELTY_SAMPLE_SIZE of the
        highest-scored other chunks, which bounds the quadratic cost.
        """
        by_score = sorted(range(len(chunks)), key=lambda i: chunks[i].score, reverse=True)
        peers = by_score[: NOVELTY_SAMPLE_SIZE + 1]

        scores: list[float] = []
        for i in range(len(chunks)):
            overlaps = [jaccard(words[i], words[j]) for j in peers if j != i][
                :NOVELTY_SAMPLE_SIZE
            ]
            if not overlaps:
                scores.append(1.0)
                continue
            scores.append(max(0.0, 1 - sum(overlaps) / len(overlaps)))
        return scores

    def attention_scores(
        self, chunks: list[ContextChunk], query: str, weights: AttentionWeights
    ) -> list[float]:
        """Weighted attention score for every chunk, clamped to [0, 1]."""
        query_words = extract_words(query, min_length=2)
        words = [word_set(chunk.content, min_length=1) for chunk in chunks]
        novelty = self.novelty_scores(chunks, words)

        # Position is the rank in score order, best first
        ranking = sorted(range(len(chunks)), key=lambda i: chunks[i].score, reverse=True)
        rank_of = {index: rank for rank, index in enumerate(ranking)}
        n = len(chunks)

        scores: list[float] = []
        for i, chunk in enumerate(chunks):
            total = (
                self.query_relevance(query_words, chunk.content) * weights.query
                + self.content_quality(chunk.content) * weights.content
                + self.metadata_importance(chunk.metadata) * weights.metadata
                + max(0.0, 1 - rank_of[i] / n) * weights.position
                + novelty[i] * weights.novelty
            )
            scores.append(max(0.0, min(1.0, total)))
        return scores

    # -- selection steps ---------------------------------------------------

    @staticmethod
    def apply_diversity(chunks: list[ContextChunk], threshold: float) -> list[ContextChunk]:
        """Exclude chunks that add neither a new content type nor new technology.

        Chunks with a raw score above 0.8 are always kept. The best chunk
        survives even when nothing else does.
        """
        seen_types: set[str] = set()
        seen_tech: set[str] = set()
        kept: list[ContextChunk] = []

        for chunk in sorted(chunks, key=lambda c: c.score, reverse=True):
            content_type = chunk.content_type
            technologies = chunk.technologies
            type_diverse = content_type is None or content_type not in seen_types
            tech_diverse = any(t not in seen_tech for t in technologies)
            diversity = (0.5 if type_diverse else 0.0) + (0.5 if tech_diverse else 0.0)

            if diversity >= threshold or chunk.score > HIGH_SCORE_THRESHOLD:
                kept.append(chunk)
                if content_type:
                    seen_types.add(content_type)
                seen_tech.update(technologies)

        if not kept and chunks:
            kept.append(max(chunks, key=lambda c: c.score))
        return kept

    @staticmethod
    def order_for_coherence(chunks: list[ContextChunk]) -> list[ContextChunk]:
        """Order by content type priority, then newest first, then score.

        One chunk of every content type leads; the rest follow in order.
        """

        def compare(a: ContextChunk, b: ContextChunk) -> int:
            a_order = CONTENT_TYPE_ORDER.get(a.content_type or "", UNKNOWN_TYPE_ORDER)
            b_order = CONTENT_TYPE_ORDER.get(b.content_type or "", UNKNOWN_TYPE_ORDER)
            if a_order != b_order:
                return a_order - b_order
            a_date, b_date = _chunk_date(a), _chunk_date(b)
            if a_date is not None and b_date is not None and a_date != b_date:
                return -1 if a_date > b_date else 1
            if a.score != b.score:
                return -1 if a.score > b.score else 1
            return 0

        ordered = sorted(chunks, key=functools.cmp_to_key(compare))
        leaders: list[ContextChunk] = []
        rest: list[ContextChunk] = []
        seen: set[str] = set()
        for chunk in ordered:
            content_type = chunk.content_type
            if content_type and content_type not in seen:
                seen.add(content_type)
                leaders.append(chunk)
            else:
                rest.append(chunk)
        return leaders + rest

    # -- quality metrics ---------------------------------------------------

    @staticmethod
    def metadata_coherence(a: dict[str, Any], b: dict[str, Any]) -> float:
        coherence = 0.0
        factors = 0

        if a.get("content_type") and b.get("content_type"):
            coherence += 1.0 if a["content_type"] == b["content_type"] else 0.0
            factors += 1

        tech_a, tech_b = a.get("technologies"), b.get("technologies")
        if isinstance(tech_a, list) and isinstance(tech_b, list):
            union = set(tech_a) | set(tech_b)
            coherence += len(set(tech_a) & set(tech_b)) / len(union) if union else 0.0
            factors += 1

        date_a, date_b = parse_date(a.get("date")), parse_date(b.get("date"))
        if date_a is not None and date_b is not None:
            years = abs((date_a - date_b).total_seconds()) / SECONDS_PER_YEAR
            coherence += max(0.0, 1 - years / 2)
            factors += 1

        return coherence / factors if factors else 0.5

    def coherence_score(self, chunks: list[ContextChunk]) -> float:
        """Average pairwise word overlap and metadata coherence."""
        if len(chunks) <= 1:
            return 1.0

        words = [word_set(chunk.content, min_length=1) for chunk in chunks]
        total = 0.0
        comparisons = 0
        for i in range(len(chunks) - 1):
            for j in range(i + 1, len(chunks)):
                similarity = jaccard(words[i], words[j])
                meta = self.metadata_coherence(chunks[i].metadata, chunks[j].metadata)
                total += (similarity + meta) / 2
                comparisons += 1
        return max(0.0, min(1.0, total / comparisons))

    @staticmethod
    def _query_coverage(chunks: list[ContextChunk], query_words: list[str]) -> float:
        if not query_words:
            return 0.0
        covered = {
            word
            for chunk in chunks
            for word in query_words
            if word in chunk.content.lower()
        }
        return len(covered) / len(query_words)

    @staticmethod
    def _information_density(chunks: list[ContextChunk]) -> float:
        total_tokens = sum(chunk.tokens for chunk in chunks)
        if total_tokens <= 0:
            return 0.0
        unique: set[str] = set()
        for chunk in chunks:
            unique |= word_set(chunk.content, min_length=1)
        return len(unique) / total_tokens

    @staticmethod
    def _metadata_preservation(
        original: list[ContextChunk], pruned: list[ContextChunk]
    ) -> float:
        original_types = {c.content_type for c in original if c.content_type}
        pruned_types = {c.content_type for c in pruned if c.content_type}
        type_ratio = len(pruned_types) / len(original_types) if original_types else 1.0

        original_tech = {t for c in original for t in c.technologies}
        pruned_tech = {t for c in pruned for t in c.technologies}
        tech_ratio = len(pruned_tech) / len(original_tech) if original_tech else 1.0

        return (type_ratio + tech_ratio) / 2

    def quality_score(
        self, original: list[ContextChunk], pruned: list[ContextChunk], query: str
    ) -> float:
        """0.4 coverage retention + 0.3 density improvement + 0.3 metadata kept."""
        query_words = extract_words(query, min_length=2)
        original_coverage = self._query_coverage(original, query_words)
        pruned_coverage = self._query_coverage(pruned, query_words)
        coverage = min(1.0, pruned_coverage / original_coverage if original_coverage > 0 else 1.0)

        original_density = self._information_density(original)
        pruned_density = self._information_density(pruned)
        density = min(1.0, pruned_density / original_density if original_density > 0 else 1.0)

        preservation = min(1.0, self._metadata_preservation(original, pruned))
        return max(0.0, min(1.0, coverage * 0.4 + density * 0.3 + preservation * 0.3))

    # -- entry point -------------------------------------------------------

    def _fit_single(
        self, chunks: list[ContextChunk], attention: list[float], target_tokens: int
    ) -> ContextChunk:
        # Highest-attention chunk that fits, otherwise the smallest one
        ranked = sorted(range(len(chunks)), key=lambda i: attention[i], reverse=True)
        for index in ranked:
            if chunks[index].tokens <= target_tokens:
                return chunks[index]
        return min(chunks, key=lambda c: c.tokens)

    def _fallback(
        self,
        chunks: list[ContextChunk],
        original_tokens: int,
        target_tokens: int,
        start: float,
    ) -> PruningResult:
        ratio = target_tokens / original_tokens if original_tokens > 0 else 1.0
        kept = chunks[: max(1, math.ceil(len(chunks) * ratio))]
        final_tokens = sum(chunk.tokens for chunk in kept)
        return PruningResult(
            pruned_chunks=kept,
            original_tokens=original_tokens,
            final_tokens=final_tokens,
            compression_rate=1 - final_tokens / original_tokens if original_tokens else 0.0,
            coherence_score=0.5,
            quality_score=0.5,
            processing_time=(time.perf_counter() - start) * 1000,
        )

    def prune(
        self,
        chunks: list[ContextChunk],
        query: str,
        target_tokens: int,
        intent: QueryIntent | None = None,
    ) -> PruningResult:
        """Fit chunks to a token budget.

        Never raises: scoring failures degrade to proportional truncation.

        Args:
            chunks: Candidate chunks
            query: Raw user query
            target_tokens: Token budget
            intent: Pre-computed intent (classified from the query if omitted)

        Returns:
            Pruning result with quality metrics
        """
        start = time.perf_counter()
        if not chunks:
            return _empty_result()

        original_tokens = sum(chunk.tokens for chunk in chunks)
        if original_tokens <= target_tokens:
            return PruningResult(
                pruned_chunks=list(chunks),
                original_tokens=original_tokens,
                final_tokens=original_tokens,
                compression_rate=0.0,
                coherence_score=1.0,
                quality_score=1.0,
                processing_time=(time.perf_counter() - start) * 1000,
            )

        try:
            config = self.get_config(intent or classify_intent(query))
            attention = self.attention_scores(chunks, query, config.attention_weights)

            # Stable sort keeps input order among equal attention scores
            order = sorted(range(len(chunks)), key=lambda i: attention[i], reverse=True)
            kept = [chunks[i] for i in order]
            current = original_tokens
            while current > target_tokens and len(kept) > 1:
                current -= kept.pop().tokens

            if len(kept) == 1 and kept[0].tokens > target_tokens:
                kept = [self._fit_single(chunks, attention, target_tokens)]

            if config.diversity_threshold > 0:
                kept = self.apply_diversity(kept, config.diversity_threshold)

            if config.preserve_coherence:
                kept = self.order_for_coherence(kept)

            final_tokens = sum(chunk.tokens for chunk in kept)
            result = PruningResult(
                pruned_chunks=kept,
                original_tokens=original_tokens,
                final_tokens=final_tokens,
                compression_rate=1 - final_tokens / original_tokens,
                coherence_score=self.coherence_score(kept),
                quality_score=self.quality_score(chunks, kept, query),
                processing_time=(time.perf_counter() - start) * 1000,
            )
        except Exception as e:
            logger.warning("Context pruning failed, truncating proportionally: %s", e)
            return self._fallback(chunks, original_tokens, target_tokens, start)

        logger.debug(
            "Pruned %d -> %d chunks (%d -> %d tokens)",
            len(chunks),
            len(kept),
            original_tokens,
            final_tokens,
        )
        return result
