"""Tests for staged retrieval."""

import random
from unittest.mock import AsyncMock

import pytest

from conftest import NAMESPACE, PORTFOLIO_RECORDS, make_chunk
from rag_context.models.intent import QueryIntent, RetrievalStage
from rag_context.services.embedding_service import EmbeddingService
from rag_context.services.multi_stage_retrieval import (
    FALLBACK_CONFIDENCE,
    SYNONYMS,
    MultiStageRetrieval,
    apply_diversity_boost,
    match_to_chunk,
)
from rag_context.vectorstore.base import VectorMatch, VectorSearchClient


def match(match_id: str, text: str, score: float, **metadata) -> VectorMatch:
    return VectorMatch(id=match_id, text=text, metadata=metadata, score=score)


@pytest.fixture
def mock_vector_client() -> VectorSearchClient:
    """Vector client whose results are set per test."""
    client = AsyncMock(spec=VectorSearchClient)
    client.search.return_value = []
    return client


@pytest.fixture
def retrieval(
    mock_vector_client: VectorSearchClient, embedding_service: EmbeddingService
) -> MultiStageRetrieval:
    """Staged retrieval over the mock client."""
    return MultiStageRetrieval(mock_vector_client, embedding_service, namespace=NAMESPACE)


class TestStagePlanning:
    """Test stage configuration and query expansion."""

    @pytest.mark.parametrize(
        ("intent", "stages"),
        [
            (QueryIntent.FACTUAL, [RetrievalStage.FINE, RetrievalStage.MEDIUM]),
            (QueryIntent.CASUAL, [RetrievalStage.FINE]),
            (
                QueryIntent.SYNTHESIS,
                [RetrievalStage.FINE, RetrievalStage.MEDIUM, RetrievalStage.COARSE],
            ),
        ],
    )
    def test_stage_configs(
        self, retrieval: MultiStageRetrieval, intent: QueryIntent, stages: list[RetrievalStage]
    ):
        """Test each intent gets its stage plan."""
        assert [c.stage for c in retrieval.get_stage_configs(intent)] == stages

    def test_stage_thresholds_relax(self, retrieval: MultiStageRetrieval):
        """Test later stages fetch more with a lower similarity floor."""
        configs = retrieval.get_stage_configs(QueryIntent.EXPLORATION)

        assert [c.top_k for c in configs] == [4, 8, 12]
        assert [c.min_similarity for c in configs] == [0.8, 0.7, 0.6]

    def test_expand_query_without_rng(self, retrieval: MultiStageRetrieval):
        """Test the first synonym is used deterministically."""
        expanded = retrieval.expand_query("checkout", ("related", "context", "unknown"))
        assert expanded == "checkout similar background"

    def test_expand_query_with_seeded_rng(
        self, mock_vector_client: VectorSearchClient, embedding_service: EmbeddingService
    ):
        """Test seeded picks come from the synonym table and are reproducible."""
        first = MultiStageRetrieval(mock_vector_client, embedding_service, rng=random.Random(7))
        second = MultiStageRetrieval(mock_vector_client, embedding_service, rng=random.Random(7))

        expanded = first.expand_query("q", ("abilities",))

        assert expanded == second.expand_query("q", ("abilities",))
        assert expanded.split(" ", 1)[1] in SYNONYMS["abilities"]

    def test_expand_query_no_factors(self, retrieval: MultiStageRetrieval):
        """Test an empty factor list leaves the query untouched."""
        assert retrieval.expand_query("query", ()) == "query"


@pytest.mark.asyncio
class TestStagedSearch:
    """Test the retrieval state machine."""

    async def test_early_termination_after_fine(
        self, retrieval: MultiStageRetrieval, mock_vector_client: AsyncMock
    ):
        """Test a strong FINE stage stops the run."""
        mock_vector_client.search.return_value = [
            match("a", "first strong result", 0.95),
            match("b", "second strong result", 0.95),
            match("c", "third strong result", 0.95),
        ]

        result = await retrieval.search("overview of skills", QueryIntent.SYNTHESIS)

        assert len(result.stages) == 1
        assert result.best_stage == RetrievalStage.FINE
        assert mock_vector_client.search.call_count == 1
        assert len(result.final_chunks) == 3

    async def test_weak_results_run_all_stages(
        self, retrieval: MultiStageRetrieval, mock_vector_client: AsyncMock
    ):
        """Test weak stages continue to the coarsest pass."""
        mock_vector_client.search.return_value = [match("a", "weak result", 0.6)]

        result = await retrieval.search("overview of skills", QueryIntent.SYNTHESIS)

        assert [s.stage for s in result.stages] == [
            RetrievalStage.FINE,
            RetrievalStage.MEDIUM,
            RetrievalStage.COARSE,
        ]
        # Same content from every stage is merged once
        assert len(result.final_chunks) == 1

    async def test_merge_prefers_finer_stages(
        self, retrieval: MultiStageRetrieval, mock_vector_client: AsyncMock
    ):
        """Test the stage weight bonus ranks FINE chunks above slightly better MEDIUM ones."""
        mock_vector_client.search.side_effect = [
            [match("a", "fine grained answer", 0.6)],
            [match("a", "fine grained answer", 0.6), match("b", "medium answer", 0.65)],
        ]

        result = await retrieval.search("When did you join?", QueryIntent.FACTUAL)

        assert [c.id for c in result.final_chunks] == ["a", "b"]
        assert result.final_chunks[0].stage == "FINE"
        assert result.final_chunks[1].stage == "MEDIUM"

    async def test_stage_failure_is_isolated(
        self, retrieval: MultiStageRetrieval, mock_vector_client: AsyncMock
    ):
        """Test a failing stage is recorded and later stages still run."""
        mock_vector_client.search.side_effect = [
            RuntimeError("index offline"),
            [match("b", "medium answer", 0.7)],
        ]

        result = await retrieval.search("When did you join?", QueryIntent.FACTUAL)

        assert result.stages[0].error == "index offline"
        assert result.stages[1].error is None
        assert not result.all_stages_failed
        assert [c.id for c in result.final_chunks] == ["b"]

    async def test_all_stages_failed(
        self, retrieval: MultiStageRetrieval, mock_vector_client: AsyncMock
    ):
        """Test total failure is reported, not raised."""
        mock_vector_client.search.side_effect = RuntimeError("index offline")

        result = await retrieval.search("When did you join?", QueryIntent.FACTUAL)

        assert result.all_stages_failed
        assert result.final_chunks == []

    async def test_unavailable_embedding_fails_stage(
        self,
        retrieval: MultiStageRetrieval,
        mock_embedding_provider: AsyncMock,
    ):
        """Test a None embedding is a stage failure."""
        mock_embedding_provider.embed.side_effect = None
        mock_embedding_provider.embed.return_value = None

        result = await retrieval.search("hello", QueryIntent.CASUAL)

        assert result.all_stages_failed
        assert "no vector" in result.stages[0].error

    async def test_outer_failure_uses_plain_search(
        self,
        retrieval: MultiStageRetrieval,
        mock_vector_client: AsyncMock,
        monkeypatch: pytest.MonkeyPatch,
    ):
        """Test a broken merge falls back to a single plain search."""
        mock_vector_client.search.return_value = [match("a", "plain result", 0.8)]

        def broken_merge(results):
            raise RuntimeError("merge failed")

        monkeypatch.setattr(retrieval, "merge_stage_results", broken_merge)

        result = await retrieval.search("hello", QueryIntent.CASUAL)

        assert result.used_fallback
        assert result.confidence == FALLBACK_CONFIDENCE
        assert [c.id for c in result.final_chunks] == ["a"]
        assert mock_vector_client.search.await_args.kwargs["min_score"] == 0.7

    async def test_search_over_seeded_index(
        self, vector_client, embedding_service: EmbeddingService
    ):
        """Test retrieval against the in-memory index normalizes metadata."""
        retrieval = MultiStageRetrieval(vector_client, embedding_service, namespace=NAMESPACE)

        result = await retrieval.search(PORTFOLIO_RECORDS[0]["text"], QueryIntent.FACTUAL)

        top = result.final_chunks[0]
        assert top.id == "work-checkout"
        assert top.source == "checkout"
        assert top.content_type == "work"
        assert top.technologies == ["react", "typescript"]
        assert 0.0 <= result.confidence <= 1.0


class TestHelpers:
    """Test module-level helpers."""

    def test_match_to_chunk_uses_content_id_as_source(self):
        """Test camelCase metadata is normalized and drives the source."""
        chunk = match_to_chunk(
            match("m1", "text body", 0.5, contentType="contact", contentId="c-1"),
            RetrievalStage.MEDIUM,
        )

        assert chunk.source == "c-1"
        assert chunk.metadata["content_type"] == "contact"
        assert chunk.stage == "MEDIUM"
        assert chunk.tokens == 3

    def test_match_to_chunk_falls_back_to_id(self):
        """Test chunks without content_id use the match id as source."""
        chunk = match_to_chunk(match("m2", "text", 0.5))
        assert chunk.source == "m2"

    def test_diversity_boost_keeps_every_chunk(self):
        """Test a crowded group is reordered, never truncated."""
        chunks = [
            make_chunk(f"c{i}", f"Managed the team {i}", score=0.9 - i * 0.1, content_id="same")
            for i in range(5)
        ]

        boosted = apply_diversity_boost(chunks)

        assert [c.id for c in boosted] == ["c0", "c1", "c2", "c3", "c4"]

    def test_diversity_boost_moves_overflow_last(self):
        """Test chunks beyond three per group follow the other groups."""
        chunks = [
            make_chunk(f"a{i}", f"Managed the team {i}", score=0.95 - i * 0.05, content_id="a")
            for i in range(5)
        ]
        chunks += [
            make_chunk("b0", "Managed another team", score=0.7, content_id="b"),
            make_chunk("b1", "Managed another team again", score=0.6, content_id="b"),
        ]

        boosted = apply_diversity_boost(chunks)

        assert [c.id for c in boosted] == ["a0", "b0", "a1", "a2", "b1", "a3", "a4"]
        assert len(boosted) == len(chunks)

    def test_diversity_boost_puts_group_leaders_first(self):
        """Test the best chunk of each group leads."""
        chunks = [
            make_chunk("a1", "Managed the team", score=0.9, content_id="a"),
            make_chunk("a2", "Managed the team again", score=0.8, content_id="a"),
            make_chunk("b1", "Managed another team", score=0.7, content_id="b"),
        ]

        boosted = apply_diversity_boost(chunks)

        assert [c.id for c in boosted] == ["a1", "b1", "a2"]

    def test_confidence_bounds(self):
        """Test confidence is 0 without stages."""
        assert MultiStageRetrieval.calculate_confidence([]) == 0.0
