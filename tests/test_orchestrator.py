"""Tests for the pipeline orchestrator."""

from unittest.mock import AsyncMock

import pytest

from conftest import PORTFOLIO_RECORDS
from rag_context.config.settings import Settings
from rag_context.embeddings.base import EmbeddingProvider
from rag_context.llm.base import LanguageModelProvider
from rag_context.services.embedding_service import EmbeddingService
from rag_context.services.orchestrator import (
    EMERGENCY_CONFIDENCE,
    NO_CONTEXT_RESPONSE,
    STAGE_CACHING,
    STAGE_HYBRID,
    STAGE_PRUNING,
    STAGE_RETRIEVAL,
    STAGE_SIZING,
    PipelineOrchestrator,
)
from rag_context.vectorstore.memory import InMemoryVectorSearchClient

ACME_QUERY = "Joined Acme Corp as senior frontend engineer in 2021."
CHECKOUT_QUERY = PORTFOLIO_RECORDS[0]["text"]


@pytest.mark.asyncio
class TestProcessQuery:
    """Test the happy path of process_query."""

    async def test_well_formed_response(self, orchestrator: PipelineOrchestrator):
        """Test a grounded query runs every stage."""
        response = await orchestrator.process_query(ACME_QUERY, conversation_id="c1")

        metadata = response.metadata
        assert "Joined Acme Corp" in response.response
        assert 0.1 <= response.confidence <= 1.0
        assert response.processing_time >= 0
        assert not metadata.emergency
        assert not metadata.cache_hit
        assert metadata.completed_stages == [
            STAGE_SIZING,
            STAGE_RETRIEVAL,
            STAGE_HYBRID,
            STAGE_PRUNING,
            STAGE_CACHING,
        ]
        assert metadata.fallbacks_used == []
        assert "cache-miss" in metadata.processing_steps
        assert "acme" in metadata.sources
        assert metadata.size_config is not None
        assert metadata.context_size == metadata.size_config.max_tokens

    async def test_token_budget_respected(self, orchestrator: PipelineOrchestrator):
        """Test the assembled context fits the sized budget."""
        for query in (ACME_QUERY, CHECKOUT_QUERY, "Give me an overview of your skills"):
            response = await orchestrator.process_query(query)

            assert response.metadata.total_tokens <= response.metadata.context_size

    async def test_second_query_hits_cache(self, orchestrator: PipelineOrchestrator):
        """Test identical queries are answered from the cache."""
        first = await orchestrator.process_query(ACME_QUERY)
        second = await orchestrator.process_query(ACME_QUERY)

        assert not first.metadata.cache_hit
        assert second.metadata.cache_hit
        assert second.response == first.response
        assert "cache-hit" in second.metadata.processing_steps
        assert STAGE_RETRIEVAL not in second.metadata.processing_steps
        assert len(orchestrator.cache) == 1

    async def test_stats_replaced_per_call(self, orchestrator: PipelineOrchestrator):
        """Test processing stats describe only the latest call."""
        await orchestrator.process_query(ACME_QUERY)
        first = [stat.stage for stat in orchestrator.get_processing_stats()]

        await orchestrator.process_query(ACME_QUERY)
        second = [stat.stage for stat in orchestrator.get_processing_stats()]

        assert STAGE_RETRIEVAL in first
        assert "cache-miss" in first
        assert second == [STAGE_SIZING, "cache-hit", STAGE_CACHING]

    async def test_empty_index_returns_no_context(
        self, embedding_service: EmbeddingService, test_settings: Settings
    ):
        """Test an empty index yields the no-context answer."""
        orchestrator = PipelineOrchestrator.from_settings(
            test_settings, InMemoryVectorSearchClient(), embedding_service
        )

        response = await orchestrator.process_query(ACME_QUERY)

        assert response.response == NO_CONTEXT_RESPONSE
        assert response.confidence == 0.1
        assert response.metadata.sources == []
        assert len(orchestrator.cache) == 0


@pytest.mark.asyncio
class TestDegradation:
    """Test failure handling and failure policies."""

    async def test_embedding_outage_degrades(
        self, orchestrator: PipelineOrchestrator, mock_embedding_provider: EmbeddingProvider
    ):
        """Test a broken embedding provider falls back to a placeholder."""
        mock_embedding_provider.embed.side_effect = RuntimeError("provider down")

        response = await orchestrator.process_query(ACME_QUERY)

        assert not response.metadata.emergency
        assert STAGE_RETRIEVAL in response.metadata.fallbacks_used
        assert f"{STAGE_RETRIEVAL}-fallback" in response.metadata.processing_steps
        assert response.metadata.sources == ["fallback"]
        assert response.response == f"Fallback content for query: {ACME_QUERY}"

    async def test_degraded_output_is_not_cached(
        self, orchestrator: PipelineOrchestrator, mock_embedding_provider: EmbeddingProvider
    ):
        """Test the answer after an outage comes from the recovered backend."""
        healthy_embed = mock_embedding_provider.embed.side_effect
        mock_embedding_provider.embed.side_effect = RuntimeError("provider down")

        degraded = await orchestrator.process_query(ACME_QUERY)

        assert degraded.metadata.sources == ["fallback"]
        assert len(orchestrator.cache) == 0

        mock_embedding_provider.embed.side_effect = healthy_embed
        recovered = await orchestrator.process_query(ACME_QUERY)

        assert not recovered.metadata.cache_hit
        assert "Joined Acme Corp" in recovered.response
        assert recovered.metadata.fallbacks_used == []
        assert len(orchestrator.cache) == 1

    async def test_generic_fallback_is_not_cached(self, orchestrator: PipelineOrchestrator):
        """Test generic fallback chunks never reach the cache."""
        orchestrator.multi_stage.search = AsyncMock(side_effect=RuntimeError("boom"))
        orchestrator.multi_stage.fallback_search = AsyncMock(side_effect=RuntimeError("boom"))

        await orchestrator.process_query(ACME_QUERY)

        assert len(orchestrator.cache) == 0

    async def test_generic_fallback_under_graceful_degradation(
        self, orchestrator: PipelineOrchestrator
    ):
        """Test a critical stage whose fallback fails uses the generic fallback."""
        orchestrator.multi_stage.search = AsyncMock(side_effect=RuntimeError("boom"))
        orchestrator.multi_stage.fallback_search = AsyncMock(side_effect=RuntimeError("boom"))

        response = await orchestrator.process_query(ACME_QUERY)

        assert not response.metadata.emergency
        assert "generic-fallback" in response.metadata.sources
        assert STAGE_RETRIEVAL in response.metadata.completed_stages
        assert STAGE_RETRIEVAL in response.metadata.fallbacks_used

    async def test_fail_fast_returns_emergency_response(
        self, orchestrator: PipelineOrchestrator
    ):
        """Test fail-fast aborts on a failed critical stage."""
        orchestrator.failure_policy = "fail-fast"
        orchestrator.multi_stage.search = AsyncMock(side_effect=RuntimeError("boom"))
        orchestrator.multi_stage.fallback_search = AsyncMock(side_effect=RuntimeError("boom"))

        response = await orchestrator.process_query(ACME_QUERY)

        assert response.metadata.emergency
        assert response.confidence == EMERGENCY_CONFIDENCE
        assert response.response == f"Emergency fallback response for query: {ACME_QUERY}"
        assert response.metadata.processing_steps[-1] == f"emergency:{STAGE_RETRIEVAL}"
        assert response.metadata.completed_stages == [STAGE_SIZING]

    async def test_hybrid_failure_passes_retrieved_through(
        self, orchestrator: PipelineOrchestrator
    ):
        """Test a broken hybrid stage keeps the staged retrieval results."""
        orchestrator.hybrid_search.search = AsyncMock(side_effect=RuntimeError("boom"))

        response = await orchestrator.process_query(ACME_QUERY)

        assert STAGE_HYBRID in response.metadata.fallbacks_used
        assert "Joined Acme Corp" in response.response

    async def test_pruning_failure_keeps_top_candidates(
        self, orchestrator: PipelineOrchestrator, monkeypatch: pytest.MonkeyPatch
    ):
        """Test a broken pruner keeps at most three candidates."""

        def broken(*args, **kwargs):
            raise RuntimeError("boom")

        monkeypatch.setattr(orchestrator.pruner, "prune", broken)

        response = await orchestrator.process_query("Give me an overview of your skills")

        assert STAGE_PRUNING in response.metadata.fallbacks_used
        assert len(response.metadata.sources) <= 3

    async def test_cache_failure_is_not_fatal(
        self, orchestrator: PipelineOrchestrator, monkeypatch: pytest.MonkeyPatch
    ):
        """Test a broken cache write does not affect the answer."""

        def broken(*args, **kwargs):
            raise RuntimeError("disk full")

        monkeypatch.setattr(orchestrator.cache, "set", broken)

        response = await orchestrator.process_query(ACME_QUERY)

        assert not response.metadata.emergency
        assert "Joined Acme Corp" in response.response


@pytest.mark.asyncio
class TestGeneration:
    """Test response generation with a language model."""

    async def test_llm_generates_response(self, orchestrator: PipelineOrchestrator):
        """Test the language model receives the assembled context."""
        llm = AsyncMock(spec=LanguageModelProvider)
        llm.generate.return_value = "You joined Acme in 2021."
        orchestrator.llm = llm

        response = await orchestrator.process_query(ACME_QUERY)

        assert response.response == "You joined Acme in 2021."
        system_prompt, query = llm.generate.call_args.args
        assert "Joined Acme Corp" in system_prompt
        assert query == ACME_QUERY
        assert response.performance.generation_time >= 0

    async def test_llm_failure_returns_context(self, orchestrator: PipelineOrchestrator):
        """Test generation falls back to the raw context."""
        llm = AsyncMock(spec=LanguageModelProvider)
        llm.generate.side_effect = RuntimeError("rate limited")
        orchestrator.llm = llm

        response = await orchestrator.process_query(ACME_QUERY)

        assert "Joined Acme Corp" in response.response
        assert not response.metadata.emergency


@pytest.mark.asyncio
class TestConversations:
    """Test conversation memory across queries."""

    async def test_turns_are_remembered(self, orchestrator: PipelineOrchestrator):
        """Test each answered query records a user and an assistant turn."""
        first = await orchestrator.process_query(ACME_QUERY, conversation_id="c1")
        second = await orchestrator.process_query(ACME_QUERY, conversation_id="c1")

        assert first.metadata.history_messages == 0
        assert second.metadata.history_messages == 2
        assert orchestrator.memory.get_session_summary("c1")["message_count"] == 4

    async def test_history_reaches_the_language_model(self, orchestrator: PipelineOrchestrator):
        """Test a follow-up prompt carries the earlier turns."""
        llm = AsyncMock(spec=LanguageModelProvider)
        llm.generate.return_value = "You joined Acme in 2021."
        orchestrator.llm = llm

        await orchestrator.process_query(ACME_QUERY, conversation_id="c1")
        first_prompt = llm.generate.call_args.args[0]
        await orchestrator.process_query(ACME_QUERY, conversation_id="c1")
        second_prompt = llm.generate.call_args.args[0]

        assert "CONVERSATION HISTORY" not in first_prompt
        assert "CONVERSATION HISTORY:" in second_prompt
        assert f"- USER (just now): {ACME_QUERY}" in second_prompt
        assert "- ASSISTANT (just now): You joined Acme in 2021." in second_prompt

    async def test_conversations_are_isolated(self, orchestrator: PipelineOrchestrator):
        """Test history never leaks between conversations."""
        await orchestrator.process_query(ACME_QUERY, conversation_id="c1")

        other = await orchestrator.process_query(ACME_QUERY, conversation_id="c2")

        assert other.metadata.history_messages == 0

    async def test_anonymous_queries_are_not_remembered(
        self, orchestrator: PipelineOrchestrator
    ):
        """Test queries without a conversation id leave memory empty."""
        await orchestrator.process_query(ACME_QUERY)

        assert len(orchestrator.memory) == 0

    async def test_emergency_responses_are_not_remembered(
        self, orchestrator: PipelineOrchestrator
    ):
        """Test aborted queries leave no turns behind."""
        orchestrator.failure_policy = "fail-fast"
        orchestrator.multi_stage.search = AsyncMock(side_effect=RuntimeError("boom"))
        orchestrator.multi_stage.fallback_search = AsyncMock(side_effect=RuntimeError("boom"))

        response = await orchestrator.process_query(ACME_QUERY, conversation_id="c1")

        assert response.metadata.emergency
        assert "c1" not in orchestrator.memory


@pytest.mark.asyncio
class TestMaintenance:
    """Test warmup, benchmark, recovery and health."""

    async def test_warmup_cache(self, orchestrator: PipelineOrchestrator):
        """Test warmup processes every query into the cache."""
        warmed = await orchestrator.warmup_cache([ACME_QUERY, CHECKOUT_QUERY])

        assert warmed == 2
        assert len(orchestrator.cache) == 2

    async def test_benchmark(self, orchestrator: PipelineOrchestrator):
        """Test repeated runs are aggregated."""
        result = await orchestrator.benchmark([ACME_QUERY], iterations=2)

        assert result.total_runs == 2
        assert result.cache_hit_rate == 0.5
        assert 0.0 <= result.success_rate <= 1.0
        assert result.avg_confidence > 0

    async def test_benchmark_without_samples(self, orchestrator: PipelineOrchestrator):
        """Test an empty benchmark reports zeros."""
        result = await orchestrator.benchmark([], iterations=5)

        assert result.total_runs == 0
        assert result.avg_response_time == 0.0
        assert result.success_rate == 0.0

    async def test_recover_cache(self, orchestrator: PipelineOrchestrator):
        """Test a drifted cache is rebuilt and a healthy one left alone."""
        await orchestrator.process_query(ACME_QUERY)

        assert await orchestrator.recover_cache() is False

        orchestrator.cache._memory_bytes += 42
        assert await orchestrator.recover_cache() is True
        assert len(orchestrator.cache) == 1

    async def test_health(self, orchestrator: PipelineOrchestrator):
        """Test health combines cache, resilience and conversation state."""
        await orchestrator.process_query(ACME_QUERY)

        health = orchestrator.health()

        assert health["cache"]["total_entries"] == 1
        assert health["resilience"]["overall_health"] == "healthy"
        assert STAGE_RETRIEVAL in health["resilience"]["operations"]
        assert health["conversations"]["total_sessions"] == 0

    async def test_context_manager_runs_cleanup_task(
        self,
        test_settings: Settings,
        vector_client: InMemoryVectorSearchClient,
        embedding_service: EmbeddingService,
    ):
        """Test the async context manager starts and stops maintenance."""
        orchestrator = PipelineOrchestrator.from_settings(
            test_settings, vector_client, embedding_service
        )

        async with orchestrator as running:
            assert running.cache._cleanup_task is not None
            assert running.memory._cleanup_task is not None
            response = await running.process_query(ACME_QUERY, conversation_id="c1")
            assert not response.metadata.emergency

        assert orchestrator.cache._cleanup_task is None
        assert orchestrator.memory._cleanup_task is None
        assert len(orchestrator.memory) == 0
        assert orchestrator.failure_policy == "graceful-degradation"
