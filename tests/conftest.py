"""Pytest configuration and fixtures for rag-context tests."""

import re
import zlib
from typing import Any
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from rag_context.config.settings import Settings
from rag_context.embeddings.base import EmbeddingProvider
from rag_context.models.context import ContextChunk
from rag_context.services.context_cache import CacheConfig, ContextCache
from rag_context.services.context_pruner import ContextPruner
from rag_context.services.embedding_service import EmbeddingService
from rag_context.services.hybrid_search import HybridSearch
from rag_context.services.multi_stage_retrieval import MultiStageRetrieval
from rag_context.services.orchestrator import PipelineOrchestrator
from rag_context.services.resilience import ResilienceConfig, ResilienceManager
from rag_context.utils.token_counter import estimate_tokens
from rag_context.vectorstore.memory import InMemoryVectorSearchClient

DIMENSIONS = 64
NAMESPACE = "test"

_WORD_RE = re.compile(r"\w+")


def embed_text(text: str) -> list[float]:
    """Deterministic bag-of-words vector: texts sharing words are similar."""
    vector = [0.0] * DIMENSIONS
    for word in _WORD_RE.findall(text.lower()):
        if len(word) < 3:
            continue
        vector[zlib.crc32(word.encode("utf-8")) % DIMENSIONS] += 1.0
    if not any(vector):
        vector[0] = 1.0
    return vector


PORTFOLIO_RECORDS: list[dict[str, Any]] = [
    {
        "id": "work-checkout",
        "text": "Led the redesign of the checkout platform in React and TypeScript, "
        "cutting page load time by 40 percent.",
        "metadata": {
            "contentType": "work",
            "contentId": "checkout",
            "title": "Checkout redesign",
            "technologies": ["react", "typescript"],
            "date": "2023-05",
            "featured": True,
        },
    },
    {
        "id": "leadership-team",
        "text": "Managed a team of eight engineers and designers and introduced weekly "
        "design reviews for the platform.",
        "metadata": {
            "content_type": "leadership",
            "content_id": "team",
            "title": "Team lead",
            "date": "2022",
        },
    },
    {
        "id": "experiment-summarizer",
        "text": "Built an AI prototype that summarizes user research interviews with a "
        "language model.",
        "metadata": {
            "content_type": "experiment",
            "content_id": "summarizer",
            "title": "Research summarizer",
            "technologies": ["python", "ai"],
        },
    },
    {
        "id": "timeline-acme",
        "text": "Joined Acme Corp as senior frontend engineer in 2021.",
        "metadata": {"content_type": "timeline", "content_id": "acme", "date": "2021"},
    },
    {
        "id": "contact-email",
        "text": "Contact me by email for collaboration requests.",
        "metadata": {"content_type": "contact", "content_id": "contact"},
    },
    {
        "id": "work-banking",
        "text": "Designed the UX and UI of a banking mobile application used by two "
        "million customers.",
        "metadata": {
            "content_type": "work",
            "content_id": "banking",
            "title": "Banking app",
            "technologies": ["figma", "design"],
            "date": "2020-09",
        },
    },
]


class FakeClock:
    """Frozen clock advanced explicitly by tests."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_chunk(
    chunk_id: str,
    content: str,
    score: float = 0.5,
    tokens: int | None = None,
    **metadata: Any,
) -> ContextChunk:
    """Build a chunk with metadata passed as keyword arguments."""
    return ContextChunk(
        id=chunk_id,
        content=content,
        metadata=metadata,
        score=score,
        tokens=estimate_tokens(content) if tokens is None else tokens,
        source=metadata.get("content_id", chunk_id),
    )


@pytest.fixture
def test_settings() -> Settings:
    """Test configuration settings."""
    return Settings(
        embedding_provider="local",
        llm_provider="none",
        vector_namespace=NAMESPACE,
        max_retries=3,
        base_delay_seconds=0.001,
        max_delay_seconds=0.002,
        operation_timeout_seconds=1.0,
        fallback_timeout_seconds=1.0,
        log_level="DEBUG",
    )


@pytest.fixture
def fake_clock() -> FakeClock:
    """Advanceable clock for TTL and circuit breaker timing."""
    return FakeClock()


@pytest.fixture
def fast_resilience_config() -> ResilienceConfig:
    """Resilience configuration with millisecond delays."""
    return ResilienceConfig(
        max_retries=3,
        base_delay=0.001,
        max_delay=0.002,
        backoff_multiplier=2.0,
        circuit_breaker_threshold=5,
        circuit_breaker_timeout=30.0,
        operation_timeout=1.0,
        fallback_timeout=1.0,
    )


@pytest.fixture
def mock_embedding_provider() -> EmbeddingProvider:
    """Mock embedding provider returning bag-of-words vectors."""
    mock = AsyncMock(spec=EmbeddingProvider)

    async def embed_side_effect(text: str, *, is_query: bool = False) -> list[float]:
        return embed_text(text)

    mock.embed.side_effect = embed_side_effect

    async def embed_batch_side_effect(
        texts: list[str], *, is_query: bool = False
    ) -> list[list[float]]:
        return [embed_text(text) for text in texts]

    mock.embed_batch.side_effect = embed_batch_side_effect
    mock.dimensions.return_value = DIMENSIONS
    return mock


@pytest.fixture
def embedding_service(mock_embedding_provider: EmbeddingProvider) -> EmbeddingService:
    """Embedding service with mock provider."""
    return EmbeddingService(provider=mock_embedding_provider)


@pytest_asyncio.fixture
async def vector_client() -> InMemoryVectorSearchClient:
    """In-memory vector index seeded with portfolio records."""
    client = InMemoryVectorSearchClient()
    await client.upsert(
        [
            (record["id"], record["text"], record["metadata"], embed_text(record["text"]))
            for record in PORTFOLIO_RECORDS
        ],
        namespace=NAMESPACE,
    )
    return client


@pytest.fixture
def context_cache(fake_clock: FakeClock) -> ContextCache:
    """Context cache driven by the fake clock."""
    return ContextCache(CacheConfig(), clock=fake_clock)


@pytest.fixture
def resilience_manager(
    fast_resilience_config: ResilienceConfig, fake_clock: FakeClock
) -> ResilienceManager:
    """Resilience manager with fast retries and the fake clock."""
    return ResilienceManager(fast_resilience_config, clock=fake_clock)


@pytest.fixture
def orchestrator(
    vector_client: InMemoryVectorSearchClient,
    embedding_service: EmbeddingService,
    context_cache: ContextCache,
    resilience_manager: ResilienceManager,
) -> PipelineOrchestrator:
    """Fully wired orchestrator over the seeded index."""
    return PipelineOrchestrator(
        multi_stage=MultiStageRetrieval(vector_client, embedding_service, namespace=NAMESPACE),
        hybrid_search=HybridSearch(vector_client, embedding_service, namespace=NAMESPACE),
        pruner=ContextPruner(),
        cache=context_cache,
        resilience=resilience_manager,
    )
