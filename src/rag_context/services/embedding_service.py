"""Embedding service for vector generation."""

import logging

from rag_context.embeddings.base import EmbeddingProvider
from rag_context.exceptions import EmbeddingUnavailableError

logger = logging.getLogger(__name__)


class EmbeddingService:
    """Service for generating embeddings."""

    def __init__(self, provider: EmbeddingProvider) -> None:
        """Initialize embedding service.

        Args:
            provider: Embedding provider instance
        """
        self.provider = provider

    async def generate(self, text: str, *, is_query: bool = False) -> list[float]:
        """Generate embedding for a single text.

        Args:
            text: Input text
            is_query: True for search queries, False for documents/passages.

        Returns:
            Embedding vector

        Raises:
            EmbeddingUnavailableError: If the provider returned no vector
        """
        embedding = await self.provider.embed(text, is_query=is_query)
        if embedding is None:
            raise EmbeddingUnavailableError(
                f"Embedding provider returned no vector for text of length {len(text)}"
            )
        return embedding

    async def generate_batch(
        self, texts: list[str], *, is_query: bool = False
    ) -> list[list[float]]:
        """Embed a batch of passages in one provider call.

        Args:
            texts: Non-empty list of input texts
            is_query: True for search queries, False for documents/passages.

        Returns:
            One vector per input text, in input order

        Raises:
            EmbeddingUnavailableError: If the provider dropped vectors
        """
        embeddings = await self.provider.embed_batch(texts, is_query=is_query)
        if len(embeddings) != len(texts):
            raise EmbeddingUnavailableError(
                f"Embedding provider returned {len(embeddings)} vectors for {len(texts)} texts"
            )
        return embeddings

    def dimensions(self) -> int:
        """Get embedding vector dimensions."""
        return self.provider.dimensions()
