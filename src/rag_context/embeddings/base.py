"""Abstract base class for embedding providers."""

from abc import ABC, abstractmethod


class EmbeddingProvider(ABC):
    """Abstract base class for embedding providers.

    `embed` may return None to signal a soft failure (for example an
    exhausted upstream quota). Callers treat that as a retryable failure.
    """

    @abstractmethod
    async def embed(self, text: str, *, is_query: bool = False) -> list[float] | None:
        """Generate embedding for a single text.

        Args:
            text: Input text
            is_query: True for search queries, False for documents/passages.
                      Some models (like E5) require different prefixes.

        Returns:
            Embedding vector, or None when the provider could not produce one
        """
        pass

    @abstractmethod
    async def embed_batch(
        self, texts: list[str], *, is_query: bool = False
    ) -> list[list[float]]:
        """Generate embeddings for multiple texts.

        Args:
            texts: List of input texts
            is_query: True for search queries, False for documents/passages.

        Returns:
            List of embedding vectors
        """
        pass

    @abstractmethod
    def dimensions(self) -> int:
        """Get embedding vector dimensions.

        Returns:
            Number of dimensions
        """
        pass
