"""OpenAI embedding provider."""

import logging
from typing import Any

from rag_context.embeddings.base import EmbeddingProvider

logger = logging.getLogger(__name__)


class OpenAIEmbeddingProvider(EmbeddingProvider):
    """OpenAI embedding provider."""

    def __init__(
        self, api_key: str, model: str = "text-embedding-3-small", dimensions: int = 1536
    ) -> None:
        """Initialize OpenAI embedding provider.

        Args:
            api_key: OpenAI API key
            model: Model name to use
            dimensions: Embedding dimensions
        """
        self.api_key = api_key
        self.model = model
        self._dimensions = dimensions
        self._client: Any | None = None

    def _get_client(self) -> Any:
        """Get the AsyncOpenAI client, created on first use.

        Returns:
            AsyncOpenAI client
        """
        if self._client is None:
            try:
                from openai import AsyncOpenAI
            except ImportError as e:
                raise ImportError(
                    "openai is not installed. " 'Install with: pip install "rag-context[openai]"'
                ) from e

            self._client = AsyncOpenAI(api_key=self.api_key)

        return self._client

    async def embed(self, text: str, *, is_query: bool = False) -> list[float] | None:
        """Generate embedding for a single text.

        Quota exhaustion is reported as None rather than raised, so the
        pipeline can treat it like any other retryable embedding failure.

        Args:
            text: Input text
            is_query: Unused; OpenAI models need no query prefix

        Returns:
            Embedding vector, or None when the quota is exhausted
        """
        if not text or not text.strip():
            raise ValueError("Text cannot be empty")

        client = self._get_client()
        from openai import RateLimitError

        try:
            response = await client.embeddings.create(input=[text], model=self.model)
        except RateLimitError as e:
            logger.warning("OpenAI embedding quota exhausted: %s", e)
            return None

        return response.data[0].embedding

    async def embed_batch(
        self, texts: list[str], *, is_query: bool = False
    ) -> list[list[float]]:
        """Generate embeddings for multiple texts.

        Args:
            texts: List of input texts
            is_query: Unused; OpenAI models need no query prefix

        Returns:
            List of embedding vectors
        """
        if not texts:
            raise ValueError("Texts list cannot be empty")

        client = self._get_client()
        response = await client.embeddings.create(input=texts, model=self.model)

        # Extract embeddings in the same order
        return [item.embedding for item in response.data]

    def dimensions(self) -> int:
        """Get embedding vector dimensions.

        Returns:
            Number of dimensions
        """
        return self._dimensions
