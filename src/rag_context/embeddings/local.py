"""Local embedding provider using sentence-transformers."""

import asyncio
from typing import Any

from rag_context.embeddings.base import EmbeddingProvider

# E5 model patterns that require prefixes
E5_MODEL_PATTERNS = ("e5-small", "e5-base", "e5-large", "e5-mistral")


class LocalEmbeddingProvider(EmbeddingProvider):
    """Embedding provider running a sentence-transformers model in process."""

    def __init__(self, model_name: str = "intfloat/multilingual-e5-small") -> None:
        """Initialize local embedding provider.

        Args:
            model_name: Model name to use (multilingual models cover Polish)
        """
        self.model_name = model_name
        self._model: Any | None = None
        self._dimensions: int | None = None
        self._is_e5_model = any(p in model_name.lower() for p in E5_MODEL_PATTERNS)

    def _add_prefix(self, text: str, is_query: bool) -> str:
        if not self._is_e5_model:
            return text
        return ("query: " if is_query else "passage: ") + text

    def _load_model(self) -> Any:
        if self._model is None:
            try:
                from sentence_transformers import SentenceTransformer
            except ImportError as e:
                raise ImportError(
                    "sentence-transformers is not installed. "
                    'Install with: pip install "rag-context[local]"'
                ) from e

            self._model = SentenceTransformer(self.model_name)
            self._dimensions = self._model.get_sentence_embedding_dimension()

        return self._model

    async def embed(self, text: str, *, is_query: bool = False) -> list[float] | None:
        """Generate embedding for a single text.

        Args:
            text: Input text
            is_query: True for search queries, False for documents/passages

        Returns:
            Embedding vector
        """
        if not text or not text.strip():
            raise ValueError("Text cannot be empty")

        model = self._load_model()
        processed = self._add_prefix(text, is_query)
        # Encoding is CPU-bound; keep the event loop responsive
        embedding = await asyncio.to_thread(
            model.encode, processed, convert_to_numpy=True, normalize_embeddings=True
        )
        return embedding.tolist()

    async def embed_batch(
        self, texts: list[str], *, is_query: bool = False
    ) -> list[list[float]]:
        """Generate embeddings for multiple texts.

        Args:
            texts: List of input texts
            is_query: True for search queries, False for documents/passages

        Returns:
            List of embedding vectors
        """
        if not texts:
            raise ValueError("Texts list cannot be empty")

        model = self._load_model()
        processed = [self._add_prefix(t, is_query) for t in texts]
        embeddings = await asyncio.to_thread(
            model.encode,
            processed,
            convert_to_numpy=True,
            normalize_embeddings=True,
            show_progress_bar=False,
        )
        return [emb.tolist() for emb in embeddings]

    def dimensions(self) -> int:
        """Get embedding vector dimensions.

        Raises:
            RuntimeError: If model fails to load properly
        """
        if self._dimensions is None:
            self._load_model()

        if self._dimensions is None:
            raise RuntimeError(
                f"Failed to determine embedding dimensions for model: {self.model_name}"
            )

        return self._dimensions
