"""Embedding providers for RAG Context."""

from rag_context.embeddings.base import EmbeddingProvider

__all__ = ["EmbeddingProvider"]
