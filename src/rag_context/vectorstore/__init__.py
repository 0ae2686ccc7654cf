"""Vector search clients for RAG Context."""

from rag_context.vectorstore.base import VectorMatch, VectorSearchClient
from rag_context.vectorstore.memory import InMemoryVectorSearchClient, matches_filter

__all__ = [
    "InMemoryVectorSearchClient",
    "VectorMatch",
    "VectorSearchClient",
    "matches_filter",
]
