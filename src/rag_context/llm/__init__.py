"""Language model providers for RAG Context."""

from rag_context.llm.base import LanguageModelProvider

__all__ = ["LanguageModelProvider"]
