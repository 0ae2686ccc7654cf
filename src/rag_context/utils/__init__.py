"""Utility modules for RAG Context."""

from rag_context.utils.text import (
    content_hash,
    extract_words,
    jaccard,
    normalize_text,
    sha256_hex,
    word_set,
)
from rag_context.utils.token_counter import (
    count_tokens,
    estimate_tokens,
    get_token_count,
)

__all__ = [
    "content_hash",
    "count_tokens",
    "estimate_tokens",
    "extract_words",
    "get_token_count",
    "jaccard",
    "normalize_text",
    "sha256_hex",
    "word_set",
]
