"""Token counting utilities backed by tiktoken with a cheap estimate mode."""

import math
from functools import lru_cache
from typing import Literal

import tiktoken

TokenCountingMode = Literal["estimate", "tiktoken"]


@lru_cache(maxsize=8)
def _get_encoding(model: str) -> "tiktoken.Encoding":
    try:
        return tiktoken.encoding_for_model(model)
    except KeyError:
        # Fallback to cl100k_base for unknown models
        return tiktoken.get_encoding("cl100k_base")


def count_tokens(text: str, model: str = "gpt-4") -> int:
    """Count tokens using tiktoken (accurate method).

    Args:
        text: Text to count tokens for
        model: Model name for tokenizer

    Returns:
        Exact token count
    """
    if not text:
        return 0
    return len(_get_encoding(model).encode(text))


def estimate_tokens(text: str) -> int:
    """Estimate token count as one token per four characters.

    Args:
        text: Text to estimate tokens for

    Returns:
        Estimated token count (0 for empty text)
    """
    if not text:
        return 0
    return math.ceil(len(text) / 4)


def get_token_count(
    text: str, mode: TokenCountingMode = "estimate", model: str = "gpt-4"
) -> int:
    """Get token count in the configured mode.

    Args:
        text: Text to count tokens for
        mode: "estimate" for characters / 4, "tiktoken" for exact counts
        model: Model name for tokenizer (only used in tiktoken mode)

    Returns:
        Token count
    """
    if mode == "tiktoken":
        return count_tokens(text, model)
    return estimate_tokens(text)
