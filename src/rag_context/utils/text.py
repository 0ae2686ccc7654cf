"""Text helpers shared by retrieval, pruning and caching."""

import hashlib
import re

_WORD_RE = re.compile(r"\w+", re.UNICODE)
_WHITESPACE_RE = re.compile(r"\s+")


def normalize_text(text: str) -> str:
    """Lowercase, trim and collapse whitespace."""
    return _WHITESPACE_RE.sub(" ", text.strip().lower())


def extract_words(text: str, min_length: int = 3) -> list[str]:
    """Extract lowercase words of at least `min_length` characters.

    Short words ("a", "to", "i") carry no signal for overlap scoring.
    """
    return [w for w in _WORD_RE.findall(text.lower()) if len(w) >= min_length]


def word_set(text: str, min_length: int = 3) -> set[str]:
    """Set of distinct words in text."""
    return set(extract_words(text, min_length))


def jaccard(a: set[str], b: set[str]) -> float:
    """Jaccard similarity of two word sets (0.0 when both are empty)."""
    if not a and not b:
        return 0.0
    union = len(a | b)
    return len(a & b) / union if union else 0.0


def content_hash(text: str, prefix_length: int = 100) -> str:
    """Cheap near-duplicate key: normalized prefix plus word count."""
    normalized = normalize_text(text)
    word_count = len(normalized.split()) if normalized else 0
    return f"{normalized[:prefix_length]}|{word_count}"


def sha256_hex(text: str) -> str:
    """SHA-256 hex digest of text."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()
