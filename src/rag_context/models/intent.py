"""Query intent and sizing models."""

from dataclasses import dataclass
from enum import Enum


class QueryIntent(str, Enum):
    """Coarse communicative purpose of a query."""

    SYNTHESIS = "SYNTHESIS"
    EXPLORATION = "EXPLORATION"
    COMPARISON = "COMPARISON"
    FACTUAL = "FACTUAL"
    CASUAL = "CASUAL"


class QueryComplexity(str, Enum):
    """Three-level complexity used to scale the context budget."""

    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class RetrievalStage(str, Enum):
    """Granularity of a retrieval pass, from most to least precise."""

    FINE = "FINE"
    MEDIUM = "MEDIUM"
    COARSE = "COARSE"


@dataclass(frozen=True)
class ContextSizeConfig:
    """Context budget derived from query intent and complexity."""

    max_tokens: int
    chunk_count: int
    diversity_boost: bool
    query_expansion: bool
    top_k_multiplier: float
