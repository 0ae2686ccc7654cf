"""Vector search client interface."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any


@dataclass
class VectorMatch:
    """A single nearest-neighbor hit."""

    id: str
    text: str
    metadata: dict[str, Any] = field(default_factory=dict)
    score: float = 0.0


class VectorSearchClient(ABC):
    """Black-box nearest-neighbor search over embedded chunks.

    Implementations must tolerate empty results and score ties. Backend
    errors propagate to the caller.
    """

    @abstractmethod
    async def search(
        self,
        query_embedding: list[float],
        *,
        top_k: int,
        namespace: str,
        filter: dict[str, Any] | None = None,
        min_score: float | None = None,
    ) -> list[VectorMatch]:
        """Search the index.

        Args:
            query_embedding: Query vector
            top_k: Maximum number of matches
            namespace: Index namespace to search
            filter: Optional metadata filter (`$in`, `$gte`, `$lte`, `$eq`
                operators or plain equality per field)
            min_score: Optional similarity floor

        Returns:
            Matches ordered by descending score
        """
        pass
