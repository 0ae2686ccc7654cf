"""In-memory vector search client using numpy cosine similarity."""

import logging
from dataclasses import dataclass, field
from typing import Any

import numpy as np

from rag_context.vectorstore.base import VectorMatch, VectorSearchClient

logger = logging.getLogger(__name__)


@dataclass
class _Record:
    id: str
    text: str
    metadata: dict[str, Any]
    vector: np.ndarray = field(repr=False)


def _compare(value: Any, expected: Any, op: str) -> bool:
    try:
        if op == "$gte":
            return value >= expected
        if op == "$lte":
            return value <= expected
        if op == "$gt":
            return value > expected
        if op == "$lt":
            return value < expected
    except TypeError:
        # Incomparable types (e.g. a date string against a number) never match
        return False
    raise ValueError(f"Unsupported filter operator: {op}")


def _matches_condition(value: Any, condition: Any) -> bool:
    if not isinstance(condition, dict):
        if isinstance(value, list):
            return condition in value
        return value == condition

    for op, expected in condition.items():
        if op == "$in":
            candidates = list(expected)
            if isinstance(value, list):
                if not any(item in candidates for item in value):
                    return False
            elif value not in candidates:
                return False
        elif op == "$eq":
            if value != expected:
                return False
        elif op == "$ne":
            if value == expected:
                return False
        else:
            if value is None or not _compare(value, expected, op):
                return False
    return True


def matches_filter(metadata: dict[str, Any], filter: dict[str, Any] | None) -> bool:
    """Check a metadata map against a filter document.

    Args:
        metadata: Record metadata
        filter: Mapping of field name to a value or an operator dict

    Returns:
        True if every field condition holds
    """
    if not filter:
        return True
    return all(
        _matches_condition(metadata.get(key), condition)
        for key, condition in filter.items()
    )


class InMemoryVectorSearchClient(VectorSearchClient):
    """Vector index held in process memory.

    Scores are cosine similarities. Ties keep insertion order.
    """

    def __init__(self) -> None:
        self._namespaces: dict[str, dict[str, _Record]] = {}

    async def upsert(
        self,
        records: list[tuple[str, str, dict[str, Any], list[float]]],
        *,
        namespace: str,
    ) -> int:
        """Insert or replace records.

        Args:
            records: (id, text, metadata, vector) tuples
            namespace: Target namespace

        Returns:
            Number of records written
        """
        store = self._namespaces.setdefault(namespace, {})
        for record_id, text, metadata, vector in records:
            store[record_id] = _Record(
                id=record_id,
                text=text,
                metadata=dict(metadata),
                vector=np.asarray(vector, dtype=np.float32),
            )
        logger.debug("Upserted %d records into namespace '%s'", len(records), namespace)
        return len(records)

    async def delete(self, ids: list[str], *, namespace: str) -> int:
        """Delete records by id, returning how many existed."""
        store = self._namespaces.get(namespace, {})
        removed = 0
        for record_id in ids:
            if store.pop(record_id, None) is not None:
                removed += 1
        return removed

    def count(self, namespace: str) -> int:
        """Number of records in a namespace."""
        return len(self._namespaces.get(namespace, {}))

    async def search(
        self,
        query_embedding: list[float],
        *,
        top_k: int,
        namespace: str,
        filter: dict[str, Any] | None = None,
        min_score: float | None = None,
    ) -> list[VectorMatch]:
        """Rank records in a namespace by cosine similarity."""
        if top_k <= 0:
            return []

        candidates = [
            record
            for record in self._namespaces.get(namespace, {}).values()
            if matches_filter(record.metadata, filter)
        ]
        if not candidates:
            return []

        query = np.asarray(query_embedding, dtype=np.float32)
        matrix = np.vstack([record.vector for record in candidates])
        if matrix.shape[1] != query.shape[0]:
            raise ValueError(
                f"Query dimension {query.shape[0]} does not match index dimension "
                f"{matrix.shape[1]}"
            )

        norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
        dots = matrix @ query
        scores = np.divide(dots, norms, out=np.zeros_like(dots), where=norms > 0)

        # Stable sort keeps insertion order among equal scores
        order = np.argsort(-scores, kind="stable")
        matches: list[VectorMatch] = []
        for idx in order:
            score = float(scores[idx])
            if min_score is not None and score < min_score:
                continue
            record = candidates[int(idx)]
            matches.append(
                VectorMatch(
                    id=record.id,
                    text=record.text,
                    metadata=dict(record.metadata),
                    score=score,
                )
            )
            if len(matches) >= top_k:
                break
        return matches
