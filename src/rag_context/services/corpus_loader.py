"""Load a JSON corpus into a vector search client."""

import json
import logging
from pathlib import Path
from typing import Any

import aiofiles

from rag_context.exceptions import ValidationError
from rag_context.models.metadata import normalize_metadata
from rag_context.services.embedding_service import EmbeddingService
from rag_context.vectorstore.memory import InMemoryVectorSearchClient

logger = logging.getLogger(__name__)


def _parse_records(raw: Any, path: Path) -> list[dict[str, Any]]:
    if not isinstance(raw, list):
        raise ValidationError(f"Corpus {path} must contain a JSON list of records")

    records: list[dict[str, Any]] = []
    for index, item in enumerate(raw):
        if not isinstance(item, dict):
            raise ValidationError(f"Corpus record {index} is not an object")
        text = item.get("text") or item.get("content")
        if not isinstance(text, str) or not text.strip():
            logger.warning("Skipping corpus record %d without text", index)
            continue
        records.append(
            {
                "id": str(item.get("id", f"doc-{index}")),
                "text": text,
                "metadata": normalize_metadata(item.get("metadata") or {}),
            }
        )
    return records


async def load_corpus(
    path: str | Path,
    client: InMemoryVectorSearchClient,
    embedding_service: EmbeddingService,
    namespace: str,
    batch_size: int = 32,
) -> int:
    """Embed and index a JSON corpus.

    The file holds a list of `{"id", "text", "metadata"}` records.

    Args:
        path: Corpus file path
        client: Vector client to upsert into
        embedding_service: Service used to embed passages
        namespace: Target namespace
        batch_size: Number of passages embedded per provider call

    Returns:
        Number of indexed records

    Raises:
        ValidationError: If the file is not a list of record objects
        FileNotFoundError: If the file does not exist
    """
    corpus_path = Path(path)
    async with aiofiles.open(corpus_path, encoding="utf-8") as f:
        content = await f.read()

    try:
        raw = json.loads(content)
    except json.JSONDecodeError as e:
        raise ValidationError(f"Corpus {corpus_path} is not valid JSON: {e}") from e

    records = _parse_records(raw, corpus_path)
    indexed = 0
    for start in range(0, len(records), batch_size):
        batch = records[start : start + batch_size]
        vectors = await embedding_service.generate_batch([r["text"] for r in batch])
        indexed += await client.upsert(
            [
                (r["id"], r["text"], r["metadata"], vector)
                for r, vector in zip(batch, vectors, strict=True)
            ],
            namespace=namespace,
        )

    logger.info("Indexed %d corpus records from %s into '%s'", indexed, corpus_path, namespace)
    return indexed
