"""TTL plus priority-weighted LRU cache for pruned context."""

import asyncio
import contextlib
import copy
import json
import logging
import re
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any

from rag_context.exceptions import CacheCorruptionError
from rag_context.models.context import CacheEntry, CacheEntryMetadata, CacheStats, ContextChunk
from rag_context.models.intent import QueryIntent
from rag_context.services.query_intelligence import classify_intent
from rag_context.utils.text import normalize_text, sha256_hex

if TYPE_CHECKING:
    from rag_context.config.settings import Settings

logger = logging.getLogger(__name__)

BYTES_PER_MB = 1024 * 1024
CHUNK_OVERHEAD_BYTES = 200
MAX_ENTRY_SHARE = 0.5

INTENT_TTL_MULTIPLIERS: dict[QueryIntent, float] = {
    QueryIntent.FACTUAL: 2.0,
    QueryIntent.CASUAL: 0.5,
    QueryIntent.EXPLORATION: 1.5,
    QueryIntent.COMPARISON: 1.2,
    QueryIntent.SYNTHESIS: 1.8,
}


@dataclass
class CacheConfig:
    """Context cache configuration (times in seconds)."""

    max_memory_mb: float = 100.0
    default_ttl: float = 1800.0
    cleanup_interval: float = 300.0
    max_entries: int = 1000
    hit_rate_target: float = 0.6

    @classmethod
    def from_settings(cls, settings: "Settings") -> "CacheConfig":
        """Build cache configuration from application settings."""
        return cls(
            max_memory_mb=settings.cache_max_memory_mb,
            default_ttl=settings.cache_default_ttl_seconds,
            cleanup_interval=settings.cache_cleanup_interval_seconds,
            max_entries=settings.cache_max_entries,
            hit_rate_target=settings.cache_hit_rate_target,
        )


def estimate_memory(chunks: Iterable[ContextChunk]) -> int:
    """Estimate the footprint of a chunk list in bytes.

    Two bytes per content character, two per serialized metadata character,
    plus a fixed overhead per chunk. This is an estimate, not an accounting.
    """
    total = 0
    for chunk in chunks:
        total += len(chunk.content) * 2
        total += len(json.dumps(chunk.metadata, default=str)) * 2
        total += CHUNK_OVERHEAD_BYTES
    return total


def copy_chunks(chunks: Iterable[ContextChunk]) -> list[ContextChunk]:
    """Copy chunks together with their metadata maps."""
    return [replace(chunk, metadata=copy.deepcopy(chunk.metadata)) for chunk in chunks]


class ContextCache:
    """Cache of pruned chunk sets keyed by (intent, context size, query).

    All operations are synchronous so read-modify-write sequences never span
    an await. Entries are owned by the cache: chunks are copied on the way in
    and on the way out, so callers never hold a stored chunk.
    """

    def __init__(
        self,
        config: CacheConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize context cache.

        Args:
            config: Cache configuration (defaults if omitted)
            clock: Monotonic clock in seconds
        """
        self.config = config or CacheConfig()
        self.clock = clock

        self._entries: dict[str, CacheEntry] = {}
        self._memory_bytes = 0
        self.ttl_multiplier = 1.0

        # Statistics
        self.hit_count = 0
        self.miss_count = 0
        self.eviction_count = 0
        self.cleanup_count = 0
        self.rejected_count = 0

        self._cleanup_task: asyncio.Task[None] | None = None

    @property
    def max_memory_bytes(self) -> float:
        return self.config.max_memory_mb * BYTES_PER_MB

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    @staticmethod
    def make_key(query: str, context_size: int, intent: QueryIntent) -> str:
        """Build the cache key for a query.

        Args:
            query: Raw user query
            context_size: Token budget the context was pruned to
            intent: Query intent

        Returns:
            Key of the form `INTENT:size:hash`
        """
        digest = sha256_hex(normalize_text(query))[:16]
        return f"{intent.value}:{context_size}:{digest}"

    def calculate_ttl(self, intent: QueryIntent, chunks: list[ContextChunk]) -> float:
        """Entry TTL from intent, chunk quality and context size."""
        ttl = self.config.default_ttl * INTENT_TTL_MULTIPLIERS.get(intent, 1.0)

        if chunks:
            avg_score = sum(chunk.score for chunk in chunks) / len(chunks)
            if avg_score > 0.8:
                ttl *= 1.5
            elif avg_score < 0.5:
                ttl *= 0.7

        if sum(chunk.tokens for chunk in chunks) > 2000:
            ttl *= 1.3

        return ttl * self.ttl_multiplier

    # -- core operations ---------------------------------------------------

    def get(
        self, query: str, context_size: int, intent: QueryIntent | None = None
    ) -> list[ContextChunk] | None:
        """Look up cached chunks.

        Args:
            query: Raw user query
            context_size: Token budget the context was pruned to
            intent: Query intent (classified from the query if omitted)

        Returns:
            Copy of the cached chunk list, or None on miss or expiry
        """
        key = self.make_key(query, context_size, intent or classify_intent(query))
        entry = self._entries.get(key)
        if entry is None:
            self.miss_count += 1
            return None

        now = self.clock()
        if entry.is_expired(now):
            logger.warning("Evicting expired cache entry %s", key)
            self._remove(key)
            self.miss_count += 1
            return None

        entry.access_count += 1
        entry.last_accessed = now
        entry.metadata.hit_count += 1
        self.hit_count += 1
        return copy_chunks(entry.value)

    def set(
        self,
        query: str,
        context_size: int,
        chunks: list[ContextChunk],
        intent: QueryIntent | None = None,
        priority: float | None = None,
        original_tokens: int | None = None,
    ) -> bool:
        """Store chunks for a query.

        Args:
            query: Raw user query
            context_size: Token budget the context was pruned to
            chunks: Pruned chunks to cache
            intent: Query intent (classified from the query if omitted)
            priority: Eviction priority (defaults to the mean chunk score)
            original_tokens: Token count before pruning

        Returns:
            True if stored, False if rejected as too large
        """
        intent = intent or classify_intent(query)
        key = self.make_key(query, context_size, intent)
        return self._store(
            key=key,
            query=normalize_text(query),
            chunks=copy_chunks(chunks),
            intent=intent,
            priority=priority,
            original_tokens=original_tokens,
        )

    def _store(
        self,
        key: str,
        query: str,
        chunks: list[ContextChunk],
        intent: QueryIntent,
        priority: float | None,
        original_tokens: int | None,
    ) -> bool:
        size_bytes = estimate_memory(chunks)
        if size_bytes > self.max_memory_bytes * MAX_ENTRY_SHARE:
            self.rejected_count += 1
            logger.warning(
                "Rejected cache entry %s: %d bytes exceeds half of the memory budget",
                key,
                size_bytes,
            )
            return False

        if key in self._entries:
            self._remove(key)

        while self._entries and (
            len(self._entries) >= self.config.max_entries
            or self._memory_bytes + size_bytes > self.max_memory_bytes
        ):
            self._evict_one()

        final_tokens = sum(chunk.tokens for chunk in chunks)
        if priority is None:
            priority = sum(c.score for c in chunks) / len(chunks) if chunks else 0.0

        now = self.clock()
        self._entries[key] = CacheEntry(
            key=key,
            query=query,
            value=chunks,
            timestamp=now,
            ttl=self.calculate_ttl(intent, chunks),
            access_count=1,
            last_accessed=now,
            size_bytes=size_bytes,
            priority=priority,
            metadata=CacheEntryMetadata(
                query_intent=intent,
                original_tokens=original_tokens if original_tokens is not None else final_tokens,
                compressed=original_tokens is not None and original_tokens > final_tokens,
            ),
        )
        self._memory_bytes += size_bytes
        return True

    def _remove(self, key: str) -> CacheEntry | None:
        entry = self._entries.pop(key, None)
        if entry is not None:
            self._memory_bytes -= entry.size_bytes
        return entry

    def eviction_score(self, entry: CacheEntry, now: float) -> float:
        """Lower scores are evicted first."""
        age = max(now - entry.timestamp, 1.0)
        access_frequency = entry.access_count / age
        ms_since_access = (now - entry.last_accessed) * 1000
        return access_frequency * 1000 - ms_since_access + entry.priority * 1000

    def _evict_one(self) -> None:
        if not self._entries:
            return
        now = self.clock()
        victim = min(self._entries.values(), key=lambda e: self.eviction_score(e, now))
        self._remove(victim.key)
        self.eviction_count += 1
        logger.debug("Evicted cache entry %s", victim.key)

    def invalidate(self, pattern: str | None = None) -> int:
        """Remove entries.

        Args:
            pattern: Case-insensitive regex matched against the key, the
                normalized query and the concatenated chunk content. None
                clears everything. Invalid regexes are matched literally.

        Returns:
            Number of entries removed
        """
        if pattern is None:
            return self.clear()

        try:
            regex = re.compile(pattern, re.IGNORECASE)
        except re.error:
            regex = re.compile(re.escape(pattern), re.IGNORECASE)

        matching = [
            key
            for key, entry in self._entries.items()
            if regex.search(key)
            or regex.search(entry.query)
            or regex.search(" ".join(chunk.content for chunk in entry.value))
        ]
        for key in matching:
            self._remove(key)

        logger.info("Invalidated %d cache entries matching %r", len(matching), pattern)
        return len(matching)

    def clear(self) -> int:
        """Remove every entry, returning how many were removed."""
        count = len(self._entries)
        self._entries.clear()
        self._memory_bytes = 0
        return count

    def cleanup_expired(self) -> int:
        """Sweep expired entries, returning how many were removed."""
        now = self.clock()
        expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
        for key in expired:
            self._remove(key)
        if expired:
            self.cleanup_count += len(expired)
            logger.debug("Cleaned up %d expired cache entries", len(expired))
        return len(expired)

    def _over_capacity(self) -> bool:
        return (
            self._memory_bytes > self.max_memory_bytes
            or len(self._entries) > self.config.max_entries
        )

    def optimize(self) -> None:
        """Adapt TTLs to hit rate and memory pressure, then sweep and evict."""
        stats = self.get_stats()
        if stats.hit_rate < self.config.hit_rate_target:
            self.ttl_multiplier *= 1.2
        if stats.memory_usage_mb > self.config.max_memory_mb * 0.8:
            self.ttl_multiplier *= 0.9

        self.cleanup_expired()
        while self._entries and self._over_capacity():
            self._evict_one()

    def get_stats(self) -> CacheStats:
        """Get cache statistics."""
        total_requests = self.hit_count + self.miss_count
        return CacheStats(
            total_entries=len(self._entries),
            memory_usage_mb=self._memory_bytes / BYTES_PER_MB,
            hit_rate=self.hit_count / total_requests if total_requests > 0 else 0.0,
            total_hits=self.hit_count,
            total_misses=self.miss_count,
            eviction_count=self.eviction_count,
            cleanup_count=self.cleanup_count,
            rejected_count=self.rejected_count,
            ttl_multiplier=self.ttl_multiplier,
        )

    # -- warmup, backup and validation ---------------------------------------

    def warmup(self, entries: Iterable[dict[str, Any]]) -> int:
        """Pre-populate the cache.

        Args:
            entries: Dicts with `query`, `context_size`, `chunks` and an
                optional `intent`

        Returns:
            Number of entries stored (already cached queries are skipped)
        """
        stored = 0
        for item in entries:
            intent = item.get("intent")
            if intent is not None:
                intent = QueryIntent(intent)
            query = item["query"]
            size = int(item["context_size"])
            key = self.make_key(query, size, intent or classify_intent(query))
            if key in self._entries:
                continue
            if self.set(query, size, item["chunks"], intent=intent):
                stored += 1
        return stored

    def export_entries(self) -> list[dict[str, Any]]:
        """Snapshot entries for backup."""
        exported: list[dict[str, Any]] = []
        for key, entry in self._entries.items():
            _, size, _ = key.split(":", 2)
            exported.append(
                {
                    "key": key,
                    "query": entry.query,
                    "context_size": int(size),
                    "intent": entry.metadata.query_intent.value,
                    "chunks": copy_chunks(entry.value),
                    "priority": entry.priority,
                    "original_tokens": entry.metadata.original_tokens,
                }
            )
        return exported

    def import_entries(self, data: Iterable[dict[str, Any]]) -> int:
        """Restore entries from a snapshot with fresh timestamps and TTLs.

        Returns:
            Number of entries restored
        """
        restored = 0
        for item in data:
            intent = QueryIntent(item["intent"])
            key = item.get("key") or self.make_key(
                item["query"], int(item["context_size"]), intent
            )
            if self._store(
                key=key,
                query=item["query"],
                chunks=copy_chunks(item["chunks"]),
                intent=intent,
                priority=item.get("priority"),
                original_tokens=item.get("original_tokens"),
            ):
                restored += 1
        logger.info("Imported %d cache entries", restored)
        return restored

    def validate(self) -> None:
        """Check internal consistency.

        Raises:
            CacheCorruptionError: If keys, entry shapes or memory accounting
                are inconsistent
        """
        accounted = 0
        for key, entry in self._entries.items():
            if not isinstance(entry, CacheEntry):
                raise CacheCorruptionError(f"Entry {key!r} is not a CacheEntry")
            if entry.key != key:
                raise CacheCorruptionError(f"Entry key mismatch: {key!r} != {entry.key!r}")
            if not isinstance(entry.value, list) or not all(
                isinstance(chunk, ContextChunk) for chunk in entry.value
            ):
                raise CacheCorruptionError(f"Entry {key!r} holds malformed chunks")
            if entry.ttl <= 0:
                raise CacheCorruptionError(f"Entry {key!r} has non-positive TTL")
            accounted += entry.size_bytes

        if accounted != self._memory_bytes:
            raise CacheCorruptionError(
                f"Memory accounting drift: tracked {self._memory_bytes} bytes, "
                f"entries hold {accounted}"
            )

    # -- lifecycle ---------------------------------------------------------

    def start_cleanup_task(self) -> None:
        """Start the periodic expiry sweep on the running event loop."""
        if self._cleanup_task is not None and not self._cleanup_task.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop; cache cleanup task not started")
            return
        self._cleanup_task = loop.create_task(self._cleanup_loop())
        logger.info(
            "Cache cleanup task started (interval=%.0fs)", self.config.cleanup_interval
        )

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.cleanup_interval)
            try:
                self.cleanup_expired()
            except Exception:
                logger.exception("Cache cleanup sweep failed")

    async def close(self) -> None:
        """Stop the cleanup task."""
        task = self._cleanup_task
        self._cleanup_task = None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        logger.info("Cache cleanup task stopped")
