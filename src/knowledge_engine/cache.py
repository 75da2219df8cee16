"""Time-bounded cache for similarity query results."""

from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, List, Sequence

from cachetools import TTLCache

from .observability import MetricsRecorder
from .vector_store import SearchOptions, SearchResult

logger = logging.getLogger(__name__)


def build_cache_key(entity_id: str, options: SearchOptions) -> str:
    """Return a canonical key covering the entity id and every search option.

    The entity id leads the key so truncated previews still identify the query.
    """

    payload = {"entity_id": entity_id, **options.to_dict()}
    return json.dumps(payload, separators=(",", ":"))


@dataclass(slots=True)
class CacheEntryStats:
    query: str
    age_seconds: float
    results_count: int


@dataclass(slots=True)
class CacheStats:
    size: int
    hits: int
    misses: int
    entries: List[CacheEntryStats] = field(default_factory=list)


class KnowledgeSearchCache:
    """Pass-through cache keyed by the full query signature.

    Entries live in a :class:`cachetools.TTLCache` and expire ``ttl_seconds``
    after they were stored. Once ``max_entries`` is reached the least recently
    used entry is evicted. All ages are reported in seconds, the TTL unit.
    """

    def __init__(
        self,
        ttl_seconds: float = 300.0,
        max_entries: int = 50,
        *,
        clock: Callable[[], float] = time.monotonic,
        metrics: MetricsRecorder | None = None,
    ) -> None:
        if ttl_seconds < 0:
            raise ValueError("ttl_seconds must not be negative")
        if max_entries < 1:
            raise ValueError("max_entries must be a positive integer")
        self._ttl = float(ttl_seconds)
        self._max_entries = max_entries
        self._clock = clock
        self._metrics = metrics
        self._entries: TTLCache[str, tuple[float, tuple[SearchResult, ...]]] = TTLCache(
            maxsize=max_entries, ttl=self._ttl, timer=clock
        )
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0

    @property
    def ttl_seconds(self) -> float:
        return self._ttl

    @property
    def max_entries(self) -> int:
        return self._max_entries

    def query(self, key: str) -> List[SearchResult] | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
            else:
                self._hits += 1
        if self._metrics is not None:
            self._metrics.increment("cache.hits" if entry is not None else "cache.misses")
        return list(entry[1]) if entry is not None else None

    def put(self, key: str, results: Sequence[SearchResult]) -> None:
        with self._lock:
            self._entries.expire()
            before = len(self._entries)
            added = 0 if key in self._entries else 1
            self._entries[key] = (self._clock(), tuple(results))
            evicted = before + added - len(self._entries)
        if evicted:
            logger.debug("cache.evicted entries=%s", evicted)
            if self._metrics is not None:
                self._metrics.increment("cache.evictions", value=evicted)

    def stats(self) -> CacheStats:
        with self._lock:
            self._entries.expire()
            now = self._clock()
            snapshot = sorted(self._entries.items(), key=lambda item: item[1][0])
            entries = [
                CacheEntryStats(query=key, age_seconds=max(0.0, now - created_at), results_count=len(results))
                for key, (created_at, results) in snapshot
            ]
            return CacheStats(size=len(entries), hits=self._hits, misses=self._misses, entries=entries)

    def clear(self) -> int:
        with self._lock:
            self._entries.expire()
            removed = len(self._entries)
            self._entries.clear()
        logger.info("cache.cleared entries=%s", removed)
        return removed

    def __len__(self) -> int:
        with self._lock:
            self._entries.expire()
            return len(self._entries)


__all__ = ["CacheEntryStats", "CacheStats", "KnowledgeSearchCache", "build_cache_key"]
