"""In-memory cache with TTL and LRU eviction, plus the cache-key helpers."""

import hashlib
import json
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Generic, TypeVar

from config.config_loader import CacheConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class CacheEntry(Generic[T]):
    value: T
    expires_at: float
    last_accessed: float


class ResponseCache(Generic[T]):
    """Bounded key/value store.

    Entries expire lazily when read. When ``set`` finds the cache full it
    first drops every expired entry, then, if still full, the entry with the
    oldest ``last_accessed`` time.
    """

    def __init__(
        self,
        ttl: float = 300.0,
        max_size: int = 1000,
        name: str = "cache",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.ttl = ttl
        self.max_size = max_size
        self._clock = clock
        self._entries: dict[str, CacheEntry[T]] = {}
        self._hits = 0
        self._misses = 0

    def get(self, key: str) -> T | None:
        entry = self._entries.get(key)
        if entry is None:
            self._misses += 1
            return None

        now = self._clock()
        if now > entry.expires_at:
            del self._entries[key]
            self._misses += 1
            return None

        entry.last_accessed = now
        self._hits += 1
        return entry.value

    def set(self, key: str, value: T, ttl: float | None = None) -> None:
        now = self._clock()
        if key not in self._entries and len(self._entries) >= self.max_size:
            self._evict_expired(now)
            if len(self._entries) >= self.max_size:
                self._evict_lru()

        self._entries[key] = CacheEntry(
            value=value,
            expires_at=now + (self.ttl if ttl is None else ttl),
            last_accessed=now,
        )

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    def __len__(self) -> int:
        self._evict_expired(self._clock())
        return len(self._entries)

    def stats(self) -> dict[str, float]:
        lookups = self._hits + self._misses
        return {
            "size": len(self),
            "max_size": self.max_size,
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": round(self._hits / lookups, 4) if lookups else 0.0,
        }

    def _evict_expired(self, now: float) -> None:
        expired = [key for key, entry in self._entries.items() if now > entry.expires_at]
        for key in expired:
            del self._entries[key]

    def _evict_lru(self) -> None:
        if not self._entries:
            return
        lru_key = min(self._entries, key=lambda k: self._entries[k].last_accessed)
        del self._entries[lru_key]
        logger.debug("Evicted LRU %s entry: %s", self.name, lru_key)


class CachePools:
    """The two independent pools: raw model answers and generated titles."""

    def __init__(self, config: CacheConfig, clock: Callable[[], float] = time.monotonic) -> None:
        self.responses: ResponseCache = ResponseCache(
            ttl=config.responses.ttl_sec, max_size=config.responses.max_size, name="responses", clock=clock
        )
        self.titles: ResponseCache[str] = ResponseCache(
            ttl=config.titles.ttl_sec, max_size=config.titles.max_size, name="titles", clock=clock
        )

    def clear(self) -> None:
        self.responses.clear()
        self.titles.clear()
        logger.info("All caches cleared")


def response_cache_key(model_key: str, messages: list[dict[str, str]]) -> str:
    """Identical (endpoint, payload) pairs map to the same key regardless of call order."""
    payload = json.dumps(messages, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    digest = hashlib.sha256(payload.encode("utf-8")).hexdigest()
    return f"response:{model_key}:{digest}"


def title_cache_key(question: str) -> str:
    return f"title:{question[:100]}"
