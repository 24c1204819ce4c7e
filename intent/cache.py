"""
Bounded TTL cache for classification results and completion responses.

Eviction removes the entry with the oldest insertion timestamp. Reads never
refresh that timestamp, so the policy is insertion-ordered (FIFO), not true
access-recency LRU.
"""

import time
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, Optional, TypeVar

logger = logging.getLogger(__name__)

V = TypeVar("V")


@dataclass
class CacheEntry(Generic[V]):
    value: V
    inserted_at: float
    hits: int = 0


@dataclass
class CacheStats:
    size: int
    max_size: int
    ttl_seconds: float
    hits: int = 0
    misses: int = 0
    evictions: int = 0
    expirations: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total > 0 else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "size": self.size,
            "max_size": self.max_size,
            "ttl_seconds": self.ttl_seconds,
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
            "expirations": self.expirations,
            "hit_rate": round(self.hit_rate, 4),
        }


class BoundedCache(Generic[V]):
    """
    Key/value store with a time-to-live and a capacity bound.

    Args:
        max_size: Maximum number of live entries
        ttl_seconds: Entry lifetime measured from insertion
        name: Label used in log lines
        clock: Monotonic time source (injectable for tests)
    """

    def __init__(
        self,
        max_size: int = 1000,
        ttl_seconds: float = 3600.0,
        name: str = "cache",
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_size <= 0:
            raise ValueError(f"max_size must be positive, got {max_size}")
        if ttl_seconds <= 0:
            raise ValueError(f"ttl_seconds must be positive, got {ttl_seconds}")

        self.max_size = max_size
        self.ttl_seconds = ttl_seconds
        self.name = name
        self._clock = clock
        self._entries: Dict[str, CacheEntry[V]] = {}
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._expirations = 0

    def _expired(self, entry: CacheEntry[V], now: float) -> bool:
        return now - entry.inserted_at > self.ttl_seconds

    def get(self, key: str) -> Optional[V]:
        entry = self._entries.get(key)
        if entry is None:
            self._misses += 1
            return None

        if self._expired(entry, self._clock()):
            del self._entries[key]
            self._expirations += 1
            self._misses += 1
            return None

        entry.hits += 1
        self._hits += 1
        return entry.value

    def set(self, key: str, value: V) -> None:
        if key not in self._entries and len(self._entries) >= self.max_size:
            self._evict_oldest()

        self._entries[key] = CacheEntry(value=value, inserted_at=self._clock())

    def has(self, key: str) -> bool:
        entry = self._entries.get(key)
        if entry is None:
            return False
        if self._expired(entry, self._clock()):
            del self._entries[key]
            self._expirations += 1
            return False
        return True

    def invalidate(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def clear(self) -> int:
        count = len(self._entries)
        self._entries.clear()
        logger.info(f"🗑️ {self.name}: cleared {count} entries")
        return count

    def cleanup(self) -> int:
        """Purge every expired entry and return how many were removed."""
        now = self._clock()
        expired = [k for k, e in self._entries.items() if self._expired(e, now)]
        for key in expired:
            del self._entries[key]
        self._expirations += len(expired)
        return len(expired)

    def stats(self) -> CacheStats:
        return CacheStats(
            size=len(self._entries),
            max_size=self.max_size,
            ttl_seconds=self.ttl_seconds,
            hits=self._hits,
            misses=self._misses,
            evictions=self._evictions,
            expirations=self._expirations,
        )

    def _evict_oldest(self) -> None:
        oldest_key = min(self._entries, key=lambda k: self._entries[k].inserted_at)
        del self._entries[oldest_key]
        self._evictions += 1
        logger.debug(f"{self.name}: evicted oldest entry {oldest_key[:16]}")

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return self.has(key)
