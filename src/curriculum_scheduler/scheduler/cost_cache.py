"""Bounded LRU cache of soft-cost scores keyed by schedule hash."""

import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable

from ..constants import DEFAULT_COST_CACHE_CAPACITY

logger = logging.getLogger(__name__)


@dataclass
class CacheStats:
    """Counters of a cost cache."""

    size: int = 0
    capacity: int = 0
    hits: int = 0
    misses: int = 0
    inserts: int = 0
    evictions: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total > 0 else 0.0

    @property
    def usage_rate(self) -> float:
        return self.size / self.capacity if self.capacity > 0 else 0.0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "size": self.size,
            "capacity": self.capacity,
            "hits": self.hits,
            "misses": self.misses,
            "inserts": self.inserts,
            "evictions": self.evictions,
            "hit_rate": self.hit_rate,
            "usage_rate": self.usage_rate,
        }


class CostCache:
    """Thread-safe LRU of schedule hash -> weighted soft cost.

    The cache is advisory: a miss means the caller recomputes the cost from
    the assignment set. A capacity of 0 disables caching.
    """

    def __init__(self, capacity: int = DEFAULT_COST_CACHE_CAPACITY) -> None:
        self.capacity = capacity
        self._entries: OrderedDict[int, float] = OrderedDict()
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._inserts = 0
        self._evictions = 0
        logger.debug(f"Created cost cache with capacity {capacity}")

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, schedule_hash: int) -> bool:
        with self._lock:
            return schedule_hash in self._entries

    def get(self, schedule_hash: int) -> float | None:
        """Look up a cached score, marking it as recently used."""
        with self._lock:
            score = self._entries.get(schedule_hash)
            if score is None:
                self._misses += 1
                return None
            self._entries.move_to_end(schedule_hash)
            self._hits += 1
            return score

    def put(self, schedule_hash: int, score: float) -> None:
        """Store a score, evicting the least recently used entry when full."""
        if self.capacity <= 0:
            return
        with self._lock:
            if schedule_hash in self._entries:
                self._entries.move_to_end(schedule_hash)
            elif len(self._entries) >= self.capacity:
                self._entries.popitem(last=False)
                self._evictions += 1
            self._entries[schedule_hash] = score
            self._inserts += 1

    def get_or_compute(self, schedule_hash: int, compute: Callable[[], float]) -> float:
        """Return the cached score or compute and store it.

        ``compute`` runs outside the lock, so two threads may compute the same
        score; both arrive at the same value.
        """
        score = self.get(schedule_hash)
        if score is not None:
            return score
        score = compute()
        self.put(schedule_hash, score)
        return score

    def clear(self) -> None:
        with self._lock:
            size = len(self._entries)
            self._entries.clear()
        logger.debug(f"Cleared cost cache ({size} entries)")

    def stats(self) -> CacheStats:
        """Snapshot of the cache counters."""
        with self._lock:
            return CacheStats(
                size=len(self._entries),
                capacity=self.capacity,
                hits=self._hits,
                misses=self._misses,
                inserts=self._inserts,
                evictions=self._evictions,
            )
