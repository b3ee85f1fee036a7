"""
Huginn Tiered Cache
-------------------
Bounded, process-lifetime caches fronting the expensive store and search paths.

Each tier is one capacity plus one eviction policy:
  - LRU:  evict the entry with the oldest last access
  - LFU:  evict the entry with the lowest access count, oldest access on ties
  - FIFO: evict the entry with the oldest insertion, regardless of access

Policies are strategy objects behind a single CacheTier interface so callers
never branch on the policy. Eviction and insertion happen under the tier lock
as one step, so concurrent puts cannot overshoot capacity.
"""

import time
import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, Hashable, Iterable, Optional, Set, Tuple

from huginn.core.config import CacheTierConfig, CachingConfig

logger = logging.getLogger("Huginn.Cache")

# put() with no ttl argument uses the tier default; ttl=None means no expiry
DEFAULT_TTL = object()


@dataclass
class CacheEntry:
    key: Hashable
    value: Any
    inserted_at: float
    last_access: float
    access_count: int = 1
    ttl: Optional[float] = None
    written_at: float = 0.0

    def expired(self, now: float) -> bool:
        return self.ttl is not None and now - self.written_at >= self.ttl


class EvictionPolicy:
    """Strategy interface. Entries live in insertion order inside an OrderedDict."""

    name = "base"

    def on_insert(self, entries: "OrderedDict[Hashable, CacheEntry]", key: Hashable) -> None:
        pass

    def on_access(self, entries: "OrderedDict[Hashable, CacheEntry]", key: Hashable) -> None:
        pass

    def on_replace(self, entries: "OrderedDict[Hashable, CacheEntry]", key: Hashable) -> None:
        pass

    def victim(self, entries: "OrderedDict[Hashable, CacheEntry]") -> Hashable:
        raise NotImplementedError


class LRUPolicy(EvictionPolicy):
    name = "lru"

    def on_access(self, entries, key):
        entries.move_to_end(key)

    def on_replace(self, entries, key):
        entries.move_to_end(key)

    def victim(self, entries):
        return next(iter(entries))


class LFUPolicy(EvictionPolicy):
    name = "lfu"

    def victim(self, entries):
        return min(entries.values(), key=lambda e: (e.access_count, e.last_access)).key


class FIFOPolicy(EvictionPolicy):
    # Replacing a key keeps its original position
    name = "fifo"

    def victim(self, entries):
        return next(iter(entries))


_POLICIES: Dict[str, Callable[[], EvictionPolicy]] = {
    "lru": LRUPolicy,
    "lfu": LFUPolicy,
    "fifo": FIFOPolicy,
}


def make_policy(name: str) -> EvictionPolicy:
    try:
        return _POLICIES[name.lower()]()
    except KeyError:
        raise ValueError(f"Unknown cache policy '{name}'") from None


class CacheTier:
    """
    One bounded cache.

    Misses never raise. A capacity of 0 (or a disabled tier) makes every
    put a no-op and every get a miss.
    """

    def __init__(
        self,
        name: str,
        capacity: int,
        policy: EvictionPolicy,
        default_ttl: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.capacity = max(0, int(capacity))
        self.policy = policy
        self.default_ttl = default_ttl
        self._clock = clock
        self._entries: "OrderedDict[Hashable, CacheEntry]" = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    @classmethod
    def from_config(
        cls, name: str, config: CacheTierConfig, clock: Callable[[], float] = time.monotonic
    ) -> "CacheTier":
        capacity = config.size if config.enabled else 0
        return cls(name, capacity, make_policy(config.policy), config.ttl_seconds, clock=clock)

    def get(self, key: Hashable) -> Tuple[Any, bool]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return None, False
            now = self._clock()
            if entry.expired(now):
                del self._entries[key]
                self.misses += 1
                return None, False
            entry.access_count += 1
            entry.last_access = now
            self.policy.on_access(self._entries, key)
            self.hits += 1
            return entry.value, True

    def put(self, key: Hashable, value: Any, ttl: Any = DEFAULT_TTL) -> None:
        if self.capacity == 0:
            return
        effective_ttl = self.default_ttl if ttl is DEFAULT_TTL else ttl
        with self._lock:
            now = self._clock()
            existing = self._entries.get(key)
            if existing is not None:
                existing.value = value
                existing.ttl = effective_ttl
                existing.last_access = now
                existing.access_count += 1
                existing.written_at = now
                self.policy.on_replace(self._entries, key)
                return

            if len(self._entries) >= self.capacity:
                self._purge_expired(now)
            while len(self._entries) >= self.capacity:
                victim = self.policy.victim(self._entries)
                del self._entries[victim]
                self.evictions += 1

            self._entries[key] = CacheEntry(
                key=key, value=value, inserted_at=now, last_access=now,
                ttl=effective_ttl, written_at=now,
            )
            self.policy.on_insert(self._entries, key)

    def invalidate(self, key: Hashable) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def invalidate_where(self, predicate: Callable[[Hashable], bool]) -> int:
        """Drop every entry whose key satisfies `predicate`. Returns the count dropped."""
        with self._lock:
            doomed = [k for k in self._entries if predicate(k)]
            for key in doomed:
                del self._entries[key]
            return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __contains__(self, key: Hashable) -> bool:
        with self._lock:
            return key in self._entries

    def size(self) -> int:
        with self._lock:
            return len(self._entries)

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "policy": self.policy.name,
                "capacity": self.capacity,
                "size": len(self._entries),
                "hits": self.hits,
                "misses": self.misses,
                "evictions": self.evictions,
            }

    def _purge_expired(self, now: float) -> None:
        expired = [k for k, e in self._entries.items() if e.expired(now)]
        for key in expired:
            del self._entries[key]


class TieredCache:
    """The three named tiers: recent chunks, search answers and query vectors."""

    def __init__(self, config: CachingConfig, clock: Callable[[], float] = time.monotonic):
        self.memory = CacheTier.from_config("memory", config.memory, clock=clock)
        self.query = CacheTier.from_config("query", config.query, clock=clock)
        self.vector = CacheTier.from_config("vector", config.vector, clock=clock)
        # repository -> query keys whose answer read from that repository
        self._consulted: Dict[str, Set[Hashable]] = {}
        self._index_lock = threading.Lock()
        logger.info(
            "Cache tiers ready: memory=%s/%d query=%s/%d vector=%s/%d",
            self.memory.policy.name, self.memory.capacity,
            self.query.policy.name, self.query.capacity,
            self.vector.policy.name, self.vector.capacity,
        )

    def put_query(self, key: Hashable, answer: Any, repositories: Iterable[str]) -> None:
        """Cache a search answer and remember every repository it was built from."""
        if self.query.capacity == 0:
            return
        self.query.put(key, answer)
        with self._index_lock:
            for repository in repositories:
                self._consulted.setdefault(repository, set()).add(key)
            if sum(len(keys) for keys in self._consulted.values()) > 2 * self.query.capacity:
                self._prune_index()

    def _prune_index(self) -> None:
        for repository in list(self._consulted):
            live = {k for k in self._consulted[repository] if k in self.query}
            if live:
                self._consulted[repository] = live
            else:
                del self._consulted[repository]

    def invalidate_repository(self, repository: str) -> int:
        """Drop cached search answers that read from a repository after a write to it."""
        with self._index_lock:
            keys = self._consulted.pop(repository, set())
        dropped = sum(1 for key in keys if self.query.invalidate(key))
        dropped += self.query.invalidate_where(
            lambda key: isinstance(key, tuple) and len(key) > 0 and key[0] == repository
        )
        if dropped:
            logger.debug("Invalidated %d cached searches for %s", dropped, repository)
        return dropped

    def stats(self) -> Dict[str, Dict[str, Any]]:
        return {
            "memory": self.memory.stats(),
            "query": self.query.stats(),
            "vector": self.vector.stats(),
        }
