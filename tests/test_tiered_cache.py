"""Tests for huginn.cache.tiered: bounded cache tiers and eviction policies."""

import random
import threading

import pytest

from huginn.cache.tiered import (
    CacheTier,
    FIFOPolicy,
    LFUPolicy,
    LRUPolicy,
    TieredCache,
    make_policy,
)
from huginn.core.config import CacheTierConfig, CachingConfig


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _tier(policy, capacity=3, ttl=None, clock=None):
    clock = clock or FakeClock()
    return CacheTier("test", capacity, policy, default_ttl=ttl, clock=clock), clock


class TestLRU:
    def test_evicts_least_recently_used(self):
        tier, clock = _tier(LRUPolicy())
        for key in "abc":
            tier.put(key, key.upper())
            clock.advance(1)
        tier.get("a")
        tier.put("d", "D")
        assert tier.get("b") == (None, False)
        assert tier.get("a") == ("A", True)
        assert tier.get("c") == ("C", True)

    def test_replace_refreshes_recency(self):
        tier, _ = _tier(LRUPolicy())
        for key in "abc":
            tier.put(key, 1)
        tier.put("a", 2)
        tier.put("d", 1)
        assert tier.get("b") == (None, False)
        assert tier.get("a") == (2, True)


class TestLFU:
    def test_evicts_least_frequently_used(self):
        tier, clock = _tier(LFUPolicy())
        for key in "abc":
            tier.put(key, key)
            clock.advance(1)
        tier.get("a")
        tier.get("a")
        tier.get("c")
        tier.put("d", "d")
        assert tier.get("b") == (None, False)
        assert tier.size() == 3

    def test_tie_broken_by_oldest_access(self):
        tier, clock = _tier(LFUPolicy())
        tier.put("a", 1)
        clock.advance(1)
        tier.put("b", 1)
        clock.advance(1)
        tier.put("c", 1)
        clock.advance(1)
        tier.put("d", 1)
        assert tier.get("a") == (None, False)
        assert tier.get("b")[1] is True


class TestFIFO:
    def test_evicts_oldest_insertion_regardless_of_access(self):
        tier, _ = _tier(FIFOPolicy())
        for key in "abc":
            tier.put(key, key)
        for _ in range(5):
            tier.get("a")
        tier.put("d", "d")
        assert tier.get("a") == (None, False)

    def test_replace_does_not_reset_insertion_order(self):
        tier, _ = _tier(FIFOPolicy())
        for key in "abc":
            tier.put(key, 1)
        tier.put("a", 2)
        tier.put("d", 1)
        assert tier.get("a") == (None, False)
        assert tier.get("b") == (1, True)


class TestTTL:
    def test_expired_entry_is_absent_and_evicted(self):
        tier, clock = _tier(LRUPolicy(), ttl=10)
        tier.put("a", 1)
        clock.advance(11)
        assert tier.get("a") == (None, False)
        assert tier.size() == 0

    def test_per_put_ttl_overrides_default(self):
        tier, clock = _tier(LRUPolicy(), ttl=100)
        tier.put("a", 1, ttl=5)
        clock.advance(6)
        assert tier.get("a") == (None, False)

    def test_explicit_none_ttl_never_expires(self):
        tier, clock = _tier(LRUPolicy(), ttl=10)
        tier.put("pinned", 1, ttl=None)
        tier.put("default", 2)
        clock.advance(3600)
        assert tier.get("pinned") == (1, True)
        assert tier.get("default") == (None, False)

    def test_expired_entries_are_purged_before_evicting_live_ones(self):
        tier, clock = _tier(LRUPolicy(), ttl=10)
        tier.put("old", 1)
        clock.advance(5)
        tier.put("b", 1)
        tier.put("c", 1)
        clock.advance(6)
        tier.put("d", 1)
        assert tier.get("b")[1] and tier.get("c")[1] and tier.get("d")[1]


class TestCapacity:
    @pytest.mark.parametrize("policy", ["lru", "lfu", "fifo"])
    def test_size_never_exceeds_capacity(self, policy):
        tier, clock = _tier(make_policy(policy), capacity=7)
        rng = random.Random(42)
        for _ in range(500):
            key = rng.randint(0, 30)
            if rng.random() < 0.3:
                tier.get(key)
            else:
                tier.put(key, key)
            clock.advance(0.01)
            assert tier.size() <= 7

    def test_concurrent_puts_do_not_overshoot(self):
        tier = CacheTier("threads", 50, LRUPolicy())

        def writer(offset):
            for i in range(500):
                tier.put((offset, i), i)

        threads = [threading.Thread(target=writer, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert tier.size() == 50

    def test_zero_capacity_is_a_noop(self):
        tier, _ = _tier(LRUPolicy(), capacity=0)
        tier.put("a", 1)
        assert tier.get("a") == (None, False)
        assert tier.size() == 0

    def test_disabled_tier_from_config(self):
        tier = CacheTier.from_config("off", CacheTierConfig(enabled=False, size=10))
        tier.put("a", 1)
        assert tier.size() == 0


class TestInvalidation:
    def test_invalidate(self):
        tier, _ = _tier(LRUPolicy())
        tier.put("a", 1)
        assert tier.invalidate("a") is True
        assert tier.invalidate("a") is False
        assert tier.get("a") == (None, False)

    def test_invalidate_repository_only_touches_query_tier_entries_for_that_repo(self):
        cache = TieredCache(CachingConfig())
        cache.query.put(("api", "h1", 5), ["x"])
        cache.query.put(("api", "h2", 5), ["y"])
        cache.query.put(("web", "h1", 5), ["z"])
        cache.memory.put("chunk-1", "chunk")
        assert cache.invalidate_repository("api") == 2
        assert cache.query.size() == 1
        assert cache.memory.size() == 1

    def test_invalidate_repository_drops_answers_that_consulted_it(self):
        cache = TieredCache(CachingConfig())
        cache.put_query(("api", "h1", 5), ["from web"], ["api", "web"])
        cache.put_query(("api", "h2", 5), ["api only"], ["api"])
        assert cache.invalidate_repository("web") == 1
        assert cache.query.get(("api", "h1", 5)) == (None, False)
        assert cache.query.get(("api", "h2", 5)) == (["api only"], True)

    def test_miss_never_raises(self):
        cache = TieredCache(CachingConfig())
        assert cache.vector.get(("query", "nothing")) == (None, False)
        stats = cache.stats()
        assert stats["vector"]["misses"] == 1
        assert stats["memory"]["policy"] == "lru"


def test_unknown_policy_name():
    with pytest.raises(ValueError):
        make_policy("mru")
