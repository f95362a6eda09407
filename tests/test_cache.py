# tests/test_cache.py
"""
Result cache: TTL expiry, capacity eviction order, hit-count reset on
re-insert, fingerprints.
"""

import pytest

from promptshield.engine.cache import ResultCache, fingerprint


class FakeClock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


class TestFingerprint:

    def test_deterministic(self):
        assert fingerprint("hello", "all") == fingerprint("hello", "all")
        assert len(fingerprint("hello")) == 32

    def test_context_is_part_of_key(self):
        assert fingerprint("hello", "all") != fingerprint("hello", "code")

    def test_no_ambiguous_concatenation(self):
        assert fingerprint("b", "a") != fingerprint("", "ab")


class TestTTL:

    def test_hit_before_expiry(self, clock):
        cache = ResultCache(default_ttl=10, clock=clock)
        cache.set("k", "v")
        clock.now = 9.999
        assert cache.get("k") == "v"

    def test_miss_at_expiry(self, clock):
        cache = ResultCache(default_ttl=10, clock=clock)
        cache.set("k", "v")
        clock.now = 10.0
        assert cache.get("k") is None
        assert len(cache) == 0

    def test_per_entry_ttl(self, clock):
        cache = ResultCache(default_ttl=10, clock=clock)
        cache.set("short", 1, ttl=1)
        cache.set("long", 2)
        clock.now = 5
        assert "short" not in cache
        assert cache.get("long") == 2

    def test_cleanup(self, clock):
        cache = ResultCache(default_ttl=10, clock=clock)
        cache.set("a", 1, ttl=1)
        cache.set("b", 2, ttl=1)
        cache.set("c", 3)
        clock.now = 2
        assert cache.cleanup() == 2
        assert len(cache) == 1

    def test_invalid_ttl(self):
        with pytest.raises(ValueError):
            ResultCache(default_ttl=0)
        with pytest.raises(ValueError):
            ResultCache().set("k", "v", ttl=-1)


class TestEviction:

    def test_evicts_to_eighty_percent(self, clock):
        cache = ResultCache(max_size=10, clock=clock)
        for i in range(10):
            clock.now = i
            cache.set(f"k{i}", i)
        cache.set("new", "x")
        # 10 entries -> evicted down to 8, then the new one is added
        assert len(cache) == 9
        assert "new" in cache

    def test_lowest_hits_then_oldest(self, clock):
        cache = ResultCache(max_size=5, clock=clock)
        for i in range(5):
            clock.now = i
            cache.set(f"k{i}", i)
        cache.get("k0")
        cache.get("k1")
        cache.set("new", "x")
        # target floor(0.8 * 5) = 4: evict k2 (0 hits, oldest of the unhit)
        assert "k2" not in cache
        for key in ("k0", "k1", "k3", "k4", "new"):
            assert key in cache

    def test_expired_purged_first(self, clock):
        cache = ResultCache(max_size=3, default_ttl=10, clock=clock)
        cache.set("stale", 1, ttl=1)
        cache.set("a", 2)
        cache.set("b", 3)
        clock.now = 5
        cache.set("c", 4)
        assert "stale" not in cache
        assert all(k in cache for k in ("a", "b", "c"))

    def test_overwrite_does_not_evict(self, clock):
        cache = ResultCache(max_size=2, clock=clock)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.set("a", 3)
        assert len(cache) == 2
        assert cache.get("a") == 3

    def test_reinsert_resets_hits(self, clock):
        cache = ResultCache(max_size=2, clock=clock)
        cache.set("a", 1)
        for _ in range(5):
            cache.get("a")
        clock.now = 1
        cache.set("b", 2)
        cache.get("b")
        clock.now = 2
        cache.set("a", 10)      # fresh entry, hits back to 0
        clock.now = 3
        cache.set("c", 3)       # evicts the entry with fewest hits: the re-inserted "a"
        assert "a" not in cache
        assert "b" in cache


class TestStats:

    def test_counters(self, clock):
        cache = ResultCache(clock=clock)
        cache.set("k", "v")
        cache.get("k")
        cache.get("missing")
        stats = cache.stats()
        assert stats["hits"] == 1
        assert stats["misses"] == 1
        assert stats["hit_rate"] == 0.5
        assert stats["size"] == 1

    def test_delete_and_clear(self, clock):
        cache = ResultCache(clock=clock)
        cache.set("a", 1)
        cache.set("b", 2)
        assert cache.delete("a") is True
        assert cache.delete("a") is False
        cache.clear()
        assert len(cache) == 0
