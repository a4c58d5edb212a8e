"""Unit tests for the TTL cache."""

from __future__ import annotations

import asyncio

import pytest

from patternbank.memory.cache import MISS, TTLCache
from patternbank.memory.lifecycle import TimerRegistry

from tests.mocks.clock import ManualTimer


def _cache(timer: ManualTimer, *, ttl: float = 10.0, size: int = 10, timers=None) -> TTLCache:
    return TTLCache("test", default_ttl=ttl, max_entries=size, timers=timers, clock=timer)


class TestMissSentinel:
    def test_miss_is_falsy_singleton(self) -> None:
        assert not MISS
        assert repr(MISS) == "MISS"
        assert type(MISS)() is MISS


class TestLazyExpiry:
    """Expiry is enforced on read, independent of timers."""

    def test_fresh_entry_is_served(self) -> None:
        timer = ManualTimer()
        cache = _cache(timer)
        cache.set("k", "value")
        timer.advance(9.99)
        assert cache.get("k") == "value"

    def test_expired_entry_is_never_served(self) -> None:
        timer = ManualTimer()
        cache = _cache(timer)
        cache.set("k", "stale")
        timer.advance(10.0)
        assert cache.get("k") is MISS
        assert len(cache) == 0
        assert cache.stats().expirations == 1

    def test_per_entry_ttl(self) -> None:
        timer = ManualTimer()
        cache = _cache(timer)
        cache.set("short", 1, ttl=1.0)
        cache.set("long", 2)
        timer.advance(2.0)
        assert cache.get("short") is MISS
        assert cache.get("long") == 2

    def test_falsy_values_are_hits(self) -> None:
        cache = _cache(ManualTimer())
        cache.set("empty", ())
        assert cache.get("empty") == ()
        assert "empty" in cache

    def test_purge_expired(self) -> None:
        timer = ManualTimer()
        cache = _cache(timer)
        cache.set("a", 1, ttl=1.0)
        cache.set("b", 2, ttl=5.0)
        timer.advance(2.0)
        assert cache.purge_expired() == 1
        assert len(cache) == 1

    @pytest.mark.parametrize("ttl", [0.0, -1.0])
    def test_rejects_non_positive_ttl(self, ttl: float) -> None:
        cache = _cache(ManualTimer())
        with pytest.raises(ValueError):
            cache.set("k", 1, ttl=ttl)

    def test_rejects_bad_construction(self) -> None:
        with pytest.raises(ValueError):
            TTLCache("bad", default_ttl=0, max_entries=1)
        with pytest.raises(ValueError):
            TTLCache("bad", default_ttl=1, max_entries=0)


class TestBoundsAndInvalidation:
    """Tests for LRU eviction, invalidate and clear."""

    def test_lru_eviction(self) -> None:
        cache = _cache(ManualTimer(), size=2)
        cache.set("a", 1)
        cache.set("b", 2)
        assert cache.get("a") == 1  # refresh a
        cache.set("c", 3)
        assert cache.get("b") is MISS
        assert cache.get("a") == 1
        assert cache.get("c") == 3
        assert cache.stats().evictions == 1

    def test_overwrite_does_not_evict(self) -> None:
        cache = _cache(ManualTimer(), size=2)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.set("a", 10)
        assert len(cache) == 2
        assert cache.get("a") == 10

    def test_invalidate_and_clear(self) -> None:
        cache = _cache(ManualTimer())
        cache.set("a", 1)
        cache.set("b", 2)
        assert cache.invalidate("a") is True
        assert cache.invalidate("a") is False
        assert cache.clear() == 1
        assert cache.clear() == 0

    def test_stats_counts(self) -> None:
        cache = _cache(ManualTimer())
        cache.set("a", 1)
        cache.get("a")
        cache.get("missing")
        stats = cache.stats()
        assert (stats.hits, stats.misses, stats.size) == (1, 1, 1)

    def test_no_loop_schedules_no_timer(self) -> None:
        registry = TimerRegistry()
        cache = _cache(ManualTimer(), timers=registry)
        cache.set("k", 1)
        assert registry.pending == 0
        assert cache.get("k") == 1


class TestInvalidationTimers:
    """Timers are tracked, cancelled on overwrite, eviction and clear."""

    @pytest.mark.asyncio
    async def test_set_schedules_one_timer_per_entry(self) -> None:
        registry = TimerRegistry()
        cache = _cache(ManualTimer(), timers=registry)
        cache.set("a", 1)
        cache.set("b", 2)
        assert registry.pending == 2
        cache.set("a", 3)
        assert registry.pending == 2
        registry.close()

    @pytest.mark.asyncio
    async def test_eviction_cancels_timer(self) -> None:
        registry = TimerRegistry()
        cache = _cache(ManualTimer(), size=1, timers=registry)
        cache.set("a", 1)
        cache.set("b", 2)
        assert registry.pending == 1
        registry.close()

    @pytest.mark.asyncio
    async def test_clear_and_invalidate_cancel_timers(self) -> None:
        registry = TimerRegistry()
        cache = _cache(ManualTimer(), timers=registry)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.invalidate("a")
        assert registry.pending == 1
        cache.clear()
        assert registry.pending == 0

    @pytest.mark.asyncio
    async def test_timer_reclaims_entry(self) -> None:
        registry = TimerRegistry()
        cache = TTLCache("real", default_ttl=0.01, max_entries=10, timers=registry)
        cache.set("k", 1)
        await asyncio.sleep(0.1)
        assert len(cache) == 0
        assert registry.pending == 0
        assert cache.stats().expirations == 1

    @pytest.mark.asyncio
    async def test_closed_registry_still_caches(self) -> None:
        registry = TimerRegistry()
        registry.close()
        cache = _cache(ManualTimer(), timers=registry)
        cache.set("k", 1)
        assert cache.get("k") == 1
        assert registry.pending == 0
