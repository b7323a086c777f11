"""
Cache Tests

Tests for TTLCache lazy expiry and the background sweep.
"""

from __future__ import annotations

import asyncio

import pytest

from avabuilder.cache import TTLCache


class FakeClock:
    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestTTLCache:

    def test_get_set(self):
        cache = TTLCache(10, clock=FakeClock())
        cache.set("avax", 24.5)

        assert cache.get("avax") == 24.5
        assert cache.get("missing") is None

    def test_value_returned_before_expiry(self):
        clock = FakeClock()
        cache = TTLCache(10, clock=clock)
        cache.set("avax", 24.5)

        clock.now = 9.999
        assert cache.get("avax") == 24.5

    def test_expired_at_exact_ttl(self):
        clock = FakeClock()
        cache = TTLCache(10, clock=clock)
        cache.set("avax", 24.5)

        clock.now = 10
        assert cache.get("avax") is None
        assert len(cache) == 0

    def test_set_resets_expiry(self):
        clock = FakeClock()
        cache = TTLCache(10, clock=clock)
        cache.set("avax", 1)

        clock.now = 8
        cache.set("avax", 2)
        clock.now = 15

        assert cache.get("avax") == 2

    def test_delete_and_clear(self):
        cache = TTLCache(10, clock=FakeClock())
        cache.set("a", 1)
        cache.set("b", 2)

        cache.delete("a")
        cache.delete("never-set")
        assert cache.get("a") is None
        assert len(cache) == 1

        cache.clear()
        assert len(cache) == 0

    def test_sweep(self):
        clock = FakeClock()
        cache = TTLCache(10, clock=clock)
        cache.set("old", 1)
        clock.now = 5
        cache.set("new", 2)
        clock.now = 12

        assert cache.sweep() == 1
        assert cache.get("new") == 2

    def test_invalid_ttl(self):
        with pytest.raises(ValueError):
            TTLCache(0)

    @pytest.mark.asyncio
    async def test_sweep_task_lifecycle(self):
        clock = FakeClock()
        cache = TTLCache(1, clock=clock)
        cache.set("old", 1)
        clock.now = 2

        await cache.start_sweep(0.01)
        await cache.start_sweep(0.01)
        await asyncio.sleep(0.05)
        await cache.stop()

        assert len(cache) == 0
        assert cache._sweep_task is None

    @pytest.mark.asyncio
    async def test_stop_without_start(self):
        cache = TTLCache(1)
        await cache.stop()
