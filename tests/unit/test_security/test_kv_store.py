"""Tests for the in-process key-value store."""

import asyncio

import pytest

from pollguard.security.kv_store import InMemoryKeyValueStore


class Clock:
    def __init__(self):
        self.now = 500.0

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def store(clock):
    return InMemoryKeyValueStore(clock=clock)


class TestValues:
    async def test_set_and_get(self, store):
        await store.set("a", "1")
        assert await store.get("a") == "1"

    async def test_missing_key(self, store):
        assert await store.get("nope") is None

    async def test_ttl_expiry(self, store, clock):
        await store.set("a", "1", ttl_seconds=10)
        clock.now += 9
        assert await store.get("a") == "1"
        clock.now += 1
        assert await store.get("a") is None

    async def test_delete_removes_value_and_counter(self, store):
        await store.set("a", "1")
        await store.increment_window("a", 60, 0)
        await store.delete("a")

        assert await store.get("a") is None
        counter = await store.increment_window("a", 60, 1)
        assert counter.count == 1


class TestCompareAndSet:
    async def test_swaps_on_match(self, store):
        await store.set("a", "old")
        assert await store.compare_and_set("a", "old", "new") is True
        assert await store.get("a") == "new"

    async def test_rejects_mismatch(self, store):
        await store.set("a", "old")
        assert await store.compare_and_set("a", "other", "new") is False
        assert await store.get("a") == "old"

    async def test_rejects_expired(self, store, clock):
        await store.set("a", "old", ttl_seconds=1)
        clock.now += 2
        assert await store.compare_and_set("a", "old", "new") is False

    async def test_only_one_concurrent_swap_wins(self, store):
        await store.set("a", "old")
        results = await asyncio.gather(
            *[store.compare_and_set("a", "old", f"new-{i}") for i in range(10)]
        )
        assert results.count(True) == 1


class TestIncrementWindow:
    async def test_counts_within_window(self, store):
        counts = [(await store.increment_window("k", 60, 100 + i)).count for i in range(3)]
        assert counts == [1, 2, 3]

    async def test_restarts_after_window(self, store):
        await store.increment_window("k", 60, 100)
        counter = await store.increment_window("k", 60, 161)
        assert counter.count == 1
        assert counter.window_start == 161

    async def test_concurrent_increments_are_not_lost(self, store):
        await asyncio.gather(*[store.increment_window("k", 60, 100) for _ in range(50)])
        counter = await store.increment_window("k", 60, 100)
        assert counter.count == 51


class TestPurge:
    async def test_purges_expired_entries(self, store, clock):
        await store.set("short", "1", ttl_seconds=1)
        await store.set("long", "1", ttl_seconds=100)
        await store.increment_window("counter", 10, clock.now)

        clock.now += 20
        removed = await store.purge_expired()

        assert removed == 2
        assert await store.get("long") == "1"
