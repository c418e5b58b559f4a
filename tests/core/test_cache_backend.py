"""Tests for the in-memory cache backend and backend selection."""

from __future__ import annotations

import asyncio

import pytest

from grc_idp.cache.backend import InMemoryCacheBackend, RedisCacheBackend, get_cache_backend


class TestInMemoryCacheBackend:
    async def test_set_get_delete(self, cache) -> None:
        await cache.set("k", {"a": 1}, 60)
        assert await cache.get("k") == {"a": 1}
        assert await cache.exists("k")

        await cache.delete("k")
        assert await cache.get("k") is None
        assert not await cache.exists("k")

    async def test_expired_entries_vanish(self, cache) -> None:
        await cache.set("k", "v", 0)
        assert await cache.get("k") is None

    async def test_pull_reads_once(self, cache) -> None:
        await cache.set("k", "v", 60)
        assert await cache.pull("k") == "v"
        assert await cache.pull("k") is None

    async def test_add_only_when_absent(self, cache) -> None:
        assert await cache.add("k", "first", 60) is True
        assert await cache.add("k", "second", 60) is False
        assert await cache.get("k") == "first"

    async def test_compare_and_set(self, cache) -> None:
        assert await cache.compare_and_set("missing", "a", "b") is None

        await cache.set("k", "pending", 60)
        assert await cache.compare_and_set("k", "pending", "consumed") == "pending"
        assert await cache.compare_and_set("k", "pending", "consumed") == "consumed"
        assert await cache.get("k") == "consumed"

    async def test_compare_and_set_has_one_winner(self, cache) -> None:
        await cache.set("k", "pending", 60)
        results = await asyncio.gather(
            *(cache.compare_and_set("k", "pending", "consumed") for _ in range(20))
        )
        assert results.count("pending") == 1


class TestBackendSelection:
    def test_memory_without_redis_url(self, settings) -> None:
        assert isinstance(get_cache_backend(settings), InMemoryCacheBackend)

    def test_redis_with_url(self, settings) -> None:
        configured = settings.model_copy(update={"redis_url": "redis://localhost:6379/0"})
        assert isinstance(get_cache_backend(configured), RedisCacheBackend)


@pytest.mark.integration
async def test_redis_compare_and_set() -> None:
    backend = RedisCacheBackend("redis://localhost:6379/15")
    try:
        await backend.set("grc-test:cas", "pending", 30)
        assert await backend.compare_and_set("grc-test:cas", "pending", "consumed") == "pending"
        assert await backend.compare_and_set("grc-test:cas", "pending", "consumed") == "consumed"
    finally:
        await backend.delete("grc-test:cas")
        await backend.close()
