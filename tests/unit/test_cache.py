"""Unit tests for the Redis-backed TTL cache."""

import json

import pytest

from betledger.services.cache import CacheStore, GeneratedContentCache


class TestCacheStore:
    @pytest.mark.asyncio
    async def test_set_then_get_within_ttl(self, cache, clock):
        await cache.set("settlement:prediction:p1", {"betOutcome": "Won"})
        clock.advance(seconds=59)

        assert await cache.get("settlement:prediction:p1", ttl=60) == {"betOutcome": "Won"}

    @pytest.mark.asyncio
    async def test_entry_records_write_time(self, cache, clock):
        await cache.set("k", [1, 2])
        clock.advance(seconds=30)

        entry = await cache.get_entry("k", ttl=60)
        assert entry.timestamp == pytest.approx(clock.time() - 30)
        assert entry.age(clock.time()) == pytest.approx(30)

    @pytest.mark.asyncio
    async def test_expired_entry_is_evicted(self, cache, clock, redis_client):
        await cache.set("k", "v")
        clock.advance(seconds=61)

        assert await cache.get("k", ttl=60) is None
        assert await redis_client.get("betledger:k") is None

    @pytest.mark.asyncio
    async def test_same_key_read_with_different_ttls(self, cache, clock):
        await cache.set("k", "v")
        clock.advance(hours=2)

        assert await cache.get("k", ttl=3 * 3600) == "v"
        assert await cache.get("k", ttl=3600) is None

    @pytest.mark.asyncio
    async def test_missing_key(self, cache):
        assert await cache.get("nope", ttl=60) is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "stored",
        ["not json", json.dumps({"data": 1}), json.dumps({"timestamp": "soon", "data": 1}), "[]"],
    )
    async def test_unreadable_entry_is_dropped(self, cache, redis_client, stored):
        await redis_client.set("betledger:k", stored)

        assert await cache.get("k", ttl=60) is None
        assert await redis_client.get("betledger:k") is None

    @pytest.mark.asyncio
    async def test_clear_by_prefix(self, cache):
        await cache.set("content:a", 1)
        await cache.set("content:b", 2)
        await cache.set("settlement:prediction:p1", 3)

        removed = await cache.clear("content")

        assert removed == 2
        assert await cache.get("content:a", ttl=60) is None
        assert await cache.get("settlement:prediction:p1", ttl=60) == 3

    @pytest.mark.asyncio
    async def test_clear_only_touches_own_prefix(self, cache, redis_client, clock):
        other = CacheStore(redis_client, key_prefix="other", clock=clock.time)
        await other.set("content:a", 1)
        await cache.set("content:a", 2)

        assert await cache.clear() == 1
        assert await other.get("content:a", ttl=60) == 1


class TestGeneratedContentCache:
    @pytest.mark.asyncio
    async def test_normalizes_and_caches(self, cache):
        calls = []

        async def fetch():
            calls.append(1)
            return '```json\n[{"id": "p1"}]\n```'

        content = GeneratedContentCache(cache, ttl=900)

        assert await content.get_or_fetch("predictions:football", fetch) == [{"id": "p1"}]
        assert await content.get_or_fetch("predictions:football", fetch) == [{"id": "p1"}]
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_refusal_is_not_cached(self, cache):
        calls = []

        async def fetch():
            calls.append(1)
            return "I'm sorry, I cannot find fixtures for today."

        content = GeneratedContentCache(cache, ttl=900)

        assert await content.get_or_fetch("predictions", fetch) is None
        assert await content.get_or_fetch("predictions", fetch) is None
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_expiry_and_force_refresh_refetch(self, cache, clock):
        replies = iter(['{"v": 1}', '{"v": 2}', '{"v": 3}'])

        async def fetch():
            return next(replies)

        content = GeneratedContentCache(cache, ttl=900)

        assert await content.get_or_fetch("k", fetch) == {"v": 1}
        assert await content.get_or_fetch("k", fetch, force_refresh=True) == {"v": 2}
        clock.advance(seconds=901)
        assert await content.get_or_fetch("k", fetch) == {"v": 3}
