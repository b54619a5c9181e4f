"""Durable TTL cache backed by Redis.

Entries are stored as JSON ``{"timestamp": <epoch seconds>, "data": ...}``.
Expiry is decided at read time by the caller-supplied TTL, so one key can be
read with different lifetimes depending on what the caller knows about it.
Namespacing is done with key prefixes (``content:``, ``settlement:``).

Single writer per key is assumed; concurrent writers are last-write-wins.
"""

import json
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import redis.asyncio as redis
import structlog

from betledger.services.normalizer import normalize

logger = structlog.get_logger(__name__)

CONTENT_PREFIX = "content"
SETTLEMENT_PREFIX = "settlement"


@dataclass
class CacheEntry:
    """A cached value with the time it was written."""

    timestamp: float
    data: Any

    def age(self, now: float) -> float:
        return now - self.timestamp


class CacheStore:
    """
    Namespaced get/set with expiry on top of Redis.

    One instance is created per process (or per test) and passed to every
    component that needs caching.
    """

    def __init__(
        self,
        redis_client: redis.Redis,
        key_prefix: str = "betledger",
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the cache store.

        Args:
            redis_client: Redis client used for persistence
            key_prefix: Prefix isolating this application's keys
            clock: Source of the current time in epoch seconds
        """
        self.redis = redis_client
        self.key_prefix = key_prefix
        self.clock = clock

    def _key(self, key: str) -> str:
        return f"{self.key_prefix}:{key}"

    async def get_entry(self, key: str, ttl: float) -> CacheEntry | None:
        """Return the entry for ``key`` or None if missing or older than ``ttl`` seconds."""
        raw = await self.redis.get(self._key(key))
        if raw is None:
            return None

        try:
            payload = json.loads(raw)
            entry = CacheEntry(timestamp=float(payload["timestamp"]), data=payload["data"])
        except (ValueError, KeyError, TypeError) as e:
            logger.error("cache_entry_unreadable", key=key, error=str(e))
            await self.delete(key)
            return None

        if entry.age(self.clock()) > ttl:
            logger.debug("cache_entry_expired", key=key, ttl=ttl)
            await self.delete(key)
            return None

        return entry

    async def get(self, key: str, ttl: float) -> Any | None:
        """Return the cached value or None, evicting expired entries."""
        entry = await self.get_entry(key, ttl)
        return entry.data if entry else None

    async def set(self, key: str, value: Any) -> None:
        """Store ``value`` under ``key``, timestamped now."""
        payload = json.dumps({"timestamp": self.clock(), "data": value}, default=str)
        await self.redis.set(self._key(key), payload)

    async def delete(self, key: str) -> None:
        await self.redis.delete(self._key(key))

    async def clear(self, prefix: str | None = None) -> int:
        """
        Remove all keys of this store, or only those under ``prefix``.

        Returns:
            Number of keys removed
        """
        pattern = self._key(f"{prefix}:*" if prefix else "*")
        removed = 0
        async for key in self.redis.scan_iter(match=pattern):
            removed += await self.redis.delete(key)
        logger.info("cache_cleared", prefix=prefix, removed=removed)
        return removed


class GeneratedContentCache:
    """
    Short-lived cache for normalized generation-service payloads.

    Payloads are normalized before caching; a ``None`` result (refusal or
    garbage) is returned but never cached, so the next call retries.
    """

    def __init__(self, cache: CacheStore, ttl: float):
        self.cache = cache
        self.ttl = ttl

    async def get(self, key: str) -> Any | None:
        """Cached payload for ``key`` if still fresh."""
        return await self.cache.get(f"{CONTENT_PREFIX}:{key}", self.ttl)

    async def get_or_fetch(
        self,
        key: str,
        fetcher: Callable[[], Awaitable[Any]],
        force_refresh: bool = False,
    ) -> Any | None:
        cache_key = f"{CONTENT_PREFIX}:{key}"
        if not force_refresh:
            cached = await self.cache.get(cache_key, self.ttl)
            if cached is not None:
                logger.debug("content_cache_hit", key=key)
                return cached

        data = normalize(await fetcher())
        if data is not None:
            await self.cache.set(cache_key, data)
        else:
            logger.info("content_fetch_empty", key=key)
        return data
