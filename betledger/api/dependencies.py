"""FastAPI dependencies for BetLedger."""

from collections.abc import AsyncGenerator

import redis.asyncio as redis
from fastapi import Depends, Header, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from betledger.config import get_reconciliation_config, get_settings
from betledger.models.base import async_session_factory
from betledger.services.cache import CacheStore, GeneratedContentCache
from betledger.services.oracle import HttpSettlementOracle, SettlementOracle


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Get database session dependency."""
    async with async_session_factory() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


async def get_redis() -> AsyncGenerator[redis.Redis, None]:
    """Get Redis client dependency."""
    settings = get_settings()
    client = redis.from_url(settings.redis_url)
    try:
        yield client
    finally:
        await client.aclose()


async def get_cache(redis_client: redis.Redis = Depends(get_redis)) -> CacheStore:
    """Get the settlement/content cache store."""
    return CacheStore(redis_client)


async def get_content_cache(cache: CacheStore = Depends(get_cache)) -> GeneratedContentCache:
    """Get the short-lived cache of normalized generation payloads."""
    return GeneratedContentCache(cache, get_reconciliation_config().cache.content_ttl)


async def get_oracle() -> AsyncGenerator[SettlementOracle, None]:
    """Get settlement oracle dependency."""
    async with HttpSettlementOracle() as oracle:
        yield oracle


async def get_owner_id(x_device_id: str | None = Header(default=None)) -> str:
    """Identify the caller by its opaque device id."""
    if not x_device_id or not x_device_id.strip():
        raise HTTPException(status_code=400, detail="X-Device-Id header is required")
    return x_device_id.strip()
