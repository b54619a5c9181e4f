"""Liveness and readiness endpoints."""

from datetime import datetime, timezone

import redis.asyncio as redis
from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from betledger.api.dependencies import get_db, get_redis
from betledger.config import get_settings
from betledger.services.ledger import LedgerError, LedgerSchemaError, LedgerStore

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    status: str
    timestamp: datetime


class ReadyCheck(BaseModel):
    status: str
    message: str | None = None


class ReadyResponse(BaseModel):
    """Readiness of each backing service."""

    ready: bool
    schema_missing: bool = False
    checks: dict[str, ReadyCheck]


@router.get("/health", response_model=HealthResponse)
async def health():
    """Liveness: the process is up."""
    return HealthResponse(status="healthy", timestamp=datetime.now(timezone.utc))


@router.get("/ready", response_model=ReadyResponse)
async def ready(
    db: AsyncSession = Depends(get_db),
    redis_client: redis.Redis = Depends(get_redis),
):
    """
    Readiness of the ledger store, Redis and the settlement oracle.

    The ledger check queries both ledger tables, so a database without
    migrations applied reports ``DATABASE_TABLES_MISSING``. A missing oracle
    URL only warns: ledgers can still be read, just not reconciled.
    """
    checks: dict[str, ReadyCheck] = {}
    schema_missing = False

    try:
        await LedgerStore.check_schema(db)
        checks["ledger"] = ReadyCheck(status="ok")
    except LedgerError as e:
        schema_missing = isinstance(e, LedgerSchemaError)
        checks["ledger"] = ReadyCheck(status="error", message=e.error_type.value)

    try:
        await redis_client.ping()
        checks["redis"] = ReadyCheck(status="ok")
    except (redis.RedisError, OSError) as e:
        checks["redis"] = ReadyCheck(status="error", message=str(e))

    if get_settings().oracle_configured:
        checks["oracle"] = ReadyCheck(status="ok")
    else:
        checks["oracle"] = ReadyCheck(status="warning", message="Oracle URL not configured")

    return ReadyResponse(
        ready=all(check.status != "error" for check in checks.values()),
        schema_missing=schema_missing,
        checks=checks,
    )
