"""Settlement reconciliation task.

Runs every 15 minutes over every owner with tracked bets:

1. Take the reconciliation lock (a second trigger is dropped, not queued)
2. For each owner, run a reconciliation pass over their tracked bets
3. Attribute newly settled accumulators to the strategy that produced them
4. Log a job run with stats

The lock is a Redis key shared by all workers and the API, so at most one
pass hits the oracle at a time across the deployment.
"""

import asyncio
import uuid
from datetime import datetime, timezone
from typing import Any

import redis.asyncio as redis
import structlog
from celery import shared_task
from sqlalchemy.ext.asyncio import AsyncSession

from betledger.config import ReconciliationConfig, get_reconciliation_config, get_settings
from betledger.models.base import get_task_session
from betledger.models.domain import JobRun
from betledger.services.cache import CacheStore
from betledger.services.entities import ACCUMULATOR, SettlementMap, TrackedBet
from betledger.services.finance import bet_pnl
from betledger.services.ledger import LedgerError, LedgerStore
from betledger.services.oracle import HttpSettlementOracle, SettlementOracle
from betledger.services.reconciliation import ReconciliationReport, ReconciliationScheduler
from betledger.services.strategies import StrategyNotFoundError, StrategyVersionStore

logger = structlog.get_logger(__name__)

LOCK_KEY = "betledger:lock:reconciliation"
LOCK_TTL_SECONDS = 900


async def acquire_pass_lock(redis_client: redis.Redis, ttl: int = LOCK_TTL_SECONDS) -> str | None:
    """Take the reconciliation lock without blocking. Returns the lock token or None."""
    token = uuid.uuid4().hex
    acquired = await redis_client.set(LOCK_KEY, token, nx=True, ex=ttl)
    return token if acquired else None


async def release_pass_lock(redis_client: redis.Redis, token: str) -> None:
    current = await redis_client.get(LOCK_KEY)
    if isinstance(current, bytes):
        current = current.decode()
    if current == token:
        await redis_client.delete(LOCK_KEY)


async def record_strategy_outcomes(
    session: AsyncSession,
    owner_id: str,
    bets: list[TrackedBet],
    settlement: SettlementMap,
) -> int:
    """
    Record settled accumulators against their strategy.

    Returns the number of outcomes newly recorded; already recorded items
    are skipped by the store.
    """
    store = StrategyVersionStore(session, owner_id)
    recorded = 0
    for bet in bets:
        if bet.kind != ACCUMULATOR or not bet.item.strategy_id:
            continue
        outcome = settlement.outcome_for(bet)
        if outcome is None:
            continue
        try:
            if await store.record_outcome(
                bet.item.strategy_id, outcome, bet_pnl(bet, settlement), bet.id
            ):
                recorded += 1
        except StrategyNotFoundError:
            logger.warning(
                "strategy_outcome_orphaned",
                owner_id=owner_id,
                strategy_id=bet.item.strategy_id,
                item_id=bet.id,
            )
    return recorded


async def reconcile_owner(
    session: AsyncSession,
    scheduler: ReconciliationScheduler,
    owner_id: str,
    force_refresh: bool = False,
) -> tuple[ReconciliationReport | None, int]:
    """
    Run one pass over an owner's tracked bets.

    Returns:
        The pass report (None if a pass was already running) and the number
        of strategy outcomes recorded
    """
    ledger = LedgerStore(session, owner_id, scheduler.config)
    bets = await ledger.list_bets()
    report = await scheduler.run(bets, force_refresh=force_refresh)
    if report is None:
        return None, 0
    recorded = await record_strategy_outcomes(session, owner_id, bets, report.settlement)
    return report, recorded


async def reconcile_settlements(
    session: AsyncSession,
    redis_client: redis.Redis,
    oracle: SettlementOracle,
    config: ReconciliationConfig | None = None,
) -> dict[str, Any]:
    """
    Reconcile every owner's tracked bets.

    Returns statistics about the run.
    """
    config = config or get_reconciliation_config()
    stats = {
        "skipped": False,
        "owners": 0,
        "owner_errors": 0,
        "oracle_calls": 0,
        "chunks_failed": 0,
        "fetched": 0,
        "cached": 0,
        "deferred": 0,
        "strategy_outcomes": 0,
    }

    token = await acquire_pass_lock(redis_client)
    if token is None:
        logger.info("reconciliation_skipped", reason="already_running")
        stats["skipped"] = True
        return stats

    try:
        scheduler = ReconciliationScheduler(CacheStore(redis_client), oracle, config)
        for owner_id in await LedgerStore.owner_ids(session):
            stats["owners"] += 1
            try:
                report, recorded = await reconcile_owner(session, scheduler, owner_id)
            except LedgerError as e:
                logger.error("owner_reconciliation_failed", owner_id=owner_id, error=str(e))
                stats["owner_errors"] += 1
                continue

            if report is None:
                continue
            for key in ("oracle_calls", "chunks_failed", "fetched", "cached", "deferred"):
                stats[key] += getattr(report, key)
            stats["strategy_outcomes"] += recorded
    finally:
        await release_pass_lock(redis_client, token)

    logger.info("reconciliation_run_complete", **stats)
    return stats


@shared_task(name="betledger.tasks.reconciliation.reconcile_settlements_task")
def reconcile_settlements_task() -> dict[str, Any]:
    """
    Celery task to reconcile tracked bets against the settlement oracle.

    Runs every 15 minutes.
    """
    async def _run():
        settings = get_settings()
        redis_client = redis.from_url(settings.redis_url)
        started_at = datetime.now(timezone.utc)

        async with get_task_session() as db:
            job_run = JobRun(
                job_name="reconcile_settlements",
                started_at=started_at,
                status="running",
            )
            db.add(job_run)
            await db.commit()

            stats: dict[str, Any] = {}
            try:
                async with HttpSettlementOracle() as oracle:
                    stats = await reconcile_settlements(db, redis_client, oracle)
                job_run.status = "skipped" if stats.get("skipped") else "success"
            except Exception as e:
                job_run.status = "failed"
                job_run.error_message = str(e)
                logger.error("reconciliation_task_failed", error=str(e))
                raise
            finally:
                job_run.completed_at = datetime.now(timezone.utc)
                job_run.records_processed = stats.get("fetched", 0)
                job_run.job_metadata = stats
                await db.commit()
                await redis_client.aclose()

        return stats

    return asyncio.run(_run())
