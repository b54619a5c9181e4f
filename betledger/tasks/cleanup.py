"""Ledger retention task.

Deletes tracked bets whose event finished more than the retention window
(30 days) ago. Runs daily.
"""

import asyncio
from datetime import datetime, timezone
from typing import Any

import structlog
from celery import shared_task
from sqlalchemy.ext.asyncio import AsyncSession

from betledger.config import ReconciliationConfig, get_reconciliation_config
from betledger.models.base import get_task_session
from betledger.models.domain import JobRun
from betledger.services.ledger import LedgerError, LedgerStore

logger = structlog.get_logger(__name__)


async def prune_expired_bets(
    db: AsyncSession,
    config: ReconciliationConfig | None = None,
) -> dict[str, Any]:
    """
    Prune expired tracked bets for every owner.

    Returns statistics about what was removed.
    """
    config = config or get_reconciliation_config()
    stats = {"owners": 0, "checked": 0, "pruned": 0, "errors": 0}

    for owner_id in await LedgerStore.owner_ids(db):
        stats["owners"] += 1
        try:
            owner_stats = await LedgerStore(db, owner_id, config).prune_expired()
        except LedgerError as e:
            logger.error("prune_owner_failed", owner_id=owner_id, error=str(e))
            stats["errors"] += 1
            continue
        stats["checked"] += owner_stats["checked"]
        stats["pruned"] += owner_stats["pruned"]

    logger.info("prune_expired_bets_complete", **stats)
    return stats


@shared_task(name="betledger.tasks.cleanup.prune_expired_bets_task")
def prune_expired_bets_task() -> dict[str, Any]:
    """Celery task to prune tracked bets past the retention window."""
    async def _run():
        async with get_task_session() as db:
            job_run = JobRun(
                job_name="prune_expired_bets",
                started_at=datetime.now(timezone.utc),
                status="running",
            )
            db.add(job_run)
            await db.commit()

            stats: dict[str, Any] = {}
            try:
                stats = await prune_expired_bets(db)
                job_run.status = "success"
            except Exception as e:
                job_run.status = "failed"
                job_run.error_message = str(e)
                logger.error("prune_task_failed", error=str(e))
                raise
            finally:
                job_run.completed_at = datetime.now(timezone.utc)
                job_run.records_processed = stats.get("pruned", 0)
                job_run.job_metadata = stats
                await db.commit()

        return stats

    return asyncio.run(_run())
