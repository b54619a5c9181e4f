"""Celery tasks for BetLedger.

This module configures Celery and registers all periodic tasks.
"""

from celery import Celery
from celery.schedules import crontab

from betledger.config import get_settings

settings = get_settings()

# Create Celery application
celery_app = Celery(
    "betledger",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=[
        "betledger.tasks.reconciliation",
        "betledger.tasks.cleanup",
    ],
)

# Celery configuration
celery_app.conf.update(
    # Serialization
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    # Timezone
    timezone="UTC",
    enable_utc=True,
    # Task behavior
    task_track_started=True,
    task_time_limit=900,  # 15 minute hard limit
    task_soft_time_limit=840,
    # Result expiration
    result_expires=3600,  # 1 hour
    # Worker settings
    worker_prefetch_multiplier=1,
    worker_concurrency=2,
)

# Beat schedule for periodic tasks
celery_app.conf.beat_schedule = {
    # Settlement reconciliation for every owner - every 15 minutes
    "reconcile-settlements": {
        "task": "betledger.tasks.reconciliation.reconcile_settlements_task",
        "schedule": 900.0,  # 15 minutes
        "options": {"expires": 840},  # Expire before next run
    },
    # Drop tracked bets past the retention window - daily at 03:15
    "prune-expired-bets": {
        "task": "betledger.tasks.cleanup.prune_expired_bets_task",
        "schedule": crontab(hour=3, minute=15),
        "options": {"expires": 3600},
    },
}
