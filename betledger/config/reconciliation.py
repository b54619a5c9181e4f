"""Reconciliation and cache configuration.

Defines the tuning parameters for settlement lookups: eligibility, batching,
cache lifetimes and failure backoff. Values come from the ``reconciliation``
section of defaults.yaml, falling back to the dataclass defaults below.
"""

from dataclasses import dataclass, field, fields
from datetime import timedelta
from functools import lru_cache
from typing import Any

import structlog

from betledger.config.settings import get_settings

logger = structlog.get_logger(__name__)

MINUTE = 60
HOUR = 60 * MINUTE
DAY = 24 * HOUR


@dataclass
class BatchConfig:
    """Chunk sizes and pacing for oracle calls."""
    prediction_batch_size: int = 20
    accumulator_batch_size: int = 10  # each accumulator implies several lookups
    delay_seconds: float = 1.0


@dataclass
class CacheTTLConfig:
    """Lifetimes for the cache namespaces, in seconds."""
    content_ttl: int = 15 * MINUTE
    settlement_ttl: int = 30 * DAY
    unresolved_retry_ttl: int = 6 * HOUR
    max_unresolved_attempts: int = 3


@dataclass
class BackoffConfig:
    """Exponential backoff for items whose oracle calls keep failing."""
    base_seconds: int = 5 * MINUTE
    max_seconds: int = 12 * HOUR
    max_failure_attempts: int = 5


@dataclass
class ReconciliationConfig:
    """Complete reconciliation configuration."""

    # Conservative estimate of how long an event lasts after kickoff
    event_duration_minutes: int = 150

    # Tracked bets whose event ended longer ago than this are pruned
    retention_days: int = 30

    # Per oracle call and whole-pass limits (None disables)
    call_timeout_seconds: float | None = 120.0
    pass_deadline_seconds: float | None = 600.0

    default_budget: float = 1000.0

    batch: BatchConfig = field(default_factory=BatchConfig)
    cache: CacheTTLConfig = field(default_factory=CacheTTLConfig)
    backoff: BackoffConfig = field(default_factory=BackoffConfig)

    @property
    def event_duration(self) -> timedelta:
        return timedelta(minutes=self.event_duration_minutes)

    @property
    def retention(self) -> timedelta:
        return timedelta(days=self.retention_days)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ReconciliationConfig":
        """Build a config from a (possibly partial) mapping."""
        nested = {"batch": BatchConfig, "cache": CacheTTLConfig, "backoff": BackoffConfig}
        known = {f.name for f in fields(cls)}
        kwargs: dict[str, Any] = {}
        for key, value in data.items():
            if key not in known:
                logger.warning("unknown_reconciliation_setting", key=key)
                continue
            if key in nested:
                sub_cls = nested[key]
                sub_known = {f.name for f in fields(sub_cls)}
                kwargs[key] = sub_cls(**{k: v for k, v in (value or {}).items() if k in sub_known})
            else:
                kwargs[key] = value
        return cls(**kwargs)


@lru_cache
def get_reconciliation_config() -> ReconciliationConfig:
    """Get the reconciliation configuration from defaults.yaml."""
    defaults = get_settings().load_defaults_config()
    return ReconciliationConfig.from_dict(defaults.get("reconciliation", {}))
