"""Database models for BetLedger."""

from betledger.models.base import Base, async_session_factory, engine
from betledger.models.domain import (
    JobRun,
    Strategy,
    StrategyOutcome,
    StrategyVersion,
    TrackedAccumulator,
    TrackedPrediction,
)

__all__ = [
    # Base
    "Base",
    "engine",
    "async_session_factory",
    # Domain models
    "TrackedPrediction",
    "TrackedAccumulator",
    "Strategy",
    "StrategyVersion",
    "StrategyOutcome",
    "JobRun",
]
