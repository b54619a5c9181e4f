"""Domain models for BetLedger.

Tracked items are partitioned by ``owner_id`` (the opaque device id of the
caller) and keyed by ``(owner_id, item_id)``. The snapshot of the tracked
prediction/accumulator is stored verbatim as JSON next to the virtual stake.

Strategies are containers of immutable, numbered versions. The container
points at its deployed version and carries the performance aggregates, which
are only ever changed through ``StrategyOutcome`` inserts.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from betledger.models.base import Base, JSONType, TimestampMixin


def new_uuid() -> str:
    return str(uuid.uuid4())


class TrackedPrediction(Base):
    """A single prediction the owner committed a virtual stake to."""

    __tablename__ = "tracked_predictions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    owner_id: Mapped[str] = mapped_column(String(100), nullable=False)
    item_id: Mapped[str] = mapped_column(String(100), nullable=False)
    data: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False)
    virtual_stake: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        UniqueConstraint("owner_id", "item_id", name="uq_tracked_prediction_owner_item"),
        Index("ix_tracked_predictions_owner", "owner_id"),
    )

    def __repr__(self) -> str:
        return f"<TrackedPrediction {self.item_id} owner={self.owner_id} stake={self.virtual_stake}>"


class TrackedAccumulator(Base):
    """A multi-leg accumulator the owner committed a virtual stake to."""

    __tablename__ = "tracked_accumulators"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    owner_id: Mapped[str] = mapped_column(String(100), nullable=False)
    item_id: Mapped[str] = mapped_column(String(100), nullable=False)
    data: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False)
    virtual_stake: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        UniqueConstraint("owner_id", "item_id", name="uq_tracked_accumulator_owner_item"),
        Index("ix_tracked_accumulators_owner", "owner_id"),
    )

    def __repr__(self) -> str:
        return f"<TrackedAccumulator {self.item_id} owner={self.owner_id} stake={self.virtual_stake}>"


class Strategy(Base):
    """
    Strategy container.

    ``deployed_version_id`` is the single source of truth for which version
    is live; the per-version ``deployed`` flag mirrors it and is rewritten in
    the same transaction.
    """

    __tablename__ = "strategies"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    owner_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    pnl: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0"), nullable=False)
    wins: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    losses: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_archived: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_promoted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    deployed_version_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    versions: Mapped[list["StrategyVersion"]] = relationship(
        "StrategyVersion",
        back_populates="strategy",
        order_by="StrategyVersion.version_number",
    )

    __mapper_args__ = {"eager_defaults": True}

    def __repr__(self) -> str:
        return f"<Strategy {self.name} ({self.id})>"


class StrategyVersion(Base):
    """Immutable snapshot of a strategy's content."""

    __tablename__ = "strategy_versions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    strategy_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("strategies.id", ondelete="CASCADE"), nullable=False
    )
    version_number: Mapped[int] = mapped_column(Integer, nullable=False)
    author: Mapped[str] = mapped_column(String(100), default="user", nullable=False)
    changelog: Mapped[str | None] = mapped_column(Text, nullable=True)
    content: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False)
    deployed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    strategy: Mapped["Strategy"] = relationship("Strategy", back_populates="versions")

    __table_args__ = (
        UniqueConstraint("strategy_id", "version_number", name="uq_strategy_version_number"),
    )
    __mapper_args__ = {"eager_defaults": True}

    def __repr__(self) -> str:
        return f"<StrategyVersion {self.strategy_id} v{self.version_number} deployed={self.deployed}>"


class StrategyOutcome(Base):
    """Settled item already counted in a strategy's aggregates."""

    __tablename__ = "strategy_outcomes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    strategy_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("strategies.id", ondelete="CASCADE"), nullable=False
    )
    item_id: Mapped[str] = mapped_column(String(100), nullable=False)
    outcome: Mapped[str] = mapped_column(String(10), nullable=False, doc="'Won' or 'Lost'")
    pnl: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        UniqueConstraint("strategy_id", "item_id", name="uq_strategy_outcome_item"),
    )

    def __repr__(self) -> str:
        return f"<StrategyOutcome {self.strategy_id} {self.item_id} {self.outcome}>"


class JobRun(Base, TimestampMixin):
    """
    Task execution audit log.

    Every scheduled task run is logged here for monitoring and debugging.
    """

    __tablename__ = "job_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_name: Mapped[str] = mapped_column(String(100), nullable=False)
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, doc="'running', 'success', 'failed', 'skipped'"
    )
    records_processed: Mapped[int] = mapped_column(Integer, default=0)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    job_metadata: Mapped[dict[str, Any] | None] = mapped_column(
        "metadata", JSONType, nullable=True
    )

    def __repr__(self) -> str:
        return f"<JobRun {self.job_name} status={self.status}>"
