"""Ledger store: tracked predictions and accumulators per owner.

Items live in two tables keyed by ``(owner_id, item_id)``; each row stores the
recommendation snapshot as JSON plus the virtual stake. Database failures are
translated into the ``LedgerError`` taxonomy so callers never see driver
exceptions.
"""

from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any

import structlog
from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from betledger.config import ReconciliationConfig, get_reconciliation_config
from betledger.models.domain import TrackedAccumulator, TrackedPrediction
from betledger.services.entities import (
    ACCUMULATOR,
    PREDICTION,
    Accumulator,
    Prediction,
    SettlementMap,
    TrackedBet,
    to_decimal,
)

logger = structlog.get_logger(__name__)


class LedgerErrorType(Enum):
    """Classification of ledger store errors."""

    AUTH = "AUTH"
    SCHEMA_MISSING = "DATABASE_TABLES_MISSING"
    TRANSIENT = "TRANSIENT"


class LedgerError(Exception):
    """Ledger store failure with classification."""

    error_type = LedgerErrorType.TRANSIENT

    def __init__(self, message: str, context: str = ""):
        super().__init__(message)
        self.context = context


class LedgerAuthError(LedgerError):
    """The store rejected our credentials."""

    error_type = LedgerErrorType.AUTH


class LedgerSchemaError(LedgerError):
    """The backing tables do not exist (migrations not applied)."""

    error_type = LedgerErrorType.SCHEMA_MISSING


class LedgerTransientError(LedgerError):
    """Any other store failure; the operation may be retried."""

    error_type = LedgerErrorType.TRANSIENT


_AUTH_MARKERS = ("password authentication", "permission denied", "api key", "authentication failed")
_SCHEMA_MARKERS = ("does not exist", "no such table", "undefinedtable")


def classify_error(error: Exception, context: str) -> LedgerError:
    """Map a low-level store exception onto the ledger taxonomy."""
    message = str(error).lower()
    if any(marker in message for marker in _AUTH_MARKERS):
        return LedgerAuthError("Authentication with the database failed", context)
    if any(marker in message for marker in _SCHEMA_MARKERS):
        return LedgerSchemaError(LedgerErrorType.SCHEMA_MISSING.value, context)
    return LedgerTransientError(
        f"A database error occurred while {context}. Please try again.", context
    )


@asynccontextmanager
async def translate_errors(session: AsyncSession, context: str) -> AsyncIterator[None]:
    """Roll back and re-raise store failures as ``LedgerError``."""
    try:
        yield
    except (SQLAlchemyError, OSError) as e:
        await session.rollback()
        error = classify_error(e, context)
        logger.error(
            "ledger_store_error",
            context=context,
            error_type=error.error_type.value,
            error=str(e)[:500],
        )
        raise error from e


@dataclass
class LedgerSnapshot:
    """Tracked bets of one owner split by settlement state."""

    pending_predictions: list[TrackedBet] = field(default_factory=list)
    settled_predictions: list[TrackedBet] = field(default_factory=list)
    pending_accumulators: list[TrackedBet] = field(default_factory=list)
    settled_accumulators: list[TrackedBet] = field(default_factory=list)

    @property
    def pending(self) -> list[TrackedBet]:
        return self.pending_predictions + self.pending_accumulators

    @property
    def settled(self) -> list[TrackedBet]:
        return self.settled_predictions + self.settled_accumulators

    @property
    def bets(self) -> list[TrackedBet]:
        return self.pending + self.settled

    @classmethod
    def split(cls, bets: list[TrackedBet], settlement: SettlementMap) -> "LedgerSnapshot":
        snapshot = cls()
        for bet in bets:
            settled = settlement.outcome_for(bet) is not None
            if bet.kind == ACCUMULATOR:
                target = snapshot.settled_accumulators if settled else snapshot.pending_accumulators
            else:
                target = snapshot.settled_predictions if settled else snapshot.pending_predictions
            target.append(bet)
        return snapshot


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _validate_stake(stake: Any) -> Decimal:
    amount = to_decimal(stake)
    if amount <= 0:
        raise ValueError(f"Stake must be positive, got {stake!r}")
    return amount


class LedgerStore:
    """
    CRUD over one owner's tracked bets.

    Every write commits its own transaction.
    """

    def __init__(
        self,
        session: AsyncSession,
        owner_id: str,
        config: ReconciliationConfig | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        if not owner_id:
            raise ValueError("owner_id is required")
        self.session = session
        self.owner_id = owner_id
        self.config = config or get_reconciliation_config()
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    async def add_prediction(self, prediction: Prediction, stake: Any) -> TrackedBet:
        """Track a prediction; re-tracking updates its stake and snapshot."""
        amount = _validate_stake(stake)
        async with translate_errors(self.session, "tracking the prediction"):
            await self._upsert(TrackedPrediction, prediction.id, prediction.to_dict(), amount)
        logger.info("prediction_tracked", owner_id=self.owner_id, item_id=prediction.id, stake=str(amount))
        return TrackedBet(PREDICTION, prediction, amount)

    async def add_accumulator(
        self,
        accumulator: Accumulator,
        stake: Any,
        strategy_id: str | None = None,
        strategy_version_id: str | None = None,
    ) -> TrackedBet:
        """Track an accumulator, optionally attributed to a strategy version."""
        amount = _validate_stake(stake)
        data = accumulator.to_dict()
        if strategy_id is not None:
            data["strategy_id"] = strategy_id
        if strategy_version_id is not None:
            data["strategy_version_id"] = strategy_version_id
        async with translate_errors(self.session, "tracking the accumulator"):
            await self._upsert(TrackedAccumulator, accumulator.id, data, amount)
        logger.info("accumulator_tracked", owner_id=self.owner_id, item_id=accumulator.id, stake=str(amount))
        return TrackedBet(ACCUMULATOR, Accumulator.from_dict(data), amount)

    async def _upsert(self, model, item_id: str, data: dict[str, Any], stake: Decimal) -> None:
        result = await self.session.execute(
            select(model).where(model.owner_id == self.owner_id, model.item_id == item_id)
        )
        row = result.scalar_one_or_none()
        if row is None:
            self.session.add(
                model(
                    owner_id=self.owner_id,
                    item_id=item_id,
                    data=data,
                    virtual_stake=stake,
                    created_at=self.clock(),
                )
            )
        else:
            row.data = data
            row.virtual_stake = stake
        await self.session.commit()

    async def remove_prediction(self, item_id: str) -> bool:
        async with translate_errors(self.session, "untracking the prediction"):
            removed = await self._delete(TrackedPrediction, item_id)
        return removed > 0

    async def remove_accumulator(self, item_id: str) -> bool:
        async with translate_errors(self.session, "untracking the accumulator"):
            removed = await self._delete(TrackedAccumulator, item_id)
        return removed > 0

    async def _delete(self, model, item_id: str) -> int:
        result = await self.session.execute(
            delete(model).where(model.owner_id == self.owner_id, model.item_id == item_id)
        )
        await self.session.commit()
        return result.rowcount or 0

    async def clear_all(self) -> int:
        """Remove every tracked item of the owner. Returns the number removed."""
        async with translate_errors(self.session, "clearing all tracked bets"):
            removed = 0
            for model in (TrackedPrediction, TrackedAccumulator):
                result = await self.session.execute(
                    delete(model).where(model.owner_id == self.owner_id)
                )
                removed += result.rowcount or 0
            await self.session.commit()
        logger.info("ledger_cleared", owner_id=self.owner_id, removed=removed)
        return removed

    async def list_bets(self) -> list[TrackedBet]:
        """
        Non-expired tracked bets, ordered by the start of their (last) event.

        Snapshots that cannot be parsed are skipped and logged.
        """
        now = self.clock()
        bets: list[TrackedBet] = []
        async with translate_errors(self.session, "loading tracked bets"):
            for kind, model in ((PREDICTION, TrackedPrediction), (ACCUMULATOR, TrackedAccumulator)):
                result = await self.session.execute(
                    select(model).where(model.owner_id == self.owner_id)
                )
                for row in result.scalars():
                    bet = self._to_bet(kind, row)
                    if bet is not None and not self._is_expired(bet, row.created_at, now):
                        bets.append(bet)

        bets.sort(key=lambda b: b.event_start)
        return bets

    async def prune_expired(self) -> dict[str, int]:
        """Delete items whose event finished more than the retention window ago."""
        now = self.clock()
        stats = {"checked": 0, "pruned": 0}
        async with translate_errors(self.session, "pruning expired bets"):
            for kind, model in ((PREDICTION, TrackedPrediction), (ACCUMULATOR, TrackedAccumulator)):
                result = await self.session.execute(
                    select(model).where(model.owner_id == self.owner_id)
                )
                for row in result.scalars().all():
                    stats["checked"] += 1
                    bet = self._to_bet(kind, row)
                    if bet is None or self._is_expired(bet, row.created_at, now):
                        await self.session.delete(row)
                        stats["pruned"] += 1
            await self.session.commit()

        if stats["pruned"]:
            logger.info("ledger_pruned", owner_id=self.owner_id, **stats)
        return stats

    def _is_expired(self, bet: TrackedBet, created_at: datetime | None, now: datetime) -> bool:
        cutoff = now - self.config.retention
        end = bet.event_end(self.config.event_duration)
        if end is not None:
            return end < cutoff
        # Undated snapshots age out by tracking time
        created = _as_utc(created_at)
        return created is not None and created < cutoff

    def _to_bet(self, kind: str, row: TrackedPrediction | TrackedAccumulator) -> TrackedBet | None:
        try:
            item = Accumulator.from_dict(row.data) if kind == ACCUMULATOR else Prediction.from_dict(row.data)
        except (KeyError, TypeError, AttributeError) as e:
            logger.warning(
                "tracked_snapshot_unreadable",
                kind=kind,
                owner_id=self.owner_id,
                item_id=row.item_id,
                error=str(e),
            )
            return None
        return TrackedBet(kind, item, Decimal(row.virtual_stake))

    @staticmethod
    async def owner_ids(session: AsyncSession) -> list[str]:
        """All owners with at least one tracked item."""
        async with translate_errors(session, "listing ledger owners"):
            owners: set[str] = set()
            for model in (TrackedPrediction, TrackedAccumulator):
                result = await session.execute(select(model.owner_id).distinct())
                owners.update(result.scalars())
        return sorted(owners)

    @staticmethod
    async def check_schema(session: AsyncSession) -> None:
        """Raise ``LedgerError`` unless both ledger tables can be queried."""
        async with translate_errors(session, "checking the ledger schema"):
            for model in (TrackedPrediction, TrackedAccumulator):
                await session.execute(select(model.id).limit(1))

    async def list(self, settlement: SettlementMap) -> LedgerSnapshot:
        """Non-expired tracked bets split into pending and settled."""
        return LedgerSnapshot.split(await self.list_bets(), settlement)
