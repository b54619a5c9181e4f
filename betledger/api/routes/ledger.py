"""Ledger API endpoints: tracked bets, derived metrics and reconciliation."""

import csv
import io
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

import redis.asyncio as redis
from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from betledger.api.dependencies import get_cache, get_db, get_oracle, get_owner_id, get_redis
from betledger.config import get_reconciliation_config
from betledger.services.budget import BudgetStore
from betledger.services.cache import CacheStore
from betledger.services.entities import EPOCH, Accumulator, Prediction, SettlementMap
from betledger.services.finance import (
    EXPORT_COLUMNS,
    ItemView,
    LedgerSummary,
    derive_summary,
    export_rows,
    item_views,
)
from betledger.services.ledger import LedgerStore
from betledger.services.normalizer import normalize
from betledger.services.oracle import SettlementOracle
from betledger.services.reconciliation import ReconciliationScheduler
from betledger.tasks.reconciliation import (
    acquire_pass_lock,
    reconcile_owner,
    release_pass_lock,
)

router = APIRouter(prefix="/api/ledger", tags=["ledger"])


class TrackPredictionRequest(BaseModel):
    # Snapshot object, or the generation service's raw reply text
    prediction: dict[str, Any] | str
    stake: Decimal = Field(gt=0)


class TrackAccumulatorRequest(BaseModel):
    accumulator: dict[str, Any] | str
    stake: Decimal = Field(gt=0)
    strategy_id: str | None = None
    strategy_version_id: str | None = None


class LedgerItemResponse(BaseModel):
    """A tracked bet with its settlement state."""

    kind: str
    id: str
    stake: float
    odds: float
    event_start: datetime | None
    status: str
    snapshot: dict[str, Any]
    result: dict[str, Any] | None = None
    pnl: float | None = None


class StatsResponse(BaseModel):
    total_pnl: float
    win_rate: float
    roi: float
    settled_count: int
    total_count: int


class BreakdownResponse(BaseModel):
    name: str
    bets: int
    wins: int
    pnl: float


class AchievementResponse(BaseModel):
    id: str
    title: str
    description: str


class PnlPointResponse(BaseModel):
    date: datetime
    pnl: float
    cumulative: float


class LedgerResponse(BaseModel):
    """Ledger with everything derived from it."""

    items: list[LedgerItemResponse]
    stats: StatsResponse
    initial_budget: float
    total_staked: float
    available_balance: float
    overdrawn: bool
    by_bet_type: list[BreakdownResponse]
    by_league: list[BreakdownResponse]
    achievements: list[AchievementResponse]
    history: list[PnlPointResponse]


class ReconcileResponse(BaseModel):
    dropped: bool
    report: dict[str, Any] | None = None
    strategy_outcomes: int = 0


def _item_response(view: ItemView) -> LedgerItemResponse:
    bet = view.bet
    return LedgerItemResponse(
        kind=bet.kind,
        id=bet.id,
        stake=bet.stake,
        odds=bet.odds,
        event_start=bet.event_start if bet.event_start != EPOCH else None,
        status="settled" if view.pnl is not None else "pending",
        snapshot=bet.item.to_dict(),
        result=view.result.to_dict() if view.result is not None else None,
        pnl=view.pnl,
    )


def _ledger_response(summary: LedgerSummary) -> LedgerResponse:
    return LedgerResponse(
        items=[_item_response(view) for view in summary.items],
        stats=StatsResponse(**summary.stats.to_dict()),
        initial_budget=summary.initial_budget,
        total_staked=summary.total_staked,
        available_balance=summary.available_balance,
        overdrawn=summary.overdrawn,
        by_bet_type=[BreakdownResponse(**vars(row)) for row in summary.by_bet_type],
        by_league=[BreakdownResponse(**vars(row)) for row in summary.by_league],
        achievements=[AchievementResponse(**vars(a)) for a in summary.achievements],
        history=[PnlPointResponse(**vars(p)) for p in summary.history],
    )


def _snapshot(value: dict[str, Any] | str, kind: str) -> dict[str, Any]:
    data = normalize(value)
    if not isinstance(data, dict):
        raise HTTPException(status_code=422, detail=f"Invalid {kind} snapshot: no usable data")
    return data


async def _ledger_state(db: AsyncSession, cache: CacheStore, owner_id: str):
    config = get_reconciliation_config()
    bets = await LedgerStore(db, owner_id, config).list_bets()
    settlement: SettlementMap = await ReconciliationScheduler(
        cache, None, config
    ).cached_results(bets)
    return config, bets, settlement


@router.get("", response_model=LedgerResponse)
async def get_ledger(
    owner_id: str = Depends(get_owner_id),
    db: AsyncSession = Depends(get_db),
    redis_client: redis.Redis = Depends(get_redis),
    cache: CacheStore = Depends(get_cache),
):
    """
    Get the caller's ledger.

    Settlement state comes from the cache only; use ``POST /reconcile`` to
    look up outcomes.
    """
    config, bets, settlement = await _ledger_state(db, cache, owner_id)
    budget = await BudgetStore(redis_client, owner_id, Decimal(str(config.default_budget))).get()
    return _ledger_response(derive_summary(bets, settlement, budget))


@router.get("/export")
async def export_ledger(
    owner_id: str = Depends(get_owner_id),
    db: AsyncSession = Depends(get_db),
    cache: CacheStore = Depends(get_cache),
):
    """Download the caller's settled bets as CSV."""
    _config, bets, settlement = await _ledger_state(db, cache, owner_id)

    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=[key for key, _ in EXPORT_COLUMNS])
    writer.writerow(dict(EXPORT_COLUMNS))
    writer.writerows(export_rows(item_views(bets, settlement)))

    filename = f"betledger-export-{datetime.now(timezone.utc).date().isoformat()}.csv"
    return StreamingResponse(
        iter([buffer.getvalue()]),
        media_type="text/csv",
        headers={"Content-Disposition": f"attachment; filename={filename}"},
    )


@router.post("/predictions", response_model=LedgerItemResponse, status_code=201)
async def track_prediction(
    request: TrackPredictionRequest,
    owner_id: str = Depends(get_owner_id),
    db: AsyncSession = Depends(get_db),
):
    """Track a prediction (re-tracking updates the stake)."""
    try:
        prediction = Prediction.from_dict(_snapshot(request.prediction, "prediction"))
    except (KeyError, TypeError) as e:
        raise HTTPException(status_code=422, detail=f"Invalid prediction snapshot: {e}")

    bet = await LedgerStore(db, owner_id).add_prediction(prediction, request.stake)
    return _item_response(ItemView(bet=bet, result=None, pnl=None))


@router.delete("/predictions/{item_id}", status_code=204)
async def untrack_prediction(
    item_id: str,
    owner_id: str = Depends(get_owner_id),
    db: AsyncSession = Depends(get_db),
):
    """Stop tracking a prediction."""
    if not await LedgerStore(db, owner_id).remove_prediction(item_id):
        raise HTTPException(status_code=404, detail="Tracked prediction not found")


@router.post("/accumulators", response_model=LedgerItemResponse, status_code=201)
async def track_accumulator(
    request: TrackAccumulatorRequest,
    owner_id: str = Depends(get_owner_id),
    db: AsyncSession = Depends(get_db),
):
    """Track an accumulator, optionally attributed to a strategy version."""
    try:
        accumulator = Accumulator.from_dict(_snapshot(request.accumulator, "accumulator"))
    except (KeyError, TypeError) as e:
        raise HTTPException(status_code=422, detail=f"Invalid accumulator snapshot: {e}")

    bet = await LedgerStore(db, owner_id).add_accumulator(
        accumulator,
        request.stake,
        strategy_id=request.strategy_id,
        strategy_version_id=request.strategy_version_id,
    )
    return _item_response(ItemView(bet=bet, result=None, pnl=None))


@router.delete("/accumulators/{item_id}", status_code=204)
async def untrack_accumulator(
    item_id: str,
    owner_id: str = Depends(get_owner_id),
    db: AsyncSession = Depends(get_db),
):
    """Stop tracking an accumulator."""
    if not await LedgerStore(db, owner_id).remove_accumulator(item_id):
        raise HTTPException(status_code=404, detail="Tracked accumulator not found")


@router.delete("")
async def clear_ledger(
    owner_id: str = Depends(get_owner_id),
    db: AsyncSession = Depends(get_db),
):
    """Remove every tracked bet of the caller."""
    removed = await LedgerStore(db, owner_id).clear_all()
    return {"removed": removed}


@router.post("/reconcile", response_model=ReconcileResponse)
async def reconcile(
    force_refresh: bool = Query(False, description="Ignore cached results and backoff"),
    owner_id: str = Depends(get_owner_id),
    db: AsyncSession = Depends(get_db),
    redis_client: redis.Redis = Depends(get_redis),
    cache: CacheStore = Depends(get_cache),
    oracle: SettlementOracle = Depends(get_oracle),
):
    """
    Look up outcomes for the caller's finished bets.

    Dropped (``dropped: true``) when another reconciliation pass is running.
    """
    token = await acquire_pass_lock(redis_client)
    if token is None:
        return ReconcileResponse(dropped=True)

    try:
        scheduler = ReconciliationScheduler(cache, oracle, get_reconciliation_config())
        report, recorded = await reconcile_owner(db, scheduler, owner_id, force_refresh)
    finally:
        await release_pass_lock(redis_client, token)

    if report is None:
        return ReconcileResponse(dropped=True)
    return ReconcileResponse(dropped=False, report=report.stats(), strategy_outcomes=recorded)
