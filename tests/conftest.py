"""Pytest configuration and fixtures for BetLedger tests."""

import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import fakeredis
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from betledger.config import ReconciliationConfig
from betledger.models.base import Base
from betledger.services.cache import CacheStore
from betledger.services.entities import (
    ACCUMULATOR,
    PREDICTION,
    Accumulator,
    Prediction,
    TrackedBet,
)
from betledger.services.oracle import OracleAPIError, OracleErrorType, SettlementOracle

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Settable wall clock; ``now()`` for datetimes, ``time()`` for epoch seconds."""

    def __init__(self, start: datetime = NOW):
        self.current = start

    def now(self) -> datetime:
        return self.current

    def time(self) -> float:
        return self.current.timestamp()

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


def iso(dt: datetime) -> str:
    return dt.strftime("%Y-%m-%dT%H:%M:%SZ")


def make_prediction(
    item_id: str = "p1",
    kickoff: datetime | None = None,
    odds: str = "2.5",
    recommended_bet: str = "Home Win",
    league: str | None = "Serie B",
    team_a: str = "Bari",
    team_b: str = "Palermo",
) -> Prediction:
    data = {
        "id": item_id,
        "teamA": team_a,
        "teamB": team_b,
        "matchDate": iso(kickoff) if kickoff else "",
        "recommendedBet": recommended_bet,
        "odds": float(odds),
        "sport": "football",
    }
    if league is not None:
        data["league"] = league
    return Prediction.from_dict(data)


def make_accumulator(
    item_id: str = "a1",
    kickoffs: list[datetime] | None = None,
    combined_odds: str = "4.0",
    strategy_id: str | None = None,
) -> Accumulator:
    kickoffs = kickoffs if kickoffs is not None else [NOW - timedelta(hours=6), NOW - timedelta(hours=5)]
    return Accumulator.from_dict({
        "id": item_id,
        "name": f"Acca {item_id}",
        "combinedOdds": float(combined_odds),
        "games": [
            {
                "teamA": f"Home {i}",
                "teamB": f"Away {i}",
                "prediction": "Over 2.5",
                "matchDate": iso(kickoff),
                "odds": 2.0,
            }
            for i, kickoff in enumerate(kickoffs)
        ],
        "strategy_id": strategy_id,
    })


def prediction_bet(stake: str = "10", **kwargs) -> TrackedBet:
    return TrackedBet(PREDICTION, make_prediction(**kwargs), Decimal(stake))


def accumulator_bet(stake: str = "10", **kwargs) -> TrackedBet:
    return TrackedBet(ACCUMULATOR, make_accumulator(**kwargs), Decimal(stake))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def redis_client():
    return fakeredis.FakeAsyncRedis()


@pytest.fixture
def cache(redis_client, clock):
    return CacheStore(redis_client, clock=clock.time)


@pytest.fixture
def config():
    """Reconciliation config with defaults and no inter-chunk delay."""
    config = ReconciliationConfig()
    config.batch.delay_seconds = 0.0
    return config


@pytest_asyncio.fixture
async def db_session():
    """In-memory SQLite session with the full schema."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session

    await engine.dispose()


class FakeOracle(SettlementOracle):
    """
    In-memory settlement oracle.

    Replies are looked up by item id in ``predictions`` / ``accumulators``;
    ids without a reply are omitted, as the real oracle does. ``failing``
    holds the kinds whose calls raise. ``on_call`` is awaited on every call.
    """

    def __init__(self, predictions=None, accumulators=None):
        self.predictions = predictions or {}
        self.accumulators = accumulators or {}
        self.failing: set[str] = set()
        self.calls: list[tuple[str, list[str]]] = []
        self.on_call = None

    async def _reply(self, kind, queries, replies):
        ids = [q["id"] for q in queries]
        self.calls.append((kind, ids))
        if self.on_call is not None:
            await self.on_call()
        if kind in self.failing:
            raise OracleAPIError("oracle down", OracleErrorType.SERVICE_UNAVAILABLE, retryable=True)
        return json.dumps([{"id": i, **replies[i]} for i in ids if i in replies])

    async def settle_predictions(self, queries):
        return await self._reply(PREDICTION, queries, self.predictions)

    async def settle_accumulators(self, queries):
        return await self._reply(ACCUMULATOR, queries, self.accumulators)


@pytest.fixture
def oracle():
    return FakeOracle()
