"""Tests for the reconciliation and retention tasks (async bodies only)."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import select

from betledger.models.domain import Strategy
from betledger.services.ledger import LedgerStore
from betledger.services.strategies import StrategyVersionStore
from betledger.tasks.cleanup import prune_expired_bets
from betledger.tasks.reconciliation import (
    LOCK_KEY,
    acquire_pass_lock,
    reconcile_settlements,
    release_pass_lock,
)
from conftest import make_accumulator, make_prediction

# The tasks run on the wall clock
FINISHED = datetime.now(timezone.utc) - timedelta(hours=5)


async def track(session, config, owner_id, *, predictions=(), accumulators=()):
    ledger = LedgerStore(session, owner_id, config)
    for prediction in predictions:
        await ledger.add_prediction(prediction, 10)
    for accumulator in accumulators:
        await ledger.add_accumulator(accumulator, 10)


class TestPassLock:
    @pytest.mark.asyncio
    async def test_lock_is_exclusive(self, redis_client):
        token = await acquire_pass_lock(redis_client)

        assert token is not None
        assert await acquire_pass_lock(redis_client) is None

        await release_pass_lock(redis_client, token)
        assert await acquire_pass_lock(redis_client) is not None

    @pytest.mark.asyncio
    async def test_release_ignores_foreign_token(self, redis_client):
        await acquire_pass_lock(redis_client)

        await release_pass_lock(redis_client, "someone-else")

        assert await redis_client.get(LOCK_KEY) is not None

    @pytest.mark.asyncio
    async def test_lock_expires(self, redis_client):
        await acquire_pass_lock(redis_client, ttl=30)

        assert 0 < await redis_client.ttl(LOCK_KEY) <= 30


class TestReconcileSettlements:
    @pytest.mark.asyncio
    async def test_skipped_while_another_pass_holds_lock(self, db_session, redis_client, oracle, config):
        await track(db_session, config, "device-1", predictions=[make_prediction(kickoff=FINISHED)])
        await acquire_pass_lock(redis_client)

        stats = await reconcile_settlements(db_session, redis_client, oracle, config)

        assert stats["skipped"] is True
        assert oracle.calls == []

    @pytest.mark.asyncio
    async def test_reconciles_every_owner(self, db_session, redis_client, oracle, config):
        await track(db_session, config, "device-1", predictions=[make_prediction("p1", kickoff=FINISHED)])
        await track(db_session, config, "device-2", predictions=[make_prediction("p2", kickoff=FINISHED)])
        oracle.predictions["p1"] = {"finalScore": "1-0", "betOutcome": "Won"}

        stats = await reconcile_settlements(db_session, redis_client, oracle, config)

        assert stats["owners"] == 2
        assert stats["oracle_calls"] == 2
        assert stats["fetched"] == 2
        assert await redis_client.get(LOCK_KEY) is None

        stats = await reconcile_settlements(db_session, redis_client, oracle, config)
        assert stats["oracle_calls"] == 0
        assert stats["cached"] == 2

    @pytest.mark.asyncio
    async def test_settled_accumulator_recorded_against_strategy_once(
        self, db_session, redis_client, oracle, config
    ):
        strategies = StrategyVersionStore(db_session, "device-1")
        strategy_id = (await strategies.create_strategy("Goals", {"markets": []})).strategy.id
        accumulator = make_accumulator(kickoffs=[FINISHED], strategy_id=strategy_id)
        await track(db_session, config, "device-1", accumulators=[accumulator])
        oracle.accumulators["a1"] = {"legResults": [{"outcome": "Won"}]}

        first = await reconcile_settlements(db_session, redis_client, oracle, config)
        second = await reconcile_settlements(db_session, redis_client, oracle, config)

        assert first["strategy_outcomes"] == 1
        assert second["strategy_outcomes"] == 0
        row = (
            await db_session.execute(
                select(Strategy.pnl, Strategy.wins).where(Strategy.id == strategy_id)
            )
        ).one()
        assert tuple(row) == (Decimal("30.00"), 1)

    @pytest.mark.asyncio
    async def test_orphaned_strategy_does_not_fail_run(self, db_session, redis_client, oracle, config):
        accumulator = make_accumulator(kickoffs=[FINISHED], strategy_id="deleted-strategy")
        await track(db_session, config, "device-1", accumulators=[accumulator])
        oracle.accumulators["a1"] = {"legResults": [{"outcome": "Lost"}]}

        stats = await reconcile_settlements(db_session, redis_client, oracle, config)

        assert stats["fetched"] == 1
        assert stats["strategy_outcomes"] == 0

    @pytest.mark.asyncio
    async def test_oracle_failure_is_reported_not_raised(self, db_session, redis_client, oracle, config):
        await track(db_session, config, "device-1", predictions=[make_prediction(kickoff=FINISHED)])
        oracle.failing.add("prediction")

        stats = await reconcile_settlements(db_session, redis_client, oracle, config)

        assert stats["chunks_failed"] == 1
        assert stats["deferred"] == 1
        assert await redis_client.get(LOCK_KEY) is None


class TestPruneExpiredBets:
    @pytest.mark.asyncio
    async def test_prunes_across_owners(self, db_session, config):
        long_ago = datetime.now(timezone.utc) - timedelta(days=45)
        await track(
            db_session,
            config,
            "device-1",
            predictions=[make_prediction("old", kickoff=long_ago), make_prediction("new", kickoff=FINISHED)],
        )
        await track(db_session, config, "device-2", accumulators=[make_accumulator(kickoffs=[long_ago])])

        stats = await prune_expired_bets(db_session, config)

        assert stats == {"owners": 2, "checked": 3, "pruned": 2, "errors": 0}
        assert await LedgerStore.owner_ids(db_session) == ["device-1"]
