"""
Unit tests for the reconciliation scheduler.

Covers:
- Eligibility (finished events only) and cache hits (zero oracle calls)
- Batch bounds per item kind
- Unresolved results and their retry window
- Failure isolation and per-item backoff
- Non-reentrancy, cancellation and the pass deadline
"""

import asyncio
import math
from datetime import timedelta

import pytest

from betledger.services.entities import Outcome
from betledger.services.reconciliation import (
    ReconciliationScheduler,
    SchedulerState,
    failure_key,
    index_reply,
    max_oracle_calls,
    settlement_key,
)
from conftest import NOW, accumulator_bet, prediction_bet

FINISHED = NOW - timedelta(hours=4)
IN_PLAY = NOW - timedelta(hours=1)

WON = {"finalScore": "2-1", "betOutcome": "Won"}
LOST = {"finalScore": "0-1", "betOutcome": "Lost"}


@pytest.fixture
def scheduler(cache, oracle, config, clock):
    return ReconciliationScheduler(cache, oracle, config=config, clock=clock.now)


def finished_predictions(count: int) -> list:
    return [prediction_bet(item_id=f"p{i}", kickoff=FINISHED) for i in range(count)]


class TestEligibility:
    @pytest.mark.asyncio
    async def test_finished_prediction_is_settled(self, scheduler, oracle):
        bet = prediction_bet(kickoff=FINISHED)
        oracle.predictions["p1"] = WON

        report = await scheduler.run([bet])

        assert report.settlement.outcome_for(bet) is Outcome.WON
        assert report.settlement.predictions["p1"].final_score == "2-1"
        assert report.oracle_calls == 1
        assert report.fetched == 1

    @pytest.mark.asyncio
    async def test_query_carries_identity_and_match_fields(self, scheduler, oracle):
        oracle.predictions["p1"] = WON
        captured = []
        original = oracle.settle_predictions

        async def capture(queries):
            captured.extend(queries)
            return await original(queries)

        oracle.settle_predictions = capture
        await scheduler.run([prediction_bet(kickoff=FINISHED)])

        assert captured == [{
            "id": "p1",
            "teamA": "Bari",
            "teamB": "Palermo",
            "matchDate": "2026-10-19T08:00:00Z",
            "recommendedBet": "Home Win",
        }]

    @pytest.mark.asyncio
    async def test_event_in_progress_is_not_queried(self, scheduler, oracle):
        report = await scheduler.run([prediction_bet(kickoff=IN_PLAY)])

        assert oracle.calls == []
        assert report.ineligible == 1
        assert report.settlement.predictions == {}

    @pytest.mark.asyncio
    async def test_event_duration_boundary(self, scheduler, oracle, config):
        exactly_ended = NOW - config.event_duration
        just_ended = exactly_ended - timedelta(seconds=1)

        report = await scheduler.run([
            prediction_bet(item_id="edge", kickoff=exactly_ended),
            prediction_bet(item_id="done", kickoff=just_ended),
        ])

        assert oracle.calls == [("prediction", ["done"])]
        assert report.ineligible == 1

    @pytest.mark.asyncio
    async def test_undated_item_is_never_queried(self, scheduler, oracle):
        report = await scheduler.run([prediction_bet(kickoff=None)])

        assert oracle.calls == []
        assert report.ineligible == 1

    @pytest.mark.asyncio
    async def test_accumulator_waits_for_last_leg(self, scheduler, oracle):
        bet = accumulator_bet(kickoffs=[FINISHED, IN_PLAY])

        report = await scheduler.run([bet])

        assert oracle.calls == []
        assert report.ineligible == 1


class TestCaching:
    @pytest.mark.asyncio
    async def test_cached_result_means_zero_calls(self, scheduler, oracle):
        bet = prediction_bet(kickoff=FINISHED)
        oracle.predictions["p1"] = WON
        await scheduler.run([bet])
        oracle.calls.clear()

        report = await scheduler.run([bet])

        assert oracle.calls == []
        assert report.cached == 1
        assert report.settlement.outcome_for(bet) is Outcome.WON

    @pytest.mark.asyncio
    async def test_result_is_written_under_settlement_namespace(self, scheduler, oracle, cache):
        oracle.predictions["p1"] = LOST
        await scheduler.run([prediction_bet(kickoff=FINISHED)])

        stored = await cache.get(settlement_key("prediction", "p1"), ttl=60)
        assert stored == {"result": {"finalScore": "0-1", "betOutcome": "Lost"}, "attempts": 0}

    @pytest.mark.asyncio
    async def test_resolved_result_survives_settlement_ttl_only(self, scheduler, oracle, clock, config):
        bet = prediction_bet(kickoff=FINISHED)
        oracle.predictions["p1"] = WON
        await scheduler.run([bet])

        clock.advance(seconds=config.cache.settlement_ttl - 60)
        await scheduler.run([bet])
        assert len(oracle.calls) == 1

        clock.advance(seconds=120)
        await scheduler.run([bet])
        assert len(oracle.calls) == 2

    @pytest.mark.asyncio
    async def test_force_refresh_bypasses_cache(self, scheduler, oracle):
        bet = prediction_bet(kickoff=FINISHED)
        oracle.predictions["p1"] = WON
        await scheduler.run([bet])

        oracle.predictions["p1"] = LOST
        report = await scheduler.run([bet], force_refresh=True)

        assert len(oracle.calls) == 2
        assert report.settlement.outcome_for(bet) is Outcome.LOST

    @pytest.mark.asyncio
    async def test_cached_results_never_calls_oracle(self, scheduler, oracle):
        settled = prediction_bet(item_id="p1", kickoff=FINISHED)
        pending = prediction_bet(item_id="p2", kickoff=FINISHED)
        oracle.predictions["p1"] = WON
        await scheduler.run([settled])
        oracle.calls.clear()

        settlement = await scheduler.cached_results([settled, pending])

        assert oracle.calls == []
        assert settlement.outcome_for(settled) is Outcome.WON
        assert settlement.result_for(pending) is None

    @pytest.mark.asyncio
    async def test_read_only_scheduler_serves_cached_results(self, scheduler, oracle, cache, config, clock):
        bet = prediction_bet(kickoff=FINISHED)
        oracle.predictions["p1"] = WON
        await scheduler.run([bet])
        reader = ReconciliationScheduler(cache, None, config=config, clock=clock.now)

        settlement = await reader.cached_results([bet])

        assert settlement.outcome_for(bet) is Outcome.WON
        with pytest.raises(RuntimeError):
            await reader.run([bet])
        assert reader.state is SchedulerState.IDLE

    @pytest.mark.asyncio
    async def test_prediction_and_accumulator_with_same_id_do_not_collide(self, scheduler, oracle):
        prediction = prediction_bet(item_id="x", kickoff=FINISHED)
        accumulator = accumulator_bet(item_id="x")
        oracle.predictions["x"] = WON
        oracle.accumulators["x"] = {
            "finalOutcome": "Lost",
            "legResults": [{"legKey": "Home 0 vs Away 0", "outcome": "Lost"}],
        }

        report = await scheduler.run([prediction, accumulator])

        assert report.settlement.outcome_for(prediction) is Outcome.WON
        assert report.settlement.outcome_for(accumulator) is Outcome.LOST


class TestBatching:
    @pytest.mark.asyncio
    async def test_predictions_are_chunked(self, scheduler, oracle, config):
        report = await scheduler.run(finished_predictions(45))

        sizes = [len(ids) for _, ids in oracle.calls]
        assert sizes == [20, 20, 5]
        assert report.oracle_calls == max_oracle_calls(45, config.batch.prediction_batch_size) == 3

    @pytest.mark.asyncio
    async def test_accumulators_use_smaller_chunks(self, scheduler, oracle):
        bets = [accumulator_bet(item_id=f"a{i}") for i in range(25)]

        await scheduler.run(bets)

        assert [len(ids) for _, ids in oracle.calls] == [10, 10, 5]
        assert {kind for kind, _ in oracle.calls} == {"accumulator"}

    @pytest.mark.asyncio
    async def test_call_count_bound_with_partial_cache(self, scheduler, oracle):
        bets = finished_predictions(30)
        for bet in bets[:15]:
            oracle.predictions[bet.id] = WON
        await scheduler.run(bets[:15])
        oracle.calls.clear()

        report = await scheduler.run(bets)

        assert report.cached == 15
        assert report.oracle_calls == math.ceil(15 / 20)

    @pytest.mark.asyncio
    async def test_delay_between_chunks(self, cache, oracle, config, clock):
        config.batch.delay_seconds = 1.5
        delays = []

        async def fake_sleep(seconds):
            delays.append(seconds)

        scheduler = ReconciliationScheduler(cache, oracle, config=config, clock=clock.now, sleep=fake_sleep)
        await scheduler.run(finished_predictions(45))

        assert delays == [1.5, 1.5]

    def test_max_oracle_calls(self):
        assert max_oracle_calls(0, 20) == 0
        assert max_oracle_calls(1, 20) == 1
        assert max_oracle_calls(20, 20) == 1
        assert max_oracle_calls(21, 20) == 2


class TestUnresolved:
    @pytest.mark.asyncio
    async def test_item_missing_from_reply_is_cached_unresolved(self, scheduler, oracle, cache):
        bet = prediction_bet(kickoff=FINISHED)

        report = await scheduler.run([bet])

        result = report.settlement.predictions["p1"]
        assert not result.resolved
        stored = await cache.get(settlement_key("prediction", "p1"), ttl=60)
        assert stored["attempts"] == 1

    @pytest.mark.asyncio
    async def test_unresolved_accumulator_is_synthesized_from_legs(self, scheduler):
        bet = accumulator_bet()

        report = await scheduler.run([bet])

        result = report.settlement.accumulators["a1"]
        assert result.final_outcome is None
        assert [leg.leg_key for leg in result.leg_results] == ["Home 0 vs Away 0: Over 2.5", "Home 1 vs Away 1: Over 2.5"]
        assert all(leg.outcome is None for leg in result.leg_results)

    @pytest.mark.asyncio
    async def test_refusal_reply_leaves_chunk_unresolved(self, scheduler, oracle):
        async def refuse(queries):
            oracle.calls.append(("prediction", [q["id"] for q in queries]))
            return "I am sorry, but results for these matches are unavailable."

        oracle.settle_predictions = refuse

        report = await scheduler.run(finished_predictions(2))

        assert report.chunks_failed == 0
        assert report.fetched == 2
        assert not any(r.resolved for r in report.settlement.predictions.values())

    @pytest.mark.asyncio
    async def test_unresolved_retried_after_window_up_to_max_attempts(self, scheduler, oracle, clock, config):
        bet = prediction_bet(kickoff=FINISHED)

        await scheduler.run([bet])
        await scheduler.run([bet])
        assert len(oracle.calls) == 1

        for _ in range(4):
            clock.advance(seconds=config.cache.unresolved_retry_ttl + 1)
            await scheduler.run([bet])

        assert len(oracle.calls) == config.cache.max_unresolved_attempts

    @pytest.mark.asyncio
    async def test_unresolved_item_that_resolves_on_retry(self, scheduler, oracle, clock, config):
        bet = prediction_bet(kickoff=FINISHED)
        await scheduler.run([bet])

        oracle.predictions["p1"] = WON
        clock.advance(seconds=config.cache.unresolved_retry_ttl + 1)
        report = await scheduler.run([bet])

        assert report.settlement.outcome_for(bet) is Outcome.WON
        clock.advance(days=1)
        await scheduler.run([bet])
        assert len(oracle.calls) == 2


class TestAccumulatorReplies:
    @pytest.mark.asyncio
    async def test_final_outcome_is_derived_from_legs(self, scheduler, oracle):
        bet = accumulator_bet()
        oracle.accumulators["a1"] = {
            "finalOutcome": "Won",
            "legResults": [
                {"legKey": "Home 0 vs Away 0", "outcome": "Won"},
                {"legKey": "Home 1 vs Away 1", "outcome": "Lost"},
            ],
        }

        report = await scheduler.run([bet])

        assert report.settlement.outcome_for(bet) is Outcome.LOST

    @pytest.mark.asyncio
    async def test_pending_leg_keeps_accumulator_unresolved(self, scheduler, oracle):
        bet = accumulator_bet()
        oracle.accumulators["a1"] = {
            "legResults": [
                {"legKey": "Home 0 vs Away 0", "outcome": "Won"},
                {"legKey": "Home 1 vs Away 1", "outcome": None},
            ],
        }

        report = await scheduler.run([bet])

        assert report.settlement.outcome_for(bet) is None

    @pytest.mark.asyncio
    async def test_legs_matched_by_position_without_keys(self, scheduler, oracle):
        bet = accumulator_bet()
        oracle.accumulators["a1"] = {
            "legResults": [{"outcome": "Won"}, {"outcome": "Won"}],
        }

        report = await scheduler.run([bet])

        assert report.settlement.outcome_for(bet) is Outcome.WON

    @pytest.mark.asyncio
    async def test_query_leg_keys_echoed_out_of_order(self, scheduler, oracle):
        captured = []
        original = oracle.settle_accumulators

        async def echo_reversed(queries):
            captured.extend(queries)
            oracle.accumulators["a1"] = {
                "legResults": [
                    {"legKey": game["legKey"], "outcome": outcome}
                    for game, outcome in zip(reversed(queries[0]["games"]), ["Lost", "Won"])
                ],
            }
            return await original(queries)

        oracle.settle_accumulators = echo_reversed
        bet = accumulator_bet()

        report = await scheduler.run([bet])

        assert [g["legKey"] for g in captured[0]["games"]] == [
            "Home 0 vs Away 0: Over 2.5",
            "Home 1 vs Away 1: Over 2.5",
        ]
        result = report.settlement.accumulators["a1"]
        assert [leg.outcome for leg in result.leg_results] == [Outcome.WON, Outcome.LOST]
        assert result.final_outcome is Outcome.LOST


class TestFailures:
    @pytest.mark.asyncio
    async def test_failed_chunk_does_not_affect_other_kinds(self, scheduler, oracle):
        oracle.failing.add("prediction")
        oracle.accumulators["a1"] = {
            "legResults": [{"outcome": "Won"}, {"outcome": "Won"}],
        }
        accumulator = accumulator_bet()

        report = await scheduler.run([prediction_bet(kickoff=FINISHED), accumulator])

        assert report.chunks_failed == 1
        assert report.deferred == 1
        assert report.settlement.outcome_for(accumulator) is Outcome.WON
        assert "p1" not in report.settlement.predictions

    @pytest.mark.asyncio
    async def test_failed_items_back_off_exponentially(self, scheduler, oracle, cache, clock, config):
        oracle.failing.add("prediction")
        bet = prediction_bet(kickoff=FINISHED)
        base = config.backoff.base_seconds

        await scheduler.run([bet])
        state = await cache.get(failure_key("prediction", "p1"), ttl=60)
        assert state == {"failures": 1, "retry_at": NOW.timestamp() + base}

        report = await scheduler.run([bet])
        assert report.deferred == 1
        assert len(oracle.calls) == 1

        clock.advance(seconds=base + 1)
        await scheduler.run([bet])
        state = await cache.get(failure_key("prediction", "p1"), ttl=60)
        assert state["failures"] == 2
        assert state["retry_at"] == clock.time() + 2 * base

    @pytest.mark.asyncio
    async def test_success_clears_failure_state(self, scheduler, oracle, cache, clock, config):
        oracle.failing.add("prediction")
        bet = prediction_bet(kickoff=FINISHED)
        await scheduler.run([bet])

        oracle.failing.clear()
        oracle.predictions["p1"] = WON
        clock.advance(seconds=config.backoff.base_seconds + 1)
        report = await scheduler.run([bet])

        assert report.settlement.outcome_for(bet) is Outcome.WON
        assert await cache.get(failure_key("prediction", "p1"), ttl=60) is None

    @pytest.mark.asyncio
    async def test_force_refresh_ignores_backoff(self, scheduler, oracle):
        oracle.failing.add("prediction")
        bet = prediction_bet(kickoff=FINISHED)
        await scheduler.run([bet])

        await scheduler.run([bet], force_refresh=True)

        assert len(oracle.calls) == 2

    @pytest.mark.asyncio
    async def test_lookup_abandoned_after_max_failures(self, scheduler, oracle, clock, config):
        config.backoff.max_failure_attempts = 2
        oracle.failing.add("prediction")
        bet = prediction_bet(kickoff=FINISHED)

        await scheduler.run([bet])
        clock.advance(seconds=config.backoff.base_seconds + 1)
        await scheduler.run([bet])

        clock.advance(seconds=config.cache.unresolved_retry_ttl + 1)
        report = await scheduler.run([bet])

        assert len(oracle.calls) == 2
        assert report.cached == 1
        assert not report.settlement.predictions["p1"].resolved

    @pytest.mark.asyncio
    async def test_slow_call_times_out_as_failure(self, scheduler, oracle, config):
        config.call_timeout_seconds = 0.01

        async def stall():
            await asyncio.sleep(1)

        oracle.on_call = stall

        report = await scheduler.run([prediction_bet(kickoff=FINISHED)])

        assert report.chunks_failed == 1
        assert scheduler.state is SchedulerState.IDLE


class TestPassControl:
    @pytest.mark.asyncio
    async def test_trigger_while_running_is_dropped(self, scheduler, oracle):
        release = asyncio.Event()
        oracle.on_call = release.wait
        bet = prediction_bet(kickoff=FINISHED)

        first = asyncio.create_task(scheduler.run([bet]))
        while not oracle.calls:
            await asyncio.sleep(0)

        assert scheduler.state is SchedulerState.RUNNING
        assert await scheduler.run([bet]) is None

        release.set()
        report = await first

        assert report is not None
        assert len(oracle.calls) == 1
        assert scheduler.state is SchedulerState.IDLE

    @pytest.mark.asyncio
    async def test_cancel_stops_before_next_chunk(self, scheduler, oracle):
        async def cancel_now():
            scheduler.cancel()

        oracle.on_call = cancel_now

        report = await scheduler.run(finished_predictions(45))

        assert report.cancelled
        assert report.oracle_calls == 1
        assert report.fetched == 20
        assert report.deferred == 25
        assert scheduler.state is SchedulerState.IDLE

    def test_cancel_when_idle(self, scheduler):
        assert scheduler.cancel() is False

    @pytest.mark.asyncio
    async def test_cancel_does_not_leak_into_next_pass(self, scheduler, oracle):
        async def cancel_now():
            scheduler.cancel()

        oracle.on_call = cancel_now
        await scheduler.run(finished_predictions(45))

        oracle.on_call = None
        oracle.calls.clear()
        report = await scheduler.run(finished_predictions(45)[20:])

        assert not report.cancelled
        assert report.oracle_calls == 2

    @pytest.mark.asyncio
    async def test_deadline_defers_remaining_chunks(self, cache, oracle, config, clock):
        ticks = [0.0]

        async def slow_call():
            ticks[0] += 100.0

        oracle.on_call = slow_call
        scheduler = ReconciliationScheduler(
            cache, oracle, config=config, clock=clock.now, monotonic=lambda: ticks[0]
        )

        report = await scheduler.run(finished_predictions(45), deadline_seconds=150)

        assert report.deadline_exceeded
        assert report.oracle_calls == 2
        assert report.fetched == 40
        assert report.deferred == 5


class TestIndexReply:
    @pytest.mark.parametrize(
        "parsed,expected_ids",
        [
            ([{"id": "a"}, {"id": "b"}], ["a", "b"]),
            ({"id": "a", "betOutcome": "Won"}, ["a"]),
            ({"results": [{"id": "a"}]}, ["a"]),
            ({"a": {"betOutcome": "Won"}, "b": {"betOutcome": "Lost"}}, ["a", "b"]),
            ([{"id": 7}], ["7"]),
            ([{"betOutcome": "Won"}, "junk", None], []),
            (None, []),
            ("text", []),
        ],
    )
    def test_reply_shapes(self, parsed, expected_ids):
        assert sorted(index_reply(parsed)) == expected_ids
