"""Settlement reconciliation.

Looks up outcomes for tracked bets whose events have finished:

1. Skip bets whose event has not ended yet (kickoff + event duration)
2. Skip bets already in the settlement cache, including cached
   "unresolved" results still inside their retry window
3. Skip bets backing off after failed oracle calls
4. Query the oracle in bounded chunks, sequentially, with a fixed delay
5. Normalize each reply; bets missing from it are cached as unresolved
6. Merge everything into the cache and return results for the input set

A pass is non-reentrant: triggering while one is running drops the trigger.
"""

import asyncio
import math
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

import structlog

from betledger.config import ReconciliationConfig, get_reconciliation_config
from betledger.services.cache import SETTLEMENT_PREFIX, CacheStore
from betledger.services.entities import (
    ACCUMULATOR,
    PREDICTION,
    Accumulator,
    AccumulatorResult,
    Prediction,
    PredictionResult,
    SettlementMap,
    TrackedBet,
)
from betledger.services.normalizer import normalize
from betledger.services.oracle import SettlementOracle

logger = structlog.get_logger(__name__)

FAILURES_PREFIX = "settlement-failures"


class SchedulerState(str, Enum):
    """Reconciliation pass lifecycle."""
    IDLE = "IDLE"
    RUNNING = "RUNNING"


@dataclass
class ReconciliationReport:
    """Outcome of one reconciliation pass."""

    settlement: SettlementMap = field(default_factory=SettlementMap)
    oracle_calls: int = 0
    chunks_failed: int = 0
    fetched: int = 0
    cached: int = 0
    ineligible: int = 0
    deferred: int = 0
    cancelled: bool = False
    deadline_exceeded: bool = False

    def stats(self) -> dict[str, Any]:
        return {
            "oracle_calls": self.oracle_calls,
            "chunks_failed": self.chunks_failed,
            "fetched": self.fetched,
            "cached": self.cached,
            "ineligible": self.ineligible,
            "deferred": self.deferred,
            "cancelled": self.cancelled,
            "deadline_exceeded": self.deadline_exceeded,
        }


@dataclass
class CachedSettlement:
    """A settlement result read back from the cache."""

    result: PredictionResult | AccumulatorResult
    attempts: int
    timestamp: float

    def due_for_retry(self, config: ReconciliationConfig, now: float) -> bool:
        """
        Whether an unresolved result should be queried again.

        Unresolved results are retried once their retry window has elapsed,
        until ``max_unresolved_attempts`` lookups have come back unresolved.
        Resolved results are final.
        """
        if self.result.resolved:
            return False
        if self.attempts >= config.cache.max_unresolved_attempts:
            return False
        return now - self.timestamp > config.cache.unresolved_retry_ttl


def settlement_key(kind: str, item_id: str) -> str:
    return f"{SETTLEMENT_PREFIX}:{kind}:{item_id}"


def failure_key(kind: str, item_id: str) -> str:
    return f"{FAILURES_PREFIX}:{kind}:{item_id}"


def chunked(items: list[TrackedBet], size: int) -> list[list[TrackedBet]]:
    return [items[i:i + size] for i in range(0, len(items), size)]


def max_oracle_calls(eligible_uncached: int, batch_size: int) -> int:
    """Upper bound on oracle calls for a number of items to look up."""
    return math.ceil(eligible_uncached / batch_size) if eligible_uncached else 0


def prediction_query(prediction: Prediction) -> dict[str, Any]:
    """Identity plus the minimal fields the oracle needs to compare."""
    return {
        "id": prediction.id,
        "teamA": prediction.team_a,
        "teamB": prediction.team_b,
        "matchDate": prediction.match_date,
        "recommendedBet": prediction.recommended_bet,
    }


def accumulator_query(accumulator: Accumulator) -> dict[str, Any]:
    return {
        "id": accumulator.id,
        "games": [
            {
                "legKey": leg.key,
                "teamA": leg.team_a,
                "teamB": leg.team_b,
                "prediction": leg.prediction,
                "matchDate": leg.match_date,
            }
            for leg in accumulator.legs
        ],
    }


def index_reply(parsed: Any) -> dict[str, dict[str, Any]]:
    """
    Index a normalized oracle reply by item id.

    Accepts a list of results, a single result object, a wrapper object
    holding a list, or an ``{id: result}`` mapping.
    """
    if parsed is None:
        return {}

    items: list[Any]
    if isinstance(parsed, list):
        items = parsed
    elif isinstance(parsed, dict):
        if "id" in parsed:
            items = [parsed]
        else:
            lists = [v for v in parsed.values() if isinstance(v, list)]
            if lists:
                items = lists[0]
            else:
                items = [
                    {**value, "id": key}
                    for key, value in parsed.items()
                    if isinstance(value, dict)
                ]
    else:
        return {}

    return {
        str(item["id"]): item
        for item in items
        if isinstance(item, dict) and item.get("id") is not None
    }


class ReconciliationScheduler:
    """
    Batched, cache-aware settlement fetcher.

    State machine: IDLE -> RUNNING -> IDLE. ``run`` returns None when a pass
    is already running. ``cancel`` stops a running pass before its next chunk.
    """

    def __init__(
        self,
        cache: CacheStore,
        oracle: SettlementOracle | None,
        config: ReconciliationConfig | None = None,
        clock: Callable[[], datetime] | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the scheduler.

        Args:
            cache: Cache store holding settlement results
            oracle: Settlement oracle; None for a read-only scheduler
            config: Reconciliation config (defaults.yaml when omitted)
            clock: Current UTC time, used for eligibility and backoff
            sleep: Coroutine used for the inter-chunk delay
            monotonic: Monotonic clock for the pass deadline
        """
        self.cache = cache
        self.oracle = oracle
        self.config = config or get_reconciliation_config()
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.sleep = sleep
        self.monotonic = monotonic
        self._state = SchedulerState.IDLE
        self._cancel_requested = False

    @property
    def state(self) -> SchedulerState:
        return self._state

    def cancel(self) -> bool:
        """Request cancellation of the running pass. Returns False when idle."""
        if self._state is not SchedulerState.RUNNING:
            return False
        self._cancel_requested = True
        logger.info("reconciliation_cancel_requested")
        return True

    async def run(
        self,
        bets: list[TrackedBet],
        force_refresh: bool = False,
        deadline_seconds: float | None = None,
    ) -> ReconciliationReport | None:
        """
        Run one reconciliation pass over ``bets``.

        Args:
            bets: Tracked bets of the caller (pending ones are looked up)
            force_refresh: Ignore cached results and backoff
            deadline_seconds: Pass deadline; defaults to the configured one

        Returns:
            Report with results for the input set, or None if dropped
        """
        if self.oracle is None:
            raise RuntimeError("Reconciliation pass needs a settlement oracle")
        if self._state is SchedulerState.RUNNING:
            logger.info("reconciliation_pass_dropped", reason="already_running")
            return None

        self._state = SchedulerState.RUNNING
        self._cancel_requested = False
        try:
            report = await self._run_pass(
                bets,
                force_refresh,
                deadline_seconds if deadline_seconds is not None else self.config.pass_deadline_seconds,
            )
            logger.info("reconciliation_pass_complete", **report.stats())
            return report
        finally:
            self._state = SchedulerState.IDLE
            self._cancel_requested = False

    async def cached_results(self, bets: list[TrackedBet]) -> SettlementMap:
        """Settlement results currently cached for ``bets``; never calls the oracle."""
        settlement = SettlementMap()
        for bet in bets:
            cached = await self._read_cached(bet)
            if cached is not None:
                self._record(settlement, bet, cached.result)
        return settlement

    # ------------------------------------------------------------------
    # Pass internals
    # ------------------------------------------------------------------

    async def _run_pass(
        self,
        bets: list[TrackedBet],
        force_refresh: bool,
        deadline_seconds: float | None,
    ) -> ReconciliationReport:
        now = self.clock()
        report = ReconciliationReport()
        prior_attempts: dict[str, int] = {}
        to_fetch: dict[str, list[TrackedBet]] = {PREDICTION: [], ACCUMULATOR: []}

        for bet in bets:
            if not force_refresh:
                cached = await self._read_cached(bet)
                if cached is not None:
                    if not cached.due_for_retry(self.config, self.cache.clock()):
                        self._record(report.settlement, bet, cached.result)
                        report.cached += 1
                        continue
                    prior_attempts[bet.id] = cached.attempts

            if not bet.is_finished(now, self.config.event_duration):
                report.ineligible += 1
                continue

            if not force_refresh and await self._in_backoff(bet, now):
                report.deferred += 1
                continue

            to_fetch[bet.kind].append(bet)

        batch = self.config.batch
        chunks = [
            (PREDICTION, chunk) for chunk in chunked(to_fetch[PREDICTION], batch.prediction_batch_size)
        ] + [
            (ACCUMULATOR, chunk) for chunk in chunked(to_fetch[ACCUMULATOR], batch.accumulator_batch_size)
        ]

        deadline_at = self.monotonic() + deadline_seconds if deadline_seconds else None

        for index, (kind, chunk) in enumerate(chunks):
            if index > 0:
                await self.sleep(batch.delay_seconds)

            if self._cancel_requested:
                report.cancelled = True
            elif deadline_at is not None and self.monotonic() >= deadline_at:
                report.deadline_exceeded = True

            if report.cancelled or report.deadline_exceeded:
                remaining = sum(len(c) for _, c in chunks[index:])
                report.deferred += remaining
                logger.warning(
                    "reconciliation_pass_stopped",
                    cancelled=report.cancelled,
                    deadline_exceeded=report.deadline_exceeded,
                    remaining=remaining,
                )
                break

            timeout = self.config.call_timeout_seconds
            if deadline_at is not None:
                remaining_time = max(deadline_at - self.monotonic(), 0.0)
                timeout = remaining_time if timeout is None else min(timeout, remaining_time)

            await self._process_chunk(kind, chunk, report, prior_attempts, timeout, now)

        return report

    async def _process_chunk(
        self,
        kind: str,
        chunk: list[TrackedBet],
        report: ReconciliationReport,
        prior_attempts: dict[str, int],
        timeout: float | None,
        now: datetime,
    ) -> None:
        """Query the oracle for one chunk and cache every result."""
        report.oracle_calls += 1
        try:
            if kind == ACCUMULATOR:
                call = self.oracle.settle_accumulators([accumulator_query(b.item) for b in chunk])
            else:
                call = self.oracle.settle_predictions([prediction_query(b.item) for b in chunk])
            raw = await asyncio.wait_for(call, timeout) if timeout is not None else await call
        except Exception as e:
            logger.error(
                "settlement_chunk_failed",
                kind=kind,
                size=len(chunk),
                error=str(e) or type(e).__name__,
            )
            report.chunks_failed += 1
            report.deferred += len(chunk)
            await self._record_failures(kind, chunk, now)
            return

        by_id = index_reply(normalize(raw))
        missing = 0
        for bet in chunk:
            data = by_id.get(bet.id)
            if data is None:
                missing += 1
            result = self._parse_result(bet, data)
            attempts = 0 if result.resolved else prior_attempts.get(bet.id, 0) + 1
            await self._store(bet, result, attempts)
            await self.cache.delete(failure_key(kind, bet.id))
            self._record(report.settlement, bet, result)
            report.fetched += 1

        logger.info(
            "settlement_chunk_processed",
            kind=kind,
            size=len(chunk),
            missing_from_reply=missing,
        )

    def _parse_result(
        self,
        bet: TrackedBet,
        data: dict[str, Any] | None,
    ) -> PredictionResult | AccumulatorResult:
        if bet.kind == ACCUMULATOR:
            if data is None:
                return AccumulatorResult.unresolved(bet.item)
            return AccumulatorResult.from_oracle(bet.item, data)
        if data is None:
            return PredictionResult()
        return PredictionResult.from_dict(data)

    # ------------------------------------------------------------------
    # Cache access
    # ------------------------------------------------------------------

    async def _read_cached(self, bet: TrackedBet) -> CachedSettlement | None:
        entry = await self.cache.get_entry(
            settlement_key(bet.kind, bet.id), self.config.cache.settlement_ttl
        )
        if entry is None or not isinstance(entry.data, dict):
            return None

        payload = entry.data.get("result") or {}
        if bet.kind == ACCUMULATOR:
            result: PredictionResult | AccumulatorResult = AccumulatorResult.from_dict(payload)
        else:
            result = PredictionResult.from_dict(payload)
        return CachedSettlement(
            result=result,
            attempts=int(entry.data.get("attempts", 0)),
            timestamp=entry.timestamp,
        )

    async def _store(
        self,
        bet: TrackedBet,
        result: PredictionResult | AccumulatorResult,
        attempts: int,
    ) -> None:
        await self.cache.set(
            settlement_key(bet.kind, bet.id),
            {"result": result.to_dict(), "attempts": attempts},
        )

    @staticmethod
    def _record(
        settlement: SettlementMap,
        bet: TrackedBet,
        result: PredictionResult | AccumulatorResult,
    ) -> None:
        if bet.kind == ACCUMULATOR:
            settlement.accumulators[bet.id] = result
        else:
            settlement.predictions[bet.id] = result

    # ------------------------------------------------------------------
    # Failure backoff
    # ------------------------------------------------------------------

    async def _in_backoff(self, bet: TrackedBet, now: datetime) -> bool:
        state = await self.cache.get(
            failure_key(bet.kind, bet.id), self.config.cache.settlement_ttl
        )
        if not state:
            return False
        return now.timestamp() < float(state.get("retry_at", 0))

    async def _record_failures(self, kind: str, chunk: list[TrackedBet], now: datetime) -> None:
        backoff = self.config.backoff
        for bet in chunk:
            key = failure_key(kind, bet.id)
            state = await self.cache.get(key, self.config.cache.settlement_ttl) or {}
            failures = int(state.get("failures", 0)) + 1

            if failures >= backoff.max_failure_attempts:
                # Give up: cache as unresolved for the long-lived window.
                unresolved = self._parse_result(bet, None)
                await self._store(bet, unresolved, self.config.cache.max_unresolved_attempts)
                await self.cache.delete(key)
                logger.warning(
                    "settlement_lookup_abandoned",
                    kind=kind,
                    item_id=bet.id,
                    failures=failures,
                )
                continue

            delay = min(backoff.base_seconds * 2 ** (failures - 1), backoff.max_seconds)
            await self.cache.set(
                key,
                {"failures": failures, "retry_at": now.timestamp() + delay},
            )
