"""Ledger entities: recommendation snapshots, tracked bets and settlement results.

Snapshots arrive as JSON produced by the generation service (camelCase keys
such as ``teamA`` / ``matchDate``). They are parsed into dataclasses here and
the original dict is kept so it can be stored back verbatim.
"""

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any

import structlog

logger = structlog.get_logger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

PREDICTION = "prediction"
ACCUMULATOR = "accumulator"


class Outcome(str, Enum):
    """Definitive outcome of a bet or leg."""
    WON = "Won"
    LOST = "Lost"

    @classmethod
    def parse(cls, value: Any) -> "Outcome | None":
        """Parse an oracle outcome; anything unrecognised is unresolved."""
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered == "won":
                return cls.WON
            if lowered == "lost":
                return cls.LOST
        return None


def parse_datetime(value: Any) -> datetime:
    """Parse an ISO timestamp, returning the epoch for missing/invalid values."""
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if not value or not isinstance(value, str):
        return EPOCH
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        logger.warning("invalid_date_string", value=value)
        return EPOCH
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def to_decimal(value: Any, default: str = "0") -> Decimal:
    if value is None:
        return Decimal(default)
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return Decimal(default)


@dataclass(frozen=True)
class Prediction:
    """Snapshot of a single-match recommendation."""

    id: str
    team_a: str
    team_b: str
    match_date: str
    recommended_bet: str
    odds: Decimal
    sport: str | None = None
    league: str | None = None
    confidence: float | None = None
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Prediction":
        return cls(
            id=str(data["id"]),
            team_a=data.get("teamA", ""),
            team_b=data.get("teamB", ""),
            match_date=data.get("matchDate", ""),
            recommended_bet=data.get("recommendedBet", ""),
            odds=to_decimal(data.get("odds")),
            sport=data.get("sport"),
            league=data.get("league"),
            confidence=data.get("aiConfidence"),
            raw=dict(data),
        )

    def to_dict(self) -> dict[str, Any]:
        data = dict(self.raw)
        data.update({
            "id": self.id,
            "teamA": self.team_a,
            "teamB": self.team_b,
            "matchDate": self.match_date,
            "recommendedBet": self.recommended_bet,
            "odds": float(self.odds),
        })
        return data

    @property
    def kickoff(self) -> datetime:
        return parse_datetime(self.match_date)


@dataclass(frozen=True)
class Leg:
    """One game inside an accumulator."""

    team_a: str
    team_b: str
    prediction: str
    match_date: str
    odds: Decimal = Decimal("0")
    sport: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Leg":
        return cls(
            team_a=data.get("teamA", ""),
            team_b=data.get("teamB", ""),
            prediction=data.get("prediction", ""),
            match_date=data.get("matchDate", ""),
            odds=to_decimal(data.get("odds")),
            sport=data.get("sport"),
        )

    @property
    def key(self) -> str:
        return leg_key(self.team_a, self.team_b, self.prediction)

    @property
    def match(self) -> str:
        return match_key(self.team_a, self.team_b)

    @property
    def kickoff(self) -> datetime:
        return parse_datetime(self.match_date)


def match_key(team_a: str, team_b: str) -> str:
    return f"{team_a} vs {team_b}"


def leg_key(team_a: str, team_b: str, prediction: str = "") -> str:
    """Match plus market; several legs may share a match (bet builders)."""
    if not prediction:
        return match_key(team_a, team_b)
    return f"{match_key(team_a, team_b)}: {prediction}"


@dataclass(frozen=True)
class Accumulator:
    """Snapshot of a multi-leg accumulator tip."""

    id: str
    name: str
    combined_odds: Decimal
    legs: tuple[Leg, ...]
    strategy_id: str | None = None
    strategy_version_id: str | None = None
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Accumulator":
        return cls(
            id=str(data["id"]),
            name=data.get("name", ""),
            combined_odds=to_decimal(data.get("combinedOdds")),
            legs=tuple(Leg.from_dict(g) for g in data.get("games") or []),
            strategy_id=data.get("strategy_id"),
            strategy_version_id=data.get("strategy_version_id"),
            raw=dict(data),
        )

    def to_dict(self) -> dict[str, Any]:
        data = dict(self.raw)
        data.update({
            "id": self.id,
            "name": self.name,
            "combinedOdds": float(self.combined_odds),
            "strategy_id": self.strategy_id,
            "strategy_version_id": self.strategy_version_id,
        })
        return data

    @property
    def latest_kickoff(self) -> datetime:
        """Kickoff of the last leg; the epoch when there are no dated legs."""
        return max((leg.kickoff for leg in self.legs), default=EPOCH)


@dataclass(frozen=True)
class TrackedBet:
    """A ledger item: a snapshot the user committed a virtual stake to."""

    kind: str
    item: Prediction | Accumulator
    stake: Decimal

    @property
    def id(self) -> str:
        return self.item.id

    @property
    def odds(self) -> Decimal:
        if isinstance(self.item, Accumulator):
            return self.item.combined_odds
        return self.item.odds

    @property
    def event_start(self) -> datetime:
        """Start of the (last) event the bet depends on."""
        if isinstance(self.item, Accumulator):
            return self.item.latest_kickoff
        return self.item.kickoff

    def event_end(self, duration: timedelta) -> datetime | None:
        """Estimated end of the (last) event, or None when undated."""
        start = self.event_start
        if start == EPOCH:
            return None
        return start + duration

    def is_finished(self, now: datetime, duration: timedelta) -> bool:
        end = self.event_end(duration)
        return end is not None and now > end


@dataclass(frozen=True)
class PredictionResult:
    """Settlement of a single prediction."""

    final_score: str | None = None
    outcome: Outcome | None = None

    @property
    def resolved(self) -> bool:
        return self.outcome is not None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PredictionResult":
        outcome = data.get("betOutcome") or data.get("outcome")
        score = data.get("finalScore")
        return cls(
            final_score=str(score) if score is not None else None,
            outcome=Outcome.parse(outcome),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "finalScore": self.final_score,
            "betOutcome": self.outcome.value if self.outcome else None,
        }


@dataclass(frozen=True)
class LegResult:
    leg_key: str
    outcome: Outcome | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "legKey": self.leg_key,
            "outcome": self.outcome.value if self.outcome else None,
        }


def _reported_leg_key(item: dict[str, Any]) -> str:
    return item.get("legKey") or leg_key(
        item.get("teamA", ""), item.get("teamB", ""), item.get("prediction", "")
    )


def derive_final_outcome(outcomes: list[Outcome | None]) -> Outcome | None:
    """Lost if any leg lost, Won only if every leg won, otherwise unresolved."""
    if any(o is Outcome.LOST for o in outcomes):
        return Outcome.LOST
    if outcomes and all(o is Outcome.WON for o in outcomes):
        return Outcome.WON
    return None


@dataclass(frozen=True)
class AccumulatorResult:
    """Settlement of an accumulator and its legs."""

    final_outcome: Outcome | None = None
    leg_results: tuple[LegResult, ...] = ()

    @property
    def resolved(self) -> bool:
        return self.final_outcome is not None

    @classmethod
    def unresolved(cls, accumulator: Accumulator) -> "AccumulatorResult":
        return cls(leg_results=tuple(LegResult(leg.key) for leg in accumulator.legs))

    @classmethod
    def from_legs(cls, leg_results: list[LegResult]) -> "AccumulatorResult":
        return cls(
            final_outcome=derive_final_outcome([r.outcome for r in leg_results]),
            leg_results=tuple(leg_results),
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AccumulatorResult":
        """Load a result previously written with ``to_dict``."""
        legs = tuple(
            LegResult(leg_key=_reported_leg_key(item), outcome=Outcome.parse(item.get("outcome")))
            for item in data.get("legResults") or []
            if isinstance(item, dict)
        )
        return cls(final_outcome=Outcome.parse(data.get("finalOutcome")), leg_results=legs)

    @classmethod
    def from_oracle(cls, accumulator: Accumulator, data: dict[str, Any]) -> "AccumulatorResult":
        """
        Align an oracle reply with the accumulator's legs.

        Legs are matched by match-plus-market key, then by match, and by
        position when a key repeats on either side. The final outcome
        is always re-derived from the legs, so a reply without leg results is
        unresolved whatever ``finalOutcome`` it claims.
        """
        reported = [item for item in data.get("legResults") or [] if isinstance(item, dict)]
        reported_keys = [_reported_leg_key(item) for item in reported]

        # A key only identifies a leg when it is unique on both sides
        leg_counts = Counter(k for leg in accumulator.legs for k in {leg.key, leg.match})
        reply_counts = Counter(reported_keys)

        legs = []
        for position, leg in enumerate(accumulator.legs):
            index = next(
                (
                    reported_keys.index(k)
                    for k in (leg.key, leg.match)
                    if leg_counts[k] == 1 and reply_counts[k] == 1
                ),
                None,
            )
            if index is None and position < len(reported):
                index = position
            outcome = Outcome.parse(reported[index].get("outcome")) if index is not None else None
            legs.append(LegResult(leg.key, outcome))

        result = cls.from_legs(legs)
        claimed = Outcome.parse(data.get("finalOutcome"))
        if claimed is not None and claimed is not result.final_outcome:
            logger.warning(
                "accumulator_outcome_mismatch",
                accumulator_id=accumulator.id,
                reported=claimed.value,
                derived=result.final_outcome.value if result.final_outcome else None,
            )
        return result

    def to_dict(self) -> dict[str, Any]:
        return {
            "finalOutcome": self.final_outcome.value if self.final_outcome else None,
            "legResults": [r.to_dict() for r in self.leg_results],
        }


@dataclass
class SettlementMap:
    """Settlement results keyed by tracked item id."""

    predictions: dict[str, PredictionResult] = field(default_factory=dict)
    accumulators: dict[str, AccumulatorResult] = field(default_factory=dict)

    def result_for(self, bet: TrackedBet) -> PredictionResult | AccumulatorResult | None:
        if bet.kind == ACCUMULATOR:
            return self.accumulators.get(bet.id)
        return self.predictions.get(bet.id)

    def outcome_for(self, bet: TrackedBet) -> Outcome | None:
        result = self.result_for(bet)
        if result is None:
            return None
        if isinstance(result, AccumulatorResult):
            return result.final_outcome
        return result.outcome

    def update(self, other: "SettlementMap") -> None:
        self.predictions.update(other.predictions)
        self.accumulators.update(other.accumulators)
