"""Financial derivation over the ledger.

Pure functions of ``(bets, settlement, initial_budget)``. Nothing here keeps
running totals: every figure is recomputed from the ledger and settlement map
on each call, so it cannot drift from the ledger's true state.

All money is ``Decimal``. Percentages are returned rounded to 2 places.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from betledger.services.entities import (
    ACCUMULATOR,
    EPOCH,
    Accumulator,
    AccumulatorResult,
    Outcome,
    PredictionResult,
    SettlementMap,
    TrackedBet,
)

ZERO = Decimal("0")
HUNDRED = Decimal("100")
CENT = Decimal("0.01")

UNKNOWN_LEAGUE = "Unknown League"

# Achievement thresholds
CONSISTENT_MIN_BETS = 10
HIGH_ROLLER_MIN_ODDS = Decimal("5.0")
ACCUMULATOR_KING_MIN_LEGS = 3
ON_A_ROLL_STREAK = 3


def _pct(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def item_pnl(stake: Decimal, odds: Decimal, outcome: Outcome | None) -> Decimal | None:
    """``stake*odds - stake`` when won, ``-stake`` when lost, None while pending."""
    if outcome is Outcome.WON:
        return stake * odds - stake
    if outcome is Outcome.LOST:
        return -stake
    return None


def bet_pnl(bet: TrackedBet, settlement: SettlementMap) -> Decimal | None:
    return item_pnl(bet.stake, bet.odds, settlement.outcome_for(bet))


def settled_bets(bets: list[TrackedBet], settlement: SettlementMap) -> list[TrackedBet]:
    return [b for b in bets if settlement.outcome_for(b) is not None]


def pending_bets(bets: list[TrackedBet], settlement: SettlementMap) -> list[TrackedBet]:
    return [b for b in bets if settlement.outcome_for(b) is None]


def pnl_history(bets: list[TrackedBet], settlement: SettlementMap) -> dict[str, Decimal]:
    """P&L per settled item id."""
    history = {}
    for bet in bets:
        pnl = bet_pnl(bet, settlement)
        if pnl is not None:
            history[bet.id] = pnl
    return history


def total_pnl(bets: list[TrackedBet], settlement: SettlementMap) -> Decimal:
    """Sum of item P&L over settled items only."""
    return sum(pnl_history(bets, settlement).values(), ZERO)


def total_staked(bets: list[TrackedBet], settlement: SettlementMap) -> Decimal:
    """Sum of stakes over pending items only."""
    return sum((b.stake for b in pending_bets(bets, settlement)), ZERO)


def available_balance(
    bets: list[TrackedBet],
    settlement: SettlementMap,
    initial_budget: Decimal,
) -> Decimal:
    """``budget + total_pnl - total_staked``. May be negative."""
    return initial_budget + total_pnl(bets, settlement) - total_staked(bets, settlement)


def is_overdrawn(balance: Decimal) -> bool:
    return balance < ZERO


def win_rate(bets: list[TrackedBet], settlement: SettlementMap) -> Decimal:
    """Won / settled * 100, or 0 with nothing settled."""
    settled = settled_bets(bets, settlement)
    if not settled:
        return ZERO
    won = sum(1 for b in settled if settlement.outcome_for(b) is Outcome.WON)
    return _pct(Decimal(won) / Decimal(len(settled)) * HUNDRED)


def roi(bets: list[TrackedBet], settlement: SettlementMap) -> Decimal:
    """Total P&L / settled stake * 100, or 0 with no settled stake."""
    settled_stake = sum((b.stake for b in settled_bets(bets, settlement)), ZERO)
    if settled_stake == ZERO:
        return ZERO
    return _pct(total_pnl(bets, settlement) / settled_stake * HUNDRED)


@dataclass
class PerformanceStats:
    total_pnl: Decimal
    win_rate: Decimal
    roi: Decimal
    settled_count: int
    total_count: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_pnl": self.total_pnl,
            "win_rate": self.win_rate,
            "roi": self.roi,
            "settled_count": self.settled_count,
            "total_count": self.total_count,
        }


def performance_stats(bets: list[TrackedBet], settlement: SettlementMap) -> PerformanceStats:
    return PerformanceStats(
        total_pnl=total_pnl(bets, settlement),
        win_rate=win_rate(bets, settlement),
        roi=roi(bets, settlement),
        settled_count=len(settled_bets(bets, settlement)),
        total_count=len(bets),
    )


@dataclass
class BreakdownRow:
    name: str
    bets: int = 0
    wins: int = 0
    pnl: Decimal = ZERO


def _bet_type(bet: TrackedBet) -> str:
    return bet.item.recommended_bet


def _league(bet: TrackedBet) -> str:
    return bet.item.league or UNKNOWN_LEAGUE


DIMENSIONS = {
    "bet_type": _bet_type,
    "league": _league,
}


def breakdown(
    bets: list[TrackedBet],
    settlement: SettlementMap,
    dimension: str,
) -> list[BreakdownRow]:
    """
    Group settled predictions by ``dimension`` ("bet_type" or "league").

    Accumulators are not part of breakdowns. Rows are sorted by P&L,
    highest first.
    """
    try:
        key_for = DIMENSIONS[dimension]
    except KeyError:
        raise ValueError(f"Unknown breakdown dimension: {dimension}") from None

    rows: dict[str, BreakdownRow] = {}
    for bet in settled_bets(bets, settlement):
        if bet.kind == ACCUMULATOR:
            continue
        name = key_for(bet)
        row = rows.setdefault(name, BreakdownRow(name=name))
        row.bets += 1
        row.pnl += bet_pnl(bet, settlement)
        if settlement.outcome_for(bet) is Outcome.WON:
            row.wins += 1

    return sorted(rows.values(), key=lambda r: r.pnl, reverse=True)


@dataclass
class ItemView:
    """A tracked bet with its settlement result and P&L, if settled."""

    bet: TrackedBet
    result: PredictionResult | AccumulatorResult | None
    pnl: Decimal | None


def item_views(bets: list[TrackedBet], settlement: SettlementMap) -> list[ItemView]:
    return [
        ItemView(bet=bet, result=settlement.result_for(bet), pnl=bet_pnl(bet, settlement))
        for bet in bets
    ]


EXPORT_COLUMNS: tuple[tuple[str, str], ...] = (
    ("date", "Date"),
    ("type", "Type"),
    ("name", "Name"),
    ("bet", "Bet"),
    ("stake", "Stake"),
    ("odds", "Odds"),
    ("outcome", "Outcome"),
    ("pnl", "P/L"),
)


def export_rows(views: list[ItemView]) -> list[dict[str, str]]:
    """Settled items flattened for CSV export, in ledger order."""
    rows = []
    for view in views:
        if view.pnl is None:
            continue
        bet = view.bet
        item = bet.item
        if isinstance(item, Accumulator):
            kind, name, bet_label = "Accumulator", item.name, "Accumulator"
            outcome = view.result.final_outcome
        else:
            kind, name, bet_label = "Prediction", f"{item.team_a} vs {item.team_b}", item.recommended_bet
            outcome = view.result.outcome
        rows.append({
            "date": bet.event_start.isoformat() if bet.event_start != EPOCH else "",
            "type": kind,
            "name": name,
            "bet": bet_label,
            "stake": str(bet.stake),
            "odds": str(bet.odds),
            "outcome": outcome.value,
            "pnl": str(_pct(view.pnl)),
        })
    return rows


@dataclass(frozen=True)
class Achievement:
    id: str
    title: str
    description: str


FIRST_WIN = Achievement("first_win", "First Win!", "You won your first tracked bet.")
CONSISTENT_PERFORMER = Achievement(
    "consistent_performer", "Consistent Performer", "Tracked 10+ bets with a positive P/L."
)
HIGH_ROLLER = Achievement("high_roller", "High Roller", "Won a bet with odds over 5.0.")
ACCUMULATOR_KING = Achievement(
    "accumulator_king", "Accumulator King", "Won an accumulator with 3+ legs."
)
ON_A_ROLL = Achievement("on_a_roll", "On a Roll", "Achieved a winning streak of 3+ bets.")


def _longest_streak(outcomes: list[Outcome | None]) -> int:
    longest = current = 0
    for outcome in outcomes:
        current = current + 1 if outcome is Outcome.WON else 0
        longest = max(longest, current)
    return longest


def achievements(bets: list[TrackedBet], settlement: SettlementMap) -> list[Achievement]:
    """Achievements unlocked by the current ledger."""
    won = [b for b in bets if settlement.outcome_for(b) is Outcome.WON]
    unlocked = []

    if won:
        unlocked.append(FIRST_WIN)
    if len(bets) >= CONSISTENT_MIN_BETS and total_pnl(bets, settlement) > ZERO:
        unlocked.append(CONSISTENT_PERFORMER)
    if any(b.odds > HIGH_ROLLER_MIN_ODDS for b in won):
        unlocked.append(HIGH_ROLLER)
    if any(
        isinstance(b.item, Accumulator) and len(b.item.legs) >= ACCUMULATOR_KING_MIN_LEGS
        for b in won
    ):
        unlocked.append(ACCUMULATOR_KING)

    in_event_order = sorted(settled_bets(bets, settlement), key=lambda b: b.event_start)
    if _longest_streak([settlement.outcome_for(b) for b in in_event_order]) >= ON_A_ROLL_STREAK:
        unlocked.append(ON_A_ROLL)

    return unlocked


@dataclass
class PnlPoint:
    date: datetime
    pnl: Decimal
    cumulative: Decimal


def cumulative_pnl(bets: list[TrackedBet], settlement: SettlementMap) -> list[PnlPoint]:
    """Running P&L over settled items in event order; undated items are left out."""
    dated = []
    for bet in bets:
        pnl = bet_pnl(bet, settlement)
        if pnl is not None and bet.event_start != EPOCH:
            dated.append((bet.event_start, pnl))
    dated.sort(key=lambda point: point[0])

    points = []
    running = ZERO
    for date, pnl in dated:
        running += pnl
        points.append(PnlPoint(date=date, pnl=pnl, cumulative=running))
    return points


@dataclass
class LedgerSummary:
    """Everything the dashboard shows, derived in one go."""

    items: list[ItemView]
    stats: PerformanceStats
    initial_budget: Decimal
    total_staked: Decimal
    available_balance: Decimal
    overdrawn: bool
    by_bet_type: list[BreakdownRow] = field(default_factory=list)
    by_league: list[BreakdownRow] = field(default_factory=list)
    achievements: list[Achievement] = field(default_factory=list)
    history: list[PnlPoint] = field(default_factory=list)


def derive_summary(
    bets: list[TrackedBet],
    settlement: SettlementMap,
    initial_budget: Decimal,
) -> LedgerSummary:
    balance = available_balance(bets, settlement, initial_budget)
    return LedgerSummary(
        items=item_views(bets, settlement),
        stats=performance_stats(bets, settlement),
        initial_budget=initial_budget,
        total_staked=total_staked(bets, settlement),
        available_balance=balance,
        overdrawn=is_overdrawn(balance),
        by_bet_type=breakdown(bets, settlement, "bet_type"),
        by_league=breakdown(bets, settlement, "league"),
        achievements=achievements(bets, settlement),
        history=cumulative_pnl(bets, settlement),
    )
