"""
Club performance over a trailing window.

Two sources, tried in order:

1. Round-member records (commit / payout / pnl per member). These are
   authoritative once a round settles.
2. The raw ledger, replayed with the exposure rules. Used only when the
   club has no round records at all.

"No rounds at all" and "rounds exist but none in the window" are different
answers. The first is ``NoRoundData`` and falls through to the ledger; the
second is a zero-return ``ClubPerformance`` and does not.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from fractions import Fraction
from typing import Any, Callable, Iterable, Optional, Union

from .exposure import ExposureState, apply_entry, entry_type_of, is_cancel_reversal, sort_entries
from .models import ClubPerformance, EntryType, RoundMemberOutcome, as_utc, utc_now

DEFAULT_PERFORMANCE_DAYS = 30

SOURCE_ROUNDS = "rounds"
SOURCE_LEDGER = "ledger"

_FLOW_TYPES = (EntryType.DEPOSIT, EntryType.ADJUSTMENT, EntryType.WITHDRAW)


@dataclass(frozen=True)
class NoRoundData:
    days: int
    has_window_activity: bool = False


def _ratio(numerator: int, denominator: int) -> float:
    return float(Fraction(numerator, denominator))


def _cutoff(days: int, now: Optional[datetime]) -> datetime:
    now = as_utc(now) if now is not None else utc_now()
    return now - timedelta(days=days)


def compute_club_performance_from_rounds(
    members: Iterable[RoundMemberOutcome],
    days: int = DEFAULT_PERFORMANCE_DAYS,
    now: Optional[datetime] = None,
) -> Union[ClubPerformance, NoRoundData]:
    members = list(members)
    if not members:
        return NoRoundData(days=days)

    cutoff = _cutoff(days, now)
    commit_total = 0
    payout_total = 0
    pnl_total = 0
    for member in members:
        if as_utc(member.round_created_at) < cutoff:
            continue
        commit_total += member.commit_amount
        # unsettled members have no payout or pnl yet
        payout_total += member.payout_amount or 0
        pnl_total += member.pnl_amount or 0

    if commit_total == 0:
        return ClubPerformance(days=days, source=SOURCE_ROUNDS)

    return ClubPerformance(
        days=days,
        source=SOURCE_ROUNDS,
        commit_total=commit_total,
        payout_total=payout_total,
        realized_pnl=pnl_total,
        simple_return=_ratio(pnl_total, commit_total),
        has_window_activity=True,
    )


def compute_club_performance(
    entries: Iterable[Any],
    days: int = DEFAULT_PERFORMANCE_DAYS,
    now: Optional[datetime] = None,
) -> ClubPerformance:
    cutoff = _cutoff(days, now)
    state = ExposureState()
    nav_start: Optional[int] = None
    net_flows = 0
    commit_total = 0
    payout_total = 0

    for entry in sort_entries(entries):
        in_window = as_utc(entry.created_at) >= cutoff
        if in_window and nav_start is None:
            nav_start = state.wallet + state.market

        apply_entry(state, entry)
        if not in_window:
            continue

        entry_type = entry_type_of(entry)
        amount = int(entry.amount)
        if entry_type == EntryType.COMMIT:
            commit_total += abs(amount)
        elif is_cancel_reversal(entry):
            # a cancelled round never traded
            commit_total -= abs(amount)
        elif entry_type == EntryType.PAYOUT:
            payout_total += abs(amount)
        elif entry_type in _FLOW_TYPES:
            net_flows += amount

    # a reversal inside the window can outweigh a commit that predates it
    commit_total = max(commit_total, 0)
    nav_end = state.wallet + state.market
    if nav_start is None:
        nav_start = nav_end

    realized_pnl = payout_total - commit_total
    has_activity = commit_total != 0
    return ClubPerformance(
        days=days,
        source=SOURCE_LEDGER,
        nav_start=nav_start,
        nav_end=nav_end,
        net_flows=net_flows,
        commit_total=commit_total,
        payout_total=payout_total,
        realized_pnl=realized_pnl,
        simple_return=_ratio(realized_pnl, commit_total) if has_activity else 0.0,
        has_window_activity=has_activity,
    )


def resolve_club_performance(
    members: Iterable[RoundMemberOutcome],
    load_entries: Callable[[], Iterable[Any]],
    days: int = DEFAULT_PERFORMANCE_DAYS,
    now: Optional[datetime] = None,
) -> ClubPerformance:
    """Round records first; the ledger is only loaded when there are none."""
    from_rounds = compute_club_performance_from_rounds(members, days, now)
    if isinstance(from_rounds, NoRoundData):
        return compute_club_performance(load_entries(), days, now)
    return from_rounds
