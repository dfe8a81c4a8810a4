"""
Wallet vs. market exposure series.

Replays a user's ledger from zero and splits funds into idle wallet
balance and funds committed to open rounds. The replay always starts
from an empty state; there are no checkpoints.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Iterable, Optional

from .amounts import to_display
from .models import CANCEL_REVERSAL_SOURCE, EntryType, ExposurePoint, as_utc, utc_now

DEFAULT_EXPOSURE_WINDOW_DAYS = 7


@dataclass
class ExposureState:
    wallet: int = 0
    market: int = 0


def entry_type_of(entry: Any) -> Optional[EntryType]:
    raw = entry.entry_type
    if isinstance(raw, EntryType):
        return raw
    try:
        return EntryType(raw)
    except ValueError:
        return None


def is_cancel_reversal(entry: Any) -> bool:
    metadata = getattr(entry, "metadata", None) or {}
    return entry_type_of(entry) == EntryType.ADJUSTMENT and metadata.get("source") == CANCEL_REVERSAL_SOURCE


def apply_entry(state: ExposureState, entry: Any) -> ExposureState:
    """Apply one entry to the running state in place and return it.

    Types this module does not know land in the wallet, the same as a
    deposit or adjustment would. The reversal posted when a round is
    cancelled also releases the matching market exposure.
    """
    amount = int(entry.amount)
    entry_type = entry_type_of(entry)

    if entry_type in (EntryType.DEPOSIT, EntryType.ADJUSTMENT, EntryType.WITHDRAW):
        # withdrawals are stored negative
        state.wallet += amount
        if is_cancel_reversal(entry):
            state.market = max(state.market - abs(amount), 0)
    elif entry_type == EntryType.COMMIT:
        delta = abs(amount)
        state.wallet -= delta
        state.market += delta
    elif entry_type == EntryType.PAYOUT:
        delta = abs(amount)
        state.market = max(state.market - delta, 0)
        state.wallet += delta
    else:
        state.wallet += amount
    return state


def _label(moment: datetime) -> str:
    return f"{moment:%b} {moment.day}"


def _to_point(moment: datetime, state: ExposureState) -> ExposurePoint:
    wallet = max(state.wallet, 0)
    market = max(state.market, 0)
    return ExposurePoint(
        timestamp=moment,
        label=_label(moment),
        wallet_micros=wallet,
        market_micros=market,
        wallet=to_display(wallet),
        market=to_display(market),
    )


def sort_entries(entries: Iterable[Any]) -> list[Any]:
    # the store-assigned sequence breaks timestamp ties, so input order never matters
    return sorted(entries, key=lambda e: (as_utc(e.created_at), getattr(e, "sequence", 0)))


def build_exposure_series(entries: Iterable[Any]) -> list[ExposurePoint]:
    """One point per entry, in ``created_at`` order."""
    state = ExposureState()
    points = []
    for entry in sort_entries(entries):
        apply_entry(state, entry)
        points.append(_to_point(as_utc(entry.created_at), state))
    return points


def build_daily_exposure_series(
    entries: Iterable[Any],
    window_days: int = DEFAULT_EXPOSURE_WINDOW_DAYS,
    now: Optional[datetime] = None,
) -> list[ExposurePoint]:
    """One point per calendar day (UTC) over a trailing window ending today.

    Entries older than the window are folded into the opening balance.
    """
    ordered = sort_entries(entries)
    if not ordered:
        return []

    days = max(1, int(window_days))
    now = as_utc(now) if now is not None else utc_now()
    today = now.replace(hour=0, minute=0, second=0, microsecond=0)
    window_start = today - timedelta(days=days - 1)

    state = ExposureState()
    index = 0
    while index < len(ordered) and as_utc(ordered[index].created_at) < window_start:
        apply_entry(state, ordered[index])
        index += 1

    points = []
    for offset in range(days):
        day = window_start + timedelta(days=offset)
        day_end = min(day + timedelta(days=1), now + timedelta(microseconds=1))
        while index < len(ordered) and as_utc(ordered[index].created_at) < day_end:
            apply_entry(state, ordered[index])
            index += 1
        points.append(_to_point(day, state))
    return points
