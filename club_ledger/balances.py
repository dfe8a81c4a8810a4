"""
Balance folds over ledger entries.

Balances are never stored. Every figure here is recomputed from the
entries on each call, and every reduction stays in Python ``int``.
"""

from typing import Iterable
from uuid import UUID

from .models import EntryType, LedgerEntry


def sum_amounts(entries: Iterable[LedgerEntry]) -> int:
    return sum((e.amount for e in entries), 0)


def active_commit_volume(
    entries: Iterable[LedgerEntry],
    open_round_ids: set[UUID],
    club_ids: Iterable[UUID],
) -> dict[UUID, int]:
    """Sum |COMMIT| per club, counting only rounds that are not settled yet.

    Whether a round is settled comes from the round record; a COMMIT entry
    alone cannot tell. Every requested club appears in the result.
    """
    volume = {club_id: 0 for club_id in club_ids}
    for entry in entries:
        if entry.entry_type != EntryType.COMMIT or entry.club_id not in volume:
            continue
        if entry.round_id is None or entry.round_id not in open_round_ids:
            continue
        volume[entry.club_id] += abs(entry.amount)
    return volume
