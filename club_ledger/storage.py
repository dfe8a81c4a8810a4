"""
Ledger storage backends.

The store is the only place that decides atomicity. Every public write
method below is one all-or-nothing operation: either every row it was
given becomes visible or none does. There is no update or delete for
ledger entries.
"""

import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Iterable, Optional
from uuid import UUID

from .amounts import format_usdc
from .errors import ConflictError, InsufficientBalanceError, RoundNotFoundError
from .models import (
    Club,
    ClubMember,
    EntryType,
    LedgerEntry,
    MemberRole,
    MemberStatus,
    PredictionRound,
    PredictionRoundMember,
    RoundStatus,
    as_utc,
)

DEMO_CLUB_ID = UUID("33333333-3333-3333-3333-333333333333")
DEMO_ADMIN_ID = UUID("550e8400-e29b-41d4-a716-446655440000")
DEMO_MEMBER_ID = UUID("660e8400-e29b-41d4-a716-446655440001")
DEMO_ADMIN_SAFE = "0x1111111111111111111111111111111111111111"
DEMO_MEMBER_SAFE = "0x2222222222222222222222222222222222222222"


class LedgerStorage(ABC):

    # clubs and memberships are owned by the club layer; the ledger only reads them

    @abstractmethod
    def add_club(self, club: Club) -> Club: ...

    @abstractmethod
    def get_club(self, club_id: UUID) -> Optional[Club]: ...

    @abstractmethod
    def add_member(self, member: ClubMember) -> ClubMember: ...

    @abstractmethod
    def get_member(self, club_id: UUID, user_id: UUID) -> Optional[ClubMember]: ...

    @abstractmethod
    def list_members(self, club_id: UUID, status: Optional[MemberStatus] = None) -> list[ClubMember]: ...

    @abstractmethod
    def append_entries(self, entries: list[LedgerEntry]) -> list[LedgerEntry]: ...

    @abstractmethod
    def query_entries(
        self,
        user_id: Optional[UUID] = None,
        club_id: Optional[UUID] = None,
        safe_address: Optional[str] = None,
        round_id: Optional[UUID] = None,
        entry_types: Optional[Iterable[EntryType]] = None,
        since: Optional[datetime] = None,
    ) -> list[LedgerEntry]: ...

    @abstractmethod
    def create_round(
        self,
        prediction_round: PredictionRound,
        members: list[PredictionRoundMember],
        entries: list[LedgerEntry],
    ) -> list[LedgerEntry]: ...

    @abstractmethod
    def get_round(self, round_id: UUID) -> Optional[PredictionRound]: ...

    @abstractmethod
    def get_round_members(self, round_id: UUID) -> list[PredictionRoundMember]: ...

    @abstractmethod
    def list_rounds(
        self,
        club_id: UUID,
        status: Optional[RoundStatus] = None,
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> tuple[list[PredictionRound], int]: ...

    @abstractmethod
    def open_round_ids(self, club_ids: Iterable[UUID]) -> set[UUID]: ...

    @abstractmethod
    def transition_round(
        self, round_id: UUID, from_statuses: Iterable[RoundStatus], to_status: RoundStatus
    ) -> PredictionRound: ...

    @abstractmethod
    def settle_round(
        self,
        round_id: UUID,
        members: list[PredictionRoundMember],
        entries: list[LedgerEntry],
        settled_at: datetime,
        outcome: Optional[str] = None,
    ) -> tuple[PredictionRound, list[LedgerEntry]]: ...

    @abstractmethod
    def cancel_round(
        self, round_id: UUID, entries: list[LedgerEntry]
    ) -> tuple[PredictionRound, list[LedgerEntry]]:
        """Post the reversal entries and move an open round to CANCELLED."""

    @abstractmethod
    def sync_settled_payouts(
        self, round_id: UUID, members: list[PredictionRoundMember], entries: list[LedgerEntry]
    ) -> list[LedgerEntry]:
        """Refresh member figures of a SETTLED round and post the PAYOUT
        entries it is missing. Entries for users that already hold a PAYOUT
        on the round are dropped."""

    @abstractmethod
    def append_withdrawal(self, entry: LedgerEntry) -> LedgerEntry:
        """Append a WITHDRAW entry unless it would take the user's club
        balance below zero."""


def _entry_sort_key(entry: LedgerEntry):
    return (as_utc(entry.created_at), entry.sequence)


class InMemoryStorage(LedgerStorage):
    """Process-local store. One re-entrant lock serializes every operation,
    and each write checks all of its preconditions before touching state."""

    def __init__(self, seed: bool = False):
        self._lock = threading.RLock()
        self._next_sequence = 1
        self.clubs: dict[UUID, Club] = {}
        self.members: dict[tuple[UUID, UUID], ClubMember] = {}
        self.ledger_entries: list[LedgerEntry] = []
        self.tx_hash_index: set[tuple[EntryType, str]] = set()
        self.rounds: dict[UUID, PredictionRound] = {}
        self.round_members: dict[UUID, list[PredictionRoundMember]] = {}
        self.cohort_index: dict[str, UUID] = {}
        if seed:
            self._seed_data()

    def _seed_data(self):
        seed_demo_club(self)

    def add_club(self, club: Club) -> Club:
        with self._lock:
            if club.id in self.clubs or any(c.slug == club.slug for c in self.clubs.values()):
                raise ConflictError(f"Club {club.slug} already exists")
            self.clubs[club.id] = club
            return club

    def get_club(self, club_id: UUID) -> Optional[Club]:
        with self._lock:
            return self.clubs.get(club_id)

    def add_member(self, member: ClubMember) -> ClubMember:
        with self._lock:
            key = (member.club_id, member.user_id)
            if key in self.members:
                raise ConflictError(f"User {member.user_id} is already a member of club {member.club_id}")
            self.members[key] = member
            return member

    def get_member(self, club_id: UUID, user_id: UUID) -> Optional[ClubMember]:
        with self._lock:
            return self.members.get((club_id, user_id))

    def list_members(self, club_id: UUID, status: Optional[MemberStatus] = None) -> list[ClubMember]:
        with self._lock:
            return [
                m for (cid, _), m in self.members.items()
                if cid == club_id and (status is None or m.status == status)
            ]

    def append_entries(self, entries: list[LedgerEntry]) -> list[LedgerEntry]:
        with self._lock:
            self._check_tx_hashes(entries)
            return self._insert_entries(entries)

    def query_entries(
        self,
        user_id: Optional[UUID] = None,
        club_id: Optional[UUID] = None,
        safe_address: Optional[str] = None,
        round_id: Optional[UUID] = None,
        entry_types: Optional[Iterable[EntryType]] = None,
        since: Optional[datetime] = None,
    ) -> list[LedgerEntry]:
        types = set(entry_types) if entry_types is not None else None
        cutoff = as_utc(since) if since is not None else None
        with self._lock:
            snapshot = list(self.ledger_entries)
        matched = [
            e for e in snapshot
            if (user_id is None or e.user_id == user_id)
            and (club_id is None or e.club_id == club_id)
            and (safe_address is None or e.safe_address == safe_address)
            and (round_id is None or e.round_id == round_id)
            and (types is None or e.entry_type in types)
            and (cutoff is None or as_utc(e.created_at) >= cutoff)
        ]
        matched.sort(key=_entry_sort_key)
        return matched

    def create_round(
        self,
        prediction_round: PredictionRound,
        members: list[PredictionRoundMember],
        entries: list[LedgerEntry],
    ) -> list[LedgerEntry]:
        with self._lock:
            if prediction_round.cohort_id in self.cohort_index:
                raise ConflictError(f"Cohort {prediction_round.cohort_id} already exists")
            self._check_tx_hashes(entries)

            self.rounds[prediction_round.id] = prediction_round
            self.round_members[prediction_round.id] = list(members)
            self.cohort_index[prediction_round.cohort_id] = prediction_round.id
            return self._insert_entries(entries)

    def get_round(self, round_id: UUID) -> Optional[PredictionRound]:
        with self._lock:
            return self.rounds.get(round_id)

    def get_round_members(self, round_id: UUID) -> list[PredictionRoundMember]:
        with self._lock:
            return list(self.round_members.get(round_id, []))

    def list_rounds(
        self,
        club_id: UUID,
        status: Optional[RoundStatus] = None,
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> tuple[list[PredictionRound], int]:
        with self._lock:
            rounds = [
                r for r in self.rounds.values()
                if r.club_id == club_id and (status is None or r.status == status)
            ]
        rounds.sort(key=lambda r: as_utc(r.created_at), reverse=True)
        end = None if limit is None else offset + limit
        return rounds[offset:end], len(rounds)

    def open_round_ids(self, club_ids: Iterable[UUID]) -> set[UUID]:
        wanted = set(club_ids)
        with self._lock:
            return {
                r.id for r in self.rounds.values()
                if r.club_id in wanted and r.is_open()
            }

    def transition_round(
        self, round_id: UUID, from_statuses: Iterable[RoundStatus], to_status: RoundStatus
    ) -> PredictionRound:
        allowed = set(from_statuses)
        with self._lock:
            current = self.rounds.get(round_id)
            if current is None:
                raise RoundNotFoundError(f"Round {round_id} not found")
            if current.status not in allowed:
                raise ConflictError(f"Round {round_id} is {current.status.value}, cannot move to {to_status.value}")
            updated = current.model_copy(update={"status": to_status})
            self.rounds[round_id] = updated
            return updated

    def settle_round(
        self,
        round_id: UUID,
        members: list[PredictionRoundMember],
        entries: list[LedgerEntry],
        settled_at: datetime,
        outcome: Optional[str] = None,
    ) -> tuple[PredictionRound, list[LedgerEntry]]:
        with self._lock:
            current = self._open_round(round_id)
            self._check_tx_hashes(entries)

            stored = self._insert_entries(entries)
            self.round_members[round_id] = list(members)
            updated = current.model_copy(update={
                "status": RoundStatus.SETTLED,
                "outcome": outcome,
                "settled_at": settled_at,
            })
            self.rounds[round_id] = updated
            return updated, stored

    def cancel_round(
        self, round_id: UUID, entries: list[LedgerEntry]
    ) -> tuple[PredictionRound, list[LedgerEntry]]:
        with self._lock:
            current = self._open_round(round_id)
            self._check_tx_hashes(entries)

            stored = self._insert_entries(entries)
            updated = current.model_copy(update={"status": RoundStatus.CANCELLED})
            self.rounds[round_id] = updated
            return updated, stored

    def sync_settled_payouts(
        self, round_id: UUID, members: list[PredictionRoundMember], entries: list[LedgerEntry]
    ) -> list[LedgerEntry]:
        with self._lock:
            current = self.rounds.get(round_id)
            if current is None:
                raise RoundNotFoundError(f"Round {round_id} not found")
            if not current.is_settled():
                raise ConflictError(f"Round {round_id} is {current.status.value}, not SETTLED")

            paid = {
                e.user_id for e in self.ledger_entries
                if e.round_id == round_id and e.entry_type == EntryType.PAYOUT
            }
            missing = [e for e in entries if e.user_id not in paid]
            self._check_tx_hashes(missing)

            by_user = {m.user_id: m for m in members}
            self.round_members[round_id] = [
                by_user.get(m.user_id, m) for m in self.round_members.get(round_id, [])
            ]
            return self._insert_entries(missing)

    def append_withdrawal(self, entry: LedgerEntry) -> LedgerEntry:
        with self._lock:
            balance = sum(
                e.amount for e in self.ledger_entries
                if e.user_id == entry.user_id and e.club_id == entry.club_id
            )
            if balance + entry.amount < 0:
                raise InsufficientBalanceError(
                    f"Withdrawal of {format_usdc(-entry.amount)} exceeds club balance {format_usdc(balance)}"
                )
            self._check_tx_hashes([entry])
            return self._insert_entries([entry])[0]

    def _open_round(self, round_id: UUID) -> PredictionRound:
        current = self.rounds.get(round_id)
        if current is None:
            raise RoundNotFoundError(f"Round {round_id} not found")
        if not current.is_open():
            raise ConflictError(f"Round {round_id} is already {current.status.value.lower()}")
        return current

    def _check_tx_hashes(self, entries: list[LedgerEntry]):
        seen = set()
        for entry in entries:
            if entry.tx_hash is None:
                continue
            key = (entry.entry_type, entry.tx_hash)
            if key in self.tx_hash_index or key in seen:
                raise ConflictError(f"{entry.entry_type.value} for tx {entry.tx_hash} already recorded")
            seen.add(key)

    def _insert_entries(self, entries: list[LedgerEntry]) -> list[LedgerEntry]:
        stored = []
        for entry in entries:
            sequenced = entry.model_copy(update={"sequence": self._next_sequence})
            self._next_sequence += 1
            self.ledger_entries.append(sequenced)
            if sequenced.tx_hash is not None:
                self.tx_hash_index.add((sequenced.entry_type, sequenced.tx_hash))
            stored.append(sequenced)
        return stored


def seed_demo_club(storage: LedgerStorage) -> Club:
    """One club with an admin and a regular member, both with club wallets."""
    club = storage.add_club(Club(id=DEMO_CLUB_ID, slug="demo-club", name="Demo Prediction Club"))
    storage.add_member(ClubMember(
        club_id=DEMO_CLUB_ID, user_id=DEMO_ADMIN_ID, role=MemberRole.ADMIN, safe_address=DEMO_ADMIN_SAFE,
    ))
    storage.add_member(ClubMember(
        club_id=DEMO_CLUB_ID, user_id=DEMO_MEMBER_ID, safe_address=DEMO_MEMBER_SAFE,
    ))
    return club
