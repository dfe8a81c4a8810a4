"""
Prediction round (cohort) lifecycle.

    PENDING ---mark_committed---> COMMITTED ---settle_round---> SETTLED
    PENDING ---settle_round---------------------------------> SETTLED
    PENDING | COMMITTED ---cancel_round---------------------> CANCELLED

Creating a round writes the round, its members and one COMMIT entry per
member in a single store transaction. Settling writes the PAYOUT entries,
the member payout/pnl figures and the SETTLED status in another.
Cancelling writes one reversing ADJUSTMENT per COMMIT and the CANCELLED
status in a third. Every check runs before the transaction starts, so a
rejected request never leaves a trace in the ledger.
"""

from collections import Counter
from datetime import datetime
from typing import Optional
from uuid import UUID, uuid4

from .amounts import is_valid_bytes32, parse_amount, parse_non_negative_amount, parse_positive_amount
from .errors import ConflictError, ForbiddenError, LedgerValidationError, RoundNotFoundError
from .exposure import is_cancel_reversal
from .logger import get_logger
from .models import (
    CANCEL_REVERSAL_SOURCE,
    ClubMember,
    ClubPerformance,
    CreateRoundRequest,
    EntryType,
    LedgerEntry,
    PayoutSyncResponse,
    PredictionRound,
    PredictionRoundMember,
    RoundListResponse,
    RoundMemberOutcome,
    RoundResponse,
    RoundStatus,
    SettleRoundRequest,
    utc_now,
)
from .performance import DEFAULT_PERFORMANCE_DAYS, resolve_club_performance
from .service import LedgerService

logger = get_logger(__name__)

MAX_PERFORMANCE_DAYS = 365

SETTLEMENT_SOURCE = "round-settlement"
PAYOUT_SYNC_SOURCE = "round-payout-sync"


class PredictionRoundService:
    def __init__(self, ledger: LedgerService):
        self.ledger = ledger
        self.storage = ledger.storage

    def require_admin(self, club_id: UUID, user_id: UUID) -> ClubMember:
        self.ledger.get_club_or_raise(club_id)
        member = self.storage.get_member(club_id, user_id)
        if member is None or not member.is_active_admin():
            raise ForbiddenError("Only club admins can perform this action")
        return member

    def create_round(self, club_id: UUID, admin_user_id: UUID, request: CreateRoundRequest) -> RoundResponse:
        self.require_admin(club_id, admin_user_id)

        if not is_valid_bytes32(request.cohort_id):
            raise LedgerValidationError("Invalid cohort ID (must be bytes32)")
        if not request.members:
            raise LedgerValidationError("A prediction round needs at least one member")

        commits: list[tuple[ClubMember, int]] = []
        seen: set[UUID] = set()
        for item in request.members:
            if item.user_id in seen:
                raise LedgerValidationError(f"User {item.user_id} is listed more than once")
            seen.add(item.user_id)
            amount = parse_positive_amount(item.commit_amount, field=f"commit_amount for {item.user_id}")
            member = self.storage.get_member(club_id, item.user_id)
            if member is None or not member.is_active():
                raise LedgerValidationError(f"User {item.user_id} is not an active member of this club")
            if not member.safe_address:
                raise LedgerValidationError(f"User {item.user_id} has no club wallet")
            commits.append((member, amount))

        now = utc_now()
        round_id = uuid4()
        prediction_round = PredictionRound(
            id=round_id,
            club_id=club_id,
            cohort_id=request.cohort_id.lower(),
            market_ref=request.market_ref,
            market_title=request.market_title,
            stake_total=sum(amount for _, amount in commits),
            status=RoundStatus.PENDING,
            created_by=admin_user_id,
            created_at=now,
        )
        members = [
            PredictionRoundMember(
                round_id=round_id,
                user_id=member.user_id,
                safe_address=member.safe_address,
                commit_amount=amount,
            )
            for member, amount in commits
        ]
        # commits leave the wallet, so they are stored negative
        entries = [
            self.ledger.new_entry(
                user_id=member.user_id,
                club_id=club_id,
                entry_type=EntryType.COMMIT,
                amount=-amount,
                safe_address=member.safe_address,
                round_id=round_id,
                created_at=now,
            )
            for member, amount in commits
        ]

        stored = self.storage.create_round(prediction_round, members, entries)
        logger.info(
            "prediction_round_created",
            round_id=str(round_id),
            club_id=str(club_id),
            cohort_id=prediction_round.cohort_id,
            members=len(members),
            stake_total=str(prediction_round.stake_total),
        )
        return RoundResponse(
            round=prediction_round,
            members=members,
            ledger_entries=stored,
            message="Prediction round created",
        )

    def mark_committed(self, round_id: UUID) -> PredictionRound:
        updated = self.storage.transition_round(round_id, [RoundStatus.PENDING], RoundStatus.COMMITTED)
        logger.info("prediction_round_committed", round_id=str(round_id))
        return updated

    def _resolve_payouts(
        self, members: list[PredictionRoundMember], request: SettleRoundRequest
    ) -> list[tuple[PredictionRoundMember, int, int]]:
        """Match payouts to round members as (member, payout, pnl) triples."""
        payouts = {}
        for payout in request.payouts:
            if payout.user_id in payouts:
                raise LedgerValidationError(f"Duplicate payout for user {payout.user_id}")
            payouts[payout.user_id] = payout

        member_ids = {m.user_id for m in members}
        unknown = [str(user_id) for user_id in payouts if user_id not in member_ids]
        if unknown:
            raise LedgerValidationError(f"Payouts for users outside the round: {', '.join(unknown)}")
        missing = [m for m in members if m.user_id not in payouts]
        if missing:
            raise LedgerValidationError(f"Missing payouts for {len(missing)} members")

        resolved = []
        for member in members:
            payout = payouts[member.user_id]
            payout_amount = parse_non_negative_amount(payout.payout_amount, field=f"payout_amount for {member.user_id}")
            if payout.pnl_amount is not None:
                pnl_amount = parse_amount(payout.pnl_amount, field=f"pnl_amount for {member.user_id}")
            else:
                pnl_amount = payout_amount - member.commit_amount
            resolved.append((member, payout_amount, pnl_amount))
        return resolved

    def _payout_entry(
        self, prediction_round: PredictionRound, member: PredictionRoundMember, amount: int, source: str, now
    ) -> LedgerEntry:
        return self.ledger.new_entry(
            user_id=member.user_id,
            club_id=prediction_round.club_id,
            entry_type=EntryType.PAYOUT,
            amount=amount,
            safe_address=member.safe_address,
            round_id=prediction_round.id,
            metadata={"source": source},
            created_at=now,
        )

    def settle_round(self, round_id: UUID, request: SettleRoundRequest) -> RoundResponse:
        prediction_round = self.get_round_or_raise(round_id)
        if not prediction_round.is_open():
            raise ConflictError(f"Round {round_id} is already {prediction_round.status.value.lower()}")

        now = utc_now()
        settled_members: list[PredictionRoundMember] = []
        entries: list[LedgerEntry] = []
        for member, payout_amount, pnl_amount in self._resolve_payouts(self.storage.get_round_members(round_id), request):
            settled_members.append(member.model_copy(update={
                "payout_amount": payout_amount,
                "pnl_amount": pnl_amount,
                "settled_at": now,
            }))
            # a losing member gets no PAYOUT entry; the COMMIT already moved the funds
            if payout_amount > 0:
                entries.append(self._payout_entry(prediction_round, member, payout_amount, SETTLEMENT_SOURCE, now))

        updated, stored = self.storage.settle_round(round_id, settled_members, entries, now, request.outcome)
        logger.info(
            "prediction_round_settled",
            round_id=str(round_id),
            club_id=str(updated.club_id),
            payouts=len(stored),
            payout_total=str(sum(e.amount for e in stored)),
        )
        return RoundResponse(
            round=updated,
            members=settled_members,
            ledger_entries=stored,
            message="Prediction round settled",
        )

    def cancel_round(self, round_id: UUID, reason: str) -> RoundResponse:
        """Cancel an open round and hand every COMMIT back as an ADJUSTMENT.

        Cancelling an already cancelled round writes nothing. A commit that
        already has a matching reversal (same user and amount) is skipped.
        """
        prediction_round = self.get_round_or_raise(round_id)
        members = self.storage.get_round_members(round_id)
        if prediction_round.status == RoundStatus.CANCELLED:
            return RoundResponse(
                round=prediction_round,
                members=members,
                message="Prediction round already cancelled",
            )
        if prediction_round.is_settled():
            raise ConflictError(f"Round {round_id} is already settled")

        round_entries = self.storage.query_entries(round_id=round_id)
        reversed_already = Counter(
            (e.user_id, abs(e.amount)) for e in round_entries if is_cancel_reversal(e)
        )
        now = utc_now()
        reversals: list[LedgerEntry] = []
        for commit in (e for e in round_entries if e.entry_type == EntryType.COMMIT):
            key = (commit.user_id, abs(commit.amount))
            if reversed_already[key] > 0:
                reversed_already[key] -= 1
                continue
            reversals.append(self.ledger.new_entry(
                user_id=commit.user_id,
                club_id=commit.club_id,
                entry_type=EntryType.ADJUSTMENT,
                amount=abs(commit.amount),
                safe_address=commit.safe_address,
                round_id=round_id,
                metadata={"source": CANCEL_REVERSAL_SOURCE, "reason": reason},
                created_at=now,
            ))

        updated, stored = self.storage.cancel_round(round_id, reversals)
        logger.info(
            "prediction_round_cancelled",
            round_id=str(round_id),
            club_id=str(updated.club_id),
            reversals=len(stored),
            reason=reason,
        )
        return RoundResponse(
            round=updated,
            members=members,
            ledger_entries=stored,
            message="Prediction round cancelled",
        )

    def sync_settled_payouts(self, round_id: UUID, request: SettleRoundRequest) -> PayoutSyncResponse:
        """Bring a settled round's member figures and PAYOUT entries in line
        with corrected payouts. Members that already hold a PAYOUT entry keep
        it; only the missing ones are posted. Running it twice is a no-op."""
        prediction_round = self.get_round_or_raise(round_id)
        if not prediction_round.is_settled():
            raise ConflictError(f"Round {round_id} is {prediction_round.status.value}, not SETTLED")

        now = utc_now()
        changed: list[PredictionRoundMember] = []
        entries: list[LedgerEntry] = []
        for member, payout_amount, pnl_amount in self._resolve_payouts(self.storage.get_round_members(round_id), request):
            if payout_amount > 0:
                entries.append(self._payout_entry(prediction_round, member, payout_amount, PAYOUT_SYNC_SOURCE, now))
            if member.payout_amount == payout_amount and member.pnl_amount == pnl_amount:
                continue
            changed.append(member.model_copy(update={
                "payout_amount": payout_amount,
                "pnl_amount": pnl_amount,
                "settled_at": member.settled_at or now,
            }))

        stored = self.storage.sync_settled_payouts(round_id, changed, entries)
        logger.info(
            "prediction_round_payouts_synced",
            round_id=str(round_id),
            updated_members=len(changed),
            created_payout_entries=len(stored),
        )
        return PayoutSyncResponse(
            round_id=round_id,
            updated_members=len(changed),
            created_payout_entries=len(stored),
            ledger_entries=stored,
        )

    def get_round_or_raise(self, round_id: UUID) -> PredictionRound:
        prediction_round = self.storage.get_round(round_id)
        if prediction_round is None:
            raise RoundNotFoundError(f"Round {round_id} not found")
        return prediction_round

    def get_round(self, round_id: UUID) -> RoundResponse:
        prediction_round = self.get_round_or_raise(round_id)
        return RoundResponse(
            round=prediction_round,
            members=self.storage.get_round_members(round_id),
            ledger_entries=self.storage.query_entries(round_id=round_id),
            message="ok",
        )

    def list_rounds(
        self, club_id: UUID, page: int = 1, page_size: int = 20, status: Optional[str] = None
    ) -> RoundListResponse:
        self.ledger.get_club_or_raise(club_id)
        if page < 1 or page_size < 1:
            raise LedgerValidationError("page and page_size must be positive")
        round_status = None
        if status:
            try:
                round_status = RoundStatus(status)
            except ValueError:
                raise LedgerValidationError(f"Unknown round status {status!r}")

        offset = (page - 1) * page_size
        items, total = self.storage.list_rounds(club_id, round_status, offset, page_size)
        return RoundListResponse(
            items=items,
            total=total,
            page=page,
            page_size=page_size,
            has_more=offset + len(items) < total,
        )

    def get_club_performance(
        self, club_id: UUID, days: int = DEFAULT_PERFORMANCE_DAYS, now: Optional[datetime] = None
    ) -> ClubPerformance:
        self.ledger.get_club_or_raise(club_id)
        if days < 1 or days > MAX_PERFORMANCE_DAYS:
            raise LedgerValidationError(f"days must be between 1 and {MAX_PERFORMANCE_DAYS}")

        rounds, _ = self.storage.list_rounds(club_id)
        outcomes = [
            RoundMemberOutcome(
                commit_amount=member.commit_amount,
                payout_amount=member.payout_amount,
                pnl_amount=member.pnl_amount,
                round_created_at=prediction_round.created_at,
            )
            for prediction_round in rounds
            if prediction_round.status != RoundStatus.CANCELLED
            for member in self.storage.get_round_members(prediction_round.id)
        ]
        return resolve_club_performance(
            outcomes,
            lambda: self.ledger.get_club_ledger_history(club_id),
            days,
            now,
        )
