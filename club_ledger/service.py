from datetime import datetime
from typing import Iterable, Optional
from uuid import UUID, uuid4

from .amounts import format_usdc, is_valid_bytes32, parse_amount, parse_positive_amount
from .balances import active_commit_volume, sum_amounts
from .errors import (
    ClubNotFoundError,
    ForbiddenError,
    InvalidEntryError,
    LedgerValidationError,
)
from .exposure import DEFAULT_EXPOSURE_WINDOW_DAYS, build_daily_exposure_series, build_exposure_series
from .logger import get_logger
from .models import (
    ClubMember,
    DepositRequest,
    EntryType,
    ExposurePoint,
    LedgerEntry,
    LedgerHistoryResponse,
    RecordEntryRequest,
    UserBalance,
    WithdrawRequest,
    as_utc,
    utc_now,
)
from .storage import InMemoryStorage, LedgerStorage

logger = get_logger(__name__)

_ROUND_ENTRY_TYPES = (EntryType.COMMIT.value, EntryType.PAYOUT.value)


def _check_sign(entry_type: EntryType, amount: int):
    if entry_type in (EntryType.DEPOSIT, EntryType.PAYOUT) and amount <= 0:
        raise InvalidEntryError(f"{entry_type.value} amount must be positive")
    if entry_type in (EntryType.WITHDRAW, EntryType.COMMIT) and amount >= 0:
        raise InvalidEntryError(f"{entry_type.value} amount must be negative")
    if entry_type == EntryType.ADJUSTMENT and amount == 0:
        raise InvalidEntryError("ADJUSTMENT amount must not be zero")


class LedgerService:
    def __init__(self, storage: Optional[LedgerStorage] = None, asset: str = "USDC.e"):
        self.storage = storage or InMemoryStorage()
        self.asset = asset

    def new_entry(
        self,
        user_id: UUID,
        club_id: UUID,
        entry_type: EntryType,
        amount: int,
        safe_address: str = "",
        round_id: Optional[UUID] = None,
        tx_hash: Optional[str] = None,
        metadata: Optional[dict] = None,
        created_at: Optional[datetime] = None,
    ) -> LedgerEntry:
        """Build an unsaved entry, enforcing the sign convention of its type."""
        _check_sign(entry_type, amount)
        return LedgerEntry(
            id=uuid4(),
            user_id=user_id,
            club_id=club_id,
            safe_address=safe_address,
            entry_type=entry_type,
            amount=amount,
            asset=self.asset,
            round_id=round_id,
            tx_hash=tx_hash,
            metadata=metadata or {},
            created_at=as_utc(created_at) if created_at else utc_now(),
        )

    def _entry_from_request(self, user_id: UUID, request: RecordEntryRequest) -> LedgerEntry:
        try:
            entry_type = EntryType(request.entry_type)
        except ValueError:
            raise InvalidEntryError(f"Unknown entry type {request.entry_type!r}")
        try:
            amount = parse_amount(request.amount)
        except LedgerValidationError as e:
            raise InvalidEntryError(str(e)) from e

        return self.new_entry(
            user_id=user_id,
            club_id=request.club_id,
            entry_type=entry_type,
            amount=amount,
            safe_address=request.safe_address,
            round_id=request.round_id,
            tx_hash=request.tx_hash,
            metadata=request.metadata,
            created_at=request.created_at,
        )

    def _log_appended(self, stored: LedgerEntry):
        logger.info(
            "ledger_entry_appended",
            entry_id=str(stored.id),
            user_id=str(stored.user_id),
            club_id=str(stored.club_id),
            entry_type=stored.entry_type.value,
            amount=str(stored.amount),
        )

    def append_entry(self, user_id: UUID, request: RecordEntryRequest) -> LedgerEntry:
        """Append one entry with no membership checks. Internal callers only."""
        stored = self.storage.append_entries([self._entry_from_request(user_id, request)])[0]
        self._log_appended(stored)
        return stored

    def record_member_entry(self, user_id: UUID, request: RecordEntryRequest) -> LedgerEntry:
        """Append an entry on behalf of an active club member.

        COMMIT and PAYOUT only come from the round lifecycle. A DEPOSIT needs
        the on-chain transaction hash, a WITHDRAW is balance-checked by the
        store, and an ADJUSTMENT needs a club admin.
        """
        member = self._require_active_member(request.club_id, user_id)
        if request.entry_type in _ROUND_ENTRY_TYPES:
            raise InvalidEntryError(f"{request.entry_type} entries are posted by prediction rounds only")
        if request.entry_type == EntryType.ADJUSTMENT.value and not member.is_active_admin():
            raise ForbiddenError("Only club admins can post adjustments")

        # round links and entry sources are set by the round lifecycle only
        update = {
            "round_id": None,
            "metadata": {k: v for k, v in request.metadata.items() if k != "source"},
        }
        if request.entry_type == EntryType.DEPOSIT.value:
            if not is_valid_bytes32(request.tx_hash):
                raise InvalidEntryError("DEPOSIT entries need a 0x-prefixed 32-byte tx_hash")
            update["tx_hash"] = request.tx_hash.lower()
        if not request.safe_address:
            update["safe_address"] = member.safe_address or ""

        entry = self._entry_from_request(user_id, request.model_copy(update=update))
        if entry.entry_type == EntryType.WITHDRAW:
            stored = self.storage.append_withdrawal(entry)
        else:
            stored = self.storage.append_entries([entry])[0]
        self._log_appended(stored)
        return stored

    def record_deposit(self, club_id: UUID, user_id: UUID, request: DepositRequest) -> LedgerEntry:
        member = self._require_active_member(club_id, user_id)
        amount = parse_positive_amount(request.amount)
        if not is_valid_bytes32(request.tx_hash):
            raise LedgerValidationError("tx_hash must be a 0x-prefixed 32-byte hex string")

        entry = self.new_entry(
            user_id=user_id,
            club_id=club_id,
            entry_type=EntryType.DEPOSIT,
            amount=amount,
            safe_address=member.safe_address or "",
            tx_hash=request.tx_hash.lower(),
            metadata={"source": "wallet-deposit"},
        )
        stored = self.storage.append_entries([entry])[0]
        logger.info("deposit_recorded", user_id=str(user_id), club_id=str(club_id), amount=str(amount))
        return stored

    def record_withdrawal(self, club_id: UUID, user_id: UUID, request: WithdrawRequest) -> LedgerEntry:
        """Record a withdrawal the chain layer has executed.

        The store checks the club balance in the same operation that appends
        the entry, so concurrent withdrawals cannot overdraw the ledger.
        """
        member = self._require_active_member(club_id, user_id)
        amount = parse_positive_amount(request.amount)
        if request.tx_hash is not None and not is_valid_bytes32(request.tx_hash):
            raise LedgerValidationError("tx_hash must be a 0x-prefixed 32-byte hex string")

        entry = self.new_entry(
            user_id=user_id,
            club_id=club_id,
            entry_type=EntryType.WITHDRAW,
            amount=-amount,
            safe_address=member.safe_address or "",
            tx_hash=request.tx_hash.lower() if request.tx_hash else None,
            metadata={"source": "wallet-withdraw"},
        )
        stored = self.storage.append_withdrawal(entry)
        logger.info("withdrawal_recorded", user_id=str(user_id), club_id=str(club_id), amount=str(amount))
        return stored

    def query(
        self,
        user_id: UUID,
        club_id: Optional[UUID] = None,
        safe_address: Optional[str] = None,
    ) -> list[LedgerEntry]:
        return self.storage.query_entries(user_id=user_id, club_id=club_id, safe_address=safe_address)

    def get_club_ledger_history(self, club_id: UUID) -> list[LedgerEntry]:
        return self.storage.query_entries(club_id=club_id)

    def get_ledger_history(
        self, user_id: UUID, club_id: Optional[UUID] = None, limit: int = 50, offset: int = 0
    ) -> LedgerHistoryResponse:
        entries = self.query(user_id, club_id=club_id)
        newest_first = list(reversed(entries))
        return LedgerHistoryResponse(
            user_id=user_id,
            club_id=club_id,
            entries=newest_first[offset:offset + limit],
            total_count=len(entries),
            balance=sum_amounts(entries),
        )

    def get_user_club_balance(self, user_id: UUID, club_id: UUID) -> int:
        return sum_amounts(self.query(user_id, club_id=club_id))

    def get_user_net_balance(self, user_id: UUID) -> int:
        return sum_amounts(self.query(user_id))

    def get_user_wallet_balance(self, user_id: UUID, safe_address: str) -> int:
        return sum_amounts(self.query(user_id, safe_address=safe_address))

    def get_balance(
        self, user_id: UUID, club_id: Optional[UUID] = None, safe_address: Optional[str] = None
    ) -> UserBalance:
        entries = self.query(user_id, club_id=club_id, safe_address=safe_address)
        balance = sum_amounts(entries)
        return UserBalance(
            user_id=user_id,
            club_id=club_id,
            safe_address=safe_address,
            balance=balance,
            balance_display=format_usdc(balance),
            total_entries=len(entries),
            last_entry_at=entries[-1].created_at if entries else None,
        )

    def get_clubs_active_commit_volume(self, club_ids: Iterable[UUID]) -> dict[UUID, int]:
        club_ids = list(dict.fromkeys(club_ids))
        open_rounds = self.storage.open_round_ids(club_ids)
        commits = []
        for club_id in club_ids:
            commits.extend(self.storage.query_entries(club_id=club_id, entry_types=[EntryType.COMMIT]))
        return active_commit_volume(commits, open_rounds, club_ids)

    def get_exposure_series(self, user_id: UUID, club_id: Optional[UUID] = None) -> list[ExposurePoint]:
        return build_exposure_series(self.query(user_id, club_id=club_id))

    def get_daily_exposure(
        self,
        user_id: UUID,
        window_days: int = DEFAULT_EXPOSURE_WINDOW_DAYS,
        club_id: Optional[UUID] = None,
        now: Optional[datetime] = None,
    ) -> list[ExposurePoint]:
        return build_daily_exposure_series(self.query(user_id, club_id=club_id), window_days, now)

    def get_club_or_raise(self, club_id: UUID):
        club = self.storage.get_club(club_id)
        if club is None:
            raise ClubNotFoundError(f"Club {club_id} not found")
        return club

    def _require_active_member(self, club_id: UUID, user_id: UUID) -> ClubMember:
        self.get_club_or_raise(club_id)
        member = self.storage.get_member(club_id, user_id)
        if member is None or not member.is_active():
            raise ForbiddenError(f"User {user_id} is not an active member of club {club_id}")
        return member
