from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Annotated, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, PlainSerializer

# Integer micro-units. Serialized as strings so JSON clients never see a float.
MicroAmount = Annotated[int, PlainSerializer(lambda v: str(v), return_type=str, when_used="json")]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class EntryType(str, Enum):
    DEPOSIT = "DEPOSIT"
    WITHDRAW = "WITHDRAW"
    COMMIT = "COMMIT"
    PAYOUT = "PAYOUT"
    ADJUSTMENT = "ADJUSTMENT"


class RoundStatus(str, Enum):
    PENDING = "PENDING"
    COMMITTED = "COMMITTED"
    SETTLED = "SETTLED"
    CANCELLED = "CANCELLED"


OPEN_ROUND_STATUSES = (RoundStatus.PENDING, RoundStatus.COMMITTED)

# metadata.source of the ADJUSTMENT that hands a cancelled round's COMMIT back
CANCEL_REVERSAL_SOURCE = "round-cancelled-reversal"


class MemberRole(str, Enum):
    ADMIN = "ADMIN"
    MEMBER = "MEMBER"


class MemberStatus(str, Enum):
    ACTIVE = "ACTIVE"
    PENDING = "PENDING"
    REMOVED = "REMOVED"


class Club(BaseModel):
    id: UUID
    slug: str
    name: str
    created_at: datetime = Field(default_factory=utc_now)

    model_config = ConfigDict(from_attributes=True)


class ClubMember(BaseModel):
    club_id: UUID
    user_id: UUID
    role: MemberRole = MemberRole.MEMBER
    status: MemberStatus = MemberStatus.ACTIVE
    safe_address: Optional[str] = None
    joined_at: datetime = Field(default_factory=utc_now)

    model_config = ConfigDict(from_attributes=True)

    def is_active(self) -> bool:
        return self.status == MemberStatus.ACTIVE

    def is_active_admin(self) -> bool:
        return self.is_active() and self.role == MemberRole.ADMIN


class LedgerEntry(BaseModel):
    id: UUID
    sequence: int = 0
    user_id: UUID
    club_id: UUID
    safe_address: str = ""
    entry_type: EntryType
    amount: MicroAmount
    asset: str = "USDC.e"
    round_id: Optional[UUID] = None
    tx_hash: Optional[str] = None
    metadata: dict = Field(default_factory=dict)
    created_at: datetime

    model_config = ConfigDict(from_attributes=True, frozen=True)


class RecordEntryRequest(BaseModel):
    club_id: UUID
    safe_address: str = ""
    entry_type: str
    amount: str = Field(..., description="Signed integer string in micro-units")
    round_id: Optional[UUID] = None
    tx_hash: Optional[str] = None
    metadata: dict = Field(default_factory=dict)
    created_at: Optional[datetime] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "club_id": "33333333-3333-3333-3333-333333333333",
            "safe_address": "0x1111111111111111111111111111111111111111",
            "entry_type": "ADJUSTMENT",
            "amount": "-250000",
            "metadata": {"reason": "fee correction"},
        }
    })


class DepositRequest(BaseModel):
    amount: str = Field(..., description="Positive integer string in micro-units")
    tx_hash: str


class WithdrawRequest(BaseModel):
    amount: str = Field(..., description="Positive integer string in micro-units")
    tx_hash: Optional[str] = None


class UserBalance(BaseModel):
    user_id: UUID
    club_id: Optional[UUID] = None
    safe_address: Optional[str] = None
    balance: MicroAmount
    balance_display: str
    total_entries: int
    last_entry_at: Optional[datetime] = None


class LedgerHistoryResponse(BaseModel):
    user_id: UUID
    club_id: Optional[UUID] = None
    entries: list[LedgerEntry]
    total_count: int
    balance: MicroAmount


class ClubVolume(BaseModel):
    club_id: UUID
    active_commit_volume: MicroAmount
    active_commit_volume_display: str


class ActiveVolumeResponse(BaseModel):
    items: list[ClubVolume]


class ExposurePoint(BaseModel):
    timestamp: datetime
    label: str
    wallet_micros: MicroAmount
    market_micros: MicroAmount
    wallet: Decimal
    market: Decimal


class ExposureResponse(BaseModel):
    user_id: UUID
    points: list[ExposurePoint]


class PredictionRound(BaseModel):
    id: UUID
    club_id: UUID
    cohort_id: str
    market_ref: Optional[str] = None
    market_title: Optional[str] = None
    stake_total: MicroAmount
    status: RoundStatus = RoundStatus.PENDING
    outcome: Optional[str] = None
    created_by: Optional[UUID] = None
    created_at: datetime
    settled_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    def is_settled(self) -> bool:
        return self.status == RoundStatus.SETTLED

    def is_open(self) -> bool:
        return self.status in OPEN_ROUND_STATUSES


class PredictionRoundMember(BaseModel):
    round_id: UUID
    user_id: UUID
    safe_address: str = ""
    commit_amount: MicroAmount
    payout_amount: Optional[MicroAmount] = None
    pnl_amount: Optional[MicroAmount] = None
    settled_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class RoundCommitInput(BaseModel):
    user_id: UUID
    commit_amount: str


class CreateRoundRequest(BaseModel):
    cohort_id: str = Field(..., description="bytes32 market reference, 0x-prefixed")
    market_ref: Optional[str] = Field(default=None, max_length=500)
    market_title: Optional[str] = Field(default=None, max_length=200)
    members: list[RoundCommitInput]

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "cohort_id": "0x" + "ab" * 32,
            "market_ref": "will-it-rain-tomorrow",
            "market_title": "Will it rain tomorrow?",
            "members": [
                {"user_id": "550e8400-e29b-41d4-a716-446655440000", "commit_amount": "1000000"},
            ],
        }
    })


class MemberPayoutInput(BaseModel):
    user_id: UUID
    payout_amount: str
    pnl_amount: Optional[str] = None


class SettleRoundRequest(BaseModel):
    payouts: list[MemberPayoutInput]
    outcome: Optional[str] = None


class CancelRoundRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)


class PayoutSyncResponse(BaseModel):
    round_id: UUID
    updated_members: int
    created_payout_entries: int
    ledger_entries: list[LedgerEntry] = Field(default_factory=list)


class RoundResponse(BaseModel):
    round: PredictionRound
    members: list[PredictionRoundMember]
    ledger_entries: list[LedgerEntry] = Field(default_factory=list)
    message: str


class RoundListResponse(BaseModel):
    items: list[PredictionRound]
    total: int
    page: int
    page_size: int
    has_more: bool


class RoundMemberOutcome(BaseModel):
    commit_amount: int
    payout_amount: Optional[int] = None
    pnl_amount: Optional[int] = None
    round_created_at: datetime


class ClubPerformance(BaseModel):
    days: int
    source: str
    nav_start: MicroAmount = 0
    nav_end: MicroAmount = 0
    net_flows: MicroAmount = 0
    commit_total: MicroAmount = 0
    payout_total: MicroAmount = 0
    realized_pnl: MicroAmount = 0
    simple_return: float = 0.0
    has_window_activity: bool = False


class PerformanceResponse(BaseModel):
    club_id: UUID
    performance: ClubPerformance
