"""
Prediction Club Ledger

This package provides:
- An append-only ledger of deposits, withdrawals, commits, payouts and adjustments
- Balances derived by folding entries (per club, per custodial wallet, net)
- Wallet vs. market exposure series
- Club performance from round records, with a ledger fallback
- Prediction round lifecycle: pending → committed → settled, or cancelled
"""

from .errors import (
    ClubNotFoundError,
    ConflictError,
    ForbiddenError,
    InsufficientBalanceError,
    InvalidEntryError,
    LedgerServiceError,
    LedgerValidationError,
    NotFoundError,
    RoundNotFoundError,
    StoreFailureError,
)
from .models import (
    EntryType,
    RoundStatus,
    LedgerEntry,
    PredictionRound,
    PredictionRoundMember,
    UserBalance,
    ExposurePoint,
    ClubPerformance,
)
from .service import LedgerService
from .rounds import PredictionRoundService
from .storage import InMemoryStorage, LedgerStorage

__all__ = [
    "EntryType",
    "RoundStatus",
    "LedgerEntry",
    "PredictionRound",
    "PredictionRoundMember",
    "UserBalance",
    "ExposurePoint",
    "ClubPerformance",
    "LedgerService",
    "PredictionRoundService",
    "InMemoryStorage",
    "LedgerStorage",
    "LedgerServiceError",
    "LedgerValidationError",
    "InvalidEntryError",
    "InsufficientBalanceError",
    "NotFoundError",
    "ClubNotFoundError",
    "RoundNotFoundError",
    "ForbiddenError",
    "ConflictError",
    "StoreFailureError",
]
