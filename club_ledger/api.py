from typing import Optional
from uuid import UUID

from fastapi import Depends, FastAPI, Header, HTTPException, Query, status
from fastapi.middleware.cors import CORSMiddleware

from .amounts import format_usdc
from .config import LedgerSettings, get_settings
from .errors import (
    ConflictError,
    ForbiddenError,
    LedgerServiceError,
    LedgerValidationError,
    NotFoundError,
)
from .logger import get_logger, setup_logging
from .models import (
    ActiveVolumeResponse,
    CancelRoundRequest,
    ClubVolume,
    CreateRoundRequest,
    DepositRequest,
    ExposureResponse,
    LedgerEntry,
    LedgerHistoryResponse,
    PayoutSyncResponse,
    PerformanceResponse,
    PredictionRound,
    RecordEntryRequest,
    RoundListResponse,
    RoundResponse,
    SettleRoundRequest,
    UserBalance,
    WithdrawRequest,
)
from .rounds import PredictionRoundService
from .service import LedgerService
from .sql_storage import SqlAlchemyStorage
from .storage import InMemoryStorage, LedgerStorage

settings = get_settings()
setup_logging(settings.log_level, settings.log_format)
logger = get_logger(__name__)


def build_storage(settings: LedgerSettings) -> LedgerStorage:
    if settings.database_url:
        storage = SqlAlchemyStorage.from_url(settings.database_url, echo=settings.database_echo)
        storage.create_schema()
        return storage
    return InMemoryStorage(seed=settings.seed_demo_data)


app = FastAPI(
    title="Prediction Club Ledger API",
    description="Append-only ledger, balances, exposure and performance for prediction clubs",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

ledger_service = LedgerService(build_storage(settings), asset=settings.asset)


def get_ledger_service() -> LedgerService:
    return ledger_service


def get_round_service(ledger: LedgerService = Depends(get_ledger_service)) -> PredictionRoundService:
    return PredictionRoundService(ledger)


def current_user_id(x_user_id: Optional[str] = Header(default=None)) -> UUID:
    # the upstream auth proxy sets X-User-Id after verifying the session
    if not x_user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required")
    try:
        return UUID(x_user_id)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid user identity")


def _to_http(e: LedgerServiceError) -> HTTPException:
    if isinstance(e, LedgerValidationError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    if isinstance(e, ForbiddenError):
        return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e))
    if isinstance(e, ConflictError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    logger.error("ledger_request_failed", error_type=type(e).__name__, error=str(e))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Internal server error")


@app.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": "club-ledger"}


@app.post("/ledger/entries", response_model=LedgerEntry, status_code=status.HTTP_201_CREATED, tags=["Ledger"])
def record_entry(
    request: RecordEntryRequest,
    user_id: UUID = Depends(current_user_id),
    ledger: LedgerService = Depends(get_ledger_service),
) -> LedgerEntry:
    try:
        return ledger.record_member_entry(user_id, request)
    except LedgerServiceError as e:
        raise _to_http(e)


@app.get("/ledger/history", response_model=LedgerHistoryResponse, tags=["Ledger"])
def get_ledger_history(
    club_id: Optional[UUID] = None,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    user_id: UUID = Depends(current_user_id),
    ledger: LedgerService = Depends(get_ledger_service),
) -> LedgerHistoryResponse:
    try:
        return ledger.get_ledger_history(user_id, club_id, limit, offset)
    except LedgerServiceError as e:
        raise _to_http(e)


@app.get("/ledger/balance", response_model=UserBalance, tags=["Ledger"])
def get_club_balance(
    club_id: Optional[UUID] = None,
    safe_address: Optional[str] = None,
    user_id: UUID = Depends(current_user_id),
    ledger: LedgerService = Depends(get_ledger_service),
) -> UserBalance:
    if club_id is None and safe_address is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="club_id or safe_address is required")
    try:
        return ledger.get_balance(user_id, club_id=club_id, safe_address=safe_address)
    except LedgerServiceError as e:
        raise _to_http(e)


@app.get("/ledger/net-balance", response_model=UserBalance, tags=["Ledger"])
def get_net_balance(
    user_id: UUID = Depends(current_user_id),
    ledger: LedgerService = Depends(get_ledger_service),
) -> UserBalance:
    try:
        return ledger.get_balance(user_id)
    except LedgerServiceError as e:
        raise _to_http(e)


@app.get("/ledger/exposure", response_model=ExposureResponse, tags=["Ledger"])
def get_exposure(
    club_id: Optional[UUID] = None,
    daily: bool = False,
    days: Optional[int] = Query(None, ge=1, le=365),
    user_id: UUID = Depends(current_user_id),
    ledger: LedgerService = Depends(get_ledger_service),
) -> ExposureResponse:
    try:
        if not daily:
            points = ledger.get_exposure_series(user_id, club_id=club_id)
        else:
            points = ledger.get_daily_exposure(user_id, days or settings.exposure_window_days, club_id=club_id)
    except LedgerServiceError as e:
        raise _to_http(e)
    return ExposureResponse(user_id=user_id, points=points)


@app.post("/clubs/{club_id}/deposits", response_model=LedgerEntry, status_code=status.HTTP_201_CREATED, tags=["Wallet"])
def record_deposit(
    club_id: UUID,
    request: DepositRequest,
    user_id: UUID = Depends(current_user_id),
    ledger: LedgerService = Depends(get_ledger_service),
) -> LedgerEntry:
    try:
        return ledger.record_deposit(club_id, user_id, request)
    except LedgerServiceError as e:
        raise _to_http(e)


@app.post("/clubs/{club_id}/withdrawals", response_model=LedgerEntry, status_code=status.HTTP_201_CREATED, tags=["Wallet"])
def record_withdrawal(
    club_id: UUID,
    request: WithdrawRequest,
    user_id: UUID = Depends(current_user_id),
    ledger: LedgerService = Depends(get_ledger_service),
) -> LedgerEntry:
    try:
        return ledger.record_withdrawal(club_id, user_id, request)
    except LedgerServiceError as e:
        raise _to_http(e)


@app.get("/clubs/active-volume", response_model=ActiveVolumeResponse, tags=["Clubs"])
def get_active_volume(
    club_ids: list[UUID] = Query(...),
    ledger: LedgerService = Depends(get_ledger_service),
) -> ActiveVolumeResponse:
    try:
        volume = ledger.get_clubs_active_commit_volume(club_ids)
    except LedgerServiceError as e:
        raise _to_http(e)
    return ActiveVolumeResponse(items=[
        ClubVolume(club_id=club_id, active_commit_volume=amount, active_commit_volume_display=format_usdc(amount))
        for club_id, amount in volume.items()
    ])


@app.post("/clubs/{club_id}/rounds", response_model=RoundResponse, status_code=status.HTTP_201_CREATED, tags=["Rounds"])
def create_round(
    club_id: UUID,
    request: CreateRoundRequest,
    user_id: UUID = Depends(current_user_id),
    rounds: PredictionRoundService = Depends(get_round_service),
) -> RoundResponse:
    try:
        return rounds.create_round(club_id, user_id, request)
    except LedgerServiceError as e:
        raise _to_http(e)


@app.get("/clubs/{club_id}/rounds", response_model=RoundListResponse, tags=["Rounds"])
def list_rounds(
    club_id: UUID,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    round_status: Optional[str] = Query(None, alias="status"),
    rounds: PredictionRoundService = Depends(get_round_service),
) -> RoundListResponse:
    try:
        return rounds.list_rounds(club_id, page, page_size, round_status)
    except LedgerServiceError as e:
        raise _to_http(e)


@app.get("/clubs/{club_id}/performance", response_model=PerformanceResponse, tags=["Clubs"])
def get_performance(
    club_id: UUID,
    days: int = Query(settings.default_performance_days, ge=1, le=365),
    rounds: PredictionRoundService = Depends(get_round_service),
) -> PerformanceResponse:
    try:
        performance = rounds.get_club_performance(club_id, days)
    except LedgerServiceError as e:
        raise _to_http(e)
    return PerformanceResponse(club_id=club_id, performance=performance)


@app.get("/rounds/{round_id}", response_model=RoundResponse, tags=["Rounds"])
def get_round(
    round_id: UUID,
    rounds: PredictionRoundService = Depends(get_round_service),
) -> RoundResponse:
    try:
        return rounds.get_round(round_id)
    except LedgerServiceError as e:
        raise _to_http(e)


@app.post("/rounds/{round_id}/commit", response_model=PredictionRound, tags=["Rounds"])
def mark_round_committed(
    round_id: UUID,
    user_id: UUID = Depends(current_user_id),
    rounds: PredictionRoundService = Depends(get_round_service),
) -> PredictionRound:
    try:
        rounds.require_admin(rounds.get_round_or_raise(round_id).club_id, user_id)
        return rounds.mark_committed(round_id)
    except LedgerServiceError as e:
        raise _to_http(e)


@app.post("/rounds/{round_id}/settle", response_model=RoundResponse, tags=["Rounds"])
def settle_round(
    round_id: UUID,
    request: SettleRoundRequest,
    user_id: UUID = Depends(current_user_id),
    rounds: PredictionRoundService = Depends(get_round_service),
) -> RoundResponse:
    try:
        rounds.require_admin(rounds.get_round_or_raise(round_id).club_id, user_id)
        return rounds.settle_round(round_id, request)
    except LedgerServiceError as e:
        raise _to_http(e)


@app.post("/rounds/{round_id}/cancel", response_model=RoundResponse, tags=["Rounds"])
def cancel_round(
    round_id: UUID,
    request: CancelRoundRequest,
    user_id: UUID = Depends(current_user_id),
    rounds: PredictionRoundService = Depends(get_round_service),
) -> RoundResponse:
    try:
        rounds.require_admin(rounds.get_round_or_raise(round_id).club_id, user_id)
        return rounds.cancel_round(round_id, request.reason)
    except LedgerServiceError as e:
        raise _to_http(e)


@app.post("/rounds/{round_id}/payouts/sync", response_model=PayoutSyncResponse, tags=["Rounds"])
def sync_round_payouts(
    round_id: UUID,
    request: SettleRoundRequest,
    user_id: UUID = Depends(current_user_id),
    rounds: PredictionRoundService = Depends(get_round_service),
) -> PayoutSyncResponse:
    try:
        rounds.require_admin(rounds.get_round_or_raise(round_id).club_id, user_id)
        return rounds.sync_settled_payouts(round_id, request)
    except LedgerServiceError as e:
        raise _to_http(e)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
