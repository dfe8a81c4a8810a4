"""
SQLAlchemy-backed ledger store.

Each write method runs in a single database transaction (``Session.begin()``),
so a round's commit entries or payout entries are either all visible or not
visible at all. Amount columns are stored as integer strings so values larger
than 64 bits survive every backend unchanged; sums are always taken in Python.

Settlement and cancellation are guarded by a conditional
``UPDATE ... WHERE status IN ('PENDING', 'COMMITTED')``: of two concurrent
attempts, only one sees a matched row.
"""

import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Iterable, Iterator, Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    DateTime,
    Index,
    Integer,
    String,
    UniqueConstraint,
    Uuid,
    create_engine,
    event,
    func,
    select,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

from .amounts import format_usdc
from .errors import ConflictError, InsufficientBalanceError, RoundNotFoundError, StoreFailureError
from .logger import get_logger
from .models import (
    Club,
    ClubMember,
    EntryType,
    LedgerEntry,
    MemberRole,
    MemberStatus,
    OPEN_ROUND_STATUSES,
    PredictionRound,
    PredictionRoundMember,
    RoundStatus,
    as_utc,
    utc_now,
)
from .storage import LedgerStorage

logger = get_logger(__name__)

# SQLite only autoincrements a column declared exactly INTEGER PRIMARY KEY.
_Sequence = BigInteger().with_variant(Integer, "sqlite")

_OPEN_STATUSES = [s.value for s in OPEN_ROUND_STATUSES]


class Base(DeclarativeBase):
    pass


class ClubRecord(Base):
    __tablename__ = "clubs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    slug: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


class ClubMemberRecord(Base):
    __tablename__ = "club_members"

    id: Mapped[int] = mapped_column(_Sequence, primary_key=True, autoincrement=True)
    club_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    role: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    safe_address: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    joined_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    __table_args__ = (
        UniqueConstraint("club_id", "user_id", name="uq_club_members_club_user"),
    )


class LedgerEntryRecord(Base):
    __tablename__ = "ledger_entries"

    sequence: Mapped[int] = mapped_column(_Sequence, primary_key=True, autoincrement=True)
    id: Mapped[uuid.UUID] = mapped_column(Uuid, unique=True, nullable=False)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    club_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    safe_address: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    entry_type: Mapped[str] = mapped_column(String(16), nullable=False)
    amount: Mapped[str] = mapped_column(String(80), nullable=False)
    asset: Mapped[str] = mapped_column(String(16), nullable=False)
    round_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    tx_hash: Mapped[Optional[str]] = mapped_column(String(80), nullable=True)
    metadata_json: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint("entry_type", "tx_hash", name="uq_ledger_entries_type_tx"),
        Index("ix_ledger_entries_user_club", "user_id", "club_id"),
        Index("ix_ledger_entries_user_safe", "user_id", "safe_address"),
        Index("ix_ledger_entries_club_created", "club_id", "created_at"),
        Index("ix_ledger_entries_round", "round_id"),
    )


class PredictionRoundRecord(Base):
    __tablename__ = "prediction_rounds"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    club_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    cohort_id: Mapped[str] = mapped_column(String(66), unique=True, nullable=False)
    market_ref: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    market_title: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    stake_total: Mapped[str] = mapped_column(String(80), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    outcome: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    created_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    settled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_prediction_rounds_club_status", "club_id", "status"),
    )


class PredictionRoundMemberRecord(Base):
    __tablename__ = "prediction_round_members"

    id: Mapped[int] = mapped_column(_Sequence, primary_key=True, autoincrement=True)
    round_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    safe_address: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    commit_amount: Mapped[str] = mapped_column(String(80), nullable=False)
    payout_amount: Mapped[Optional[str]] = mapped_column(String(80), nullable=True)
    pnl_amount: Mapped[Optional[str]] = mapped_column(String(80), nullable=True)
    settled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("round_id", "user_id", name="uq_round_members_round_user"),
    )


# ---------------------------------------------------------------------------
# Conversion helpers
# ---------------------------------------------------------------------------

def _optional_int(value: Optional[str]) -> Optional[int]:
    return None if value is None else int(value)


def _optional_str(value: Optional[int]) -> Optional[str]:
    return None if value is None else str(value)


def _optional_utc(value: Optional[datetime]) -> Optional[datetime]:
    return None if value is None else as_utc(value)


def _record_to_club(record: ClubRecord) -> Club:
    return Club(id=record.id, slug=record.slug, name=record.name, created_at=as_utc(record.created_at))


def _record_to_member(record: ClubMemberRecord) -> ClubMember:
    return ClubMember(
        club_id=record.club_id,
        user_id=record.user_id,
        role=MemberRole(record.role),
        status=MemberStatus(record.status),
        safe_address=record.safe_address,
        joined_at=as_utc(record.joined_at),
    )


def _entry_to_record(entry: LedgerEntry) -> LedgerEntryRecord:
    return LedgerEntryRecord(
        id=entry.id,
        user_id=entry.user_id,
        club_id=entry.club_id,
        safe_address=entry.safe_address,
        entry_type=entry.entry_type.value,
        amount=str(entry.amount),
        asset=entry.asset,
        round_id=entry.round_id,
        tx_hash=entry.tx_hash,
        metadata_json=entry.metadata or None,
        created_at=entry.created_at,
    )


def _record_to_entry(record: LedgerEntryRecord) -> LedgerEntry:
    return LedgerEntry(
        id=record.id,
        sequence=record.sequence,
        user_id=record.user_id,
        club_id=record.club_id,
        safe_address=record.safe_address,
        entry_type=EntryType(record.entry_type),
        amount=int(record.amount),
        asset=record.asset,
        round_id=record.round_id,
        tx_hash=record.tx_hash,
        metadata=record.metadata_json or {},
        created_at=as_utc(record.created_at),
    )


def _round_to_record(prediction_round: PredictionRound) -> PredictionRoundRecord:
    return PredictionRoundRecord(
        id=prediction_round.id,
        club_id=prediction_round.club_id,
        cohort_id=prediction_round.cohort_id,
        market_ref=prediction_round.market_ref,
        market_title=prediction_round.market_title,
        stake_total=str(prediction_round.stake_total),
        status=prediction_round.status.value,
        outcome=prediction_round.outcome,
        created_by=prediction_round.created_by,
        created_at=prediction_round.created_at,
        settled_at=prediction_round.settled_at,
    )


def _record_to_round(record: PredictionRoundRecord) -> PredictionRound:
    return PredictionRound(
        id=record.id,
        club_id=record.club_id,
        cohort_id=record.cohort_id,
        market_ref=record.market_ref,
        market_title=record.market_title,
        stake_total=int(record.stake_total),
        status=RoundStatus(record.status),
        outcome=record.outcome,
        created_by=record.created_by,
        created_at=as_utc(record.created_at),
        settled_at=_optional_utc(record.settled_at),
    )


def _round_member_to_record(member: PredictionRoundMember) -> PredictionRoundMemberRecord:
    return PredictionRoundMemberRecord(
        round_id=member.round_id,
        user_id=member.user_id,
        safe_address=member.safe_address,
        commit_amount=str(member.commit_amount),
        payout_amount=_optional_str(member.payout_amount),
        pnl_amount=_optional_str(member.pnl_amount),
        settled_at=member.settled_at,
    )


def _record_to_round_member(record: PredictionRoundMemberRecord) -> PredictionRoundMember:
    return PredictionRoundMember(
        round_id=record.round_id,
        user_id=record.user_id,
        safe_address=record.safe_address,
        commit_amount=int(record.commit_amount),
        payout_amount=_optional_int(record.payout_amount),
        pnl_amount=_optional_int(record.pnl_amount),
        settled_at=_optional_utc(record.settled_at),
    )


def _begin_immediate(engine: Engine) -> None:
    """Make every SQLite transaction take the write lock up front.

    pysqlite only opens a transaction at the first write, so a balance read
    followed by an insert would not be isolated. Readers and writers queue
    on the database lock instead (busy timeout applies).
    """

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


class SqlAlchemyStorage(LedgerStorage):

    def __init__(self, engine: Engine):
        self.engine = engine
        self._session_factory = sessionmaker(engine, expire_on_commit=False)

    @classmethod
    def from_url(cls, url: str, echo: bool = False) -> "SqlAlchemyStorage":
        is_sqlite = url.startswith("sqlite")
        connect_args = {"check_same_thread": False} if is_sqlite else {}
        engine = create_engine(url, echo=echo, connect_args=connect_args)
        if is_sqlite:
            _begin_immediate(engine)
        logger.info("ledger_store_engine_created", url=url.split("@")[-1])
        return cls(engine)

    def create_schema(self) -> None:
        Base.metadata.create_all(self.engine)

    def dispose(self) -> None:
        self.engine.dispose()

    @contextmanager
    def _transaction(self) -> Iterator[Session]:
        try:
            with self._session_factory.begin() as session:
                yield session
        except IntegrityError as exc:
            logger.warning("ledger_store_constraint_violation", error=str(exc.orig))
            raise ConflictError("Store rejected a duplicate record") from exc
        except SQLAlchemyError as exc:
            logger.error("ledger_store_transaction_failed", error=str(exc))
            raise StoreFailureError("Ledger store transaction failed") from exc

    @contextmanager
    def _reader(self) -> Iterator[Session]:
        try:
            with self._session_factory() as session:
                yield session
        except SQLAlchemyError as exc:
            logger.error("ledger_store_read_failed", error=str(exc))
            raise StoreFailureError("Ledger store read failed") from exc

    def add_club(self, club: Club) -> Club:
        with self._transaction() as session:
            session.add(ClubRecord(id=club.id, slug=club.slug, name=club.name, created_at=club.created_at))
        return club

    def get_club(self, club_id: uuid.UUID) -> Optional[Club]:
        with self._reader() as session:
            record = session.get(ClubRecord, club_id)
            return _record_to_club(record) if record else None

    def add_member(self, member: ClubMember) -> ClubMember:
        with self._transaction() as session:
            session.add(ClubMemberRecord(
                club_id=member.club_id,
                user_id=member.user_id,
                role=member.role.value,
                status=member.status.value,
                safe_address=member.safe_address,
                joined_at=member.joined_at,
            ))
        return member

    def get_member(self, club_id: uuid.UUID, user_id: uuid.UUID) -> Optional[ClubMember]:
        with self._reader() as session:
            record = session.scalars(
                select(ClubMemberRecord).where(
                    ClubMemberRecord.club_id == club_id,
                    ClubMemberRecord.user_id == user_id,
                )
            ).first()
            return _record_to_member(record) if record else None

    def list_members(self, club_id: uuid.UUID, status: Optional[MemberStatus] = None) -> list[ClubMember]:
        stmt = select(ClubMemberRecord).where(ClubMemberRecord.club_id == club_id)
        if status is not None:
            stmt = stmt.where(ClubMemberRecord.status == status.value)
        with self._reader() as session:
            return [_record_to_member(r) for r in session.scalars(stmt.order_by(ClubMemberRecord.id))]

    def append_entries(self, entries: list[LedgerEntry]) -> list[LedgerEntry]:
        with self._transaction() as session:
            return self._insert_entries(session, entries)

    def query_entries(
        self,
        user_id: Optional[uuid.UUID] = None,
        club_id: Optional[uuid.UUID] = None,
        safe_address: Optional[str] = None,
        round_id: Optional[uuid.UUID] = None,
        entry_types: Optional[Iterable[EntryType]] = None,
        since: Optional[datetime] = None,
    ) -> list[LedgerEntry]:
        stmt = select(LedgerEntryRecord)
        if user_id is not None:
            stmt = stmt.where(LedgerEntryRecord.user_id == user_id)
        if club_id is not None:
            stmt = stmt.where(LedgerEntryRecord.club_id == club_id)
        if safe_address is not None:
            stmt = stmt.where(LedgerEntryRecord.safe_address == safe_address)
        if round_id is not None:
            stmt = stmt.where(LedgerEntryRecord.round_id == round_id)
        if entry_types is not None:
            stmt = stmt.where(LedgerEntryRecord.entry_type.in_([t.value for t in entry_types]))
        if since is not None:
            stmt = stmt.where(LedgerEntryRecord.created_at >= since)
        stmt = stmt.order_by(LedgerEntryRecord.created_at, LedgerEntryRecord.sequence)
        with self._reader() as session:
            return [_record_to_entry(r) for r in session.scalars(stmt)]

    def create_round(
        self,
        prediction_round: PredictionRound,
        members: list[PredictionRoundMember],
        entries: list[LedgerEntry],
    ) -> list[LedgerEntry]:
        with self._transaction() as session:
            session.add(_round_to_record(prediction_round))
            session.add_all([_round_member_to_record(m) for m in members])
            return self._insert_entries(session, entries)

    def get_round(self, round_id: uuid.UUID) -> Optional[PredictionRound]:
        with self._reader() as session:
            record = session.get(PredictionRoundRecord, round_id)
            return _record_to_round(record) if record else None

    def get_round_members(self, round_id: uuid.UUID) -> list[PredictionRoundMember]:
        stmt = (
            select(PredictionRoundMemberRecord)
            .where(PredictionRoundMemberRecord.round_id == round_id)
            .order_by(PredictionRoundMemberRecord.id)
        )
        with self._reader() as session:
            return [_record_to_round_member(r) for r in session.scalars(stmt)]

    def list_rounds(
        self,
        club_id: uuid.UUID,
        status: Optional[RoundStatus] = None,
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> tuple[list[PredictionRound], int]:
        stmt = select(PredictionRoundRecord).where(PredictionRoundRecord.club_id == club_id)
        if status is not None:
            stmt = stmt.where(PredictionRoundRecord.status == status.value)
        count_stmt = select(func.count()).select_from(stmt.subquery())
        page_stmt = stmt.order_by(PredictionRoundRecord.created_at.desc()).offset(offset)
        if limit is not None:
            page_stmt = page_stmt.limit(limit)
        with self._reader() as session:
            total = session.scalar(count_stmt) or 0
            return [_record_to_round(r) for r in session.scalars(page_stmt)], total

    def open_round_ids(self, club_ids: Iterable[uuid.UUID]) -> set[uuid.UUID]:
        wanted = list(club_ids)
        if not wanted:
            return set()
        stmt = select(PredictionRoundRecord.id).where(
            PredictionRoundRecord.club_id.in_(wanted),
            PredictionRoundRecord.status.in_(_OPEN_STATUSES),
        )
        with self._reader() as session:
            return set(session.scalars(stmt))

    def transition_round(
        self, round_id: uuid.UUID, from_statuses: Iterable[RoundStatus], to_status: RoundStatus
    ) -> PredictionRound:
        allowed = [s.value for s in from_statuses]
        with self._transaction() as session:
            result = session.execute(
                update(PredictionRoundRecord)
                .where(PredictionRoundRecord.id == round_id, PredictionRoundRecord.status.in_(allowed))
                .values(status=to_status.value)
            )
            record = session.get(PredictionRoundRecord, round_id)
            if record is None:
                raise RoundNotFoundError(f"Round {round_id} not found")
            if result.rowcount == 0:
                raise ConflictError(f"Round {round_id} is {record.status}, cannot move to {to_status.value}")
            session.refresh(record)
            return _record_to_round(record)

    def settle_round(
        self,
        round_id: uuid.UUID,
        members: list[PredictionRoundMember],
        entries: list[LedgerEntry],
        settled_at: datetime,
        outcome: Optional[str] = None,
    ) -> tuple[PredictionRound, list[LedgerEntry]]:
        with self._transaction() as session:
            result = session.execute(
                update(PredictionRoundRecord)
                .where(
                    PredictionRoundRecord.id == round_id,
                    PredictionRoundRecord.status.in_(_OPEN_STATUSES),
                )
                .values(status=RoundStatus.SETTLED.value, outcome=outcome, settled_at=settled_at)
            )
            if result.rowcount == 0:
                self._raise_not_open(session, round_id)

            for member in members:
                session.execute(
                    update(PredictionRoundMemberRecord)
                    .where(
                        PredictionRoundMemberRecord.round_id == round_id,
                        PredictionRoundMemberRecord.user_id == member.user_id,
                    )
                    .values(
                        payout_amount=_optional_str(member.payout_amount),
                        pnl_amount=_optional_str(member.pnl_amount),
                        settled_at=member.settled_at,
                    )
                )
            stored = self._insert_entries(session, entries)
            record = session.get(PredictionRoundRecord, round_id)
            session.refresh(record)
            return _record_to_round(record), stored

    def cancel_round(
        self, round_id: uuid.UUID, entries: list[LedgerEntry]
    ) -> tuple[PredictionRound, list[LedgerEntry]]:
        with self._transaction() as session:
            result = session.execute(
                update(PredictionRoundRecord)
                .where(
                    PredictionRoundRecord.id == round_id,
                    PredictionRoundRecord.status.in_(_OPEN_STATUSES),
                )
                .values(status=RoundStatus.CANCELLED.value)
            )
            if result.rowcount == 0:
                self._raise_not_open(session, round_id)

            stored = self._insert_entries(session, entries)
            record = session.get(PredictionRoundRecord, round_id)
            session.refresh(record)
            return _record_to_round(record), stored

    def sync_settled_payouts(
        self,
        round_id: uuid.UUID,
        members: list[PredictionRoundMember],
        entries: list[LedgerEntry],
    ) -> list[LedgerEntry]:
        with self._transaction() as session:
            record = session.get(PredictionRoundRecord, round_id, with_for_update=True)
            if record is None:
                raise RoundNotFoundError(f"Round {round_id} not found")
            if record.status != RoundStatus.SETTLED.value:
                raise ConflictError(f"Round {round_id} is {record.status}, not SETTLED")

            paid = set(session.scalars(
                select(LedgerEntryRecord.user_id).where(
                    LedgerEntryRecord.round_id == round_id,
                    LedgerEntryRecord.entry_type == EntryType.PAYOUT.value,
                )
            ))
            for member in members:
                session.execute(
                    update(PredictionRoundMemberRecord)
                    .where(
                        PredictionRoundMemberRecord.round_id == round_id,
                        PredictionRoundMemberRecord.user_id == member.user_id,
                    )
                    .values(
                        payout_amount=_optional_str(member.payout_amount),
                        pnl_amount=_optional_str(member.pnl_amount),
                        settled_at=member.settled_at,
                    )
                )
            return self._insert_entries(session, [e for e in entries if e.user_id not in paid])

    def append_withdrawal(self, entry: LedgerEntry) -> LedgerEntry:
        with self._transaction() as session:
            # the member row lock serializes withdrawals per user and club
            session.scalars(
                select(ClubMemberRecord.id)
                .where(
                    ClubMemberRecord.club_id == entry.club_id,
                    ClubMemberRecord.user_id == entry.user_id,
                )
                .with_for_update()
            ).first()
            amounts = session.scalars(
                select(LedgerEntryRecord.amount).where(
                    LedgerEntryRecord.user_id == entry.user_id,
                    LedgerEntryRecord.club_id == entry.club_id,
                )
            )
            balance = sum((int(a) for a in amounts), 0)
            if balance + entry.amount < 0:
                raise InsufficientBalanceError(
                    f"Withdrawal of {format_usdc(-entry.amount)} exceeds club balance {format_usdc(balance)}"
                )
            return self._insert_entries(session, [entry])[0]

    def _raise_not_open(self, session: Session, round_id: uuid.UUID):
        record = session.get(PredictionRoundRecord, round_id)
        if record is None:
            raise RoundNotFoundError(f"Round {round_id} not found")
        raise ConflictError(f"Round {round_id} is already {record.status.lower()}")

    def _insert_entries(self, session: Session, entries: list[LedgerEntry]) -> list[LedgerEntry]:
        records = [_entry_to_record(e) for e in entries]
        session.add_all(records)
        session.flush()
        return [_record_to_entry(r) for r in records]
