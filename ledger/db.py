"""
Durable record store for members, transactions, escrows, cashout requests
and rate-limit hits.

Every ledger operation runs inside one ``Storage.unit_of_work()``: the
transaction rows, tranche updates and status changes it makes commit
together or not at all.
"""

import logging
import threading
from contextlib import contextmanager, nullcontext
from datetime import datetime, timezone
from typing import Iterator, Optional
from uuid import UUID, uuid4

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Uuid,
    create_engine,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from .errors import StorageFailure

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything is stored as UTC.
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class MemberRow(Base):
    __tablename__ = "members"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    credits_balance: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    earned_credits: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    purchased_credits: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    is_admin: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utc_now)

    __table_args__ = (
        CheckConstraint("credits_balance >= 0", name="ck_members_balance_non_negative"),
        CheckConstraint("earned_credits >= 0", name="ck_members_earned_non_negative"),
        CheckConstraint("purchased_credits >= 0", name="ck_members_purchased_non_negative"),
        CheckConstraint(
            "credits_balance = earned_credits + purchased_credits",
            name="ck_members_tranche_sum",
        ),
    )


class TransactionRow(Base):
    __tablename__ = "transactions"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    member_id: Mapped[str] = mapped_column(ForeignKey("members.id"), nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    description: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    transaction_type: Mapped[str] = mapped_column(String(32), nullable=False)
    credit_source: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    can_cashout: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    admin_refunded: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    refund_of_transaction_id: Mapped[Optional[UUID]] = mapped_column(
        ForeignKey("transactions.id"), nullable=True
    )
    escrow_id: Mapped[Optional[UUID]] = mapped_column(Uuid, nullable=True)
    cashout_id: Mapped[Optional[UUID]] = mapped_column(Uuid, nullable=True)
    external_ref: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, unique=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utc_now)

    __table_args__ = (
        CheckConstraint("amount <> 0", name="ck_transactions_amount_non_zero"),
        Index("ix_transactions_member_created", "member_id", "created_at"),
        Index("ix_transactions_type", "transaction_type"),
    )


class EscrowRow(Base):
    __tablename__ = "escrows"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    offer_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    request_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    payer_id: Mapped[str] = mapped_column(ForeignKey("members.id"), nullable=False)
    provider_id: Mapped[str] = mapped_column(ForeignKey("members.id"), nullable=False)
    credits_held: Mapped[int] = mapped_column(BigInteger, nullable=False)
    held_purchased: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    held_earned: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    release_available_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    buyer_confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    provider_marked_complete_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    released_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    dispute_status: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    dispute_reason: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)
    disputed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    admin_note: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utc_now)

    __table_args__ = (
        CheckConstraint("credits_held > 0", name="ck_escrows_credits_positive"),
        CheckConstraint("held_purchased + held_earned = credits_held", name="ck_escrows_split"),
        Index("ix_escrows_status_release", "status", "release_available_at"),
    )


class CashoutRow(Base):
    __tablename__ = "cashout_requests"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[str] = mapped_column(ForeignKey("members.id"), nullable=False)
    amount_credits: Mapped[int] = mapped_column(BigInteger, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    hold_transaction_id: Mapped[Optional[UUID]] = mapped_column(Uuid, nullable=True)
    admin_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    admin_note: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)
    payout_reference: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    requested_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utc_now)
    reviewed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("amount_credits > 0", name="ck_cashouts_amount_positive"),
        Index("ix_cashouts_status", "status"),
    )


class RateLimitRow(Base):
    __tablename__ = "rate_limit_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    key: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utc_now)

    __table_args__ = (Index("ix_rate_limit_key_created", "key", "created_at"),)


DEFAULT_DATABASE_URL = "sqlite:///ledger.db"

_MEMORY_URLS = ("sqlite://", "sqlite:///:memory:")


class Storage:
    """
    Engine plus session factory.

    A file or server database gives each unit of work its own connection and
    relies on conditional UPDATEs for correctness. An in-memory SQLite
    database has exactly one connection, so units of work on it run one at a
    time.
    """

    def __init__(self, url: str = DEFAULT_DATABASE_URL, *, engine: Optional[Engine] = None, echo: bool = False):
        in_memory = engine is None and url in _MEMORY_URLS
        if engine is None:
            kwargs: dict = {}
            if url.startswith("sqlite"):
                # Writers wait for the database lock instead of failing fast.
                kwargs["connect_args"] = {"check_same_thread": False, "timeout": 30}
                if in_memory:
                    kwargs["poolclass"] = StaticPool
            engine = create_engine(url, echo=echo, **kwargs)
        self.engine = engine
        self._sessions = sessionmaker(bind=engine, expire_on_commit=False)
        self._serial = threading.RLock() if in_memory else nullcontext()
        Base.metadata.create_all(engine)

    @contextmanager
    def unit_of_work(self, session: Optional[Session] = None) -> Iterator[Session]:
        """
        Yield a session bound to one database transaction.

        When ``session`` is given the caller already owns a unit of work and
        this call joins it; commit and rollback stay with the outer owner.
        """
        if session is not None:
            yield session
            return

        with self._serial:
            session = self._sessions()
            try:
                yield session
                session.commit()
            except SQLAlchemyError as e:
                session.rollback()
                logger.error("unit of work rolled back on storage error", exc_info=True)
                raise StorageFailure(str(e)) from e
            except BaseException:
                session.rollback()
                raise
            finally:
                session.close()

    def dispose(self) -> None:
        self.engine.dispose()
