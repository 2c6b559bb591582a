import logging
from typing import Optional
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from .db import MemberRow, Storage, TransactionRow, utc_now
from .errors import (
    Forbidden,
    InsufficientFundsError,
    InvalidInputError,
    NotFoundError,
)
from .models import (
    CreditSource,
    LedgerHistoryResponse,
    LedgerVerification,
    MemberBalance,
    RevenueSummary,
    SpendResult,
    Tranche,
    Transaction,
    TransactionListResponse,
    TransactionResponse,
    TransactionType,
    resolve_tranche,
)

logger = logging.getLogger(__name__)

_TRANCHE_COLUMNS = {
    Tranche.EARNED: MemberRow.earned_credits,
    Tranche.PURCHASED: MemberRow.purchased_credits,
}


class LedgerService:
    def __init__(self, storage: Optional[Storage] = None):
        self.storage = storage or Storage()

    # ---- members ----

    def ensure_member(
        self, member_id: str, is_admin: Optional[bool] = None, session: Optional[Session] = None
    ) -> MemberBalance:
        if not member_id:
            raise InvalidInputError("member id is required")
        with self.storage.unit_of_work(session) as s:
            row = s.get(MemberRow, member_id)
            if row is None:
                row = MemberRow(id=member_id, is_admin=bool(is_admin))
                s.add(row)
                s.flush()
                logger.info("member created", extra={"member_id": member_id})
            elif is_admin is not None and row.is_admin != is_admin:
                row.is_admin = is_admin
                s.flush()
            return MemberBalance.model_validate(row)

    def get_balance(self, member_id: str, session: Optional[Session] = None) -> MemberBalance:
        with self.storage.unit_of_work(session) as s:
            return MemberBalance.model_validate(self._member(s, member_id, refresh=True))

    def require_admin(self, member_id: str, session: Optional[Session] = None) -> None:
        with self.storage.unit_of_work(session) as s:
            row = s.get(MemberRow, member_id)
            if row is None or not row.is_admin:
                raise Forbidden("admin access required")

    # ---- writes ----

    def apply_transaction(
        self,
        member_id: str,
        amount: int,
        transaction_type: TransactionType,
        source: CreditSource,
        can_cashout: bool = False,
        description: str = "",
        *,
        refund_of: Optional[UUID] = None,
        escrow_id: Optional[UUID] = None,
        cashout_id: Optional[UUID] = None,
        external_ref: Optional[str] = None,
        session: Optional[Session] = None,
    ) -> Transaction:
        """
        Record one signed movement against a member's tranche.

        The balance update and the Transaction row share the caller's unit
        of work. A debit that would take the tranche or the total below zero
        raises InsufficientFundsError and nothing is written.
        """
        if isinstance(amount, bool) or not isinstance(amount, int) or amount == 0:
            raise InvalidInputError("amount must be a non-zero integer")
        tranche = resolve_tranche(source)
        with self.storage.unit_of_work(session) as s:
            self._move(s, member_id, tranche, amount)
            row = TransactionRow(
                member_id=member_id,
                amount=amount,
                description=description,
                transaction_type=TransactionType(transaction_type).value,
                credit_source=tranche.value,
                can_cashout=can_cashout,
                refund_of_transaction_id=refund_of,
                escrow_id=escrow_id,
                cashout_id=cashout_id,
                external_ref=external_ref,
            )
            s.add(row)
            s.flush()
            logger.info(
                "transaction applied",
                extra={
                    "member_id": member_id,
                    "transaction_id": str(row.id),
                    "transaction_type": row.transaction_type,
                    "amount": amount,
                    "tranche": tranche.value,
                },
            )
            return Transaction.model_validate(row)

    def spend(
        self,
        member_id: str,
        amount: int,
        transaction_type: TransactionType,
        description: str = "",
        *,
        escrow_id: Optional[UUID] = None,
        session: Optional[Session] = None,
    ) -> SpendResult:
        """Debit ``amount`` from the purchased tranche first, then earned."""
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise InvalidInputError("amount must be a positive integer")
        with self.storage.unit_of_work(session) as s:
            member = self._member(s, member_id, refresh=True)
            if member.credits_balance < amount:
                raise InsufficientFundsError(
                    f"insufficient credits: required {amount}, available {member.credits_balance}"
                )
            from_purchased = min(member.purchased_credits, amount)
            from_earned = amount - from_purchased

            transactions = []
            for tranche_amount, source in ((from_purchased, CreditSource.PURCHASED), (from_earned, CreditSource.EARNED)):
                if tranche_amount:
                    transactions.append(
                        self.apply_transaction(
                            member_id,
                            -tranche_amount,
                            transaction_type,
                            source,
                            False,
                            description,
                            escrow_id=escrow_id,
                            session=s,
                        )
                    )
            return SpendResult(transactions=transactions, from_purchased=from_purchased, from_earned=from_earned)

    def record_purchase(
        self, member_id: str, credits: int, external_ref: str, session: Optional[Session] = None
    ) -> TransactionResponse:
        if isinstance(credits, bool) or not isinstance(credits, int) or credits <= 0:
            raise InvalidInputError("credits must be a positive integer")
        if not external_ref:
            raise InvalidInputError("external reference is required")
        with self.storage.unit_of_work(session) as s:
            existing = s.execute(
                select(TransactionRow).where(TransactionRow.external_ref == external_ref)
            ).scalar_one_or_none()
            if existing is not None:
                return TransactionResponse(
                    transaction=Transaction.model_validate(existing),
                    balance=self.get_balance(existing.member_id, session=s),
                    message="Purchase already recorded (idempotent return)",
                )
            self.ensure_member(member_id, session=s)
            tx = self.apply_transaction(
                member_id,
                credits,
                TransactionType.PURCHASE,
                CreditSource.PURCHASED,
                False,
                f"Credit purchase ({credits} credits)",
                external_ref=external_ref,
                session=s,
            )
            return TransactionResponse(
                transaction=tx,
                balance=self.get_balance(member_id, session=s),
                message="Purchase recorded",
            )

    # ---- reads ----

    def get_transaction(self, transaction_id: UUID, session: Optional[Session] = None) -> Transaction:
        with self.storage.unit_of_work(session) as s:
            row = s.get(TransactionRow, transaction_id)
            if row is None:
                raise NotFoundError(f"Transaction {transaction_id} not found")
            return Transaction.model_validate(row)

    def get_ledger_history(self, member_id: str, limit: int = 50, offset: int = 0) -> LedgerHistoryResponse:
        with self.storage.unit_of_work() as s:
            member = self._member(s, member_id)
            total = s.execute(
                select(func.count()).select_from(TransactionRow).where(TransactionRow.member_id == member_id)
            ).scalar_one()
            rows = s.execute(
                select(TransactionRow)
                .where(TransactionRow.member_id == member_id)
                .order_by(TransactionRow.created_at.desc())
                .limit(limit)
                .offset(offset)
            ).scalars()
            return LedgerHistoryResponse(
                member_id=member_id,
                entries=[Transaction.model_validate(r) for r in rows],
                total_count=total,
                current_balance=member.credits_balance,
            )

    def list_transactions(
        self, limit: int = 50, offset: int = 0, transaction_type: Optional[TransactionType] = None
    ) -> TransactionListResponse:
        with self.storage.unit_of_work() as s:
            query = select(TransactionRow)
            count = select(func.count()).select_from(TransactionRow)
            if transaction_type is not None:
                query = query.where(TransactionRow.transaction_type == transaction_type.value)
                count = count.where(TransactionRow.transaction_type == transaction_type.value)
            rows = s.execute(query.order_by(TransactionRow.created_at.desc()).limit(limit).offset(offset)).scalars()
            return TransactionListResponse(
                entries=[Transaction.model_validate(r) for r in rows],
                total_count=s.execute(count).scalar_one(),
            )

    def platform_revenue(self) -> RevenueSummary:
        with self.storage.unit_of_work() as s:
            fees = s.execute(
                select(TransactionRow.amount, TransactionRow.admin_refunded).where(
                    TransactionRow.transaction_type == TransactionType.PLATFORM_FEE.value
                )
            ).all()
        collected = sum(-amount for amount, refunded in fees if not refunded)
        refunded = sum(-amount for amount, was_refunded in fees if was_refunded)
        return RevenueSummary(total_fees=collected, fee_count=len(fees), refunded_fees=refunded)

    def verify_member(self, member_id: str) -> LedgerVerification:
        """Recompute each tranche from the transaction log and compare."""
        with self.storage.unit_of_work() as s:
            member = self._member(s, member_id, refresh=True)
            sums = dict(
                s.execute(
                    select(TransactionRow.credit_source, func.sum(TransactionRow.amount))
                    .where(TransactionRow.member_id == member_id)
                    .group_by(TransactionRow.credit_source)
                ).all()
            )
        ledger_earned = int(sums.get(Tranche.EARNED.value) or 0)
        ledger_purchased = sum(int(v or 0) for k, v in sums.items() if k != Tranche.EARNED.value)
        return LedgerVerification(
            member_id=member_id,
            consistent=(ledger_earned == member.earned_credits and ledger_purchased == member.purchased_credits),
            stored_earned=member.earned_credits,
            stored_purchased=member.purchased_credits,
            ledger_earned=ledger_earned,
            ledger_purchased=ledger_purchased,
        )

    # ---- internals ----

    def _member(self, session: Session, member_id: str, refresh: bool = False) -> MemberRow:
        row = session.get(MemberRow, member_id, populate_existing=refresh)
        if row is None:
            raise NotFoundError(f"Member {member_id} not found")
        return row

    def _move(self, session: Session, member_id: str, tranche: Tranche, delta: int) -> None:
        # The non-negativity check lives in the WHERE clause so the store
        # decides it atomically against the current row.
        column = _TRANCHE_COLUMNS[tranche]
        stmt = (
            update(MemberRow)
            .where(
                MemberRow.id == member_id,
                column + delta >= 0,
                MemberRow.credits_balance + delta >= 0,
            )
            .values(
                {
                    column.key: column + delta,
                    "credits_balance": MemberRow.credits_balance + delta,
                    "version": MemberRow.version + 1,
                    "updated_at": utc_now(),
                }
            )
            .execution_options(synchronize_session=False)
        )
        if session.execute(stmt).rowcount == 1:
            return
        self._member(session, member_id)
        raise InsufficientFundsError(f"insufficient {tranche.value} credits for a debit of {-delta}")
