import logging
from typing import Optional
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from .config import Settings
from .db import CashoutRow, utc_now
from .errors import AlreadyProcessedError, InvalidInputError, NotFoundError
from .integrations import ManualPayoutProcessor, Notifier, PayoutError, PayoutProcessor, emit_safely
from .models import (
    CashoutListResponse,
    CashoutRequest,
    CashoutResponse,
    CashoutStatus,
    CreditSource,
    TransactionType,
)
from .service import LedgerService

logger = logging.getLogger(__name__)


class CashoutService:
    def __init__(
        self,
        ledger: LedgerService,
        payouts: Optional[PayoutProcessor] = None,
        notifier: Optional[Notifier] = None,
        settings: Optional[Settings] = None,
    ):
        self.ledger = ledger
        self.storage = ledger.storage
        self.payouts = payouts or ManualPayoutProcessor()
        self.notifier = notifier
        self.settings = settings or Settings()

    def request_cashout(self, member_id: str, amount_credits: int) -> CashoutResponse:
        minimum = self.settings.cashout_minimum
        if isinstance(amount_credits, bool) or not isinstance(amount_credits, int) or amount_credits < minimum:
            raise InvalidInputError(f"minimum cashout is {minimum} credits")

        with self.storage.unit_of_work() as s:
            row = CashoutRow(user_id=member_id, amount_credits=amount_credits, status=CashoutStatus.PENDING.value)
            s.add(row)
            s.flush()
            # Earned credits leave the spendable balance now and sit in limbo
            # until an admin approves or rejects the request.
            hold = self.ledger.apply_transaction(
                member_id,
                -amount_credits,
                TransactionType.CASHOUT_HOLD,
                CreditSource.EARNED,
                False,
                f"Cashout request pending admin approval ({amount_credits} credits)",
                cashout_id=row.id,
                session=s,
            )
            row.hold_transaction_id = hold.id
            s.flush()
            cashout = CashoutRequest.model_validate(row)

        logger.info(
            "cashout requested",
            extra={"member_id": member_id, "cashout_id": str(cashout.id), "amount": amount_credits},
        )
        emit_safely(self.notifier, "cashout_requested", member_id, cashout_id=str(cashout.id))
        return CashoutResponse(cashout=cashout, transaction=hold, message="Cashout request submitted for admin review")

    def approve_cashout(self, cashout_id: UUID, admin_id: str, admin_note: Optional[str] = None) -> CashoutResponse:
        with self.storage.unit_of_work() as s:
            self.ledger.require_admin(admin_id, session=s)
            self._load(s, cashout_id)
            self._decide(s, cashout_id, CashoutStatus.APPROVED, admin_id, admin_note)
            cashout = CashoutRequest.model_validate(self._load(s, cashout_id, refresh=True))

        try:
            reference = self.payouts.send(cashout)
        except PayoutError as e:
            logger.warning(
                "payout not sent, manual payout required: %s",
                e,
                extra={"cashout_id": str(cashout_id), "member_id": cashout.user_id},
            )
            emit_safely(self.notifier, "cashout_approved", cashout.user_id, cashout_id=str(cashout_id))
            return CashoutResponse(cashout=cashout, message="Cashout approved. Manual payout required.")

        with self.storage.unit_of_work() as s:
            s.execute(
                update(CashoutRow)
                .where(CashoutRow.id == cashout_id, CashoutRow.status == CashoutStatus.APPROVED.value)
                .values(status=CashoutStatus.PAID.value, paid_at=utc_now(), payout_reference=reference)
                .execution_options(synchronize_session=False)
            )
            cashout = CashoutRequest.model_validate(self._load(s, cashout_id, refresh=True))

        logger.info("cashout paid", extra={"cashout_id": str(cashout_id), "payout_reference": reference})
        emit_safely(self.notifier, "cashout_paid", cashout.user_id, cashout_id=str(cashout_id))
        return CashoutResponse(cashout=cashout, message="Cashout approved and payout sent.")

    def reject_cashout(self, cashout_id: UUID, admin_id: str, admin_note: Optional[str] = None) -> CashoutResponse:
        with self.storage.unit_of_work() as s:
            self.ledger.require_admin(admin_id, session=s)
            row = self._load(s, cashout_id)
            self._decide(s, cashout_id, CashoutStatus.REJECTED, admin_id, admin_note or "Rejected by admin")
            reversal = self.ledger.apply_transaction(
                row.user_id,
                row.amount_credits,
                TransactionType.CASHOUT_REVERSAL,
                CreditSource.EARNED,
                True,
                f"Cashout rejected, credits returned: {admin_note}" if admin_note else "Cashout rejected, credits returned",
                refund_of=row.hold_transaction_id,
                cashout_id=row.id,
                session=s,
            )
            cashout = CashoutRequest.model_validate(self._load(s, cashout_id, refresh=True))

        logger.info("cashout rejected", extra={"cashout_id": str(cashout_id), "member_id": cashout.user_id})
        emit_safely(self.notifier, "cashout_rejected", cashout.user_id, cashout_id=str(cashout_id))
        return CashoutResponse(cashout=cashout, transaction=reversal, message="Cashout rejected. Credits returned to user.")

    def list_cashouts(
        self, admin_id: str, status: Optional[CashoutStatus] = None, limit: int = 50, offset: int = 0
    ) -> CashoutListResponse:
        with self.storage.unit_of_work() as s:
            self.ledger.require_admin(admin_id, session=s)
            query = select(CashoutRow)
            count = select(func.count()).select_from(CashoutRow)
            if status is not None:
                query = query.where(CashoutRow.status == status.value)
                count = count.where(CashoutRow.status == status.value)
            rows = s.execute(query.order_by(CashoutRow.requested_at.desc()).limit(limit).offset(offset)).scalars()
            return CashoutListResponse(
                entries=[CashoutRequest.model_validate(r) for r in rows],
                total_count=s.execute(count).scalar_one(),
            )

    def _load(self, session: Session, cashout_id: UUID, refresh: bool = False) -> CashoutRow:
        row = session.get(CashoutRow, cashout_id, populate_existing=refresh)
        if row is None:
            raise NotFoundError(f"Cashout request {cashout_id} not found")
        return row

    def _decide(
        self, session: Session, cashout_id: UUID, status: CashoutStatus, admin_id: str, admin_note: Optional[str]
    ) -> None:
        result = session.execute(
            update(CashoutRow)
            .where(CashoutRow.id == cashout_id, CashoutRow.status == CashoutStatus.PENDING.value)
            .values(status=status.value, admin_id=admin_id, admin_note=admin_note, reviewed_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise AlreadyProcessedError(f"Cashout request {cashout_id} is no longer pending")
