import logging
from typing import Optional
from uuid import UUID

from sqlalchemy import update

from .db import TransactionRow
from .errors import AlreadyProcessedError, InvalidInputError, NotFoundError
from .models import (
    AdjustmentResponse,
    AdjustmentTarget,
    CreditSource,
    TransactionResponse,
    TransactionType,
)
from .service import LedgerService

logger = logging.getLogger(__name__)

# Holds have their own reversal paths (escrow refund, cashout rejection);
# refunding them directly would return the same credits twice.
_WORKFLOW_HOLDS = frozenset({TransactionType.ESCROW_HOLD.value, TransactionType.CASHOUT_HOLD.value})


class AdminService:
    def __init__(self, ledger: LedgerService):
        self.ledger = ledger
        self.storage = ledger.storage

    def adjust_balance(
        self,
        admin_id: str,
        user_id: str,
        amount: int,
        reason: str,
        target: AdjustmentTarget = AdjustmentTarget.BALANCE,
    ) -> AdjustmentResponse:
        if isinstance(amount, bool) or not isinstance(amount, int) or amount == 0:
            raise InvalidInputError("amount must be a non-zero integer")
        if not reason or not reason.strip():
            raise InvalidInputError("reason is required")
        target = AdjustmentTarget(target)
        description = f"Admin adjustment ({target.value}): {reason.strip()}"

        with self.storage.unit_of_work() as s:
            self.ledger.require_admin(admin_id, session=s)
            self.ledger.ensure_member(user_id, session=s)
            if target == AdjustmentTarget.BALANCE and amount < 0:
                transactions = self.ledger.spend(
                    user_id, -amount, TransactionType.ADMIN_ADJUSTMENT, description, session=s
                ).transactions
            else:
                source = CreditSource.EARNED if target == AdjustmentTarget.EARNED else CreditSource.PURCHASED
                transactions = [
                    self.ledger.apply_transaction(
                        user_id,
                        amount,
                        TransactionType.ADMIN_ADJUSTMENT,
                        source,
                        target == AdjustmentTarget.EARNED,
                        description,
                        session=s,
                    )
                ]
            balance = self.ledger.get_balance(user_id, session=s)

        logger.info(
            "admin balance adjustment",
            extra={"admin_id": admin_id, "member_id": user_id, "amount": amount, "target": target.value},
        )
        return AdjustmentResponse(
            transactions=transactions,
            balance=balance,
            target=target,
            message=f"{target.value} adjusted by {amount:+d} credits",
        )

    def refund_transaction(self, admin_id: str, transaction_id: UUID, reason: Optional[str] = None) -> TransactionResponse:
        with self.storage.unit_of_work() as s:
            self.ledger.require_admin(admin_id, session=s)
            original = s.get(TransactionRow, transaction_id)
            if original is None:
                raise NotFoundError(f"Transaction {transaction_id} not found")
            if original.admin_refunded:
                raise AlreadyProcessedError("This transaction has already been refunded")
            if original.amount >= 0:
                raise InvalidInputError("Only debit (negative) transactions can be refunded")
            if original.transaction_type in _WORKFLOW_HOLDS:
                raise InvalidInputError(f"{original.transaction_type} transactions are reversed by their own workflow")

            # The flag flip is the idempotency key: whoever flips it first
            # owns the refund, everyone else sees AlreadyProcessed.
            flipped = s.execute(
                update(TransactionRow)
                .where(TransactionRow.id == transaction_id, TransactionRow.admin_refunded.is_(False))
                .values(admin_refunded=True)
                .execution_options(synchronize_session=False)
            )
            if flipped.rowcount != 1:
                raise AlreadyProcessedError("This transaction has already been refunded")

            source = CreditSource(original.credit_source) if original.credit_source else CreditSource.PURCHASED
            refund_amount = abs(original.amount)
            suffix = f" ({reason})" if reason else ""
            refund = self.ledger.apply_transaction(
                original.member_id,
                refund_amount,
                TransactionType.ADMIN_REFUND,
                source,
                False,
                f"Admin refund{suffix}: {original.description}",
                refund_of=original.id,
                escrow_id=original.escrow_id,
                session=s,
            )
            balance = self.ledger.get_balance(original.member_id, session=s)

        logger.info(
            "admin transaction refund",
            extra={
                "admin_id": admin_id,
                "transaction_id": str(transaction_id),
                "refund_transaction_id": str(refund.id),
                "amount": refund_amount,
            },
        )
        return TransactionResponse(
            transaction=refund,
            balance=balance,
            message=f"Refunded {refund_amount} credits to {refund.credit_source.value if refund.credit_source else 'purchased'}",
        )
