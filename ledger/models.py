from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class CreditSource(str, Enum):
    EARNED = "earned"
    PURCHASED = "purchased"
    NONE = "none"


class Tranche(str, Enum):
    EARNED = "earned"
    PURCHASED = "purchased"


def resolve_tranche(source: Optional[CreditSource]) -> Tranche:
    """Map a transaction's credit source onto the sub-balance it moves."""
    if source == CreditSource.EARNED:
        return Tranche.EARNED
    return Tranche.PURCHASED


class TransactionType(str, Enum):
    PURCHASE = "purchase"
    ESCROW_HOLD = "escrow_hold"
    ESCROW_RELEASE = "escrow_release"
    ESCROW_REFUND = "escrow_refund"
    PLATFORM_FEE = "platform_fee"
    CASHOUT_HOLD = "cashout_hold"
    CASHOUT_REVERSAL = "cashout_reversal"
    ADMIN_ADJUSTMENT = "admin_adjustment"
    ADMIN_REFUND = "admin_refund"


class AdjustmentTarget(str, Enum):
    EARNED = "earned"
    PURCHASED = "purchased"
    BALANCE = "balance"


class CashoutStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    PAID = "paid"


class Transaction(BaseModel):
    id: UUID
    member_id: str
    amount: int
    description: str
    transaction_type: TransactionType
    credit_source: Optional[CreditSource] = None
    can_cashout: bool = False
    admin_refunded: bool = False
    refund_of_transaction_id: Optional[UUID] = None
    escrow_id: Optional[UUID] = None
    cashout_id: Optional[UUID] = None
    external_ref: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class MemberBalance(BaseModel):
    member_id: str = Field(validation_alias="id")
    credits_balance: int
    earned_credits: int
    purchased_credits: int
    is_admin: bool = False
    version: int = 0

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)


class CashoutRequest(BaseModel):
    id: UUID
    user_id: str
    amount_credits: int
    status: CashoutStatus
    hold_transaction_id: Optional[UUID] = None
    admin_id: Optional[str] = None
    admin_note: Optional[str] = None
    payout_reference: Optional[str] = None
    requested_at: datetime
    reviewed_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class SpendResult(BaseModel):
    transactions: list[Transaction]
    from_purchased: int
    from_earned: int


class TransactionResponse(BaseModel):
    transaction: Transaction
    balance: MemberBalance
    message: str


class AdjustmentResponse(BaseModel):
    transactions: list[Transaction]
    balance: MemberBalance
    target: AdjustmentTarget
    message: str


class CashoutResponse(BaseModel):
    cashout: CashoutRequest
    transaction: Optional[Transaction] = None
    message: str


class LedgerHistoryResponse(BaseModel):
    member_id: str
    entries: list[Transaction]
    total_count: int
    current_balance: int


class TransactionListResponse(BaseModel):
    entries: list[Transaction]
    total_count: int


class CashoutListResponse(BaseModel):
    entries: list[CashoutRequest]
    total_count: int


class RevenueSummary(BaseModel):
    total_fees: int
    fee_count: int
    refunded_fees: int


class LedgerVerification(BaseModel):
    member_id: str
    consistent: bool
    stored_earned: int
    stored_purchased: int
    ledger_earned: int
    ledger_purchased: int


# ---- request bodies ----


class CashoutRequestBody(BaseModel):
    amount_credits: int = Field(..., strict=True)


class CashoutDecisionRequest(BaseModel):
    cashout_id: UUID
    admin_note: Optional[str] = None


class AdjustBalanceRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    amount: int = Field(..., strict=True)
    reason: str = Field(..., min_length=1)
    credit_type: AdjustmentTarget = AdjustmentTarget.BALANCE


class RefundTransactionRequest(BaseModel):
    transaction_id: UUID
    reason: Optional[str] = None


class PurchaseRequest(BaseModel):
    member_id: str = Field(..., min_length=1)
    credits: int = Field(..., strict=True, gt=0)
    external_ref: str = Field(..., min_length=1, description="Payment processor session or intent id")
