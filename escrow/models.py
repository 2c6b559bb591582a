from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from ledger.models import Transaction


class EscrowStatus(str, Enum):
    HELD = "held"
    DELIVERED = "delivered"
    DISPUTED = "disputed"
    RELEASED = "released"
    REFUNDED = "refunded"


class DisputeStatus(str, Enum):
    OPEN = "open"
    CANCELLED = "cancelled"
    RESOLVED = "resolved"


class DisputeOutcome(str, Enum):
    RELEASE = "release"
    REFUND = "refund"


class PostType(str, Enum):
    OFFER = "offer"
    REQUEST = "request"


class Escrow(BaseModel):
    id: UUID
    offer_id: Optional[int] = None
    request_id: Optional[int] = None
    payer_id: str
    provider_id: str
    credits_held: int
    held_purchased: int
    held_earned: int
    status: EscrowStatus
    release_available_at: Optional[datetime] = None
    buyer_confirmed_at: Optional[datetime] = None
    provider_marked_complete_at: Optional[datetime] = None
    released_at: Optional[datetime] = None
    dispute_status: Optional[DisputeStatus] = None
    dispute_reason: Optional[str] = None
    disputed_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    admin_note: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class EscrowResponse(BaseModel):
    escrow: Escrow
    transactions: list[Transaction] = Field(default_factory=list)
    provider_credits: Optional[int] = None
    fee: Optional[int] = None
    message: str


class EscrowListResponse(BaseModel):
    entries: list[Escrow]
    total_count: int


class ReleaseSummary(BaseModel):
    released: int
    skipped: int
    failed: int
    total: int


class CreateEscrowRequest(BaseModel):
    post_type: PostType = PostType.REQUEST
    post_id: int = Field(..., strict=True)


class EscrowActionRequest(BaseModel):
    escrow_id: UUID


class DisputeRequest(BaseModel):
    escrow_id: UUID
    reason: Optional[str] = None


class AdminEscrowRequest(BaseModel):
    escrow_id: UUID
    admin_note: Optional[str] = None


class ResolveDisputeRequest(BaseModel):
    escrow_id: UUID
    outcome: DisputeOutcome
    admin_note: Optional[str] = None
