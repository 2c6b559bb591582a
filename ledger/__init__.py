"""
Two-tranche credit ledger.

This package provides:
- Members with earned (cashout-eligible) and purchased credit tranches
- An append-only Transaction log, each row moving exactly one tranche
- Cashout requests with admin approval and reversal
- Admin balance adjustments and idempotent transaction refunds
- A store-backed sliding-window rate limiter
"""

from .errors import (
    AlreadyProcessedError,
    Forbidden,
    InsufficientFundsError,
    InvalidInputError,
    InvalidStateError,
    LedgerServiceError,
    NotFoundError,
    RateLimited,
    StorageFailure,
    Unauthenticated,
)
from .models import (
    CashoutStatus,
    CreditSource,
    MemberBalance,
    Transaction,
    TransactionType,
)
from .service import LedgerService

__all__ = [
    "AlreadyProcessedError",
    "CashoutStatus",
    "CreditSource",
    "Forbidden",
    "InsufficientFundsError",
    "InvalidInputError",
    "InvalidStateError",
    "LedgerService",
    "LedgerServiceError",
    "MemberBalance",
    "NotFoundError",
    "RateLimited",
    "StorageFailure",
    "Transaction",
    "TransactionType",
    "Unauthenticated",
]
