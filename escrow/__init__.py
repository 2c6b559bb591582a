"""
Escrowed marketplace payments: held -> delivered -> released, with
disputes and admin refunds settled through the credit ledger.
"""

from .listings import InMemoryListingDirectory, Listing, ListingDirectory
from .models import DisputeOutcome, DisputeStatus, Escrow, EscrowStatus, PostType
from .service import EscrowService, split_fee
from .state_machine import EscrowAction, EscrowStateMachine

__all__ = [
    "DisputeOutcome",
    "DisputeStatus",
    "Escrow",
    "EscrowAction",
    "EscrowService",
    "EscrowStateMachine",
    "EscrowStatus",
    "InMemoryListingDirectory",
    "Listing",
    "ListingDirectory",
    "PostType",
    "split_fee",
]
