"""
Outbound collaborators: event notifications and real-money payouts.

Both are best-effort from the ledger's point of view. A notifier that
raises never fails the operation that triggered it, and a payout that
fails leaves the cashout approved for manual handling.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from .models import CashoutRequest

logger = logging.getLogger(__name__)


class Notifier(ABC):
    @abstractmethod
    def emit(self, event: str, member_id: str, payload: Dict[str, Any]) -> None:
        ...


class LoggingNotifier(Notifier):
    def emit(self, event: str, member_id: str, payload: Dict[str, Any]) -> None:
        logger.info("notification %s", event, extra={"member_id": member_id, "event": event})


def emit_safely(notifier: Optional[Notifier], event: str, member_id: str, **payload: Any) -> None:
    if notifier is None:
        return
    try:
        notifier.emit(event, member_id, payload)
    except Exception:
        logger.warning("notification %s failed", event, exc_info=True, extra={"member_id": member_id})


class PayoutError(Exception):
    pass


class PayoutUnavailable(PayoutError):
    pass


class PayoutProcessor(ABC):
    @abstractmethod
    def send(self, cashout: CashoutRequest) -> str:
        """Start the transfer and return the processor's reference."""


class ManualPayoutProcessor(PayoutProcessor):
    """No processor configured: every approved cashout is paid by hand."""

    def send(self, cashout: CashoutRequest) -> str:
        raise PayoutUnavailable("no payout processor configured")
