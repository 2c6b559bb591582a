"""
Escrow lifecycle as an explicit transition table.

    held -> delivered -> released            happy path
    held|delivered -> disputed -> released|refunded
    disputed -> held                         dispute dismissed by an admin

``EscrowStateMachine.apply`` is the only code that writes ``escrows.status``.
It checks the table and then performs a compare-and-set on the stored status,
so of two writers that read the same state only one can move it.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.orm import Session

from ledger.db import EscrowRow, utc_now
from ledger.errors import InvalidStateError

from .models import EscrowStatus

TERMINAL_STATES = frozenset({EscrowStatus.RELEASED, EscrowStatus.REFUNDED})


class EscrowAction(str, Enum):
    MARK_DELIVERED = "mark_delivered"
    RELEASE = "release"
    DISPUTE = "dispute"
    CANCEL_DISPUTE = "cancel_dispute"
    RESOLVE_RELEASE = "resolve_release"
    RESOLVE_REFUND = "resolve_refund"
    REFUND = "refund"


@dataclass(frozen=True)
class Transition:
    action: EscrowAction
    sources: frozenset
    target: EscrowStatus


TRANSITIONS: Mapping[EscrowAction, Transition] = {
    t.action: t
    for t in (
        Transition(EscrowAction.MARK_DELIVERED, frozenset({EscrowStatus.HELD}), EscrowStatus.DELIVERED),
        Transition(EscrowAction.RELEASE, frozenset({EscrowStatus.HELD, EscrowStatus.DELIVERED}), EscrowStatus.RELEASED),
        Transition(EscrowAction.DISPUTE, frozenset({EscrowStatus.HELD, EscrowStatus.DELIVERED}), EscrowStatus.DISPUTED),
        Transition(EscrowAction.CANCEL_DISPUTE, frozenset({EscrowStatus.DISPUTED}), EscrowStatus.HELD),
        Transition(EscrowAction.RESOLVE_RELEASE, frozenset({EscrowStatus.DISPUTED}), EscrowStatus.RELEASED),
        Transition(EscrowAction.RESOLVE_REFUND, frozenset({EscrowStatus.DISPUTED}), EscrowStatus.REFUNDED),
        Transition(
            EscrowAction.REFUND,
            frozenset({EscrowStatus.HELD, EscrowStatus.DELIVERED, EscrowStatus.DISPUTED}),
            EscrowStatus.REFUNDED,
        ),
    )
}


class EscrowStateMachine:
    def __init__(self, transitions: Mapping[EscrowAction, Transition] = TRANSITIONS):
        self.transitions = transitions

    def can(self, action: EscrowAction, current: EscrowStatus) -> bool:
        transition = self.transitions.get(action)
        return transition is not None and EscrowStatus(current) in transition.sources

    def plan(self, action: EscrowAction, current: EscrowStatus) -> Transition:
        current = EscrowStatus(current)
        transition = self.transitions.get(action)
        if transition is None or current not in transition.sources:
            if current in TERMINAL_STATES:
                raise InvalidStateError(f"escrow already {current.value}")
            raise InvalidStateError(f"cannot {EscrowAction(action).value} an escrow in {current.value} status")
        return transition

    def apply(
        self,
        session: Session,
        escrow_id: UUID,
        action: EscrowAction,
        current: EscrowStatus,
        **changes: Any,
    ) -> EscrowStatus:
        transition = self.plan(action, current)
        result = session.execute(
            update(EscrowRow)
            .where(EscrowRow.id == escrow_id, EscrowRow.status == EscrowStatus(current).value)
            .values(status=transition.target.value, updated_at=utc_now(), **changes)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise InvalidStateError(f"escrow {escrow_id} changed concurrently, expected {EscrowStatus(current).value}")
        return transition.target
