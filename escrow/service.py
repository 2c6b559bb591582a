import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple
from uuid import UUID, uuid4

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from ledger.config import Settings
from ledger.db import EscrowRow, as_utc, utc_now
from ledger.errors import (
    Forbidden,
    InvalidInputError,
    InvalidStateError,
    NotFoundError,
    StorageFailure,
)
from ledger.integrations import Notifier, emit_safely
from ledger.models import CreditSource, Transaction, TransactionType
from ledger.service import LedgerService

from .listings import InMemoryListingDirectory, ListingDirectory
from .models import (
    DisputeOutcome,
    DisputeStatus,
    Escrow,
    EscrowListResponse,
    EscrowResponse,
    EscrowStatus,
    PostType,
    ReleaseSummary,
)
from .state_machine import EscrowAction, EscrowStateMachine

logger = logging.getLogger(__name__)


def split_fee(credits: int, fee_percent: int) -> Tuple[int, int]:
    """
    Split held credits into (provider_net, platform_fee).

    The fee is ``credits * percent / 100`` rounded half up using integer
    arithmetic only; the provider receives the remainder, so the two parts
    always add back to ``credits``.
    """
    fee = (credits * fee_percent + 50) // 100
    return credits - fee, fee


class EscrowService:
    def __init__(
        self,
        ledger: LedgerService,
        listings: Optional[ListingDirectory] = None,
        notifier: Optional[Notifier] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.ledger = ledger
        self.storage = ledger.storage
        self.listings = listings or InMemoryListingDirectory()
        self.notifier = notifier
        self.settings = settings or Settings()
        self.clock = clock
        self.machine = EscrowStateMachine()

    # ---- member actions ----

    def create_escrow(self, payer_id: str, post_type: PostType, post_id: int) -> EscrowResponse:
        listing = self.listings.lookup(PostType(post_type), post_id)
        if listing is None:
            raise NotFoundError(f"{PostType(post_type).value} #{post_id} not found")
        if listing.owner_id == payer_id:
            raise InvalidInputError("Cannot purchase your own post")
        if listing.credits < 1:
            raise InvalidInputError("Invalid credit amount")

        now = self.clock()
        escrow_id = uuid4()
        with self.storage.unit_of_work() as s:
            self.ledger.ensure_member(listing.owner_id, session=s)
            spent = self.ledger.spend(
                payer_id,
                listing.credits,
                TransactionType.ESCROW_HOLD,
                f"Escrow hold for {listing.post_type.value} #{post_id}",
                escrow_id=escrow_id,
                session=s,
            )
            row = EscrowRow(
                id=escrow_id,
                payer_id=payer_id,
                provider_id=listing.owner_id,
                credits_held=listing.credits,
                held_purchased=spent.from_purchased,
                held_earned=spent.from_earned,
                status=EscrowStatus.HELD.value,
                release_available_at=now + timedelta(days=self.settings.escrow_release_delay_days),
                offer_id=post_id if listing.post_type == PostType.OFFER else None,
                request_id=post_id if listing.post_type == PostType.REQUEST else None,
                created_at=now,
                updated_at=now,
            )
            s.add(row)
            s.flush()
            escrow = Escrow.model_validate(row)

        logger.info(
            "escrow created",
            extra={"escrow_id": str(escrow.id), "member_id": payer_id, "amount": escrow.credits_held},
        )
        emit_safely(self.notifier, "escrow_created", escrow.provider_id, escrow_id=str(escrow.id))
        return EscrowResponse(escrow=escrow, transactions=spent.transactions, message="Credits held in escrow")

    def mark_delivered(self, escrow_id: UUID, caller_id: str) -> EscrowResponse:
        now = self.clock()
        with self.storage.unit_of_work() as s:
            row = self._load(s, escrow_id)
            if row.provider_id != caller_id:
                raise Forbidden("Only the provider can mark an order delivered")
            self.machine.apply(s, escrow_id, EscrowAction.MARK_DELIVERED, row.status, provider_marked_complete_at=now)
            escrow = Escrow.model_validate(self._load(s, escrow_id, refresh=True))

        emit_safely(self.notifier, "escrow_delivered", escrow.payer_id, escrow_id=str(escrow_id))
        return EscrowResponse(escrow=escrow, message="Marked delivered")

    def release(self, escrow_id: UUID, caller_id: str) -> EscrowResponse:
        """
        Payer confirmation releases at once from held or delivered. The
        provider may only collect a delivered escrow whose safety delay has
        passed, which is the lazy form of auto-release.
        """
        now = self.clock()
        with self.storage.unit_of_work() as s:
            row = self._load(s, escrow_id)
            current = EscrowStatus(row.status)
            changes: Dict[str, Any] = {"released_at": now}
            if caller_id == row.payer_id:
                changes["buyer_confirmed_at"] = now
            elif caller_id == row.provider_id:
                if current != EscrowStatus.DELIVERED and self.machine.can(EscrowAction.RELEASE, current):
                    raise InvalidStateError("Awaiting delivery")
                available = as_utc(row.release_available_at)
                if available is not None and now < available and current == EscrowStatus.DELIVERED:
                    raise InvalidStateError("Release available after safety delay")
            else:
                raise Forbidden("Only the payer or provider can release an escrow")

            self.machine.apply(s, escrow_id, EscrowAction.RELEASE, current, **changes)
            transactions, net, fee = self._settle_release(s, row)
            escrow = Escrow.model_validate(self._load(s, escrow_id, refresh=True))

        self._released(escrow, net, fee)
        return EscrowResponse(
            escrow=escrow, transactions=transactions, provider_credits=net, fee=fee, message="Escrow released"
        )

    def report_dispute(self, escrow_id: UUID, caller_id: str, reason: Optional[str] = None) -> EscrowResponse:
        now = self.clock()
        with self.storage.unit_of_work() as s:
            row = self._load(s, escrow_id)
            if caller_id not in (row.payer_id, row.provider_id):
                raise Forbidden("Only the payer or provider can dispute an escrow")
            self.machine.apply(
                s,
                escrow_id,
                EscrowAction.DISPUTE,
                row.status,
                dispute_status=DisputeStatus.OPEN.value,
                dispute_reason=(reason or "").strip() or None,
                disputed_at=now,
                resolved_at=None,
            )
            escrow = Escrow.model_validate(self._load(s, escrow_id, refresh=True))

        logger.info("escrow disputed", extra={"escrow_id": str(escrow_id), "member_id": caller_id})
        other = escrow.provider_id if caller_id == escrow.payer_id else escrow.payer_id
        emit_safely(self.notifier, "escrow_disputed", other, escrow_id=str(escrow_id))
        return EscrowResponse(escrow=escrow, message="Dispute opened")

    def get_escrow(self, escrow_id: UUID, caller_id: str) -> Escrow:
        with self.storage.unit_of_work() as s:
            row = self._load(s, escrow_id)
            if caller_id not in (row.payer_id, row.provider_id):
                self.ledger.require_admin(caller_id, session=s)
            return Escrow.model_validate(row)

    # ---- admin actions ----

    def cancel_dispute(self, escrow_id: UUID, admin_id: str, admin_note: Optional[str] = None) -> EscrowResponse:
        now = self.clock()
        with self.storage.unit_of_work() as s:
            self.ledger.require_admin(admin_id, session=s)
            row = self._load(s, escrow_id)
            changes: Dict[str, Any] = {
                "dispute_reason": None,
                "dispute_status": DisputeStatus.CANCELLED.value,
                "resolved_at": now,
            }
            if admin_note is not None:
                changes["admin_note"] = admin_note
            self.machine.apply(s, escrow_id, EscrowAction.CANCEL_DISPUTE, row.status, **changes)
            escrow = Escrow.model_validate(self._load(s, escrow_id, refresh=True))

        logger.info("escrow dispute cancelled", extra={"escrow_id": str(escrow_id), "admin_id": admin_id})
        for member_id in (escrow.payer_id, escrow.provider_id):
            emit_safely(self.notifier, "dispute_cancelled", member_id, escrow_id=str(escrow_id))
        return EscrowResponse(escrow=escrow, message="Dispute cancelled. Escrow returned to held status.")

    def resolve_dispute(
        self, escrow_id: UUID, admin_id: str, outcome: DisputeOutcome, admin_note: Optional[str] = None
    ) -> EscrowResponse:
        outcome = DisputeOutcome(outcome)
        now = self.clock()
        changes: Dict[str, Any] = {"dispute_status": DisputeStatus.RESOLVED.value, "resolved_at": now}
        if admin_note is not None:
            changes["admin_note"] = admin_note
        with self.storage.unit_of_work() as s:
            self.ledger.require_admin(admin_id, session=s)
            row = self._load(s, escrow_id)
            if outcome == DisputeOutcome.RELEASE:
                self.machine.apply(s, escrow_id, EscrowAction.RESOLVE_RELEASE, row.status, released_at=now, **changes)
                transactions, net, fee = self._settle_release(s, row)
            else:
                self.machine.apply(s, escrow_id, EscrowAction.RESOLVE_REFUND, row.status, **changes)
                transactions, net, fee = self._settle_refund(s, row), None, None
            escrow = Escrow.model_validate(self._load(s, escrow_id, refresh=True))

        logger.info(
            "escrow dispute resolved",
            extra={"escrow_id": str(escrow_id), "admin_id": admin_id, "outcome": outcome.value},
        )
        if outcome == DisputeOutcome.RELEASE:
            self._released(escrow, net, fee)
        else:
            emit_safely(self.notifier, "escrow_refunded", escrow.payer_id, escrow_id=str(escrow_id))
        return EscrowResponse(
            escrow=escrow,
            transactions=transactions,
            provider_credits=net,
            fee=fee,
            message=f"Dispute resolved: {outcome.value}",
        )

    def refund(self, escrow_id: UUID, admin_id: str, admin_note: Optional[str] = None) -> EscrowResponse:
        now = self.clock()
        with self.storage.unit_of_work() as s:
            self.ledger.require_admin(admin_id, session=s)
            row = self._load(s, escrow_id)
            changes: Dict[str, Any] = {"resolved_at": now}
            if admin_note is not None:
                changes["admin_note"] = admin_note
            if row.status == EscrowStatus.DISPUTED.value:
                changes["dispute_status"] = DisputeStatus.RESOLVED.value
            self.machine.apply(s, escrow_id, EscrowAction.REFUND, row.status, **changes)
            transactions = self._settle_refund(s, row)
            escrow = Escrow.model_validate(self._load(s, escrow_id, refresh=True))

        logger.info("escrow refunded", extra={"escrow_id": str(escrow_id), "admin_id": admin_id})
        emit_safely(self.notifier, "escrow_refunded", escrow.payer_id, escrow_id=str(escrow_id))
        return EscrowResponse(escrow=escrow, transactions=transactions, message="Escrow refunded")

    def list_escrows(
        self, admin_id: str, status: Optional[EscrowStatus] = None, limit: int = 50, offset: int = 0
    ) -> EscrowListResponse:
        with self.storage.unit_of_work() as s:
            self.ledger.require_admin(admin_id, session=s)
            query = select(EscrowRow)
            count = select(func.count()).select_from(EscrowRow)
            if status is not None:
                query = query.where(EscrowRow.status == status.value)
                count = count.where(EscrowRow.status == status.value)
            rows = s.execute(query.order_by(EscrowRow.created_at.desc()).limit(limit).offset(offset)).scalars()
            return EscrowListResponse(
                entries=[Escrow.model_validate(r) for r in rows],
                total_count=s.execute(count).scalar_one(),
            )

    # ---- timeout-driven release ----

    def release_due(self, now: Optional[datetime] = None) -> ReleaseSummary:
        """Release every delivered escrow whose safety delay has elapsed."""
        now = now or self.clock()
        with self.storage.unit_of_work() as s:
            due = list(
                s.execute(
                    select(EscrowRow.id).where(
                        EscrowRow.status == EscrowStatus.DELIVERED.value,
                        EscrowRow.release_available_at <= now,
                    )
                ).scalars()
            )

        released = skipped = failed = 0
        for escrow_id in due:
            try:
                with self.storage.unit_of_work() as s:
                    row = self._load(s, escrow_id)
                    self.machine.apply(s, escrow_id, EscrowAction.RELEASE, EscrowStatus.DELIVERED, released_at=now)
                    _, net, fee = self._settle_release(s, row)
                    escrow = Escrow.model_validate(self._load(s, escrow_id, refresh=True))
            except InvalidStateError:
                skipped += 1
                continue
            except StorageFailure:
                logger.error("auto-release failed", extra={"escrow_id": str(escrow_id)})
                failed += 1
                continue
            released += 1
            self._released(escrow, net, fee)

        logger.info(
            "auto-release run finished",
            extra={"released": released, "skipped": skipped, "failed": failed, "total": len(due)},
        )
        return ReleaseSummary(released=released, skipped=skipped, failed=failed, total=len(due))

    # ---- internals ----

    def _load(self, session: Session, escrow_id: UUID, refresh: bool = False) -> EscrowRow:
        row = session.get(EscrowRow, escrow_id, populate_existing=refresh)
        if row is None:
            raise NotFoundError(f"Escrow {escrow_id} not found")
        return row

    def _listing_label(self, row: EscrowRow) -> str:
        return f"Offer #{row.offer_id}" if row.offer_id is not None else f"Request #{row.request_id}"

    def _settle_release(self, session: Session, row: EscrowRow) -> Tuple[List[Transaction], int, int]:
        net, fee = split_fee(row.credits_held, self.settings.platform_fee_percent)
        transactions = [
            self.ledger.apply_transaction(
                row.provider_id,
                row.credits_held,
                TransactionType.ESCROW_RELEASE,
                CreditSource.EARNED,
                True,
                f"Escrow release ({row.credits_held}) for {self._listing_label(row)}",
                escrow_id=row.id,
                session=session,
            )
        ]
        if fee > 0:
            transactions.append(
                self.ledger.apply_transaction(
                    row.provider_id,
                    -fee,
                    TransactionType.PLATFORM_FEE,
                    CreditSource.EARNED,
                    False,
                    f"Platform fee ({self.settings.platform_fee_percent}%)",
                    escrow_id=row.id,
                    session=session,
                )
            )
        return transactions, net, fee

    def _settle_refund(self, session: Session, row: EscrowRow) -> List[Transaction]:
        # Each portion goes back to the tranche it was taken from.
        transactions = []
        for amount, source in ((row.held_purchased, CreditSource.PURCHASED), (row.held_earned, CreditSource.EARNED)):
            if amount:
                transactions.append(
                    self.ledger.apply_transaction(
                        row.payer_id,
                        amount,
                        TransactionType.ESCROW_REFUND,
                        source,
                        source == CreditSource.EARNED,
                        f"Escrow refund ({amount}) for {self._listing_label(row)}",
                        escrow_id=row.id,
                        session=session,
                    )
                )
        return transactions

    def _released(self, escrow: Escrow, net: Optional[int], fee: Optional[int]) -> None:
        logger.info(
            "escrow released",
            extra={"escrow_id": str(escrow.id), "member_id": escrow.provider_id, "amount": net, "fee": fee},
        )
        emit_safely(self.notifier, "escrow_released", escrow.provider_id, escrow_id=str(escrow.id), credits=net)
