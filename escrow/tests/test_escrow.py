"""
Unit Tests for the Escrow Service

Tests cover:
1. Hold, delivery and buyer-confirmed release
2. Fee split and rounding
3. Disputes: open, cancel, resolve
4. Admin refunds back to the originating tranches
5. Delay-based release and the periodic trigger
6. Stale-state writers and concurrent callers
"""

from datetime import timedelta

import pytest

from conftest import ADMIN_ID, OUTSIDER_ID, PAYER_ID, PROVIDER_ID, fund, run_together
from escrow.models import DisputeOutcome, DisputeStatus, EscrowStatus, PostType
from escrow.service import EscrowService, split_fee
from escrow.state_machine import EscrowAction
from ledger.db import as_utc
from ledger.errors import (
    Forbidden,
    InsufficientFundsError,
    InvalidInputError,
    InvalidStateError,
    NotFoundError,
)
from ledger.models import CreditSource, TransactionType


def balances(ledger, member_id):
    b = ledger.get_balance(member_id)
    assert b.credits_balance == b.earned_credits + b.purchased_credits
    return b.credits_balance, b.earned_credits, b.purchased_credits


class TestFeeSplit:
    """Tests for the provider/platform split."""

    @pytest.mark.parametrize(
        "credits,net,fee",
        [(50, 42, 8), (100, 85, 15), (10, 8, 2), (1, 1, 0), (3, 3, 0), (4, 3, 1), (7, 6, 1)],
    )
    def test_round_half_up(self, credits, net, fee):
        assert split_fee(credits, 15) == (net, fee)

    def test_total_preserved(self):
        for credits in range(1, 500):
            net, fee = split_fee(credits, 15)
            assert net + fee == credits
            assert net >= 0 and fee >= 0


class TestHappyPath:
    """Tests for hold, delivery and buyer confirmation."""

    def test_full_flow(self, ledger, escrows):
        """100 purchased, 50 held, delivered, confirmed: provider earns 42 and the fee is 8."""
        fund(ledger, PAYER_ID, purchased=100)

        created = escrows.create_escrow(PAYER_ID, PostType.REQUEST, 1)
        assert created.escrow.status == EscrowStatus.HELD
        assert created.escrow.request_id == 1
        assert created.escrow.held_purchased == 50
        assert balances(ledger, PAYER_ID) == (50, 0, 50)

        delivered = escrows.mark_delivered(created.escrow.id, PROVIDER_ID)
        assert delivered.escrow.status == EscrowStatus.DELIVERED
        assert delivered.escrow.provider_marked_complete_at is not None

        released = escrows.release(created.escrow.id, PAYER_ID)
        assert released.escrow.status == EscrowStatus.RELEASED
        assert released.escrow.buyer_confirmed_at is not None
        assert released.provider_credits == 42
        assert released.fee == 8
        assert balances(ledger, PROVIDER_ID) == (42, 42, 0)

        fee_tx = [t for t in released.transactions if t.transaction_type == TransactionType.PLATFORM_FEE]
        assert len(fee_tx) == 1
        assert fee_tx[0].amount == -8
        release_tx = [t for t in released.transactions if t.transaction_type == TransactionType.ESCROW_RELEASE]
        assert release_tx[0].can_cashout is True
        assert release_tx[0].credit_source == CreditSource.EARNED
        assert ledger.platform_revenue().total_fees == 8
        assert ledger.verify_member(PAYER_ID).consistent
        assert ledger.verify_member(PROVIDER_ID).consistent

    def test_release_twice_does_not_double_pay(self, ledger, escrows):
        fund(ledger, PAYER_ID, purchased=100)
        escrow = escrows.create_escrow(PAYER_ID, PostType.REQUEST, 1).escrow
        escrows.release(escrow.id, PAYER_ID)

        with pytest.raises(InvalidStateError):
            escrows.release(escrow.id, PAYER_ID)
        with pytest.raises(InvalidStateError):
            escrows.refund(escrow.id, ADMIN_ID)

        assert balances(ledger, PROVIDER_ID) == (42, 42, 0)
        assert balances(ledger, PAYER_ID) == (50, 0, 50)

    def test_hold_rows_point_at_escrow(self, ledger, escrows):
        """The stored split matches the hold rows, which all carry the escrow id."""
        fund(ledger, PAYER_ID, purchased=20, earned=40)

        created = escrows.create_escrow(PAYER_ID, PostType.REQUEST, 1)

        holds = created.transactions
        assert [(t.credit_source, t.amount) for t in holds] == [
            (CreditSource.PURCHASED, -20),
            (CreditSource.EARNED, -30),
        ]
        assert all(t.escrow_id == created.escrow.id for t in holds)
        assert all(t.transaction_type == TransactionType.ESCROW_HOLD for t in holds)
        stored = escrows.get_escrow(created.escrow.id, PAYER_ID)
        assert (stored.held_purchased, stored.held_earned, stored.credits_held) == (20, 30, 50)
        assert ledger.verify_member(PAYER_ID).consistent

    def test_offer_listing_records_offer_id(self, ledger, escrows):
        fund(ledger, PAYER_ID, purchased=100)

        escrow = escrows.create_escrow(PAYER_ID, PostType.OFFER, 2).escrow

        assert escrow.offer_id == 2
        assert escrow.request_id is None
        assert escrow.credits_held == 30

    def test_release_delay_recorded(self, ledger, escrows, clock):
        fund(ledger, PAYER_ID, purchased=100)

        escrow = escrows.create_escrow(PAYER_ID, PostType.REQUEST, 1).escrow

        assert as_utc(escrow.release_available_at) == clock.now + timedelta(days=7)

    def test_notifications(self, ledger, escrows, notifier):
        fund(ledger, PAYER_ID, purchased=100)
        escrow = escrows.create_escrow(PAYER_ID, PostType.REQUEST, 1).escrow
        escrows.mark_delivered(escrow.id, PROVIDER_ID)
        escrows.release(escrow.id, PAYER_ID)

        assert [(e[0], e[1]) for e in notifier.events] == [
            ("escrow_created", PROVIDER_ID),
            ("escrow_delivered", PAYER_ID),
            ("escrow_released", PROVIDER_ID),
        ]


class TestCreateGuards:
    """Tests for escrow creation failures."""

    def test_insufficient_funds_writes_nothing(self, ledger, escrows):
        fund(ledger, PAYER_ID, purchased=49)

        with pytest.raises(InsufficientFundsError):
            escrows.create_escrow(PAYER_ID, PostType.REQUEST, 1)

        assert balances(ledger, PAYER_ID) == (49, 0, 49)
        assert escrows.list_escrows(ADMIN_ID).total_count == 0

    def test_own_listing_rejected(self, ledger, escrows):
        fund(ledger, PAYER_ID, purchased=100)

        with pytest.raises(InvalidInputError):
            escrows.create_escrow(PAYER_ID, PostType.REQUEST, 3)

    def test_unknown_listing(self, ledger, escrows):
        with pytest.raises(NotFoundError):
            escrows.create_escrow(PAYER_ID, PostType.OFFER, 99)

    def test_zero_priced_listing_rejected(self, ledger, escrows, listings):
        listings.add(PostType.OFFER, 50, PROVIDER_ID, 0)

        with pytest.raises(InvalidInputError):
            escrows.create_escrow(PAYER_ID, PostType.OFFER, 50)


class TestPermissions:
    """Tests for who may move an escrow."""

    def test_only_provider_marks_delivered(self, ledger, escrows):
        fund(ledger, PAYER_ID, purchased=100)
        escrow = escrows.create_escrow(PAYER_ID, PostType.REQUEST, 1).escrow

        with pytest.raises(Forbidden):
            escrows.mark_delivered(escrow.id, PAYER_ID)

    def test_mark_delivered_twice(self, ledger, escrows):
        fund(ledger, PAYER_ID, purchased=100)
        escrow = escrows.create_escrow(PAYER_ID, PostType.REQUEST, 1).escrow
        escrows.mark_delivered(escrow.id, PROVIDER_ID)

        with pytest.raises(InvalidStateError):
            escrows.mark_delivered(escrow.id, PROVIDER_ID)

    def test_outsider_cannot_release_or_dispute(self, ledger, escrows):
        fund(ledger, PAYER_ID, purchased=100)
        escrow = escrows.create_escrow(PAYER_ID, PostType.REQUEST, 1).escrow

        with pytest.raises(Forbidden):
            escrows.release(escrow.id, OUTSIDER_ID)
        with pytest.raises(Forbidden):
            escrows.report_dispute(escrow.id, OUTSIDER_ID, "not mine")
        with pytest.raises(Forbidden):
            escrows.get_escrow(escrow.id, OUTSIDER_ID)

    def test_admin_can_view_any_escrow(self, ledger, escrows):
        fund(ledger, PAYER_ID, purchased=100)
        escrow = escrows.create_escrow(PAYER_ID, PostType.REQUEST, 1).escrow

        assert escrows.get_escrow(escrow.id, ADMIN_ID).id == escrow.id

    def test_missing_escrow(self, ledger, escrows):
        from uuid import uuid4

        with pytest.raises(NotFoundError):
            escrows.release(uuid4(), PAYER_ID)

    def test_admin_actions_require_admin(self, ledger, escrows):
        fund(ledger, PAYER_ID, purchased=100)
        escrow = escrows.create_escrow(PAYER_ID, PostType.REQUEST, 1).escrow
        escrows.report_dispute(escrow.id, PAYER_ID, "late")

        with pytest.raises(Forbidden):
            escrows.cancel_dispute(escrow.id, PAYER_ID)
        with pytest.raises(Forbidden):
            escrows.resolve_dispute(escrow.id, PROVIDER_ID, DisputeOutcome.RELEASE)
        with pytest.raises(Forbidden):
            escrows.refund(escrow.id, PAYER_ID)


class TestProviderRelease:
    """Tests for provider collection after the safety delay."""

    def test_provider_cannot_release_held(self, ledger, escrows, clock):
        fund(ledger, PAYER_ID, purchased=100)
        escrow = escrows.create_escrow(PAYER_ID, PostType.REQUEST, 1).escrow
        clock.advance(days=30)

        with pytest.raises(InvalidStateError):
            escrows.release(escrow.id, PROVIDER_ID)

    def test_provider_waits_for_delay(self, ledger, escrows, clock):
        fund(ledger, PAYER_ID, purchased=100)
        escrow = escrows.create_escrow(PAYER_ID, PostType.REQUEST, 1).escrow
        escrows.mark_delivered(escrow.id, PROVIDER_ID)

        with pytest.raises(InvalidStateError):
            escrows.release(escrow.id, PROVIDER_ID)

        clock.advance(days=7)
        released = escrows.release(escrow.id, PROVIDER_ID)

        assert released.escrow.status == EscrowStatus.RELEASED
        assert released.escrow.buyer_confirmed_at is None
        assert balances(ledger, PROVIDER_ID) == (42, 42, 0)


class TestReleaseDue:
    """Tests for the periodic release trigger."""

    def test_releases_only_due_delivered(self, ledger, escrows, clock):
        fund(ledger, PAYER_ID, purchased=200)
        due = escrows.create_escrow(PAYER_ID, PostType.REQUEST, 1).escrow
        held = escrows.create_escrow(PAYER_ID, PostType.OFFER, 2).escrow
        escrows.mark_delivered(due.id, PROVIDER_ID)

        early = escrows.release_due(clock.now + timedelta(days=1))
        assert early.released == 0
        assert early.total == 0

        summary = escrows.release_due(clock.now + timedelta(days=8))

        assert summary.released == 1
        assert summary.total == 1
        assert escrows.get_escrow(due.id, PAYER_ID).status == EscrowStatus.RELEASED
        assert escrows.get_escrow(held.id, PAYER_ID).status == EscrowStatus.HELD
        assert balances(ledger, PROVIDER_ID) == (42, 42, 0)

    def test_second_run_finds_nothing(self, ledger, escrows, clock):
        fund(ledger, PAYER_ID, purchased=100)
        escrow = escrows.create_escrow(PAYER_ID, PostType.REQUEST, 1).escrow
        escrows.mark_delivered(escrow.id, PROVIDER_ID)
        later = clock.now + timedelta(days=8)
        escrows.release_due(later)

        assert escrows.release_due(later).total == 0
        assert balances(ledger, PROVIDER_ID) == (42, 42, 0)


class TestDisputes:
    """Tests for the contested path."""

    def test_dispute_then_cancel(self, ledger, escrows):
        """A cancelled dispute returns to held without moving funds."""
        fund(ledger, PAYER_ID, purchased=100)
        escrow = escrows.create_escrow(PAYER_ID, PostType.REQUEST, 1).escrow

        disputed = escrows.report_dispute(escrow.id, PROVIDER_ID, "buyer unresponsive").escrow
        assert disputed.status == EscrowStatus.DISPUTED
        assert disputed.dispute_status == DisputeStatus.OPEN
        assert disputed.dispute_reason == "buyer unresponsive"
        assert disputed.disputed_at is not None

        cancelled = escrows.cancel_dispute(escrow.id, ADMIN_ID, "resolved by chat").escrow
        assert cancelled.status == EscrowStatus.HELD
        assert cancelled.dispute_reason is None
        assert cancelled.dispute_status == DisputeStatus.CANCELLED
        assert cancelled.resolved_at is not None
        assert balances(ledger, PAYER_ID) == (50, 0, 50)
        assert balances(ledger, PROVIDER_ID) == (0, 0, 0)

    def test_cancel_without_note_keeps_earlier_note(self, ledger, escrows):
        fund(ledger, PAYER_ID, purchased=100)
        escrow = escrows.create_escrow(PAYER_ID, PostType.REQUEST, 1).escrow
        escrows.report_dispute(escrow.id, PAYER_ID, "late")
        escrows.cancel_dispute(escrow.id, ADMIN_ID, "talked to both sides")
        escrows.report_dispute(escrow.id, PROVIDER_ID, "late again")

        cancelled = escrows.cancel_dispute(escrow.id, ADMIN_ID).escrow

        assert cancelled.status == EscrowStatus.HELD
        assert cancelled.admin_note == "talked to both sides"

    def test_cancel_requires_disputed(self, ledger, escrows):
        fund(ledger, PAYER_ID, purchased=100)
        escrow = escrows.create_escrow(PAYER_ID, PostType.REQUEST, 1).escrow

        with pytest.raises(InvalidStateError):
            escrows.cancel_dispute(escrow.id, ADMIN_ID)

    def test_disputed_escrow_cannot_be_released_by_parties(self, ledger, escrows):
        fund(ledger, PAYER_ID, purchased=100)
        escrow = escrows.create_escrow(PAYER_ID, PostType.REQUEST, 1).escrow
        escrows.report_dispute(escrow.id, PAYER_ID, "no delivery")

        with pytest.raises(InvalidStateError):
            escrows.release(escrow.id, PAYER_ID)

    def test_resolve_release_pays_provider(self, ledger, escrows):
        fund(ledger, PAYER_ID, purchased=100)
        escrow = escrows.create_escrow(PAYER_ID, PostType.REQUEST, 1).escrow
        escrows.report_dispute(escrow.id, PAYER_ID, "quality")

        response = escrows.resolve_dispute(escrow.id, ADMIN_ID, DisputeOutcome.RELEASE, "work was fine")

        assert response.escrow.status == EscrowStatus.RELEASED
        assert response.escrow.dispute_status == DisputeStatus.RESOLVED
        assert response.escrow.admin_note == "work was fine"
        assert response.fee == 8
        assert balances(ledger, PROVIDER_ID) == (42, 42, 0)

    def test_resolve_refund_returns_to_originating_tranches(self, ledger, escrows):
        """Each held portion goes back to the tranche it came from."""
        fund(ledger, PAYER_ID, purchased=20, earned=40)
        escrow = escrows.create_escrow(PAYER_ID, PostType.REQUEST, 1).escrow
        assert (escrow.held_purchased, escrow.held_earned) == (20, 30)
        escrows.report_dispute(escrow.id, PAYER_ID, "never delivered")

        response = escrows.resolve_dispute(escrow.id, ADMIN_ID, DisputeOutcome.REFUND)

        assert response.escrow.status == EscrowStatus.REFUNDED
        assert {(t.credit_source, t.amount) for t in response.transactions} == {
            (CreditSource.PURCHASED, 20),
            (CreditSource.EARNED, 30),
        }
        assert balances(ledger, PAYER_ID) == (60, 40, 20)
        assert balances(ledger, PROVIDER_ID) == (0, 0, 0)
        assert ledger.verify_member(PAYER_ID).consistent


class TestAdminRefund:
    """Tests for refunding a live escrow."""

    def test_refund_delivered_escrow(self, ledger, escrows):
        fund(ledger, PAYER_ID, purchased=100)
        escrow = escrows.create_escrow(PAYER_ID, PostType.REQUEST, 1).escrow
        escrows.mark_delivered(escrow.id, PROVIDER_ID)

        response = escrows.refund(escrow.id, ADMIN_ID, "provider banned")

        assert response.escrow.status == EscrowStatus.REFUNDED
        assert response.transactions[0].transaction_type == TransactionType.ESCROW_REFUND
        assert balances(ledger, PAYER_ID) == (100, 0, 100)

    def test_refund_twice(self, ledger, escrows):
        fund(ledger, PAYER_ID, purchased=100)
        escrow = escrows.create_escrow(PAYER_ID, PostType.REQUEST, 1).escrow
        escrows.refund(escrow.id, ADMIN_ID)

        with pytest.raises(InvalidStateError):
            escrows.refund(escrow.id, ADMIN_ID)

        assert balances(ledger, PAYER_ID) == (100, 0, 100)

    def test_list_filters_by_status(self, ledger, escrows):
        fund(ledger, PAYER_ID, purchased=200)
        first = escrows.create_escrow(PAYER_ID, PostType.REQUEST, 1).escrow
        escrows.create_escrow(PAYER_ID, PostType.OFFER, 2)
        escrows.refund(first.id, ADMIN_ID)

        listing = escrows.list_escrows(ADMIN_ID, EscrowStatus.HELD)

        assert listing.total_count == 1
        assert listing.entries[0].offer_id == 2


class TestStaleWriters:
    """Tests for the compare-and-set on escrow status."""

    def test_stale_release_moves_no_funds(self, ledger, escrows, storage):
        """A writer that read held after another writer released must fail."""
        fund(ledger, PAYER_ID, purchased=100)
        escrow = escrows.create_escrow(PAYER_ID, PostType.REQUEST, 1).escrow
        escrows.release(escrow.id, PAYER_ID)

        with pytest.raises(InvalidStateError, match="concurrently"):
            with storage.unit_of_work() as s:
                escrows.machine.apply(s, escrow.id, EscrowAction.RELEASE, EscrowStatus.HELD)

        assert balances(ledger, PROVIDER_ID) == (42, 42, 0)
        assert escrows.get_escrow(escrow.id, PAYER_ID).status == EscrowStatus.RELEASED

    def test_lost_race_rolls_back_settlement(self, ledger, escrows, storage, settings, listings, clock):
        """Settlement and status change commit together or not at all."""

        class RacingService(EscrowService):
            def _settle_release(self, session, row):
                super()._settle_release(session, row)
                raise InvalidStateError("escrow changed concurrently")

        fund(ledger, PAYER_ID, purchased=100)
        escrow = escrows.create_escrow(PAYER_ID, PostType.REQUEST, 1).escrow
        racing = RacingService(ledger, listings, settings=settings, clock=clock)

        with pytest.raises(InvalidStateError):
            racing.release(escrow.id, PAYER_ID)

        assert escrows.get_escrow(escrow.id, PAYER_ID).status == EscrowStatus.HELD
        assert balances(ledger, PROVIDER_ID) == (0, 0, 0)


class TestConcurrentRelease:
    """Tests for simultaneous callers on a file-backed store."""

    @pytest.fixture
    def storage(self, file_storage):
        return file_storage

    def test_two_releases_pay_once(self, ledger, escrows):
        fund(ledger, PAYER_ID, purchased=100)
        escrow = escrows.create_escrow(PAYER_ID, PostType.REQUEST, 1).escrow

        results, errors = run_together(
            lambda: escrows.release(escrow.id, PAYER_ID),
            lambda: escrows.release(escrow.id, PAYER_ID),
        )

        assert len(results) == 1
        assert len(errors) == 1
        assert isinstance(errors[0], InvalidStateError)
        assert balances(ledger, PROVIDER_ID) == (42, 42, 0)
        assert ledger.platform_revenue().total_fees == 8
        assert ledger.verify_member(PROVIDER_ID).consistent
        assert ledger.verify_member(PAYER_ID).consistent

    def test_release_and_refund_race(self, ledger, escrows):
        """Exactly one settlement wins when release and refund collide."""
        fund(ledger, PAYER_ID, purchased=100)
        escrow = escrows.create_escrow(PAYER_ID, PostType.REQUEST, 1).escrow

        results, errors = run_together(
            lambda: escrows.release(escrow.id, PAYER_ID),
            lambda: escrows.refund(escrow.id, ADMIN_ID),
        )

        assert len(results) == 1
        assert len(errors) == 1
        assert isinstance(errors[0], InvalidStateError)
        if results[0].escrow.status == EscrowStatus.RELEASED:
            assert balances(ledger, PROVIDER_ID) == (42, 42, 0)
            assert balances(ledger, PAYER_ID) == (50, 0, 50)
        else:
            assert balances(ledger, PROVIDER_ID) == (0, 0, 0)
            assert balances(ledger, PAYER_ID) == (100, 0, 100)
        assert ledger.verify_member(PROVIDER_ID).consistent
        assert ledger.verify_member(PAYER_ID).consistent
