import threading
from datetime import datetime, timedelta, timezone

import pytest

from escrow.listings import InMemoryListingDirectory
from escrow.models import PostType
from escrow.service import EscrowService
from ledger.admin import AdminService
from ledger.cashout import CashoutService
from ledger.config import Settings
from ledger.db import Storage
from ledger.models import CreditSource, TransactionType
from ledger.service import LedgerService

PAYER_ID = "user-payer"
PROVIDER_ID = "user-provider"
ADMIN_ID = "user-admin"
OUTSIDER_ID = "user-outsider"


class FakeClock:
    """Settable clock so delay-based release can be tested without sleeping."""

    def __init__(self, start=None):
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingNotifier:
    def __init__(self):
        self.events = []

    def emit(self, event, member_id, payload):
        self.events.append((event, member_id, payload))


@pytest.fixture
def settings():
    return Settings()


@pytest.fixture
def storage():
    store = Storage("sqlite://")
    yield store
    store.dispose()


@pytest.fixture
def file_storage(tmp_path):
    """A file-backed store, where each unit of work gets its own connection."""
    store = Storage(f"sqlite:///{tmp_path / 'ledger.db'}")
    yield store
    store.dispose()


@pytest.fixture
def ledger(storage):
    service = LedgerService(storage)
    for member_id in (PAYER_ID, PROVIDER_ID, OUTSIDER_ID):
        service.ensure_member(member_id)
    service.ensure_member(ADMIN_ID, is_admin=True)
    return service


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def listings():
    directory = InMemoryListingDirectory()
    directory.add(PostType.REQUEST, 1, PROVIDER_ID, 50)
    directory.add(PostType.OFFER, 2, PROVIDER_ID, 30)
    directory.add(PostType.REQUEST, 3, PAYER_ID, 10)
    return directory


@pytest.fixture
def escrows(ledger, listings, notifier, settings, clock):
    return EscrowService(ledger, listings, notifier=notifier, settings=settings, clock=clock)


@pytest.fixture
def cashouts(ledger, notifier, settings):
    return CashoutService(ledger, notifier=notifier, settings=settings)


@pytest.fixture
def admin(ledger):
    return AdminService(ledger)


def fund(ledger, member_id, purchased=0, earned=0):
    """Give a member credits in each tranche through real ledger entries."""
    if purchased:
        ledger.apply_transaction(member_id, purchased, TransactionType.PURCHASE, CreditSource.PURCHASED, False, "seed")
    if earned:
        ledger.apply_transaction(member_id, earned, TransactionType.ESCROW_RELEASE, CreditSource.EARNED, True, "seed")
    return ledger.get_balance(member_id)


def run_together(*calls):
    """Start every call on its own thread at the same moment. Returns (results, errors)."""
    barrier = threading.Barrier(len(calls))
    results, errors = [], []

    def worker(call):
        barrier.wait()
        try:
            results.append(call())
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=worker, args=(call,)) for call in calls]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)
    return results, errors
