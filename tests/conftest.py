from datetime import timedelta
from decimal import Decimal
import itertools

import pytest
from sqlalchemy.pool import StaticPool

from storefront.application.confirmation_engine import ConfirmationEngine
from storefront.application.ledger_verifier import LAMPORTS_PER_SOL, LedgerVerifier
from storefront.application.order_service import OrderService
from storefront.core.timeutils import utcnow
from storefront.domain.models import Order, OrderStatus, PaymentRail, new_id
from storefront.infrastructure.database import Database
from storefront.infrastructure.override_guard import OverrideGuard
from storefront.infrastructure.repositories.order_repository import SqlAlchemyOrderRepository
from storefront.interfaces.ILedgerClient import ILedgerClient, LedgerTransaction
from storefront.interfaces.INotifier import INotifier

BUYER = "BuyerWa11et1111111111111111111111111111111"
MERCHANT = "MerchantWa11et22222222222222222222222222222"


class FakeLedgerClient(ILedgerClient):
    """Serves scripted transactions by signature. Anything else is not found."""

    def __init__(self):
        self.transactions = {}
        self.failures = {}
        self.calls = []

    def add_transfer(self, signature, amount_sol, sender=BUYER, recipient=MERCHANT, fee_lamports=5000, err=None):
        lamports = int(Decimal(str(amount_sol)) * LAMPORTS_PER_SOL)
        sol = int(LAMPORTS_PER_SOL)
        self.transactions[signature] = LedgerTransaction(
            signature=signature,
            err=err,
            account_keys=[sender, recipient, "11111111111111111111111111111111"],
            pre_balances=[10 * sol, sol, 1],
            post_balances=[10 * sol - lamports - fee_lamports, sol + lamports, 1],
        )

    def fail_with(self, signature, error):
        self.failures[signature] = error

    def get_transaction(self, signature):
        self.calls.append(signature)
        if signature in self.failures:
            raise self.failures[signature]
        return self.transactions.get(signature)


class RecordingNotifier(INotifier):
    def __init__(self):
        self.confirmed = []
        self.alerts = []

    def notify_order_confirmed(self, order):
        self.confirmed.append(order.id)

    def alert_operator(self, subject, details):
        self.alerts.append((subject, details))


@pytest.fixture
def database():
    db = Database("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    db.create_tables()
    yield db
    db.dispose()


@pytest.fixture
def repo(database):
    return SqlAlchemyOrderRepository(database.SessionLocal)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def override_guard():
    return OverrideGuard(redis_url=None, limit=5, window_seconds=3600)


@pytest.fixture
def engine(repo, notifier, override_guard):
    return ConfirmationEngine(repo, notifier=notifier, override_guard=override_guard,
                              max_attempts=3, backoff_seconds=0, sleep=lambda _: None)


@pytest.fixture
def ledger():
    return FakeLedgerClient()


@pytest.fixture
def verifier(ledger):
    return LedgerVerifier(ledger, tolerance=Decimal("0.00001"), merchant_wallet="")


@pytest.fixture
def order_service(repo, engine):
    return OrderService(repo, engine)


_numbers = itertools.count(1)


@pytest.fixture
def make_order(repo):
    """Inserts an order directly, bypassing checkout, with an explicit age."""

    def _make(status=OrderStatus.DRAFT.value, rail=PaymentRail.CARD.value, batch_id=None,
              payment_reference=None, age_hours=0.0, updated_age_hours=None, amount=None,
              payer=None, verification_status=None, metadata=None, pending_age_hours=None):
        now = utcnow()
        created = now - timedelta(hours=age_hours)
        updated_age = age_hours if updated_age_hours is None else updated_age_hours
        pending_since = None
        if status == OrderStatus.PENDING_PAYMENT.value:
            pending_age = updated_age if pending_age_hours is None else pending_age_hours
            pending_since = now - timedelta(hours=pending_age)
        order = Order(
            id=new_id(),
            order_number=f"SF-TEST-{next(_numbers):06d}",
            status=status,
            batch_id=batch_id,
            rail=rail,
            payment_reference=payment_reference,
            payment_metadata=dict(metadata or {}),
            amount_expected=Decimal(str(amount)) if amount is not None else None,
            payer_identity_expected=payer,
            verification_status=verification_status,
            pending_since=pending_since,
            created_at=created,
            updated_at=now - timedelta(hours=updated_age),
        )
        return repo.create_orders([order])[0]

    return _make
