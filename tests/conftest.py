"""
Shared fixtures: a throwaway SQLite database per test, a recording payment
gateway, a controllable clock and an engine wired to all three.
"""

import hashlib
import hmac
import threading
import time
from datetime import datetime, timedelta, timezone

import pytest

from handoff_escrow.database import Base, make_engine, make_session_factory
from handoff_escrow.engine import EscrowEngine, PresentedSecret
from handoff_escrow.gateway import Authorization, PayeeAccount, PaymentGateway
from handoff_escrow.models import PayeeStatus, User

BUYER = "B"
SELLER = "S"
SELLER_ACCOUNT = "acct_S"
STRANGER = "X"
MEETING_POINT = (40.7128, -74.0060)
WEBHOOK_SECRET = "whsec_test_secret"


class FakeGateway(PaymentGateway):
    """Records every call. Set ``fail_*`` to an exception instance to make that call raise it."""

    def __init__(self):
        self.authorize_calls = []
        self.capture_calls = []
        self.cancel_calls = []
        self.payee_calls = []
        self.fail_authorize = None
        self.fail_capture = None
        self.fail_cancel = None
        self.on_capture = None
        self.opened = False
        self._lock = threading.Lock()
        self._counter = 0

    def open(self):
        self.opened = True

    def close(self):
        self.opened = False

    def authorize(self, amount, currency, payer_ref, payee_ref):
        if self.fail_authorize is not None:
            raise self.fail_authorize
        with self._lock:
            self._counter += 1
            intent_id = f"pi_test_{self._counter}"
            self.authorize_calls.append((amount, currency, payer_ref, payee_ref))
        return Authorization(intent_id=intent_id, client_secret=f"{intent_id}_secret")

    def capture(self, intent_id, payee_ref):
        with self._lock:
            self.capture_calls.append((intent_id, payee_ref))
        if self.on_capture is not None:
            self.on_capture(intent_id)
        if self.fail_capture is not None:
            raise self.fail_capture

    def cancel(self, intent_id):
        with self._lock:
            self.cancel_calls.append(intent_id)
        if self.fail_cancel is not None:
            raise self.fail_cancel

    def create_payee_account(self, email, user_id):
        self.payee_calls.append((email, user_id))
        return PayeeAccount(account_ref=f"acct_{user_id}", onboarding_url=f"https://connect.test/{user_id}")


class Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def db_engine(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'escrow.db'}")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return make_session_factory(db_engine)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def clock():
    return Clock(datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def capture_failures():
    return []


@pytest.fixture
def users(session_factory):
    with session_factory() as session:
        with session.begin():
            session.add_all([
                User(id=BUYER, email="buyer@example.com"),
                User(id=SELLER, email="seller@example.com",
                     payee_account_ref=SELLER_ACCOUNT, payee_status=PayeeStatus.ENABLED),
                User(id="N", email="no-account@example.com"),
                User(id="R", email="restricted@example.com",
                     payee_account_ref="acct_R", payee_status=PayeeStatus.RESTRICTED),
            ])


@pytest.fixture
def escrow(session_factory, gateway, clock, capture_failures, users):
    return EscrowEngine(
        session_factory,
        gateway,
        clock=clock,
        handoff_ttl=timedelta(hours=24),
        on_capture_failed=capture_failures.append,
    )


@pytest.fixture
def opened(escrow):
    return escrow.open_transaction(BUYER, SELLER, 2500, "usd", MEETING_POINT)


def code_of(opened):
    return PresentedSecret.from_code(opened.handoff.confirmation_code)


def load(session_factory, model, key):
    with session_factory() as session:
        return session.get(model, key)


def sign(payload, secret=WEBHOOK_SECRET, timestamp=None):
    """Build a ``Stripe-Signature`` header for ``payload``."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    digest = hmac.new(secret.encode(), f"{timestamp}.{payload}".encode(), hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"
