"""
Pytest fixtures for Retail POS backend tests.

Provides the application, a per-test clean database, catalog/member
fixtures, fake payment gateways and an event recorder.
"""

import threading
import time

import pytest

from retailpos import create_app
from retailpos.events import KNOWN_EVENTS
from retailpos.extensions import db
from retailpos.models import Member
from retailpos.services import catalog_service
from retailpos.services.payment_service import PaymentResult


TEST_CONFIG = {
    'TESTING': True,
    'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
    'SQLALCHEMY_TRACK_MODIFICATIONS': False,
    'EVENTS_ASYNC': False,
    'PAYMENT_GATEWAY': 'simulated',
    'PAYMENT_TIMEOUT_SECONDS': 2.0,
    'LOW_STOCK_THRESHOLD': 5,
    'HIGH_VALUE_SALE_THRESHOLD_CENTS': 5_000_000,
    'POINTS_EARN_UNIT_CENTS': 2000,
    'POINT_VALUE_CENTS': 100,
    'COMMIT_RETRY_ATTEMPTS': 3,
}


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app(TEST_CONFIG)

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


class EventRecorder:
    """Subscribes to every known event and keeps (name, payload) pairs."""

    def __init__(self, bus):
        self.bus = bus
        self.events = []
        self._unsubscribers = [bus.subscribe(name, self._handle) for name in KNOWN_EVENTS]

    def _handle(self, event):
        self.events.append(event)

    def names(self):
        return [e.name for e in self.events]

    def of(self, name):
        return [e.payload for e in self.events if e.name == name]

    def close(self):
        for unsubscribe in self._unsubscribers:
            unsubscribe()


@pytest.fixture(scope='function')
def events(app):
    recorder = EventRecorder(app.extensions['retailpos.event_bus'])
    yield recorder
    recorder.close()


class FakeGateway:
    """Payment collaborator double: scripted answer, optional delay, call log."""

    def __init__(self, *, approve=True, delay=0.0, error=None, message=None):
        self.approve = approve
        self.delay = delay
        self.error = error
        self.message = message
        self.authorized = []
        self.cancelled = []
        self._lock = threading.Lock()

    def authorize(self, request):
        with self._lock:
            self.authorized.append(request)
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        if self.approve:
            return PaymentResult(approved=True, authorization=f"AUTH-{len(self.authorized)}")
        return PaymentResult(approved=False, message=self.message or "Card declined")

    def cancel(self, request, result):
        with self._lock:
            self.cancelled.append((request, result))


@pytest.fixture(scope='function')
def gateway():
    return FakeGateway()


@pytest.fixture(scope='function')
def make_product(db_session):
    """Factory: product with opening stock booked through the ledger."""
    counter = {"n": 0}

    def _make(name=None, price_cents=1000, stock=10, **kwargs):
        counter["n"] += 1
        return catalog_service.create_product(
            name=name or f"Product {counter['n']}",
            price_cents=price_cents,
            initial_stock=stock,
            **kwargs,
        )

    return _make


@pytest.fixture(scope='function')
def make_member(db_session):
    """Factory: member with a preset points balance (no ledger history)."""
    counter = {"n": 0}

    def _make(phone=None, points=0, name=None):
        counter["n"] += 1
        member = Member(
            phone=phone or f"08100000{counter['n']:02d}",
            name=name,
            points=points,
            total_spent_cents=0,
        )
        db_session.add(member)
        db_session.commit()
        return member

    return _make
