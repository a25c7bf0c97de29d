"""
Pytest configuration and shared fixtures for SatsHunt tests.
"""

import os
import secrets
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional
from urllib.parse import parse_qs, urlparse

import pytest

# Set test environment before importing app
os.environ["FLASK_ENV"] = "testing"
os.environ["FLASK_SECRET_KEY"] = "test-secret-key-for-testing-only"
os.environ["MASTER_KEY"] = "00112233445566778899aabbccddeeff"
os.environ["ADMIN_API_TOKEN"] = "test-admin-token"
os.environ["BASE_URL"] = "https://satshunt.test"
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["LN_BACKEND"] = "stub"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["REDIS_ENABLED"] = "false"
os.environ["BACKGROUND_WORKERS_ENABLED"] = "false"
os.environ["LOG_LEVEL"] = "WARNING"

# Import app after setting environment
import sys

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from satshunt.ntag424 import encode_picc_data, sun_cmac  # noqa: E402
from satshunt.payments.ln import LightningPayer, PaymentOutcome  # noqa: E402

MASTER_KEY = os.environ["MASTER_KEY"]
BASE_URL = os.environ["BASE_URL"]
ADMIN_TOKEN = os.environ["ADMIN_API_TOKEN"]
TIME_TO_FULL = 3600
TEST_UID = "04A1B2C3D4E5F6"

_BECH32_CHARSET = "qpzry9x8gf2tvdw0s3jn54khce6mua7l"


def make_invoice(msats: int) -> str:
    """A BOLT11-shaped mainnet invoice for ``msats`` (a multiple of 100)."""
    data = "".join(secrets.choice(_BECH32_CHARSET) for _ in range(80))
    return f"lnbc{msats // 100}n1p{data}"


class Clock:
    """Adjustable naive-UTC clock."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 3, 1, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class FakePayer(LightningPayer):
    """
    Scripted payer.

    ``pay_outcomes`` is consumed one entry per payment (``default_outcome``
    once empty); ``statuses`` answers ``payment_status`` per invoice.
    """

    def __init__(self):
        self.pay_outcomes: List[PaymentOutcome] = []
        self.default_outcome = PaymentOutcome.SETTLED
        self.statuses: Dict[str, PaymentOutcome] = {}
        self.invoice_states: Dict[str, PaymentOutcome] = {}
        self.paid: List[str] = []
        self.pay_delay = 0.0
        self.pay_error: Optional[Exception] = None
        self._lock = threading.Lock()

    def create_invoice(self, amount_msat, memo, expiry_seconds=3600):
        invoice_id = secrets.token_hex(32)
        self.invoice_states[invoice_id] = PaymentOutcome.PENDING
        return make_invoice(amount_msat), invoice_id

    def invoice_status(self, invoice_id):
        return self.invoice_states.get(invoice_id, PaymentOutcome.PENDING)

    def pay_invoice(self, invoice, amount_msat, timeout):
        with self._lock:
            self.paid.append(invoice)
            outcome = self.pay_outcomes.pop(0) if self.pay_outcomes else self.default_outcome
        if self.pay_delay:
            time.sleep(self.pay_delay)
        if self.pay_error is not None:
            raise self.pay_error
        self.statuses.setdefault(invoice, outcome)
        return outcome

    def payment_status(self, invoice):
        return self.statuses.get(invoice, PaymentOutcome.PENDING)


@dataclass
class CardHandle:
    """A provisioned location plus an emulated tag that can mint taps."""

    location_id: str
    uid: bytes
    k1: bytes
    k2: bytes
    counter: int = 0

    def tap(self, counter: Optional[int] = None):
        """Return ``(p, c)`` for ``counter`` (default: the next one)."""
        if counter is None:
            self.counter += 1
            counter = self.counter
        picc_data = encode_picc_data(self.k1, self.uid, counter)
        cmac = sun_cmac(self.k2, self.uid, counter).hex().upper()
        return picc_data, cmac


@pytest.fixture
def clock():
    """Frozen clock advanced explicitly by tests."""
    return Clock()


@pytest.fixture
def db(tmp_path):
    """Fresh file-backed SQLite database, shared by every thread of the test."""
    from satshunt.database import close_all, init_database

    close_all()
    url = f"sqlite:///{tmp_path / 'satshunt.db'}"
    init_database(url, create_tables=True)
    yield url
    close_all()


@pytest.fixture
def fake_payer():
    return FakePayer()


@pytest.fixture
def ledger(db, clock):
    from satshunt.ledger import LedgerEngine

    return LedgerEngine(time_to_full_seconds=TIME_TO_FULL, clock=clock)


@pytest.fixture
def tracker(db, fake_payer, clock):
    from satshunt.donations import DonationTracker

    return DonationTracker(fake_payer, expiry_seconds=600, clock=clock)


@pytest.fixture
def protocol(ledger, fake_payer):
    from satshunt.withdraw import WithdrawProtocol

    proto = WithdrawProtocol(
        ledger, fake_payer, MASTER_KEY, BASE_URL, challenge_ttl=300, payer_timeout=2, sweep_max_attempts=3
    )
    yield proto
    proto.shutdown()


@pytest.fixture
def fund(tracker):
    """Credit ``msats`` to a location (or the global pool) through a confirmed donation."""

    def _fund(location_id: Optional[str], msats: int) -> str:
        donation = tracker.create_donation(msats, location_id)
        assert tracker.confirm(donation["id"])
        return donation["id"]

    return _fund


@pytest.fixture
def make_location(db, clock, fund):
    """
    Create a location with a programmed card.

    Args (of the returned factory):
        capacity_msats: max capacity
        funded_msats: donation credited at creation time
        active: activate after programming
        uid: UID bound at programming time
    """
    from satshunt.cards import activate_location, provision_card
    from satshunt.db_storage import create_location

    def _make(capacity_msats=10_000, funded_msats=0, active=True, uid=TEST_UID, name="Old oak"):
        location_id = create_location(name, 50.08, 14.42, capacity_msats, created_at=clock())
        payload = provision_card(location_id, MASTER_KEY, BASE_URL, uid=uid, now=clock())
        if active:
            activate_location(location_id, now=clock())
        if funded_msats:
            fund(location_id, funded_msats)
        return CardHandle(
            location_id=location_id,
            uid=bytes.fromhex(uid or TEST_UID),
            k1=bytes.fromhex(payload["K1"]),
            k2=bytes.fromhex(payload["K2"]),
        )

    return _make


@pytest.fixture
def app(db, fake_payer, clock):
    """Create and configure a test Flask application instance."""
    from satshunt.config import get_config
    from satshunt.factory import create_app, shutdown_app

    cfg = get_config()
    cfg.update(
        {
            "DATABASE_URL": db,
            "REFILL_TIME_TO_FULL_SECONDS": TIME_TO_FULL,
            "PAYER_TIMEOUT_SECONDS": 2,
            "DONATION_EXPIRY_SECONDS": 600,
        }
    )
    flask_app = create_app(cfg, payer=fake_payer, clock=clock)
    flask_app.config.update({"TESTING": True})

    with flask_app.app_context():
        yield flask_app

    shutdown_app(flask_app)


@pytest.fixture
def client(app):
    """Create a test client for the Flask application."""
    return app.test_client()


@pytest.fixture
def admin_headers():
    return {"X-Admin-Token": ADMIN_TOKEN, "Content-Type": "application/json"}


def callback_query(withdraw_request: dict, invoice: str) -> str:
    """Path and query a wallet would GET for ``withdraw_request``'s callback."""
    parsed = urlparse(withdraw_request["callback"])
    params = {key: values[0] for key, values in parse_qs(parsed.query).items()}
    params.update({"k1": withdraw_request["k1"], "pr": invoice})
    query = "&".join(f"{key}={value}" for key, value in params.items())
    return f"{parsed.path}?{query}"


@pytest.fixture
def invoice():
    """Factory for unique amount-bearing invoices."""
    return make_invoice


@pytest.fixture
def wallet_callback():
    """Builds the callback URL a wallet requests after the initial response."""
    return callback_query


# Pytest configuration hooks
def pytest_configure(config):
    """Configure pytest with custom settings."""
    config.addinivalue_line("markers", "slow: tests that take a long time to run")


def pytest_collection_modifyitems(config, items):
    """Modify test collection to add markers automatically."""
    for item in items:
        # Add 'unit' marker to tests in unit/ directory
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)

        # Add 'integration' marker to tests in integration/ directory
        if "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)
