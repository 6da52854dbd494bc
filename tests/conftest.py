"""
Pytest Configuration and Fixtures
"""

import hashlib
import hmac
import os
import sys
import tempfile
import time
from datetime import timedelta
import pytest

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(__file__)), 'src'))

# Set test environment
# SQLite connections are per thread, so tests use files rather than :memory:
_session_dir = tempfile.mkdtemp(prefix="quota-ledger-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_session_dir, 'default.db')}"
os.environ["API_KEY"] = "test-key-12345"
os.environ.pop("STRIPE_API_KEY", None)
os.environ.pop("STRIPE_WEBHOOK_SECRET", None)
os.environ.pop("PRICE_TABLE_PATH", None)

from billing.pricing import PriceTable
from ledger.service import QuotaLedger
from persistence.database import Database, utcnow


@pytest.fixture
def temp_db(tmp_path, monkeypatch):
    """Point DATABASE_URL at a fresh SQLite file."""
    db_path = str(tmp_path / "ledger.db")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{db_path}")
    yield db_path


@pytest.fixture
def db(temp_db):
    """Initialized database on a fresh file."""
    database = Database(f"sqlite:///{temp_db}")
    database.initialize()
    yield database
    database.close()


@pytest.fixture
def price_table():
    return PriceTable()


@pytest.fixture
def ledger(db, price_table):
    """Ledger facade over the test database."""
    return QuotaLedger(db=db, price_table=price_table)


@pytest.fixture
def sign_webhook():
    """Stripe-Signature header for a payload: HMAC-SHA256 over "{timestamp}.{payload}"."""
    def _sign(payload: str, secret: str) -> str:
        timestamp = int(time.time())
        signature = hmac.new(
            secret.encode("utf-8"),
            f"{timestamp}.{payload}".encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()
        return f"t={timestamp},v1={signature}"
    return _sign


@pytest.fixture
def days_from_now():
    """Expiry helper: days_from_now(3) is three days ahead, negative is in the past."""
    def _at(days: float):
        return utcnow() + timedelta(days=days)
    return _at
