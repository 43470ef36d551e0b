# backend/conftest.py
import sys
import os
import pytest
from pathlib import Path

# Tests run against a private in-memory SQLite database
os.environ["ENV"] = "test"
os.environ["ENVIRONMENT"] = "test"
os.environ["SKIP_ENV_VALIDATION"] = "1"
os.environ["TEST_DATABASE_URL"] = "sqlite+pysqlite:///:memory:"

# Add repo root to PYTHONPATH
REPO_ROOT = Path(__file__).resolve().parent.parent
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

TEST_STRIPE_SECRET_KEY = "sk_test_123"
TEST_WEBHOOK_SECRET = "whsec_test_secret"
TEST_PRICE_ID = "price_lifetime_test"

STRIPE_ENV_VARS = (
    "STRIPE_SECRET_KEY",
    "STRIPE_WEBHOOK_SECRET",
    "STRIPE_PRICE_ID",
    "ADMIN_API_KEY",
)


@pytest.fixture(scope="function", autouse=True)
def reset_db():
    """Drop and recreate all tables before each test."""
    from backend.core.database import reset_database

    reset_database()
    yield


@pytest.fixture(scope="function", autouse=True)
def clean_billing_env(monkeypatch):
    """Billing starts disabled; tests opt in with `stripe_env`."""
    for var in STRIPE_ENV_VARS:
        monkeypatch.delenv(var, raising=False)
    yield


@pytest.fixture(scope="function", autouse=True)
def reset_metrics():
    from backend.core.metrics import METRICS

    METRICS.reset()
    yield


@pytest.fixture
def stripe_env(monkeypatch):
    """Enable billing with test Stripe credentials."""
    monkeypatch.setenv("STRIPE_SECRET_KEY", TEST_STRIPE_SECRET_KEY)
    monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", TEST_WEBHOOK_SECRET)
    monkeypatch.setenv("STRIPE_PRICE_ID", TEST_PRICE_ID)
    yield {
        "secret_key": TEST_STRIPE_SECRET_KEY,
        "webhook_secret": TEST_WEBHOOK_SECRET,
        "price_id": TEST_PRICE_ID,
    }


@pytest.fixture
def client():
    from fastapi.testclient import TestClient
    from backend.main import app

    return TestClient(app)
