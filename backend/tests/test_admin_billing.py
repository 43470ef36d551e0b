"""
Admin billing operations: payment backfill and the reconciliation sweep.

Provider mocked at the service seam.
"""
from datetime import datetime, timezone
from unittest.mock import AsyncMock, Mock, patch

import pytest
from sqlalchemy import select

from backend.core.config import settings
from backend.core.database import get_db_session, purchases
from backend.features.billing.provider import BillingProviderError, PaymentRecord
from backend.features.billing.service import record_purchase, revoke_payment
from backend.features.users.service import upsert_user

ADMIN_HEADERS = {"X-Admin-Key": "admin-secret"}


def make_payment(reference="pi_missed", user_id="user_alice", status="succeeded", email=None):
    return PaymentRecord(
        payment_reference=reference,
        status=status,
        amount=2900,
        currency="usd",
        customer_reference="cus_1",
        user_id=user_id,
        billing_email=email,
        created_at=datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc),
    )


@pytest.fixture(autouse=True)
def admin_key(monkeypatch):
    monkeypatch.setattr(settings, "ADMIN_KEY", "admin-secret")
    monkeypatch.setattr(settings, "ENVIRONMENT", "test")


@pytest.fixture
def provider(stripe_env):
    with patch("backend.features.billing.service.get_provider") as mock_get:
        mock_provider = Mock()
        mock_get.return_value = mock_provider
        yield mock_provider


def _rows():
    with get_db_session() as session:
        return [dict(r) for r in session.execute(select(purchases)).mappings().all()]


def test_check_payment_backfills_missing_row(client, provider):
    provider.retrieve_payment.return_value = make_payment()

    with patch("backend.api.admin_billing.publish_entitlement_change", new_callable=AsyncMock) as publish:
        resp = client.post("/v1/admin/billing/check-payment", json={"paymentIntentId": "pi_missed"}, headers=ADMIN_HEADERS)

    body = resp.json()
    assert resp.status_code == 200
    assert body["action"] == "created"
    assert body["attributedBy"] == "metadata"
    assert body["purchase"]["user_id"] == "user_alice"
    assert len(_rows()) == 1
    publish.assert_awaited_once()


def test_check_payment_is_idempotent(client, provider):
    provider.retrieve_payment.return_value = make_payment()
    record_purchase(user_id="user_alice", payment_reference="pi_missed")

    resp = client.post("/v1/admin/billing/check-payment", json={"paymentIntentId": "pi_missed"}, headers=ADMIN_HEADERS)

    assert resp.json()["action"] == "exists"
    assert len(_rows()) == 1


def test_check_payment_for_refunded_payment_records_it_inactive(client, provider):
    provider.retrieve_payment.return_value = make_payment()
    revoke_payment("pi_missed")

    with patch("backend.api.admin_billing.publish_entitlement_change", new_callable=AsyncMock) as publish:
        resp = client.post("/v1/admin/billing/check-payment", json={"paymentIntentId": "pi_missed"}, headers=ADMIN_HEADERS)

    assert resp.json()["action"] == "revoked"
    assert _rows()[0]["status"] == "inactive"
    publish.assert_not_awaited()


def test_check_payment_attributes_by_billing_email(client, provider):
    upsert_user("user_carol", "carol@example.com")
    provider.retrieve_payment.return_value = make_payment(user_id=None, email="Carol@Example.com")

    resp = client.post("/v1/admin/billing/check-payment", json={"paymentIntentId": "pi_missed"}, headers=ADMIN_HEADERS)

    body = resp.json()
    assert body["attributedBy"] == "billing_email"
    assert body["userId"] == "user_carol"
    assert _rows()[0]["user_id"] == "user_carol"


def test_check_payment_skips_unsucceeded_intent(client, provider):
    provider.retrieve_payment.return_value = make_payment(status="requires_payment_method")

    resp = client.post("/v1/admin/billing/check-payment", json={"paymentIntentId": "pi_missed"}, headers=ADMIN_HEADERS)

    assert resp.json()["action"] == "not_succeeded"
    assert _rows() == []


def test_check_payment_unattributable(client, provider):
    provider.retrieve_payment.return_value = make_payment(user_id=None, email="stranger@example.com")

    resp = client.post("/v1/admin/billing/check-payment", json={"paymentIntentId": "pi_missed"}, headers=ADMIN_HEADERS)

    assert resp.json()["action"] == "unattributed"
    assert _rows() == []


def test_check_payment_upstream_failure(client, provider):
    provider.retrieve_payment.side_effect = BillingProviderError("No such payment_intent")

    resp = client.post("/v1/admin/billing/check-payment", json={"paymentIntentId": "pi_bad"}, headers=ADMIN_HEADERS)

    assert resp.status_code == 500
    assert resp.json()["error"]["code"] == "upstream_error"


def test_check_payment_lists_purchases_by_email(client):
    upsert_user("user_alice", "alice@example.com")
    record_purchase(user_id="user_alice", payment_reference="pi_1")

    resp = client.post("/v1/admin/billing/check-payment", json={"userEmail": "alice@example.com"}, headers=ADMIN_HEADERS)

    body = resp.json()
    assert resp.status_code == 200
    assert body["user"]["user_id"] == "user_alice"
    assert [p["stripe_payment_intent_id"] for p in body["purchases"]] == ["pi_1"]


def test_check_payment_requires_a_lookup_key(client):
    resp = client.post("/v1/admin/billing/check-payment", json={}, headers=ADMIN_HEADERS)

    assert resp.status_code == 400


def test_check_payment_requires_admin(client):
    resp = client.post("/v1/admin/billing/check-payment", json={"userEmail": "a@b.c"})

    assert resp.status_code == 401


def test_reconcile_endpoint_reports_and_fixes(client, provider):
    record_purchase(user_id="user_alice", payment_reference="pi_seen")
    provider.list_succeeded_payments.return_value = [
        make_payment(reference="pi_seen"),
        make_payment(reference="pi_missed", user_id="user_bob"),
        make_payment(reference="pi_foreign", user_id=None),
    ]

    report = client.post("/v1/admin/billing/reconcile", headers=ADMIN_HEADERS).json()
    assert report["checked"] == 3
    assert report["missing"] == 1
    assert report["unattributed"] == 1
    assert report["created"] == 0
    assert report["missing_references"] == ["pi_missed"]
    assert len(_rows()) == 1

    fixed = client.post("/v1/admin/billing/reconcile", params={"fix": "true", "lookback_hours": 24}, headers=ADMIN_HEADERS).json()
    assert fixed["created"] == 1
    assert {r["stripe_payment_intent_id"] for r in _rows()} == {"pi_seen", "pi_missed"}
    created_after = provider.list_succeeded_payments.call_args.kwargs["created_after"]
    assert created_after.tzinfo is not None
