"""
Checkout initiator tests.

Provider is mocked at the service seam; the Stripe-level test patches the
SDK call to inspect what would be sent.
"""
import asyncio
import time
from unittest.mock import Mock, patch

import httpx
import pytest
import stripe

from backend.core.metrics import checkout_sessions_total
from backend.features.billing.provider import BillingProviderError, CheckoutSession
from backend.features.billing.service import record_purchase
from backend.main import app


@pytest.fixture
def mock_provider(stripe_env):
    with patch("backend.features.billing.service.get_provider") as mock_get:
        provider = Mock()
        provider.create_checkout_session.return_value = CheckoutSession(
            session_id="cs_test_abc",
            url="https://checkout.stripe.com/c/pay/cs_test_abc",
        )
        mock_get.return_value = provider
        yield provider


def test_create_checkout_returns_redirect_url_and_session_id(client, mock_provider, stripe_env):
    resp = client.post(
        "/api/stripe/create-checkout",
        json={"userId": "user_alice", "userEmail": "alice@example.com"},
    )

    assert resp.status_code == 200
    assert resp.json() == {
        "redirectUrl": "https://checkout.stripe.com/c/pay/cs_test_abc",
        "sessionId": "cs_test_abc",
        "url": "https://checkout.stripe.com/c/pay/cs_test_abc",
    }
    kwargs = mock_provider.create_checkout_session.call_args.kwargs
    assert kwargs["user_id"] == "user_alice"
    assert kwargs["user_email"] == "alice@example.com"
    assert kwargs["price_id"] == stripe_env["price_id"]
    assert kwargs["success_url"].endswith("/profile?payment=success&session_id={CHECKOUT_SESSION_ID}")
    assert kwargs["cancel_url"].endswith("/profile?canceled=true")
    assert checkout_sessions_total.value({"outcome": "created"}) == 1


def test_explicit_price_overrides_default(client, mock_provider):
    client.post(
        "/checkout",
        json={"userId": "user_alice", "userEmail": "alice@example.com", "priceId": "price_promo"},
    )

    assert mock_provider.create_checkout_session.call_args.kwargs["price_id"] == "price_promo"


def test_price_reference_alias_accepted(client, mock_provider):
    client.post(
        "/api/stripe/create-checkout",
        json={"userId": "user_alice", "userEmail": "alice@example.com", "priceReference": "price_alias"},
    )

    assert mock_provider.create_checkout_session.call_args.kwargs["price_id"] == "price_alias"


@pytest.mark.parametrize("body", [
    {"userEmail": "alice@example.com"},
    {"userId": "user_alice"},
    {"userId": "", "userEmail": "alice@example.com"},
    {},
])
def test_missing_identity_fields_are_rejected(client, mock_provider, body):
    resp = client.post("/api/stripe/create-checkout", json=body)

    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "invalid_request"
    mock_provider.create_checkout_session.assert_not_called()


def test_non_json_body_is_rejected(client, mock_provider):
    resp = client.post(
        "/api/stripe/create-checkout",
        content=b"not json",
        headers={"content-type": "application/json"},
    )

    assert resp.status_code == 400


def test_missing_price_configuration(client, mock_provider, monkeypatch):
    monkeypatch.delenv("STRIPE_PRICE_ID", raising=False)

    resp = client.post(
        "/api/stripe/create-checkout",
        json={"userId": "user_alice", "userEmail": "alice@example.com"},
    )

    assert resp.status_code == 500
    assert resp.json()["error"]["code"] == "configuration_error"
    assert resp.json()["error"]["message"] == "Failed to create checkout session"
    mock_provider.create_checkout_session.assert_not_called()


def test_provider_failure_reports_generic_message(client, mock_provider):
    mock_provider.create_checkout_session.side_effect = BillingProviderError("Request req_123: No such price: 'price_x'")

    resp = client.post(
        "/api/stripe/create-checkout",
        json={"userId": "user_alice", "userEmail": "alice@example.com"},
    )

    assert resp.status_code == 500
    body = resp.json()
    assert body["error"]["code"] == "upstream_error"
    assert body["error"]["message"] == "Failed to create checkout session"
    assert "price_x" not in resp.text
    assert checkout_sessions_total.value({"outcome": "upstream_error"}) == 1


def test_user_with_lifetime_access_cannot_buy_again(client, mock_provider):
    record_purchase(user_id="user_alice", payment_reference="pi_existing")

    resp = client.post(
        "/api/stripe/create-checkout",
        json={"userId": "user_alice", "userEmail": "alice@example.com"},
    )

    assert resp.status_code == 400
    assert resp.json()["error"]["message"] == "User already has lifetime access"
    mock_provider.create_checkout_session.assert_not_called()


def test_stripe_session_binds_user_in_both_channels(client, stripe_env):
    fake_session = Mock(id="cs_live_1", url="https://checkout.stripe.com/c/pay/cs_live_1")

    with patch.object(stripe.checkout.Session, "create", return_value=fake_session) as create:
        resp = client.post(
            "/api/stripe/create-checkout",
            json={"userId": "user_alice", "userEmail": "alice@example.com"},
        )

    assert resp.status_code == 200
    kwargs = create.call_args.kwargs
    assert kwargs["mode"] == "payment"
    assert kwargs["client_reference_id"] == "user_alice"
    assert kwargs["metadata"]["userId"] == "user_alice"
    assert kwargs["metadata"]["purchaseType"] == "lifetime_pro"
    assert kwargs["payment_intent_data"]["metadata"]["userId"] == "user_alice"
    assert kwargs["customer_email"] == "alice@example.com"
    assert kwargs["line_items"] == [{"price": stripe_env["price_id"], "quantity": 1}]
    assert kwargs["allow_promotion_codes"] is True


def test_stripe_error_maps_to_upstream_error(client, stripe_env):
    with patch.object(stripe.checkout.Session, "create", side_effect=stripe.APIConnectionError("timed out")):
        resp = client.post(
            "/api/stripe/create-checkout",
            json={"userId": "user_alice", "userEmail": "alice@example.com"},
        )

    assert resp.status_code == 500
    assert resp.json()["error"]["code"] == "upstream_error"


def test_slow_stripe_call_does_not_stall_other_requests(stripe_env):
    def slow_create(**kwargs):
        time.sleep(0.5)
        return CheckoutSession(session_id="cs_slow", url="https://checkout.stripe.com/c/pay/cs_slow")

    provider = Mock()
    provider.create_checkout_session.side_effect = slow_create

    async def run():
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as ac:
            checkout = asyncio.create_task(
                ac.post(
                    "/api/stripe/create-checkout",
                    json={"userId": "user_alice", "userEmail": "alice@example.com"},
                )
            )
            await asyncio.sleep(0.05)
            started = time.perf_counter()
            health = await ac.get("/healthz")
            elapsed = time.perf_counter() - started
            return await checkout, health, elapsed

    with patch("backend.features.billing.service.get_provider", return_value=provider):
        checkout_resp, health_resp, elapsed = asyncio.run(run())

    assert health_resp.status_code == 200
    assert elapsed < 0.3
    assert checkout_resp.status_code == 200
    assert checkout_resp.json()["redirectUrl"] == "https://checkout.stripe.com/c/pay/cs_slow"
