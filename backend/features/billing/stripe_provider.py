"""
Stripe billing provider implementation.

Implements the BillingProvider protocol with the Stripe API.
Handles webhook signature verification and event parsing.
"""
import json
import os
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional, Tuple

import stripe

from backend.features.billing.provider import (
    EVENT_KIND_IGNORED,
    EVENT_KIND_REINSTATEMENT,
    EVENT_KIND_REVOCATION,
    EVENT_KIND_SUCCESS,
    BillingProviderError,
    BillingWebhookError,
    CheckoutSession,
    PaymentEvent,
    PaymentRecord,
    REVOCATION_DISPUTE,
    REVOCATION_REFUND,
)

PURCHASE_TYPE = "lifetime_pro"

SUCCESS_EVENTS = {
    "checkout.session.completed",
    "checkout.session.async_payment_succeeded",
    "payment_intent.succeeded",
}
REFUND_EVENTS = {"charge.refunded"}
DISPUTE_EVENTS = {"charge.dispute.created", "charge.dispute.closed"}


def _as_dict(obj: Any) -> Dict[str, Any]:
    """Plain dict view of a StripeObject (or pass a dict through)."""
    if obj is None:
        return {}
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return dict(obj)


def _ref_id(value: Any) -> Optional[str]:
    """Stripe fields are either an id string or an expanded object."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, dict):
        return value.get("id")
    return getattr(value, "id", None)


def extract_user_reference(obj: Dict[str, Any]) -> Tuple[Optional[str], Optional[str]]:
    """
    Resolve the user id from an event object.

    Checks the primary reference field first, then the metadata. Returns
    (user_id, source) or (None, None) when neither channel carries it.
    """
    primary = obj.get("client_reference_id")
    if primary:
        return primary, "client_reference_id"

    metadata = obj.get("metadata") or {}
    from_metadata = metadata.get("userId") or metadata.get("user_id")
    if from_metadata:
        return from_metadata, "metadata"

    return None, None


def _coupon_from(obj: Dict[str, Any]) -> Optional[str]:
    for discount in obj.get("discounts") or []:
        coupon = discount.get("coupon") if isinstance(discount, dict) else None
        if coupon:
            return _ref_id(coupon)
    return (obj.get("metadata") or {}).get("couponId")


class StripeProvider:
    """Stripe implementation of the BillingProvider protocol."""

    def __init__(
        self,
        secret_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        timeout_seconds: Optional[int] = None,
    ):
        """
        Initialize Stripe provider.

        Args:
            secret_key: Stripe secret key (defaults to STRIPE_SECRET_KEY env var)
            webhook_secret: Stripe webhook secret (defaults to STRIPE_WEBHOOK_SECRET env var)
            timeout_seconds: HTTP timeout for Stripe calls (defaults to STRIPE_TIMEOUT_SECONDS or 10)
        """
        self.secret_key = secret_key or os.getenv("STRIPE_SECRET_KEY")
        self.webhook_secret = webhook_secret or os.getenv("STRIPE_WEBHOOK_SECRET")
        self.timeout_seconds = timeout_seconds or int(os.getenv("STRIPE_TIMEOUT_SECONDS", "10"))

        if not self.secret_key:
            raise BillingProviderError("STRIPE_SECRET_KEY not configured")

        stripe.api_key = self.secret_key
        stripe.max_network_retries = 2
        stripe.default_http_client = stripe.RequestsClient(timeout=self.timeout_seconds)

    def create_checkout_session(
        self,
        user_id: str,
        user_email: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
    ) -> CheckoutSession:
        """Create a one-time payment Checkout session attributed to user_id."""
        metadata = {"userId": user_id, "purchaseType": PURCHASE_TYPE}
        try:
            session = stripe.checkout.Session.create(
                mode="payment",
                payment_method_types=["card"],
                line_items=[{"price": price_id, "quantity": 1}],
                client_reference_id=user_id,
                customer_email=user_email,
                metadata=metadata,
                # Copy attribution onto the PaymentIntent so payment_intent.* events carry it too
                payment_intent_data={"metadata": metadata},
                success_url=success_url,
                cancel_url=cancel_url,
                allow_promotion_codes=True,
            )
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe checkout session creation failed: {e}")

        if not session.url:
            raise BillingProviderError(f"Stripe checkout session {session.id} has no redirect URL")
        return CheckoutSession(session_id=session.id, url=session.url)

    def construct_event(self, headers: Dict[str, str], body: bytes) -> PaymentEvent:
        """Verify Stripe webhook signature and parse event."""
        if not self.webhook_secret:
            raise BillingWebhookError("STRIPE_WEBHOOK_SECRET not configured")

        sig_header = headers.get("stripe-signature") or headers.get("Stripe-Signature")
        if not sig_header:
            raise BillingWebhookError("Missing stripe-signature header")

        try:
            stripe.Webhook.construct_event(body, sig_header, self.webhook_secret)
        except ValueError as e:
            raise BillingWebhookError(f"Invalid payload: {e}")
        except stripe.SignatureVerificationError as e:
            raise BillingWebhookError(f"Invalid signature: {e}")

        # Signature verified: only now read business fields
        try:
            event = json.loads(body)
        except ValueError as e:
            raise BillingWebhookError(f"Invalid payload: {e}")
        if not isinstance(event, dict) or "type" not in event or "id" not in event:
            raise BillingWebhookError("Invalid payload: not a Stripe event")

        return self._parse_event(event)

    def _parse_event(self, event: Dict[str, Any]) -> PaymentEvent:
        """Parse a Stripe event into a normalized PaymentEvent."""
        event_type = event["type"]
        event_id = event["id"]
        data = (event.get("data") or {}).get("object") or {}
        metadata = data.get("metadata") or {}

        if event_type in REFUND_EVENTS:
            # Partial refunds keep the entitlement
            kind = EVENT_KIND_REVOCATION if data.get("refunded") else EVENT_KIND_IGNORED
            user_id, source = extract_user_reference(data)
            return PaymentEvent(
                event_id=event_id,
                event_type=event_type,
                kind=kind,
                user_id=user_id,
                user_reference_source=source,
                payment_reference=_ref_id(data.get("payment_intent")),
                revocation_reason=REVOCATION_REFUND,
                metadata=metadata,
            )

        if event_type in DISPUTE_EVENTS:
            kind = EVENT_KIND_REVOCATION
            if event_type == "charge.dispute.closed" and data.get("status") == "won":
                kind = EVENT_KIND_REINSTATEMENT
            return PaymentEvent(
                event_id=event_id,
                event_type=event_type,
                kind=kind,
                payment_reference=_ref_id(data.get("payment_intent")),
                revocation_reason=REVOCATION_DISPUTE,
                metadata=metadata,
            )

        if event_type not in SUCCESS_EVENTS:
            return PaymentEvent(event_id=event_id, event_type=event_type, kind=EVENT_KIND_IGNORED, metadata=metadata)

        user_id, source = extract_user_reference(data)

        if event_type.startswith("checkout.session."):
            kind = EVENT_KIND_SUCCESS
            if data.get("mode") != "payment":
                kind = EVENT_KIND_IGNORED
            elif event_type == "checkout.session.completed" and data.get("payment_status") != "paid":
                # Delayed methods settle later via async_payment_succeeded
                kind = EVENT_KIND_IGNORED

            customer_details = data.get("customer_details") or {}
            return PaymentEvent(
                event_id=event_id,
                event_type=event_type,
                kind=kind,
                user_id=user_id,
                user_reference_source=source,
                payment_reference=_ref_id(data.get("payment_intent")),
                customer_reference=_ref_id(data.get("customer")),
                amount=data.get("amount_total"),
                currency=data.get("currency"),
                coupon_id=_coupon_from(data),
                email=customer_details.get("email") or data.get("customer_email"),
                metadata=metadata,
            )

        # payment_intent.succeeded
        return PaymentEvent(
            event_id=event_id,
            event_type=event_type,
            kind=EVENT_KIND_SUCCESS,
            user_id=user_id,
            user_reference_source=source,
            payment_reference=data.get("id"),
            customer_reference=_ref_id(data.get("customer")),
            amount=data.get("amount_received") or data.get("amount"),
            currency=data.get("currency"),
            coupon_id=_coupon_from(data),
            email=data.get("receipt_email"),
            metadata=metadata,
        )

    def retrieve_payment(self, payment_reference: str) -> PaymentRecord:
        """Retrieve a PaymentIntent with its latest charge expanded."""
        try:
            intent = stripe.PaymentIntent.retrieve(payment_reference, expand=["latest_charge"])
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe payment intent lookup failed: {e}")
        return self._to_record(_as_dict(intent))

    def list_succeeded_payments(self, created_after: datetime, limit: int = 100) -> Iterable[PaymentRecord]:
        """List succeeded PaymentIntents created since `created_after` (newest first)."""
        if created_after.tzinfo is None:
            created_after = created_after.replace(tzinfo=timezone.utc)
        try:
            page = stripe.PaymentIntent.list(
                created={"gte": int(created_after.timestamp())},
                limit=min(limit, 100),
                expand=["data.latest_charge"],
            )
            records = []
            for intent in page.auto_paging_iter():
                record = self._to_record(_as_dict(intent))
                if record.status == "succeeded":
                    records.append(record)
                if len(records) >= limit:
                    break
            return records
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe payment intent listing failed: {e}")

    def _to_record(self, intent: Dict[str, Any]) -> PaymentRecord:
        user_id, _ = extract_user_reference(intent)
        charge = intent.get("latest_charge")
        billing_email = None
        if isinstance(charge, dict):
            billing_email = (charge.get("billing_details") or {}).get("email")
        created = intent.get("created")
        return PaymentRecord(
            payment_reference=intent["id"],
            status=intent.get("status", "unknown"),
            amount=intent.get("amount_received") or intent.get("amount"),
            currency=intent.get("currency"),
            customer_reference=_ref_id(intent.get("customer")),
            user_id=user_id,
            billing_email=billing_email or intent.get("receipt_email"),
            created_at=datetime.fromtimestamp(created, timezone.utc) if created else None,
            metadata=intent.get("metadata") or {},
        )
