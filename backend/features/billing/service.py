"""
Billing service orchestrator.

Business logic for the Lifetime Pro purchase flow:
- Checkout session creation (user bound through two channels)
- Webhook reconciliation into entitlement rows (idempotent)
- Refund and dispute revocation (order-independent), dispute reinstatement
- Operator backfill for payments the webhook missed

All Stripe-specific code is in stripe_provider.py.
"""
import os
import uuid
import logging
from dataclasses import dataclass
from typing import Optional, Dict, Any, List, Tuple
from datetime import datetime, timezone

from sqlalchemy import select, insert, update, delete, and_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from backend.core.config import settings
from backend.core.database import get_db_session, purchases, revoked_payments, users as app_users
from backend.core.errors import (
    ConfigurationError,
    InvalidRequest,
    NotFoundError,
    PersistenceError,
    SignatureInvalid,
    UpstreamError,
    UserReferenceMissing,
)
from backend.core.logging import log_event
from backend.core.metrics import (
    checkout_sessions_total,
    entitlement_alarms_total,
    entitlements_created_total,
    entitlements_revoked_total,
    webhook_events_total,
)
from backend.features.billing.provider import (
    EVENT_KIND_REINSTATEMENT,
    EVENT_KIND_REVOCATION,
    EVENT_KIND_SUCCESS,
    REVOCATION_DISPUTE,
    REVOCATION_REFUND,
    BillingProvider,
    BillingProviderError,
    BillingWebhookError,
    CheckoutSession,
    PaymentEvent,
)
from backend.features.billing.stripe_provider import StripeProvider
from backend.features.entitlements.service import (
    LIFETIME_PRO,
    STATUS_ACTIVE,
    STATUS_INACTIVE,
    has_lifetime_access,
    serialize_record,
)


logger = logging.getLogger("logedin")

# Webhook outcomes
RESULT_CREATED = "created"
RESULT_DUPLICATE = "duplicate"
RESULT_REVOKED = "revoked"
RESULT_REINSTATED = "reinstated"
RESULT_IGNORED = "ignored"
RESULT_UNATTRIBUTED = "unattributed"

CHECKOUT_FAILED_MESSAGE = "Failed to create checkout session"


@dataclass
class WebhookOutcome:
    result: str
    event_id: str
    event_type: str
    user_id: Optional[str] = None
    payment_reference: Optional[str] = None
    record: Optional[Dict[str, Any]] = None

    @property
    def changed(self) -> bool:
        """True when a row was created or its status flipped."""
        return self.result in (RESULT_CREATED, RESULT_REVOKED, RESULT_REINSTATED) and self.record is not None


def billing_enabled() -> bool:
    """Check if billing is enabled (Stripe configured)."""
    return bool(os.getenv("STRIPE_SECRET_KEY"))


def get_provider() -> Optional[BillingProvider]:
    """Get billing provider if billing is enabled."""
    if not billing_enabled():
        return None
    try:
        return StripeProvider(timeout_seconds=settings.STRIPE_TIMEOUT_SECONDS)
    except BillingProviderError:
        return None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def resolve_price_id(price_id: Optional[str] = None) -> str:
    """Explicit price first, then the configured default."""
    resolved = price_id or os.getenv("STRIPE_PRICE_ID") or settings.STRIPE_PRICE_ID
    if not resolved:
        raise ConfigurationError("Price ID not configured")
    return resolved


def checkout_urls() -> Tuple[str, str]:
    base = settings.APP_URL.rstrip("/")
    return (
        f"{base}/profile?payment=success&session_id={{CHECKOUT_SESSION_ID}}",
        f"{base}/profile?canceled=true",
    )


def start_checkout(user_id: str, user_email: str, price_id: Optional[str] = None) -> CheckoutSession:
    """
    Start a one-time checkout session for Lifetime Pro.

    Args:
        user_id: Caller's user id (bound to the session in two channels)
        user_email: Prefills the checkout form
        price_id: Optional override of STRIPE_PRICE_ID

    Returns:
        CheckoutSession with the redirect url and session id

    Raises:
        InvalidRequest: Missing identity, or the user already has lifetime access
        ConfigurationError: Billing or price not configured
        UpstreamError: Stripe call failed or timed out
    """
    if not user_id or not user_email:
        checkout_sessions_total.inc(labels={"outcome": "invalid"})
        raise InvalidRequest("Missing required fields")

    provider = get_provider()
    if not provider:
        checkout_sessions_total.inc(labels={"outcome": "unconfigured"})
        log_event("error", "checkout.unconfigured", user_id=user_id, error_code=ConfigurationError.code, extra={"detail": "billing not configured"})
        raise ConfigurationError(CHECKOUT_FAILED_MESSAGE)

    try:
        resolved_price = resolve_price_id(price_id)
    except ConfigurationError as e:
        checkout_sessions_total.inc(labels={"outcome": "unconfigured"})
        log_event("error", "checkout.unconfigured", user_id=user_id, error_code=ConfigurationError.code, extra={"detail": e})
        raise ConfigurationError(CHECKOUT_FAILED_MESSAGE)

    if has_lifetime_access(user_id):
        checkout_sessions_total.inc(labels={"outcome": "already_entitled"})
        raise InvalidRequest("User already has lifetime access")

    success_url, cancel_url = checkout_urls()
    try:
        session = provider.create_checkout_session(
            user_id=user_id,
            user_email=user_email,
            price_id=resolved_price,
            success_url=success_url,
            cancel_url=cancel_url,
        )
    except BillingProviderError as e:
        checkout_sessions_total.inc(labels={"outcome": "upstream_error"})
        log_event("error", "checkout.failed", user_id=user_id, error_code=UpstreamError.code, extra={"detail": e})
        raise UpstreamError(CHECKOUT_FAILED_MESSAGE)

    checkout_sessions_total.inc(labels={"outcome": "created"})
    log_event("info", "checkout.created", user_id=user_id, extra={"session_id": session.session_id})
    return session


def _find_purchase(session, payment_reference: str) -> Optional[Dict[str, Any]]:
    row = session.execute(
        select(purchases).where(purchases.c.stripe_payment_intent_id == payment_reference)
    ).mappings().fetchone()
    return dict(row) if row else None


def _find_revocation(session, payment_reference: str) -> Optional[Dict[str, Any]]:
    row = session.execute(
        select(revoked_payments).where(revoked_payments.c.stripe_payment_intent_id == payment_reference)
    ).mappings().fetchone()
    return dict(row) if row else None


def _find_active_for_user(session, user_id: str) -> Optional[Dict[str, Any]]:
    row = session.execute(
        select(purchases.c.stripe_payment_intent_id).where(
            and_(
                purchases.c.user_id == user_id,
                purchases.c.status == STATUS_ACTIVE,
                purchases.c.purchase_type == LIFETIME_PRO,
            )
        ).limit(1)
    ).mappings().fetchone()
    return dict(row) if row else None


def _user_deleted(session, user_id: str) -> bool:
    flag = session.execute(
        select(app_users.c.is_deleted).where(app_users.c.user_id == user_id)
    ).scalar()
    return bool(flag)


def record_purchase(
    user_id: str,
    payment_reference: str,
    customer_reference: Optional[str] = None,
    amount: Optional[int] = None,
    currency: Optional[str] = None,
    coupon_id: Optional[str] = None,
    purchased_at: Optional[datetime] = None,
    source: str = "webhook",
) -> Tuple[bool, Dict[str, Any]]:
    """
    Insert the entitlement row for a payment (idempotent).

    Existence check by payment reference first; the unique constraint
    catches concurrent deliveries that pass the check together. A payment
    already refunded or disputed is recorded inactive.

    Returns:
        (created, row)

    Raises:
        PersistenceError: Storage failure other than a duplicate key
    """
    now = _utcnow()
    values = {
        "id": str(uuid.uuid4()),
        "user_id": user_id,
        "stripe_payment_intent_id": payment_reference,
        "stripe_customer_id": customer_reference,
        "purchase_type": LIFETIME_PRO,
        "status": STATUS_ACTIVE,
        "amount_paid": amount,
        "currency": currency,
        "coupon_id": coupon_id,
        "purchased_at": purchased_at or now,
        "created_at": now,
        "updated_at": now,
    }

    try:
        with get_db_session() as session:
            existing = _find_purchase(session, payment_reference)
            if existing:
                return False, existing

            if _find_revocation(session, payment_reference):
                values["status"] = STATUS_INACTIVE
            else:
                other = _find_active_for_user(session, user_id)
                if other:
                    # Money was taken twice; keep both rows, flag for a manual refund
                    log_event(
                        "warning",
                        "entitlement.duplicate_purchase",
                        user_id=user_id,
                        error_code="duplicate_purchase",
                        extra={
                            "payment_reference": payment_reference,
                            "existing_payment_reference": other["stripe_payment_intent_id"],
                        },
                    )
                    entitlement_alarms_total.inc(labels={"reason": "duplicate_purchase"})

            try:
                session.execute(insert(purchases).values(**values))
                session.commit()
            except IntegrityError:
                # Race condition: another delivery already inserted this payment
                session.rollback()
                existing = _find_purchase(session, payment_reference)
                if existing is None:
                    raise
                return False, existing
    except SQLAlchemyError as e:
        logger.error(
            "entitlement.persist_failed",
            extra={"user_id": user_id, "payment_reference": payment_reference, "error_code": PersistenceError.code},
        )
        logger.debug(f"[billing] insert failed: {e}")
        raise PersistenceError("Failed to record purchase")

    if values["status"] == STATUS_INACTIVE:
        log_event(
            "warning",
            "entitlement.recorded_revoked",
            user_id=user_id,
            extra={"payment_reference": payment_reference, "source": source},
        )
        return True, values

    entitlements_created_total.inc(labels={"source": source})
    log_event(
        "info",
        "entitlement.created",
        user_id=user_id,
        extra={"payment_reference": payment_reference, "source": source},
    )
    return True, values


def revoke_payment(
    payment_reference: str,
    reason: str = REVOCATION_REFUND,
    user_id: Optional[str] = None,
    event_id: Optional[str] = None,
) -> Optional[Dict[str, Any]]:
    """
    Mark a payment revoked and set its row inactive.

    The revocation is remembered even when no row exists yet, so a payment
    event delivered afterwards cannot grant access. A refund takes
    precedence over a dispute.

    Returns the updated row, or None when no active row was changed.
    """
    now = _utcnow()
    try:
        with get_db_session() as session:
            tombstone = _find_revocation(session, payment_reference)
            if tombstone is None:
                session.execute(
                    insert(revoked_payments).values(
                        stripe_payment_intent_id=payment_reference,
                        user_id=user_id,
                        reason=reason,
                        event_id=event_id,
                        revoked_at=now,
                    )
                )
            elif reason == REVOCATION_REFUND and tombstone["reason"] != REVOCATION_REFUND:
                session.execute(
                    update(revoked_payments)
                    .where(revoked_payments.c.stripe_payment_intent_id == payment_reference)
                    .values(reason=reason, event_id=event_id, revoked_at=now)
                )

            result = session.execute(
                update(purchases)
                .where(purchases.c.stripe_payment_intent_id == payment_reference)
                .where(purchases.c.status == STATUS_ACTIVE)
                .values(status=STATUS_INACTIVE, updated_at=now)
            )
            if not result.rowcount:
                return None
            return _find_purchase(session, payment_reference)
    except SQLAlchemyError as e:
        logger.error(f"[billing] revoke failed for {payment_reference}: {e}")
        raise PersistenceError("Failed to revoke purchase")


def reinstate_payment(payment_reference: str) -> Optional[Dict[str, Any]]:
    """
    Lift a dispute revocation (dispute won).

    Refund revocations stay in place, and a deleted account is not
    reactivated. Returns the reactivated row, or None.
    """
    try:
        with get_db_session() as session:
            tombstone = _find_revocation(session, payment_reference)
            if tombstone is None or tombstone["reason"] != REVOCATION_DISPUTE:
                return None
            session.execute(
                delete(revoked_payments).where(revoked_payments.c.stripe_payment_intent_id == payment_reference)
            )

            row = _find_purchase(session, payment_reference)
            if row is None or row["status"] != STATUS_INACTIVE or _user_deleted(session, row["user_id"]):
                return None
            session.execute(
                update(purchases)
                .where(purchases.c.stripe_payment_intent_id == payment_reference)
                .values(status=STATUS_ACTIVE, updated_at=_utcnow())
            )
            return _find_purchase(session, payment_reference)
    except SQLAlchemyError as e:
        logger.error(f"[billing] reinstate failed for {payment_reference}: {e}")
        raise PersistenceError("Failed to reinstate purchase")


def _require_user_reference(event: PaymentEvent) -> str:
    if not event.user_id:
        raise UserReferenceMissing("No user reference on paid event")
    return event.user_id


def _alarm(reason: str, event: PaymentEvent) -> None:
    entitlement_alarms_total.inc(labels={"reason": reason})
    log_event(
        "error",
        "entitlement.alarm",
        event_type=event.event_type,
        error_code=reason,
        extra={
            "event_id": event.event_id,
            "payment_reference": event.payment_reference,
            "customer_reference": event.customer_reference,
        },
    )


def process_webhook_event(headers: Dict[str, str], body: bytes) -> WebhookOutcome:
    """
    Process a billing webhook delivery (idempotent).

    1. Verify signature on the raw body
    2. Classify the event (success, revocation, reinstatement, ignored)
    3. Attribute the user (primary reference, then metadata)
    4. Insert, revoke or reinstate the entitlement row

    Events may arrive in any order; no prior state is assumed.

    Raises:
        ConfigurationError: Billing not configured
        SignatureInvalid: Signature or payload invalid
        PersistenceError: Transient storage failure (provider should redeliver)
    """
    provider = get_provider()
    if not provider:
        raise ConfigurationError("Billing not configured")

    try:
        event = provider.construct_event(headers, body)
    except BillingWebhookError as e:
        webhook_events_total.inc(labels={"event_type": "unknown", "result": "signature_invalid"})
        log_event("warning", "webhook.signature_invalid", error_code=SignatureInvalid.code, extra={"detail": e})
        raise SignatureInvalid("Invalid signature")

    outcome = _reconcile(event)
    webhook_events_total.inc(labels={"event_type": event.event_type, "result": outcome.result})
    log_event(
        "info",
        "webhook.processed",
        user_id=outcome.user_id,
        event_type=event.event_type,
        extra={"event_id": event.event_id, "result": outcome.result},
    )
    return outcome


def _reconcile(event: PaymentEvent) -> WebhookOutcome:
    outcome = WebhookOutcome(
        result=RESULT_IGNORED,
        event_id=event.event_id,
        event_type=event.event_type,
        user_id=event.user_id,
        payment_reference=event.payment_reference,
    )

    if event.kind == EVENT_KIND_REVOCATION:
        if not event.payment_reference:
            return outcome
        row = revoke_payment(
            event.payment_reference,
            reason=event.revocation_reason or REVOCATION_REFUND,
            user_id=event.user_id,
            event_id=event.event_id,
        )
        outcome.result = RESULT_REVOKED
        if row is not None:
            entitlements_revoked_total.inc(labels={"reason": event.revocation_reason or REVOCATION_REFUND})
            outcome.user_id = row["user_id"]
            outcome.record = serialize_record(row)
        log_event(
            "info",
            "entitlement.revoked",
            user_id=outcome.user_id,
            extra={"payment_reference": event.payment_reference, "reason": event.revocation_reason},
        )
        return outcome

    if event.kind == EVENT_KIND_REINSTATEMENT:
        if not event.payment_reference:
            return outcome
        row = reinstate_payment(event.payment_reference)
        if row is None:
            return outcome
        outcome.result = RESULT_REINSTATED
        outcome.user_id = row["user_id"]
        outcome.record = serialize_record(row)
        log_event("info", "entitlement.reinstated", user_id=row["user_id"], extra={"payment_reference": event.payment_reference})
        return outcome

    if event.kind != EVENT_KIND_SUCCESS:
        return outcome

    try:
        user_id = _require_user_reference(event)
    except UserReferenceMissing:
        # Redelivery cannot add the field; acknowledge and alarm
        _alarm(UserReferenceMissing.code, event)
        outcome.result = RESULT_UNATTRIBUTED
        return outcome

    if not event.payment_reference:
        _alarm("payment_reference_missing", event)
        return outcome

    created, row = record_purchase(
        user_id=user_id,
        payment_reference=event.payment_reference,
        customer_reference=event.customer_reference,
        amount=event.amount,
        currency=event.currency,
        coupon_id=event.coupon_id,
        source="webhook",
    )
    if not created:
        outcome.result = RESULT_DUPLICATE
    elif row["status"] == STATUS_INACTIVE:
        outcome.result = RESULT_REVOKED
    else:
        outcome.result = RESULT_CREATED
    outcome.record = serialize_record(row)
    return outcome


def backfill_payment(payment_reference: str) -> Dict[str, Any]:
    """
    Operator backfill for one payment.

    Looks the payment up at the provider, attributes it (metadata, then the
    billing email against app_users) and inserts the row if the payment
    succeeded and nothing is recorded yet.
    """
    from backend.features.users.service import find_user_by_email

    provider = get_provider()
    if not provider:
        raise ConfigurationError("Billing not configured")

    try:
        payment = provider.retrieve_payment(payment_reference)
    except BillingProviderError as e:
        logger.error(f"[billing] payment lookup failed for {payment_reference}: {e}")
        raise UpstreamError("Failed to retrieve payment")

    result: Dict[str, Any] = {
        "paymentIntent": {
            "id": payment.payment_reference,
            "status": payment.status,
            "amount": payment.amount,
            "currency": payment.currency,
            "created": payment.created_at.isoformat() if payment.created_at else None,
        },
        "userId": None,
        "attributedBy": None,
        "purchase": None,
        "action": "none",
    }

    user_id = payment.user_id
    attributed_by = "metadata" if user_id else None
    if not user_id and payment.billing_email:
        user = find_user_by_email(payment.billing_email)
        if user:
            user_id = user["user_id"]
            attributed_by = "billing_email"
    result["userId"] = user_id
    result["attributedBy"] = attributed_by

    if payment.status != "succeeded":
        result["action"] = "not_succeeded"
        return result
    if not user_id:
        entitlement_alarms_total.inc(labels={"reason": "backfill_unattributed"})
        result["action"] = "unattributed"
        return result

    created, row = record_purchase(
        user_id=user_id,
        payment_reference=payment.payment_reference,
        customer_reference=payment.customer_reference,
        amount=payment.amount,
        currency=payment.currency,
        purchased_at=payment.created_at,
        source="backfill",
    )
    result["purchase"] = serialize_record(row)
    if not created:
        result["action"] = "exists"
    elif row["status"] == STATUS_INACTIVE:
        result["action"] = "revoked"
    else:
        result["action"] = "created"
    return result


def list_user_purchases(email: str) -> Dict[str, Any]:
    """Purchases for the user registered with `email`, newest first."""
    from backend.features.users.service import find_user_by_email

    user = find_user_by_email(email)
    if not user:
        raise NotFoundError("User not found")

    with get_db_session() as session:
        rows = session.execute(
            select(purchases)
            .where(purchases.c.user_id == user["user_id"])
            .order_by(purchases.c.purchased_at.desc())
        ).mappings().all()

    return {
        "user": serialize_record(user),
        "purchases": [serialize_record(r) for r in rows],
    }


def list_recorded_references(references: List[str]) -> set:
    """Subset of `references` that already have a purchases row."""
    if not references:
        return set()
    with get_db_session() as session:
        rows = session.execute(
            select(purchases.c.stripe_payment_intent_id).where(
                purchases.c.stripe_payment_intent_id.in_(references)
            )
        ).fetchall()
    return {r[0] for r in rows}
