"""
Billing API routes.

Minimal surface:
- POST /api/stripe/create-checkout (alias /checkout): Create checkout session
- POST /api/stripe/webhook (alias /webhook): Handle Stripe webhooks
- GET  /api/entitlement (alias /entitlement): Read entitlement
- GET  /api/entitlement/limits: Feature limits for the entitlement
"""
from typing import Optional
from fastapi import APIRouter, Request, Query
from starlette.concurrency import run_in_threadpool
from pydantic import AliasChoices, BaseModel, Field, ValidationError

from backend.core.errors import InvalidRequest
from backend.features.billing.service import (
    RESULT_CREATED,
    start_checkout,
    process_webhook_event,
)
from backend.features.entitlements.service import get_entitlement, get_plan_limits, can_create_journey
from backend.realtime.hub import CHANGE_INSERT, CHANGE_UPDATE, publish_entitlement_change


router = APIRouter(tags=["billing"])


class CheckoutRequest(BaseModel):
    """Request to create checkout session."""
    userId: Optional[str] = None
    userEmail: Optional[str] = None
    priceId: Optional[str] = Field(default=None, validation_alias=AliasChoices("priceId", "priceReference"))


class CheckoutResponse(BaseModel):
    """Response with the checkout redirect URL."""
    redirectUrl: str
    sessionId: str
    url: str  # same as redirectUrl, for older frontends


@router.post("/api/stripe/create-checkout", response_model=CheckoutResponse)
@router.post("/checkout", response_model=CheckoutResponse, include_in_schema=False)
async def create_checkout(request: Request):
    """
    Create Stripe checkout session for Lifetime Pro.

    Body: {"userId", "userEmail", "priceId"?}

    Returns:
        {"redirectUrl": "https://checkout.stripe.com/...", "sessionId": "cs_...", "url": ...}

    Errors:
        400: Missing fields, or user already has lifetime access
        500: Billing/price not configured, or Stripe API error
    """
    try:
        raw = await request.json()
    except ValueError:
        raise InvalidRequest("Invalid request body")
    if not isinstance(raw, dict):
        raise InvalidRequest("Invalid request body")

    try:
        body = CheckoutRequest.model_validate(raw)
    except ValidationError:
        raise InvalidRequest("Invalid request body")

    # Stripe call is blocking; keep it off the event loop
    session = await run_in_threadpool(
        start_checkout,
        user_id=body.userId,
        user_email=body.userEmail,
        price_id=body.priceId,
    )
    return {"redirectUrl": session.url, "sessionId": session.session_id, "url": session.url}


@router.post("/api/stripe/webhook")
@router.post("/webhook", include_in_schema=False)
async def handle_webhook(request: Request):
    """
    Handle Stripe webhook events.

    Verifies signature on the raw body, reconciles the event idempotently
    (one purchases row per payment intent) and notifies live subscribers.

    Returns:
        {"received": true, "result": "created|duplicate|revoked|reinstated|ignored|unattributed"}

    Errors:
        400: Invalid signature or payload
        500: Billing not configured
        503: Storage unavailable (Stripe retries)
    """
    # Read raw body (required for signature verification)
    body = await request.body()
    headers = dict(request.headers)

    outcome = await run_in_threadpool(process_webhook_event, headers, body)
    if outcome.changed:
        event = CHANGE_INSERT if outcome.result == RESULT_CREATED else CHANGE_UPDATE
        await publish_entitlement_change(outcome.user_id, event, outcome.record)

    return {"received": True, "result": outcome.result}


@router.get("/api/entitlement")
@router.get("/entitlement", include_in_schema=False)
def read_entitlement(userId: Optional[str] = Query(None)):
    """
    Read a user's Lifetime Pro entitlement.

    Returns:
        {"active": bool, "record": {...}?}
    """
    if not userId:
        raise InvalidRequest("User ID is required")
    return get_entitlement(userId).to_dict()


@router.get("/api/entitlement/limits")
def read_limits(
    userId: Optional[str] = Query(None),
    currentCount: Optional[int] = Query(None, ge=0),
):
    """
    Feature limits for the user's plan.

    With currentCount (journeys owned), also answers whether another journey
    may be created.
    """
    if not userId:
        raise InvalidRequest("User ID is required")

    limits = get_plan_limits(userId)
    payload = limits.to_dict()
    if currentCount is not None:
        can_create = can_create_journey(limits, currentCount)
        payload["canCreate"] = can_create
        payload["currentCount"] = currentCount
        if not can_create:
            payload["message"] = (
                f"Free plan allows only {limits.journey_limit} journey. "
                "Upgrade to Lifetime Pro for unlimited journeys!"
            )
    return payload
