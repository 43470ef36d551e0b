"""
Admin-only billing operations router.
Requires X-Admin-Key header for all endpoints.
Handles payment backfill and the reconciliation sweep.
"""

import logging
from datetime import datetime
from typing import Optional, List, Dict, Any
from fastapi import APIRouter, Query, Depends
from starlette.concurrency import run_in_threadpool
from pydantic import BaseModel, Field

from backend.core.admin_auth import require_admin, AdminActor
from backend.core.errors import InvalidRequest
from backend.features.billing.service import backfill_payment, list_user_purchases
from backend.features.billing.reconcile_job import run_reconcile_job
from backend.realtime.hub import CHANGE_INSERT, publish_entitlement_change

logger = logging.getLogger("logedin.admin_billing")

router = APIRouter()


# ============================================================================
# Pydantic Models
# ============================================================================

class CheckPaymentRequest(BaseModel):
    """Look up a payment (and backfill it) or list a user's purchases."""
    paymentIntentId: Optional[str] = Field(None, description="Stripe PaymentIntent id to check and backfill")
    userEmail: Optional[str] = Field(None, description="List purchases for the user with this email")


class ReconciliationResult(BaseModel):
    """Reconciliation sweep result."""
    checked: int
    missing: int
    unattributed: int
    created: int
    missing_references: List[str]
    timestamp: datetime


# ============================================================================
# Endpoints
# ============================================================================

@router.post("/v1/admin/billing/check-payment")
async def check_payment(
    request: CheckPaymentRequest,
    actor: AdminActor = Depends(require_admin),
) -> Dict[str, Any]:
    """
    Diagnose a payment the webhook may have missed.

    With paymentIntentId: fetch it from Stripe and insert the purchase if it
    succeeded and is attributable. With userEmail: list that user's purchases.
    """
    if request.paymentIntentId:
        logger.info(f"[admin] check-payment intent={request.paymentIntentId} actor={actor.actor_id}")
        result = await run_in_threadpool(backfill_payment, request.paymentIntentId)
        if result["action"] == "created":
            await publish_entitlement_change(result["userId"], CHANGE_INSERT, result["purchase"])
        return result

    if request.userEmail:
        logger.info(f"[admin] check-payment email lookup actor={actor.actor_id}")
        return await run_in_threadpool(list_user_purchases, request.userEmail)

    raise InvalidRequest("Provide paymentIntentId or userEmail")


@router.post("/v1/admin/billing/reconcile", response_model=ReconciliationResult)
def reconcile_billing(
    fix: bool = Query(False, description="Insert missing purchases"),
    lookback_hours: Optional[int] = Query(None, ge=1, le=24 * 30),
    actor: AdminActor = Depends(require_admin),
):
    """
    Compare recent succeeded Stripe payments with local purchases.
    Detects and optionally backfills rows the webhook never wrote.
    """
    logger.info(f"[admin] running reconciliation, fix={fix} actor={actor.actor_id}")
    result = run_reconcile_job(fix=fix, lookback_hours=lookback_hours)
    logger.info(f"[admin] reconciliation complete: {result['missing']} missing, {result['created']} created")
    return result
