"""
Reconciliation sweep.

Compares recent succeeded payments at the provider with local purchases rows
and optionally backfills the ones the webhook never recorded. Used by the
admin endpoint and the cron worker; every run is written to billing_job_runs.
"""
from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, Any, Optional

from sqlalchemy import insert

from backend.core.config import settings
from backend.core.database import get_db_session, billing_job_runs
from backend.core.errors import ConfigurationError, UpstreamError
from backend.core.metrics import entitlement_alarms_total
from backend.features.billing import service as billing_service
from backend.features.billing.provider import BillingProviderError

logger = logging.getLogger("logedin")

JOB_NAME = "billing.reconcile_payments"


def _record_run(started_at: datetime, status: str, stats: Dict[str, Any]) -> None:
    with get_db_session() as session:
        session.execute(
            insert(billing_job_runs).values(
                job_name=JOB_NAME,
                started_at=started_at,
                finished_at=datetime.now(timezone.utc),
                status=status,
                stats_json=json.dumps(stats),
            )
        )


def run_reconcile_job(
    now: Optional[datetime] = None,
    fix: bool = False,
    lookback_hours: Optional[int] = None,
    limit: int = 100,
) -> Dict[str, Any]:
    now = now or datetime.now(timezone.utc)
    hours = lookback_hours if lookback_hours is not None else settings.RECONCILE_LOOKBACK_HOURS
    since = now - timedelta(hours=hours)

    provider = billing_service.get_provider()
    if not provider:
        raise ConfigurationError("Billing not configured")

    try:
        payments = list(provider.list_succeeded_payments(created_after=since, limit=limit))
    except BillingProviderError as e:
        logger.error(f"[reconcile] payment listing failed: {e}")
        _record_run(now, "failed", {"error": "upstream_error"})
        raise UpstreamError("Failed to list payments")

    recorded = billing_service.list_recorded_references([p.payment_reference for p in payments])

    missing = []
    unattributed = 0
    for payment in payments:
        if payment.payment_reference in recorded:
            continue
        if not payment.user_id:
            # Not created through our checkout, or metadata lost
            unattributed += 1
            continue
        missing.append(payment)

    created = 0
    if fix:
        for payment in missing:
            was_created, _ = billing_service.record_purchase(
                user_id=payment.user_id,
                payment_reference=payment.payment_reference,
                customer_reference=payment.customer_reference,
                amount=payment.amount,
                currency=payment.currency,
                purchased_at=payment.created_at,
                source="reconcile",
            )
            if was_created:
                created += 1

    if missing and not fix:
        entitlement_alarms_total.inc(labels={"reason": "webhook_missed"}, amount=len(missing))

    stats = {
        "checked": len(payments),
        "missing": len(missing),
        "unattributed": unattributed,
        "created": created,
        "lookback_hours": hours,
        "fix": fix,
    }
    _record_run(now, "success", stats)
    logger.info(
        "[reconcile] sweep complete",
        extra={"result": f"checked={len(payments)} missing={len(missing)} created={created}"},
    )

    return {
        "checked": len(payments),
        "missing": len(missing),
        "unattributed": unattributed,
        "created": created,
        "missing_references": [p.payment_reference for p in missing],
        "timestamp": now.isoformat(),
    }
