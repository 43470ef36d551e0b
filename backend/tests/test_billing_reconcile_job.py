"""
Tests for the reconciliation sweep job.
"""
import json
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock, patch

import pytest
from sqlalchemy import select

from backend.core.database import get_db_session, billing_job_runs, purchases
from backend.core.errors import UpstreamError
from backend.core.metrics import entitlement_alarms_total
from backend.features.billing.provider import BillingProviderError, PaymentRecord
from backend.features.billing.reconcile_job import run_reconcile_job
from backend.workers import reconcile_payments

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


def _payment(reference, user_id="user_alice"):
    return PaymentRecord(
        payment_reference=reference,
        status="succeeded",
        amount=2900,
        currency="usd",
        customer_reference=None,
        user_id=user_id,
        billing_email=None,
        created_at=NOW - timedelta(hours=1),
    )


@pytest.fixture
def provider(stripe_env):
    with patch("backend.features.billing.service.get_provider") as mock_get:
        mock_provider = Mock()
        mock_provider.list_succeeded_payments.return_value = []
        mock_get.return_value = mock_provider
        yield mock_provider


def _job_runs():
    with get_db_session() as session:
        return session.execute(select(billing_job_runs)).mappings().all()


def test_reconcile_job_records_job_run(provider):
    result = run_reconcile_job(now=NOW, fix=False)

    assert result == {
        "checked": 0,
        "missing": 0,
        "unattributed": 0,
        "created": 0,
        "missing_references": [],
        "timestamp": NOW.isoformat(),
    }
    runs = _job_runs()
    assert len(runs) == 1
    assert runs[0]["status"] == "success"
    assert json.loads(runs[0]["stats_json"])["checked"] == 0


def test_lookback_window_is_passed_to_provider(provider):
    run_reconcile_job(now=NOW, lookback_hours=6)

    kwargs = provider.list_succeeded_payments.call_args.kwargs
    assert kwargs["created_after"] == NOW - timedelta(hours=6)


def test_report_only_does_not_write_purchases(provider):
    provider.list_succeeded_payments.return_value = [_payment("pi_a"), _payment("pi_b")]

    result = run_reconcile_job(now=NOW, fix=False)

    assert result["missing"] == 2
    assert result["created"] == 0
    assert entitlement_alarms_total.value({"reason": "webhook_missed"}) == 2
    with get_db_session() as session:
        assert session.execute(select(purchases)).fetchall() == []


def test_fix_backfills_and_second_run_is_clean(provider):
    provider.list_succeeded_payments.return_value = [_payment("pi_a")]

    first = run_reconcile_job(now=NOW, fix=True)
    second = run_reconcile_job(now=NOW, fix=True)

    assert first["created"] == 1
    assert second["missing"] == 0
    assert second["created"] == 0
    assert len(_job_runs()) == 2


def test_provider_failure_records_failed_run(provider):
    provider.list_succeeded_payments.side_effect = BillingProviderError("timeout")

    with pytest.raises(UpstreamError):
        run_reconcile_job(now=NOW)

    assert _job_runs()[0]["status"] == "failed"


def test_worker_entry_point_parses_arguments(provider):
    provider.list_succeeded_payments.return_value = [_payment("pi_a")]

    result = reconcile_payments.main(["--fix", "--lookback-hours", "12", "--limit", "5"])

    assert result["created"] == 1
    assert provider.list_succeeded_payments.call_args.kwargs["limit"] == 5
