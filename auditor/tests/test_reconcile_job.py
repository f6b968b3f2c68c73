"""Scheduled reconciliation of records whose paid period lapsed."""
from datetime import datetime, timedelta, timezone

import pytest

from auditor.core.errors import ConflictError
from auditor.features.billing.reconcile_job import run_reconcile_job
from auditor.features.billing.webhooks import reconcile_user, sync_lease_key
from auditor.features.entitlements import store
from auditor.models.entitlement import Plan, Status


NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


def _lapsed(user_id, subscription_id, days_ago=1):
    store.upsert(
        user_id,
        {
            "plan": Plan.PRO,
            "status": Status.ACTIVE,
            "current_period_end": NOW - timedelta(days=days_ago),
            "stripe_customer_id": f"cus_{user_id}",
            "stripe_subscription_id": subscription_id,
        },
        now=NOW - timedelta(days=30),
    )


def test_job_reconciles_renewed_and_deleted_subscriptions(fake_provider):
    _lapsed("renewed", "sub_renewed")
    _lapsed("gone", "sub_missing")
    fake_provider.add_subscription(
        "sub_renewed",
        customer_id="cus_renewed",
        current_period_end=NOW + timedelta(days=29),
    )

    stats = run_reconcile_job(fake_provider, now=NOW)

    assert stats["checked"] == 2
    assert stats["reconciled"] == 2
    assert stats["errors"] == 0
    assert store.get("renewed").current_period_end == NOW + timedelta(days=29)
    gone = store.get("gone")
    assert (gone.status, gone.plan) == (Status.CANCELLED, Plan.FREE)
    assert gone.stripe_subscription_id is None
    assert gone.stripe_customer_id == "cus_gone"


def test_deleted_subscription_leaves_the_stale_queue(fake_provider):
    _lapsed("gone", "sub_missing")

    run_reconcile_job(fake_provider, now=NOW)
    second = run_reconcile_job(fake_provider, now=NOW + timedelta(hours=1))

    assert second["checked"] == 0
    assert fake_provider.calls == [("retrieve", "sub_missing")]


def test_provider_outage_is_counted_as_error(fake_provider):
    _lapsed("unlucky", "sub_unlucky")
    fake_provider.add_subscription("sub_unlucky", customer_id="cus_unlucky")
    fake_provider.outages = 1

    stats = run_reconcile_job(fake_provider, now=NOW)

    assert stats["errors"] == 1
    assert stats["reconciled"] == 0
    assert store.get("unlucky").status == Status.ACTIVE


def test_job_ignores_records_still_in_period(fake_provider):
    store.upsert(
        "current",
        {
            "plan": Plan.PRO,
            "status": Status.ACTIVE,
            "current_period_end": NOW + timedelta(days=3),
            "stripe_subscription_id": "sub_current",
        },
    )

    stats = run_reconcile_job(fake_provider, now=NOW)

    assert stats["checked"] == 0
    assert fake_provider.calls == []


def test_held_lease_skips_user(fake_provider):
    _lapsed("busy", "sub_busy")
    fake_provider.add_subscription("sub_busy", customer_id="cus_busy")
    assert store.acquire_lease(sync_lease_key("busy"), "someone_else", 30, now=NOW)

    stats = run_reconcile_job(fake_provider, now=NOW)

    assert stats["skipped"] == 1
    assert stats["reconciled"] == 0
    assert ("retrieve", "sub_busy") not in fake_provider.calls


def test_expired_lease_is_taken_over(fake_provider):
    _lapsed("stuck", "sub_stuck")
    fake_provider.add_subscription("sub_stuck", customer_id="cus_stuck", status="canceled")
    store.acquire_lease(sync_lease_key("stuck"), "crashed_worker", 30, now=NOW - timedelta(minutes=5))

    result = reconcile_user("stuck", fake_provider, now=NOW)

    assert result.outcome == "processed"
    assert store.get("stuck").plan == Plan.FREE


def test_concurrent_sync_raises_conflict(fake_provider):
    _lapsed("contended", "sub_c")
    store.acquire_lease(sync_lease_key("contended"), "other", 30, now=NOW)

    with pytest.raises(ConflictError):
        reconcile_user("contended", fake_provider, now=NOW)
