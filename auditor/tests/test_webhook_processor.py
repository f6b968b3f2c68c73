"""
Stripe webhook processing.

Verifies signature enforcement, idempotency, ordering, user resolution
and failure/redelivery handling.
"""
import logging
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
from sqlalchemy import func, select

from auditor.core.database import billing_events, get_db_session, user_entitlements
from auditor.features.billing.provider import SignatureInvalidError
from auditor.features.billing.webhooks import (
    CLAIM_TTL,
    WebhookProcessingError,
    get_event_status,
    list_events,
    process_webhook,
)
from auditor.features.entitlements import store
from auditor.features.entitlements.service import resolve
from auditor.models.entitlement import Plan, Status
from auditor.tests.mocks import checkout_object, make_event, stripe_signature, subscription_object


def _now():
    return datetime.now(timezone.utc).replace(microsecond=0)


def _deliver(provider, payload: bytes):
    return process_webhook(payload, stripe_signature(payload), provider)


def _row_count(table) -> int:
    with get_db_session() as session:
        return session.execute(select(func.count()).select_from(table)).scalar_one()


def _pro_user(user_id="u1", customer_id="cus_1", subscription_id="sub_1", period_end=None):
    return store.upsert(
        user_id,
        {
            "plan": Plan.PRO,
            "status": Status.ACTIVE,
            "stripe_customer_id": customer_id,
            "stripe_subscription_id": subscription_id,
            "current_period_end": period_end or _now() + timedelta(days=20),
        },
    )


def test_checkout_completed_upgrades_user(fake_provider):
    period_end = _now() + timedelta(days=30)
    fake_provider.add_subscription("sub_1", customer_id="cus_1", current_period_end=period_end)
    store.upsert("u1", {"audits_used": 3})

    payload = make_event(
        "checkout.session.completed",
        {
            "id": "cs_1",
            "object": "checkout.session",
            "customer": "cus_1",
            "subscription": "sub_1",
            "customer_details": {"email": "Reader@Example.com"},
            "metadata": {"userId": "u1"},
        },
        event_id="evt_checkout",
    )
    outcome = _deliver(fake_provider, payload)

    assert outcome.outcome == "processed"
    assert outcome.user_id == "u1"
    record = store.get("u1")
    assert record.plan == Plan.PRO
    assert record.status == Status.ACTIVE
    assert record.audits_used == 0
    assert record.stripe_customer_id == "cus_1"
    assert record.stripe_subscription_id == "sub_1"
    assert record.current_period_end == period_end
    assert resolve("u1").is_pro is True
    assert ("retrieve", "sub_1") in fake_provider.calls


def test_checkout_uses_plan_from_metadata(fake_provider):
    fake_provider.add_subscription("sub_2", customer_id="cus_2", price_id="price_basic")
    payload = make_event(
        "checkout.session.completed",
        {
            "id": "cs_2",
            "customer": "cus_2",
            "subscription": "sub_2",
            "client_reference_id": "u2",
            "metadata": {"plan_id": "team"},
        },
        event_id="evt_checkout_team",
    )

    _deliver(fake_provider, payload)

    assert store.get("u2").plan == Plan.TEAM


def test_replayed_event_is_acknowledged_but_not_reapplied(fake_provider):
    _pro_user()
    payload = make_event(
        "customer.subscription.updated",
        subscription_object(status="active", cancel_at_period_end=True, current_period_end=_now() + timedelta(days=5)),
        event_id="evt_replay",
    )

    first = _deliver(fake_provider, payload)
    after_first = store.get("u1")
    second = _deliver(fake_provider, payload)

    assert first.outcome == "processed"
    assert second.outcome == "duplicate"
    assert store.get("u1") == after_first
    assert _row_count(billing_events) == 1


def test_older_subscription_update_does_not_regress_state(fake_provider):
    _pro_user()
    newer = make_event(
        "customer.subscription.updated",
        subscription_object(status="active", current_period_end=_now() + timedelta(days=30)),
        event_id="evt_newer",
        created=_now() - timedelta(seconds=10),
    )
    older = make_event(
        "customer.subscription.updated",
        subscription_object(status="canceled"),
        event_id="evt_older",
        created=_now() - timedelta(seconds=100),
    )

    assert _deliver(fake_provider, newer).outcome == "processed"
    assert _deliver(fake_provider, older).outcome == "stale"

    record = store.get("u1")
    assert record.status == Status.ACTIVE
    assert record.plan == Plan.PRO
    assert get_event_status("evt_older") == "stale"


def test_tampered_body_is_rejected_without_mutation(fake_provider):
    payload = make_event(
        "checkout.session.completed",
        {"id": "cs_x", "customer": "cus_x", "metadata": {"userId": "attacker"}},
        event_id="evt_tampered",
    )
    signature = stripe_signature(payload)
    tampered = payload.replace(b"attacker", b"victim12")

    with pytest.raises(SignatureInvalidError):
        process_webhook(tampered, signature, fake_provider)

    assert _row_count(billing_events) == 0
    assert _row_count(user_entitlements) == 0


def test_wrong_secret_and_missing_header_are_rejected(fake_provider):
    payload = make_event("customer.subscription.updated", subscription_object(), event_id="evt_bad_secret")

    with pytest.raises(SignatureInvalidError):
        process_webhook(payload, stripe_signature(payload, secret="whsec_wrong"), fake_provider)
    with pytest.raises(SignatureInvalidError):
        process_webhook(payload, None, fake_provider)

    assert _row_count(billing_events) == 0


def test_subscription_deleted_downgrades_to_free(fake_provider):
    _pro_user()
    payload = make_event(
        "customer.subscription.deleted",
        subscription_object(status="canceled"),
        event_id="evt_deleted",
    )

    outcome = _deliver(fake_provider, payload)

    assert outcome.outcome == "processed"
    record = store.get("u1")
    assert record.plan == Plan.FREE
    assert record.status == Status.CANCELLED
    assert record.current_period_end is None
    assert record.cancel_at_period_end is False
    assert resolve("u1").is_pro is False


def test_past_due_keeps_plan_but_removes_pro(fake_provider):
    _pro_user()
    payload = make_event(
        "invoice.payment_failed",
        {"id": "in_1", "object": "invoice", "customer": "cus_1", "subscription": "sub_1"},
        event_id="evt_failed_payment",
    )

    _deliver(fake_provider, payload)

    record = store.get("u1")
    assert record.status == Status.PAST_DUE
    assert record.plan == Plan.PRO
    assert resolve("u1").is_pro is False


def test_renewal_invoice_resets_usage(fake_provider):
    _pro_user()
    store.upsert("u1", {"audits_used": 42})
    renewal = make_event(
        "invoice.payment_succeeded",
        {"id": "in_2", "customer": "cus_1", "subscription": "sub_1", "billing_reason": "subscription_cycle"},
        event_id="evt_renewal",
    )
    first_invoice = make_event(
        "invoice.payment_succeeded",
        {"id": "in_3", "customer": "cus_1", "subscription": "sub_1", "billing_reason": "subscription_create"},
        event_id="evt_first_invoice",
    )

    assert _deliver(fake_provider, first_invoice).outcome == "ignored"
    assert store.get("u1").audits_used == 42

    assert _deliver(fake_provider, renewal).outcome == "processed"
    assert store.get("u1").audits_used == 0


def test_unhandled_event_type_is_ignored(fake_provider):
    payload = make_event("customer.created", {"id": "cus_new"}, event_id="evt_customer")

    outcome = _deliver(fake_provider, payload)

    assert outcome.outcome == "ignored"
    assert get_event_status("evt_customer") == "ignored"


def test_unresolvable_event_is_recorded_and_logged(fake_provider, caplog):
    payload = make_event(
        "customer.subscription.updated",
        subscription_object(subscription_id="sub_orphan", customer_id="cus_orphan"),
        event_id="evt_orphan",
    )

    with caplog.at_level(logging.INFO, logger="auditor"):
        outcome = _deliver(fake_provider, payload)

    assert outcome.outcome == "unresolvable"
    assert get_event_status("evt_orphan") == "unresolvable"
    assert _row_count(user_entitlements) == 0
    errors = [r for r in caplog.records if r.levelno == logging.ERROR and r.getMessage() == "billing.webhook.unresolvable"]
    assert errors and errors[0].event_id == "evt_orphan"


def test_failed_event_is_marked_and_reapplied_on_redelivery(fake_provider):
    _pro_user()
    payload = make_event(
        "customer.subscription.updated",
        subscription_object(status="past_due"),
        event_id="evt_flaky",
    )

    with patch(
        "auditor.features.billing.webhooks.apply_changes",
        side_effect=RuntimeError("db hiccup"),
    ):
        with pytest.raises(WebhookProcessingError):
            _deliver(fake_provider, payload)

    assert get_event_status("evt_flaky") == "failed"
    assert store.get("u1").status == Status.ACTIVE
    failed = list_events(status="failed")
    assert failed[0]["stripe_event_id"] == "evt_flaky"
    assert "db hiccup" in failed[0]["error"]

    outcome = _deliver(fake_provider, payload)

    assert outcome.outcome == "processed"
    assert get_event_status("evt_flaky") == "processed"
    assert store.get("u1").status == Status.PAST_DUE


def test_webhook_updates_read_projection(fake_provider):
    _pro_user()
    payload = make_event(
        "customer.subscription.updated",
        subscription_object(status="active", current_period_end=_now() + timedelta(days=30)),
        event_id="evt_projection",
    )

    _deliver(fake_provider, payload)

    snapshots = store.list_snapshots(is_pro=True)
    assert [s["user_id"] for s in snapshots] == ["u1"]


def test_checkout_with_missing_subscription_still_upgrades(fake_provider):
    payload = make_event(
        "checkout.session.completed",
        checkout_object(user_id="u1", subscription_id="sub_gone"),
        event_id="evt_checkout_gone",
    )

    outcome = _deliver(fake_provider, payload)

    assert outcome.outcome == "processed"
    record = store.get("u1")
    assert record.plan == Plan.PRO
    assert record.status == Status.ACTIVE
    assert record.current_period_end is None
    assert get_event_status("evt_checkout_gone") == "processed"


def test_duplicate_checkout_delivery_does_not_call_stripe_again(fake_provider):
    fake_provider.add_subscription("sub_1", current_period_end=_now() + timedelta(days=30))
    payload = make_event("checkout.session.completed", checkout_object(user_id="u1"), event_id="evt_dup_checkout")

    first = _deliver(fake_provider, payload)
    second = _deliver(fake_provider, payload)

    assert (first.outcome, second.outcome) == ("processed", "duplicate")
    assert fake_provider.calls.count(("retrieve", "sub_1")) == 1


def test_stripe_outage_during_checkout_fails_then_recovers(fake_provider):
    fake_provider.add_subscription("sub_1", current_period_end=_now() + timedelta(days=30))
    fake_provider.outages = 1
    payload = make_event("checkout.session.completed", checkout_object(user_id="u1"), event_id="evt_outage")

    with pytest.raises(WebhookProcessingError) as exc_info:
        _deliver(fake_provider, payload)

    assert exc_info.value.status_code == 500
    assert get_event_status("evt_outage") == "failed"
    assert store.get_or_create("u1").plan == Plan.FREE

    outcome = _deliver(fake_provider, payload)

    assert outcome.outcome == "processed"
    assert store.get("u1").plan == Plan.PRO
    assert store.get("u1").current_period_end is not None


def test_abandoned_claim_is_taken_over_after_ttl(fake_provider):
    _pro_user()
    payload = make_event(
        "customer.subscription.updated",
        subscription_object(status="past_due"),
        event_id="evt_abandoned",
    )
    with get_db_session() as session:
        session.execute(
            billing_events.insert().values(
                stripe_event_id="evt_abandoned",
                event_type="customer.subscription.updated",
                payload_hash="x",
                status="processing",
                created_at=_now() - CLAIM_TTL * 2,
                claimed_at=_now() - CLAIM_TTL * 2,
            )
        )

    outcome = _deliver(fake_provider, payload)

    assert outcome.outcome == "processed"
    assert store.get("u1").status == Status.PAST_DUE


def test_fresh_claim_is_treated_as_duplicate(fake_provider):
    _pro_user()
    payload = make_event(
        "customer.subscription.updated",
        subscription_object(status="past_due"),
        event_id="evt_inflight",
    )
    with get_db_session() as session:
        session.execute(
            billing_events.insert().values(
                stripe_event_id="evt_inflight",
                event_type="customer.subscription.updated",
                payload_hash="x",
                status="processing",
                created_at=_now(),
                claimed_at=_now(),
            )
        )

    assert _deliver(fake_provider, payload).outcome == "duplicate"
    assert store.get("u1").status == Status.ACTIVE


def test_incomplete_snapshot_in_same_second_keeps_checkout_upgrade(fake_provider):
    created = _now()
    fake_provider.add_subscription("sub_1", current_period_end=created + timedelta(days=30))
    checkout = make_event(
        "checkout.session.completed",
        checkout_object(user_id="u1"),
        event_id="evt_paid",
        created=created,
    )
    late_created = make_event(
        "customer.subscription.created",
        subscription_object(status="incomplete", metadata={"user_id": "u1"}),
        event_id="evt_sub_created",
        created=created,
    )

    _deliver(fake_provider, checkout)
    outcome = _deliver(fake_provider, late_created)

    assert outcome.outcome == "stale"
    record = store.get("u1")
    assert record.status == Status.ACTIVE
    assert record.plan == Plan.PRO
    assert resolve("u1").is_pro is True
