"""
Admin entitlement operations.

Covers admin auth (Clerk role / legacy key), overrides, usage reset,
the Pro users projection and reconciliation triggers.
"""
from datetime import datetime, timedelta, timezone

from auditor.core.clerk_auth import create_test_jwt
from auditor.core.config import settings
from auditor.features.entitlements import store
from auditor.features.usage.service import increment
from auditor.models.entitlement import Plan, Status
from auditor.tests.mocks import TEST_ADMIN_KEY, auth_headers, make_event, stripe_signature


ADMIN_KEY_HEADERS = {"X-Admin-Key": TEST_ADMIN_KEY}


def _admin_jwt_headers():
    return {"Authorization": f"Bearer {create_test_jwt(sub='admin_clerk', role='admin')}"}


# ============================================================================
# Auth gate
# ============================================================================

def test_admin_endpoints_reject_missing_credentials(client):
    resp = client.get("/v1/admin/billing/events")

    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "admin_unauthorized"


def test_admin_endpoints_reject_non_admin_jwt(client):
    resp = client.get("/v1/admin/billing/events", headers=auth_headers("plain_user"))
    assert resp.status_code == 401


def test_admin_endpoints_accept_clerk_admin(client):
    resp = client.get("/v1/admin/billing/events", headers=_admin_jwt_headers())
    assert resp.status_code == 200


def test_legacy_key_blocked_in_production_hybrid_mode(client, monkeypatch):
    monkeypatch.setattr(settings, "ENV", "production")

    resp = client.get("/v1/admin/billing/events", headers=ADMIN_KEY_HEADERS)

    assert resp.status_code == 401


def test_unconfigured_admin_auth_is_503(client, monkeypatch):
    monkeypatch.setattr(settings, "ADMIN_KEY", None)
    monkeypatch.setattr(settings, "CLERK_SECRET_KEY", None)
    monkeypatch.setattr(settings, "CLERK_JWKS_URL", None)
    monkeypatch.setattr(settings, "CLERK_ISSUER", None)

    resp = client.get("/v1/admin/billing/events")

    assert resp.status_code == 503
    assert resp.json()["error"]["code"] == "admin_auth_unconfigured"


# ============================================================================
# Operations
# ============================================================================

def test_events_list_filters_by_status(client, fake_provider):
    payload = make_event("customer.created", {"id": "cus_x"}, event_id="evt_ignored")
    client.post("/api/stripe/webhook", content=payload, headers={"stripe-signature": stripe_signature(payload)})

    resp = client.get("/v1/admin/billing/events", params={"status": "ignored"}, headers=ADMIN_KEY_HEADERS)

    assert resp.status_code == 200
    events = resp.json()["events"]
    assert [e["stripe_event_id"] for e in events] == ["evt_ignored"]
    assert client.get("/v1/admin/billing/events", params={"status": "failed"}, headers=ADMIN_KEY_HEADERS).json()["count"] == 0


def test_override_grant_and_clear(client):
    resp = client.post(
        "/v1/admin/billing/entitlements/override",
        json={"user_id": "vip", "plan": "pro", "reason": "journalist partnership"},
        headers=_admin_jwt_headers(),
    )

    assert resp.status_code == 200
    assert resp.json()["entitlement"]["is_pro"] is True
    assert resp.json()["entitlement"]["override_applied"] is True

    status = client.get("/api/subscription-status", headers=auth_headers("vip"))
    assert status.json()["is_pro"] is True

    cleared = client.delete("/v1/admin/billing/entitlements/override/vip", headers=_admin_jwt_headers())
    assert cleared.json()["entitlement"]["is_pro"] is False

    audit = client.get("/v1/admin/billing/audit", params={"user_id": "vip"}, headers=ADMIN_KEY_HEADERS).json()
    assert [e["action"] for e in audit["entries"]] == ["entitlement.override.clear", "entitlement.override.set"]
    assert all(e["actor"] == "admin_clerk" for e in audit["entries"])
    assert all(e["actor_type"] == "clerk" for e in audit["entries"])


def test_override_rejects_unknown_plan(client):
    resp = client.post(
        "/v1/admin/billing/entitlements/override",
        json={"user_id": "vip", "plan": "gold", "reason": "typo"},
        headers=ADMIN_KEY_HEADERS,
    )
    assert resp.status_code == 400


def test_usage_reset(client):
    for _ in range(5):
        increment("capped")

    resp = client.post("/v1/admin/billing/usage/reset", json={"user_id": "capped"}, headers=ADMIN_KEY_HEADERS)

    assert resp.status_code == 200
    assert resp.json()["audits_used"] == 0
    entry = store.list_admin_audit(target_user_id="capped")[0]
    assert entry["action"] == "usage.reset"
    assert entry["actor_type"] == "legacy_key"
    assert entry["actor"].startswith("legacy:")


def test_pro_users_come_from_projection(client):
    client.post(
        "/v1/admin/billing/entitlements/override",
        json={"user_id": "pro_a", "plan": "team", "reason": "staff"},
        headers=ADMIN_KEY_HEADERS,
    )

    resp = client.get("/v1/admin/billing/pro-users", headers=ADMIN_KEY_HEADERS)

    assert resp.status_code == 200
    users = resp.json()["users"]
    assert [u["user_id"] for u in users] == ["pro_a"]
    assert users[0]["plan"] == "team"


def test_reconcile_endpoint_fixes_missed_cancellation(client, fake_provider):
    past = datetime.now(timezone.utc) - timedelta(days=2)
    store.upsert(
        "lapsed",
        {
            "plan": Plan.PRO,
            "status": Status.ACTIVE,
            "current_period_end": past,
            "stripe_customer_id": "cus_l",
            "stripe_subscription_id": "sub_l",
        },
    )
    fake_provider.add_subscription("sub_l", customer_id="cus_l", status="canceled", current_period_end=past)

    resp = client.post("/v1/admin/billing/reconcile", json={"limit": 10}, headers=ADMIN_KEY_HEADERS)

    assert resp.status_code == 200
    stats = resp.json()
    assert stats["checked"] == 1
    assert stats["reconciled"] == 1
    record = store.get("lapsed")
    assert record.status == Status.CANCELLED
    assert record.plan == Plan.FREE


def test_admin_sync_single_user(client, fake_provider):
    store.upsert("u_sync", {"stripe_customer_id": "cus_s", "stripe_subscription_id": "sub_s"})
    fake_provider.add_subscription(
        "sub_s",
        customer_id="cus_s",
        price_id="price_basic",
        current_period_end=datetime.now(timezone.utc) + timedelta(days=10),
    )

    resp = client.post("/v1/admin/billing/sync/u_sync", headers=ADMIN_KEY_HEADERS)

    assert resp.status_code == 200
    assert resp.json()["outcome"] == "processed"
    assert store.get("u_sync").plan == Plan.BASIC
