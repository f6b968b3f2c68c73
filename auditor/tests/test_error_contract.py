"""
Error envelope, request correlation and health endpoints.

Every error response carries {"error": {"code", "message", "request_id"}}
and the x-request-id header.
"""
import json
import logging

from fastapi import APIRouter
from fastapi.testclient import TestClient

from auditor.core.logging import JsonFormatter, latency_bucket_ms, log_event, request_id_ctx_var
from auditor.main import app
from auditor.tests.mocks import auth_headers


def test_request_id_is_echoed_and_logged(client, caplog):
    with caplog.at_level(logging.INFO, logger="auditor"):
        resp = client.get("/healthz", headers={"x-request-id": "rid-123"})

    assert resp.status_code == 200
    assert resp.headers["x-request-id"] == "rid-123"
    completions = [r for r in caplog.records if r.getMessage() == "request.complete"]
    assert completions
    assert completions[-1].request_id == "rid-123"
    assert completions[-1].path == "/healthz"
    assert completions[-1].status == 200


def test_request_id_generated_when_absent(client):
    resp = client.get("/healthz")
    assert resp.headers.get("x-request-id")


def test_unknown_route_uses_error_envelope(client):
    resp = client.get("/api/does-not-exist", headers={"x-request-id": "rid-404"})

    assert resp.status_code == 404
    body = resp.json()
    assert body["error"]["code"] == "not_found"
    assert body["error"]["request_id"] == "rid-404"


def test_auth_error_envelope(client):
    resp = client.get("/api/subscription-status")

    assert resp.status_code == 401
    body = resp.json()
    assert body["error"]["code"] == "unauthorized"
    assert body["error"]["message"] == "Missing Authorization (Bearer JWT)"
    assert resp.headers["x-request-id"] == body["error"]["request_id"]


def test_validation_error_is_400(client):
    resp = client.post("/v1/admin/billing/usage/reset", json={}, headers={"X-Admin-Key": "test-admin-key"})

    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "validation_error"


def test_unhandled_exception_is_internal_error():
    boom = APIRouter()

    @boom.get("/__test__/boom")
    def explode():
        raise RuntimeError("kaboom")

    app.include_router(boom)
    try:
        client = TestClient(app, raise_server_exceptions=False)
        resp = client.get("/__test__/boom")
    finally:
        app.router.routes[:] = [r for r in app.router.routes if getattr(r, "path", None) != "/__test__/boom"]

    assert resp.status_code == 500
    body = resp.json()
    assert body["error"]["code"] == "internal_error"
    assert "kaboom" not in resp.text


def test_json_formatter_includes_structured_fields():
    record = logging.LogRecord("auditor", logging.INFO, __file__, 1, "billing.webhook.processed", None, None)
    record.request_id = "rid-json"
    record.event_id = "evt_1"
    record.user_id = "u1"

    payload = json.loads(JsonFormatter().format(record))

    assert payload["message"] == "billing.webhook.processed"
    assert payload["level"] == "INFO"
    assert payload["request_id"] == "rid-json"
    assert payload["event_id"] == "evt_1"
    assert payload["user_id"] == "u1"
    assert payload["timestamp"].endswith("Z")


def test_request_id_context_resets_after_request(client):
    client.get("/healthz", headers={"x-request-id": "rid-scope"})
    assert request_id_ctx_var.get() is None


def test_latency_buckets():
    assert latency_bucket_ms(None) == "unknown"
    assert latency_bucket_ms(5) == "<10ms"
    assert latency_bucket_ms(250) == "100-500ms"
    assert latency_bucket_ms(5000) == ">=1000ms"


def test_healthz_and_readyz(client):
    assert client.get("/healthz").json() == {"status": "ok"}

    ready = client.get("/readyz")
    assert ready.status_code == 200
    assert ready.json() == {"status": "ok"}


def test_completion_log_carries_authenticated_user(client, caplog):
    with caplog.at_level(logging.INFO, logger="auditor"):
        client.get("/api/user/audit-access", headers=auth_headers("user_logged"))

    completion = [r for r in caplog.records if r.getMessage() == "request.complete"][-1]
    assert completion.user_id == "user_logged"


def test_log_event_redacts_credentials(caplog):
    with caplog.at_level(logging.INFO, logger="auditor"):
        log_event(
            "warning",
            "billing.webhook.rejected",
            event_id="evt_9",
            extra={"stripe_signature": "t=1,v1=abc", "reason": "x" * 600},
        )

    record = [r for r in caplog.records if r.getMessage() == "billing.webhook.rejected"][-1]
    assert record.levelno == logging.WARNING
    assert record.event_id == "evt_9"
    assert record.stripe_signature == "<redacted>"
    assert record.reason.endswith("...<truncated>")
