"""Manual override CLI."""
import json
import logging

import pytest

from auditor.features.entitlements import store
from auditor.features.entitlements.service import resolve
from auditor.scripts.grant_override import main


@pytest.fixture(autouse=True)
def restore_log_handlers():
    logger = logging.getLogger("auditor")
    saved = logger.handlers[:]
    yield
    logger.handlers = saved


def test_grant_and_clear_override(capsys):
    code = main(["--user-id", "press_1", "--plan", "pro", "--reason", "press account", "--actor", "cli:ops"])

    assert code == 0
    captured = capsys.readouterr()
    output = json.loads(captured.out)
    assert "override set" in captured.err
    assert output["is_pro"] is True
    assert output["override_applied"] is True
    assert resolve("press_1").plan.value == "pro"

    assert main(["--user-id", "press_1", "--clear", "--actor", "cli:ops"]) == 0
    assert resolve("press_1").is_pro is False

    actions = [(e["action"], e["actor"], e["actor_type"]) for e in store.list_admin_audit(target_user_id="press_1")]
    assert actions == [
        ("entitlement.override.clear", "cli:ops", "cli"),
        ("entitlement.override.set", "cli:ops", "cli"),
    ]


def test_grant_with_expiry(capsys):
    code = main([
        "--user-id", "trial_1", "--plan", "team", "--reason", "pilot",
        "--expires-at", "2099-01-01T00:00:00Z", "--actor", "cli:ops",
    ])

    assert code == 0
    assert store.get("trial_1").manual_override_expires_at.year == 2099


def test_unknown_plan_returns_error_code(capsys):
    code = main(["--user-id", "u", "--plan", "gold", "--reason", "typo", "--actor", "cli:ops"])

    assert code == 1
    assert "validation_error" in capsys.readouterr().err


def test_missing_reason_is_usage_error():
    with pytest.raises(SystemExit) as exc:
        main(["--user-id", "u", "--plan", "pro"])
    assert exc.value.code == 2


def test_past_expiry_is_rejected(capsys):
    code = main([
        "--user-id", "u", "--plan", "pro", "--reason", "late",
        "--expires-at", "2000-01-01", "--actor", "cli:ops",
    ])
    assert code == 1
