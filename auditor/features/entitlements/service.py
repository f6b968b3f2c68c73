"""
auditor/features/entitlements/service.py

Entitlement resolution (Pro status + audit allowance).

Handles:
- Single-read resolution of the authoritative record
- Expired paid periods override a stale "active" flag
- Administrative overrides (replace hardcoded allow-lists), audited
- Display summaries and a conservative degraded view for UI reads
"""

import logging
import math
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from auditor.core.config import settings
from auditor.core.errors import StoreUnavailableError, ValidationError
from auditor.features.entitlements import store
from auditor.features.plans.service import (
    format_limit,
    get_audits_limit,
    get_display_name,
    is_pro_plan,
    is_unlimited,
    parse_plan,
)
from auditor.models.entitlement import Entitlement, EntitlementRecord, Plan, Status, UNLIMITED


logger = logging.getLogger(__name__)


def _normalize_now(now: Optional[Any]) -> datetime:
    if now is None:
        return datetime.now(timezone.utc)
    if getattr(now, "tzinfo", None) is None:
        return now.replace(tzinfo=timezone.utc)
    return now


def _override_active(record: EntitlementRecord, now: datetime) -> bool:
    if record.manual_override_plan is None:
        return False
    expires_at = record.manual_override_expires_at
    return expires_at is None or expires_at > now


def evaluate(record: EntitlementRecord, now: Optional[Any] = None) -> Entitlement:
    """Pure resolution of a record at `now`. No I/O."""
    ts = _normalize_now(now)

    if _override_active(record, ts):
        plan = record.manual_override_plan
        status = Status.ACTIVE
        is_pro = is_pro_plan(plan)
        override_applied = True
    else:
        plan = record.plan
        status = record.status
        period_end = record.current_period_end
        is_pro = (
            status == Status.ACTIVE
            and is_pro_plan(plan)
            and (period_end is None or period_end > ts)
        )
        override_applied = False

    limit = get_audits_limit(plan) if is_pro else get_audits_limit(Plan.FREE)

    # A stale period_key means the monthly reset is pending; it is written by the usage counter.
    used = record.audits_used if record.period_key == store.current_period_key(ts) else 0

    if is_unlimited(limit):
        remaining = UNLIMITED
    else:
        remaining = max(0, limit - used)

    return Entitlement(
        user_id=record.user_id,
        plan=plan,
        status=status,
        is_pro=is_pro,
        audits_used=used,
        audits_limit=limit,
        audits_remaining=remaining,
        current_period_end=record.current_period_end,
        cancel_at_period_end=record.cancel_at_period_end,
        override_applied=override_applied,
    )


def resolve(user_id: str, now: Optional[Any] = None, email: Optional[str] = None) -> Entitlement:
    """Resolve a user's entitlement from one read of their record (created lazily)."""
    record = store.get_or_create(user_id, email=email)
    return evaluate(record, now)


def free_view(user_id: str) -> Entitlement:
    limit = get_audits_limit(Plan.FREE)
    return Entitlement(
        user_id=user_id,
        plan=Plan.FREE,
        status=Status.INACTIVE,
        is_pro=False,
        audits_used=0,
        audits_limit=limit,
        audits_remaining=limit,
        degraded=True,
    )


def resolve_for_display(user_id: str, now: Optional[Any] = None, email: Optional[str] = None) -> Entitlement:
    """Like resolve(), but a store outage yields a conservative free view flagged degraded."""
    try:
        return resolve(user_id, now=now, email=email)
    except StoreUnavailableError:
        logger.error(
            "[entitlements] store unavailable, serving degraded free view",
            extra={"user_id": user_id, "error_code": "store_unavailable"},
        )
        return free_view(user_id)


def summarize(entitlement: Entitlement) -> Dict[str, Any]:
    """Wire payload for status endpoints."""
    limit = entitlement.audits_limit
    used = entitlement.audits_used
    if is_unlimited(limit):
        usage_percentage = 0
        is_near_limit = False
    else:
        usage_percentage = 100 if limit <= 0 else min(100, round(used * 100 / limit))
        is_near_limit = entitlement.audits_remaining <= math.ceil(limit * 0.1)

    period_end = entitlement.current_period_end
    next_billing_date = None
    if period_end and entitlement.is_pro and not entitlement.cancel_at_period_end and not entitlement.override_applied:
        next_billing_date = period_end.isoformat()

    return {
        "user_id": entitlement.user_id,
        "plan": entitlement.plan.value,
        "plan_display_name": get_display_name(entitlement.plan),
        "status": entitlement.status.value,
        "is_pro": entitlement.is_pro,
        "audits_used": used,
        "audits_limit": format_limit(limit),
        "audits_remaining": format_limit(entitlement.audits_remaining),
        "usage_percentage": usage_percentage,
        "is_near_limit": is_near_limit,
        "current_period_end": period_end.isoformat() if period_end else None,
        "next_billing_date": next_billing_date,
        "cancel_at_period_end": entitlement.cancel_at_period_end,
        "override_applied": entitlement.override_applied,
        "degraded": entitlement.degraded,
        "optimistic_grace_seconds": settings.OPTIMISTIC_PRO_GRACE_SECONDS,
    }


def _pro_until(record: EntitlementRecord, resolved: Entitlement, now: datetime) -> Optional[datetime]:
    """When is_pro lapses with no further write; None while open-ended."""
    if not resolved.is_pro:
        return None
    if not resolved.override_applied:
        return record.current_period_end
    expires_at = record.manual_override_expires_at
    if expires_at is None:
        return None
    # After the override expires the Stripe state takes over again
    underlying = evaluate(record.model_copy(update={"manual_override_plan": None}), now)
    if not underlying.is_pro:
        return expires_at
    if record.current_period_end is None:
        return None
    return max(expires_at, record.current_period_end)


def mirror_snapshot(session: Session, record: EntitlementRecord, now: Optional[Any] = None) -> Entitlement:
    """Write the read projection for `record` inside the caller's transaction."""
    ts = _normalize_now(now)
    resolved = evaluate(record, ts)
    store.write_snapshot(
        session,
        record.user_id,
        plan=resolved.plan,
        status=resolved.status,
        is_pro=resolved.is_pro,
        current_period_end=record.current_period_end,
        pro_until=_pro_until(record, resolved, ts),
        now=ts,
    )
    return resolved


def set_override(
    user_id: str,
    plan: str,
    *,
    reason: str,
    expires_at: Optional[datetime] = None,
    actor: str,
    actor_type: Optional[str] = None,
    now: Optional[Any] = None,
) -> Entitlement:
    """Grant a plan regardless of Stripe state (support escape hatch), audited."""
    parsed = parse_plan(plan)
    if parsed is None:
        raise ValidationError(f"Unknown plan: {plan}")
    if not reason or not reason.strip():
        raise ValidationError("Override reason is required")
    ts = _normalize_now(now)
    if expires_at is not None and _normalize_now(expires_at) <= ts:
        raise ValidationError("Override expiry must be in the future")

    with store.transaction() as session:
        record = store.upsert(
            user_id,
            {
                "manual_override_plan": parsed,
                "manual_override_reason": reason.strip(),
                "manual_override_expires_at": _normalize_now(expires_at) if expires_at else None,
            },
            session=session,
            now=ts,
        )
        store.record_admin_audit(
            session,
            actor=actor,
            actor_type=actor_type,
            action="entitlement.override.set",
            target_user_id=user_id,
            payload={"plan": parsed.value, "reason": reason.strip(), "expires_at": expires_at},
        )
        resolved = mirror_snapshot(session, record, ts)

    logger.info(
        "[entitlements] override set",
        extra={"user_id": user_id, "plan": parsed.value, "actor": actor},
    )
    return resolved


def clear_override(user_id: str, *, actor: str, actor_type: Optional[str] = None, now: Optional[Any] = None) -> Entitlement:
    ts = _normalize_now(now)
    with store.transaction() as session:
        record = store.upsert(
            user_id,
            {
                "manual_override_plan": None,
                "manual_override_reason": None,
                "manual_override_expires_at": None,
            },
            session=session,
            now=ts,
        )
        store.record_admin_audit(
            session,
            actor=actor,
            actor_type=actor_type,
            action="entitlement.override.clear",
            target_user_id=user_id,
        )
        resolved = mirror_snapshot(session, record, ts)

    logger.info("[entitlements] override cleared", extra={"user_id": user_id, "actor": actor})
    return resolved
