"""
auditor/features/usage/service.py

Monthly audit counter.

Handles:
- Atomic increments: conditional SQL update on the free tier, unconditional
  for Pro (basic's 100 is a display allowance, never a block)
- Compare-and-set monthly rollover on period_key
- Read-only access checks and audited admin resets

No read-then-write pairs in application code: the database decides.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import select, update

from auditor.core.database import user_entitlements
from auditor.core.errors import LimitExceededError
from auditor.features.entitlements import store
from auditor.features.entitlements.service import evaluate, resolve
from auditor.features.plans.service import is_unlimited
from auditor.models.entitlement import Entitlement, UsageResult, UNLIMITED


logger = logging.getLogger(__name__)


def _normalize_now(now: Optional[Any]) -> datetime:
    if now is None:
        return datetime.now(timezone.utc)
    if getattr(now, "tzinfo", None) is None:
        return now.replace(tzinfo=timezone.utc)
    return now


def _to_result(entitlement: Entitlement, allowed: bool) -> UsageResult:
    return UsageResult(
        user_id=entitlement.user_id,
        allowed=allowed,
        audits_used=entitlement.audits_used,
        audits_limit=entitlement.audits_limit,
        audits_remaining=entitlement.audits_remaining,
        plan=entitlement.plan,
        is_pro=entitlement.is_pro,
    )


def _rollover(session, user_id: str, period_key: str, now: datetime) -> bool:
    """Reset the counter once per period. Returns True if this call did the reset."""
    rows = session.execute(
        update(user_entitlements)
        .where(user_entitlements.c.user_id == user_id)
        .where(user_entitlements.c.period_key != period_key)
        .values(audits_used=0, period_key=period_key, updated_at=now)
    ).rowcount
    if rows:
        logger.info("[usage] monthly rollover", extra={"user_id": user_id, "period_key": period_key})
    return rows == 1


def increment(user_id: str, now: Optional[Any] = None, email: Optional[str] = None) -> UsageResult:
    """Consume one audit.

    Raises:
        LimitExceededError: free allowance used up; the counter is unchanged.
    """
    ts = _normalize_now(now)
    period_key = store.current_period_key(ts)

    with store.transaction() as session:
        store.ensure_record(session, user_id, email=email, now=ts)
        _rollover(session, user_id, period_key, ts)
        entitlement = evaluate(store.get(user_id, session=session), ts)
        limit = entitlement.audits_limit

        stmt = (
            update(user_entitlements)
            .where(user_entitlements.c.user_id == user_id)
            .values(audits_used=user_entitlements.c.audits_used + 1, updated_at=ts)
        )
        if not entitlement.is_pro:
            stmt = stmt.where(user_entitlements.c.audits_used < limit)

        if session.execute(stmt).rowcount == 0:
            logger.warning(
                "[usage] limit exceeded",
                extra={"user_id": user_id, "audits_used": entitlement.audits_used, "audits_limit": limit},
            )
            raise LimitExceededError(
                "Monthly audit limit reached. Upgrade to continue.",
                audits_used=entitlement.audits_used,
                audits_limit=limit,
            )

        used = session.execute(
            select(user_entitlements.c.audits_used).where(user_entitlements.c.user_id == user_id)
        ).scalar_one()

    remaining = UNLIMITED if is_unlimited(limit) else max(0, limit - used)
    logger.info(
        "[usage] audit consumed",
        extra={"user_id": user_id, "audits_used": used, "audits_limit": limit},
    )
    return UsageResult(
        user_id=user_id,
        allowed=True,
        audits_used=used,
        audits_limit=limit,
        audits_remaining=remaining,
        plan=entitlement.plan,
        is_pro=entitlement.is_pro,
    )


def check(user_id: str, now: Optional[Any] = None, email: Optional[str] = None) -> UsageResult:
    """Read-only: may the user run another audit right now?"""
    entitlement = resolve(user_id, now=now, email=email)
    allowed = entitlement.is_pro or entitlement.audits_remaining > 0
    return _to_result(entitlement, allowed)


def reset(user_id: str, *, actor: str, actor_type: Optional[str] = None, now: Optional[Any] = None) -> UsageResult:
    """Administrative reset of the current period's counter."""
    ts = _normalize_now(now)
    with store.transaction() as session:
        before = store.get_or_create(user_id, session=session)
        store.upsert(
            user_id,
            {"audits_used": 0, "period_key": store.current_period_key(ts)},
            session=session,
            now=ts,
        )
        store.record_admin_audit(
            session,
            actor=actor,
            actor_type=actor_type,
            action="usage.reset",
            target_user_id=user_id,
            payload={"previous_audits_used": before.audits_used, "previous_period_key": before.period_key},
        )
    logger.info("[usage] counter reset", extra={"user_id": user_id, "actor": actor})
    return check(user_id, now=ts)
