"""
Admin-only entitlement operations router.
Requires admin auth (Clerk admin JWT or legacy X-Admin-Key) for all endpoints.
Handles event inspection, manual overrides, usage resets and reconciliation.
"""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from auditor.core.admin_auth import AdminActor, require_admin
from auditor.features.billing.reconcile_job import run_reconcile_job
from auditor.features.billing.service import get_provider
from auditor.features.billing.webhooks import list_events, reconcile_user
from auditor.features.entitlements import store
from auditor.features.entitlements.service import clear_override, set_override, summarize
from auditor.features.usage.service import reset


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/admin/billing", tags=["admin-billing"])


# ============================================================================
# Pydantic Models
# ============================================================================

class EntitlementOverrideRequest(BaseModel):
    """Request to override user entitlements."""
    user_id: str = Field(..., description="User ID to override")
    plan: str = Field(..., description="Plan to grant (free|basic|pro|team)")
    reason: str = Field(..., description="Why the override exists (audited)")
    expires_at: Optional[datetime] = Field(default=None, description="Optional expiry (UTC)")


class UsageResetRequest(BaseModel):
    user_id: str


class ReconcileRequest(BaseModel):
    limit: int = Field(default=100, ge=1, le=1000)


# ============================================================================
# Endpoints
# ============================================================================

@router.get("/events")
def admin_list_events(
    status: Optional[str] = Query(None, description="processed|ignored|stale|unresolvable|failed"),
    user_id: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    actor: AdminActor = Depends(require_admin),
):
    """List billing webhook ledger rows, newest first."""
    events = list_events(status=status, user_id=user_id, limit=limit, offset=offset)
    return {"events": events, "count": len(events), "has_more": len(events) == limit}


@router.post("/entitlements/override")
def admin_set_override(body: EntitlementOverrideRequest, actor: AdminActor = Depends(require_admin)):
    entitlement = set_override(
        body.user_id,
        body.plan,
        reason=body.reason,
        expires_at=body.expires_at,
        actor=actor.actor_id,
        actor_type=actor.actor_type,
    )
    return {"success": True, "entitlement": summarize(entitlement)}


@router.delete("/entitlements/override/{user_id}")
def admin_clear_override(user_id: str, actor: AdminActor = Depends(require_admin)):
    entitlement = clear_override(user_id, actor=actor.actor_id, actor_type=actor.actor_type)
    return {"success": True, "entitlement": summarize(entitlement)}


@router.post("/usage/reset")
def admin_reset_usage(body: UsageResetRequest, actor: AdminActor = Depends(require_admin)):
    result = reset(body.user_id, actor=actor.actor_id, actor_type=actor.actor_type)
    return {"success": True, "user_id": result.user_id, "audits_used": result.audits_used}


@router.get("/pro-users")
def admin_pro_users(
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    actor: AdminActor = Depends(require_admin),
):
    """Pro users from the read projection (no per-user recomputation)."""
    users = store.list_snapshots(is_pro=True, limit=limit, offset=offset)
    return {"users": users, "count": len(users)}


@router.post("/sync/{user_id}")
def admin_sync_user(user_id: str, actor: AdminActor = Depends(require_admin)):
    result = reconcile_user(user_id, get_provider(), owner=f"admin:{actor.actor_id}")
    logger.info(
        "[admin_billing] user sync",
        extra={"user_id": user_id, "actor": actor.actor_id, "outcome": result.outcome},
    )
    return {"outcome": result.outcome, "entitlement": summarize(result.entitlement)}


@router.post("/reconcile")
def admin_run_reconcile(body: Optional[ReconcileRequest] = None, actor: AdminActor = Depends(require_admin)):
    limit = body.limit if body else 100
    stats = run_reconcile_job(get_provider(), limit=limit)
    logger.info("[admin_billing] reconcile job triggered", extra={"actor": actor.actor_id})
    return stats


@router.get("/audit")
def admin_audit_log(
    user_id: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    actor: AdminActor = Depends(require_admin),
):
    entries = store.list_admin_audit(target_user_id=user_id, limit=limit)
    return {"entries": entries, "count": len(entries)}
