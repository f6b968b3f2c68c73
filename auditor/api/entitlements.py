"""
Entitlement API routes.

- GET  /api/subscription-status: resolved entitlement + display fields
- GET  /api/user/audit-access: may the caller run another audit?
- POST /api/audits/consume: count one audit (429 when the allowance is used up)
"""
from fastapi import APIRouter, Depends

from auditor.core.auth import Identity, get_current_identity
from auditor.features.entitlements.service import resolve_for_display, summarize
from auditor.features.plans.service import format_limit
from auditor.features.usage.service import check, increment
from auditor.models.entitlement import UsageResult


router = APIRouter(prefix="/api", tags=["entitlements"])


def usage_payload(result: UsageResult) -> dict:
    return {
        "allowed": result.allowed,
        "plan": result.plan.value,
        "is_pro": result.is_pro,
        "audits_used": result.audits_used,
        "audits_limit": format_limit(result.audits_limit),
        "audits_remaining": format_limit(result.audits_remaining),
    }


@router.get("/subscription-status")
def subscription_status(identity: Identity = Depends(get_current_identity)):
    """
    Current subscription status.

    Degrades to the free-tier view (degraded=true) when the store is down;
    this endpoint is display-only and never gates access.
    """
    return summarize(resolve_for_display(identity.user_id, email=identity.email))


@router.get("/user/audit-access")
def audit_access(identity: Identity = Depends(get_current_identity)):
    return usage_payload(check(identity.user_id, email=identity.email))


@router.post("/audits/consume")
def consume_audit(identity: Identity = Depends(get_current_identity)):
    """
    Count one audit against the caller's monthly allowance.

    Errors:
        429 limit_exceeded: {"allowed": false, "audits_used", "audits_limit"}
        500 store_unavailable: retry later
    """
    return usage_payload(increment(identity.user_id, email=identity.email))
