"""
auditor/features/plans/service.py

Plan catalogue.

Handles:
- Monthly audit limits per plan (-1 = unlimited)
- Which plans count as Pro
- Stripe price <-> plan mapping
"""

from typing import Dict, Optional, Union

from auditor.core.config import settings
from auditor.models.entitlement import Plan, UNLIMITED


PLAN_CATALOGUE: Dict[Plan, Dict[str, Union[str, int, bool]]] = {
    Plan.FREE: {
        "name": "Free",
        "audits_per_month": 5,
        "is_paid": False,
    },
    Plan.BASIC: {
        "name": "Basic",
        "audits_per_month": 100,
        "is_paid": True,
    },
    Plan.PRO: {
        "name": "Pro",
        "audits_per_month": UNLIMITED,
        "is_paid": True,
    },
    Plan.TEAM: {
        "name": "Team",
        "audits_per_month": UNLIMITED,
        "is_paid": True,
    },
}

PRO_PLANS = frozenset(p for p, cfg in PLAN_CATALOGUE.items() if cfg["is_paid"])

DEFAULT_PAID_PLAN = Plan.PRO


def parse_plan(value: Optional[str]) -> Optional[Plan]:
    """Return the Plan for a string id, or None when unknown."""
    if not value:
        return None
    try:
        return Plan(str(value).strip().lower())
    except ValueError:
        return None


def get_audits_limit(plan: Plan) -> int:
    if plan == Plan.FREE:
        return settings.FREE_AUDITS_PER_MONTH
    return int(PLAN_CATALOGUE[plan]["audits_per_month"])


def is_unlimited(limit: int) -> bool:
    return limit == UNLIMITED


def is_pro_plan(plan: Plan) -> bool:
    return plan in PRO_PLANS


def get_display_name(plan: Plan) -> str:
    return str(PLAN_CATALOGUE[plan]["name"])


def _price_map() -> Dict[Plan, Optional[str]]:
    return {
        Plan.BASIC: settings.STRIPE_PRICE_BASIC,
        Plan.PRO: settings.STRIPE_PRICE_PRO,
        Plan.TEAM: settings.STRIPE_PRICE_TEAM,
    }


def get_price_for_plan(plan: Plan) -> Optional[str]:
    """Map a plan to its configured Stripe price id (None for free/unset)."""
    return _price_map().get(plan)


def get_plan_for_price(price_id: Optional[str]) -> Optional[Plan]:
    """Map a Stripe price id back to a plan."""
    if not price_id:
        return None
    for plan, configured in _price_map().items():
        if configured and configured == price_id:
            return plan
    return None


def format_limit(limit: int) -> Union[int, str]:
    """Wire form of a limit: 'unlimited' instead of -1."""
    return "unlimited" if is_unlimited(limit) else limit
