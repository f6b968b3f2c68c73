"""
auditor/models/entitlement.py

Entitlement models.

A user's plan and subscription status come from one authoritative record
(`user_entitlements`). Everything the API returns is derived from it.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict


UNLIMITED = -1


class Plan(str, Enum):
    FREE = "free"
    BASIC = "basic"
    PRO = "pro"
    TEAM = "team"


class Status(str, Enum):
    INACTIVE = "inactive"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"
    TRIALING = "trialing"


class EntitlementRecord(BaseModel):
    """Row of `user_entitlements` as stored."""
    model_config = ConfigDict(frozen=True)

    user_id: str
    email: Optional[str] = None
    plan: Plan = Plan.FREE
    status: Status = Status.INACTIVE
    audits_used: int = 0
    period_key: str
    current_period_end: Optional[datetime] = None
    stripe_customer_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None
    cancel_at_period_end: bool = False
    manual_override_plan: Optional[Plan] = None
    manual_override_reason: Optional[str] = None
    manual_override_expires_at: Optional[datetime] = None
    last_event_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Entitlement(BaseModel):
    """
    Resolved view of a user's access.

    audits_limit / audits_remaining use -1 for unlimited.
    """
    model_config = ConfigDict(frozen=True)

    user_id: str
    plan: Plan
    status: Status
    is_pro: bool
    audits_used: int
    audits_limit: int
    audits_remaining: int
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    override_applied: bool = False
    degraded: bool = False


class UsageResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    allowed: bool
    audits_used: int
    audits_limit: int
    audits_remaining: int
    plan: Plan
    is_pro: bool
