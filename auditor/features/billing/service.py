"""
Billing service orchestrator.

Coordinates:
- Checkout and billing portal sessions
- Cancel-at-period-end / reactivation of the caller's own subscription
- On-demand subscription sync (pull reconcile)
- Success-page checkout confirmation

All Stripe-specific code is in stripe_provider.py. Entitlement state only
changes through webhooks.py; these calls never write it directly.
"""
import logging
from typing import Any, Dict, Optional

from auditor.core.config import settings
from auditor.core.errors import BillingDisabledError, NotFoundError, PermissionError, ValidationError
from auditor.features.billing.provider import (
    BillingProvider,
    BillingProviderError,
    CheckoutSession,
    ProviderSubscription,
)
from auditor.features.billing.stripe_provider import StripeProvider
from auditor.features.billing.webhooks import CheckoutVerification, SyncResult, reconcile_user, verify_checkout
from auditor.features.entitlements import store
from auditor.features.plans.service import get_price_for_plan, parse_plan
from auditor.models.entitlement import Plan


logger = logging.getLogger(__name__)

_provider_override: Optional[BillingProvider] = None


def set_provider_for_tests(provider: Optional[BillingProvider]) -> None:
    """Set or clear a fake provider (tests, no network)."""
    global _provider_override
    _provider_override = provider


def billing_enabled() -> bool:
    """Check if billing is enabled (Stripe configured)."""
    return _provider_override is not None or bool(settings.STRIPE_SECRET_KEY)


def get_provider() -> BillingProvider:
    """Get the billing provider or raise BillingDisabledError."""
    if _provider_override is not None:
        return _provider_override
    if not billing_enabled():
        raise BillingDisabledError("Billing is not configured")
    try:
        return StripeProvider()
    except BillingProviderError as e:
        raise BillingDisabledError(e.message) from e


def _app_url(path: str) -> str:
    return f"{settings.PUBLIC_BASE_URL.rstrip('/')}{path}"


def start_checkout(
    plan_id: str,
    *,
    user_id: Optional[str] = None,
    email: Optional[str] = None,
) -> CheckoutSession:
    """
    Start a subscription checkout session.

    Anonymous checkout is allowed; Stripe creates the customer and the webhook
    links it through metadata / client_reference_id when a user is known.

    Raises:
        ValidationError: unknown plan, free plan, or no price configured
        BillingDisabledError: Stripe not configured
    """
    plan = parse_plan(plan_id)
    if plan is None or plan == Plan.FREE:
        raise ValidationError(f"Invalid plan for checkout: {plan_id}")

    price_id = get_price_for_plan(plan)
    if not price_id:
        raise ValidationError(f"No Stripe price configured for plan: {plan.value}")

    provider = get_provider()

    hint: Dict[str, Optional[str]] = {"email": email}
    metadata = {"plan_id": plan.value}
    if user_id:
        record = store.get_or_create(user_id, email=email)
        hint["user_id"] = user_id
        hint["customer_id"] = record.stripe_customer_id
        metadata["user_id"] = user_id

    session = provider.create_checkout_session(
        price_id,
        _app_url("/dashboard?upgrade=success&session_id={CHECKOUT_SESSION_ID}"),
        _app_url("/dashboard?upgrade=cancelled"),
        customer_hint=hint,
        metadata=metadata,
    )
    logger.info(
        "[billing] checkout session created",
        extra={"user_id": user_id, "plan": plan.value, "session_id": session.session_id},
    )
    return session


def start_portal(user_id: str, return_path: str = "/dashboard") -> str:
    """
    Start billing portal session for customer self-service.

    Raises:
        NotFoundError(no_subscription): user never completed checkout
    """
    record = store.get_or_create(user_id)
    if not record.stripe_customer_id:
        raise NotFoundError(
            "No subscription found. Upgrade to manage billing.",
            code="no_subscription",
            extra={"upgrade_url": settings.UPGRADE_PATH},
        )
    provider = get_provider()
    return provider.create_billing_portal_session(record.stripe_customer_id, _app_url(return_path))


def _owned_subscription_id(user_id: str, subscription_id: str) -> str:
    record = store.get_or_create(user_id)
    if not subscription_id or record.stripe_subscription_id != subscription_id:
        logger.warning(
            "[billing] subscription ownership mismatch",
            extra={"user_id": user_id, "subscription_id": subscription_id},
        )
        raise PermissionError("Subscription does not belong to this user")
    return subscription_id


def cancel_subscription(user_id: str, subscription_id: str) -> ProviderSubscription:
    """Schedule cancellation at period end. The store follows via webhook."""
    owned = _owned_subscription_id(user_id, subscription_id)
    subscription = get_provider().cancel_at_period_end(owned)
    logger.info("[billing] cancel at period end requested", extra={"user_id": user_id, "subscription_id": owned})
    return subscription


def reactivate_subscription(user_id: str, subscription_id: str) -> ProviderSubscription:
    owned = _owned_subscription_id(user_id, subscription_id)
    subscription = get_provider().reactivate(owned)
    logger.info("[billing] reactivation requested", extra={"user_id": user_id, "subscription_id": owned})
    return subscription


def sync_subscription(user_id: str) -> SyncResult:
    """On-demand pull reconcile for the caller (409 while another sync runs)."""
    return reconcile_user(user_id, get_provider())


def confirm_checkout(user_id: str, session_id: str) -> CheckoutVerification:
    """Apply a paid checkout the caller owns without waiting for the webhook."""
    if not session_id:
        raise ValidationError("session_id is required")
    return verify_checkout(user_id, session_id, get_provider())


def subscription_payload(subscription: ProviderSubscription) -> Dict[str, Any]:
    period_end = subscription.current_period_end
    return {
        "subscription_id": subscription.subscription_id,
        "status": subscription.status,
        "cancel_at_period_end": subscription.cancel_at_period_end,
        "current_period_end": period_end.isoformat() if period_end else None,
    }
