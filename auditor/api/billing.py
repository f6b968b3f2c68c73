"""
Billing API routes.

Surface:
- POST /api/stripe/webhook: Handle Stripe webhooks (signature-verified)
- POST /api/stripe/checkout: Create checkout session (anonymous allowed)
- POST /api/stripe/billing-portal: Create portal session
- POST /api/subscription/cancel: Cancel at period end
- POST /api/subscription/reactivate: Undo a scheduled cancellation
- POST /api/subscription/sync: Pull reconcile from Stripe
- POST /api/checkout/verify: Confirm a paid checkout from the success page
"""
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool

from auditor.core.auth import Identity, get_current_identity, get_optional_identity
from auditor.features.billing.service import (
    cancel_subscription,
    confirm_checkout,
    get_provider,
    reactivate_subscription,
    start_checkout,
    start_portal,
    subscription_payload,
    sync_subscription,
)
from auditor.features.billing.webhooks import process_webhook
from auditor.features.entitlements.service import summarize


router = APIRouter(prefix="/api", tags=["billing"])


class CheckoutRequest(BaseModel):
    """Request to create checkout session. Redirect URLs are server-owned."""
    plan_id: str = "pro"


class CheckoutResponse(BaseModel):
    session_id: str
    url: str


class PortalResponse(BaseModel):
    url: str


class SubscriptionRequest(BaseModel):
    subscription_id: str


class CheckoutVerifyRequest(BaseModel):
    session_id: str


class WebhookResponse(BaseModel):
    received: bool
    event_id: str
    outcome: str


@router.post("/stripe/webhook", response_model=WebhookResponse)
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="stripe-signature"),
):
    """
    Handle Stripe webhook events.

    The raw body is verified before anything is parsed or stored.

    Returns:
        {"received": true, "event_id": ..., "outcome": processed|duplicate|ignored|stale|unresolvable}

    Errors:
        400 signature_invalid: tampered body / wrong secret
        500 webhook_processing_failed: Stripe will retry
    """
    raw_body = await request.body()
    provider = get_provider()
    outcome = await run_in_threadpool(process_webhook, raw_body, stripe_signature, provider)
    return {"received": True, "event_id": outcome.event_id, "outcome": outcome.outcome}


@router.post("/stripe/checkout", response_model=CheckoutResponse)
def create_checkout(
    body: CheckoutRequest,
    identity: Optional[Identity] = Depends(get_optional_identity),
):
    """
    Create Stripe checkout session.

    Errors:
        400: Invalid plan_id
        401: Invalid bearer token
        503: Billing disabled (STRIPE_SECRET_KEY not set)
    """
    session = start_checkout(
        body.plan_id,
        user_id=identity.user_id if identity else None,
        email=identity.email if identity else None,
    )
    return {"session_id": session.session_id, "url": session.url}


@router.post("/stripe/billing-portal", response_model=PortalResponse)
def create_portal(identity: Identity = Depends(get_current_identity)):
    """
    Create Stripe billing portal session.

    Errors:
        404 no_subscription: user has no Stripe customer (body carries upgrade_url)
    """
    return {"url": start_portal(identity.user_id)}


@router.post("/subscription/cancel")
def cancel(body: SubscriptionRequest, identity: Identity = Depends(get_current_identity)):
    """Schedule cancellation at period end for the caller's own subscription."""
    return subscription_payload(cancel_subscription(identity.user_id, body.subscription_id))


@router.post("/subscription/reactivate")
def reactivate(body: SubscriptionRequest, identity: Identity = Depends(get_current_identity)):
    return subscription_payload(reactivate_subscription(identity.user_id, body.subscription_id))


@router.post("/subscription/sync")
def sync(identity: Identity = Depends(get_current_identity)):
    """Reconcile the caller's entitlement with Stripe. 409 while another sync runs."""
    result = sync_subscription(identity.user_id)
    return {"outcome": result.outcome, "entitlement": summarize(result.entitlement)}


@router.post("/checkout/verify")
def verify_checkout_session(body: CheckoutVerifyRequest, identity: Identity = Depends(get_current_identity)):
    """
    Confirm the caller's paid checkout (success page) ahead of the webhook.

    Errors:
        400 checkout_not_paid: payment not completed
        403 checkout_not_owned: session started for another user
        404 checkout_not_found: unknown session id
    """
    result = confirm_checkout(identity.user_id, body.session_id)
    return {
        "outcome": result.outcome,
        "session_id": result.session_id,
        "entitlement": summarize(result.entitlement),
    }
