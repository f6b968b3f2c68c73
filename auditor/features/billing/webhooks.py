"""
Stripe webhook processing.

1. Verify signature (nothing stored on failure)
2. Claim the event id in billing_events before any Stripe call (duplicates
   are acknowledged, not applied; a claim abandoned past CLAIM_TTL is retaken)
3. Checkout events fetch their subscription; one Stripe refuses is logged and
   the checkout is applied without a period end
4. Resolve the user: metadata -> client_reference_id -> customer -> subscription
5. Discard events older than the record's last_event_at
6. Apply update + snapshot + ledger row in one transaction
7. On failure mark the ledger row failed so a redelivery can re-apply it

The success page can also confirm a checkout directly (verify_checkout) when
the webhook has not landed yet.
"""
import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from uuid import uuid4

from sqlalchemy import and_, or_, select, update
from sqlalchemy.orm import Session

from auditor.core.database import billing_events
from auditor.core.config import settings
from auditor.core.errors import AppError, ConflictError, NotFoundError, PermissionError, ValidationError
from auditor.core.logging import log_event
from auditor.features.billing.provider import BillingProvider, InvalidRequestError, ProviderSubscription
from auditor.features.billing.stripe_provider import get_field, to_provider_subscription
from auditor.features.entitlements import store
from auditor.features.entitlements.service import evaluate, mirror_snapshot
from auditor.features.plans.service import (
    DEFAULT_PAID_PLAN,
    get_plan_for_price,
    is_pro_plan,
    parse_plan,
)
from auditor.models.entitlement import Entitlement, EntitlementRecord, Plan, Status


logger = logging.getLogger(__name__)

CHECKOUT_COMPLETED = "checkout.session.completed"
SUBSCRIPTION_CREATED = "customer.subscription.created"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"
PAYMENT_FAILED = "invoice.payment_failed"
PAYMENT_SUCCEEDED = "invoice.payment_succeeded"

HANDLED_EVENTS = frozenset({
    CHECKOUT_COMPLETED,
    SUBSCRIPTION_CREATED,
    SUBSCRIPTION_UPDATED,
    SUBSCRIPTION_DELETED,
    PAYMENT_FAILED,
    PAYMENT_SUCCEEDED,
})

# Ledger statuses
PROCESSED = "processed"
IGNORED = "ignored"
STALE = "stale"
UNRESOLVABLE = "unresolvable"
FAILED = "failed"
DUPLICATE = "duplicate"  # outcome only, never stored
_IN_FLIGHT = "processing"

# A claim older than this belongs to a delivery that died mid-flight
CLAIM_TTL = timedelta(minutes=5)

STRIPE_STATUS_MAP = {
    "active": Status.ACTIVE,
    "trialing": Status.TRIALING,
    "past_due": Status.PAST_DUE,
    "unpaid": Status.PAST_DUE,
    "canceled": Status.CANCELLED,
    "incomplete": Status.INACTIVE,
    "incomplete_expired": Status.INACTIVE,
    "paused": Status.INACTIVE,
}


@dataclass(frozen=True)
class WebhookOutcome:
    event_id: str
    event_type: str
    outcome: str
    user_id: Optional[str] = None


class WebhookProcessingError(AppError):
    """Applying a verified event failed; Stripe should redeliver."""
    code = "webhook_processing_failed"
    status_code = 500
    retryable = True


def map_stripe_status(status: Optional[str]) -> Status:
    return STRIPE_STATUS_MAP.get((status or "").lower(), Status.INACTIVE)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _event_time(event: Dict[str, Any]) -> datetime:
    created = event.get("created")
    if created:
        return datetime.fromtimestamp(int(created), tz=timezone.utc)
    return _utcnow()


def _metadata_user_id(obj: Any) -> Optional[str]:
    sources = [
        get_field(obj, "metadata", {}),
        get_field(get_field(obj, "subscription_details"), "metadata", {}),
        get_field(get_field(get_field(obj, "parent"), "subscription_details"), "metadata", {}),
    ]
    for metadata in sources:
        user_id = get_field(metadata, "user_id") or get_field(metadata, "userId")
        if user_id:
            return str(user_id)
    return None


def _subscription_id_for(event_type: str, obj: Any) -> Optional[str]:
    if event_type.startswith("customer.subscription."):
        return get_field(obj, "id")
    subscription = get_field(obj, "subscription")
    if subscription is None:
        subscription = get_field(get_field(get_field(obj, "parent"), "subscription_details"), "subscription")
    if subscription is not None and not isinstance(subscription, str):
        subscription = get_field(subscription, "id")
    return subscription


def _customer_id_for(obj: Any) -> Optional[str]:
    customer = get_field(obj, "customer")
    if customer is not None and not isinstance(customer, str):
        customer = get_field(customer, "id")
    return customer


def resolve_user_id(session: Session, event_type: str, obj: Any) -> Optional[str]:
    """Identify the user an event belongs to, or None when nothing matches."""
    user_id = _metadata_user_id(obj)
    if user_id:
        return user_id

    reference = get_field(obj, "client_reference_id")
    if reference:
        return str(reference)

    customer_id = _customer_id_for(obj)
    if customer_id:
        try:
            return store.query_by_customer_id(customer_id, session=session).user_id
        except NotFoundError:
            pass

    subscription_id = _subscription_id_for(event_type, obj)
    if subscription_id:
        try:
            return store.query_by_subscription_id(subscription_id, session=session).user_id
        except NotFoundError:
            pass

    return None


# ----------------------------------------------------------------------------
# Ledger
# ----------------------------------------------------------------------------

def _claim(session: Session, event_id: str, event_type: str, payload_hash: str, now: datetime) -> bool:
    """Insert the ledger row, or reclaim a failed or abandoned one. False means already handled."""
    stmt = store.dialect_insert(session, billing_events).values(
        stripe_event_id=event_id,
        event_type=event_type,
        payload_hash=payload_hash,
        status=_IN_FLIGHT,
        created_at=now,
        claimed_at=now,
    ).on_conflict_do_nothing(index_elements=["stripe_event_id"])
    if session.execute(stmt).rowcount == 1:
        return True
    abandoned = and_(billing_events.c.status == _IN_FLIGHT, billing_events.c.claimed_at < now - CLAIM_TTL)
    reclaimed = session.execute(
        update(billing_events)
        .where(billing_events.c.stripe_event_id == event_id)
        .where(or_(billing_events.c.status == FAILED, abandoned))
        .values(status=_IN_FLIGHT, payload_hash=payload_hash, error=None, claimed_at=now)
    ).rowcount
    return reclaimed == 1


def _finish(session: Session, event_id: str, status: str, user_id: Optional[str], now: datetime) -> None:
    session.execute(
        update(billing_events)
        .where(billing_events.c.stripe_event_id == event_id)
        .values(status=status, user_id=user_id, processed_at=now, error=None)
    )


def _record_failure(event_id: str, event_type: str, payload_hash: str, error: str, now: datetime) -> None:
    failed = {"status": FAILED, "error": error[:1000], "processed_at": now}
    with store.transaction() as session:
        stmt = store.dialect_insert(session, billing_events).values(
            stripe_event_id=event_id,
            event_type=event_type,
            payload_hash=payload_hash,
            created_at=now,
            **failed,
        )
        session.execute(stmt.on_conflict_do_update(index_elements=["stripe_event_id"], set_=failed))


def list_events(
    status: Optional[str] = None,
    user_id: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> List[Dict[str, Any]]:
    with store.transaction() as session:
        query = select(billing_events)
        if status:
            query = query.where(billing_events.c.status == status)
        if user_id:
            query = query.where(billing_events.c.user_id == user_id)
        rows = session.execute(
            query.order_by(billing_events.c.id.desc()).limit(limit).offset(offset)
        ).fetchall()
    return [
        {
            "stripe_event_id": r.stripe_event_id,
            "event_type": r.event_type,
            "user_id": r.user_id,
            "status": r.status,
            "error": r.error,
            "payload_hash": r.payload_hash,
            "created_at": store.as_utc(r.created_at),
            "processed_at": store.as_utc(r.processed_at),
        }
        for r in rows
    ]


def get_event_status(event_id: str) -> Optional[str]:
    with store.transaction() as session:
        return session.execute(
            select(billing_events.c.status).where(billing_events.c.stripe_event_id == event_id)
        ).scalar_one_or_none()


# ----------------------------------------------------------------------------
# Effects
# ----------------------------------------------------------------------------

def _paid_plan(metadata: Any, price_id: Optional[str], record: EntitlementRecord) -> Plan:
    plan = parse_plan(get_field(metadata, "plan_id")) or parse_plan(get_field(metadata, "planId")) or get_plan_for_price(price_id)
    if plan is not None and plan != Plan.FREE:
        return plan
    if is_pro_plan(record.plan):
        return record.plan
    return DEFAULT_PAID_PLAN


def subscription_changes(record: EntitlementRecord, subscription: ProviderSubscription) -> Dict[str, Any]:
    """Record changes for a subscription snapshot (created/updated or reconcile)."""
    status = map_stripe_status(subscription.status)
    if status in (Status.ACTIVE, Status.TRIALING):
        plan = _paid_plan(subscription.metadata, subscription.price_id, record)
    elif status == Status.PAST_DUE:
        plan = record.plan  # grace: keep plan, access follows status
    else:
        plan = Plan.FREE

    changes: Dict[str, Any] = {
        "status": status,
        "plan": plan,
        "current_period_end": subscription.current_period_end,
        "cancel_at_period_end": subscription.cancel_at_period_end,
        "stripe_subscription_id": subscription.subscription_id,
    }
    if subscription.customer_id and not record.stripe_customer_id:
        changes["stripe_customer_id"] = subscription.customer_id
    return changes


def _checkout_changes(
    record: EntitlementRecord,
    obj: Any,
    subscription: Optional[ProviderSubscription],
    now: datetime,
) -> Dict[str, Any]:
    price_id = subscription.price_id if subscription else None
    changes: Dict[str, Any] = {
        "plan": _paid_plan(get_field(obj, "metadata", {}), price_id, record),
        "status": Status.ACTIVE,
        "audits_used": 0,
        "period_key": store.current_period_key(now),
        "stripe_subscription_id": _subscription_id_for(CHECKOUT_COMPLETED, obj),
    }
    customer_id = _customer_id_for(obj)
    if customer_id:
        changes["stripe_customer_id"] = customer_id
    if subscription is not None:
        changes["current_period_end"] = subscription.current_period_end
        changes["cancel_at_period_end"] = subscription.cancel_at_period_end
    email = get_field(get_field(obj, "customer_details"), "email") or get_field(obj, "customer_email")
    if email and not record.email:
        changes["email"] = email
    return changes


def deleted_changes() -> Dict[str, Any]:
    """The subscription is gone: back to free, keeping the customer id."""
    return {
        "status": Status.CANCELLED,
        "plan": Plan.FREE,
        "current_period_end": None,
        "cancel_at_period_end": False,
        "stripe_subscription_id": None,
    }


def _invoice_period_end(obj: Any) -> Optional[datetime]:
    lines = get_field(get_field(obj, "lines"), "data", [])
    if not lines:
        return None
    end = get_field(get_field(lines[0], "period"), "end")
    return datetime.fromtimestamp(int(end), tz=timezone.utc) if end else None


def _changes_for(
    event_type: str,
    obj: Any,
    record: EntitlementRecord,
    subscription: Optional[ProviderSubscription],
    now: datetime,
) -> Optional[Dict[str, Any]]:
    """Record changes for an event, or None when the event has no effect."""
    if event_type == CHECKOUT_COMPLETED:
        return _checkout_changes(record, obj, subscription, now)

    if event_type in (SUBSCRIPTION_CREATED, SUBSCRIPTION_UPDATED):
        return subscription_changes(record, to_provider_subscription(obj))

    if event_type == SUBSCRIPTION_DELETED:
        return deleted_changes()

    if event_type == PAYMENT_FAILED:
        return {"status": Status.PAST_DUE}

    if event_type == PAYMENT_SUCCEEDED:
        if get_field(obj, "billing_reason") != "subscription_cycle":
            return None
        changes: Dict[str, Any] = {
            "status": Status.ACTIVE,
            "audits_used": 0,
            "period_key": store.current_period_key(now),
        }
        period_end = _invoice_period_end(obj)
        if period_end:
            changes["current_period_end"] = period_end
        return changes

    return None


def _is_superseded(record: EntitlementRecord, changes: Dict[str, Any], event_at: datetime) -> bool:
    if not record.last_event_at:
        return False
    if event_at < record.last_event_at:
        return True
    # Stripe stamps checkout and subscription.created in the same second; an
    # incomplete snapshot must not undo a paid checkout at that instant.
    return (
        event_at == record.last_event_at
        and record.status == Status.ACTIVE
        and changes.get("status") == Status.INACTIVE
    )


def apply_changes(
    session: Session,
    user_id: str,
    changes: Dict[str, Any],
    event_at: datetime,
    now: datetime,
) -> str:
    """Apply changes unless a newer event already landed. Returns the ledger status."""
    record = store.get_or_create(user_id, session=session)
    if _is_superseded(record, changes, event_at):
        return STALE
    updated = store.upsert(user_id, {**changes, "last_event_at": event_at}, session=session, now=now)
    mirror_snapshot(session, updated, now)
    return PROCESSED


def fetch_subscription(
    provider: BillingProvider,
    subscription_id: Optional[str],
    user_id: Optional[str] = None,
    event_id: Optional[str] = None,
) -> Optional[ProviderSubscription]:
    """
    Retrieve a subscription for checkout enrichment.

    A subscription Stripe refuses to return (deleted, wrong mode) is logged and
    treated as absent; transient provider errors propagate.
    """
    if not subscription_id:
        return None
    try:
        return provider.retrieve_subscription(subscription_id)
    except InvalidRequestError as exc:
        log_event(
            "warning",
            "billing.checkout.subscription_unavailable",
            user_id=user_id,
            event_id=event_id,
            error_code=exc.code,
            extra={"subscription_id": subscription_id, "provider_code": exc.provider_code},
        )
        return None


def process_webhook(
    raw_body: bytes,
    signature_header: Optional[str],
    provider: BillingProvider,
    now: Optional[datetime] = None,
) -> WebhookOutcome:
    """
    Verify and apply a Stripe webhook.

    The ledger row is claimed before any Stripe call so duplicate deliveries
    never reach the provider. Checkout events fetch their subscription between
    the claim and the apply transaction.

    Raises:
        SignatureInvalidError: bad signature or payload (nothing stored)
        WebhookProcessingError: applying failed; ledger row marked failed
    """
    event = provider.verify_webhook(raw_body, signature_header)
    ts = now or _utcnow()
    event_id = str(event["id"])
    event_type = str(event["type"])
    event_at = _event_time(event)
    obj = get_field(event.get("data"), "object", {})
    payload_hash = hashlib.sha256(raw_body).hexdigest()

    try:
        with store.transaction() as session:
            if not _claim(session, event_id, event_type, payload_hash, ts):
                status = DUPLICATE
            elif event_type not in HANDLED_EVENTS:
                status = IGNORED
                _finish(session, event_id, status, None, ts)
            else:
                status = _IN_FLIGHT

        user_id = None
        if status == _IN_FLIGHT:
            subscription = None
            if event_type == CHECKOUT_COMPLETED:
                subscription = fetch_subscription(
                    provider, _subscription_id_for(event_type, obj), _metadata_user_id(obj), event_id
                )
            with store.transaction() as session:
                user_id = resolve_user_id(session, event_type, obj)
                if user_id is None:
                    status = UNRESOLVABLE
                else:
                    record = store.get_or_create(user_id, session=session)
                    changes = _changes_for(event_type, obj, record, subscription, ts)
                    status = IGNORED if changes is None else apply_changes(session, user_id, changes, event_at, ts)
                _finish(session, event_id, status, user_id, ts)
    except AppError as exc:
        _fail(event_id, event_type, payload_hash, exc, ts)
        raise WebhookProcessingError(
            "Webhook processing failed",
            extra={"event_id": event_id, "cause": exc.code},
        ) from exc
    except Exception as exc:
        _fail(event_id, event_type, payload_hash, exc, ts)
        raise WebhookProcessingError("Webhook processing failed", extra={"event_id": event_id}) from exc

    level = "error" if status == UNRESOLVABLE else "info"
    log_event(
        level,
        f"billing.webhook.{status}",
        user_id=user_id,
        event_id=event_id,
        event_type=event_type,
    )
    return WebhookOutcome(event_id=event_id, event_type=event_type, outcome=status, user_id=user_id)


def _fail(event_id: str, event_type: str, payload_hash: str, exc: Exception, now: datetime) -> None:
    log_event(
        "error",
        "billing.webhook.failed",
        event_id=event_id,
        event_type=event_type,
        error_code=getattr(exc, "code", type(exc).__name__),
        extra={"error": exc},
    )
    try:
        _record_failure(event_id, event_type, payload_hash, f"{type(exc).__name__}: {exc}", now)
    except AppError:
        logger.error("[webhook] could not record failure", extra={"event_id": event_id})


# ----------------------------------------------------------------------------
# Reconcile (pull) path
# ----------------------------------------------------------------------------

@dataclass(frozen=True)
class SyncResult:
    user_id: str
    outcome: str  # processed | stale | no_subscription
    entitlement: Entitlement


def sync_lease_key(user_id: str) -> str:
    return f"subscription-sync:{user_id}"


def reconcile_user(
    user_id: str,
    provider: BillingProvider,
    now: Optional[datetime] = None,
    owner: Optional[str] = None,
) -> SyncResult:
    """
    Pull the live Stripe subscription and apply it like a subscription.updated
    event stamped with the retrieval time.

    A subscription Stripe no longer knows (resource_missing) is applied as a
    deletion.

    Raises:
        ConflictError: another sync for this user holds the lease
    """
    ts = now or _utcnow()
    lease_key = sync_lease_key(user_id)
    lease_owner = owner or uuid4().hex
    if not store.acquire_lease(lease_key, lease_owner, settings.SYNC_LEASE_TTL_SECONDS, now=ts):
        raise ConflictError("A subscription sync is already in progress", code="sync_in_progress")

    try:
        record = store.get_or_create(user_id)
        if not record.stripe_subscription_id:
            return SyncResult(user_id=user_id, outcome="no_subscription", entitlement=evaluate(record, ts))

        subscription_id = record.stripe_subscription_id
        try:
            subscription = provider.retrieve_subscription(subscription_id)
        except InvalidRequestError as exc:
            if exc.provider_code != "resource_missing":
                raise
            subscription = None
        observed_at = _utcnow() if now is None else ts

        with store.transaction() as session:
            current = store.get(user_id, session=session)
            if subscription is None:
                changes = deleted_changes()
            else:
                changes = subscription_changes(current, subscription)
            outcome = apply_changes(session, user_id, changes, observed_at, ts)

        log_event(
            "info",
            f"billing.sync.{outcome}",
            user_id=user_id,
            extra={
                "subscription_id": subscription_id,
                "stripe_status": subscription.status if subscription else "deleted",
            },
        )
        return SyncResult(user_id=user_id, outcome=outcome, entitlement=evaluate(store.get(user_id), ts))
    finally:
        store.release_lease(lease_key, lease_owner)


# ----------------------------------------------------------------------------
# Checkout confirmation (success page)
# ----------------------------------------------------------------------------

PAID_CHECKOUT_STATUSES = frozenset({"paid", "no_payment_required"})


@dataclass(frozen=True)
class CheckoutVerification:
    user_id: str
    session_id: str
    outcome: str  # processed | stale | already_active
    entitlement: Entitlement


def checkout_owner(session_obj: Any) -> Optional[str]:
    """The user a checkout session was started for (metadata, then client_reference_id)."""
    user_id = _metadata_user_id(session_obj)
    if user_id:
        return user_id
    reference = get_field(session_obj, "client_reference_id")
    return str(reference) if reference else None


def verify_checkout(
    user_id: str,
    session_id: str,
    provider: BillingProvider,
    now: Optional[datetime] = None,
) -> CheckoutVerification:
    """
    Confirm a checkout from the success page and apply it like the
    checkout.session.completed webhook would, stamped with the retrieval time.

    Re-verifying a session already reflected in the record changes nothing, and
    a subscription that has since lapsed is applied as its current state.

    Raises:
        NotFoundError(checkout_not_found): Stripe does not know the session
        PermissionError(checkout_not_owned): the session belongs to someone else
        ValidationError(checkout_not_paid): payment has not completed
    """
    ts = now or _utcnow()
    try:
        session_obj = provider.retrieve_checkout_session(session_id)
    except InvalidRequestError as exc:
        raise NotFoundError("Checkout session not found", code="checkout_not_found") from exc

    if checkout_owner(session_obj) != user_id:
        log_event(
            "warning",
            "billing.checkout.verify_mismatch",
            user_id=user_id,
            error_code="checkout_not_owned",
            extra={"session_id": session_id},
        )
        raise PermissionError("Checkout session does not belong to this user", code="checkout_not_owned")

    paid = get_field(session_obj, "payment_status") in PAID_CHECKOUT_STATUSES
    if not paid or get_field(session_obj, "status") not in (None, "complete"):
        raise ValidationError(
            "Checkout has not been paid",
            code="checkout_not_paid",
            extra={"payment_status": get_field(session_obj, "payment_status")},
        )

    subscription_id = _subscription_id_for(CHECKOUT_COMPLETED, session_obj)
    record = store.get_or_create(user_id)
    if subscription_id and record.stripe_subscription_id == subscription_id and evaluate(record, ts).is_pro:
        return CheckoutVerification(
            user_id=user_id,
            session_id=session_id,
            outcome="already_active",
            entitlement=evaluate(record, ts),
        )

    subscription = fetch_subscription(provider, subscription_id, user_id)
    observed_at = _utcnow() if now is None else ts

    with store.transaction() as session:
        current = store.get_or_create(user_id, session=session)
        if subscription is not None and map_stripe_status(subscription.status) not in (Status.ACTIVE, Status.TRIALING):
            changes = subscription_changes(current, subscription)
        else:
            changes = _checkout_changes(current, session_obj, subscription, ts)
        outcome = apply_changes(session, user_id, changes, observed_at, ts)

    log_event(
        "info",
        f"billing.checkout.verify_{outcome}",
        user_id=user_id,
        extra={"session_id": session_id, "subscription_id": subscription_id},
    )
    return CheckoutVerification(
        user_id=user_id,
        session_id=session_id,
        outcome=outcome,
        entitlement=evaluate(store.get(user_id), ts),
    )
