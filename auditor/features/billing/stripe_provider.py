"""
Stripe billing provider implementation.

Implements BillingProvider using the Stripe SDK.

- Bounded HTTP timeout, SDK-level network retries disabled
- Our own bounded retry (exponential backoff) on transient Stripe errors
- InvalidRequestError surfaces immediately (not retried)
- Webhook signature verification with the configured tolerance
"""
import json
import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

import stripe

from auditor.core.config import settings
from auditor.features.billing.provider import (
    BillingProviderError,
    CheckoutSession,
    InvalidRequestError,
    ProviderSubscription,
    ProviderTransientError,
    SignatureInvalidError,
)


logger = logging.getLogger(__name__)

TRANSIENT_ERRORS = (
    stripe.APIConnectionError,
    stripe.RateLimitError,
    stripe.APIError,
)


def get_field(obj: Any, key: str, default: Any = None) -> Any:
    """Read a key from a StripeObject or plain dict."""
    if obj is None:
        return default
    getter = getattr(obj, "get", None)
    value = getter(key, default) if callable(getter) else getattr(obj, key, default)
    return default if value is None else value


def _ts(value: Any) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _first_item(subscription: Any) -> Any:
    items = get_field(get_field(subscription, "items"), "data", [])
    return items[0] if items else None


def to_provider_subscription(subscription: Any) -> ProviderSubscription:
    """Normalize a Stripe subscription object (or its webhook dict form)."""
    item = _first_item(subscription)
    # Newer API versions carry the billing period on the subscription item
    period_end = get_field(subscription, "current_period_end") or get_field(item, "current_period_end")
    customer = get_field(subscription, "customer")
    if not isinstance(customer, str):
        customer = get_field(customer, "id")
    metadata = get_field(subscription, "metadata", {})
    return ProviderSubscription(
        subscription_id=get_field(subscription, "id"),
        customer_id=customer,
        status=get_field(subscription, "status", "incomplete"),
        price_id=get_field(get_field(item, "price"), "id"),
        current_period_end=_ts(period_end),
        cancel_at_period_end=bool(get_field(subscription, "cancel_at_period_end", False)),
        metadata=dict(metadata) if metadata else {},
    )


class StripeProvider:
    """Stripe implementation of BillingProvider protocol."""

    def __init__(
        self,
        secret_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        *,
        timeout_seconds: Optional[float] = None,
        max_attempts: Optional[int] = None,
        backoff_base_seconds: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize Stripe provider.

        Args:
            secret_key: Stripe secret key (defaults to STRIPE_SECRET_KEY)
            webhook_secret: Stripe webhook secret (defaults to STRIPE_WEBHOOK_SECRET)
            sleep: Injectable sleep for backoff (tests pass a recorder)
        """
        self.secret_key = secret_key or settings.STRIPE_SECRET_KEY
        self.webhook_secret = webhook_secret or settings.STRIPE_WEBHOOK_SECRET
        self.timeout_seconds = timeout_seconds or settings.STRIPE_TIMEOUT_SECONDS
        self.max_attempts = max_attempts or settings.STRIPE_MAX_ATTEMPTS
        self.backoff_base_seconds = (
            backoff_base_seconds if backoff_base_seconds is not None else settings.STRIPE_BACKOFF_BASE_SECONDS
        )
        self.sleep = sleep

        if not self.secret_key:
            raise BillingProviderError("STRIPE_SECRET_KEY not configured", code="billing_disabled", status_code=503)

        stripe.api_key = self.secret_key
        stripe.max_network_retries = 0
        stripe.default_http_client = stripe.new_default_http_client(timeout=self.timeout_seconds)

    def _call(self, operation: str, fn: Callable[..., Any], *args, **kwargs) -> Any:
        """Run a Stripe call with bounded retries on transient errors."""
        attempt = 0
        while True:
            attempt += 1
            try:
                return fn(*args, **kwargs)
            except stripe.InvalidRequestError as e:
                logger.warning(
                    "[stripe] invalid request",
                    extra={"operation": operation, "provider_code": getattr(e, "code", None)},
                )
                raise InvalidRequestError(
                    f"Stripe rejected {operation}: {getattr(e, 'user_message', None) or 'invalid request'}",
                    provider_code=getattr(e, "code", None),
                ) from e
            except TRANSIENT_ERRORS as e:
                if attempt >= self.max_attempts:
                    status_code = 502 if isinstance(e, stripe.APIError) else 503
                    logger.error(
                        "[stripe] transient error, retries exhausted",
                        extra={"operation": operation, "attempts": attempt, "provider_code": getattr(e, "code", None)},
                    )
                    raise ProviderTransientError(
                        f"Payment provider unavailable during {operation}",
                        status_code=status_code,
                        provider_code=getattr(e, "code", None),
                    ) from e
                delay = self.backoff_base_seconds * (2 ** (attempt - 1))
                logger.warning(
                    "[stripe] transient error, retrying",
                    extra={"operation": operation, "attempt": attempt, "delay_seconds": delay},
                )
                self.sleep(delay)
            except stripe.StripeError as e:
                logger.error(
                    "[stripe] provider error",
                    extra={"operation": operation, "provider_code": getattr(e, "code", None)},
                )
                raise BillingProviderError(
                    f"Payment provider error during {operation}",
                    provider_code=getattr(e, "code", None),
                ) from e

    def create_checkout_session(
        self,
        price_id: str,
        success_url: str,
        cancel_url: str,
        *,
        customer_hint: Optional[Dict[str, Optional[str]]] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> CheckoutSession:
        """Create Stripe checkout session (subscription mode)."""
        hint = customer_hint or {}
        params: Dict[str, Any] = {
            "mode": "subscription",
            "payment_method_types": ["card"],
            "line_items": [{"price": price_id, "quantity": 1}],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "allow_promotion_codes": True,
            "metadata": metadata or {},
            "subscription_data": {"metadata": metadata or {}},
        }
        if hint.get("user_id"):
            params["client_reference_id"] = hint["user_id"]
        if hint.get("customer_id"):
            params["customer"] = hint["customer_id"]
        elif hint.get("email"):
            params["customer_email"] = hint["email"]

        session = self._call("checkout.create", stripe.checkout.Session.create, **params)
        return CheckoutSession(session_id=get_field(session, "id"), url=get_field(session, "url"))

    def create_billing_portal_session(self, customer_id: str, return_url: str) -> str:
        """Create Stripe billing portal session."""
        session = self._call(
            "billing_portal.create",
            stripe.billing_portal.Session.create,
            customer=customer_id,
            return_url=return_url,
        )
        return get_field(session, "url")

    def retrieve_checkout_session(self, session_id: str) -> Any:
        return self._call("checkout.retrieve", stripe.checkout.Session.retrieve, session_id)

    def retrieve_subscription(self, subscription_id: str) -> ProviderSubscription:
        subscription = self._call("subscription.retrieve", stripe.Subscription.retrieve, subscription_id)
        return to_provider_subscription(subscription)

    def cancel_at_period_end(self, subscription_id: str) -> ProviderSubscription:
        subscription = self._call(
            "subscription.cancel",
            stripe.Subscription.modify,
            subscription_id,
            cancel_at_period_end=True,
        )
        return to_provider_subscription(subscription)

    def reactivate(self, subscription_id: str) -> ProviderSubscription:
        subscription = self._call(
            "subscription.reactivate",
            stripe.Subscription.modify,
            subscription_id,
            cancel_at_period_end=False,
        )
        return to_provider_subscription(subscription)

    def verify_webhook(self, raw_body: bytes, signature_header: Optional[str]) -> Dict[str, Any]:
        """Verify Stripe webhook signature and parse the event body."""
        if not self.webhook_secret:
            raise BillingProviderError("STRIPE_WEBHOOK_SECRET not configured", code="billing_disabled", status_code=503)
        if not signature_header:
            raise SignatureInvalidError("Missing stripe-signature header")

        try:
            payload = raw_body.decode("utf-8")
            stripe.WebhookSignature.verify_header(
                payload,
                signature_header,
                self.webhook_secret,
                settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS,
            )
            event = json.loads(payload)
        except stripe.SignatureVerificationError as e:
            raise SignatureInvalidError("Invalid webhook signature") from e
        except (UnicodeDecodeError, ValueError) as e:
            raise SignatureInvalidError("Invalid webhook payload") from e

        if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
            raise SignatureInvalidError("Invalid webhook payload")
        return event
