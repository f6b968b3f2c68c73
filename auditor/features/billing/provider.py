"""
Billing provider protocol.

Defines the interface for the payment provider (Stripe).
Business logic (webhooks, checkout, sync) depends on this protocol only,
so tests can swap in a fake provider.
"""
from typing import Protocol, Dict, Any, Optional
from dataclasses import dataclass, field
from datetime import datetime

from auditor.core.errors import AppError


@dataclass(frozen=True)
class CheckoutSession:
    session_id: str
    url: str


@dataclass(frozen=True)
class ProviderSubscription:
    """Normalized view of a provider subscription."""
    subscription_id: str
    customer_id: Optional[str]
    status: str  # provider status: active, trialing, past_due, canceled, unpaid, incomplete...
    price_id: Optional[str]
    current_period_end: Optional[datetime]
    cancel_at_period_end: bool
    metadata: Dict[str, Any] = field(default_factory=dict)


class BillingProvider(Protocol):
    """
    Protocol for billing providers.

    Implementations must handle:
    - Checkout and billing portal sessions
    - Subscription retrieval, cancel-at-period-end and reactivation
    - Webhook signature verification
    """

    def create_checkout_session(
        self,
        price_id: str,
        success_url: str,
        cancel_url: str,
        *,
        customer_hint: Optional[Dict[str, Optional[str]]] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> CheckoutSession:
        """
        Create a subscription checkout session.

        Args:
            price_id: Provider price ID
            success_url: Redirect on success
            cancel_url: Redirect on cancel
            customer_hint: Optional {"customer_id", "email", "user_id"}
            metadata: Metadata echoed back on webhook events

        Raises:
            InvalidRequestError, ProviderTransientError
        """
        ...

    def create_billing_portal_session(self, customer_id: str, return_url: str) -> str:
        """Return a billing portal URL for the customer."""
        ...

    def retrieve_checkout_session(self, session_id: str) -> Any:
        """
        Return the checkout session (dict or provider object, read with get_field).

        Raises:
            InvalidRequestError: unknown session id
        """
        ...

    def retrieve_subscription(self, subscription_id: str) -> ProviderSubscription:
        ...

    def cancel_at_period_end(self, subscription_id: str) -> ProviderSubscription:
        ...

    def reactivate(self, subscription_id: str) -> ProviderSubscription:
        ...

    def verify_webhook(self, raw_body: bytes, signature_header: Optional[str]) -> Dict[str, Any]:
        """
        Verify the webhook signature and return the parsed event.

        Raises:
            SignatureInvalidError: bad or missing signature, or unparseable body
        """
        ...


class BillingProviderError(AppError):
    """Base exception for billing provider errors."""
    code = "provider_error"
    status_code = 502

    def __init__(self, message: str, *, provider_code: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.provider_code = provider_code


class SignatureInvalidError(BillingProviderError):
    code = "signature_invalid"
    status_code = 400


class InvalidRequestError(BillingProviderError):
    """Provider rejected the request (unknown ids, bad params). Not retryable."""
    code = "invalid_request"
    status_code = 400


class ProviderTransientError(BillingProviderError):
    """Provider unreachable or failing after retries."""
    code = "provider_unavailable"
    status_code = 503
    retryable = True
