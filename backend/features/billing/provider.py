"""
Billing provider protocol.

Defines the interface the billing service needs from a payment provider
(Stripe today). Business logic only sees the normalized types below.
"""
from typing import Protocol, Dict, Any, Iterable, Optional
from dataclasses import dataclass, field
from datetime import datetime


# Event kinds the reconciler acts on
EVENT_KIND_SUCCESS = "success"
EVENT_KIND_REVOCATION = "revocation"
EVENT_KIND_IGNORED = "ignored"
EVENT_KIND_REINSTATEMENT = "reinstatement"

# Why a payment stopped granting access
REVOCATION_REFUND = "refund"
REVOCATION_DISPUTE = "dispute"


@dataclass
class CheckoutSession:
    """A provider-hosted checkout session."""
    session_id: str
    url: str


@dataclass
class PaymentEvent:
    """Verified provider event, normalized for reconciliation."""
    event_id: str
    event_type: str
    kind: str  # success, revocation, reinstatement, ignored
    user_id: Optional[str] = None
    user_reference_source: Optional[str] = None  # client_reference_id | metadata
    payment_reference: Optional[str] = None
    customer_reference: Optional[str] = None
    amount: Optional[int] = None
    currency: Optional[str] = None
    coupon_id: Optional[str] = None
    email: Optional[str] = None
    revocation_reason: Optional[str] = None  # refund | dispute
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class PaymentRecord:
    """A provider-side payment, as seen by backfill and the reconciliation sweep."""
    payment_reference: str
    status: str
    amount: Optional[int]
    currency: Optional[str]
    customer_reference: Optional[str]
    user_id: Optional[str]
    billing_email: Optional[str]
    created_at: Optional[datetime]
    metadata: Dict[str, Any] = field(default_factory=dict)


class BillingProvider(Protocol):
    """
    Protocol for billing providers.

    Implementations must handle:
    - Checkout session creation (one-time payment)
    - Webhook signature verification and parsing
    - Payment lookup for operator backfill and reconciliation
    """

    def create_checkout_session(
        self,
        user_id: str,
        user_email: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
    ) -> CheckoutSession:
        """
        Create a one-time payment checkout session.

        The session must carry user_id in both the primary reference field
        and the metadata so the completion event stays attributable.

        Raises:
            BillingProviderError: If session creation fails or times out
        """
        ...

    def construct_event(self, headers: Dict[str, str], body: bytes) -> PaymentEvent:
        """
        Verify webhook signature against the raw body and parse the event.

        Raises:
            BillingWebhookError: If the signature or payload is invalid
        """
        ...

    def retrieve_payment(self, payment_reference: str) -> PaymentRecord:
        """
        Fetch a single payment.

        Raises:
            BillingProviderError: If the lookup fails
        """
        ...

    def list_succeeded_payments(self, created_after: datetime, limit: int = 100) -> Iterable[PaymentRecord]:
        """
        List succeeded payments created at or after `created_after`.

        Raises:
            BillingProviderError: If the listing fails
        """
        ...


class BillingProviderError(Exception):
    """Base exception for billing provider errors."""
    pass


class BillingWebhookError(BillingProviderError):
    """Exception for webhook verification/parsing errors."""
    pass
