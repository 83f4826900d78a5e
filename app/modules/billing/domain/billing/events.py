"""
Provider-agnostic billing events.

Each provider adapter projects its webhook payload onto a
`NormalizedBillingEvent` so reconciliation is implemented once.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from .billing_shared import Provider


class BillingEventKind(str, Enum):
    CHECKOUT_COMPLETED = "checkout_completed"
    SUBSCRIPTION_CREATED = "subscription_created"
    SUBSCRIPTION_ACTIVATED = "subscription_activated"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_CANCELED = "subscription_canceled"
    SUBSCRIPTION_PAUSED = "subscription_paused"
    SUBSCRIPTION_RESUMED = "subscription_resumed"
    SUBSCRIPTION_PENDING = "subscription_pending"
    SUBSCRIPTION_COMPLETED = "subscription_completed"
    INVOICE_PAYMENT_SUCCEEDED = "invoice_payment_succeeded"
    INVOICE_PAYMENT_FAILED = "invoice_payment_failed"
    INVOICE_FINALIZED = "invoice_finalized"
    CUSTOMER_UPDATED = "customer_updated"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class SubscriptionSnapshot:
    """
    Provider subscription state at event time.

    `None` means the provider did not report the field; reconciliation never
    overwrites stored values with it.
    """

    external_id: str
    status: Optional[str] = None
    customer_id: Optional[str] = None
    user_id: Optional[str] = None
    # Stripe product id / Razorpay plan id, used to resolve the internal plan.
    plan_external_id: Optional[str] = None
    price_id: Optional[str] = None
    amount: Optional[int] = None
    currency: Optional[str] = None
    interval: Optional[str] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    trial_start: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    canceled_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class InvoiceSnapshot:
    external_id: str
    document_type: str = "invoice"
    subscription_id: Optional[str] = None
    customer_id: Optional[str] = None
    customer_email: Optional[str] = None
    number: Optional[str] = None
    amount_paid: Optional[int] = None
    amount_due: Optional[int] = None
    currency: Optional[str] = None
    status: Optional[str] = None
    download_url: Optional[str] = None
    hosted_url: Optional[str] = None
    created: Optional[datetime] = None
    due_date: Optional[datetime] = None
    attempt_count: Optional[int] = None
    next_payment_attempt: Optional[datetime] = None


@dataclass(frozen=True)
class CustomerSnapshot:
    external_id: str
    email: Optional[str] = None
    name: Optional[str] = None


@dataclass(frozen=True)
class CheckoutSnapshot:
    session_id: str
    customer_id: Optional[str] = None
    subscription_id: Optional[str] = None
    user_id: Optional[str] = None
    customer_email: Optional[str] = None


@dataclass(frozen=True)
class PaymentSnapshot:
    external_id: str
    subscription_id: Optional[str] = None
    customer_id: Optional[str] = None
    amount: Optional[int] = None
    currency: Optional[str] = None
    status: Optional[str] = None
    method: Optional[str] = None
    email: Optional[str] = None
    error_code: Optional[str] = None
    error_description: Optional[str] = None


@dataclass(frozen=True)
class NormalizedBillingEvent:
    provider: Provider
    event_id: str
    event_type: str
    kind: BillingEventKind
    created_at: Optional[int] = None
    subscription: Optional[SubscriptionSnapshot] = None
    invoice: Optional[InvoiceSnapshot] = None
    customer: Optional[CustomerSnapshot] = None
    checkout: Optional[CheckoutSnapshot] = None
    payment: Optional[PaymentSnapshot] = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def subscription_external_id(self) -> Optional[str]:
        """External subscription id this event concerns, if any."""
        if self.subscription is not None:
            return self.subscription.external_id
        if self.invoice is not None and self.invoice.subscription_id:
            return self.invoice.subscription_id
        if self.payment is not None and self.payment.subscription_id:
            return self.payment.subscription_id
        if self.checkout is not None and self.checkout.subscription_id:
            return self.checkout.subscription_id
        return None
