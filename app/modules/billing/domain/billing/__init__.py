"""Billing webhook reconciliation."""

from app.modules.billing.domain.billing.billing_shared import (
    BillingCycle,
    Provider,
    SubscriptionStatus,
)
from app.modules.billing.domain.billing.dispatcher import WebhookDispatcher
from app.modules.billing.domain.billing.events import (
    BillingEventKind,
    NormalizedBillingEvent,
)
from app.modules.billing.domain.billing.razorpay_adapter import parse_razorpay_event
from app.modules.billing.domain.billing.reconciler import SubscriptionReconciler
from app.modules.billing.domain.billing.repository import SubscriptionRepository
from app.modules.billing.domain.billing.signature import (
    verify_razorpay_signature,
    verify_stripe_event,
)
from app.modules.billing.domain.billing.stripe_adapter import parse_stripe_event

__all__ = [
    "BillingCycle",
    "BillingEventKind",
    "NormalizedBillingEvent",
    "Provider",
    "SubscriptionReconciler",
    "SubscriptionRepository",
    "SubscriptionStatus",
    "WebhookDispatcher",
    "parse_razorpay_event",
    "parse_stripe_event",
    "verify_razorpay_signature",
    "verify_stripe_event",
]
