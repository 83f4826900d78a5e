"""Projects verified Stripe events onto `NormalizedBillingEvent`."""

from __future__ import annotations

from typing import Any, Optional

from app.shared.core.exceptions import MalformedWebhookError

from .billing_shared import Provider, SubscriptionStatus, epoch_to_datetime, logger
from .events import (
    BillingEventKind,
    CheckoutSnapshot,
    CustomerSnapshot,
    InvoiceSnapshot,
    NormalizedBillingEvent,
    SubscriptionSnapshot,
)

STRIPE_EVENT_KINDS: dict[str, BillingEventKind] = {
    "checkout.session.completed": BillingEventKind.CHECKOUT_COMPLETED,
    "customer.subscription.created": BillingEventKind.SUBSCRIPTION_CREATED,
    "customer.subscription.updated": BillingEventKind.SUBSCRIPTION_UPDATED,
    "customer.subscription.deleted": BillingEventKind.SUBSCRIPTION_CANCELED,
    "customer.subscription.paused": BillingEventKind.SUBSCRIPTION_PAUSED,
    "customer.subscription.resumed": BillingEventKind.SUBSCRIPTION_RESUMED,
    "invoice.payment_succeeded": BillingEventKind.INVOICE_PAYMENT_SUCCEEDED,
    "invoice.payment_failed": BillingEventKind.INVOICE_PAYMENT_FAILED,
    "invoice.finalized": BillingEventKind.INVOICE_FINALIZED,
    "customer.updated": BillingEventKind.CUSTOMER_UPDATED,
}

# Stripe-only statuses folded onto the internal set.
STRIPE_STATUS_MAP: dict[str, SubscriptionStatus] = {
    "incomplete": SubscriptionStatus.PENDING,
    "incomplete_expired": SubscriptionStatus.CANCELED,
    "unpaid": SubscriptionStatus.PAST_DUE,
}

_SUBSCRIPTION_KINDS = {
    BillingEventKind.SUBSCRIPTION_CREATED,
    BillingEventKind.SUBSCRIPTION_UPDATED,
    BillingEventKind.SUBSCRIPTION_CANCELED,
    BillingEventKind.SUBSCRIPTION_PAUSED,
    BillingEventKind.SUBSCRIPTION_RESUMED,
}
_INVOICE_KINDS = {
    BillingEventKind.INVOICE_PAYMENT_SUCCEEDED,
    BillingEventKind.INVOICE_PAYMENT_FAILED,
    BillingEventKind.INVOICE_FINALIZED,
}


def map_stripe_status(status: Optional[str]) -> Optional[str]:
    if not status:
        return None
    if status in STRIPE_STATUS_MAP:
        return STRIPE_STATUS_MAP[status].value
    try:
        return SubscriptionStatus(status).value
    except ValueError:
        logger.warning("stripe_unknown_subscription_status", status=status)
        return None


def _id_of(value: Any) -> Optional[str]:
    """Stripe references are either an id string or an expanded object."""
    if isinstance(value, str):
        return value or None
    if isinstance(value, dict):
        ref = value.get("id")
        return str(ref) if ref else None
    return None


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _user_id_from_metadata(metadata: dict[str, Any]) -> Optional[str]:
    user_id = metadata.get("userId") or metadata.get("user_id")
    return str(user_id) if user_id else None


def _first_item(obj: dict[str, Any]) -> dict[str, Any]:
    items = _as_dict(obj.get("items")).get("data") or []
    if items and isinstance(items[0], dict):
        return items[0]
    return {}


def _subscription_snapshot(obj: dict[str, Any]) -> SubscriptionSnapshot:
    item = _first_item(obj)
    price = _as_dict(item.get("price"))
    recurring = _as_dict(price.get("recurring"))
    metadata = _as_dict(obj.get("metadata"))

    # Newer API versions moved period boundaries onto the subscription item.
    period_start = obj.get("current_period_start") or item.get("current_period_start")
    period_end = obj.get("current_period_end") or item.get("current_period_end")

    amount = price.get("unit_amount")
    currency = obj.get("currency") or price.get("currency")

    return SubscriptionSnapshot(
        external_id=str(obj["id"]),
        status=map_stripe_status(obj.get("status")),
        customer_id=_id_of(obj.get("customer")),
        user_id=_user_id_from_metadata(metadata),
        plan_external_id=_id_of(price.get("product")),
        price_id=_id_of(price),
        amount=int(amount) if amount is not None else None,
        currency=str(currency).upper() if currency else None,
        interval=recurring.get("interval"),
        current_period_start=epoch_to_datetime(period_start),
        current_period_end=epoch_to_datetime(period_end),
        trial_start=epoch_to_datetime(obj.get("trial_start")),
        trial_end=epoch_to_datetime(obj.get("trial_end")),
        canceled_at=epoch_to_datetime(obj.get("canceled_at")),
        ended_at=epoch_to_datetime(obj.get("ended_at")),
        metadata=metadata,
    )


def _invoice_subscription_id(obj: dict[str, Any]) -> Optional[str]:
    direct = _id_of(obj.get("subscription"))
    if direct:
        return direct
    details = _as_dict(_as_dict(obj.get("parent")).get("subscription_details"))
    return _id_of(details.get("subscription"))


def _invoice_snapshot(obj: dict[str, Any]) -> InvoiceSnapshot:
    currency = obj.get("currency")
    attempt_count = obj.get("attempt_count")
    return InvoiceSnapshot(
        external_id=str(obj["id"]),
        document_type="invoice",
        subscription_id=_invoice_subscription_id(obj),
        customer_id=_id_of(obj.get("customer")),
        customer_email=obj.get("customer_email"),
        number=obj.get("number"),
        amount_paid=obj.get("amount_paid"),
        amount_due=obj.get("amount_due"),
        currency=str(currency).upper() if currency else None,
        status=obj.get("status"),
        download_url=obj.get("invoice_pdf"),
        hosted_url=obj.get("hosted_invoice_url"),
        created=epoch_to_datetime(obj.get("created")),
        due_date=epoch_to_datetime(obj.get("due_date")),
        attempt_count=int(attempt_count) if attempt_count is not None else None,
        next_payment_attempt=epoch_to_datetime(obj.get("next_payment_attempt")),
    )


def _require_object_id(event_type: str, obj: dict[str, Any]) -> None:
    if not obj.get("id"):
        raise MalformedWebhookError(
            "Webhook payload is missing its data object",
            details={"event_type": event_type},
        )


def parse_stripe_event(event: dict[str, Any]) -> NormalizedBillingEvent:
    """Normalize a verified Stripe event envelope."""
    event_type = event.get("type")
    event_id = event.get("id")
    if not isinstance(event_type, str) or not event_type or not event_id:
        raise MalformedWebhookError("Webhook payload is missing its type or id")

    kind = STRIPE_EVENT_KINDS.get(event_type, BillingEventKind.UNKNOWN)
    obj = _as_dict(_as_dict(event.get("data")).get("object"))
    created = event.get("created")

    fields: dict[str, Any] = {}
    if kind in _SUBSCRIPTION_KINDS:
        _require_object_id(event_type, obj)
        fields["subscription"] = _subscription_snapshot(obj)
    elif kind in _INVOICE_KINDS:
        _require_object_id(event_type, obj)
        fields["invoice"] = _invoice_snapshot(obj)
    elif kind == BillingEventKind.CHECKOUT_COMPLETED:
        _require_object_id(event_type, obj)
        details = _as_dict(obj.get("customer_details"))
        fields["checkout"] = CheckoutSnapshot(
            session_id=str(obj["id"]),
            customer_id=_id_of(obj.get("customer")),
            subscription_id=_id_of(obj.get("subscription")),
            user_id=_user_id_from_metadata(_as_dict(obj.get("metadata"))),
            customer_email=obj.get("customer_email") or details.get("email"),
        )
    elif kind == BillingEventKind.CUSTOMER_UPDATED:
        _require_object_id(event_type, obj)
        fields["customer"] = CustomerSnapshot(
            external_id=str(obj["id"]),
            email=obj.get("email"),
            name=obj.get("name"),
        )

    return NormalizedBillingEvent(
        provider=Provider.STRIPE,
        event_id=str(event_id),
        event_type=event_type,
        kind=kind,
        created_at=int(created) if isinstance(created, int) else None,
        raw=event,
        **fields,
    )
