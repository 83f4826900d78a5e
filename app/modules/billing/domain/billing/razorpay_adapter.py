"""Projects verified Razorpay events onto `NormalizedBillingEvent`."""

from __future__ import annotations

from typing import Any, Optional

from app.shared.core.exceptions import MalformedWebhookError

from .billing_shared import Provider, SubscriptionStatus, epoch_to_datetime, logger
from .events import (
    BillingEventKind,
    InvoiceSnapshot,
    NormalizedBillingEvent,
    PaymentSnapshot,
    SubscriptionSnapshot,
)

RAZORPAY_EVENT_KINDS: dict[str, BillingEventKind] = {
    "subscription.activated": BillingEventKind.SUBSCRIPTION_ACTIVATED,
    "subscription.charged": BillingEventKind.SUBSCRIPTION_UPDATED,
    "subscription.updated": BillingEventKind.SUBSCRIPTION_UPDATED,
    "subscription.cancelled": BillingEventKind.SUBSCRIPTION_CANCELED,
    "subscription.paused": BillingEventKind.SUBSCRIPTION_PAUSED,
    "subscription.resumed": BillingEventKind.SUBSCRIPTION_RESUMED,
    "subscription.pending": BillingEventKind.SUBSCRIPTION_PENDING,
    "subscription.completed": BillingEventKind.SUBSCRIPTION_COMPLETED,
    "payment.captured": BillingEventKind.INVOICE_PAYMENT_SUCCEEDED,
    "payment.failed": BillingEventKind.INVOICE_PAYMENT_FAILED,
}

RAZORPAY_STATUS_MAP: dict[str, SubscriptionStatus] = {
    "created": SubscriptionStatus.PENDING,
    "authenticated": SubscriptionStatus.PENDING,
    "active": SubscriptionStatus.ACTIVE,
    "pending": SubscriptionStatus.PENDING,
    "halted": SubscriptionStatus.PAST_DUE,
    "paused": SubscriptionStatus.PAUSED,
    "cancelled": SubscriptionStatus.CANCELED,
    "completed": SubscriptionStatus.COMPLETED,
    "expired": SubscriptionStatus.COMPLETED,
}

_PAYMENT_KINDS = {
    BillingEventKind.INVOICE_PAYMENT_SUCCEEDED,
    BillingEventKind.INVOICE_PAYMENT_FAILED,
}


def map_razorpay_status(status: Optional[str]) -> Optional[str]:
    if not status:
        return None
    mapped = RAZORPAY_STATUS_MAP.get(status)
    if mapped is None:
        logger.warning("razorpay_unknown_subscription_status", status=status)
        return None
    return mapped.value


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _notes(entity: dict[str, Any]) -> dict[str, Any]:
    # Razorpay sends an empty list when no notes were set.
    return _as_dict(entity.get("notes"))


def _user_id_from_notes(notes: dict[str, Any]) -> Optional[str]:
    user_id = notes.get("userId") or notes.get("user_id")
    return str(user_id) if user_id else None


def _entity(event: dict[str, Any], name: str) -> dict[str, Any]:
    return _as_dict(_as_dict(_as_dict(event.get("payload")).get(name)).get("entity"))


def _interval_from_plan(plan: dict[str, Any]) -> Optional[str]:
    period = plan.get("period")
    if not period:
        return None
    return "year" if period == "yearly" else "month"


def _subscription_snapshot(
    entity: dict[str, Any], charged: bool
) -> SubscriptionSnapshot:
    notes = _notes(entity)
    plan = _as_dict(entity.get("plan"))
    item = _as_dict(plan.get("item"))
    amount = item.get("amount")
    currency = item.get("currency")

    status = map_razorpay_status(entity.get("status"))
    if charged:
        # A successful charge always leaves the subscription active.
        status = SubscriptionStatus.ACTIVE.value

    return SubscriptionSnapshot(
        external_id=str(entity["id"]),
        status=status,
        customer_id=entity.get("customer_id"),
        user_id=_user_id_from_notes(notes),
        plan_external_id=entity.get("plan_id"),
        price_id=entity.get("plan_id"),
        amount=int(amount) if amount is not None else None,
        currency=str(currency).upper() if currency else None,
        interval=_interval_from_plan(plan),
        current_period_start=epoch_to_datetime(entity.get("current_start")),
        current_period_end=epoch_to_datetime(entity.get("current_end")),
        ended_at=epoch_to_datetime(entity.get("ended_at")),
        metadata=notes,
    )


def _payment_subscription_id(entity: dict[str, Any]) -> Optional[str]:
    return entity.get("subscription_id") or _notes(entity).get("subscriptionId")


def _payment_snapshot(entity: dict[str, Any]) -> PaymentSnapshot:
    currency = entity.get("currency")
    return PaymentSnapshot(
        external_id=str(entity["id"]),
        subscription_id=_payment_subscription_id(entity),
        customer_id=entity.get("customer_id"),
        amount=entity.get("amount"),
        currency=str(currency).upper() if currency else None,
        status=entity.get("status"),
        method=entity.get("method"),
        email=entity.get("email"),
        error_code=entity.get("error_code"),
        error_description=entity.get("error_description"),
    )


def _receipt_snapshot(payment: PaymentSnapshot, entity: dict[str, Any]) -> InvoiceSnapshot:
    captured = payment.status == "captured" or bool(entity.get("captured"))
    return InvoiceSnapshot(
        external_id=payment.external_id,
        document_type="receipt",
        subscription_id=payment.subscription_id,
        customer_id=payment.customer_id,
        customer_email=payment.email,
        number=entity.get("invoice_id"),
        amount_paid=payment.amount if captured else 0,
        amount_due=payment.amount,
        currency=payment.currency,
        status=payment.status,
        created=epoch_to_datetime(entity.get("created_at")),
    )


def resolve_razorpay_event_id(
    event: dict[str, Any], header_event_id: Optional[str]
) -> str:
    """Razorpay sends a stable id in `x-razorpay-event-id`; older payloads do not."""
    if header_event_id:
        return header_event_id
    entity_id = _entity(event, "subscription").get("id") or _entity(
        event, "payment"
    ).get("id")
    return f"{event.get('event')}:{entity_id or 'unknown'}:{event.get('created_at')}"


def parse_razorpay_event(
    event: dict[str, Any], header_event_id: Optional[str] = None
) -> NormalizedBillingEvent:
    """Normalize a verified Razorpay event envelope."""
    event_type = event.get("event")
    if not isinstance(event_type, str) or not event_type:
        raise MalformedWebhookError("Webhook payload is missing its event type")

    kind = RAZORPAY_EVENT_KINDS.get(event_type, BillingEventKind.UNKNOWN)
    created = event.get("created_at")

    fields: dict[str, Any] = {}
    if kind in _PAYMENT_KINDS:
        entity = _entity(event, "payment")
        if not entity.get("id"):
            raise MalformedWebhookError(
                "Webhook payload is missing its payment entity",
                details={"event_type": event_type},
            )
        payment = _payment_snapshot(entity)
        fields["payment"] = payment
        fields["invoice"] = _receipt_snapshot(payment, entity)
    elif kind != BillingEventKind.UNKNOWN:
        entity = _entity(event, "subscription")
        if not entity.get("id"):
            raise MalformedWebhookError(
                "Webhook payload is missing its subscription entity",
                details={"event_type": event_type},
            )
        fields["subscription"] = _subscription_snapshot(
            entity, charged=event_type == "subscription.charged"
        )
        payment_entity = _entity(event, "payment")
        if payment_entity.get("id"):
            fields["payment"] = _payment_snapshot(payment_entity)

    return NormalizedBillingEvent(
        provider=Provider.RAZORPAY,
        event_id=resolve_razorpay_event_id(event, header_event_id),
        event_type=event_type,
        kind=kind,
        created_at=int(created) if isinstance(created, int) else None,
        raw=event,
        **fields,
    )
