"""Writes the per-delivery `subscription_events` audit row."""

from __future__ import annotations

import time
from typing import Any, Optional

from .billing_shared import logger
from .events import BillingEventKind, NormalizedBillingEvent
from .repository import SubscriptionRepository

# Coarse tag used when a handler does not supply its own.
AUDIT_EVENT_TYPES: dict[BillingEventKind, str] = {
    BillingEventKind.CHECKOUT_COMPLETED: "checkout_completed",
    BillingEventKind.SUBSCRIPTION_CREATED: "created",
    BillingEventKind.SUBSCRIPTION_ACTIVATED: "activated",
    BillingEventKind.SUBSCRIPTION_UPDATED: "updated",
    BillingEventKind.SUBSCRIPTION_CANCELED: "canceled",
    BillingEventKind.SUBSCRIPTION_PAUSED: "paused",
    BillingEventKind.SUBSCRIPTION_RESUMED: "resumed",
    BillingEventKind.SUBSCRIPTION_PENDING: "pending",
    BillingEventKind.SUBSCRIPTION_COMPLETED: "completed",
    BillingEventKind.INVOICE_PAYMENT_SUCCEEDED: "payment_succeeded",
    BillingEventKind.INVOICE_PAYMENT_FAILED: "payment_failed",
    BillingEventKind.INVOICE_FINALIZED: "invoice_finalized",
    BillingEventKind.CUSTOMER_UPDATED: "customer_updated",
}


def elapsed_ms(started_at: float) -> int:
    return int((time.perf_counter() - started_at) * 1000)


class SubscriptionAuditWriter:
    def __init__(self, repository: SubscriptionRepository):
        self.repository = repository

    async def record(
        self,
        event: NormalizedBillingEvent,
        details: Optional[dict[str, Any]],
        started_at: float,
    ) -> bool:
        """
        Insert one audit row for a dispatched event.

        Events whose subscription cannot be found by external id produce only
        a log line. Redelivery of the same provider event id is a no-op.
        """
        external_id = event.subscription_external_id
        subscription = (
            await self.repository.find_subscription_by_external_id(external_id)
            if external_id
            else None
        )
        if subscription is None:
            logger.info(
                "billing_audit_skipped_no_subscription",
                provider=event.provider.value,
                event_type=event.event_type,
                external_subscription_id=external_id,
            )
            return False

        payload = dict(details or {})
        event_type = payload.pop("event_type", None) or AUDIT_EVENT_TYPES.get(
            event.kind, "updated"
        )
        event_data = {
            "provider": event.provider.value,
            "provider_event_id": event.event_id,
            "provider_event_type": event.event_type,
            "event_created": event.created_at or int(time.time()),
            **payload,
        }

        inserted = await self.repository.insert_subscription_event(
            {
                "subscription_id": subscription.id,
                "event_type": event_type,
                "event_data": event_data,
                "webhook_id": event.event_id,
                "processing_duration_ms": elapsed_ms(started_at),
            }
        )
        if not inserted:
            logger.info(
                "billing_audit_duplicate_delivery",
                subscription_id=str(subscription.id),
                webhook_id=event.event_id,
            )
        return inserted
