"""Routes normalized billing events to reconciler handlers."""

from __future__ import annotations

import time
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.shared.core.exceptions import WebhookProcessingError
from app.shared.core.logging import audit_log
from app.shared.core.ops_metrics import BILLING_WEBHOOK_DURATION, BILLING_WEBHOOKS_TOTAL
from app.shared.core.tracing import get_tracer

from .audit import SubscriptionAuditWriter, elapsed_ms
from .billing_shared import Provider, logger
from .events import BillingEventKind, NormalizedBillingEvent
from .reconciler import AuditDetails, SubscriptionReconciler

Handler = Callable[[NormalizedBillingEvent], Awaitable[AuditDetails]]


class WebhookDispatcher:
    """
    Runs exactly one handler per delivery plus its audit write in a single
    transaction. Unknown event kinds are acknowledged without side effects.
    """

    def __init__(
        self,
        db: AsyncSession,
        provider: Provider,
        reconciler: Optional[SubscriptionReconciler] = None,
        audit_writer: Optional[SubscriptionAuditWriter] = None,
    ):
        self.db = db
        self.provider = provider
        self.reconciler = reconciler or SubscriptionReconciler(db, provider)
        self.audit_writer = audit_writer or SubscriptionAuditWriter(
            self.reconciler.repository
        )

    def _handlers(self) -> dict[BillingEventKind, Handler]:
        r = self.reconciler
        return {
            BillingEventKind.CHECKOUT_COMPLETED: r.handle_checkout_completed,
            BillingEventKind.SUBSCRIPTION_CREATED: r.handle_subscription_activated,
            BillingEventKind.SUBSCRIPTION_ACTIVATED: r.handle_subscription_activated,
            BillingEventKind.SUBSCRIPTION_UPDATED: r.handle_subscription_updated,
            BillingEventKind.SUBSCRIPTION_CANCELED: r.handle_subscription_canceled,
            BillingEventKind.SUBSCRIPTION_PAUSED: r.handle_subscription_paused,
            BillingEventKind.SUBSCRIPTION_RESUMED: r.handle_subscription_resumed,
            BillingEventKind.SUBSCRIPTION_PENDING: r.handle_subscription_pending,
            BillingEventKind.SUBSCRIPTION_COMPLETED: r.handle_subscription_completed,
            BillingEventKind.INVOICE_PAYMENT_SUCCEEDED: r.handle_invoice_payment_succeeded,
            BillingEventKind.INVOICE_PAYMENT_FAILED: r.handle_invoice_payment_failed,
            BillingEventKind.INVOICE_FINALIZED: r.handle_invoice_finalized,
            BillingEventKind.CUSTOMER_UPDATED: r.handle_customer_updated,
        }

    def _observe(self, event_type: str, outcome: str, started_at: float) -> None:
        BILLING_WEBHOOKS_TOTAL.labels(
            provider=self.provider.value, event_type=event_type, outcome=outcome
        ).inc()
        BILLING_WEBHOOK_DURATION.labels(
            provider=self.provider.value, outcome=outcome
        ).observe(time.perf_counter() - started_at)

    async def dispatch(
        self, event: NormalizedBillingEvent, started_at: Optional[float] = None
    ) -> dict[str, Any]:
        started_at = started_at if started_at is not None else time.perf_counter()
        logger.info(
            "billing_webhook_received",
            provider=self.provider.value,
            event_type=event.event_type,
            event_id=event.event_id,
        )

        handler = self._handlers().get(event.kind)
        if handler is None:
            logger.warning(
                "billing_webhook_unhandled_event",
                provider=self.provider.value,
                event_type=event.event_type,
                event_id=event.event_id,
            )
            self._observe(event.event_type, "ignored", started_at)
            return {
                "received": True,
                "event_type": event.event_type,
                "processing_time_ms": elapsed_ms(started_at),
            }

        tracer = get_tracer(__name__)
        with tracer.start_as_current_span(f"billing_webhook:{event.event_type}") as span:
            span.set_attribute("billing.provider", self.provider.value)
            span.set_attribute("billing.event_id", event.event_id)
            try:
                details = await handler(event)
                await self.audit_writer.record(event, details, started_at)
                await self.db.commit()
            except Exception as exc:
                await self.db.rollback()
                processing_time_ms = elapsed_ms(started_at)
                logger.exception(
                    "billing_webhook_processing_failed",
                    provider=self.provider.value,
                    event_type=event.event_type,
                    event_id=event.event_id,
                    external_subscription_id=event.subscription_external_id,
                    processing_time_ms=processing_time_ms,
                )
                audit_log(
                    "billing_webhook_failed",
                    user_id=None,
                    provider=self.provider.value,
                    details={
                        "event_type": event.event_type,
                        "event_id": event.event_id,
                        "external_subscription_id": event.subscription_external_id,
                        "error": str(exc),
                        "error_type": type(exc).__name__,
                        "processing_time_ms": processing_time_ms,
                    },
                )
                self._observe(event.event_type, "failed", started_at)
                raise WebhookProcessingError(
                    event.event_type, processing_time_ms
                ) from exc

        processing_time_ms = elapsed_ms(started_at)
        logger.info(
            "billing_webhook_processed",
            provider=self.provider.value,
            event_type=event.event_type,
            event_id=event.event_id,
            processing_time_ms=processing_time_ms,
        )
        self._observe(event.event_type, "processed", started_at)
        return {
            "received": True,
            "event_type": event.event_type,
            "processing_time_ms": processing_time_ms,
        }
