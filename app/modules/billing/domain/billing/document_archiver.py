"""Best-effort archival of provider invoices and receipts."""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from app.shared.core.config import get_settings
from app.shared.core.ops_metrics import BILLING_DOCUMENTS_ARCHIVED

from .billing_shared import logger
from .events import InvoiceSnapshot, NormalizedBillingEvent
from .repository import SubscriptionRepository
from .user_resolver import UserResolver


def _major_units(amount: int) -> str:
    return str(Decimal(amount) / 100)


class DocumentArchiver:
    """
    Persists a durable reference to the provider-hosted invoice.

    Archival must never block subscription reconciliation: every failure is
    logged and reported as False, and all writes run inside a SAVEPOINT so a
    failed insert leaves the delivery's transaction usable.
    """

    def __init__(
        self,
        db: AsyncSession,
        repository: SubscriptionRepository,
        resolver: UserResolver,
    ):
        self.db = db
        self.repository = repository
        self.resolver = resolver

    async def archive(self, event: NormalizedBillingEvent) -> bool:
        invoice = event.invoice
        if invoice is None:
            return False

        provider = event.provider.value
        try:
            async with self.db.begin_nested():
                outcome = await self._archive(event, invoice)
        except Exception as exc:
            BILLING_DOCUMENTS_ARCHIVED.labels(provider=provider, outcome="error").inc()
            logger.error(
                "billing_document_archive_failed",
                provider=provider,
                invoice_id=invoice.external_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return False

        BILLING_DOCUMENTS_ARCHIVED.labels(provider=provider, outcome=outcome).inc()
        return outcome in {"stored", "duplicate"}

    async def _archive(
        self, event: NormalizedBillingEvent, invoice: InvoiceSnapshot
    ) -> str:
        if await self.repository.find_document_by_external_id(invoice.external_id):
            logger.info(
                "billing_document_already_archived", invoice_id=invoice.external_id
            )
            return "duplicate"

        user_id = await self._resolve_owner(invoice)
        if user_id is None:
            logger.warning(
                "billing_document_owner_not_found",
                invoice_id=invoice.external_id,
                customer_id=invoice.customer_id,
                subscription_id=invoice.subscription_id,
            )
            return "skipped"

        inserted = await self.repository.insert_document(
            self._document_values(event, invoice, user_id)
        )
        if not inserted:
            # Lost a race with a concurrent delivery: already archived.
            logger.info(
                "billing_document_already_archived", invoice_id=invoice.external_id
            )
            return "duplicate"

        logger.info(
            "billing_document_stored",
            invoice_id=invoice.external_id,
            user_id=str(user_id),
            document_type=invoice.document_type,
            amount=invoice.amount_paid,
        )
        return "stored"

    async def _resolve_owner(self, invoice: InvoiceSnapshot) -> Optional[UUID]:
        if invoice.subscription_id:
            subscription = await self.repository.find_subscription_by_external_id(
                invoice.subscription_id
            )
            if subscription is not None:
                return subscription.user_id
        return await self.resolver.resolve(
            customer_id=invoice.customer_id, email=invoice.customer_email
        )

    def _document_values(
        self,
        event: NormalizedBillingEvent,
        invoice: InvoiceSnapshot,
        user_id: UUID,
    ) -> dict[str, Any]:
        kind = "Subscription" if invoice.subscription_id else "Payment"
        title = f"Invoice #{invoice.number}" if invoice.number else f"{kind} Invoice"
        currency = (invoice.currency or get_settings().DEFAULT_CURRENCY).upper()
        amount = invoice.amount_paid or 0

        return {
            "user_id": user_id,
            "type": invoice.document_type,
            "title": title,
            "description": f"{kind} invoice for {currency} {_major_units(amount)}",
            "external_id": invoice.external_id,
            "download_url": invoice.download_url,
            "hosted_url": invoice.hosted_url,
            "amount": amount,
            "currency": currency,
            "status": invoice.status,
            "document_date": invoice.created,
            "tags": [invoice.document_type, event.provider.value, "subscription"],
            "metadata_": {
                "number": invoice.number,
                "subscription_id": invoice.subscription_id,
                "customer_id": invoice.customer_id,
                "attempt_count": invoice.attempt_count,
                "due_date": invoice.due_date.isoformat() if invoice.due_date else None,
                "provider_event_id": event.event_id,
            },
        }
