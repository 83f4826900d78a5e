"""
Subscription state reconciliation.

Every handler takes a `NormalizedBillingEvent` and returns the audit details
for the delivery (or None to use the default tag). Handlers never commit; the
dispatcher owns the transaction. Permanently unresolvable conditions (unknown
user, unknown plan) are logged and swallowed so the provider stops retrying;
database failures on the core state transition propagate.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.subscription import Subscription
from app.shared.core.config import get_settings

from .billing_shared import (
    BillingCycle,
    Provider,
    SubscriptionStatus,
    billing_cycle_from_interval,
    email_hash,
    logger,
    utcnow,
)
from .document_archiver import DocumentArchiver
from .events import NormalizedBillingEvent, SubscriptionSnapshot
from .repository import SubscriptionRepository
from .user_resolver import UserResolver

AuditDetails = Optional[dict[str, Any]]


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def classify_update(
    plan_changed: bool, status_changed: bool, new_status: Optional[str], cycle_changed: bool
) -> str:
    """Lossy audit tag for an update; the full diff lives in event_data."""
    if plan_changed:
        return "plan_changed"
    if status_changed and new_status == SubscriptionStatus.CANCELED.value:
        return "canceled"
    if status_changed and new_status == SubscriptionStatus.ACTIVE.value:
        return "activated"
    if cycle_changed:
        return "billing_cycle_changed"
    return "updated"


class SubscriptionReconciler:
    def __init__(
        self,
        db: AsyncSession,
        provider: Provider,
        repository: Optional[SubscriptionRepository] = None,
        resolver: Optional[UserResolver] = None,
        archiver: Optional[DocumentArchiver] = None,
    ):
        self.db = db
        self.provider = provider
        self.repository = repository or SubscriptionRepository(db)
        self.resolver = resolver or UserResolver(self.repository, provider)
        self.archiver = archiver or DocumentArchiver(db, self.repository, self.resolver)

    # --- creation / update -------------------------------------------------

    async def handle_subscription_activated(
        self, event: NormalizedBillingEvent
    ) -> AuditDetails:
        snapshot = self._require_subscription(event)
        existing = await self.repository.find_subscription_by_external_id(
            snapshot.external_id, for_update=True
        )
        if existing is not None:
            logger.info(
                "billing_subscription_exists_treating_as_update",
                provider=self.provider.value,
                external_subscription_id=snapshot.external_id,
            )
            return await self._apply_update(snapshot, existing)
        return await self._create(snapshot)

    async def handle_subscription_updated(
        self, event: NormalizedBillingEvent
    ) -> AuditDetails:
        snapshot = self._require_subscription(event)
        current = await self.repository.find_subscription_by_external_id(
            snapshot.external_id, for_update=True
        )
        if current is None:
            # Provider delivery order is not guaranteed.
            logger.warning(
                "billing_subscription_missing_treating_as_new",
                provider=self.provider.value,
                external_subscription_id=snapshot.external_id,
            )
            return await self._create(snapshot, from_update=True)
        return await self._apply_update(snapshot, current)

    async def _create(
        self, snapshot: SubscriptionSnapshot, from_update: bool = False
    ) -> AuditDetails:
        """
        Activation always starts `active`. A create reached from an update event
        carries the provider-reported status and cancellation instead.
        """
        user_id = await self.resolver.resolve(
            user_id=snapshot.user_id, customer_id=snapshot.customer_id
        )
        if user_id is None:
            return None

        plan = None
        if snapshot.plan_external_id:
            plan = await self.repository.find_plan_by_external_id(
                self.provider, snapshot.plan_external_id
            )
        if plan is None:
            logger.error(
                "billing_plan_not_found",
                provider=self.provider.value,
                plan_external_id=snapshot.plan_external_id,
                external_subscription_id=snapshot.external_id,
                user_id=str(user_id),
            )
            return None

        cycle = billing_cycle_from_interval(snapshot.interval) or BillingCycle(
            plan.billing_cycle
        )
        amount = snapshot.amount
        if amount is None:
            amount = (
                plan.price_annual if cycle == BillingCycle.ANNUAL else plan.price_monthly
            )
        currency = (
            snapshot.currency or plan.currency or get_settings().DEFAULT_CURRENCY
        ).upper()
        status = SubscriptionStatus.ACTIVE.value
        canceled_at = None
        if from_update:
            status = snapshot.status or status
            canceled_at = snapshot.canceled_at

        created = await self.repository.create_subscription(
            {
                "user_id": user_id,
                "subscription_plan_id": plan.id,
                "status": status,
                "billing_cycle": cycle.value,
                "current_period_start": snapshot.current_period_start,
                "current_period_end": snapshot.current_period_end,
                "trial_start": snapshot.trial_start,
                "trial_end": snapshot.trial_end,
                "canceled_at": canceled_at,
                "provider": self.provider.value,
                "external_subscription_id": snapshot.external_id,
                "external_customer_id": snapshot.customer_id,
                "external_price_id": snapshot.price_id,
                "amount": amount,
                "currency": currency,
                "metadata_": dict(snapshot.metadata),
            }
        )
        if created is None:
            logger.info(
                "billing_subscription_create_conflict",
                provider=self.provider.value,
                external_subscription_id=snapshot.external_id,
            )
            existing = await self.repository.find_subscription_by_external_id(
                snapshot.external_id, for_update=True
            )
            if existing is None:
                return None
            return await self._apply_update(snapshot, existing)

        logger.info(
            "billing_subscription_created",
            provider=self.provider.value,
            subscription_id=str(created.id),
            external_subscription_id=snapshot.external_id,
            user_id=str(user_id),
            plan_name=plan.name,
            billing_cycle=cycle.value,
        )
        return {
            "event_type": "created",
            "external_subscription_id": snapshot.external_id,
            "plan_id": str(plan.id),
            "status": status,
            "billing_cycle": cycle.value,
            "amount": amount,
            "current_period_start": _iso(snapshot.current_period_start),
            "current_period_end": _iso(snapshot.current_period_end),
            "canceled_at": _iso(canceled_at),
            "trial_end": _iso(snapshot.trial_end),
        }

    async def _apply_update(
        self, snapshot: SubscriptionSnapshot, current: Subscription
    ) -> AuditDetails:
        new_cycle = billing_cycle_from_interval(snapshot.interval)
        plan_changed = (
            snapshot.price_id is not None
            and snapshot.price_id != current.external_price_id
        )
        status_changed = snapshot.status is not None and snapshot.status != current.status
        cycle_changed = new_cycle is not None and new_cycle.value != current.billing_cycle

        previous = {
            "status": current.status,
            "amount": current.amount,
            "billing_cycle": current.billing_cycle,
            "plan_id": current.subscription_plan_id,
        }

        values: dict[str, Any] = {}
        if snapshot.status is not None:
            values["status"] = snapshot.status
        if snapshot.current_period_start is not None:
            values["current_period_start"] = snapshot.current_period_start
        if snapshot.current_period_end is not None:
            values["current_period_end"] = snapshot.current_period_end
        if snapshot.amount is not None:
            values["amount"] = snapshot.amount
        if new_cycle is not None:
            values["billing_cycle"] = new_cycle.value
        if snapshot.canceled_at is not None:
            values["canceled_at"] = snapshot.canceled_at
        if snapshot.trial_end is not None:
            values["trial_end"] = snapshot.trial_end

        new_plan_id = None
        if plan_changed and snapshot.plan_external_id:
            plan = await self.repository.find_plan_by_external_id(
                self.provider, snapshot.plan_external_id
            )
            if plan is not None:
                new_plan_id = plan.id
                values["subscription_plan_id"] = plan.id
                values["external_price_id"] = snapshot.price_id
                logger.info(
                    "billing_subscription_plan_changed",
                    external_subscription_id=snapshot.external_id,
                    old_plan=str(previous["plan_id"]) if previous["plan_id"] else None,
                    new_plan=str(plan.id),
                    old_price=current.external_price_id,
                    new_price=snapshot.price_id,
                )

        await self.repository.update_subscription_by_external_id(
            snapshot.external_id, values
        )

        event_type = classify_update(
            plan_changed, status_changed, snapshot.status, cycle_changed
        )
        logger.info(
            "billing_subscription_updated",
            provider=self.provider.value,
            external_subscription_id=snapshot.external_id,
            event_type=event_type,
            status=snapshot.status,
            plan_changed=plan_changed,
            status_changed=status_changed,
            billing_cycle_changed=cycle_changed,
        )
        return {
            "event_type": event_type,
            "external_subscription_id": snapshot.external_id,
            "status": snapshot.status or previous["status"],
            "previous_status": previous["status"],
            "current_period_end": _iso(snapshot.current_period_end),
            "amount": snapshot.amount if snapshot.amount is not None else previous["amount"],
            "previous_amount": previous["amount"],
            "billing_cycle": new_cycle.value if new_cycle else previous["billing_cycle"],
            "previous_billing_cycle": previous["billing_cycle"],
            "plan_id": str(new_plan_id) if new_plan_id else None,
            "plan_changed": plan_changed,
            "status_changed": status_changed,
            "billing_cycle_changed": cycle_changed,
            "canceled_at": _iso(snapshot.canceled_at),
            "trial_end": _iso(snapshot.trial_end),
        }

    # --- terminal transitions ---------------------------------------------

    async def handle_subscription_canceled(
        self, event: NormalizedBillingEvent
    ) -> AuditDetails:
        snapshot = self._require_subscription(event)
        now = utcnow()
        return await self._transition(
            snapshot.external_id,
            {
                "status": SubscriptionStatus.CANCELED.value,
                "ends_at": snapshot.ended_at or snapshot.canceled_at or now,
                "canceled_at": now,
            },
            "canceled",
        )

    async def handle_subscription_paused(
        self, event: NormalizedBillingEvent
    ) -> AuditDetails:
        snapshot = self._require_subscription(event)
        return await self._transition(
            snapshot.external_id,
            {"status": SubscriptionStatus.PAUSED.value, "paused_at": utcnow()},
            "paused",
        )

    async def handle_subscription_resumed(
        self, event: NormalizedBillingEvent
    ) -> AuditDetails:
        snapshot = self._require_subscription(event)
        return await self._transition(
            snapshot.external_id,
            {"status": SubscriptionStatus.ACTIVE.value, "paused_at": None},
            "resumed",
        )

    async def handle_subscription_pending(
        self, event: NormalizedBillingEvent
    ) -> AuditDetails:
        snapshot = self._require_subscription(event)
        return await self._transition(
            snapshot.external_id,
            {"status": SubscriptionStatus.PENDING.value},
            "pending",
        )

    async def handle_subscription_completed(
        self, event: NormalizedBillingEvent
    ) -> AuditDetails:
        snapshot = self._require_subscription(event)
        return await self._transition(
            snapshot.external_id,
            {
                "status": SubscriptionStatus.COMPLETED.value,
                "ends_at": snapshot.ended_at or utcnow(),
            },
            "completed",
        )

    async def _transition(
        self, external_id: str, values: dict[str, Any], tag: str
    ) -> AuditDetails:
        updated = await self.repository.update_subscription_by_external_id(
            external_id, values
        )
        if not updated:
            logger.warning(
                "billing_subscription_not_found",
                provider=self.provider.value,
                external_subscription_id=external_id,
                transition=tag,
            )
            return None

        logger.info(
            "billing_subscription_transitioned",
            provider=self.provider.value,
            external_subscription_id=external_id,
            status=values["status"],
        )
        return {
            "event_type": tag,
            "external_subscription_id": external_id,
            "status": values["status"],
            "ends_at": _iso(values.get("ends_at")),
        }

    # --- invoices ---------------------------------------------------------

    async def handle_invoice_payment_succeeded(
        self, event: NormalizedBillingEvent
    ) -> AuditDetails:
        invoice = event.invoice
        if invoice is None:
            return None

        details: AuditDetails = None
        if invoice.subscription_id:
            # A successful payment recovers a past-due subscription.
            details = await self._transition(
                invoice.subscription_id,
                {"status": SubscriptionStatus.ACTIVE.value},
                "payment_succeeded",
            )
        else:
            logger.warning(
                "billing_invoice_without_subscription",
                provider=self.provider.value,
                invoice_id=invoice.external_id,
                customer_id=invoice.customer_id,
            )

        archived = await self.archiver.archive(event)
        logger.info(
            "billing_payment_succeeded",
            provider=self.provider.value,
            invoice_id=invoice.external_id,
            external_subscription_id=invoice.subscription_id,
            amount_paid=invoice.amount_paid,
            currency=invoice.currency,
            archived=archived,
        )
        return self._with_invoice(details, invoice.external_id, invoice.amount_paid)

    async def handle_invoice_payment_failed(
        self, event: NormalizedBillingEvent
    ) -> AuditDetails:
        invoice = event.invoice
        if invoice is None:
            return None
        if not invoice.subscription_id:
            logger.warning(
                "billing_invoice_without_subscription",
                provider=self.provider.value,
                invoice_id=invoice.external_id,
                customer_id=invoice.customer_id,
            )
            return None

        details = await self._transition(
            invoice.subscription_id,
            {"status": SubscriptionStatus.PAST_DUE.value},
            "payment_failed",
        )
        payment = event.payment
        logger.warning(
            "billing_payment_failed",
            provider=self.provider.value,
            invoice_id=invoice.external_id,
            external_subscription_id=invoice.subscription_id,
            amount_due=invoice.amount_due,
            attempt_count=invoice.attempt_count,
            next_payment_attempt=_iso(invoice.next_payment_attempt),
            error_code=payment.error_code if payment else None,
            error_description=payment.error_description if payment else None,
        )
        return self._with_invoice(details, invoice.external_id, invoice.amount_due)

    async def handle_invoice_finalized(
        self, event: NormalizedBillingEvent
    ) -> AuditDetails:
        invoice = event.invoice
        if invoice is None:
            return None
        logger.info(
            "billing_invoice_finalized",
            provider=self.provider.value,
            invoice_id=invoice.external_id,
            external_subscription_id=invoice.subscription_id,
            amount_due=invoice.amount_due,
            status=invoice.status,
        )
        archived = await self.archiver.archive(event)
        return {
            "event_type": "invoice_finalized",
            "invoice_id": invoice.external_id,
            "archived": archived,
        }

    @staticmethod
    def _with_invoice(
        details: AuditDetails, invoice_id: str, amount: Optional[int]
    ) -> AuditDetails:
        if details is None:
            return None
        return {**details, "invoice_id": invoice_id, "amount": amount}

    # --- checkout / customer ----------------------------------------------

    async def handle_checkout_completed(
        self, event: NormalizedBillingEvent
    ) -> AuditDetails:
        checkout = event.checkout
        if checkout is None:
            return None
        if not checkout.customer_id or not checkout.subscription_id:
            logger.warning(
                "billing_checkout_missing_references",
                session_id=checkout.session_id,
                has_customer=bool(checkout.customer_id),
                has_subscription=bool(checkout.subscription_id),
            )
            return None

        user_id = await self.resolver.resolve(
            user_id=checkout.user_id, email=checkout.customer_email
        )
        if user_id is None:
            return None

        await self._touch_profile(user_id)
        logger.info(
            "billing_checkout_completed",
            provider=self.provider.value,
            session_id=checkout.session_id,
            user_id=str(user_id),
        )
        return {
            "event_type": "checkout_completed",
            "checkout_session_id": checkout.session_id,
            "user_id": str(user_id),
        }

    async def handle_customer_updated(
        self, event: NormalizedBillingEvent
    ) -> AuditDetails:
        customer = event.customer
        if customer is None:
            return None
        if not customer.email:
            logger.warning(
                "billing_customer_update_skipped_no_email", customer_id=customer.external_id
            )
            return None

        user_id = await self.repository.get_user_id_by_email(customer.email)
        if user_id is None:
            logger.error(
                "billing_user_resolution_failed",
                provider=self.provider.value,
                customer_id=customer.external_id,
                email_hash=email_hash(customer.email),
                attempted_methods=["email_lookup"],
            )
            return None

        await self._touch_profile(user_id)
        logger.info(
            "billing_customer_updated",
            customer_id=customer.external_id,
            user_id=str(user_id),
        )
        return {"event_type": "customer_updated", "customer_id": customer.external_id}

    async def _touch_profile(self, user_id: UUID) -> None:
        """Non-critical write: failures are logged, never raised."""
        try:
            async with self.db.begin_nested():
                touched = await self.repository.touch_profile(user_id)
        except SQLAlchemyError as exc:
            logger.error(
                "billing_profile_touch_failed", user_id=str(user_id), error=str(exc)
            )
            return
        if not touched:
            logger.warning("billing_profile_not_found", user_id=str(user_id))

    def _require_subscription(self, event: NormalizedBillingEvent) -> SubscriptionSnapshot:
        if event.subscription is None:
            raise ValueError(f"{event.event_type} event carries no subscription")
        return event.subscription
