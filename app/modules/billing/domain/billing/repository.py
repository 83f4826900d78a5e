"""Typed data access for the billing webhook path."""

from __future__ import annotations

from typing import Any, Optional
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.document import Document
from app.models.subscription import Subscription, SubscriptionPlan
from app.models.subscription_event import SubscriptionEvent
from app.models.user import UserProfile

from .billing_shared import Provider, utcnow


def _attrs(model: type, values: dict[str, Any]) -> dict[Any, Any]:
    """Key values by mapped attribute so `metadata_` resolves to its column."""
    return {getattr(model, key): value for key, value in values.items()}


class SubscriptionRepository:
    """
    Subscription, plan, profile, audit and document access for reconciliation.

    Inserts use the dialect's `ON CONFLICT DO NOTHING` so concurrent or
    redelivered webhooks cannot create duplicates; callers learn whether their
    row won from the return value. Nothing here commits.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    def _insert(self, model: type) -> Any:
        if self.db.get_bind().dialect.name == "sqlite":
            return sqlite_insert(model)
        return pg_insert(model)

    async def find_subscription_by_external_id(
        self, external_id: str, for_update: bool = False
    ) -> Optional[Subscription]:
        stmt = select(Subscription).where(
            Subscription.external_subscription_id == external_id
        )
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def create_subscription(self, values: dict[str, Any]) -> Optional[Subscription]:
        """Returns the new row, or None when another delivery created it first."""
        stmt = (
            self._insert(Subscription)
            .values(_attrs(Subscription, values))
            .on_conflict_do_nothing(index_elements=["external_subscription_id"])
            .returning(Subscription.id)
        )
        result = await self.db.execute(stmt)
        subscription_id = result.scalar_one_or_none()
        if subscription_id is None:
            return None
        return await self.db.get(Subscription, subscription_id)

    async def update_subscription_by_external_id(
        self, external_id: str, values: dict[str, Any]
    ) -> int:
        values = {**values, "updated_at": utcnow()}
        stmt = (
            update(Subscription)
            .where(Subscription.external_subscription_id == external_id)
            .values(_attrs(Subscription, values))
            .execution_options(synchronize_session="fetch")
        )
        result = await self.db.execute(stmt)
        return int(result.rowcount or 0)

    async def find_plan_by_external_id(
        self, provider: Provider, external_id: str
    ) -> Optional[SubscriptionPlan]:
        column = (
            SubscriptionPlan.stripe_product_id
            if provider == Provider.STRIPE
            else SubscriptionPlan.razorpay_plan_id
        )
        result = await self.db.execute(
            select(SubscriptionPlan).where(column == external_id).limit(1)
        )
        return result.scalar_one_or_none()

    async def get_user_id_by_email(self, email: str) -> Optional[UUID]:
        normalized = email.strip().lower()
        if not normalized:
            return None
        result = await self.db.execute(
            select(UserProfile.id).where(func.lower(UserProfile.email) == normalized)
        )
        return result.scalar_one_or_none()

    async def profile_exists(self, user_id: UUID) -> bool:
        result = await self.db.execute(
            select(UserProfile.id).where(UserProfile.id == user_id)
        )
        return result.scalar_one_or_none() is not None

    async def touch_profile(self, user_id: UUID) -> bool:
        result = await self.db.execute(
            update(UserProfile)
            .where(UserProfile.id == user_id)
            .values(updated_at=utcnow())
        )
        return bool(result.rowcount)

    async def insert_subscription_event(self, values: dict[str, Any]) -> bool:
        stmt = (
            self._insert(SubscriptionEvent)
            .values(_attrs(SubscriptionEvent, values))
            .on_conflict_do_nothing(index_elements=["subscription_id", "webhook_id"])
            .returning(SubscriptionEvent.id)
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none() is not None

    async def find_document_by_external_id(self, external_id: str) -> Optional[Document]:
        result = await self.db.execute(
            select(Document).where(Document.external_id == external_id)
        )
        return result.scalar_one_or_none()

    async def insert_document(self, values: dict[str, Any]) -> bool:
        """False when a document for the same external id already exists."""
        stmt = (
            self._insert(Document)
            .values(_attrs(Document, values))
            .on_conflict_do_nothing(index_elements=["external_id"])
            .returning(Document.id)
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none() is not None
