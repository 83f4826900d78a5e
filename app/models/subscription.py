from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Uuid as PG_UUID,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from app.shared.db.base import Base


class SubscriptionPlan(Base):
    """Plan catalog entry. Read-only from the webhook path."""

    __tablename__ = "subscription_plans"

    id: Mapped[UUID] = mapped_column(PG_UUID(), primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    # Minor units (paise / cents).
    price_monthly: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    price_annual: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    billing_cycle: Mapped[str] = mapped_column(
        String(20), nullable=False, default="monthly"
    )
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="INR")
    features: Mapped[dict[str, Any]] = mapped_column(
        JSON().with_variant(JSONB, "postgresql"), nullable=False, default=dict
    )
    member_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    stripe_product_id: Mapped[str | None] = mapped_column(
        String(255), nullable=True, unique=True
    )
    razorpay_plan_id: Mapped[str | None] = mapped_column(
        String(255), nullable=True, unique=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )


class Subscription(Base):
    """
    A gym owner's billing relationship with a plan.

    Rows are never deleted here: cancellation is a status transition. At most
    one row exists per external provider subscription id.
    """

    __tablename__ = "subscriptions"

    id: Mapped[UUID] = mapped_column(PG_UUID(), primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(
        PG_UUID(),
        ForeignKey("profiles.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    gym_id: Mapped[UUID | None] = mapped_column(PG_UUID(), nullable=True, index=True)
    subscription_plan_id: Mapped[UUID | None] = mapped_column(
        PG_UUID(), ForeignKey("subscription_plans.id"), nullable=True
    )

    # trialing | active | past_due | paused | canceled | completed | pending
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="pending", index=True
    )
    # monthly | annual
    billing_cycle: Mapped[str] = mapped_column(
        String(20), nullable=False, default="monthly"
    )

    current_period_start: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    current_period_end: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    trial_start: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    trial_end: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # stripe | razorpay
    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    external_subscription_id: Mapped[str] = mapped_column(
        String(255), nullable=False, unique=True
    )
    external_customer_id: Mapped[str | None] = mapped_column(
        String(255), nullable=True, index=True
    )
    external_price_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    amount: Mapped[int | None] = mapped_column(Integer, nullable=True)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="INR")

    ends_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    canceled_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    paused_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    metadata_: Mapped[dict[str, Any]] = mapped_column(
        "metadata",
        JSON().with_variant(JSONB, "postgresql"),
        nullable=False,
        default=dict,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
