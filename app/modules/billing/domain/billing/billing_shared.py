"""Shared runtime state and primitives for the billing webhook modules."""

from __future__ import annotations

import hashlib
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

import structlog

logger = structlog.get_logger()


class Provider(str, Enum):
    STRIPE = "stripe"
    RAZORPAY = "razorpay"


class SubscriptionStatus(str, Enum):
    """Internal subscription statuses, shared by every provider."""

    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    PAUSED = "paused"
    CANCELED = "canceled"
    COMPLETED = "completed"
    PENDING = "pending"


class BillingCycle(str, Enum):
    MONTHLY = "monthly"
    ANNUAL = "annual"


def billing_cycle_from_interval(interval: Optional[str]) -> Optional[BillingCycle]:
    """Provider recurring interval -> internal cycle. `year` is the only annual value."""
    if not interval:
        return None
    if interval.strip().lower() == "year":
        return BillingCycle.ANNUAL
    return BillingCycle.MONTHLY


def email_hash(email: Optional[str]) -> Optional[str]:
    if not email:
        return None
    return hashlib.sha256(email.strip().lower().encode()).hexdigest()[:12]


def epoch_to_datetime(value: Any) -> Optional[datetime]:
    """Convert provider epoch seconds to an aware UTC datetime."""
    if value is None or isinstance(value, bool):
        return None
    try:
        seconds = int(value)
    except (TypeError, ValueError):
        logger.warning("billing_invalid_epoch_timestamp", value=str(value)[:32])
        return None
    if seconds <= 0:
        return None
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
