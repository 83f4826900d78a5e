"""
Billing Webhook Endpoints

Provides:
- POST /webhooks/stripe - Stripe subscription/invoice/customer events
- POST /webhooks/razorpay - Razorpay subscription/payment events

Signatures are verified on the raw body before anything is parsed. Error
responses are rendered by the application's GymflowException handler.
"""

import json
import time
from typing import Any, Dict

import structlog
from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.modules.billing.domain.billing import (
    Provider,
    WebhookDispatcher,
    parse_razorpay_event,
    parse_stripe_event,
    verify_razorpay_signature,
    verify_stripe_event,
)
from app.shared.core.exceptions import MalformedWebhookError
from app.shared.db.session import get_db

logger = structlog.get_logger()
router = APIRouter(tags=["Billing Webhooks"])


@router.post("/stripe")
async def handle_stripe_webhook(
    request: Request, db: AsyncSession = Depends(get_db)
) -> Dict[str, Any]:
    started_at = time.perf_counter()
    payload = await request.body()
    envelope = verify_stripe_event(payload, request.headers.get("stripe-signature"))

    event = parse_stripe_event(envelope)
    return await WebhookDispatcher(db, Provider.STRIPE).dispatch(event, started_at)


@router.post("/razorpay")
async def handle_razorpay_webhook(
    request: Request, db: AsyncSession = Depends(get_db)
) -> Dict[str, Any]:
    started_at = time.perf_counter()
    payload = await request.body()
    verify_razorpay_signature(payload, request.headers.get("x-razorpay-signature"))

    try:
        envelope = json.loads(payload)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        logger.error("razorpay_webhook_invalid_json", payload_len=len(payload))
        raise MalformedWebhookError("Invalid JSON payload") from exc
    if not isinstance(envelope, dict):
        raise MalformedWebhookError("Webhook payload must be a JSON object")

    event = parse_razorpay_event(envelope, request.headers.get("x-razorpay-event-id"))
    return await WebhookDispatcher(db, Provider.RAZORPAY).dispatch(event, started_at)
