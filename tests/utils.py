"""Signed webhook payload builders shared by billing tests."""

import hashlib
import hmac
import json
import time
from typing import Any, Optional

STRIPE_WEBHOOK_SECRET = "whsec_test_gymflow_secret"
RAZORPAY_WEBHOOK_SECRET = "rzp_test_webhook_secret"


def stripe_signature(payload: bytes, secret: str = STRIPE_WEBHOOK_SECRET) -> str:
    """Build a `stripe-signature` header the SDK will accept."""
    timestamp = int(time.time())
    signed = f"{timestamp}.".encode() + payload
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def razorpay_signature(payload: bytes, secret: str = RAZORPAY_WEBHOOK_SECRET) -> str:
    return hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()


def encode(event: dict[str, Any]) -> bytes:
    return json.dumps(event, separators=(",", ":")).encode()


def stripe_event(
    event_type: str, obj: dict[str, Any], event_id: str = "evt_test_1"
) -> dict[str, Any]:
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": 1700000100,
        "data": {"object": obj},
    }


def stripe_subscription(
    sub_id: str = "sub_stripe_1",
    *,
    status: str = "active",
    customer: str = "cus_stripe_1",
    product: Any = "prod_pro",
    price_id: str = "price_pro_monthly",
    unit_amount: int = 49900,
    interval: str = "month",
    metadata: Optional[dict[str, Any]] = None,
    **extra: Any,
) -> dict[str, Any]:
    return {
        "id": sub_id,
        "object": "subscription",
        "status": status,
        "customer": customer,
        "currency": "inr",
        "current_period_start": 1700000000,
        "current_period_end": 1702592000,
        "metadata": metadata or {},
        "items": {
            "data": [
                {
                    "id": "si_1",
                    "price": {
                        "id": price_id,
                        "product": product,
                        "unit_amount": unit_amount,
                        "currency": "inr",
                        "recurring": {"interval": interval},
                    },
                }
            ]
        },
        **extra,
    }


def stripe_invoice(
    invoice_id: str = "in_1",
    *,
    subscription: Optional[str] = "sub_stripe_1",
    customer: str = "cus_stripe_1",
    amount_paid: int = 49900,
    number: Optional[str] = "GYM-0001",
    **extra: Any,
) -> dict[str, Any]:
    return {
        "id": invoice_id,
        "object": "invoice",
        "subscription": subscription,
        "customer": customer,
        "number": number,
        "amount_paid": amount_paid,
        "amount_due": amount_paid,
        "currency": "inr",
        "status": "paid",
        "invoice_pdf": f"https://pay.stripe.test/{invoice_id}.pdf",
        "hosted_invoice_url": f"https://pay.stripe.test/{invoice_id}",
        "created": 1700000000,
        "attempt_count": 1,
        **extra,
    }


def razorpay_subscription_event(
    event: str,
    sub_id: str = "sub_1",
    *,
    status: str = "active",
    plan_id: str = "plan_pro",
    customer_id: str = "cus_1",
    notes: Any = None,
    **extra: Any,
) -> dict[str, Any]:
    entity = {
        "id": sub_id,
        "entity": "subscription",
        "plan_id": plan_id,
        "customer_id": customer_id,
        "status": status,
        "current_start": 1700000000,
        "current_end": 1702592000,
        "notes": notes if notes is not None else [],
        **extra,
    }
    return {
        "entity": "event",
        "event": event,
        "contains": ["subscription"],
        "payload": {"subscription": {"entity": entity}},
        "created_at": 1700000100,
    }


def razorpay_payment_event(
    event: str,
    payment_id: str = "pay_1",
    *,
    subscription_id: Optional[str] = "sub_1",
    status: str = "captured",
    amount: int = 49900,
    **extra: Any,
) -> dict[str, Any]:
    entity = {
        "id": payment_id,
        "entity": "payment",
        "amount": amount,
        "currency": "INR",
        "status": status,
        "method": "upi",
        "captured": status == "captured",
        "email": "owner@gym.example",
        "created_at": 1700000000,
        "notes": {"subscriptionId": subscription_id} if subscription_id else [],
        **extra,
    }
    return {
        "entity": "event",
        "event": event,
        "contains": ["payment"],
        "payload": {"payment": {"entity": entity}},
        "created_at": 1700000100,
    }
