"""Webhook signature verification for Stripe and Razorpay."""

from __future__ import annotations

import hashlib
import hmac
import json
from typing import Any, NoReturn, Optional

import stripe

from app.shared.core.config import get_settings
from app.shared.core.exceptions import ConfigurationError, WebhookSignatureError
from app.shared.core.ops_metrics import BILLING_WEBHOOK_SIGNATURE_FAILURES

from .billing_shared import Provider, logger


def _truncate(signature: Optional[str]) -> Optional[str]:
    if not signature:
        return None
    return signature[:8] + "..."


def _reject(
    provider: Provider, reason: str, signature: Optional[str], **extra: Any
) -> NoReturn:
    BILLING_WEBHOOK_SIGNATURE_FAILURES.labels(
        provider=provider.value, reason=reason
    ).inc()
    logger.error(
        "billing_webhook_invalid_signature",
        provider=provider.value,
        reason=reason,
        provided_sig=_truncate(signature),
        **extra,
    )
    raise WebhookSignatureError()


def verify_stripe_event(payload: bytes, signature: Optional[str]) -> dict[str, Any]:
    """
    Authenticate a Stripe webhook and return the parsed event envelope.

    The SDK checks the `stripe-signature` header (HMAC plus timestamp tolerance);
    any exception it raises counts as a verification failure.
    """
    secret = get_settings().STRIPE_WEBHOOK_SECRET
    if not secret:
        logger.error("stripe_webhook_secret_not_configured")
        raise ConfigurationError("Webhook secret not configured")

    if not signature:
        _reject(Provider.STRIPE, "missing_header", signature)

    try:
        stripe.Webhook.construct_event(payload, signature, secret)
    except Exception as exc:
        _reject(
            Provider.STRIPE,
            "mismatch",
            signature,
            error_type=type(exc).__name__,
        )

    try:
        event = json.loads(payload)
    except (json.JSONDecodeError, UnicodeDecodeError):
        _reject(Provider.STRIPE, "malformed_body", signature, payload_len=len(payload))
    if not isinstance(event, dict):
        _reject(Provider.STRIPE, "malformed_body", signature, payload_len=len(payload))
    return event


def verify_razorpay_signature(payload: bytes, signature: Optional[str]) -> None:
    """Verify a Razorpay webhook using hex HMAC-SHA256 over the raw body."""
    secret = get_settings().RAZORPAY_WEBHOOK_SECRET
    if not secret:
        logger.error("razorpay_webhook_secret_not_configured")
        raise ConfigurationError("Webhook secret not configured")

    if not signature:
        _reject(Provider.RAZORPAY, "missing_header", signature)

    expected = hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(expected.encode(), signature.strip().encode()):
        _reject(Provider.RAZORPAY, "mismatch", signature)
