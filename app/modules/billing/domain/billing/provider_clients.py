"""Outbound billing-provider API calls used for customer email fallback."""

from __future__ import annotations

import asyncio
from typing import Any, Optional, Protocol

import httpx
import stripe

from app.shared.core.config import get_settings
from app.shared.core.exceptions import ConfigurationError, ProviderAPIError
from app.shared.core.http import get_http_client

from .billing_shared import Provider, logger


class CustomerLookup(Protocol):
    async def fetch_customer_email(self, customer_id: str) -> Optional[str]: ...


class StripeCustomerClient:
    """Retrieves Stripe customers through the blocking SDK off the event loop."""

    def __init__(self) -> None:
        settings = get_settings()
        if not settings.STRIPE_SECRET_KEY:
            raise ConfigurationError("STRIPE_SECRET_KEY not configured")
        self._options: dict[str, Any] = {"api_key": settings.STRIPE_SECRET_KEY}
        if settings.STRIPE_API_VERSION:
            self._options["stripe_version"] = settings.STRIPE_API_VERSION

    async def fetch_customer_email(self, customer_id: str) -> Optional[str]:
        try:
            customer = await asyncio.to_thread(
                stripe.Customer.retrieve, customer_id, **self._options
            )
        except stripe.StripeError as exc:
            logger.error(
                "stripe_api_error", endpoint="customers", error=str(exc)
            )
            raise ProviderAPIError(
                "Stripe customer lookup failed",
                details={"customer_id": customer_id},
            ) from exc

        if getattr(customer, "deleted", False):
            logger.info("stripe_customer_deleted", customer_id=customer_id)
            return None
        return getattr(customer, "email", None) or None


class RazorpayClient:
    """Async wrapper for the Razorpay REST API."""

    def __init__(self) -> None:
        settings = get_settings()
        if not settings.RAZORPAY_KEY_ID or not settings.RAZORPAY_KEY_SECRET:
            raise ConfigurationError("RAZORPAY_KEY_ID/RAZORPAY_KEY_SECRET not configured")

        self.base_url = settings.RAZORPAY_API_BASE_URL.rstrip("/")
        self.auth = httpx.BasicAuth(settings.RAZORPAY_KEY_ID, settings.RAZORPAY_KEY_SECRET)
        self.timeout = settings.PROVIDER_HTTP_TIMEOUT_SECONDS

    async def _request(self, method: str, endpoint: str) -> dict[str, Any]:
        client = get_http_client()
        try:
            response = await client.request(
                method,
                f"{self.base_url}/{endpoint}",
                auth=self.auth,
                timeout=self.timeout,
            )
            response.raise_for_status()
            payload = response.json()
            if not isinstance(payload, dict):
                raise ValueError("Invalid Razorpay response payload type")
            return payload
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("razorpay_api_error", endpoint=endpoint, error=str(exc))
            raise ProviderAPIError(
                "Razorpay API request failed", details={"endpoint": endpoint}
            ) from exc

    async def fetch_customer(self, customer_id: str) -> dict[str, Any]:
        """Fetch customer details."""
        return await self._request("GET", f"customers/{customer_id}")

    async def fetch_customer_email(self, customer_id: str) -> Optional[str]:
        customer = await self.fetch_customer(customer_id)
        return customer.get("email") or None


def get_customer_lookup(provider: Provider) -> CustomerLookup:
    if provider == Provider.STRIPE:
        return StripeCustomerClient()
    return RazorpayClient()
