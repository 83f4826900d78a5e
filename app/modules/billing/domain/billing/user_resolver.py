"""Resolves the internal owner of a billing event."""

from __future__ import annotations

from typing import Callable, Optional
from uuid import UUID

from app.shared.core.exceptions import GymflowException
from app.shared.core.ops_metrics import BILLING_USER_RESOLUTION_FAILURES

from .billing_shared import Provider, email_hash, logger
from .provider_clients import CustomerLookup, get_customer_lookup
from .repository import SubscriptionRepository


class UserResolver:
    """
    Fallback chain, first success wins:

    1. user id carried in event metadata / notes, if that profile exists
    2. customer email from the event, looked up in profiles
    3. customer fetched from the provider API, then the email lookup again
    """

    def __init__(
        self,
        repository: SubscriptionRepository,
        provider: Provider,
        lookup_factory: Callable[[Provider], CustomerLookup] = get_customer_lookup,
    ):
        self.repository = repository
        self.provider = provider
        self._lookup_factory = lookup_factory

    async def resolve(
        self,
        user_id: Optional[str] = None,
        customer_id: Optional[str] = None,
        email: Optional[str] = None,
    ) -> Optional[UUID]:
        attempted: list[str] = []

        if user_id:
            attempted.append("metadata")
            candidate = self._parse_user_id(user_id)
            if candidate is not None:
                if await self.repository.profile_exists(candidate):
                    return candidate
                logger.warning(
                    "billing_metadata_user_not_found",
                    provider=self.provider.value,
                    user_id=str(candidate),
                )

        if email:
            attempted.append("email_lookup")
            resolved = await self.repository.get_user_id_by_email(email)
            if resolved:
                return resolved

        if customer_id:
            attempted.append("provider_customer_lookup")
            provider_email = await self._fetch_provider_email(customer_id)
            if provider_email:
                resolved = await self.repository.get_user_id_by_email(provider_email)
                if resolved:
                    logger.info(
                        "billing_user_resolved_via_provider_customer",
                        provider=self.provider.value,
                        customer_id=customer_id,
                        email_hash=email_hash(provider_email),
                    )
                    return resolved

        BILLING_USER_RESOLUTION_FAILURES.labels(provider=self.provider.value).inc()
        logger.error(
            "billing_user_resolution_failed",
            provider=self.provider.value,
            customer_id=customer_id,
            email_hash=email_hash(email),
            attempted_methods=attempted,
        )
        return None

    def _parse_user_id(self, user_id: str) -> Optional[UUID]:
        try:
            return UUID(str(user_id))
        except ValueError:
            logger.warning(
                "billing_invalid_user_id_in_metadata",
                provider=self.provider.value,
                user_id=str(user_id)[:64],
            )
            return None

    async def _fetch_provider_email(self, customer_id: str) -> Optional[str]:
        try:
            lookup = self._lookup_factory(self.provider)
            return await lookup.fetch_customer_email(customer_id)
        except GymflowException as exc:
            # Lookup failure degrades to "not found" so the provider stops retrying.
            logger.warning(
                "billing_provider_customer_lookup_failed",
                provider=self.provider.value,
                customer_id=customer_id,
                error=exc.message,
            )
            return None
