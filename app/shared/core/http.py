"""
Async HTTP Client Shared Infrastructure

Ensures singleton httpx.AsyncClient usage across the FastAPI lifespan so
provider lookups reuse pooled connections.
"""

from typing import Optional

import httpx
import structlog

logger = structlog.get_logger()

_client: Optional[httpx.AsyncClient] = None


def _build_client(timeout: float) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        timeout=httpx.Timeout(timeout, connect=5.0),
        limits=httpx.Limits(max_connections=100, max_keepalive_connections=20),
        headers={"User-Agent": "Gymflow-Billing/0.1"},
    )


def get_http_client(timeout: Optional[float] = None) -> httpx.AsyncClient:
    """
    Returns the global shared httpx.AsyncClient, creating it lazily when the
    lifespan hook has not run (scripts, tests).
    """
    global _client
    if _client is None or _client.is_closed:
        logger.warning(
            "http_client_lazy_initialized",
            msg="Client was not pre-initialized",
        )
        _client = _build_client(timeout or 20.0)
    return _client


async def init_http_client() -> None:
    """Initializes the global httpx.AsyncClient."""
    global _client
    if _client is not None and not _client.is_closed:
        logger.warning("http_client_already_initialized")
        return

    from app.shared.core.config import get_settings

    _client = _build_client(get_settings().PROVIDER_HTTP_TIMEOUT_SECONDS)
    logger.info("http_client_initialized")


async def close_http_client() -> None:
    """Gracefully shuts down the global client, flushing its connection pool."""
    global _client
    if _client is not None:
        await _client.aclose()
        _client = None
        logger.info("http_client_closed")
