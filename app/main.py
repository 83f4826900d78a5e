from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator

from app.shared.core.app_routes import register_api_routers, register_lifecycle_routes
from app.shared.core.config import get_settings, reload_settings_from_environment
from app.shared.core.error_governance import handle_exception
from app.shared.core.exceptions import GymflowException
from app.shared.core.http import close_http_client, init_http_client
from app.shared.core.logging import setup_logging
from app.shared.core.middleware import RequestIDMiddleware
from app.shared.core.ops_metrics import API_ERRORS_TOTAL
from app.shared.core.tracing import setup_tracing
from app.shared.db.session import get_engine

setup_logging()
settings = get_settings()
logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    global settings
    settings = reload_settings_from_environment()
    logger.info("app_starting", app_name=settings.APP_NAME, environment=settings.ENVIRONMENT)

    await init_http_client()

    yield

    logger.info("app_shutting_down")

    # Close HTTP pool first (prevents new provider lookups while shutting down)
    await close_http_client()

    await get_engine().dispose()
    logger.info("db_engine_disposed")


# Application instance
gymflow_app = FastAPI(
    title=settings.APP_NAME,
    version=settings.VERSION,
    lifespan=lifespan,
)
# Uvicorn looks for `app` by default.
app: FastAPI = gymflow_app  # noqa: A001

__all__ = ["app", "gymflow_app", "lifespan"]

setup_tracing(gymflow_app)


@gymflow_app.exception_handler(GymflowException)
async def gymflow_exception_handler(
    request: Request, exc: GymflowException
) -> JSONResponse:
    """Handle custom application exceptions."""
    return handle_exception(request, exc)


@gymflow_app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handle FastAPI HTTP exceptions with standardized format."""
    detail_text = str(exc.detail) if isinstance(exc.detail, str) else "Request failed"
    if settings.is_production and exc.status_code >= 500:
        detail_text = "An unexpected internal error occurred"

    API_ERRORS_TOTAL.labels(
        path=request.url.path, method=request.method, status_code=exc.status_code
    ).inc()
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": detail_text, "code": "HTTP_ERROR"},
    )


@gymflow_app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Sanitized 500 for anything that escaped a handler, with trace correlation."""
    return handle_exception(request, exc)


register_lifecycle_routes(
    gymflow_app,
    app_name=settings.APP_NAME,
    version=settings.VERSION,
)

# Initialize Prometheus Metrics
Instrumentator().instrument(gymflow_app).expose(gymflow_app)

gymflow_app.add_middleware(RequestIDMiddleware)

register_api_routers(gymflow_app)
