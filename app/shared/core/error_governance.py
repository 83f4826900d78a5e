"""
Unified Error Governance

Centrally handles exception classification, structured logging,
and OpenTelemetry span recording for every error response.
"""

from typing import Any, Dict, Optional
from uuid import uuid4

import structlog
from fastapi import Request
from fastapi.responses import JSONResponse
from opentelemetry import trace

from app.shared.core.config import get_settings
from app.shared.core.exceptions import GymflowException, WebhookProcessingError
from app.shared.core.ops_metrics import API_ERRORS_TOTAL

logger = structlog.get_logger()

# Codes whose message is safe to return verbatim in production.
SAFE_CODES = {
    "webhook_signature_invalid",
    "webhook_malformed",
    "webhook_processing_failed",
}


def handle_exception(
    request: Request, exc: Exception, error_id: Optional[str] = None
) -> JSONResponse:
    """
    Classifies and records exceptions, returning a standardized JSON response.
    """
    error_id = error_id or str(uuid4())
    is_prod = get_settings().is_production

    if isinstance(exc, GymflowException):
        app_exc = exc
        if is_prod and app_exc.code not in SAFE_CODES:
            app_exc.message = "An error occurred while processing your request"
    elif isinstance(exc, ValueError):
        app_exc = GymflowException(
            message="Invalid request parameters" if is_prod else str(exc),
            code="value_error",
            status_code=400,
        )
        logger.warning(
            "business_validation_error",
            error=str(exc),
            error_id=error_id,
            path=request.url.path,
        )
    else:
        # Always sanitize unhandled exceptions to avoid leaking secrets via message bodies.
        app_exc = GymflowException(
            message="An unexpected internal error occurred",
            code="internal_error",
            status_code=500,
        )
        logger.exception(
            "unhandled_raw_exception",
            error=str(exc),
            error_id=error_id,
            path=request.url.path,
        )

    span = trace.get_current_span()
    if span.is_recording():
        span.set_attribute("error.id", error_id)
        span.record_exception(exc)
        span.set_status(trace.Status(trace.StatusCode.ERROR, app_exc.code))

    API_ERRORS_TOTAL.labels(
        path=request.url.path,
        method=request.method,
        status_code=app_exc.status_code,
    ).inc()

    logger.error(
        "api_error",
        error_id=error_id,
        code=app_exc.code,
        message=app_exc.message,
        status_code=app_exc.status_code,
        path=request.url.path,
        details=app_exc.details,
    )

    # Webhook failures answer with the provider-facing body, not the envelope.
    if isinstance(app_exc, WebhookProcessingError):
        return JSONResponse(status_code=app_exc.status_code, content=app_exc.details)

    response_details: Optional[Dict[str, Any]] = app_exc.details or None
    if is_prod and app_exc.code not in SAFE_CODES:
        response_details = None

    return JSONResponse(
        status_code=app_exc.status_code,
        content={
            "error": app_exc.message,
            "code": app_exc.code,
            "id": error_id,
            "details": response_details,
        },
    )
