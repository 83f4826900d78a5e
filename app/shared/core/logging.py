import logging
import re
import sys
from typing import Any, cast

import structlog
from structlog.tracebacks import ExceptionDictTransformer

from app.shared.core.config import get_settings

_EMAIL_REGEX = re.compile(r"[a-zA-Z0-9_.+-]+@[a-zA-Z0-9-]+\.[a-zA-Z0-9-.]+")
_PII_FIELDS = {
    "password",
    "token",
    "secret",
    "authorization",
    "api_key",
    "apikey",
    "access_token",
    "refresh_token",
    "client_secret",
    "private_key",
    "webhook_secret",
    "card_number",
}
_PII_SUFFIXES = ("_token", "_secret", "_password", "_key")
_PII_CONTAINS = ("authorization", "secret", "token", "apikey", "api_key")


def _is_sensitive_key(key: Any) -> bool:
    key_norm = str(key).lower().strip().replace("-", "_")
    if key_norm in _PII_FIELDS:
        return True
    if key_norm.endswith(_PII_SUFFIXES):
        return True
    tokens = [t for t in re.split(r"[^a-z0-9]+", key_norm) if t]
    if any(t in _PII_FIELDS for t in tokens):
        return True
    return any(fragment in key_norm for fragment in _PII_CONTAINS)


def _redact(data: Any) -> Any:
    if isinstance(data, dict):
        return {
            k: ("[REDACTED]" if _is_sensitive_key(k) else _redact(v))
            for k, v in data.items()
        }
    if isinstance(data, list):
        return [_redact(item) for item in data]
    if isinstance(data, str):
        return _EMAIL_REGEX.sub("[EMAIL_REDACTED]", data)
    return data


def pii_redactor(
    _logger: Any, _method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """
    Recursively redact customer emails and credential-like fields from logs.
    Billing payloads carry both, so this runs before any renderer.
    """
    redacted = _redact(event_dict)
    if isinstance(redacted, dict):
        return cast(dict[str, Any], redacted)
    return {}


def add_otel_trace_id(
    _logger: Any, _method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Integrate OTel Trace IDs into structured logs."""
    from app.shared.core.tracing import get_current_trace_id

    trace_id = get_current_trace_id()
    if trace_id:
        event_dict["trace_id"] = trace_id
    return event_dict


def build_processors(debug: bool) -> list[Any]:
    """
    Exceptions are rendered to plain data before `pii_redactor` runs, so
    tracebacks and driver messages (SQL bind parameters) are redacted too.
    Frame locals are never included.
    """
    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        add_otel_trace_id,
    ]
    if debug:
        return processors + [
            structlog.processors.format_exc_info,
            pii_redactor,
            structlog.dev.ConsoleRenderer(),
        ]
    return processors + [
        structlog.processors.ExceptionRenderer(
            ExceptionDictTransformer(show_locals=False)
        ),
        pii_redactor,
        structlog.processors.JSONRenderer(),
    ]


def setup_logging() -> None:
    settings = get_settings()

    processors = build_processors(settings.DEBUG)
    min_level = logging.DEBUG if settings.DEBUG else logging.INFO

    structlog.configure(
        processors=cast(Any, processors),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        # Cached loggers would bypass structlog.testing.capture_logs in tests.
        cache_logger_on_first_use=not settings.TESTING,
    )

    # Route library logs (uvicorn, sqlalchemy) through the same stream.
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=min_level,
    )


def audit_log(
    event: str,
    user_id: str | None,
    provider: str,
    details: dict[str, Any] | None = None,
) -> None:
    """
    Standardized helper for billing audit events that do not produce a
    subscription_events row (failed deliveries, rejected signatures).
    """
    logger = structlog.get_logger("audit")
    logger.info(
        event,
        user_id=str(user_id) if user_id else None,
        provider=provider,
        metadata=details or {},
    )
