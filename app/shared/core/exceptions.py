from typing import Any, Dict, Optional


class GymflowException(Exception):
    """Base exception for all Gymflow billing errors."""

    def __init__(
        self,
        message: str,
        code: str = "internal_error",
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}


class ConfigurationError(GymflowException):
    """Raised when application configuration is invalid or missing."""

    def __init__(
        self,
        message: str,
        code: str = "config_error",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, code=code, status_code=500, details=details)


class BillingError(GymflowException):
    """Raised when payment or subscription processing fails."""

    def __init__(
        self,
        message: str,
        code: str = "billing_error",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, code=code, status_code=400, details=details)


class WebhookSignatureError(BillingError):
    """Raised when a webhook body cannot be authenticated."""

    def __init__(self, message: str = "Webhook signature verification failed"):
        super().__init__(message, code="webhook_signature_invalid")


class MalformedWebhookError(BillingError):
    """Raised when a verified webhook body is not a usable event envelope."""

    def __init__(
        self, message: str, details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, code="webhook_malformed", details=details)


class ProviderAPIError(GymflowException):
    """Raised when a billing provider API call fails."""

    def __init__(
        self,
        message: str,
        code: str = "provider_api_error",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, code=code, status_code=502, details=details)


class WebhookProcessingError(GymflowException):
    """
    Raised by the dispatcher when a handler fails after signature verification.
    `details` is the response body returned to the provider.
    """

    def __init__(self, event_type: str, processing_time_ms: int):
        super().__init__(
            "Webhook processing failed",
            code="webhook_processing_failed",
            status_code=500,
            details={
                "error": "Webhook processing failed",
                "event_type": event_type,
                "processing_time_ms": processing_time_ms,
            },
        )
