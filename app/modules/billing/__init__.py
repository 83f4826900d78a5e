from app.modules.billing.api.v1.webhooks import router
from app.modules.billing.domain.billing import (
    NormalizedBillingEvent,
    SubscriptionReconciler,
    WebhookDispatcher,
)

__all__ = [
    "router",
    "NormalizedBillingEvent",
    "SubscriptionReconciler",
    "WebhookDispatcher",
]
