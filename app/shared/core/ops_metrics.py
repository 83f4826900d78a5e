"""
Operational metrics for the billing webhook service.

Prometheus counters and histograms for webhook throughput, reconciliation
outcomes, and API error rates.
"""

from prometheus_client import Counter, Histogram

# --- API Metrics ---
API_ERRORS_TOTAL = Counter(
    "gymflow_ops_api_errors_total",
    "Total number of API errors by status code and path",
    ["path", "method", "status_code"],
)

# --- Billing Webhook Metrics ---
BILLING_WEBHOOKS_TOTAL = Counter(
    "gymflow_billing_webhooks_total",
    "Billing webhooks processed by provider, event type and outcome",
    ["provider", "event_type", "outcome"],
)

BILLING_WEBHOOK_DURATION = Histogram(
    "gymflow_billing_webhook_duration_seconds",
    "Time spent reconciling a billing webhook",
    ["provider", "outcome"],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10),
)

BILLING_WEBHOOK_SIGNATURE_FAILURES = Counter(
    "gymflow_billing_webhook_signature_failures_total",
    "Billing webhooks rejected during signature verification",
    ["provider", "reason"],
)

BILLING_USER_RESOLUTION_FAILURES = Counter(
    "gymflow_billing_user_resolution_failures_total",
    "Billing events whose owning user could not be resolved",
    ["provider"],
)

BILLING_DOCUMENTS_ARCHIVED = Counter(
    "gymflow_billing_documents_archived_total",
    "Invoice/receipt archive attempts by outcome",
    ["provider", "outcome"],
)
