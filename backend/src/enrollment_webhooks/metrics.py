"""Webhook delivery metrics for Prometheus monitoring."""
from prometheus_client import Counter, Histogram

# Registry metrics
webhooks_registered_total = Counter(
    "webhooks_registered_total",
    "Total webhook subscriptions registered",
)

webhooks_deleted_total = Counter(
    "webhooks_deleted_total",
    "Total webhook subscriptions soft-deleted",
)

webhook_secrets_rotated_total = Counter(
    "webhook_secrets_rotated_total",
    "Total webhook secret rotations",
)

# Delivery metrics
webhook_deliveries_total = Counter(
    "webhook_deliveries_total",
    "Total webhook delivery attempts by outcome",
    labelnames=["event_type", "outcome"],  # outcome: delivered, failed, skipped, circuit_broken, rate_limited
)

webhook_delivery_duration_seconds = Histogram(
    "webhook_delivery_duration_seconds",
    "Outbound webhook request duration in seconds",
    labelnames=["event_type"],
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
)

webhook_circuit_opened_total = Counter(
    "webhook_circuit_opened_total",
    "Total times a webhook circuit breaker opened",
)

# Retry metrics
webhooks_retry_total = Counter(
    "webhooks_retry_total",
    "Total webhook retry attempts",
    labelnames=["event_type"],
)

webhooks_abandoned_total = Counter(
    "webhooks_abandoned_total",
    "Total webhook deliveries abandoned after exhausting retries",
    labelnames=["reason"],  # reason: max_attempts, expired
)

webhook_signature_failures_total = Counter(
    "webhook_signature_failures_total",
    "Total inbound signature verifications rejected",
)
