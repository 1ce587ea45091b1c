"""SQLAlchemy ORM models for the webhook delivery service."""
# Import all models here to ensure they are registered with Alembic

from enrollment_webhooks.models.base import Base, utcnow
from enrollment_webhooks.models.webhook_subscription import WebhookSubscription, SubscriptionStatus
from enrollment_webhooks.models.delivery_attempt import DeliveryAttempt, AttemptOutcome
from enrollment_webhooks.models.webhook_metrics import WebhookMetrics, compute_health_score
from enrollment_webhooks.models.audit_log import AuditLog

__all__ = [
    "Base",
    "utcnow",
    "WebhookSubscription",
    "SubscriptionStatus",
    "DeliveryAttempt",
    "AttemptOutcome",
    "WebhookMetrics",
    "compute_health_score",
    "AuditLog",
]
