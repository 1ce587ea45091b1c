"""Per-webhook delivery metrics."""
from sqlalchemy import Column, DateTime, Float, Integer, String, Uuid

from enrollment_webhooks.models.base import Base

# Latency under this threshold earns the full latency component of the score
HEALTHY_LATENCY_MS = 1000.0

# Scores strictly above this are reported as healthy
HEALTHY_SCORE_THRESHOLD = 0.8


class WebhookMetrics(Base):
    """
    Rolling delivery counters for one webhook.

    Written only by the delivery worker, one UPDATE per attempt.
    """

    __tablename__ = "webhook_metrics"

    webhook_id = Column(Uuid(as_uuid=True), nullable=False, unique=True, index=True)
    total_deliveries = Column(Integer, nullable=False, default=0)
    successful_deliveries = Column(Integer, nullable=False, default=0)
    average_latency_ms = Column(Float, nullable=False, default=0.0)
    last_attempt_at = Column(DateTime, nullable=True)
    last_success_at = Column(DateTime, nullable=True)
    last_failure_at = Column(DateTime, nullable=True)
    last_http_status = Column(Integer, nullable=True)
    last_error = Column(String(500), nullable=True)

    @property
    def health_score(self) -> float:
        return compute_health_score(
            self.total_deliveries or 0,
            self.successful_deliveries or 0,
            self.average_latency_ms or 0.0,
        )

    @property
    def health_status(self) -> str:
        return health_status(self.health_score)

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"<WebhookMetrics(webhook_id={self.webhook_id}, total={self.total_deliveries}, "
            f"successful={self.successful_deliveries})>"
        )


def compute_health_score(total: int, successful: int, average_latency_ms: float) -> float:
    """
    Derive a 0..1 health score from delivery counters.

    70% weight on success rate, 30% on latency (full marks under one second).
    """
    if total <= 0:
        return 1.0

    success_rate = min(max(successful / total, 0.0), 1.0)
    latency_score = 1.0 if average_latency_ms < HEALTHY_LATENCY_MS else 0.5
    score = (success_rate * 0.7) + (latency_score * 0.3)
    return round(min(max(score, 0.0), 1.0), 4)


def health_status(score: float) -> str:
    """``healthy`` above the threshold, ``degraded`` otherwise."""
    return "healthy" if score > HEALTHY_SCORE_THRESHOLD else "degraded"
