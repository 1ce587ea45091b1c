"""Failed delivery store used by the retry sweeper."""
import enum

from sqlalchemy import JSON, Column, DateTime, Enum as SQLEnum, Float, Integer, String, Uuid

from enrollment_webhooks.models.base import Base


class AttemptOutcome(enum.Enum):
    """Outcome of the most recent attempt of a logical delivery."""

    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    ABANDONED = "abandoned"


class DeliveryAttempt(Base):
    """
    Logical delivery that failed at least once.

    One row per logical delivery; attempt_number advances on each retry and
    scheduled_at holds the earliest time the sweeper may re-drive it.
    """

    __tablename__ = "webhook_delivery_attempts"

    delivery_id = Column(String(64), nullable=False, unique=True)
    webhook_id = Column(Uuid(as_uuid=True), nullable=False, index=True)
    event_type = Column(String(64), nullable=False)
    payload = Column(JSON, nullable=False)
    attempt_number = Column(Integer, nullable=False, default=1)
    scheduled_at = Column(DateTime, nullable=False, index=True)
    outcome = Column(SQLEnum(AttemptOutcome), nullable=False, default=AttemptOutcome.FAILED, index=True)
    http_status = Column(Integer, nullable=True)
    latency_ms = Column(Float, nullable=True)
    error = Column(String(500), nullable=True)

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"<DeliveryAttempt(delivery_id={self.delivery_id}, webhook_id={self.webhook_id}, "
            f"attempt={self.attempt_number}, outcome={self.outcome.value})>"
        )
