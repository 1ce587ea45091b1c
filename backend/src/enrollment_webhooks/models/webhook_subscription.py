"""Webhook subscription model."""
import enum

from sqlalchemy import JSON, Column, DateTime, Enum as SQLEnum, String

from enrollment_webhooks.models.base import Base


class SubscriptionStatus(enum.Enum):
    """Subscription lifecycle status."""

    ACTIVE = "active"
    DELETED = "deleted"


class WebhookSubscription(Base):
    """
    A registered (url, events, secret) tuple receiving signed callbacks.

    Rows are never hard-deleted; deletion flips the status and stamps deleted_at.
    """

    __tablename__ = "webhook_subscriptions"

    url = Column(String(2048), nullable=False)
    events = Column(JSON, nullable=False, default=list)  # list of WebhookEventType values
    secret = Column(String(255), nullable=False)
    config = Column(JSON, nullable=False, default=dict)  # serialized WebhookOptions
    status = Column(SQLEnum(SubscriptionStatus), nullable=False, default=SubscriptionStatus.ACTIVE, index=True)
    secret_rotated_at = Column(DateTime, nullable=True)
    deleted_at = Column(DateTime, nullable=True)

    @property
    def is_active(self) -> bool:
        return self.status == SubscriptionStatus.ACTIVE

    def __repr__(self) -> str:
        """String representation."""
        return f"<WebhookSubscription(id={self.id}, url={self.url}, status={self.status.value})>"
