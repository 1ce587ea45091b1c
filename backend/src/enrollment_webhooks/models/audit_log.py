"""Audit log model for tracking subscription changes."""
from sqlalchemy import JSON, Column, String, Uuid

from enrollment_webhooks.models.base import Base


class AuditLog(Base):
    """
    Audit log for compliance.

    Tracks registry mutations and abandoned deliveries. Secrets are never stored here.
    """

    __tablename__ = "webhook_audit_logs"

    entity_type = Column(String, nullable=False, index=True)  # webhook, delivery
    entity_id = Column(Uuid(as_uuid=True), nullable=False, index=True)
    action = Column(String, nullable=False)  # register, update, delete, rotate_secret, abandon
    changes = Column(JSON, nullable=False, default=dict)  # {field: {old: X, new: Y}}
    request_id = Column(String, nullable=True)  # Correlation ID from request

    def __repr__(self) -> str:
        """String representation."""
        return f"<AuditLog(entity_type={self.entity_type}, entity_id={self.entity_id}, action={self.action})>"
