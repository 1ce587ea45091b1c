"""Base model with common fields for all entities."""
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import Column, DateTime, Uuid

from enrollment_webhooks.database import Base as DeclarativeBase


def utcnow() -> datetime:
    """Naive UTC timestamp, the representation stored in every DateTime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    """Base model class with common fields."""

    __abstract__ = True

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4, index=True)
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
