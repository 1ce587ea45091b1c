"""Pydantic schemas for webhook subscriptions and deliveries."""
import enum
from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator


class WebhookEventType(str, enum.Enum):
    """Domain events a subscriber can listen for."""

    ENROLLMENT_CREATED = "enrollment.created"
    ENROLLMENT_UPDATED = "enrollment.updated"
    ENROLLMENT_COMPLETED = "enrollment.completed"
    DOCUMENT_UPLOADED = "document.uploaded"
    DOCUMENT_PROCESSED = "document.processed"
    INTERVIEW_SCHEDULED = "interview.scheduled"
    INTERVIEW_COMPLETED = "interview.completed"


SUPPORTED_EVENTS: list[str] = [event.value for event in WebhookEventType]

# Headers set by the delivery worker that subscriber config may not override
RESERVED_HEADER_PREFIXES = ("x-webhook-", "content-type", "user-agent", "x-request-id")


class WebhookOptions(BaseModel):
    """Recognized per-subscription delivery options."""

    model_config = ConfigDict(extra="forbid")

    headers: dict[str, str] = Field(default_factory=dict, description="Custom headers sent with every delivery")
    timeout_seconds: float | None = Field(default=None, ge=1, le=30, description="Request timeout override")
    description: str | None = Field(default=None, max_length=255, description="Free-text description")

    @field_validator("headers")
    @classmethod
    def _reject_reserved_headers(cls, value: dict[str, str]) -> dict[str, str]:
        for name in value:
            if name.lower().startswith(RESERVED_HEADER_PREFIXES):
                raise ValueError(f"Header {name} is set by the platform and cannot be overridden")
        return value


class WebhookCreate(BaseModel):
    """Schema for registering a webhook subscription.

    Examples:
        ```json
        {
            "url": "https://partner.example.com/hooks/enrollment",
            "events": ["enrollment.created", "enrollment.completed"],
            "config": {"headers": {"X-Partner-Key": "abc123"}}
        }
        ```
    """

    url: str = Field(..., min_length=1, max_length=2048, description="HTTPS endpoint receiving deliveries")
    events: list[str] = Field(..., description="Event types to subscribe to")
    secret: str | None = Field(default=None, min_length=32, max_length=255, description="Signing secret")
    config: WebhookOptions | None = Field(default=None, description="Delivery options")

    model_config = ConfigDict(
        json_schema_extra={
            "examples": [
                {
                    "url": "https://partner.example.com/hooks/enrollment",
                    "events": ["enrollment.created", "enrollment.completed"],
                }
            ]
        }
    )


class WebhookUpdate(BaseModel):
    """Schema for partially updating a webhook subscription."""

    url: str | None = Field(default=None, min_length=1, max_length=2048)
    events: list[str] | None = None
    config: WebhookOptions | None = None


class WebhookRegistered(BaseModel):
    """Registration response; the only payload that carries the secret."""

    webhook_id: UUID
    secret: str
    supported_events: list[str]


class Webhook(BaseModel):
    """Schema for returning a webhook subscription (never includes the secret)."""

    id: UUID
    url: str
    events: list[str]
    config: WebhookOptions
    status: str
    secret_rotated_at: datetime | None
    created_at: datetime
    updated_at: datetime

    @field_validator("status", mode="before")
    @classmethod
    def _status_value(cls, value: Any) -> Any:
        return getattr(value, "value", value)

    model_config = ConfigDict(from_attributes=True)


class WebhookList(BaseModel):
    """Schema for paginated webhook list."""

    items: list[Webhook]
    total: int
    page: int
    page_size: int


class WebhookDeleted(BaseModel):
    """Response for a (soft) delete."""

    webhook_id: UUID
    deleted: bool = True


class SecretRotated(BaseModel):
    """Response for secret rotation."""

    webhook_id: UUID
    new_secret: str


class HealthMetrics(BaseModel):
    """Rolling delivery metrics for a webhook."""

    total_deliveries: int
    successful_deliveries: int
    average_latency: float = Field(..., description="Average latency of successful deliveries in ms")
    health_score: float = Field(..., ge=0, le=1)
    status: Literal["healthy", "degraded"] = Field(..., description="healthy when health_score is above 0.8")


class DeliveryStatus(BaseModel):
    """Circuit and retry state for a webhook."""

    circuit_state: str
    consecutive_failures: int
    circuit_opened_at: datetime | None
    pending_retries: int
    abandoned_deliveries: int
    last_attempt_at: datetime | None
    last_success_at: datetime | None
    last_failure_at: datetime | None
    last_http_status: int | None
    last_error: str | None


class DeliveryStatusResponse(BaseModel):
    """Response for the delivery status endpoint."""

    delivery_status: DeliveryStatus
    health_metrics: HealthMetrics


class DeliveryTestRequest(BaseModel):
    """Body of a synchronous test delivery."""

    event: WebhookEventType = Field(default=WebhookEventType.ENROLLMENT_CREATED)
    payload: dict[str, Any] = Field(default_factory=dict)


class DeliveryResultRead(BaseModel):
    """Outcome of one delivery attempt."""

    webhook_id: UUID
    delivery_id: str | None
    outcome: str
    attempt_number: int
    http_status: int | None
    latency_ms: float | None
    error: str | None


class DispatchRequest(BaseModel):
    """Domain event submitted by the enrollment platform."""

    event: str = Field(..., min_length=1, description="Event type")
    payload: dict[str, Any] = Field(default_factory=dict, description="Event payload")


class DispatchReportRead(BaseModel):
    """Aggregate result of fanning an event out to subscribers."""

    event: str
    matched: int
    delivered: int
    failed: int
    skipped: int
    circuit_broken: int
    rate_limited: int
    results: list[DeliveryResultRead]


class FailedDelivery(BaseModel):
    """A row of the failure store."""

    id: UUID
    delivery_id: str
    webhook_id: UUID
    event_type: str
    attempt_number: int
    scheduled_at: datetime
    outcome: str
    http_status: int | None
    latency_ms: float | None
    error: str | None
    created_at: datetime
    updated_at: datetime

    @field_validator("outcome", mode="before")
    @classmethod
    def _outcome_value(cls, value: Any) -> Any:
        return getattr(value, "value", value)

    model_config = ConfigDict(from_attributes=True)


class FailedDeliveryList(BaseModel):
    """Failure store rows for one webhook."""

    items: list[FailedDelivery]
    total: int


class SignatureCheck(BaseModel):
    """Result of an inbound signature verification."""

    webhook_id: UUID
    valid: bool
