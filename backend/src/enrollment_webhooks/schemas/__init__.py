"""Pydantic schemas for API request/response validation."""

from enrollment_webhooks.schemas.error import ErrorCode, ErrorDetail, ErrorResponse, REMEDIATION_HINTS
from enrollment_webhooks.schemas.webhook import (
    SUPPORTED_EVENTS,
    DeliveryResultRead,
    DeliveryStatus,
    DeliveryStatusResponse,
    DispatchReportRead,
    DispatchRequest,
    FailedDelivery,
    FailedDeliveryList,
    HealthMetrics,
    SecretRotated,
    SignatureCheck,
    DeliveryTestRequest,
    Webhook,
    WebhookCreate,
    WebhookDeleted,
    WebhookEventType,
    WebhookList,
    WebhookOptions,
    WebhookRegistered,
    WebhookUpdate,
)

__all__ = [
    "SUPPORTED_EVENTS",
    "DeliveryResultRead",
    "DeliveryStatus",
    "DeliveryStatusResponse",
    "DispatchReportRead",
    "DispatchRequest",
    "ErrorCode",
    "ErrorDetail",
    "ErrorResponse",
    "FailedDelivery",
    "FailedDeliveryList",
    "HealthMetrics",
    "REMEDIATION_HINTS",
    "SecretRotated",
    "SignatureCheck",
    "DeliveryTestRequest",
    "Webhook",
    "WebhookCreate",
    "WebhookDeleted",
    "WebhookEventType",
    "WebhookList",
    "WebhookOptions",
    "WebhookRegistered",
    "WebhookUpdate",
]
