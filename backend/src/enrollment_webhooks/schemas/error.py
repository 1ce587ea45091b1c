"""Structured error response schemas."""
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class ErrorDetail(BaseModel):
    """Detailed error information."""

    code: str = Field(..., description="Machine-readable error code")
    message: str = Field(..., description="Human-readable error message")
    field: str | None = Field(default=None, description="Field that caused the error (for validation errors)")
    value: Any | None = Field(default=None, description="Invalid value (for validation errors)")


class ErrorResponse(BaseModel):
    """Standard error response structure.

    This provides consistent error responses across the API with:
    - Machine-readable error codes
    - Human-readable messages
    - Remediation hints
    - Request tracing information
    """

    error: str = Field(..., description="Error type (e.g., 'InvalidURL', 'NotFound')")
    message: str = Field(..., description="Primary error message")
    details: list[ErrorDetail] | None = Field(
        default=None, description="Detailed error information (for validation errors)"
    )
    remediation: str | None = Field(default=None, description="Suggestion for fixing the error")
    request_id: str | None = Field(default=None, description="Request ID for tracing")
    timestamp: datetime = Field(..., description="Error timestamp")

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "error": "InvalidURL",
                "message": "Invalid webhook URL. HTTPS is required.",
                "details": [
                    {
                        "code": "invalid_url",
                        "message": "Invalid webhook URL. HTTPS is required.",
                        "field": "url",
                        "value": "http://partner.example.com/hooks",
                    }
                ],
                "remediation": "Register an absolute https:// URL reachable from the platform",
                "request_id": "req_1234567890ab",
                "timestamp": "2026-01-15T10:30:00Z",
            }
        }
    )


# Error codes enum for consistency
class ErrorCode:
    """Standard error codes used across the API."""

    # Validation errors (400, 422)
    INVALID_URL = "invalid_url"
    INVALID_EVENTS = "invalid_events"
    INVALID_UUID = "invalid_uuid"
    MISSING_REQUIRED_FIELD = "missing_required_field"
    INVALID_ENUM_VALUE = "invalid_enum_value"
    VALIDATION_ERROR = "validation_error"

    # Authentication of inbound deliveries (401)
    SIGNATURE_INVALID = "signature_invalid"

    # Not found errors (404)
    WEBHOOK_NOT_FOUND = "webhook_not_found"

    # Rate limiting (429)
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"

    # Delivery errors (502, 503)
    CIRCUIT_OPEN = "circuit_open"
    DELIVERY_FAILED = "delivery_failed"
    DATABASE_ERROR = "database_error"

    # Internal errors (500)
    INTERNAL_ERROR = "internal_error"


# Remediation hints for common errors
REMEDIATION_HINTS = {
    ErrorCode.INVALID_URL: "Register an absolute https:// URL reachable from the platform",
    ErrorCode.INVALID_EVENTS: "Subscribe to at least one supported event type",
    ErrorCode.WEBHOOK_NOT_FOUND: "Verify the webhook ID is correct and the webhook has not been deleted",
    ErrorCode.SIGNATURE_INVALID: "Sign the exact request body with the current secret and a fresh timestamp",
    ErrorCode.RATE_LIMIT_EXCEEDED: "Too many test deliveries. Wait for the window to reset and try again.",
    ErrorCode.CIRCUIT_OPEN: "The endpoint failed repeatedly. Deliveries resume after the circuit cool-down.",
    ErrorCode.DELIVERY_FAILED: "Check that the endpoint is reachable and answers with a 2xx status",
    ErrorCode.DATABASE_ERROR: "Database temporarily unavailable. Please try again in a few moments.",
}
