"""Webhook service errors.

Registry-level failures are exceptions mapped to 4xx responses by the handlers
in ``main``. Delivery-level outcomes (circuit open, rate limited, failed) are
never raised; see ``services.delivery_worker.DeliveryResult``.
"""
from enrollment_webhooks.schemas.error import ErrorCode


class WebhookError(Exception):
    """Base error for the webhook service."""

    status_code = 400
    error = "WebhookError"
    code = ErrorCode.INTERNAL_ERROR

    def __init__(self, message: str, details: dict | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class InvalidURL(WebhookError):
    """Webhook URL is malformed or not HTTPS."""

    error = "InvalidURL"
    code = ErrorCode.INVALID_URL


class InvalidEvents(WebhookError):
    """Event list is empty or contains an unsupported event type."""

    error = "InvalidEvents"
    code = ErrorCode.INVALID_EVENTS


class NotFound(WebhookError):
    """Webhook subscription does not exist or was deleted."""

    status_code = 404
    error = "NotFound"
    code = ErrorCode.WEBHOOK_NOT_FOUND


class SignatureInvalid(WebhookError):
    """Inbound signature failed verification or is stale."""

    status_code = 401
    error = "SignatureInvalid"
    code = ErrorCode.SIGNATURE_INVALID
