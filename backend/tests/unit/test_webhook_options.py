"""Unit tests for per-subscription delivery options."""
import pytest
from pydantic import ValidationError

from enrollment_webhooks.schemas.webhook import WebhookOptions


@pytest.mark.parametrize("timeout", [1, 12.5, 30])
def test_timeout_within_bounds_accepted(timeout: float) -> None:
    assert WebhookOptions(timeout_seconds=timeout).timeout_seconds == timeout


@pytest.mark.parametrize("timeout", [0, 0.5, 30.1])
def test_timeout_outside_bounds_rejected(timeout: float) -> None:
    with pytest.raises(ValidationError):
        WebhookOptions(timeout_seconds=timeout)


def test_unknown_option_rejected() -> None:
    with pytest.raises(ValidationError):
        WebhookOptions.model_validate({"retries": 3})


@pytest.mark.parametrize("header", ["X-Webhook-Signature", "content-type", "User-Agent", "X-Request-ID"])
def test_platform_headers_cannot_be_overridden(header: str) -> None:
    with pytest.raises(ValidationError):
        WebhookOptions(headers={header: "spoofed"})


def test_custom_headers_kept() -> None:
    options = WebhookOptions(headers={"X-Partner-Key": "abc123"}, description="Partner CRM")

    assert options.headers == {"X-Partner-Key": "abc123"}
    assert options.timeout_seconds is None
