"""Unit tests for settings loading."""
from enrollment_webhooks.config import Settings, get_settings


def test_get_settings_is_cached() -> None:
    assert get_settings() is get_settings()


def test_webhook_defaults() -> None:
    settings = Settings(_env_file=None)

    assert settings.circuit_failure_threshold == 5
    assert settings.circuit_open_seconds == 300.0
    assert settings.webhook_test_rate_limit == 100
    assert settings.webhook_dispatch_rate_limit == 1000
    assert settings.webhook_dispatch_rate_window_seconds == 3600.0
    assert settings.webhook_max_attempts == 5
    assert settings.webhook_retry_window_hours == 24


def test_settings_read_from_environment(monkeypatch) -> None:
    monkeypatch.setenv("CIRCUIT_FAILURE_THRESHOLD", "3")
    monkeypatch.setenv("WEBHOOK_TEST_RATE_LIMIT", "10")

    settings = Settings(_env_file=None)

    assert settings.circuit_failure_threshold == 3
    assert settings.webhook_test_rate_limit == 10
