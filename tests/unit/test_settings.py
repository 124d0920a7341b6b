import pytest

from pipeline.errors import ConfigurationError
from settings import Settings, ShiprocketConfig, TripleWhaleConfig


def test_from_env(monkeypatch):
    monkeypatch.setenv("ENV", "production")
    monkeypatch.setenv("SHIPROCKET_API_KEY", "ops@example.com")
    monkeypatch.setenv("SHIPROCKET_API_SECRET", "pw")
    monkeypatch.setenv("SHIPROCKET_WEBHOOK_SECRET", "whsec")
    monkeypatch.setenv("TRIPLE_WHALE_API_KEY", "tw-key")
    monkeypatch.setenv("API_REQUEST_TIMEOUT", "10000")
    monkeypatch.setenv("MAX_RETRY_ATTEMPTS", "5")
    monkeypatch.setenv("RETRY_DELAY_MS", "250")
    monkeypatch.setenv("WEBHOOK_VERIFY_SIGNATURE", "false")
    monkeypatch.setenv("ENABLE_REAL_TIME_SYNC", "true")

    settings = Settings.from_env()

    assert settings.is_production is True
    assert settings.shiprocket.timeout_seconds == 10.0
    assert settings.triple_whale.timeout_seconds == 10.0
    assert settings.retry.max_attempts == 5
    assert settings.retry.delay_seconds == 0.25
    assert settings.webhook.verify_signature is False
    assert settings.sync.enable_scheduled_sync is True
    settings.validate()


def test_rate_limits_from_env(monkeypatch):
    monkeypatch.setenv("RATE_LIMIT_MAX_REQUESTS", "20")
    monkeypatch.setenv("RATE_LIMIT_WINDOW_MS", "60000")
    monkeypatch.setenv("WEBHOOK_RATE_LIMIT_MAX_REQUESTS", "500")

    rate_limit = Settings.from_env().rate_limit

    assert rate_limit.enabled is True
    assert rate_limit.api_max_requests == 20
    assert rate_limit.api_window_seconds == 60.0
    assert rate_limit.webhook_max_requests == 500
    assert rate_limit.webhook_window_seconds == 60.0


def test_malformed_numbers_fall_back(monkeypatch):
    monkeypatch.setenv("MAX_RETRY_ATTEMPTS", "three")
    assert Settings.from_env().retry.max_attempts == 3


def test_validate_lists_missing_keys():
    settings = Settings()

    with pytest.raises(ConfigurationError) as exc_info:
        settings.validate()

    assert exc_info.value.missing == [
        "SHIPROCKET_API_KEY",
        "SHIPROCKET_API_SECRET",
        "TRIPLE_WHALE_API_KEY",
        "SHIPROCKET_WEBHOOK_SECRET",
    ]


def test_oauth_credentials_satisfy_triple_whale():
    settings = Settings(
        shiprocket=ShiprocketConfig(api_key="a", api_secret="b", webhook_secret="c"),
        triple_whale=TripleWhaleConfig(client_id="cid", client_secret="secret"),
    )
    assert settings.triple_whale.uses_oauth is True
    assert settings.missing_required() == []


def test_api_key_preferred_over_oauth():
    config = TripleWhaleConfig(api_key="k", client_id="cid", client_secret="secret")
    assert config.uses_oauth is False
