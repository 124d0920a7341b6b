# settings.py
# ============================================================================
# SHIPROCKET → TRIPLE WHALE BRIDGE — CONFIGURATION
# ============================================================================
# All configuration comes from the environment. Each external dependency has
# its own dataclass with a from_env() constructor so tests can build them
# directly without touching os.environ.
# ============================================================================

import os
from dataclasses import dataclass, field
from typing import List

from pipeline.errors import ConfigurationError


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except ValueError:
        return default


# =============================================================================
# SERVER
# =============================================================================

class ServerConfig:
    """Server configuration from environment"""

    HOST = os.getenv("HOST", "0.0.0.0")
    PORT = _env_int("PORT", 3000)
    ENV = os.getenv("ENV", "development")
    DEBUG = ENV == "development"
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    CORS_ORIGINS = os.getenv("ALLOWED_ORIGINS", "*").split(",")

    VERSION = "1.0.0"
    USER_AGENT = "Shiprocket-TripleWhale-Integration/1.0.0"


# =============================================================================
# EXTERNAL PLATFORMS
# =============================================================================

@dataclass
class ShiprocketConfig:
    """Upstream logistics provider credentials."""
    api_url: str = "https://apiv2.shiprocket.in/v1"
    api_key: str = ""  # login email
    api_secret: str = ""  # login password
    webhook_secret: str = ""
    timeout_seconds: float = 30.0
    token_ttl_seconds: int = 24 * 60 * 60
    breaker_failure_threshold: int = 5
    breaker_reset_timeout: float = 60.0

    @classmethod
    def from_env(cls) -> "ShiprocketConfig":
        return cls(
            api_url=os.getenv("SHIPROCKET_API_URL", "https://apiv2.shiprocket.in/v1"),
            api_key=os.getenv("SHIPROCKET_API_KEY", ""),
            api_secret=os.getenv("SHIPROCKET_API_SECRET", ""),
            webhook_secret=os.getenv("SHIPROCKET_WEBHOOK_SECRET", ""),
            timeout_seconds=_env_int("API_REQUEST_TIMEOUT", 30000) / 1000,
            breaker_failure_threshold=_env_int("SHIPROCKET_CB_FAILURE_THRESHOLD", 5),
            breaker_reset_timeout=_env_float("SHIPROCKET_CB_RESET_TIMEOUT_SECONDS", 60.0),
        )


@dataclass
class TripleWhaleConfig:
    """Downstream analytics platform credentials.

    An API key wins when both an API key and OAuth client credentials are set.
    """
    api_url: str = "https://api.triplewhale.com/api/v2"
    api_key: str = ""
    client_id: str = ""
    client_secret: str = ""
    timeout_seconds: float = 30.0
    chunk_size: int = 100
    breaker_failure_threshold: int = 3
    breaker_reset_timeout: float = 30.0

    @property
    def uses_oauth(self) -> bool:
        return not self.api_key and bool(self.client_id and self.client_secret)

    @classmethod
    def from_env(cls) -> "TripleWhaleConfig":
        return cls(
            api_url=os.getenv("TRIPLE_WHALE_API_URL", "https://api.triplewhale.com/api/v2"),
            api_key=os.getenv("TRIPLE_WHALE_API_KEY", ""),
            client_id=os.getenv("TRIPLE_WHALE_CLIENT_ID", ""),
            client_secret=os.getenv("TRIPLE_WHALE_CLIENT_SECRET", ""),
            timeout_seconds=_env_int("API_REQUEST_TIMEOUT", 30000) / 1000,
            chunk_size=_env_int("TRIPLE_WHALE_CHUNK_SIZE", 100),
            breaker_failure_threshold=_env_int("TRIPLE_WHALE_CB_FAILURE_THRESHOLD", 3),
            breaker_reset_timeout=_env_float("TRIPLE_WHALE_CB_RESET_TIMEOUT_SECONDS", 30.0),
        )


# =============================================================================
# PIPELINE BEHAVIOUR
# =============================================================================

@dataclass
class RetryConfig:
    max_attempts: int = 3
    delay_seconds: float = 1.0
    backoff_factor: float = 2.0

    @classmethod
    def from_env(cls) -> "RetryConfig":
        return cls(
            max_attempts=_env_int("MAX_RETRY_ATTEMPTS", 3),
            delay_seconds=_env_int("RETRY_DELAY_MS", 1000) / 1000,
            backoff_factor=_env_float("RETRY_BACKOFF_FACTOR", 2.0),
        )


@dataclass
class WebhookConfig:
    verify_signature: bool = True

    @classmethod
    def from_env(cls) -> "WebhookConfig":
        return cls(
            verify_signature=_env_bool("WEBHOOK_VERIFY_SIGNATURE", "true"),
        )


@dataclass
class SyncConfig:
    batch_size: int = 50
    max_pages: int = 20
    enable_scheduled_sync: bool = False
    timezone: str = "Asia/Kolkata"
    hour: int = 0
    minute: int = 5

    @classmethod
    def from_env(cls) -> "SyncConfig":
        return cls(
            batch_size=_env_int("SYNC_BATCH_SIZE", 50),
            max_pages=_env_int("SYNC_MAX_PAGES", 20),
            enable_scheduled_sync=_env_bool("ENABLE_REAL_TIME_SYNC", "false"),
            timezone=os.getenv("SYNC_TIMEZONE", "Asia/Kolkata"),
            hour=_env_int("SYNC_HOUR", 0),
            minute=_env_int("SYNC_MINUTE", 5),
        )


@dataclass
class RateLimitConfig:
    """Fixed-window request limits per client address."""
    enabled: bool = True
    api_max_requests: int = 100
    api_window_seconds: float = 15 * 60
    webhook_max_requests: int = 1000
    webhook_window_seconds: float = 60.0

    @classmethod
    def from_env(cls) -> "RateLimitConfig":
        return cls(
            enabled=_env_bool("RATE_LIMIT_ENABLED", "true"),
            api_max_requests=_env_int("RATE_LIMIT_MAX_REQUESTS", 100),
            api_window_seconds=_env_int("RATE_LIMIT_WINDOW_MS", 900000) / 1000,
            webhook_max_requests=_env_int("WEBHOOK_RATE_LIMIT_MAX_REQUESTS", 1000),
            webhook_window_seconds=_env_int("WEBHOOK_RATE_LIMIT_WINDOW_MS", 60000) / 1000,
        )


@dataclass
class Settings:
    """Aggregate settings handed to the service container."""
    env: str = "development"
    log_level: str = "INFO"
    shiprocket: ShiprocketConfig = field(default_factory=ShiprocketConfig)
    triple_whale: TripleWhaleConfig = field(default_factory=TripleWhaleConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    webhook: WebhookConfig = field(default_factory=WebhookConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)

    @property
    def is_production(self) -> bool:
        return self.env == "production"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            env=os.getenv("ENV", "development"),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            shiprocket=ShiprocketConfig.from_env(),
            triple_whale=TripleWhaleConfig.from_env(),
            retry=RetryConfig.from_env(),
            webhook=WebhookConfig.from_env(),
            sync=SyncConfig.from_env(),
            rate_limit=RateLimitConfig.from_env(),
        )

    def missing_required(self) -> List[str]:
        missing = []
        if not self.shiprocket.api_key:
            missing.append("SHIPROCKET_API_KEY")
        if not self.shiprocket.api_secret:
            missing.append("SHIPROCKET_API_SECRET")
        if not (self.triple_whale.api_key or self.triple_whale.uses_oauth):
            missing.append("TRIPLE_WHALE_API_KEY")
        if self.webhook.verify_signature and not self.shiprocket.webhook_secret:
            missing.append("SHIPROCKET_WEBHOOK_SECRET")
        return missing

    def validate(self) -> None:
        """Raise ConfigurationError when required keys are absent."""
        missing = self.missing_required()
        if missing:
            raise ConfigurationError(
                f"Missing required configuration: {', '.join(missing)}",
                missing=missing,
            )
