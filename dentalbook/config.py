"""
Configuration Management

Uses Pydantic BaseSettings to load configuration from environment variables.
All settings can be overridden via .env file or environment variables.

Environment Variables:
    REDIS_URL: Redis connection string (wizard sessions, realtime feed)
    STORE_URL: Base URL of the transactional store's procedure endpoint
    STORE_API_KEY: Bearer key for the store
    EMAIL_SERVICE_URL: Base URL of the email dispatch service
    DEFAULT_CANCELLATION_POLICY_HOURS: Fallback cancellation window (default: 24)
    APP_ENV: Environment name (development/staging/production)
    DEBUG: Enable debug mode (default: False)
"""

from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application Environment
    app_env: Literal["development", "staging", "production"] = "development"
    """Current application environment.

    Options:
    - development: Local development, verbose logging, in-memory store allowed
    - staging: Pre-production testing environment
    - production: Live production environment, minimal logging
    """

    debug: bool = False
    """Enable debug mode.

    When True:
    - Detailed error messages in responses
    - DEBUG log level
    """

    app_name: str = "dentalbook"
    """Application name."""

    host: str = "0.0.0.0"
    """Host to bind the application server."""

    port: int = 8000
    """Port to bind the application server."""

    # Redis Configuration
    redis_url: str = "redis://localhost:6379/0"
    """Redis connection URL.

    Format: redis://host:port/db

    Used for wizard session storage and the realtime subscription feed.
    """

    redis_socket_timeout: float = 5.0
    """Connect and command timeout in seconds for Redis calls."""

    redis_reconnect_interval: float = 10.0
    """Seconds to wait after a failed connect before dialing Redis again."""

    wizard_session_ttl: int = 1800
    """Wizard session TTL in seconds (default: 30 minutes).

    A booking draft never outlives this window.
    """

    # Transactional Store
    store_url: str = "http://localhost:54321"
    """Base URL of the backing store. Procedures are called as
    POST {store_url}/rpc/{procedure}."""

    store_api_key: str = "dev-store-key-change-in-production"
    """Bearer key sent with every store procedure call."""

    store_timeout: float = 10.0
    """Store request timeout in seconds."""

    use_in_memory_store: bool = False
    """Serve procedures from the in-process store instead of store_url.

    Only honoured in development.
    """

    # Email Dispatch
    email_service_url: str = "http://localhost:5000"
    """Base URL of the email service (POST /api/email/send-email)."""

    email_enabled: bool = True
    """Whether lifecycle transitions dispatch email at all."""

    # Booking Rules
    default_cancellation_policy_hours: int = 24
    """Cancellation window used when a clinic has no configured policy."""

    max_services_per_booking: int = 3
    """Maximum number of services a single booking may carry."""

    submission_guard_ttl: float = 5.0
    """Seconds an in-flight submission guard lives before auto-release."""

    discovery_min_interval_ms: int = 500
    """Minimum interval between repeated discovery/search calls."""

    action_cooldown_ms: int = 1000
    """Default cooldown between two executions of the same staff action."""

    slot_refresh_interval: float = 0.0
    """Seconds between automatic slot refreshes on the datetime step.

    0 disables auto-refresh.
    """

    appointment_cache_size: int = 1000
    """Rows the lifecycle engine keeps for display; oldest are evicted first."""

    # Side Effects
    side_effect_max_attempts: int = 3
    """Delivery attempts per notification/email before giving up."""

    side_effect_retry_delay: float = 0.5
    """Base delay in seconds between side-effect retries (linear backoff)."""

    # Realtime
    realtime_channel_prefix: str = "dentalbook:v1"
    """Namespace for realtime pub/sub channels."""

    # CORS Configuration
    cors_origins: str = "http://localhost:5173"
    """Comma-separated list of allowed CORS origins."""

    # Pydantic configuration
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env == "production"

    @property
    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.app_env == "development"

    @property
    def cors_origins_list(self) -> list[str]:
        """Split cors_origins into a list."""
        return [origin.strip() for origin in self.cors_origins.split(",")]


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    Returns:
        Settings: Cached settings instance

    Example:
        >>> from dentalbook.config import get_settings
        >>> settings = get_settings()
        >>> print(settings.default_cancellation_policy_hours)
        24
    """
    return Settings()


# Module-level settings instance for easy imports
settings = get_settings()
