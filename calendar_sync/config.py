"""
Configuration management for the calendar sync engine.

Uses Pydantic Settings for type-safe environment variable loading.
Configured via .env file in project root.
"""

from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

SourceName = Literal["lms", "internal", "external"]


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    All settings can be configured via .env file or environment variables.
    """

    # Python & Application
    python_env: Literal["development", "production", "test"] = Field(
        default="development",
        description="Application environment"
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Logging level"
    )

    # Database
    database_url: str = Field(
        default="sqlite:///./data/calendar_sync.db",
        description="Database connection URL"
    )
    datastore_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Upper bound for a single datastore call issued during a sync run"
    )

    # API Configuration
    api_host: str = Field(
        default="0.0.0.0",
        description="API server host"
    )
    api_port: int = Field(
        default=8000,
        description="API server port"
    )
    api_reload: bool = Field(
        default=True,
        description="Enable auto-reload in development"
    )

    # Google OAuth Configuration
    google_oauth_client_id: str = Field(
        default="",
        description="Google OAuth 2.0 client ID"
    )
    google_oauth_client_secret: str = Field(
        default="",
        description="Google OAuth 2.0 client secret"
    )
    google_oauth_redirect_uri: str = Field(
        default="http://localhost:8000/auth/google/callback",
        description="OAuth redirect URI (must match Google Cloud Console)"
    )
    token_encryption_key: str = Field(
        default="",
        description="Fernet key used to encrypt stored OAuth tokens"
    )

    # Google Calendar API
    google_api_base_url: str = Field(
        default="https://www.googleapis.com/calendar/v3",
        description="Base URL of the Google Calendar REST API"
    )
    request_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Timeout for a single provider request"
    )
    retry_max_attempts: int = Field(
        default=3,
        ge=1,
        description="Attempts per provider call, including the first"
    )
    retry_initial_delay_seconds: float = Field(
        default=1.0,
        ge=0,
        description="First backoff delay; doubles on each retry"
    )
    retry_max_delay_seconds: float = Field(
        default=60.0,
        ge=0,
        description="Ceiling for any single computed backoff delay; Retry-After is honoured as sent"
    )
    events_page_size: int = Field(
        default=250,
        ge=1,
        le=2500,
        description="maxResults per events.list page"
    )
    events_max_pages: int = Field(
        default=20,
        ge=1,
        description="Pages fetched per listing before truncating"
    )

    # Push notifications
    webhook_url: str = Field(
        default="",
        description="Public HTTPS URL Google posts change notifications to"
    )
    webhook_token: str = Field(
        default="",
        description="Verification token echoed back in X-Goog-Channel-Token"
    )
    webhook_ttl_days: int = Field(
        default=7,
        ge=1,
        description="Requested lifetime of a watch channel"
    )
    webhook_renewal_buffer_hours: int = Field(
        default=24,
        ge=1,
        description="Renew channels expiring within this many hours"
    )
    webhook_renewal_interval_minutes: int = Field(
        default=60,
        ge=1,
        description="How often the renewal sweep runs"
    )

    # Sync behaviour
    external_window_days: int = Field(
        default=30,
        ge=1,
        description="Days ahead of now read from the external calendar"
    )
    incremental_lookback_hours: int = Field(
        default=24,
        ge=0,
        description="Hours before now covered by webhook-driven passes"
    )
    default_event_duration_minutes: int = Field(
        default=60,
        ge=1,
        description="Duration assumed for source events without an end time"
    )
    conflict_priority: list[SourceName] = Field(
        default_factory=list,
        description=(
            "Ordered source priority for automatic conflict resolution. "
            "Empty means conflicts block the write and wait for a user."
        )
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("conflict_priority")
    @classmethod
    def validate_conflict_priority(cls, v: list[str]) -> list[str]:
        if len(set(v)) != len(v):
            raise ValueError("conflict_priority must not repeat a source")
        return v

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.python_env == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.python_env == "production"

    @property
    def uses_postgresql(self) -> bool:
        """Check if PostgreSQL is the configured database."""
        return "postgresql" in self.database_url.lower()

    @property
    def uses_google_oauth(self) -> bool:
        """Check if Google OAuth is configured."""
        return bool(self.google_oauth_client_id and self.google_oauth_client_secret)

    @property
    def uses_webhooks(self) -> bool:
        """Check if push notifications are configured."""
        return bool(self.webhook_url)

    def validate_production_config(self) -> None:
        """
        Validate configuration for production environment.

        Raises:
            ValueError: If required production settings are missing or invalid
        """
        if not self.is_production:
            return

        errors = []

        if not self.uses_postgresql:
            errors.append(
                "Production requires PostgreSQL. "
                "Set DATABASE_URL to a PostgreSQL connection string."
            )

        if not self.token_encryption_key:
            errors.append("TOKEN_ENCRYPTION_KEY is required in production.")

        if not self.uses_google_oauth:
            errors.append(
                "GOOGLE_OAUTH_CLIENT_ID and GOOGLE_OAUTH_CLIENT_SECRET are required in production."
            )

        if self.webhook_url and not self.webhook_url.startswith("https://"):
            errors.append("WEBHOOK_URL must use HTTPS.")

        if errors:
            raise ValueError("Production configuration errors:\n- " + "\n- ".join(errors))


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    This function is cached to ensure we only load settings once.
    Use this function throughout the application to access settings.

    Returns:
        Settings instance loaded from environment

    Example:
        >>> from calendar_sync.config import get_settings
        >>> settings = get_settings()
        >>> print(settings.database_url)
    """
    return Settings()
