"""Centralized configuration using pydantic-settings.

All configuration is loaded from environment variables and .env files.
This is the single source of truth for process-level configuration; the
billing engine itself receives a ``BillingConfig`` by injection.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class LogLevel(str, Enum):
    """Log levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class Settings(BaseSettings):
    """Process settings, grouped by concern.

    Nested values come from double-underscore variables, for example
    ``DATABASE__URL`` or ``BILLING__GRACE_PERIOD_DAYS``.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_nested_delimiter="__",
        extra="ignore",
    )

    # ============================================================
    # Database Configuration
    # ============================================================

    class DatabaseSettings(BaseModel):
        """Database configuration."""

        url: str | None = Field(None, description="Full async database URL")
        host: str = Field("localhost", description="Database host")
        port: int = Field(5432, description="Database port")
        database: str = Field("ledgerline", description="Database name")
        username: str = Field("ledgerline", description="Database username")
        password: str = Field("", description="Database password")

        # Connection pool
        pool_size: int = Field(10, description="Connection pool size")
        max_overflow: int = Field(20, description="Max overflow connections")
        pool_pre_ping: bool = Field(True, description="Test connections before use")

        echo: bool = Field(False, description="Echo SQL statements")

        @property
        def sqlalchemy_url(self) -> str:
            """Build SQLAlchemy async database URL."""
            if self.url:
                return self.url
            if not self.password:
                return "sqlite+aiosqlite:///./ledgerline_dev.sqlite"
            return f"postgresql+asyncpg://{self.username}:{self.password}@{self.host}:{self.port}/{self.database}"

    database: DatabaseSettings = DatabaseSettings()  # type: ignore[call-arg]

    # ============================================================
    # Observability
    # ============================================================

    class ObservabilitySettings(BaseModel):
        """Observability configuration."""

        log_level: LogLevel = Field(LogLevel.INFO, description="Log level")
        log_format: str = Field("json", description="Log format (json or console)")
        enable_correlation_ids: bool = Field(True, description="Add thread name to log records")

    observability: ObservabilitySettings = ObservabilitySettings()  # type: ignore[call-arg]

    # ============================================================
    # Billing
    # ============================================================

    class BillingSettings(BaseModel):
        """Billing system configuration."""

        livemode: bool = Field(False, description="Production (live) vs sandbox transactions")
        default_currency: str = Field("USD", description="Default currency for plans")
        default_provider: str = Field("mock", description="Payment provider adapter to use")
        mock_webhook_secret: str = Field(
            "whsec_mock", description="Signing secret for the mock provider adapter"
        )

        # Dunning
        retry_schedule_days: list[int] = Field(
            default_factory=lambda: [1, 3, 5], description="Days between payment retries"
        )
        grace_period_days: int = Field(14, description="Grace period after a failed renewal")
        grace_expiry_action: str = Field(
            "unpaid", description="Status after grace expiry (unpaid or canceled)"
        )
        trial_ending_lookahead_days: int = Field(3, description="Trial-ending notice window")

        # Webhooks
        webhook_max_attempts: int = Field(5, description="Processing attempts before dead-letter")
        webhook_backoff_base_seconds: int = Field(60, description="First webhook retry delay")

        # Entitlements
        entitlement_set_conflict_policy: str = Field(
            "max", description="Resolution for conflicting set grants (max, min, latest)"
        )

    billing: BillingSettings = BillingSettings()  # type: ignore[call-arg]


# Global settings instance
_settings: Settings | None = None


def get_settings() -> Settings:
    """Get global settings instance (singleton)."""
    global _settings
    if _settings is None:
        _settings = Settings()  # type: ignore
    return _settings


def reset_settings() -> None:
    """Reset settings (mainly for testing)."""
    global _settings
    _settings = None


# Convenience export
settings = get_settings()
