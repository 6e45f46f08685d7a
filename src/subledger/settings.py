from __future__ import annotations

"""Centralized configuration using pydantic-settings.

All configuration is loaded from environment variables and .env files.
This is the single source of truth for ledger configuration.
"""

from enum import Enum

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    """Application environment."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"
    TEST = "test"


class LogLevel(str, Enum):
    """Log levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class Settings(BaseSettings):
    """Main application settings.

    All settings can be overridden via environment variables.
    For nested settings, use double underscore: BILLING__MAX_BILLING_ATTEMPTS=5
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_nested_delimiter="__",
        extra="ignore",
    )

    # ============================================================
    # Core Application Settings
    # ============================================================

    app_name: str = Field("subledger", description="Application name")
    app_version: str = Field("1.0.0", description="Application version")
    environment: Environment = Field(Environment.DEVELOPMENT, description="Deployment environment")

    # ============================================================
    # Database Configuration
    # ============================================================

    class DatabaseSettings(BaseModel):
        """Database configuration."""

        url: str | None = Field(None, description="Full async database URL")
        host: str = Field("localhost", description="Database host")
        port: int = Field(5432, description="Database port")
        database: str = Field("subledger", description="Database name")
        username: str = Field("subledger", description="Database username")
        password: str = Field("", description="Database password")

        # Connection pool
        pool_size: int = Field(10, description="Connection pool size")
        max_overflow: int = Field(20, description="Max overflow connections")
        pool_timeout: int = Field(30, description="Pool timeout in seconds")
        pool_recycle: int = Field(3600, description="Recycle connections after seconds")
        pool_pre_ping: bool = Field(True, description="Test connections before use")

        echo: bool = Field(False, description="Echo SQL statements")

    database: DatabaseSettings = DatabaseSettings()  # type: ignore[call-arg]

    # ============================================================
    # Observability
    # ============================================================

    class ObservabilitySettings(BaseModel):
        """Logging configuration."""

        log_level: LogLevel = Field(LogLevel.INFO, description="Log level")
        log_format: str = Field("json", description="Log format: json or console")
        enable_correlation_ids: bool = Field(True, description="Add thread name to log records")

        @field_validator("log_format")
        @classmethod
        def validate_log_format(cls, v: str) -> str:
            if v not in {"json", "console"}:
                raise ValueError("log_format must be 'json' or 'console'")
            return v

    observability: ObservabilitySettings = ObservabilitySettings()  # type: ignore[call-arg]

    # ============================================================
    # Celery
    # ============================================================

    class CelerySettings(BaseModel):
        """Celery broker configuration."""

        broker_url: str = Field("redis://localhost:6379/0", description="Celery broker URL")
        result_backend: str = Field(
            "redis://localhost:6379/1", description="Celery result backend URL"
        )
        renewal_scan_interval_seconds: int = Field(
            900, description="Seconds between renewal/dunning scans"
        )

    celery: CelerySettings = CelerySettings()  # type: ignore[call-arg]

    # ============================================================
    # Billing / Subscription lifecycle
    # ============================================================

    class BillingSettings(BaseModel):
        """Subscription billing configuration."""

        default_currency: str = Field("USD", description="Default currency code")
        default_locale: str = Field("en_US", description="Locale used to format amounts")

        # Renewal
        renewal_look_ahead_days: int = Field(
            3, description="Days ahead to consider subscriptions due for renewal"
        )
        payment_timeout_seconds: float = Field(
            30.0, description="Timeout for a single payment processor call"
        )
        conflict_retry_attempts: int = Field(
            3, description="Attempts for a transition that hits a write conflict"
        )

        # Dunning
        max_billing_attempts: int = Field(
            3, description="Failed renewal attempts tolerated before the final dunning action"
        )
        payment_retry_attempts: int = Field(3, description="Number of payment retry attempts")
        retry_base_days: int = Field(1, description="Base delay for the first payment retry")
        retry_max_days: int = Field(30, description="Maximum delay between payment retries")
        retry_jitter: float = Field(0.2, description="Random jitter ratio applied to retries")
        retry_claim_minutes: int = Field(
            15, description="Lease taken on a failed payment while a retry is in flight"
        )
        dunning_final_status: str = Field(
            "canceled", description="Status applied after dunning is exhausted"
        )

        @field_validator("dunning_final_status")
        @classmethod
        def validate_final_status(cls, v: str) -> str:
            if v not in {"canceled", "suspended"}:
                raise ValueError("dunning_final_status must be 'canceled' or 'suspended'")
            return v

    billing: BillingSettings = BillingSettings()  # type: ignore[call-arg]

    @property
    def is_development(self) -> bool:
        """Check if running in development."""
        return self.environment == Environment.DEVELOPMENT


# Global settings instance
_settings: Settings | None = None


def get_settings() -> Settings:
    """Get global settings instance (singleton)."""
    global _settings
    if _settings is None:
        _settings = Settings()  # type: ignore
    return _settings


# Convenience export
settings = get_settings()
