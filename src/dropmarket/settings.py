"""Centralized configuration using pydantic-settings.

All configuration is loaded from environment variables and .env files.
This is the single source of truth for the drop payment engine configuration.
"""

from decimal import Decimal
from enum import Enum
from typing import Any

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
    For nested settings, use double underscore: SUBSCRIPTIONS__MAX_RETRY_ATTEMPTS=5
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

    app_name: str = Field("dropmarket-engine", description="Application name")
    app_version: str = Field("1.0.0", description="Application version")
    environment: Environment = Field(Environment.DEVELOPMENT, description="Deployment environment")
    debug: bool = Field(False, description="Debug mode")
    testing: bool = Field(False, description="Testing mode")

    # ============================================================
    # Database Configuration
    # ============================================================

    class DatabaseSettings(BaseModel):
        """Database configuration."""

        url: str | None = Field(None, description="Full async database URL")
        host: str = Field("localhost", description="Database host")
        port: int = Field(5432, description="Database port")
        database: str = Field("dropmarket", description="Database name")
        username: str = Field("dropmarket", description="Database username")
        password: str = Field("", description="Database password")

        # Connection pool
        pool_size: int = Field(10, description="Connection pool size")
        max_overflow: int = Field(20, description="Max overflow connections")
        pool_pre_ping: bool = Field(True, description="Test connections before use")
        echo: bool = Field(False, description="Echo SQL statements")

    database: DatabaseSettings = DatabaseSettings()  # type: ignore[call-arg]

    # ============================================================
    # Redis Configuration
    # ============================================================

    class RedisSettings(BaseModel):
        """Redis configuration."""

        url: str | None = Field(None, description="Full Redis URL")
        host: str = Field("localhost", description="Redis host")
        port: int = Field(6379, description="Redis port")
        password: str = Field("", description="Redis password")
        db: int = Field(0, description="Redis database number")
        max_connections: int = Field(50, description="Max connections in pool")

        # Key namespaces
        balance_key_prefix: str = Field("balance", description="Key prefix for spendable balances")
        lock_key_prefix: str = Field("lock:subscription", description="Key prefix for locks")

        @property
        def redis_url(self) -> str:
            """Build Redis URL."""
            if self.url:
                return self.url
            if self.password:
                return f"redis://:{self.password}@{self.host}:{self.port}/{self.db}"
            return f"redis://{self.host}:{self.port}/{self.db}"

    redis: RedisSettings = RedisSettings()  # type: ignore[call-arg]

    # ============================================================
    # Celery & Task Queue
    # ============================================================

    class CelerySettings(BaseModel):
        """Celery configuration."""

        broker_url: str = Field("redis://localhost:6379/0", description="Broker URL")
        result_backend: str = Field("redis://localhost:6379/1", description="Result backend")
        timezone: str = Field("UTC", description="Timezone")
        task_soft_time_limit: int = Field(240, description="Soft time limit")
        task_time_limit: int = Field(300, description="Hard time limit")

    celery: CelerySettings = CelerySettings()  # type: ignore[call-arg]

    # ============================================================
    # Observability & Monitoring
    # ============================================================

    class ObservabilitySettings(BaseModel):
        """Observability configuration."""

        log_level: LogLevel = Field(LogLevel.INFO, description="Log level")
        log_format: str = Field("json", description="Log format (json or text)")
        enable_correlation_ids: bool = Field(True, description="Enable correlation IDs")
        otel_service_name: str = Field("dropmarket-engine", description="Service name")

    observability: ObservabilitySettings = ObservabilitySettings()  # type: ignore[call-arg]

    # ============================================================
    # Subscription (Drop) Engine
    # ============================================================

    class SubscriptionSettings(BaseModel):
        """Recurring installment engine configuration."""

        # Money
        currency: str = Field("NGN", description="Currency of the internal balance")
        locale: str = Field("en_NG", description="Locale for formatted amounts")
        payment_tolerance: Decimal = Field(
            Decimal("1"), description="Accepted drift between subscription and order totals"
        )
        min_subscription_amount: Decimal = Field(
            Decimal("1000"), description="Minimum order total eligible for a subscription"
        )
        max_subscription_amount: Decimal = Field(
            Decimal("1000000"), description="Maximum order total eligible for a subscription"
        )

        # Retry
        max_retry_attempts: int = Field(3, description="Automatic retries before pausing")
        retry_backoff_base: int = Field(2, description="Retry n waits base**n hours")

        # Pausing
        min_pause_days: int = Field(7, description="Minimum pause duration in days")
        max_pause_days: int = Field(90, description="Maximum pause duration in days")

        # Scheduling
        sweep_hour: int = Field(0, description="UTC hour of the daily drop sweep")
        sweep_minute: int = Field(0, description="UTC minute of the daily drop sweep")
        reminder_days_ahead: int = Field(2, description="Days ahead to remind about drops")
        conflict_scan_interval_hours: int = Field(6, description="Hours between conflict scans")

        # Concurrency
        lock_backend: str = Field("memory", description="Subscription lock backend (memory/redis)")
        lock_timeout_seconds: float = Field(30.0, description="Max wait for a subscription lock")

        # Wiring
        engine_factory: str | None = Field(
            None, description="Dotted path 'module:callable' building the engine in workers"
        )
        notification_task_name: str = Field(
            "notifications.deliver", description="Celery task consumed by the notifier service"
        )
        notification_queue: str = Field("notifications", description="Notification queue")

    subscriptions: SubscriptionSettings = SubscriptionSettings()  # type: ignore[call-arg]

    # ============================================================
    # Validation & Helpers
    # ============================================================

    @field_validator("environment", mode="before")
    @classmethod
    def validate_environment(cls, v: Any) -> Any:
        """Validate environment."""
        if isinstance(v, str):
            return Environment(v.lower())
        return v

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment == Environment.PRODUCTION

    @property
    def is_development(self) -> bool:
        """Check if running in development."""
        return self.environment == Environment.DEVELOPMENT

    @property
    def is_testing(self) -> bool:
        """Check if running in test mode."""
        return self.testing or self.environment == Environment.TEST


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
