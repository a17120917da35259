"""
Application configuration using Pydantic Settings.

Security best practices:
- Secrets loaded from environment variables, never from code
- Validation of all configuration values
- Type-safe configuration access
"""

from enum import Enum
from functools import lru_cache
from typing import Annotated, Any

from pydantic import Field, RedisDsn, SecretStr, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Environment(str, Enum):
    """Application environment."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class LogLevel(str, Enum):
    """Logging levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class Settings(BaseSettings):
    """
    Metering settings with validation.

    Load order:
    1. Environment variables
    2. .env file (if present)
    3. Default values
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ============ Environment ============
    environment: Environment = Environment.DEVELOPMENT
    log_level: LogLevel = LogLevel.INFO
    debug: bool = False

    # ============ Datastore ============
    database_url: str = Field(
        default="postgresql+asyncpg://localhost:5432/dealer_metering",
        description="SQLAlchemy async database URL",
    )
    redis_url: RedisDsn = Field(
        default="redis://localhost:6379/0",
        description="Redis connection URL (run locks)",
    )

    # Database pool settings
    db_pool_size: int = Field(default=5, ge=1, le=100)
    db_max_overflow: int = Field(default=10, ge=0, le=100)

    # ============ Stripe ============
    stripe_secret_key: SecretStr | None = None
    stripe_api_version: str = "2024-06-20"

    # ============ API ============
    admin_api_key: SecretStr | None = None
    cors_origins: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: ["http://localhost:3000"]
    )

    # ============ Reconciliation ============
    excluded_tenant_ids: Annotated[list[str], NoDecode] = Field(
        default_factory=list,
        description="Internal test tenants never reconciled",
    )
    report_delay_seconds: float = Field(
        default=0.2,
        ge=0.0,
        le=10.0,
        description="Pause between consecutive usage event submissions",
    )
    backfill_delay_seconds: float = Field(
        default=0.3,
        ge=0.0,
        le=10.0,
        description="Pause between consecutive backfill submissions",
    )
    max_submit_attempts: int = Field(default=3, ge=1, le=10)
    retry_delay_seconds: float = Field(default=1.0, ge=0.0, le=60.0)

    # ============ Worker Settings ============
    reconcile_interval_seconds: int = Field(
        default=3600,  # hourly
        ge=60,
        le=86400,
        description="Interval between scheduled reconciliation runs",
    )
    backfill_on_schedule: bool = Field(
        default=False,
        description="Run the gap reconciler on scheduled runs",
    )
    run_lock_ttl_seconds: int = Field(default=900, ge=30, le=86400)

    # ============ Monitoring ============
    sentry_dsn: str | None = None
    prometheus_enabled: bool = True

    # ============ Validators ============
    @field_validator("excluded_tenant_ids", mode="before")
    @classmethod
    def parse_excluded_tenant_ids(cls, v: Any) -> list[str]:
        """Parse comma-separated tenant IDs from environment."""
        if isinstance(v, str):
            if not v:
                return []
            return [x.strip() for x in v.split(",") if x.strip()]
        return v or []

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, v: Any) -> list[str]:
        """Parse comma-separated origins from environment."""
        if isinstance(v, str):
            return [x.strip() for x in v.split(",") if x.strip()]
        return v

    @field_validator("database_url")
    @classmethod
    def validate_async_driver(cls, v: str) -> str:
        """Require an asyncio-capable SQLAlchemy driver."""
        if "+asyncpg" not in v and "+aiosqlite" not in v:
            raise ValueError("database_url must use the asyncpg or aiosqlite driver")
        return v

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment == Environment.PRODUCTION


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Using lru_cache ensures settings are loaded once and reused.
    """
    return Settings()
