"""
Bank Reconciliation Core - Configuration Management

Centralized configuration for environment variables and deployment settings.
This module ensures:
- No hardcoded secrets
- Bank feed credentials are validated before use
- Environment-specific settings (dev/staging/prod)
- Secure defaults
"""

from decimal import Decimal
from typing import List, Tuple
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache
import logging

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Uses pydantic-settings for validation and type coercion.
    """

    # ==================== ENVIRONMENT ====================
    ENVIRONMENT: str = Field(
        default="development",
        description="Runtime environment: development, staging, production"
    )
    DEBUG: bool = Field(
        default=False,
        description="Enable debug mode (auto-enabled in development)"
    )

    # ==================== DATABASE ====================
    DATABASE_URL: str = Field(
        default="",
        description="PostgreSQL connection URL (postgresql+asyncpg://...)"
    )
    POSTGRES_HOST: str = Field(default="")
    POSTGRES_PORT: int = Field(default=5432)
    POSTGRES_DB: str = Field(default="reconciliation")
    POSTGRES_USER: str = Field(default="")
    POSTGRES_PASSWORD: str = Field(default="")
    POSTGRES_SSLMODE: str = Field(default="")
    DB_POOL_SIZE: int = Field(default=5, description="Connections kept in the pool")
    DB_MAX_OVERFLOW: int = Field(default=10, description="Extra connections allowed under load")

    # ==================== BANK FEED ====================
    BANK_FEED_API_BASE_URL: str = Field(
        default="https://thirdparty.qonto.com",
        description="Base URL of the upstream bank feed API"
    )
    BANK_FEED_LOGIN: str = Field(
        default="",
        description="Bank feed API login (organization slug)"
    )
    BANK_FEED_SECRET: str = Field(
        default="",
        description="Bank feed API secret key"
    )
    BANK_FEED_BANK_ACCOUNT_ID: str = Field(
        default="",
        description="Bank account to sync (first account of the organization when empty)"
    )
    BANK_FEED_TIMEOUT_SECONDS: float = Field(
        default=30.0,
        description="Per-request timeout for the bank feed API"
    )
    BANK_FEED_MAX_RETRIES: int = Field(
        default=3,
        description="Retries after the first attempt for transient upstream failures"
    )
    BANK_FEED_RETRY_BACKOFF_SECONDS: str = Field(
        default="1,2,4",
        description="Comma-separated delays between retries (last value repeats)"
    )
    BANK_FEED_PAGE_SIZE: int = Field(
        default=100,
        description="Transactions requested per page"
    )
    BANK_FEED_AUTO_SYNC_THRESHOLD_SECONDS: int = Field(
        default=3600,
        description="Minimum age of the last sync before a search re-syncs"
    )

    # ==================== RECONCILIATION ====================
    RECONCILIATION_MATCH_TOLERANCE: Decimal = Field(
        default=Decimal("0.00"),
        description="Allowed absolute difference between expected and allocated totals"
    )

    # ==================== OBSERVABILITY ====================
    SENTRY_DSN: str = Field(
        default="",
        description="Sentry DSN for error tracking"
    )
    LOG_LEVEL: str = Field(
        default="INFO",
        description="Logging level: DEBUG, INFO, WARNING, ERROR"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # ==================== COMPUTED PROPERTIES ====================

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT.lower() == "development"

    @property
    def debug_enabled(self) -> bool:
        """Enable debug in development or when explicitly set"""
        return self.DEBUG or self.is_development

    @property
    def bank_feed_configured(self) -> bool:
        return bool(self.BANK_FEED_LOGIN and self.BANK_FEED_SECRET)

    @property
    def retry_backoff_list(self) -> Tuple[float, ...]:
        """Parse BANK_FEED_RETRY_BACKOFF_SECONDS into a tuple of delays."""
        delays = [
            float(d.strip()) for d in self.BANK_FEED_RETRY_BACKOFF_SECONDS.split(",")
            if d.strip()
        ]
        return tuple(delays) or (1.0,)

    def validate_production_config(self) -> List[str]:
        """
        Validate configuration for production deployment.
        Returns list of validation errors.
        """
        errors = []

        if not self.DATABASE_URL and not self.POSTGRES_HOST:
            errors.append("DATABASE_URL is required")

        if not self.bank_feed_configured:
            errors.append("BANK_FEED_LOGIN and BANK_FEED_SECRET are required")

        if self.RECONCILIATION_MATCH_TOLERANCE < 0:
            errors.append("RECONCILIATION_MATCH_TOLERANCE cannot be negative")

        if self.BANK_FEED_MAX_RETRIES < 0:
            errors.append("BANK_FEED_MAX_RETRIES cannot be negative")

        if self.is_production:
            if "localhost" in self.DATABASE_URL.lower():
                errors.append("DATABASE_URL cannot point to localhost in production")

            if self.DEBUG:
                errors.append("DEBUG should be False in production")

        return errors

    def get_database_url(self) -> str:
        """Get the appropriate database URL"""
        if self.DATABASE_URL:
            return self.DATABASE_URL

        # Build from components if DATABASE_URL not set
        if self.POSTGRES_HOST and self.POSTGRES_USER and self.POSTGRES_PASSWORD:
            ssl = f"?ssl={self.POSTGRES_SSLMODE}" if self.POSTGRES_SSLMODE else ""
            return f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}{ssl}"

        raise ValueError("No database configuration found. Set DATABASE_URL or POSTGRES_* variables.")


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Settings are loaded once and cached for the application lifetime.
    """
    settings = Settings()

    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Bank feed configured: {settings.bank_feed_configured}")

    # Validate in production
    if settings.is_production:
        errors = settings.validate_production_config()
        if errors:
            for error in errors:
                logger.error(f"Configuration error: {error}")
            raise ValueError(f"Production configuration invalid: {', '.join(errors)}")

    return settings
