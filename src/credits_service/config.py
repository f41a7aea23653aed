"""Application configuration using Pydantic Settings."""

import json
import os
import secrets
import warnings
from decimal import Decimal
from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from credits_service.exceptions import DefaultSecretKeyError, ShortSecretKeyError

# Minimum length for JWT secret key in production
MIN_JWT_SECRET_LENGTH = 32

# SECURITY: Generate a random secret for development if not explicitly set
_ENV_JWT_SECRET = os.environ.get("JWT_SECRET_KEY")
if _ENV_JWT_SECRET:
    _DEV_JWT_SECRET = _ENV_JWT_SECRET
else:
    _DEV_JWT_SECRET = secrets.token_urlsafe(48)
    if os.environ.get("ENVIRONMENT", "development") != "test":
        warnings.warn(
            "JWT_SECRET_KEY not set - using auto-generated secret. "
            "Tokens issued by the auth service will not validate. "
            "Set JWT_SECRET_KEY to the secret shared with the auth service.",
            stacklevel=2,
        )


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
    )

    # Application
    VERSION: str = "0.1.0"
    ENVIRONMENT: str = "development"
    PORT: int = 3002
    DEBUG: bool = False

    # CORS - stored as raw string to avoid pydantic-settings JSON parsing issues
    CORS_ORIGINS_RAW: str = Field(
        default='["http://localhost:19006"]',
        validation_alias="CORS_ORIGINS",
    )

    @property
    def CORS_ORIGINS(self) -> list[str]:  # noqa: N802 - matches env var name
        """Parse CORS origins from JSON array, comma-separated, or plain string."""
        v = self.CORS_ORIGINS_RAW.strip() if self.CORS_ORIGINS_RAW else ""
        if not v:
            return []
        if v.startswith("["):
            try:
                parsed = json.loads(v)
                return [str(x) for x in parsed] if isinstance(parsed, list) else [v]
            except json.JSONDecodeError:
                pass
        if "," in v:
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return [v]

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool | None = None  # None: JSON everywhere except development

    # Sentry (disabled when SENTRY_DSN is empty)
    SENTRY_DSN: str = ""
    SENTRY_TRACES_SAMPLE_RATE: float | None = None

    # Database
    # NOTE: In production, DATABASE_URL must be set via environment variable
    DATABASE_URL: str = "postgresql+asyncpg://localhost:5432/credits"

    # Database connection pool settings (ignored for SQLite)
    DB_POOL_SIZE: int = 10
    DB_POOL_MAX_OVERFLOW: int = 20
    DB_POOL_TIMEOUT: int = 30
    DB_POOL_RECYCLE: int = 1800
    SQLITE_BUSY_TIMEOUT: float = 30.0  # Seconds a writer waits for the database lock

    # Ledger
    # Upper bound for a single ledger call; on expiry the caller treats it as failed
    LEDGER_OPERATION_TIMEOUT_SECONDS: float = 10.0
    LEDGER_HISTORY_MAX_LIMIT: int = 1000

    # Redis (rate limit storage). Empty means in-memory limits.
    REDIS_URL: str = ""

    # Auth (tokens are issued by the auth service, validated here)
    JWT_SECRET_KEY: str = _DEV_JWT_SECRET
    JWT_ALGORITHM: str = "HS256"

    @field_validator("JWT_SECRET_KEY")
    @classmethod
    def validate_jwt_secret(cls, v: str, _info: object) -> str:
        """Validate JWT secret meets security requirements in production."""
        env = os.environ.get("ENVIRONMENT", "development")
        if env == "production":
            if not os.environ.get("JWT_SECRET_KEY"):
                raise DefaultSecretKeyError
            if len(v) < MIN_JWT_SECRET_LENGTH:
                raise ShortSecretKeyError
        return v

    # Internal Service Authentication (workflow engine, admin tooling)
    INTERNAL_SERVICE_TOKEN: str = ""

    @field_validator("INTERNAL_SERVICE_TOKEN")
    @classmethod
    def validate_internal_service_token(cls, v: str, _info: object) -> str:
        """Validate internal service token is set."""
        env = os.environ.get("ENVIRONMENT", "development")
        if env == "production" and not v:
            raise ValueError("INTERNAL_SERVICE_TOKEN required in production")  # noqa: TRY003
        return v

    # Stripe
    STRIPE_SECRET_KEY: str | None = None
    STRIPE_WEBHOOK_SECRET: str | None = None
    STRIPE_CURRENCY: str = "usd"
    STRIPE_PRICE_PREMIUM: str | None = None
    STRIPE_PRICE_ENTERPRISE: str | None = None

    # Credits granted when a paid tier starts or renews, keyed by tier
    TIER_CREDIT_STIPENDS: dict[str, Decimal] = Field(
        default_factory=lambda: {"premium": Decimal(500), "enterprise": Decimal(2500)}
    )

    # Per-unit cost overrides merged over the default metering table
    CREDIT_COST_OVERRIDES: dict[str, Decimal] = Field(default_factory=dict)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
