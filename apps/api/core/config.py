"""
Centralized configuration management with validation.

All environment variables are loaded and validated here.
This ensures consistent configuration across the application.
"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from typing import List, Optional
from dotenv import load_dotenv

load_dotenv()


class Settings(BaseSettings):
    """Application settings with validation."""

    # Pydantic v2 configuration
    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore"
    )

    # Database Configuration
    POSTGRES_USER: str = Field(default="postgres")
    POSTGRES_PASSWORD: str = Field(default="postgres")
    POSTGRES_DB: str = Field(default="prayer_coverage")
    POSTGRES_HOST: str = Field(default="postgres")
    POSTGRES_PORT: int = Field(default=5432)
    # Full URL override (e.g. sqlite for local runs and tests)
    DATABASE_URL: Optional[str] = Field(default=None)

    # Database Pool Configuration
    DB_POOL_SIZE: int = Field(default=20)
    DB_MAX_OVERFLOW: int = Field(default=10)
    DB_POOL_TIMEOUT: int = Field(default=30)
    DB_POOL_RECYCLE: int = Field(default=3600)  # 1 hour

    # JWT Authentication - REQUIRED for token signing
    # Must be set via environment variable, never use default in production
    SECRET_KEY: str = Field(
        default=...,  # Required - no default
        description="JWT signing key. Must be cryptographically secure (32+ chars). "
                    "Generate with: python -c \"import secrets; print(secrets.token_urlsafe(32))\""
    )

    # API Configuration
    API_HOST: str = Field(default="0.0.0.0")
    API_PORT: int = Field(default=8000)
    API_RELOAD: bool = Field(default=False)

    # Logging Configuration
    LOG_LEVEL: str = Field(default="INFO")
    LOG_FORMAT: str = Field(default="json")  # json or text

    # Celery Configuration
    CELERY_BROKER_URL: str = Field(default="redis://redis:6379/0")
    CELERY_RESULT_BACKEND: str = Field(default="redis://redis:6379/0")

    # Environment
    ENVIRONMENT: str = Field(default="development")
    DEBUG: bool = Field(default=False)

    # Error tracking (Sentry); unset disables it
    SENTRY_DSN: Optional[str] = Field(default=None)
    SENTRY_TRACES_SAMPLE_RATE: float = Field(default=0.1)  # 10% of transactions

    # CORS - comma-separated list of allowed origins for production
    CORS_ORIGINS: Optional[str] = Field(default=None)

    # --- SLOT POLICY ---
    # Windows are expressed in this timezone unless a slot overrides it.
    SLOT_TIMEZONE: str = Field(default="Africa/Harare")
    SLOT_LENGTH_MINUTES: int = Field(default=30, ge=5, le=720)
    # Consecutive missed occurrences before a slot is released for reassignment.
    MISSED_RELEASE_THRESHOLD: int = Field(default=5, ge=1)
    # Grace period granted by a plain skip request.
    SKIP_GRACE_DAYS: int = Field(default=5, ge=1)
    # Upper bound for admin-approved skip requests.
    MAX_SKIP_DAYS: int = Field(default=30, ge=1)
    # Held slots (active/missed/skipped) one intercessor may have at once.
    MAX_SLOTS_PER_INTERCESSOR: int = Field(default=1, ge=1)

    # --- REMINDERS ---
    REMINDER_OFFSETS_MINUTES: str = Field(default="60,30,15")
    # An offset is only due this long after its fire time.
    REMINDER_GRACE_SECONDS: int = Field(default=60, ge=1)

    # --- METRICS ---
    COVERAGE_LOOKBACK_DAYS: int = Field(default=30, ge=1)
    # Extra wait after a window ends before the sweep records a miss.
    MISSED_SWEEP_GRACE_MINUTES: int = Field(default=0, ge=0)

    @property
    def reminder_offsets(self) -> List[int]:
        return parse_offsets(self.REMINDER_OFFSETS_MINUTES)


def parse_offsets(raw: Optional[str]) -> List[int]:
    """Parse a comma list of minute offsets, largest first, ignoring junk."""
    offsets = set()
    for part in (raw or "").split(","):
        part = part.strip()
        if not part:
            continue
        try:
            value = int(part)
        except ValueError:
            continue
        if value > 0:
            offsets.add(value)
    return sorted(offsets, reverse=True)


# Global settings instance
settings = Settings()
