"""
Centralized configuration management with validation.

All environment variables are loaded and validated here.
Services receive values from `settings` (or through constructors);
nothing else reads the environment directly.
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
    # A full SQLAlchemy URL wins over the POSTGRES_* parts (tests use sqlite://).
    DATABASE_URL: Optional[str] = Field(default=None)
    POSTGRES_USER: str = Field(default="postgres")
    POSTGRES_PASSWORD: str = Field(default="postgres")
    POSTGRES_DB: str = Field(default="nutrisync")
    POSTGRES_HOST: str = Field(default="postgres")
    POSTGRES_PORT: int = Field(default=5432)

    # Database Pool Configuration
    DB_POOL_SIZE: int = Field(default=20)
    DB_MAX_OVERFLOW: int = Field(default=10)
    DB_POOL_TIMEOUT: int = Field(default=30)
    DB_POOL_RECYCLE: int = Field(default=3600)  # 1 hour

    # Terra (wearable data aggregation) API Configuration
    TERRA_DEV_ID: Optional[str] = Field(default=None)
    TERRA_API_KEY: Optional[str] = Field(default=None)
    TERRA_API_BASE_URL: str = Field(default="https://api.tryterra.co/v2")
    # When unset, webhook signatures are not checked (trust-on-first-use deployments).
    TERRA_WEBHOOK_SECRET: Optional[str] = Field(default=None)
    TERRA_WIDGET_LANGUAGE: str = Field(default="en")

    # Health data normalization / aggregation
    # Hours of the reference night used when only a sleep efficiency ratio is available.
    SLEEP_FALLBACK_REFERENCE_HOURS: float = Field(default=8.0, gt=0, le=24)
    # 'sum' | 'prefer_primary' | 'max'
    HEALTH_RECONCILIATION_STRATEGY: str = Field(default="sum")
    # Comma-separated provider priority for 'prefer_primary', e.g. "oura,garmin,fitbit"
    HEALTH_PRIMARY_PROVIDERS: Optional[str] = Field(default=None)

    # API Configuration
    API_HOST: str = Field(default="0.0.0.0")
    API_PORT: int = Field(default=8000)
    API_RELOAD: bool = Field(default=False)

    # Logging Configuration
    LOG_LEVEL: str = Field(default="INFO")
    LOG_FORMAT: str = Field(default="json")  # json or text

    # External API Configuration
    EXTERNAL_API_TIMEOUT: int = Field(default=30)

    # Environment
    ENVIRONMENT: str = Field(default="development")
    DEBUG: bool = Field(default=False)

    # CORS - comma-separated list of allowed origins for production
    CORS_ORIGINS: Optional[str] = Field(default=None)

    # Web app base URL (for hosted-auth redirects back to the UI).
    WEB_APP_BASE_URL: str = Field(default="http://localhost:5173")

    # Sentry Error Tracking
    SENTRY_DSN: Optional[str] = Field(default=None)
    SENTRY_TRACES_SAMPLE_RATE: float = Field(default=0.1)  # 10% of transactions

    @property
    def database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return (
            f"postgresql://{self.POSTGRES_USER}:"
            f"{self.POSTGRES_PASSWORD}@"
            f"{self.POSTGRES_HOST}:"
            f"{self.POSTGRES_PORT}/"
            f"{self.POSTGRES_DB}"
        )

    @property
    def primary_providers(self) -> List[str]:
        if not self.HEALTH_PRIMARY_PROVIDERS:
            return []
        return [p.strip().lower() for p in self.HEALTH_PRIMARY_PROVIDERS.split(",") if p.strip()]


# Global settings instance
settings = Settings()
