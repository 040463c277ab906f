"""
Centralized configuration management with validation.

All environment variables are loaded and validated here.
This ensures consistent configuration across the API, the worker and scripts.
"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from typing import Optional
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
    # DATABASE_URL wins when set (tests use "sqlite://").
    DATABASE_URL: Optional[str] = Field(default=None)
    POSTGRES_USER: str = Field(default="postgres")
    POSTGRES_PASSWORD: str = Field(default="postgres")
    POSTGRES_DB: str = Field(default="coaching_admin")
    POSTGRES_HOST: str = Field(default="postgres")
    POSTGRES_PORT: int = Field(default=5432)

    # Database Pool Configuration
    DB_POOL_SIZE: int = Field(default=20)
    DB_MAX_OVERFLOW: int = Field(default=10)
    DB_POOL_TIMEOUT: int = Field(default=30)
    DB_POOL_RECYCLE: int = Field(default=3600)  # 1 hour

    # Redis Configuration
    REDIS_URL: str = Field(default="redis://redis:6379/0")

    # API Configuration
    API_HOST: str = Field(default="0.0.0.0")
    API_PORT: int = Field(default=8000)

    # Logging Configuration
    LOG_LEVEL: str = Field(default="INFO")
    LOG_FORMAT: str = Field(default="json")  # json or text

    # Celery Configuration
    CELERY_BROKER_URL: str = Field(default="redis://redis:6379/0")
    CELERY_RESULT_BACKEND: str = Field(default="redis://redis:6379/0")

    # Client operation queue (offline edits)
    PLAN_SYNC_CLIENT_MAX_RETRIES: int = Field(default=3, ge=1)
    PLAN_SYNC_CLIENT_BASE_DELAY_MS: int = Field(default=1000)
    PLAN_SYNC_CLIENT_MAX_DELAY_MS: int = Field(default=30000)
    # Offline backups must outlive a long gym session without connectivity.
    PLAN_SYNC_OFFLINE_CACHE_TTL_S: int = Field(default=7 * 24 * 3600)

    # Background plan-sync jobs
    PLAN_SYNC_QUEUE: str = Field(default="plan_sync")
    PLAN_SYNC_WORKER_CONCURRENCY: int = Field(default=5, ge=1)
    PLAN_SYNC_JOB_MAX_ATTEMPTS: int = Field(default=3, ge=1)
    PLAN_SYNC_JOB_BACKOFF_S: int = Field(default=2)  # exponential base
    PLAN_SYNC_DEPENDENCY_MAX_ATTEMPTS: int = Field(default=5, ge=1)
    PLAN_SYNC_DEPENDENCY_RETRY_DELAY_S: int = Field(default=2)  # fixed delay
    PLAN_SYNC_KEEP_COMPLETED_JOBS: int = Field(default=100)
    PLAN_SYNC_KEEP_FAILED_JOBS: int = Field(default=50)

    # Start a worker inside the API process (development only)
    AUTO_START_WORKER: bool = Field(default=False)

    # Environment
    ENVIRONMENT: str = Field(default="development")
    DEBUG: bool = Field(default=False)

    # CORS - comma-separated list of allowed origins for production
    CORS_ORIGINS: Optional[str] = Field(default=None)

    # Sentry Error Tracking
    SENTRY_DSN: Optional[str] = Field(default=None)
    SENTRY_TRACES_SAMPLE_RATE: float = Field(default=0.1)  # 10% of transactions


# Global settings instance
settings = Settings()
