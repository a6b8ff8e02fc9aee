"""Application configuration."""

from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Optional


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # General
    APP_NAME: str = "Email Schedule Engine"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"  # development, staging, production, testing

    # Database Settings
    DATABASE_URL: str = "sqlite+aiosqlite:///./schedules.db"
    SQLALCHEMY_ECHO: bool = False
    DB_POOL_SIZE: int = 20
    DB_MAX_OVERFLOW: int = 10

    # Redis Settings (Celery broker / result backend)
    REDIS_URL: str = "redis://localhost:6379/0"

    # Scheduler
    SCHEDULER_POLL_INTERVAL_SECONDS: int = 60
    SCHEDULER_INSTANCE_ID: str = ""
    # None keeps locks until released; a value enables takeover of older rows
    EXECUTION_LOCK_STALE_AFTER_SECONDS: Optional[int] = None

    # Execution
    MAX_EMAILS_PER_EXECUTION: int = 50
    DEFAULT_BATCH_SIZE: int = 5
    EXECUTION_MAX_ATTEMPTS: int = 3
    SPECIFIC_DATE_WINDOW_HOURS: int = 24
    DEFAULT_SCHEDULE_LOOKBACK_DAYS: int = 30
    CALENDAR_OCCURRENCES: int = 10
    EXECUTION_RETENTION_DAYS: int = 90

    # Mail collaborators ("package.module:attribute" import paths)
    MAIL_CLIENT_FACTORY: str = ""  # async callable(account_id) -> mail client
    EMAIL_PROCESSOR: str = ""  # object or zero-arg factory exposing process_emails()
    MAIL_POOL_MAX_CLIENTS_PER_ACCOUNT: int = 2

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "json"  # json or text

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.ENVIRONMENT == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.ENVIRONMENT == "production"

    class Config:
        """Pydantic config."""

        env_file = ".env"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings.

    Uses caching to ensure settings are loaded only once.

    Returns:
        Settings object with all configuration values
    """
    return Settings()
