"""
Core application configuration using Pydantic Settings.

All environment variables are loaded here and validated.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # App Configuration
    APP_NAME: str = "Inbox Zero"
    APP_URL: str = "http://localhost:8000"
    ENVIRONMENT: str = "development"
    DEBUG: bool = True

    # Database
    DATABASE_URL: str

    # Security & Encryption
    ENCRYPTION_KEY: str  # For Fernet token encryption (44-char base64)

    # OAuth - Google (token refresh only)
    GOOGLE_CLIENT_ID: str
    GOOGLE_CLIENT_SECRET: str

    # OAuth - Microsoft 365 (token refresh only)
    MICROSOFT_CLIENT_ID: Optional[str] = None
    MICROSOFT_CLIENT_SECRET: Optional[str] = None
    MICROSOFT_TENANT: str = "common"

    # OpenAI API
    OPENAI_API_KEY: str
    OPENAI_MODEL: str = "gpt-4o-mini"
    OPENAI_ECONOMY_MODEL: str = "gpt-4o-mini"
    OPENAI_TIMEOUT_SECONDS: float = 60.0
    LLM_MAX_ATTEMPTS: int = 3

    # Redis
    REDIS_URL: str = "redis://localhost:6379/0"

    # Celery
    CELERY_BROKER_URL: Optional[str] = None
    CELERY_RESULT_BACKEND: Optional[str] = None

    # Google Cloud Pub/Sub (for Gmail webhooks)
    GOOGLE_PROJECT_ID: Optional[str] = None
    GOOGLE_PUBSUB_TOPIC: Optional[str] = None
    GOOGLE_PUBSUB_VERIFICATION_TOKEN: Optional[str] = None

    # Sentry Monitoring
    SENTRY_DSN: Optional[str] = None

    # Rate Limiting
    RATE_LIMIT_EMAILS_PER_MIN: int = 60  # Gmail API quota safety

    # Rule engine
    MAX_EMAIL_CHARS_FOR_LLM: int = 2000
    TO_REPLY_RECEIVED_THRESHOLD: int = 10
    DRAFT_THREAD_MESSAGE_LIMIT: int = 5

    # Scheduled (delayed) actions
    SCHEDULED_ACTION_MAX_RETRIES: int = 3
    SCHEDULED_ACTION_RETRY_DELAY_MINUTES: int = 15
    SCHEDULED_ACTION_BATCH_SIZE: int = 100

    # Outgoing webhooks (CALL_WEBHOOK action)
    WEBHOOK_TIMEOUT_SECONDS: float = 10.0
    WEBHOOK_SECRET: Optional[str] = None

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        # Set Celery URLs to Redis if not explicitly set
        if not self.CELERY_BROKER_URL:
            self.CELERY_BROKER_URL = self.REDIS_URL
        if not self.CELERY_RESULT_BACKEND:
            self.CELERY_RESULT_BACKEND = self.REDIS_URL

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.ENVIRONMENT.lower() == "production"

    @property
    def database_url_sync(self) -> str:
        """Get synchronous database URL (for Alembic migrations)."""
        return self.DATABASE_URL.replace("postgresql+asyncpg://", "postgresql://")


# Global settings instance
settings = Settings()
