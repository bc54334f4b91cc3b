from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Environment variables take precedence over the .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Database
    DATABASE_URL: str = "sqlite:///./outreach.db"

    # Logging
    LOG_LEVEL: str = "INFO"

    # Inbound webhook signing secret; signature checks are skipped when unset
    WEBHOOK_SECRET: Optional[str] = None

    # Transactional (SendGrid) transport
    SENDGRID_API_KEY: Optional[str] = None
    SENDGRID_API_URL: str = "https://api.sendgrid.com/v3/mail/send"

    # Threaded mailbox (Gmail) OAuth client
    GMAIL_CLIENT_ID: Optional[str] = None
    GMAIL_CLIENT_SECRET: Optional[str] = None
    GMAIL_TOKEN_URI: str = "https://oauth2.googleapis.com/token"

    # Upper bound for a single provider call
    TRANSPORT_TIMEOUT_SECONDS: float = 30.0

    # Follow-up sweep
    FOLLOW_UP_CLAIM_TTL_SECONDS: int = 600
    FOLLOW_UP_MAX_ATTEMPTS: int = 0  # 0 = retry forever

    # Background jobs
    SCHEDULER_ENABLED: bool = True
    FOLLOW_UP_SWEEP_INTERVAL_MINUTES: int = 60
    REPLY_IMPORT_INTERVAL_MINUTES: int = 30


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every call.
    """
    return Settings()


settings = get_settings()
