"""
Application configuration settings.
Uses pydantic-settings for environment variable management.
"""

from pathlib import Path
from typing import Optional
from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    APP_NAME: str = "Bank Feed"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False  # SQLAlchemy echoes queries when True
    ENVIRONMENT: str = "local"  # local, staging, production

    # Database
    DATABASE_URL: str = "sqlite:///./bankfeed.db"

    # Paths
    BASE_DIR: Path = Path(__file__).resolve().parent.parent.parent.parent

    # Security
    SECRET_KEY: str = "bankfeed-secret-key-change-in-production"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60 * 24  # 1 day

    # Network/CORS
    CORS_ORIGINS: list[str] = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
        "http://localhost:5173",
        "http://127.0.0.1:5173",
    ]
    CORS_ALLOW_ALL: bool = False

    # Bridge API (aggregator)
    BRIDGE_BASE_URL: str = "https://api.bridgeapi.io"
    BRIDGE_VERSION: str = "2025-01-15"
    BRIDGE_CLIENT_ID: Optional[str] = None
    BRIDGE_CLIENT_SECRET: Optional[str] = None
    BRIDGE_WEBHOOK_SECRET: Optional[str] = None
    BRIDGE_HTTP_TIMEOUT: int = 60  # seconds
    BRIDGE_ITEM_STATUS_TIMEOUT: int = 30  # seconds
    BRIDGE_HTTP_RETRIES: int = 2  # total attempts per call
    BRIDGE_HTTP_BACKOFF_SECONDS: float = 0.1

    # Bank sync
    BANKING_SYNC_HISTORY_DAYS: int = 90
    BANKING_SYNC_PAGE_SIZE: int = 500
    BANKING_DEFAULT_SYNC_FREQUENCY_HOURS: int = 6
    BANKING_ERROR_ESCALATION_THRESHOLD: int = 5
    BANKING_AUTO_CONVERT: bool = False  # convert new records inline after import
    BANKING_AUTO_SYNC_ENABLED: bool = True
    BANKING_AUTO_SYNC_INTERVAL_MINUTES: int = 30
    BANKING_CONVERSION_CHUNK_SIZE: int = 100

    # Categorization
    CATEGORIZATION_CONFIDENCE_THRESHOLD: float = 0.70

    # Job queue
    JOB_RETRY_BACKOFF_SECONDS: float = 5.0
    JOB_WORKER_THREADS: int = 4

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"  # Ignore extra fields from .env that aren't in the model


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
