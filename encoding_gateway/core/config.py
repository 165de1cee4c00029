"""Application configuration settings.

All configuration values are loaded from environment variables (.env file).
No sensitive values should be hardcoded here.
"""

from typing import Optional
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    PROJECT_NAME: str = "Encoding Gateway API"
    VERSION: str = "0.1.0"
    API_V1_PREFIX: str = "/api/v1"
    DEBUG: bool = False
    ENVIRONMENT: str = "development"

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./encoding.db"

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True

    # Tracing
    OTLP_ENDPOINT: Optional[str] = None

    # GCP Pub/Sub - required for dispatching encode jobs
    GCP_PROJECT_ID: str = ""
    GCP_PUBSUB_TOPIC: str = ""
    GCP_SERVICE_ACCOUNT_KEY: str = ""  # base64 encoded service account JSON
    PUBSUB_API_BASE: str = "https://pubsub.googleapis.com/v1"

    # Encoding webhook callbacks
    ENCODING_WEBHOOK_URL: str = ""
    ENCODING_WEBHOOK_SECRET: str = ""
    WEBHOOK_TOLERANCE_SECONDS: int = 300

    # Object storage bucket holding raw and encoded files
    STORAGE_BUCKET: str = ""

    # Encoding jobs
    ENCODING_TOKEN_CACHE: bool = False
    ENCODING_MAX_ATTEMPTS: int = 3

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"

    @property
    def pubsub_configured(self) -> bool:
        """Whether enough configuration is present to publish encode jobs."""
        return bool(
            self.GCP_PROJECT_ID
            and self.GCP_PUBSUB_TOPIC
            and self.GCP_SERVICE_ACCOUNT_KEY
        )


settings = Settings()
