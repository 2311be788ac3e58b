"""
docsync - Core Configuration
=============================

Centralized configuration using Pydantic settings.
Settings can be configured via:
1. Environment variables (.env file) - secrets, paths, connector defaults
2. Defaults - sensible values for local development

Usage:
    from docsync.core.config import settings

    interval = settings.SYNC_INTERVAL_MINUTES
"""

from functools import lru_cache
from pathlib import Path
from typing import Any, List

from pydantic import Field
from pydantic_settings import BaseSettings

import structlog

logger = structlog.get_logger(__name__)

# Credential cipher keys are fixed-length (32 characters -> 32 key bytes)
ENCRYPTION_KEY_LENGTH = 32


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    These are static settings that require restart to change.

    Settings are divided into:
    - SECRETS: cipher key, platform application secrets (.env only)
    - INFRASTRUCTURE: database URL, storage roots
    - PIPELINE: scheduling, concurrency and retry policy
    """

    # ==========================================================================
    # Application
    # ==========================================================================
    APP_NAME: str = Field(default="docsync", description="Application name")
    DEBUG: bool = Field(default=False, description="Debug mode")
    ENVIRONMENT: str = Field(default="development", description="Environment (development, staging, production)")

    # ==========================================================================
    # Database
    # ==========================================================================
    DATABASE_URL: str = Field(
        default="sqlite+aiosqlite:///./docsync.db",
        description="Async SQLAlchemy database URL",
    )

    # ==========================================================================
    # Storage
    # ==========================================================================
    STORAGE_PATH: str = Field(default="./storage", description="Canonical converted-output root")
    TEMP_PATH: str = Field(default="./temp", description="Download scratch directory")
    EXPORT_PATH: str = Field(default="./exports", description="Root for export destinations")

    # ==========================================================================
    # Security (SECRETS - .env only)
    # ==========================================================================
    ENCRYPTION_KEY: str = Field(default="", description="Credential cipher key, exactly 32 characters")

    # ==========================================================================
    # Pipeline
    # ==========================================================================
    SYNC_INTERVAL_MINUTES: int = Field(default=15, ge=1, description="Scheduled sync interval")
    WORKER_CONCURRENCY: int = Field(default=3, ge=1, description="Conversion worker pool size")
    JOB_MAX_RETRIES: int = Field(default=3, ge=0, description="Retries before a job is marked failed")
    JOB_RETRY_BASE_DELAY_SECONDS: float = Field(default=2.0, ge=0, description="First retry delay, doubled each retry")
    WATCH_ENABLED: bool = Field(default=True, description="Poll monitored sources for changes between scheduled syncs")
    WATCH_INTERVAL_SECONDS: float = Field(default=60.0, gt=0, description="Change-watch polling interval")
    HTTP_TIMEOUT_SECONDS: float = Field(default=30.0, gt=0, description="Timeout for storage API calls")
    DEFAULT_EXTENSIONS: List[str] = Field(
        default_factory=lambda: [".docx", ".pdf"],
        description="Extension allow-list used when a source does not define one",
    )

    # ==========================================================================
    # Platform application credentials (connector defaults)
    # ==========================================================================
    MICROSOFT_CLIENT_ID: str = Field(default="", description="Azure AD application client ID")
    MICROSOFT_CLIENT_SECRET: str = Field(default="", description="Azure AD application client secret")
    MICROSOFT_TENANT_ID: str = Field(default="", description="Azure AD tenant ID")
    GOOGLE_CLIENT_ID: str = Field(default="", description="Google OAuth client ID")
    GOOGLE_CLIENT_SECRET: str = Field(default="", description="Google OAuth client secret")

    # ==========================================================================
    # Logging
    # ==========================================================================
    LOG_LEVEL: str = Field(default="INFO", description="Root log level")
    LOG_FORMAT: str = Field(default="console", description="console or json")

    def model_post_init(self, __context: Any) -> None:
        """Warn early about a missing cipher key; startup validation rejects it."""
        if not self.ENCRYPTION_KEY and self.ENVIRONMENT in ("production", "staging"):
            logger.warning("ENCRYPTION_KEY is not set; the service will refuse to start")

    @property
    def storage_dir(self) -> Path:
        return Path(self.STORAGE_PATH).resolve()

    @property
    def temp_dir(self) -> Path:
        return Path(self.TEMP_PATH).resolve()

    @property
    def export_dir(self) -> Path:
        return Path(self.EXPORT_PATH).resolve()

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True
        extra = "ignore"  # Ignore extra env vars


def validate_startup(config: Settings) -> None:
    """
    Validate settings the process cannot run without.

    Raises:
        ConfigurationException: if the cipher key has the wrong length or
            a storage root cannot be created.
    """
    from docsync.services.base import ConfigurationException

    if len(config.ENCRYPTION_KEY) != ENCRYPTION_KEY_LENGTH:
        raise ConfigurationException(
            f"ENCRYPTION_KEY must be exactly {ENCRYPTION_KEY_LENGTH} characters long",
            details={"actual_length": len(config.ENCRYPTION_KEY)},
        )

    for directory in (config.storage_dir, config.temp_dir, config.export_dir):
        try:
            directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ConfigurationException(
                f"Cannot create directory {directory}: {e}",
                details={"path": str(directory)},
            ) from e

    logger.info(
        "Configuration validated",
        environment=config.ENVIRONMENT,
        storage_path=str(config.storage_dir),
        sync_interval_minutes=config.SYNC_INTERVAL_MINUTES,
        worker_concurrency=config.WORKER_CONCURRENCY,
    )


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Global settings instance
settings = get_settings()
