"""
Application configuration settings.

Central configuration module using Pydantic BaseSettings with environment variable support.
Loads from .env file and environment variables.
"""
import json
import os
from functools import lru_cache
from pathlib import Path
from typing import Dict, List, Optional, Union

from dotenv import load_dotenv
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load .env file if it exists (python-dotenv)
env_path = Path(".env")
if env_path.exists():
    load_dotenv(dotenv_path=env_path)


def _parse_list(v):
    """Parse a list from a JSON array string or a comma-separated string."""
    if isinstance(v, str):
        try:
            return json.loads(v)
        except json.JSONDecodeError:
            return [item.strip() for item in v.split(",") if item.strip()]
    return v


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # App settings
    APP_NAME: str = "Audit Engine"
    APP_ENV: str = Field(default="local")
    DEBUG: bool = Field(default=False)

    # Database connection string; SQLite is used when nothing is configured
    DATABASE_URL: Optional[str] = Field(
        default=None,
        description="Database connection URL",
    )

    @property
    def sqlalchemy_database_uri(self) -> str:
        """
        Build SQLAlchemy database URI.

        DATABASE_URL wins when set (postgres:// is rewritten for psycopg2),
        otherwise a local SQLite file is used.
        """
        if self.DATABASE_URL:
            if self.DATABASE_URL.startswith("postgres://"):
                return self.DATABASE_URL.replace("postgres://", "postgresql+psycopg2://", 1)
            return self.DATABASE_URL
        return "sqlite:///./audit_engine.db"

    # CORS settings
    CORS_ORIGINS: Union[str, List[str]] = Field(
        default='["http://localhost:3000", "http://localhost:8000"]',
    )

    @field_validator("CORS_ORIGINS")
    @classmethod
    def parse_cors_origins(cls, v):
        """Parse CORS_ORIGINS from string or list."""
        return _parse_list(v)

    # Logging
    LOG_LEVEL: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    LOG_DIR: str = Field(default="logs", description="Directory for the rotating log file")

    # API Authentication
    API_KEY: Optional[str] = Field(
        default=None,
        description="Static admin API key. Leave empty to disable authentication.",
    )
    API_KEY_SALT: str = Field(
        default="audit_engine_api_key_salt",
        description="Salt mixed into stored API key hashes",
    )

    # Integrity
    AUDIT_SIGNING_KEY: Optional[str] = Field(
        default=None,
        description="Secret used to compute HMAC signatures over activity records",
    )

    # Condition evaluation
    REFERENCE_TIMEZONE: str = Field(
        default="UTC",
        description="Timezone used for hour-of-day (time_range) conditions",
    )

    # Sweeps
    SWEEP_CONCURRENCY_LIMIT: int = Field(
        default=8, ge=1, description="Upper bound on worker threads used by a sweep"
    )
    RETENTION_BATCH_SIZE: int = Field(default=100, ge=1)
    SWEEP_TIMEOUT_SECONDS: Optional[float] = Field(
        default=None, description="Deadline for a single sweep; unset means no deadline"
    )
    FAILURE_SAMPLE_SIZE: int = Field(
        default=10, ge=0, description="How many failure reasons a sweep summary keeps"
    )

    # Alerting
    DEFAULT_MERGE_WINDOW_SECONDS: int = Field(default=300, ge=0)
    ALERT_GROUP_STORE: str = Field(
        default="memory", description="Where merge groups live: memory or database"
    )
    ALERT_ADMIN_RECIPIENTS: Union[str, List[str]] = Field(default="[]")
    ALERT_ROLE_RECIPIENTS: Union[str, Dict[str, List[str]]] = Field(default="{}")
    DISPATCH_MAX_ATTEMPTS: int = Field(default=3, ge=1)
    DISPATCH_RETRY_DELAY_SECONDS: int = Field(default=300, ge=0)
    WEBHOOK_TIMEOUT_SECONDS: float = Field(default=30.0, gt=0)

    @field_validator("ALERT_ADMIN_RECIPIENTS")
    @classmethod
    def parse_admin_recipients(cls, v):
        """Parse ALERT_ADMIN_RECIPIENTS from string or list."""
        return [str(item) for item in _parse_list(v)]

    @field_validator("ALERT_ROLE_RECIPIENTS")
    @classmethod
    def parse_role_recipients(cls, v):
        """Parse ALERT_ROLE_RECIPIENTS from a JSON object string."""
        if isinstance(v, str):
            v = json.loads(v) if v.strip() else {}
        return {str(role): [str(member) for member in members] for role, members in v.items()}

    @field_validator("ALERT_GROUP_STORE")
    @classmethod
    def validate_group_store(cls, v: str) -> str:
        """Validate merge group storage backend."""
        if v.lower() not in ("memory", "database"):
            raise ValueError("ALERT_GROUP_STORE must be 'memory' or 'database'")
        return v.lower()

    def is_signing_key_configured(self) -> bool:
        """Check if the audit signing key is configured and not empty."""
        return (
            self.AUDIT_SIGNING_KEY is not None
            and isinstance(self.AUDIT_SIGNING_KEY, str)
            and self.AUDIT_SIGNING_KEY.strip() != ""
        )

    def sweep_workers(self) -> int:
        """Worker pool size: available CPUs, bounded by the concurrency limit."""
        return max(1, min(os.cpu_count() or 1, self.SWEEP_CONCURRENCY_LIMIT))


# Create global settings instance
@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()

# Backward compatibility: keep global settings instance
settings = get_settings()
