"""
Deed Integrity Configuration
Environment-driven settings (pydantic-settings), cached per process.
"""

from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from the environment / .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Application
    app_name: str = "Deed Integrity"
    app_version: str = "1.0.0"
    debug: bool = False
    log_level: str = "INFO"
    log_json: bool = False
    log_file: Optional[str] = None

    # Database
    database_url: str = "sqlite+aiosqlite:///./deed_integrity.db"

    # Hash engine
    hash_algorithm: str = "SHA-256"
    hash_chunk_size: int = Field(default=64 * 1024, gt=0)
    hash_streaming_threshold: int = Field(default=10 * 1024 * 1024, ge=0)
    hash_progress_interval: int = Field(default=1024 * 1024, gt=0)
    hash_size_tolerance: float = Field(default=0.10, ge=0.0)

    # Retry layer
    retry_max_attempts: int = Field(default=3, ge=1)
    retry_initial_delay: float = Field(default=1.0, ge=0.0)
    retry_multiplier: float = Field(default=2.0, ge=1.0)
    retry_max_delay: float = Field(default=30.0, ge=0.0)

    # Object store
    storage_backend: Literal["local", "r2"] = "local"
    storage_root: str = "data/documents"
    r2_account_id: str = ""
    r2_access_key_id: str = ""
    r2_secret_access_key: str = ""
    r2_bucket_name: str = "documents"

    # Uploads / verification
    max_upload_size_mb: int = 50
    commit_timeout_seconds: Optional[float] = 120.0

    # Reconciliation sweep
    reconciliation_grace_seconds: int = 15 * 60


@lru_cache
def get_settings() -> Settings:
    """Return the cached settings instance (FastAPI dependency friendly)."""
    return Settings()
