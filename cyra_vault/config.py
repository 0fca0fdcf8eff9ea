"""
Configuration and settings for the secure storage service.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-backed settings for the FastAPI service."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    api_prefix: str = Field(default="/api")
    log_level: str = Field(default="INFO", env="LOG_LEVEL")

    # Metadata store (Postgres expected, any SQLAlchemy URL works)
    database_url: Optional[str] = Field(default=None, env="DATABASE_URL")
    max_version_retries: int = Field(default=5, env="MAX_VERSION_RETRIES")

    # Content-addressed blob store (IPFS via Pinata)
    pinata_jwt: Optional[str] = Field(default=None, env="PINATA_JWT")
    pinata_gateway: Optional[str] = Field(default=None, env="PINATA_GATEWAY")
    pinata_upload_url: str = Field(
        default="https://uploads.pinata.cloud/v3/files", env="PINATA_UPLOAD_URL"
    )
    public_gateway_url: str = Field(
        default="https://ipfs.io/ipfs", env="PUBLIC_GATEWAY_URL"
    )
    request_timeout_seconds: float = Field(
        default=30.0, env="REQUEST_TIMEOUT_SECONDS"
    )

    # Batch stores
    batch_workers: int = Field(default=4, env="BATCH_WORKERS")

    # Development toggles
    use_in_memory_backends: bool = Field(
        default=False, env="USE_IN_MEMORY_BACKENDS"
    )

    # Pointer cache (Redis)
    redis_url: Optional[str] = Field(default=None, env="REDIS_URL")
    pointer_cache_prefix: str = Field(
        default="cyra:pointer", env="POINTER_CACHE_PREFIX"
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()
