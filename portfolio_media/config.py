"""Application settings.

All configuration comes from environment variables (or a ``.env`` file) and
is resolved exactly once, when the application (or a worker) starts:

    ENVIRONMENT: 'development' (default), 'production' or 'test'.
    LOG_LEVEL: Root log level (default 'INFO').
    UPLOADS_DIR: Local uploads root (default './public/uploads').
    UPLOADS_URL_PREFIX: URL path the uploads root is served under
        (default '/uploads').
    STORAGE_BACKEND: 'local' (default) or 's3'.
    S3_BUCKET, S3_REGION, S3_PREFIX, S3_PUBLIC_BASE_URL: S3 backend.
    REDIS_HOST, REDIS_PORT, REDIS_DB, RQ_QUEUE: queue for cleanup jobs.
    CLEANUP_GRACE_SECONDS: Minimum age before an unreferenced asset may
        be deleted (default 0).
    CORS_ORIGINS: Comma separated list of allowed origins (default '*').
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
        case_sensitive=False,
    )

    environment: str = "development"
    log_level: str = "INFO"
    uploads_dir: Path = Path("./public/uploads")
    uploads_url_prefix: str = "/uploads"
    storage_backend: Literal["local", "s3"] = "local"
    s3_bucket: Optional[str] = None
    s3_region: str = "eu-west-1"
    s3_prefix: str = "portfolio"
    s3_public_base_url: Optional[str] = None
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_db: int = 0
    rq_queue: str = "cleanup"
    cleanup_grace_seconds: int = Field(default=0, ge=0)
    cors_origins: str = "*"

    @field_validator("storage_backend", mode="before")
    @classmethod
    def _lower_backend(cls, value):
        return value.strip().lower() if isinstance(value, str) else value

    @field_validator("s3_bucket", "s3_public_base_url", mode="before")
    @classmethod
    def _blank_is_none(cls, value):
        return value or None

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def allowed_origins(self) -> List[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    @classmethod
    def from_env(cls) -> "Settings":
        return cls()


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
