"""Application configuration utilities."""

from __future__ import annotations

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings derived from environment variables."""

    database_url: str = Field(default="sqlite:///./auditflow.db", alias="DATABASE_URL")
    redis_url: str = Field(default="redis://localhost:6379/0", alias="REDIS_URL")
    redis_enabled_flag: bool = Field(default=True, alias="REDIS_ENABLED")
    redis_key_prefix: str = Field(default="auditflow", alias="REDIS_KEY_PREFIX")
    redis_ca_cert_path: str | None = Field(default=None, alias="REDIS_CA_CERT_PATH")
    celery_broker_url: str | None = Field(default=None, alias="CELERY_BROKER_URL")
    celery_result_backend: str | None = Field(
        default=None, alias="CELERY_RESULT_BACKEND"
    )
    aws_region: str = Field(default="us-west-1", alias="AWS_REGION")
    aws_s3_bucket: str = Field(default="local", alias="AWS_S3_BUCKET")
    aws_access_key_id: str | None = Field(default=None, alias="AWS_ACCESS_KEY_ID")
    aws_secret_access_key: str | None = Field(
        default=None, alias="AWS_SECRET_ACCESS_KEY"
    )
    local_storage_path: str = Field(
        default="/tmp/auditflow", alias="LOCAL_STORAGE_PATH"
    )

    import_concurrency: int = Field(default=5, alias="IMPORT_CONCURRENCY")
    export_concurrency: int = Field(default=3, alias="EXPORT_CONCURRENCY")
    job_max_attempts: int = Field(default=3, alias="JOB_MAX_ATTEMPTS")
    job_backoff_seconds: float = Field(default=2.0, alias="JOB_BACKOFF_SECONDS")
    job_backoff_max_seconds: float = Field(
        default=300.0, alias="JOB_BACKOFF_MAX_SECONDS"
    )
    visibility_timeout_seconds: float = Field(
        default=300.0, alias="VISIBILITY_TIMEOUT_SECONDS"
    )
    error_log_cap: int = Field(default=1000, alias="ERROR_LOG_CAP")
    progress_flush_every: int = Field(default=100, alias="PROGRESS_FLUSH_EVERY")
    export_retention_days: int = Field(default=7, alias="EXPORT_RETENTION_DAYS")
    max_upload_bytes: int = Field(default=10 * 1024 * 1024, alias="MAX_UPLOAD_BYTES")

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_json: bool = Field(default=True, alias="LOG_JSON")

    model_config = SettingsConfigDict(
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        populate_by_name=True,
    )

    @property
    def broker_url(self) -> str:
        """Return the Celery broker URL, defaulting to Redis."""

        return self.celery_broker_url or self.redis_url

    @property
    def result_backend(self) -> str:
        """Return the Celery result backend, defaulting to the Redis URL."""

        if self.celery_result_backend:
            return self.celery_result_backend
        return self.redis_url

    @property
    def redis_enabled(self) -> bool:
        """Return ``True`` when the Redis-backed job queue should be used."""

        return self.redis_enabled_flag


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""

    return Settings()


__all__ = ["Settings", "get_settings"]
