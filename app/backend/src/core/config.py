"""Application configuration utilities."""

from __future__ import annotations

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings derived from environment variables."""

    database_url: str = Field(default="sqlite:///./docflow.db", alias="DATABASE_URL")
    redis_url: str = Field(default="redis://localhost:6379/0", alias="REDIS_URL")
    redis_enabled_flag: bool = Field(default=True, alias="REDIS_ENABLED")
    redis_ca_cert_path: str | None = Field(default=None, alias="REDIS_CA_CERT_PATH")
    celery_broker_url: str | None = Field(
        default=None, alias="CELERY_BROKER_URL"
    )
    celery_result_backend: str | None = Field(
        default=None, alias="CELERY_RESULT_BACKEND"
    )

    aws_region: str = Field(default="us-east-1", alias="AWS_REGION")
    aws_s3_bucket: str = Field(default="local", alias="AWS_S3_BUCKET")
    aws_access_key_id: str | None = Field(
        default=None, alias="AWS_ACCESS_KEY_ID"
    )
    aws_secret_access_key: str | None = Field(
        default=None, alias="AWS_SECRET_ACCESS_KEY"
    )
    s3_endpoint_url: str | None = Field(default=None, alias="S3_ENDPOINT_URL")
    storage_timeout_seconds: float = Field(
        default=30.0, alias="STORAGE_TIMEOUT_SECONDS"
    )
    local_storage_path: str = Field(
        default="/tmp/docflow", alias="LOCAL_STORAGE_PATH"
    )

    openai_api_key: str | None = Field(default=None, alias="OPENAI_API_KEY")
    llm_base_url: str = Field(
        default="https://openrouter.ai/api/v1", alias="LLM_BASE_URL"
    )
    llm_model: str = Field(
        default="google/gemini-2.5-flash-preview", alias="LLM_MODEL"
    )
    llm_timeout_seconds: float = Field(default=120.0, alias="LLM_TIMEOUT_SECONDS")

    ocr_url: str = Field(default="http://localhost:8080", alias="OCR_URL")
    ocr_timeout_seconds: float = Field(default=300.0, alias="OCR_TIMEOUT_SECONDS")
    ocr_retries: int = Field(default=0, alias="OCR_RETRIES")
    ocr_retry_delay_seconds: float = Field(
        default=1.0, alias="OCR_RETRY_DELAY_SECONDS"
    )

    fetch_timeout_seconds: float = Field(default=30.0, alias="FETCH_TIMEOUT_SECONDS")
    fetch_max_bytes: int = Field(default=50 * 1024 * 1024, alias="FETCH_MAX_BYTES")

    worker_concurrency: int = Field(default=5, alias="WORKER_CONCURRENCY")
    job_max_attempts: int = Field(default=3, alias="JOB_MAX_ATTEMPTS")
    job_backoff_seconds: float = Field(default=1.0, alias="JOB_BACKOFF_SECONDS")
    job_retention_success_seconds: int = Field(
        default=86_400, alias="JOB_RETENTION_SUCCESS_SECONDS"
    )
    job_retention_failure_seconds: int = Field(
        default=604_800, alias="JOB_RETENTION_FAILURE_SECONDS"
    )
    task_soft_time_limit: int = Field(default=540, alias="TASK_SOFT_TIME_LIMIT")
    task_time_limit: int = Field(default=600, alias="TASK_TIME_LIMIT")

    session_cookie_name: str = Field(
        default="docflow.session_token", alias="SESSION_COOKIE_NAME"
    )
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    model_config = SettingsConfigDict(
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
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
        """Return ``True`` when Redis integrations should be used."""

        return self.redis_enabled_flag

    @property
    def storage_is_local(self) -> bool:
        return self.aws_s3_bucket.lower() == "local"


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""

    return Settings()


__all__ = ["Settings", "get_settings"]
