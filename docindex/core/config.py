"""
docindex settings, read from the environment (and .env) once per process
and validated on construction.

Every pipeline knob (chunk sizes, retry budget, lease and stage timeouts,
worker concurrency) lives here so deployments tune behaviour without code
changes.
"""

from __future__ import annotations

from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Database: documents, chunks and the job queue share one store
    # ------------------------------------------------------------------
    database_url: str = "sqlite:///./docindex.db"

    db_pool_size: int = 10
    db_max_overflow: int = 20
    db_echo_sql: bool = False

    # ------------------------------------------------------------------
    # Blob store
    # ------------------------------------------------------------------
    blob_backend: str = "local"        # "local" | "s3"
    blob_root:    str = "./blobs"

    aws_region: str = "us-east-1"
    s3_bucket:  str = "research-documents"
    s3_prefix:  str = "documents"

    # ------------------------------------------------------------------
    # Chunking
    # ------------------------------------------------------------------
    chunk_max_chars:       int = 1000
    chunk_overlap_chars:   int = 100
    chunk_boundary_radius: int = 200

    # ------------------------------------------------------------------
    # Retry / lease policy
    # ------------------------------------------------------------------
    max_attempts:  int = 3
    lease_seconds: int = 300

    extract_timeout_seconds: float = 120.0
    index_timeout_seconds:   float = 60.0

    retry_initial_backoff:    float = 2.0
    retry_backoff_multiplier: float = 2.0
    retry_max_backoff:        float = 60.0
    retry_jitter_percent:     float = 0.25

    # ------------------------------------------------------------------
    # Worker pool
    # ------------------------------------------------------------------
    worker_concurrency:    int   = 4
    dequeue_wait_seconds:  float = 5.0
    dequeue_poll_interval: float = 0.5

    # ------------------------------------------------------------------
    # Intake
    # ------------------------------------------------------------------
    max_file_size_bytes: int = 25 * 1024 * 1024   # 25 MB

    # ------------------------------------------------------------------
    # Dispatch: "celery" nudges Celery workers after submit / re-index
    # ------------------------------------------------------------------
    dispatch_backend:      str = "none"   # "none" | "celery"
    celery_broker_url:     str = "redis://localhost:6379/0"
    celery_result_backend: str = "redis://localhost:6379/1"

    # ------------------------------------------------------------------
    # Application
    # ------------------------------------------------------------------
    app_env: str = "development"   # "production" hides the OpenAPI docs
    debug: bool = False

    @model_validator(mode="after")
    def _check_pipeline_limits(self) -> "Settings":
        if self.chunk_max_chars <= 0:
            raise ValueError("chunk_max_chars must be positive")
        if not 0 <= self.chunk_overlap_chars < self.chunk_max_chars:
            raise ValueError("chunk_overlap_chars must be in [0, chunk_max_chars)")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        # Stage timeouts must expire before the lease does
        for name in ("extract_timeout_seconds", "index_timeout_seconds"):
            if getattr(self, name) >= self.lease_seconds:
                raise ValueError(f"{name} must be shorter than lease_seconds")
        return self

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
