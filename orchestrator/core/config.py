"""Application configuration using Pydantic Settings."""

from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "Document Orchestrator"
    debug: bool = False
    log_level: str = ""  # Overrides the DEBUG/INFO default when set
    log_json: bool | None = None  # None = JSON unless debug

    # Backend selection ("memory" backends are for local runs and tests)
    status_store_backend: Literal["supabase", "memory"] = "supabase"
    blob_store_backend: Literal["supabase", "memory"] = "supabase"
    stream_backend: Literal["redis", "memory"] = "redis"

    # Supabase
    supabase_url: str = ""
    supabase_key: str = ""  # anon key
    supabase_service_key: str = ""  # service role key for workers
    supabase_timeout_seconds: float = 30.0
    supabase_connect_timeout_seconds: float = 10.0
    supabase_transport_retries: int = 3

    # Redis
    redis_url: str = "redis://localhost:6379/0"

    # Celery
    celery_broker_url: str = "redis://localhost:6379/1"
    celery_result_backend: str = "redis://localhost:6379/2"
    document_task_time_limit: int = 3600  # seconds; soft limit is 5 minutes earlier

    # Storage buckets
    documents_bucket: str = "documents"
    results_bucket: str = "results"

    # Gemini Configuration
    gemini_api_key: str = ""
    gemini_model: str = "gemini-2.0-flash-lite"
    analysis_max_text_length: int = 30000  # Max characters sent per page

    # Analysis retry (rate-limit only)
    analysis_max_attempts: int = 3
    analysis_retry_base_delay: float = 2.0  # seconds, doubles each attempt
    analysis_retry_max_delay: float = 30.0

    # Chunk worker
    page_delay_seconds: float = 1.0  # Pause between pages in sequential mode
    page_concurrency: int = 1  # 1 = strictly sequential

    # Completion watcher
    aggregation_poll_enabled: bool = True
    aggregation_poll_interval: float = 5.0  # seconds
    change_feed_stream: str = "document-status-changes"
    change_feed_group: str = "completion-watcher"
    change_feed_batch_size: int = 10
    change_feed_block_ms: int = 2000
    change_feed_maxlen: int = 100000

    # Document event log
    event_stream: str = "document-events"
    event_stream_shards: int = 4
    event_stream_maxlen: int = 100000
    consumer_batch_size: int = 10
    consumer_poll_interval: float = 2.0  # seconds between empty polls
    consumer_error_backoff: float = 5.0  # seconds after a failed poll

    # Stale job recovery
    job_recovery_enabled: bool = True
    job_stale_timeout_minutes: int = 120  # No counter or status update for this long
    job_recovery_interval: float = 600.0  # seconds between sweeps

    # Retention
    record_retention_days: int = 90

    # Uploads at or above this size are processed through the event log
    sync_size_threshold_mb: float = 10.0


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
