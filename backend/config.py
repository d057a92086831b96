"""
Configuration management for the export service backend.
"""

import os
import tempfile
from functools import lru_cache
from typing import Literal, List
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database (empty = memory-only job records and record source)
    database_url: str = ""

    # Redis (queue store and event broadcast in production)
    redis_url: str = ""  # e.g. redis://localhost:6379
    queue_backend: Literal["memory", "redis"] = "memory"
    broadcast_backend: Literal["memory", "redis"] = "memory"

    # CORS - comma-separated list of allowed origins
    cors_origins: str = "http://localhost:3000,http://localhost:5173"

    # Server
    host: str = "0.0.0.0"
    port: int = 8000
    debug: bool = False
    environment: Literal["development", "staging", "production"] = "development"

    # Export pipeline
    export_temp_dir: str = os.path.join(tempfile.gettempdir(), "exports")
    worker_pool_size: int = 4
    dispatch_poll_interval: float = 1.0  # seconds between idle queue polls
    progress_threshold_percent: int = 1  # report every N percent
    checkpoint_interval_records: int = 500  # checkpoint at least this often
    stream_batch_size: int = 100  # cursor prefetch size
    sink_buffer_bytes: int = 1024 * 1024  # flush sink buffer beyond this size

    # Reliability
    state_write_attempts: int = 3
    completion_write_attempts: int = 6  # completion writes are retried harder
    retry_delay_base: float = 0.5  # seconds, doubled per attempt
    max_transient_retries: int = 3
    max_corruption_restarts: int = 2
    stall_timeout_seconds: int = 300
    stall_check_interval_seconds: int = 60

    # Queue priorities (0 = most urgent)
    default_priority: int = 5
    max_priority: int = 9

    # Result cache: TTL grows with result size
    cache_enabled: bool = True
    cache_ttl_small: int = 3600  # 1 hour
    cache_ttl_medium: int = 86400  # 24 hours
    cache_ttl_large: int = 604800  # 7 days
    cache_medium_threshold_bytes: int = 5 * 1024 * 1024
    cache_large_threshold_bytes: int = 100 * 1024 * 1024
    cache_max_entries: int = 500

    # Artifact lifecycle
    artifact_retention_hours: int = 168  # 7 days
    orphan_min_age_hours: int = 24
    queue_entry_retention_hours: int = 24
    job_retention_days: int = 30
    sweep_interval_seconds: int = 3600

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

    @property
    def cors_origins_list(self) -> List[str]:
        """Parse CORS origins into list."""
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    def validate_required_settings(self) -> List[str]:
        """
        Validate required settings for the selected backends.
        Returns list of missing/invalid setting names.
        """
        missing = []

        if self.environment == "production" and not self.database_url:
            missing.append("DATABASE_URL")

        if (self.queue_backend == "redis" or self.broadcast_backend == "redis") and not self.redis_url:
            missing.append("REDIS_URL")

        if self.worker_pool_size < 1:
            missing.append("WORKER_POOL_SIZE")

        return missing


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
