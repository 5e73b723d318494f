"""
Environment-based settings for the orchestrator.

All values can be overridden with ``ORCH_``-prefixed environment variables
or a ``.env`` file, e.g. ``ORCH_REDIS_URL=redis://cache:6379/0``.
"""

from functools import lru_cache
from typing import Optional

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class OrchestratorSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="ORCH_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # --- broker ---
    REDIS_URL: str = "redis://127.0.0.1:6379/0"
    SOCKET_TIMEOUT_S: float = 15.0
    SOCKET_CONNECT_TIMEOUT_S: float = 10.0
    NOTIFY_PREFIX: str = "streams:notify:"
    SLOW_APPEND_MS: int = 100

    # --- consumers ---
    BLOCK_MS: int = 2000
    SHUTDOWN_GRACE_S: float = 3.0
    FALLBACK_INTERVAL_S: float = 60.0
    ERROR_BACKOFF_S: float = 1.0

    # --- streams / groups ---
    GENERATION_STREAM: str = "generation:stream"
    STATUS_STREAM: str = "job:status:stream"
    COMPLETED_STREAM: str = "generation:completed:stream"
    FAILED_STREAM: str = "generation:failed:stream"
    THUMBNAIL_STREAM: str = "thumbnail:stream"
    STATUS_GROUP: str = "core-status-processors"
    COMPLETED_GROUP: str = "core-completers"
    THUMBNAIL_GROUP: str = "thumbnail-processors"

    # --- external provider (RunPod-compatible) ---
    PROVIDER_ENABLED: bool = False
    RUNPOD_API_KEY: Optional[str] = None
    RUNPOD_ENDPOINT_ID: Optional[str] = None
    RUNPOD_BASE_URL: str = "https://api.runpod.ai/v2"
    PROVIDER_TIMEOUT_S: float = 10.0

    # --- reconciliation ---
    EXECUTION_TIMEOUT_MS: int = 20_000
    JOB_REF_TTL_S: int = 3600
    JOB_REF_PREFIX: str = "runpod:job:"
    RECONCILE_INTERVAL_S: float = 5.0
    STALENESS_THRESHOLD_MS: int = 22_000
    MAX_ATTEMPTS: int = 3
    RECONCILE_BATCH_LIMIT: int = 100

    # --- work item store ---
    DATABASE_URL: Optional[str] = None
    WORK_ITEM_TABLE: str = "media"
    DB_POOL_MAX: int = 5

    # --- ops ---
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False
    METRICS_PORT: Optional[int] = None

    @model_validator(mode="after")
    def _check_timings(self):
        if self.BLOCK_MS <= 0:
            # BLOCK 0 means "block forever" to Redis; stop() would never be bounded.
            raise ValueError("BLOCK_MS must be > 0")
        if self.STALENESS_THRESHOLD_MS <= self.EXECUTION_TIMEOUT_MS:
            raise ValueError("STALENESS_THRESHOLD_MS must exceed EXECUTION_TIMEOUT_MS")
        if self.MAX_ATTEMPTS < 1:
            raise ValueError("MAX_ATTEMPTS must be >= 1")
        return self

    @property
    def provider_configured(self) -> bool:
        return bool(self.PROVIDER_ENABLED and self.RUNPOD_API_KEY and self.RUNPOD_ENDPOINT_ID)


@lru_cache()
def get_settings() -> OrchestratorSettings:
    return OrchestratorSettings()
