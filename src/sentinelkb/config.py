"""Runtime configuration for the sentinel-kb services."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-backed configuration model."""

    model_config = SettingsConfigDict(env_prefix="sentinelkb_", env_file=".env", case_sensitive=False)

    environment: Literal["dev", "test", "prod"] = "dev"

    # Storage; no URL keeps captures in process memory
    database_url: str | None = None

    # Embeddings. The dimension is fixed system-wide.
    embedding_backend: Literal["hash", "openai"] = "hash"
    embedding_model: str = "text-embedding-3-small"
    embedding_dim: int = 1536

    # Insight extraction
    extraction_backend: Literal["heuristic", "openai"] = "heuristic"
    extraction_model: str = "gpt-4o-mini"
    extraction_temperature: float = 0.3

    openai_api_key: str | None = None
    openai_base_url: str = "https://api.openai.com/v1"
    backend_timeout_seconds: float = 20.0

    # Background processing
    queue_backend: Literal["memory", "durable"] = "memory"
    queue_max_size: int = 0  # 0 means unbounded
    enqueue_timeout_seconds: float | None = 5.0
    worker_count: int = 1
    item_timeout_seconds: float = 120.0
    retry_delays_seconds: tuple[float, ...] | str = (5.0, 15.0, 30.0)
    job_poll_interval_seconds: float = 0.5
    drain_on_shutdown: bool = True
    shutdown_timeout_seconds: float = 30.0
    health_max_queue_length: int = 100

    # Search defaults
    search_default_top_k: int = 5
    search_default_threshold: float = 0.5

    # Security
    api_key: str | None = None  # if set, required in X-API-Key header

    @property
    def is_test(self) -> bool:
        return self.environment == "test"

    @property
    def retry_delays_tuple(self) -> tuple[float, ...]:
        value = self.retry_delays_seconds
        if isinstance(value, tuple):
            return tuple(float(v) for v in value)
        if isinstance(value, str):
            parts = [p.strip() for p in value.split(",") if p.strip()]
            return tuple(float(p) for p in parts)
        return (5.0, 15.0, 30.0)

    @property
    def openai_enabled(self) -> bool:
        return bool(self.openai_api_key)


@lru_cache(maxsize=1)
def _cached_settings() -> Settings:
    return Settings()


def get_settings(override: Optional[dict[str, object]] = None) -> Settings:
    """Return settings, optionally overriding values without mutating cache."""

    if override:
        return Settings(**override)
    return _cached_settings()
