"""
Resonant Analysis Queue - Configuration Module
==============================================
All configuration is loaded from environment variables.
"""

import os
from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env."""

    # App
    app_name: str = "Resonant Analysis Queue"
    app_env: str = "development"
    app_debug: bool = False
    app_port: int = 8000
    log_json: bool = True

    # Database
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_db: str = "resonant"
    postgres_user: str = "resonant"
    postgres_password: str = "resonant"
    database_url_override: str = ""

    @property
    def database_url(self) -> str:
        if self.database_url_override:
            return self.database_url_override
        return (
            f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    @property
    def database_url_sync(self) -> str:
        if self.database_url_override:
            return self.database_url_override.replace("+asyncpg", "").replace("+aiosqlite", "")
        return (
            f"postgresql://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    # Redis
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_password: str = ""
    redis_queue_db: int = 1

    @property
    def redis_queue_url(self) -> str:
        auth = f":{self.redis_password}@" if self.redis_password else ""
        return f"redis://{auth}{self.redis_host}:{self.redis_port}/{self.redis_queue_db}"

    # Analysis provider (dispatch target)
    analysis_provider_url: str = "http://localhost:8100/analyze"
    analysis_provider_api_key: str = ""
    analysis_provider_timeout_sec: int = 30
    analysis_service_name: str = "analysis_provider"

    # Queue capacity / timing
    queue_enabled: bool = True
    queue_celery_name: str = "analysis"
    queue_max_size: int = 1000
    queue_max_concurrent_processing: int = 10
    queue_near_capacity_ratio: float = 0.8
    queue_processing_timeout_ms: int = 30_000
    queue_estimated_processing_ms: int = 30_000
    queue_max_item_age_ms: int = 24 * 60 * 60 * 1000
    queue_high_wait_ms: int = 120_000
    queue_critical_wait_ms: int = 300_000
    queue_position_batch_size: int = 50

    # Retry policy
    retry_max_attempts: int = 3
    retry_base_delay_ms: int = 1000
    retry_max_delay_ms: int = 60_000
    retry_jitter_ms: int = 1000

    # Maintenance sweeps
    maintenance_scheduler_enabled: bool = True
    dispatch_interval_sec: int = 5
    sla_sweep_interval_sec: int = 60
    auto_requeue_interval_minutes: int = 10
    auto_requeue_lookback_minutes: int = 30
    auto_requeue_batch_size: int = 20
    emergency_requeue_lookback_minutes: int = 120
    emergency_requeue_batch_size: int = 50
    emergency_purge_max_age_minutes: int = 360
    purge_interval_minutes: int = 60
    position_refresh_interval_sec: int = 30

    # Circuit breaker
    circuit_failure_threshold: int = 5
    circuit_open_sec: int = 60
    circuit_redis_prefix: str = "resonant:circuit"

    # CORS
    cors_origins: str = "http://localhost:3000,http://localhost:8000"

    @property
    def cors_origins_list(self) -> list[str]:
        return [origin.strip() for origin in self.cors_origins.split(",")]

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False
        env_prefix = "RESONANT_"


def _load_dotenv_pairs(dotenv_path: str = ".env") -> dict[str, str]:
    path = Path(dotenv_path)
    if not path.exists():
        return {}

    values: dict[str, str] = {}
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip().strip('"').strip("'")
        if key:
            values[key] = value
    return values


def _bootstrap_prefixed_env() -> None:
    """Populate RESONANT_ vars from unprefixed keys used by older deployments."""
    legacy_pairs = _load_dotenv_pairs(".env")
    prefix = "RESONANT_"

    for field_name in Settings.model_fields.keys():
        legacy_key = field_name.upper()
        prefixed_key = f"{prefix}{legacy_key}"

        if os.getenv(prefixed_key):
            continue

        legacy_value = os.getenv(legacy_key)
        if legacy_value is not None:
            os.environ[prefixed_key] = legacy_value
            continue

        if legacy_key in legacy_pairs:
            os.environ[prefixed_key] = legacy_pairs[legacy_key]


_bootstrap_prefixed_env()


@lru_cache()
def get_settings() -> Settings:
    """Cached settings singleton."""
    return Settings()
