from __future__ import annotations

from uuid import uuid4

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="TIERCACHE_", env_file=".env", extra="ignore")

    app_name: str = "tiercache"
    env: str = "dev"

    # Instance ID for cross-instance invalidation
    instance_id: str = Field(default_factory=lambda: str(uuid4())[:8])

    # Local tier
    local_capacity: int = Field(default=10_000, validation_alias="TIERCACHE_LOCAL_CAPACITY")
    default_ttl_seconds: int = Field(default=300, validation_alias="TIERCACHE_DEFAULT_TTL")
    local_sweep_interval_seconds: float = Field(
        default=60.0, validation_alias="TIERCACHE_LOCAL_SWEEP_INTERVAL"
    )

    # Distributed tier (absent endpoint runs local-only)
    distributed_endpoint: str | None = Field(default=None, validation_alias="REDIS_URL")
    distributed_timeout_millis: int = Field(
        default=250, validation_alias="TIERCACHE_DISTRIBUTED_TIMEOUT_MS"
    )
    redis_key_prefix: str = Field(default="tiercache", validation_alias="TIERCACHE_KEY_PREFIX")
    redis_failure_threshold: int = Field(
        default=3, validation_alias="TIERCACHE_REDIS_FAILURE_THRESHOLD"
    )

    # Redis reconnection
    redis_reconnect_delay_initial: float = Field(
        default=1.0, validation_alias="TIERCACHE_REDIS_RECONNECT_DELAY_INITIAL"
    )
    redis_reconnect_delay_max: float = Field(
        default=60.0, validation_alias="TIERCACHE_REDIS_RECONNECT_DELAY_MAX"
    )
    redis_reconnect_delay_multiplier: float = Field(
        default=2.0, validation_alias="TIERCACHE_REDIS_RECONNECT_MULTIPLIER"
    )

    # Loader behaviour
    loader_timeout_seconds: float | None = Field(
        default=30.0, validation_alias="TIERCACHE_LOADER_TIMEOUT"
    )
    cache_none: bool = Field(default=False, validation_alias="TIERCACHE_CACHE_NONE")

    # Cross-instance invalidation
    enable_invalidation_broadcast: bool = Field(
        default=True, validation_alias="TIERCACHE_INVALIDATION_BROADCAST"
    )
    invalidation_channel: str = Field(
        default="tiercache:invalidation", validation_alias="TIERCACHE_INVALIDATION_CHANNEL"
    )

    # Cache warming (0 disables the periodic warmer)
    warm_interval_seconds: float = Field(default=300.0, validation_alias="TIERCACHE_WARM_INTERVAL")

    # Observability
    enable_tracing: bool = Field(default=False, validation_alias="ENABLE_TRACING")
    otlp_endpoint: str | None = Field(default=None, validation_alias="OTLP_ENDPOINT")
    enable_metrics: bool = Field(default=True, validation_alias="ENABLE_METRICS")
    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")
    log_json: bool = Field(default=True, validation_alias="TIERCACHE_LOG_JSON")


settings = Settings()
