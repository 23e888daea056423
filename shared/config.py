"""
Shared configuration management for the entitlement sync client.
"""

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class SyncConfig(BaseSettings):
    """Client configuration. Every field can be set via ENTITLEMENT_SYNC_<NAME>."""

    model_config = SettingsConfigDict(
        env_prefix="ENTITLEMENT_SYNC_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")
    log_format: Literal["json", "console"] = Field(default="json")

    # Backend endpoints
    api_base_url: str = Field(default="http://localhost:5000/api")
    realtime_url: str = Field(default="ws://localhost:5000/realtime")

    # Request execution layer
    request_timeout: float = Field(default=10.0)
    default_cache_duration: float = Field(default=60.0)
    dedup_timeout: float = Field(default=10.0)
    max_requests_per_minute: int = Field(default=50)
    rate_limit_window: float = Field(default=60.0)
    rate_limit_delay: float = Field(default=1.0)
    max_retries: int = Field(default=3)
    retry_base_delay: float = Field(default=0.3)
    max_retry_delay: float = Field(default=30.0)

    # Remote entitlement source
    remote_check_ttl: float = Field(default=60.0)
    circuit_failure_threshold: int = Field(default=5)
    circuit_recovery_timeout: float = Field(default=30.0)

    # Resolver
    staleness_threshold: float = Field(default=1800.0)
    resolution_timeout: float = Field(default=10.0)
    debounce_window: float = Field(default=5.0)
    cache_retention: float = Field(default=86400.0)
    legacy_id_matching: bool = Field(default=True)

    # Local persistence
    cache_backend: Literal["memory", "file", "redis"] = Field(default="memory")
    cache_directory: str = Field(default=".entitlement_cache")
    redis_url: str = Field(default="redis://localhost:6379/0")

    # Realtime channel
    reconnect_attempts: int = Field(default=5)
    reconnect_base_delay: float = Field(default=1.0)
    reconnect_max_delay: float = Field(default=5.0)


def get_config(**overrides) -> SyncConfig:
    """Get client configuration, environment first, then explicit overrides."""
    return SyncConfig(**overrides)
