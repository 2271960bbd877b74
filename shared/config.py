"""
Shared configuration management for the invoice dispatch service.
"""

from typing import Optional

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="DISPATCH_",
        case_sensitive=False,
        extra="ignore"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # Kafka
    kafka_bootstrap: str = Field(default="localhost:9092")

    # Persistence
    postgres_dsn: Optional[str] = Field(default=None)


class DispatchConfig(BaseConfig):
    """Settings for the dispatch pipeline."""

    service_name: str = "dispatch"
    host: str = "0.0.0.0"
    port: int = 8020

    # Channel
    processing_topic: str = Field(default="invoice.processing")
    dead_letter_topic: str = Field(default="invoice.dlq")
    consumer_group: str = Field(default="invoice-dispatch")
    consumer_concurrency: int = Field(default=3, ge=1)
    send_timeout_seconds: float = Field(default=5.0, gt=0)
    publish_max_attempts: int = Field(default=3, ge=1)
    publish_retry_delay_seconds: float = Field(default=1.0, ge=0)
    dead_letter_timeout_seconds: float = Field(default=10.0, gt=0)
    local_dead_letter_path: Optional[str] = Field(default=None)

    # Identity endpoint
    token_url: str = Field(default="http://localhost:8090/realms/invoices/protocol/openid-connect/token")
    client_id: str = Field(default="invoice-dispatch")
    username: str = Field(default="dispatch")
    password: SecretStr = Field(default=SecretStr(""))
    token_timeout_seconds: float = Field(default=10.0, gt=0)
    refresh_skew_seconds: float = Field(default=30.0, ge=0)
    refresh_check_interval_seconds: float = Field(default=60.0, ge=0)

    # External processing API
    external_api_base_url: str = Field(default="http://localhost:8090/api/invoices")
    external_api_timeout_seconds: float = Field(default=5.0, gt=0)

    # Retry
    retry_max_attempts: int = Field(default=3, ge=1)
    retry_base_delay_seconds: float = Field(default=1.0, ge=0)
    retry_max_delay_seconds: float = Field(default=60.0, ge=0)
    retry_multiplier: float = Field(default=2.0, ge=1.0)
    retry_jitter: float = Field(default=0.1, ge=0, le=1)

    # Circuit breaker
    breaker_failure_rate_threshold: float = Field(default=50.0, gt=0, le=100)
    breaker_sliding_window_size: int = Field(default=100, ge=1)
    breaker_minimum_calls: int = Field(default=10, ge=1)
    breaker_open_duration_seconds: float = Field(default=60.0, ge=0)
    breaker_half_open_max_calls: int = Field(default=10, ge=1)

    # Rate limiter
    rate_limit_max_concurrent_calls: int = Field(default=10, ge=1)
    rate_limit_for_period: int = Field(default=50, ge=1)
    rate_limit_refresh_period_seconds: float = Field(default=1.0, gt=0)
    rate_limit_timeout_seconds: float = Field(default=5.0, ge=0)

    # Orchestration
    schedule_interval_seconds: float = Field(default=60.0, gt=0)
    schedule_initial_delay_seconds: float = Field(default=0.0, ge=0)
    group_concurrency: int = Field(default=1, ge=1)
    credential_preflight: bool = Field(default=True)


def get_config(**overrides) -> DispatchConfig:
    """Get configuration for the dispatch service."""
    return DispatchConfig(**overrides)
