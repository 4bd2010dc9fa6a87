"""
Centralized Configuration System for the fulfillment pipeline

This module provides a type-safe, centralized configuration system using Pydantic Settings
so every worker reads broker, database, cache and policy knobs from one place.

Features:
- Type-safe configuration with validation
- Environment variable binding with defaults
- Hierarchical configuration structure
- Test-friendly configuration isolation (reload_settings)
"""

import os
from datetime import time
from enum import Enum
from typing import FrozenSet, Optional, Set

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _env_file() -> Optional[str]:
    return ".env" if not os.getenv("DOCKER_CONTAINER") else None


def _parse_weekdays(raw: Optional[str]) -> Set[int]:
    days: Set[int] = set()
    for part in (raw or "").split(","):
        part = part.strip()
        if not part:
            continue
        day = int(part)
        if day < 0 or day > 6:
            raise ValueError(f"weekday out of range: {day}")
        days.add(day)
    return days


class Environment(str, Enum):
    """Application environment types"""
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"
    TEST = "test"


class DatabaseSettings(BaseSettings):
    """PostgreSQL configuration settings"""

    model_config = SettingsConfigDict(
        env_file=_env_file(),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    postgres_host: str = Field(
        default="localhost",
        description="PostgreSQL host"
    )
    postgres_port: int = Field(
        default=5432,
        description="PostgreSQL port"
    )
    postgres_user: str = Field(
        default="fulfillment",
        description="PostgreSQL username"
    )
    postgres_password: str = Field(
        default="fulfillment",
        description="PostgreSQL password"
    )
    postgres_db: str = Field(
        default="fulfillment",
        description="PostgreSQL database name"
    )
    postgres_dsn: Optional[str] = Field(
        default=None,
        validation_alias="POSTGRES_URL",
        description="Full PostgreSQL DSN (overrides host/port/user/password/db)"
    )
    pool_min_size: int = Field(
        default=1,
        description="Minimum asyncpg pool size"
    )
    pool_max_size: int = Field(
        default=5,
        description="Maximum asyncpg pool size"
    )
    command_timeout: float = Field(
        default=30.0,
        description="asyncpg command timeout in seconds"
    )
    ensure_schema: bool = Field(
        default=True,
        description="Run idempotent DDL on worker startup"
    )
    purchase_create_active_index: bool = Field(
        default=True,
        description="Create the unique_active_purchase partial index during schema bootstrap"
    )

    @property
    def postgres_url(self) -> str:
        """Construct PostgreSQL connection URL"""
        if self.postgres_dsn:
            return self.postgres_dsn
        return f"postgresql://{self.postgres_user}:{self.postgres_password}@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"


class KafkaSettings(BaseSettings):
    """Kafka topics, consumer groups and broker location"""

    model_config = SettingsConfigDict(
        env_file=_env_file(),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    kafka_host: str = Field(
        default="localhost",
        description="Kafka host"
    )
    kafka_port: int = Field(
        default=9092,
        description="Kafka port"
    )
    kafka_bootstrap_servers: Optional[str] = Field(
        default=None,
        description="Kafka bootstrap servers (overrides host:port)"
    )

    purchase_confirmed_topic: str = Field(default="purchase-confirmed")
    purchase_created_topic: str = Field(default="purchase-created")
    trainer_allocated_topic: str = Field(default="trainer-allocated")
    dead_letter_topic: str = Field(default="dead-letter-queue")

    purchase_group: str = Field(default="purchase-creation-workers")
    allocation_group: str = Field(default="trainer-allocation-workers")
    session_group: str = Field(default="session-scheduling-workers")
    cache_group: str = Field(default="cache-invalidation-workers")

    poll_timeout_seconds: float = Field(
        default=1.0,
        description="Consumer poll timeout"
    )
    flush_timeout_seconds: float = Field(
        default=10.0,
        description="Producer flush timeout per publish"
    )

    @property
    def kafka_servers(self) -> str:
        """Get Kafka bootstrap servers"""
        if self.kafka_bootstrap_servers:
            return self.kafka_bootstrap_servers
        return f"{self.kafka_host}:{self.kafka_port}"


class RedisSettings(BaseSettings):
    """Redis (read-model cache) configuration"""

    model_config = SettingsConfigDict(
        env_file=_env_file(),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    redis_host: str = Field(
        default="localhost",
        description="Redis host"
    )
    redis_port: int = Field(
        default=6379,
        description="Redis port"
    )
    redis_password: Optional[str] = Field(
        default=None,
        description="Redis password"
    )
    redis_db: int = Field(
        default=0,
        description="Redis database index"
    )
    redis_dsn: Optional[str] = Field(
        default=None,
        validation_alias="REDIS_URL",
        description="Full Redis URL (overrides host/port/password)"
    )
    socket_timeout: float = Field(
        default=5.0,
        description="Redis socket timeout in seconds"
    )

    @property
    def redis_url(self) -> str:
        """Construct Redis URL"""
        if self.redis_dsn:
            return self.redis_dsn
        if not self.redis_password:
            return f"redis://{self.redis_host}:{self.redis_port}/{self.redis_db}"
        return f"redis://:{self.redis_password}@{self.redis_host}:{self.redis_port}/{self.redis_db}"


class AllocationServiceSettings(BaseSettings):
    """External allocation service (auto-assign RPC)"""

    model_config = SettingsConfigDict(
        env_file=_env_file(),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    allocation_service_url: str = Field(
        default="http://localhost:3010",
        description="Base URL of the allocation service"
    )
    allocation_service_timeout: float = Field(
        default=30.0,
        description="Bounded timeout for the auto-assign call in seconds"
    )
    allocation_service_token: Optional[str] = Field(
        default=None,
        description="Optional bearer token for the allocation service"
    )


class RetrySettings(BaseSettings):
    """Per-worker retry budgets and backoff"""

    model_config = SettingsConfigDict(
        env_file=_env_file(),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    purchase_max_attempts: int = Field(default=3)
    purchase_base_delay: float = Field(default=1.0)
    purchase_max_delay: float = Field(default=30.0)

    allocation_max_attempts: int = Field(default=5)
    allocation_base_delay: float = Field(default=2.0)
    allocation_max_delay: float = Field(default=60.0)

    session_max_attempts: int = Field(default=3)
    session_base_delay: float = Field(default=1.0)
    session_max_delay: float = Field(default=30.0)

    cache_max_attempts: int = Field(default=3)
    cache_base_delay: float = Field(default=0.5)
    cache_max_delay: float = Field(default=5.0)

    retry_jitter: bool = Field(
        default=True,
        description="Apply 0.5-1.0 jitter to backoff delays"
    )


class PurchaseSettings(BaseSettings):
    """Purchase worker policy"""

    model_config = SettingsConfigDict(
        env_file=_env_file(),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    purchase_index_cache_ttl: float = Field(
        default=300.0,
        description="How long the unique_active_purchase existence check is trusted (seconds)"
    )
    purchase_index_warning_interval: float = Field(
        default=60.0,
        description="Minimum seconds between 'index missing' warnings"
    )
    purchase_default_tier: int = Field(
        default=30,
        description="Tier used when the confirmed payload carries none"
    )


class SessionSettings(BaseSettings):
    """Rolling-window session scheduling policy"""

    model_config = SettingsConfigDict(
        env_file=_env_file(),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    session_window_size: int = Field(
        default=7,
        description="Number of future sessions kept per allocation"
    )
    session_low_water_mark: int = Field(
        default=3,
        description="Sweep tops up allocations whose future sessions drop below this"
    )
    session_sweep_interval_seconds: float = Field(
        default=6 * 60 * 60,
        description="Interval between top-up sweeps"
    )
    session_sweep_batch_limit: int = Field(
        default=500,
        description="Maximum allocations examined per sweep"
    )
    session_sweep_enabled: bool = Field(
        default=True,
        description="Run the periodic top-up sweep inside the session worker"
    )
    session_excluded_weekdays: str = Field(
        default="",
        description="Comma separated weekdays (0=Monday .. 6=Sunday) skipped by the daily cadence"
    )
    session_default_time_slot: time = Field(
        default=time(16, 0),
        description="Time slot used when metadata carries none"
    )
    session_daily_duration_minutes: int = Field(default=40)
    session_sunday_duration_minutes: int = Field(default=80)

    @field_validator("session_excluded_weekdays")
    @classmethod
    def check_excluded_weekdays(cls, v: str) -> str:
        days = _parse_weekdays(v)
        if len(days) >= 7:
            raise ValueError("cannot exclude every weekday")
        return ",".join(str(day) for day in sorted(days))

    @property
    def excluded_weekdays(self) -> FrozenSet[int]:
        return frozenset(_parse_weekdays(self.session_excluded_weekdays))


class ObservabilitySettings(BaseSettings):
    """Logging and metrics"""

    model_config = SettingsConfigDict(
        env_file=_env_file(),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    log_level: str = Field(
        default="INFO",
        description="Root log level"
    )
    log_format: str = Field(
        default="text",
        description="'text' or 'json'"
    )
    metrics_port: int = Field(
        default=0,
        description="Prometheus exporter port (0 disables)"
    )


class ApplicationSettings(BaseSettings):
    """Main application settings - aggregates all other settings"""

    model_config = SettingsConfigDict(
        env_file=_env_file(),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    environment: Environment = Field(
        default=Environment.DEVELOPMENT,
        description="Application environment"
    )
    service_name: str = Field(
        default="fulfillment",
        description="Reported as the envelope source and Kafka client.id prefix"
    )

    # Nested settings
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    kafka: KafkaSettings = Field(default_factory=KafkaSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    allocation_service: AllocationServiceSettings = Field(default_factory=AllocationServiceSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    purchase: PurchaseSettings = Field(default_factory=PurchaseSettings)
    session: SessionSettings = Field(default_factory=SessionSettings)
    observability: ObservabilitySettings = Field(default_factory=ObservabilitySettings)

    @property
    def is_production(self) -> bool:
        """Check if running in production mode"""
        return self.environment == Environment.PRODUCTION

    @property
    def is_test(self) -> bool:
        """Check if running in test mode"""
        return self.environment == Environment.TEST


settings = ApplicationSettings()


def get_settings() -> ApplicationSettings:
    """
    Get the global settings instance

    Returns:
        ApplicationSettings: The global settings instance
    """
    return settings


def reload_settings() -> ApplicationSettings:
    """
    Reload settings from environment (useful for testing)

    Returns:
        ApplicationSettings: New settings instance with reloaded values
    """
    global settings
    settings = ApplicationSettings()
    return settings
