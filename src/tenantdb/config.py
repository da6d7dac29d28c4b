"""Configuration using pydantic-settings."""

import os
from collections.abc import Mapping
from typing import Any

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_worker_threads() -> int:
    return max(2, (os.cpu_count() or 1) * 2)


class Settings(BaseSettings):
    """
    Settings for the shared database layer.

    All settings can be configured via:
    1. Environment variables with the TENANTDB_ prefix (e.g., TENANTDB_POOL_MAXIMUM_SIZE=20)
    2. .env file in the working directory
    3. A flat key/value map from the host, see ``from_mapping``
    """

    model_config = SettingsConfigDict(
        env_prefix="TENANTDB_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Ops API settings
    api_title: str = "tenantdb"
    api_version: str = "0.1.0"
    host: str = "127.0.0.1"
    port: int = 8085
    debug: bool = False

    # DuckDB settings
    database_path: str = ":memory:"
    database_threads: int = 4
    database_memory_limit: str = "1GB"

    # Connection pool
    pool_maximum_size: int = Field(default=10, ge=1)
    pool_connection_timeout: float = Field(default=30.0, gt=0)
    health_check_interval: float = Field(default=30.0, ge=0)

    # Bounded worker pool that runs every blocking driver call
    worker_threads: int = Field(default_factory=_default_worker_threads, ge=1)

    # Write batching
    batch_max_size: int = Field(default=100, ge=1)

    # Background tasks (seconds)
    tasks_batch_flush_enabled: bool = True
    tasks_batch_flush_period: float = Field(default=5.0, gt=0)
    tasks_health_check_enabled: bool = True
    tasks_health_check_period: float = Field(default=30.0, gt=0)
    tasks_connection_maintenance_enabled: bool = True
    tasks_connection_maintenance_period: float = Field(default=300.0, gt=0)

    # Apply registered migrations during DatabaseService.start()
    migrate_on_startup: bool = True

    @field_validator("database_path")
    @classmethod
    def _strip_path(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("database_path must not be empty")
        return value

    @property
    def is_in_memory(self) -> bool:
        """True when the database lives only for the lifetime of the pool."""
        return self.database_path == ":memory:"

    @staticmethod
    def normalize_key(key: str) -> str:
        """Turn a host config key like ``tasks.health-check.period`` into a field name."""
        return key.strip().lower().replace(".", "_").replace("-", "_")

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any]) -> "Settings":
        """
        Build settings from the host's flat key/value configuration.

        Keys may use dots and hyphens (``pool.maximum-size``). Unknown keys
        are rejected by pydantic.
        """
        return cls(**{cls.normalize_key(k): v for k, v in mapping.items()})


# Global settings instance
settings = Settings()
