"""Configuration management for the GroupPolicy derivative controller."""

from enum import Enum
from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class LogLevel(str, Enum):
    """Logging levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class TaskKeyMode(str, Enum):
    """How reconciliation task keys are scoped."""

    # add:/update:/delete: keys, kinds for one parent may run concurrently
    PER_OPERATION = "per-operation"
    # one key per parent, every operation kind is serialized
    PER_PARENT = "per-parent"


class CacheBackend(str, Enum):
    MEMORY = "memory"
    REDIS = "redis"


class Settings(BaseSettings):
    """Controller settings."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", case_sensitive=False
    )

    app_name: str = "grouppolicy-controller"
    app_version: str = "0.1.0"

    # Watch scope, empty means all namespaces
    namespace: str = ""

    # GroupPolicy custom resource
    policy_group: str = "grouppolicy.io"
    policy_version: str = "v1alpha1"
    policy_plural: str = "grouppolicies"
    policy_kind: str = "GroupPolicy"

    # Derivative naming and ownership
    parent_label: str = "parent"
    derivative_suffix: str = "-derivative"

    # Bounded retry against the group source
    max_resolution_attempts: int = Field(5, ge=1)
    resolution_retry_delay: float = Field(5.0, ge=0)

    task_key_mode: TaskKeyMode = TaskKeyMode.PER_OPERATION
    resync_interval: float = Field(300.0, gt=0)

    cache_backend: CacheBackend = CacheBackend.MEMORY

    # Redis Configuration
    redis_host: str = "redis"
    redis_port: int = 6379
    redis_password: Optional[str] = None
    redis_db: int = 0
    redis_url: Optional[str] = Field(None, validate_default=True)

    # Logging
    log_level: LogLevel = LogLevel.INFO
    log_format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    log_json: bool = False

    # Liveness endpoint
    health_host: str = "0.0.0.0"
    health_port: int = 8080

    @field_validator("redis_url", mode="before")
    @classmethod
    def build_redis_url(cls, v, info):
        """Build Redis URL from components if not provided."""
        if v:
            return v

        host = info.data.get("redis_host", "redis")
        port = info.data.get("redis_port", 6379)
        password = info.data.get("redis_password")
        db = info.data.get("redis_db", 0)

        if password:
            return f"redis://:{password}@{host}:{port}/{db}"
        return f"redis://{host}:{port}/{db}"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
