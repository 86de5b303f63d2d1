"""
Shared configuration management for the cache flush service.
"""

from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings.

    Every field can be overridden with a ``FLUSH_`` prefixed environment
    variable (``FLUSH_REDIS_URL``, ``FLUSH_STORAGE_BACKEND`` ...) or a ``.env`` file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="FLUSH_",
        case_sensitive=False,
        extra="allow",
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # External services
    redis_url: str = Field(default="redis://localhost:6379/0")
    postgres_dsn: str = Field(default="postgres://localhost:5432/cache_flush")

    # Storage / registry backends
    storage_backend: str = Field(default="memory", description="memory | postgres")
    registry_backend: str = Field(default="file", description="file | postgres")
    layer_registry_path: Optional[str] = Field(default=None)

    # Flush behaviour
    layer_timeout_seconds: float = Field(default=30.0, gt=0)
    privileged_roles: List[str] = Field(default_factory=lambda: ["admin"])

    # Rebuild dispatch
    rebuild_webhook_url: Optional[str] = Field(default=None)
    rebuild_queue_size: int = Field(default=1000, ge=1)
    rebuild_timeout_seconds: float = Field(default=10.0, gt=0)

    # Automatic flushing
    auto_flush_enabled: bool = Field(default=False)
    auto_flush_check_seconds: int = Field(default=300, ge=1)


class ServiceConfig(BaseConfig):
    """Service-specific configuration."""

    service_name: str
    port: int
    host: str = "0.0.0.0"

    def __init__(self, service_name: str, port: int, **kwargs):
        super().__init__(service_name=service_name, port=port, **kwargs)


def get_config(service_name: str, port: int, **overrides) -> ServiceConfig:
    """Get configuration for a specific service."""
    return ServiceConfig(service_name=service_name, port=port, **overrides)
