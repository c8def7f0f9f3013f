"""
Shared configuration management for the metering gateway.
"""

from typing import Annotated, Optional, Set

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="METER_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # Ledger storage
    ledger_backend: str = Field(default="postgres", description="postgres | memory")
    postgres_dsn: str = Field(default="postgres://localhost:5432/metering")
    postgres_pool_min: int = Field(default=2)
    postgres_pool_max: int = Field(default=10)
    postgres_command_timeout: float = Field(default=10.0)

    # Identity provider
    jwks_url: str = Field(default="http://localhost:54321/auth/v1/.well-known/jwks.json")
    jwt_issuer: str = Field(default="http://localhost:54321/auth/v1")
    jwt_leeway_seconds: int = Field(default=0)
    jwks_cache_ttl: float = Field(default=3600.0)
    jwks_max_stale: float = Field(default=86400.0)
    jwks_min_refresh_interval: float = Field(default=30.0)
    jwks_http_timeout: float = Field(default=5.0)

    # Authorization
    admin_subjects: Annotated[Set[str], NoDecode] = Field(default_factory=set)
    cron_secret: Optional[str] = Field(default=None)

    # Paid work
    decode_upstream_url: str = Field(default="http://localhost:8090/v1/decode")
    decode_cost: int = Field(default=1, ge=1)
    work_timeout_seconds: float = Field(default=50.0, gt=0)
    refund_max_attempts: int = Field(default=3, ge=1)
    refund_base_delay: float = Field(default=0.2, ge=0)

    # Batch jobs
    default_plan: str = Field(default="free")
    reconcile_grace_seconds: float = Field(default=60.0)
    reconcile_batch_size: int = Field(default=100)

    @field_validator("admin_subjects", mode="before")
    @classmethod
    def _split_admin_subjects(cls, value):
        if isinstance(value, str):
            return {item.strip() for item in value.split(",") if item.strip()}
        return value


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
