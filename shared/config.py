"""
Shared configuration management for the Songbook API Gateway.
"""

from typing import Annotated, List, Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="SONGBOOK_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    env: str = Field(default="local", description="Deployment environment name.")
    log_level: str = Field(default="info", description="Root log level.")

    # Shared counter store
    redis_url: str = Field(default="redis://localhost:6379/0")
    redis_timeout_seconds: float = Field(default=2.0, gt=0)

    # Identity provider
    auth_service_url: str = Field(default="http://localhost:8010")
    auth_timeout_seconds: float = Field(default=5.0, gt=0)

    # Content service behind the gateway
    upstream_url: Optional[str] = Field(default=None, description="Base URL of the song/chords content API.")
    upstream_timeout_seconds: float = Field(default=10.0, gt=0)

    # Rate limiting
    rate_limit_enabled: bool = Field(default=True)
    rate_limit_store: Literal["redis", "memory"] = Field(
        default="redis",
        description="Backing store for counters; 'memory' is for single-instance deployments.",
    )
    rate_limits_file: Optional[str] = Field(
        default=None,
        description="Optional YAML file overriding tier quotas and endpoint sensitivities.",
    )
    trusted_proxy_header: Optional[str] = Field(
        default="X-Forwarded-For",
        description="Header set by the fronting proxy carrying the client address.",
    )
    rate_limit_exempt_paths: Annotated[List[str], NoDecode] = Field(
        default_factory=lambda: ["/health", "/metrics", "/ping"],
    )

    @field_validator("rate_limit_exempt_paths", mode="before")
    def _split_paths(cls, value):
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("trusted_proxy_header", mode="before")
    def _blank_header_disables(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value


class ServiceConfig(BaseConfig):
    """Service-specific configuration."""

    service_name: str
    port: int
    host: str = "0.0.0.0"


def get_config(service_name: str, port: int, **overrides) -> ServiceConfig:
    """Get configuration for a specific service."""
    return ServiceConfig(service_name=service_name, port=port, **overrides)
