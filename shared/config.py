"""
Shared configuration management for the Accounts Ledger.
"""

from typing import List, Optional

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="LEDGER_",
        env_file=".env",
        case_sensitive=False,
        extra="allow"
    )

    # Environment
    env: str = Field(default="local", description="Deployment environment")
    log_level: str = Field(default="info", description="Log level")

    # Storage
    storage_backend: str = Field(default="memory", description="memory or postgres")
    postgres_dsn: str = Field(default="postgres://localhost:5432/ledger")
    redis_url: str = Field(default="redis://localhost:6379/0")

    # Decision cache
    decision_cache_enabled: bool = Field(default=False)
    decision_cache_ttl_seconds: int = Field(default=300)

    # Credentials
    admin_key: SecretStr = Field(default=SecretStr(""), description="Shared administrative secret")
    service_token_issuer: str = Field(default="accounts-ledger")
    service_token_ttl_seconds: int = Field(default=3600)
    app_api_key: Optional[SecretStr] = Field(default=None, description="Key expected from consumer apps on access checks")

    # Subscription rules
    apps: List[str] = Field(default_factory=lambda: ["safetunes", "safetube", "safereads"])
    trial_days: int = Field(default=7)
    grace_period_days: int = Field(default=3)
    legacy_lifetime_codes: List[str] = Field(default_factory=lambda: ["DAWSFRIEND", "DEWITT"])
    conflict_retry_attempts: int = Field(default=5)

    # Observability
    enable_tracing: bool = Field(default=False)
    otel_exporter: str = Field(default="http://localhost:4318")
    enable_console_tracing: bool = Field(default=False)


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
