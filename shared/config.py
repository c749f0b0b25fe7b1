"""
Shared configuration management for the rules persistence services.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="RULES_",
        env_file=".env",
        case_sensitive=False,
        extra="allow"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # Document store (canonical rule content)
    documents_dsn: str = Field(default="postgresql://127.0.0.1:5432/rules")
    documents_pool_min: int = Field(default=2)
    documents_pool_max: int = Field(default=10)
    documents_command_timeout: float = Field(default=30.0)

    # Column store (query projections)
    projections_url: str = Field(default="http://127.0.0.1:8123")
    projections_database: str = Field(default="rules")
    projections_timeout: float = Field(default=5.0)


class ServiceConfig(BaseConfig):
    """Service-specific configuration."""

    service_name: str

    def __init__(self, service_name: str, **kwargs):
        super().__init__(service_name=service_name, **kwargs)


def get_config(service_name: str) -> ServiceConfig:
    """Get configuration for a specific service."""
    return ServiceConfig(service_name=service_name)
