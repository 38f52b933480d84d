"""
Shared configuration management for the policy resolver.
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="AUTHZ_",
        env_file=".env",
        case_sensitive=False,
        extra="allow"
    )

    # Environment
    env: str = Field(default="local", description="Deployment environment")
    log_level: str = Field(default="info", description="Log level for structlog/stdlib")

    # Observability
    enable_metrics: bool = Field(default=True, description="Record Prometheus metrics")


class PolicyEngineSettings(BaseConfig):
    """Settings for the conflict detection and resolution core."""

    # Combination
    default_combination_mode: str = Field(default="deny_wins", description="Combination mode when a request carries none")
    default_evaluation_mode: str = Field(default="hybrid", description="Evaluation mode when a request carries none")
    combine_timeout_seconds: Optional[float] = Field(default=None, description="Overall deadline for combine()")

    # Expression sandbox
    expression_timeout_ms: int = Field(default=1000, ge=1, description="Wall-clock limit per expression")
    max_expression_length: int = Field(default=10000, ge=1)
    max_nesting_depth: int = Field(default=10, ge=1)

    # Attribute resolution
    attribute_timeout_seconds: float = Field(default=5.0, gt=0, description="Deadline per resolver compute")
    attribute_cache_backend: str = Field(default="memory", description="memory or redis")
    attribute_cache_prefix: str = Field(default="attr:")
    redis_url: str = Field(default="redis://localhost:6379/0")


@lru_cache(maxsize=1)
def get_settings() -> PolicyEngineSettings:
    """Get the process-wide engine settings."""
    return PolicyEngineSettings()
