"""
Configuration management for Routewise.

Supports environment variables, .env files, and YAML configuration.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class TierLimits(BaseModel):
    """Daily limits and cost ceilings for a single tier."""

    level1_requests: int = Field(ge=0)
    level2_requests: int = Field(ge=0)
    total_tokens: int = Field(ge=0)
    daily_max_cost: float = Field(ge=0)
    monthly_max_cost: float = Field(ge=0)
    features: list[str] = Field(default_factory=list)


def _default_tiers() -> dict[str, TierLimits]:
    return {
        "free": TierLimits(
            level1_requests=5,
            level2_requests=50,
            total_tokens=10_000,
            daily_max_cost=1.0,
            monthly_max_cost=10.0,
            features=["basic_routing"],
        ),
        "basic": TierLimits(
            level1_requests=20,
            level2_requests=200,
            total_tokens=50_000,
            daily_max_cost=5.0,
            monthly_max_cost=50.0,
            features=["basic_routing", "response_cache"],
        ),
        "premium": TierLimits(
            level1_requests=100,
            level2_requests=1_000,
            total_tokens=200_000,
            daily_max_cost=20.0,
            monthly_max_cost=200.0,
            features=["basic_routing", "response_cache", "priority_providers"],
        ),
        "enterprise": TierLimits(
            level1_requests=1_000,
            level2_requests=10_000,
            total_tokens=1_000_000,
            daily_max_cost=100.0,
            monthly_max_cost=1_000.0,
            features=["basic_routing", "response_cache", "priority_providers", "custom_policies"],
        ),
    }


class RouterSettings(BaseSettings):
    """Core routing settings."""

    model_config = SettingsConfigDict(
        env_prefix="ROUTEWISE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    default_tier: str = "free"
    accuracy_threshold_percent: float = Field(default=5.0, ge=0)
    default_estimated_tokens: int = Field(default=2000, gt=0)
    level1_min_accuracy: float = Field(default=90.0, ge=0, le=100)

    # JSON list of provider candidates; None uses the built-in catalog
    catalog_path: str | None = None

    # "highest_priority_wins" or "override_classes"
    merge_strategy: str = "highest_priority_wins"
    # "snapshot" or "per_request"
    limit_resolution: str = "snapshot"

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        v = v.upper()
        if v not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return v

    @field_validator("merge_strategy")
    @classmethod
    def validate_merge_strategy(cls, v: str) -> str:
        valid = {"highest_priority_wins", "override_classes"}
        v = v.lower()
        if v not in valid:
            raise ValueError(f"Invalid merge strategy: {v}. Must be one of {valid}")
        return v

    @field_validator("limit_resolution")
    @classmethod
    def validate_limit_resolution(cls, v: str) -> str:
        valid = {"snapshot", "per_request"}
        v = v.lower()
        if v not in valid:
            raise ValueError(f"Invalid limit resolution: {v}. Must be one of {valid}")
        return v


class QuotaSettings(BaseSettings):
    """Daily quota settings."""

    model_config = SettingsConfigDict(
        env_prefix="ROUTEWISE_QUOTA_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    tiers: dict[str, TierLimits] = Field(default_factory=_default_tiers)

    # Daily reset instant, HH:MM in UTC
    reset_time: str = "00:00"

    # Compare-and-swap attempts before giving up on a contended key
    max_cas_retries: int = 50

    @field_validator("reset_time")
    @classmethod
    def validate_reset_time(cls, v: str) -> str:
        parts = v.split(":")
        if len(parts) != 2 or not all(p.isdigit() for p in parts):
            raise ValueError(f"Invalid reset time: {v}. Expected HH:MM")
        hour, minute = int(parts[0]), int(parts[1])
        if not (0 <= hour < 24 and 0 <= minute < 60):
            raise ValueError(f"Invalid reset time: {v}. Expected HH:MM")
        return f"{hour:02d}:{minute:02d}"

    @property
    def reset_hour(self) -> int:
        return int(self.reset_time.split(":")[0])

    @property
    def reset_minute(self) -> int:
        return int(self.reset_time.split(":")[1])


class PolicySettings(BaseSettings):
    """Policy table storage and reconciliation settings."""

    model_config = SettingsConfigDict(
        env_prefix="ROUTEWISE_POLICY_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # None keeps the table in memory only
    table_path: str | None = None
    reload_interval_seconds: float = Field(default=60.0, gt=0)
    history_size: int = 50


class EvaluationSettings(BaseSettings):
    """Benchmark evaluation settings."""

    model_config = SettingsConfigDict(
        env_prefix="ROUTEWISE_EVAL_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    datasets_path: str | None = None
    results_path: str | None = None
    pass_threshold: float = Field(default=0.7, ge=0, le=1)


class RedisSettings(BaseSettings):
    """Redis configuration for the shared quota store."""

    model_config = SettingsConfigDict(
        env_prefix="REDIS_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    url: str | None = Field(default=None, alias="REDIS_URL")
    host: str = "localhost"
    port: int = 6379
    password: SecretStr | None = None
    db: int = 0
    ssl: bool = False

    # Connection pool settings
    max_connections: int = 10
    socket_timeout: float = 5.0

    @property
    def is_configured(self) -> bool:
        """Check if Redis is configured."""
        return self.url is not None or self.host != "localhost"


class ServerSettings(BaseSettings):
    """API server settings."""

    model_config = SettingsConfigDict(
        env_prefix="ROUTEWISE_SERVER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    host: str = "0.0.0.0"
    port: int = 8000
    workers: int = 1
    reload: bool = False
    cors_origins: list[str] = Field(default_factory=lambda: ["*"])

    # Admin API
    admin_api_enabled: bool = True
    admin_api_key: SecretStr | None = None


class Settings(BaseSettings):
    """Combined application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    router: RouterSettings = Field(default_factory=RouterSettings)
    quota: QuotaSettings = Field(default_factory=QuotaSettings)
    policy: PolicySettings = Field(default_factory=PolicySettings)
    evaluation: EvaluationSettings = Field(default_factory=EvaluationSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    server: ServerSettings = Field(default_factory=ServerSettings)

    # Environment
    environment: str = Field(default="development", alias="ENVIRONMENT")
    debug: bool = Field(default=False, alias="DEBUG")

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment.lower() == "production"

    @classmethod
    def from_yaml(cls, path: str | Path) -> "Settings":
        """Load settings from a YAML file."""
        import yaml

        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        with open(path) as f:
            data: dict[str, Any] = yaml.safe_load(f) or {}

        return cls(**data)


@lru_cache()
def get_settings() -> Settings:
    """Get cached application settings."""
    return Settings()


def reload_settings() -> Settings:
    """Reload settings (clears cache)."""
    get_settings.cache_clear()
    return get_settings()
