"""
Shared configuration management for the admission layer.
"""

from typing import Dict

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_tier_limits() -> Dict[str, Dict[str, int]]:
    # Calls per window, keyed by tier then operation
    return {
        "free": {"parsing": 50, "reply": 100},
        "premium": {"parsing": 200, "reply": 500},
        "enterprise": {"parsing": 1000, "reply": 2000},
    }


def _default_priority_multipliers() -> Dict[str, float]:
    return {"low": 0.8, "normal": 1.0, "high": 1.2}


def _default_channel_limits() -> Dict[str, Dict[str, int]]:
    return {
        "webhook": {"limit": 5, "window_seconds": 60},
        "nlu": {"limit": 30, "window_seconds": 60},
        "api": {"limit": 15, "window_seconds": 60},
    }


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="ADMISSION_",
        env_file=".env",
        case_sensitive=False,
        extra="allow"
    )

    # Environment
    env: str = "local"
    log_level: str = "info"

    # External services
    redis_url: str = "redis://localhost:6379/0"
    store_timeout_ms: int = 500

    # Resilience
    breaker_failure_threshold: int = 5
    breaker_recovery_seconds: float = 30.0


class AdmissionConfig(BaseConfig):
    """Admission and shaping settings."""

    service_name: str = "admission"

    # Quotas
    window_seconds: int = 3600
    tier_limits: Dict[str, Dict[str, int]] = Field(default_factory=_default_tier_limits)
    global_limit: int = 5000
    priority_multipliers: Dict[str, float] = Field(default_factory=_default_priority_multipliers)
    tier_scoped_windows: bool = False
    fail_open_remaining: int = 999

    # System load
    high_load_threshold: float = 0.8
    high_load_factor: float = 0.5
    load_token_threshold: int = 1_000_000
    load_ttl_seconds: int = 300

    # Usage analytics
    usage_ttl_days: int = 7
    system_usage_ttl_days: int = 30

    # Burst shaping
    debounce_delay_ms: int = 3000
    debounce_ttl_seconds: int = 10
    duplicate_window_ms: int = 10000

    # Edge limits per ingress channel
    channel_limits: Dict[str, Dict[str, int]] = Field(default_factory=_default_channel_limits)


def get_config(**overrides) -> AdmissionConfig:
    """Get admission configuration from the environment."""
    return AdmissionConfig(**overrides)
