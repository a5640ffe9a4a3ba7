"""Configuration loading and validation."""

from faultline.config.loader import (
    ClassifierConfig,
    FaultlineConfig,
    HealthConfig,
    LoggingConfig,
    MetricsConfig,
    MiddlewareConfig,
    RetryPolicyConfig,
    env_overrides,
    load_config,
)

__all__ = [
    # Main config
    "load_config",
    "env_overrides",
    "FaultlineConfig",
    # Config sections
    "LoggingConfig",
    "ClassifierConfig",
    "RetryPolicyConfig",
    "HealthConfig",
    "MiddlewareConfig",
    "MetricsConfig",
]
