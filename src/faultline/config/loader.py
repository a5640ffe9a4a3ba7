"""Configuration loader for faultline.

Loads YAML configuration files, applies environment overrides and validates
the result against Pydantic models.
"""

import os
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError

from faultline.errors import ConfigurationError
from faultline.models import RecoveryConfig, RecoveryStrategy

CONFIG_FILE = "faultline.yaml"
ENV_PREFIX = "FAULTLINE_"


class LoggingConfig(BaseModel):
    """Logging configuration."""

    log_level: str = Field(default="INFO", pattern=r"^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")
    log_format: str = Field(default="console", pattern=r"^(json|console)$")
    log_file: Optional[Path] = Field(default=None)


class ClassifierConfig(BaseModel):
    """Error classifier and trend analysis configuration."""

    spike_threshold: int = Field(default=100, ge=1)
    analysis_interval_seconds: float = Field(default=300.0, gt=0)
    prune_interval_seconds: float = Field(default=3600.0, gt=0)
    max_recent_per_type: int = Field(default=100, ge=1)
    trend_window_seconds: float = Field(default=300.0, gt=0)
    retention_hours: float = Field(default=24.0, gt=0)


class RetryPolicyConfig(BaseModel):
    """Gating of automatic retries."""

    min_confidence: float = Field(default=0.6, ge=0.0, le=1.0)
    retryable_severities: List[str] = Field(default_factory=lambda: ["low", "medium"])


class HealthConfig(BaseModel):
    """Health monitor configuration (interval comes from ``recovery``)."""

    probe_timeout_seconds: float = Field(default=5.0, gt=0)
    failure_threshold: int = Field(default=1, ge=1)
    degraded_threshold_ms: float = Field(default=1000.0, ge=0)
    error_window: int = Field(default=10, ge=1)


class MiddlewareConfig(BaseModel):
    """Recovery middleware configuration."""

    critical_endpoints: Dict[str, Any] = Field(
        default_factory=dict, description="Route -> default fallback data"
    )
    expose_internal_messages: bool = Field(default=True)
    default_retry_after_seconds: float = Field(default=1.0, ge=0)


class MetricsConfig(BaseModel):
    """Prometheus metrics configuration."""

    enabled: bool = Field(default=True)
    start_server: bool = Field(default=False)
    port: int = Field(default=9090, ge=1, le=65535)
    addr: str = Field(default="0.0.0.0")
    max_cardinality: int = Field(default=1000, ge=1)


class FaultlineConfig(BaseModel):
    """Complete faultline configuration."""

    version: str = Field(default="1.0")
    environment: str = Field(default="development")

    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    recovery: RecoveryConfig = Field(default_factory=RecoveryConfig)
    retry_policy: RetryPolicyConfig = Field(default_factory=RetryPolicyConfig)
    classifier: ClassifierConfig = Field(default_factory=ClassifierConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)
    middleware: MiddlewareConfig = Field(default_factory=MiddlewareConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)


# Environment variable -> (section, key)
ENV_OVERRIDES = {
    "MAX_RETRIES": ("recovery", "max_retries"),
    "BASE_DELAY_MS": ("recovery", "base_delay_ms"),
    "MAX_DELAY_MS": ("recovery", "max_delay_ms"),
    "BACKOFF_MULTIPLIER": ("recovery", "backoff_multiplier"),
    "CIRCUIT_BREAKER_THRESHOLD": ("recovery", "circuit_breaker_threshold"),
    "CIRCUIT_BREAKER_TIMEOUT_MS": ("recovery", "circuit_breaker_timeout_ms"),
    "HEALTH_CHECK_INTERVAL_MS": ("recovery", "health_check_interval_ms"),
    "ENABLED_STRATEGIES": ("recovery", "enabled_strategies"),
    "LOG_LEVEL": ("logging", "log_level"),
    "LOG_FORMAT": ("logging", "log_format"),
}


def load_config(
    config_dir: Optional[Path | str] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> FaultlineConfig:
    """Load configuration from a directory and the environment.

    Args:
        config_dir: Directory containing ``faultline.yaml``. Defaults only
            when omitted.
        environ: Environment mapping (defaults to ``os.environ``).

    Returns:
        Validated FaultlineConfig object.

    Raises:
        FileNotFoundError: If config directory doesn't exist.
        ConfigurationError: If configuration is invalid.
    """
    environ = os.environ if environ is None else environ
    data: Dict[str, Any] = {}

    if config_dir is not None:
        config_dir = Path(config_dir)
        if not config_dir.exists():
            raise FileNotFoundError(f"Config directory not found: {config_dir}")

        main_file = config_dir / CONFIG_FILE
        if main_file.exists():
            data = _read_yaml(main_file)

        # Load includes
        includes = data.pop("includes", [])
        for include in includes:
            include_path = config_dir / include
            if include_path.exists():
                _deep_merge(data, _read_yaml(include_path))

        # Load environment override
        env = environ.get(f"{ENV_PREFIX}ENVIRONMENT") or data.get("environment", "development")
        env_file = config_dir / "environments" / f"{env}.yaml"
        if env_file.exists():
            _deep_merge(data, _read_yaml(env_file))

    if environ.get(f"{ENV_PREFIX}ENVIRONMENT"):
        data["environment"] = environ[f"{ENV_PREFIX}ENVIRONMENT"]
    _deep_merge(data, env_overrides(environ))

    try:
        return FaultlineConfig(**data)
    except ValidationError as e:
        raise ConfigurationError(
            f"Invalid faultline configuration: {e.error_count()} error(s)",
            details={"errors": e.errors(include_url=False)},
        ) from e


def env_overrides(environ: Mapping[str, str]) -> Dict[str, Any]:
    """Build a nested override dict from ``FAULTLINE_*`` variables."""
    overrides: Dict[str, Any] = {}
    for name, (section, key) in ENV_OVERRIDES.items():
        raw = environ.get(f"{ENV_PREFIX}{name}")
        if raw is None or raw == "":
            continue
        value: Any = raw
        if key == "enabled_strategies":
            value = _parse_strategies(raw)
        elif key == "log_level":
            value = raw.upper()
        overrides.setdefault(section, {})[key] = value
    return overrides


def _parse_strategies(raw: str) -> List[str]:
    names = [part.strip().lower() for part in raw.split(",") if part.strip()]
    valid = {s.value for s in RecoveryStrategy}
    unknown = [name for name in names if name not in valid]
    if unknown:
        raise ConfigurationError(
            f"Unknown recovery strategies: {', '.join(unknown)}",
            details={"unknown": unknown, "valid": sorted(valid)},
        )
    return names


def _read_yaml(path: Path) -> Dict[str, Any]:
    with open(path) as f:
        try:
            data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Cannot parse {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationError(f"Top level of {path} must be a mapping")
    return data


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> None:
    """Deep merge override into base dictionary."""
    for key, value in override.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value
