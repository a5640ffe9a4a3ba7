"""faultline: error detection, classification and automatic recovery.

faultline classifies failures into a typed taxonomy, tracks their trends,
guards dependencies with circuit breakers and health probes, and runs
recovery strategies chosen per error type.
"""

__version__ = "0.1.0"

# Logging exports
from faultline.logging import (
    bind_context,
    clear_context,
    configure_logging,
    get_logger,
    unbind_context,
)

# Model exports
from faultline.models import (
    BusinessImpact,
    CircuitBreakerSnapshot,
    CircuitState,
    ErrorClassification,
    ErrorSeverity,
    ErrorType,
    HealthStatus,
    PatternMatch,
    RecoveryAttempt,
    RecoveryConfig,
    RecoveryStrategy,
    ServiceHealth,
    TechnicalComplexity,
    UserImpact,
)

# Error exports
from faultline.errors import (
    CircuitOpenError,
    ConfigurationError,
    ErrorInfo,
    FailoverUnavailableError,
    FallbackUnavailableError,
    FaultlineError,
    HealthCheckTimeoutError,
    InvalidTransitionError,
    RecoveryExhaustedError,
    ServiceNotRegisteredError,
)

# Component exports
from faultline.analysis import ErrorTrendAnalyzer, PatternAnalysis, TrendDirection
from faultline.circuit_breaker import CircuitBreaker, CircuitBreakerRegistry
from faultline.classifier import ErrorClassifier, ErrorPattern, default_patterns
from faultline.health import HealthMonitor, HttpHealthProbe, ProbeResult
from faultline.metrics import MetricsCollector
from faultline.middleware import RecoveryHTTPMiddleware, RecoveryMiddleware
from faultline.recovery import (
    CachedFallback,
    FallbackProvider,
    RecoveryOrchestrator,
    RetryPolicy,
    StaticFallback,
    plan_strategies,
    select_strategies,
)

# Config exports
from faultline.config import FaultlineConfig, load_config
from faultline.service import ResilienceService

__all__ = [
    "__version__",
    # Logging
    "configure_logging",
    "get_logger",
    "bind_context",
    "unbind_context",
    "clear_context",
    # Models
    "ErrorType",
    "ErrorSeverity",
    "BusinessImpact",
    "UserImpact",
    "TechnicalComplexity",
    "HealthStatus",
    "CircuitState",
    "RecoveryStrategy",
    "PatternMatch",
    "ErrorClassification",
    "ServiceHealth",
    "CircuitBreakerSnapshot",
    "RecoveryAttempt",
    "RecoveryConfig",
    # Errors
    "FaultlineError",
    "CircuitOpenError",
    "InvalidTransitionError",
    "RecoveryExhaustedError",
    "HealthCheckTimeoutError",
    "FailoverUnavailableError",
    "FallbackUnavailableError",
    "ServiceNotRegisteredError",
    "ConfigurationError",
    "ErrorInfo",
    # Components
    "ErrorClassifier",
    "ErrorPattern",
    "default_patterns",
    "ErrorTrendAnalyzer",
    "PatternAnalysis",
    "TrendDirection",
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    "HealthMonitor",
    "HttpHealthProbe",
    "ProbeResult",
    "MetricsCollector",
    "RecoveryOrchestrator",
    "RetryPolicy",
    "FallbackProvider",
    "StaticFallback",
    "CachedFallback",
    "select_strategies",
    "plan_strategies",
    "RecoveryMiddleware",
    "RecoveryHTTPMiddleware",
    # Config
    "FaultlineConfig",
    "load_config",
    "ResilienceService",
]
