"""Core data model for error classification and recovery.

Enums and pydantic models shared by the classifier, the circuit breakers,
the health monitor, the recovery orchestrator and the middleware.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


class ErrorType(str, Enum):
    """Error taxonomy used for classification and strategy selection."""

    AUTHENTICATION = "authentication"
    AUTHORIZATION = "authorization"
    VALIDATION = "validation"
    RATE_LIMIT = "rate_limit"
    NETWORK = "network"
    DATABASE = "database"
    INTERNAL = "internal"
    NOT_FOUND = "not_found"
    TIMEOUT = "timeout"
    EXTERNAL_SERVICE = "external_service"

    # Extended types
    MEMORY_LEAK = "memory_leak"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"
    SECURITY_BREACH = "security_breach"
    WORKFLOW_EXECUTION = "workflow_execution"
    RESOURCE_EXHAUSTION = "resource_exhaustion"
    CIRCUIT_BREAKER = "circuit_breaker"
    CONFIGURATION = "configuration"
    PERFORMANCE_DEGRADATION = "performance_degradation"


class ErrorSeverity(str, Enum):
    """Severity levels, ordered from least to most severe."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class BusinessImpact(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class UserImpact(str, Enum):
    NONE = "none"
    MINIMAL = "minimal"
    MODERATE = "moderate"
    SEVERE = "severe"


class TechnicalComplexity(str, Enum):
    SIMPLE = "simple"
    MODERATE = "moderate"
    COMPLEX = "complex"
    EXPERT = "expert"


class HealthStatus(str, Enum):
    """Health check status."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Failing, reject requests
    HALF_OPEN = "half_open"  # Single trial call admitted


class RecoveryStrategy(str, Enum):
    """Named recovery algorithms the orchestrator can run."""

    IMMEDIATE_RETRY = "immediate_retry"
    EXPONENTIAL_BACKOFF = "exponential_backoff"
    CIRCUIT_BREAKER = "circuit_breaker"
    HEALTH_CHECK_RECOVERY = "health_check_recovery"
    FAILOVER = "failover"
    GRACEFUL_DEGRADATION = "graceful_degradation"
    RATE_LIMIT_BACKOFF = "rate_limit_backoff"
    RESOURCE_CLEANUP = "resource_cleanup"


class PatternMatch(BaseModel):
    """A pattern that matched an error, with the confidence it produced."""

    model_config = ConfigDict(frozen=True)

    pattern_id: str
    name: str
    type: ErrorType
    severity: ErrorSeverity
    confidence: float = Field(ge=0.0, le=1.0)


class ErrorClassification(BaseModel):
    """Structured result of classifying one failure."""

    model_config = ConfigDict(frozen=True)

    error_id: str = Field(description="Correlation id derived from error and context")
    type: ErrorType
    severity: ErrorSeverity
    confidence: float = Field(ge=0.0, le=1.0)
    matched_patterns: List[PatternMatch] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    category: str = "General"
    business_impact: BusinessImpact = BusinessImpact.MEDIUM
    user_impact: UserImpact = UserImpact.MODERATE
    technical_complexity: TechnicalComplexity = TechnicalComplexity.MODERATE
    estimated_resolution_minutes: int = Field(default=60, ge=0)
    auto_recoverable: bool = False
    action_required: bool = False
    timestamp: datetime = Field(default_factory=utcnow)

    @property
    def is_fallback(self) -> bool:
        return "fallback" in self.tags


class ServiceHealth(BaseModel):
    """Current health record of a named dependency."""

    service_name: str
    status: HealthStatus = HealthStatus.UNKNOWN
    last_check: Optional[datetime] = None
    response_time_ms: float = Field(default=0.0, ge=0.0)
    error_rate: float = Field(default=0.0, ge=0.0, le=100.0)
    consecutive_failures: int = Field(default=0, ge=0)
    uptime_pct: float = Field(default=0.0, ge=0.0, le=100.0)
    total_checks: int = Field(default=0, ge=0)
    message: str = ""

    @property
    def is_healthy(self) -> bool:
        return self.status == HealthStatus.HEALTHY


class CircuitBreakerSnapshot(BaseModel):
    """Point-in-time view of one service's circuit breaker."""

    model_config = ConfigDict(frozen=True)

    service_name: str
    state: CircuitState
    failure_count: int
    success_count: int
    last_failure_at: Optional[float] = None
    next_attempt_at: Optional[float] = None
    total_calls: int = 0
    total_rejections: int = 0


class RecoveryAttempt(BaseModel):
    """Record of one strategy execution."""

    model_config = ConfigDict(frozen=True)

    attempt_number: int = Field(ge=1)
    service_name: str
    strategy: RecoveryStrategy
    success: bool
    error: Optional[str] = None
    duration_ms: float = Field(ge=0.0)
    timestamp: datetime = Field(default_factory=utcnow)
    error_id: Optional[str] = None


DEFAULT_STRATEGY_ORDER = [
    RecoveryStrategy.EXPONENTIAL_BACKOFF,
    RecoveryStrategy.CIRCUIT_BREAKER,
    RecoveryStrategy.HEALTH_CHECK_RECOVERY,
]


class RecoveryConfig(BaseModel):
    """Tunable recovery policy."""

    model_config = ConfigDict(extra="forbid")

    max_retries: int = Field(default=5, ge=1, le=20, description="Attempts for exponential backoff")
    base_delay_ms: int = Field(default=1000, ge=0, description="First backoff delay")
    max_delay_ms: int = Field(default=30000, ge=0, description="Upper bound for any delay")
    backoff_multiplier: float = Field(default=2.0, ge=1.0, description="Backoff growth factor")
    circuit_breaker_threshold: int = Field(default=5, ge=1, description="Failures to open a circuit")
    circuit_breaker_timeout_ms: int = Field(default=60000, ge=0, description="Time before half-open")
    health_check_interval_ms: int = Field(default=30000, ge=100, description="Probe interval")
    strategy_order: List[RecoveryStrategy] = Field(
        default_factory=lambda: list(DEFAULT_STRATEGY_ORDER),
        description="Strategies for error types without a dedicated plan",
    )
    enabled_strategies: List[RecoveryStrategy] = Field(
        default_factory=lambda: list(RecoveryStrategy),
        description="Strategies allowed to run",
    )
    rate_limit_delay_ms: int = Field(default=5000, ge=0, description="Wait when no retry-after is known")
    failover_delay_ms: int = Field(default=1000, ge=0, description="Pause before redirecting to a secondary")
    cleanup_pause_ms: int = Field(default=2000, ge=0, description="Pause after resource cleanup")
    health_wait_timeout_ms: int = Field(default=30000, ge=0, description="Max wait for a healthy service")
    health_poll_interval_ms: int = Field(default=5000, ge=1, description="Poll interval while waiting")
    enable_auto_recovery: bool = Field(default=True)

    @field_validator("strategy_order")
    @classmethod
    def _no_duplicates(cls, value: List[RecoveryStrategy]) -> List[RecoveryStrategy]:
        if len(set(value)) != len(value):
            raise ValueError("strategy_order must not contain duplicates")
        return value

    @model_validator(mode="after")
    def _check_delays(self) -> "RecoveryConfig":
        if self.max_delay_ms < self.base_delay_ms:
            raise ValueError("max_delay_ms must be >= base_delay_ms")
        return self

    def merged(
        self, overrides: Union["RecoveryConfig", Mapping[str, Any], None]
    ) -> "RecoveryConfig":
        """Return a config with per-call overrides applied.

        A full ``RecoveryConfig`` replaces this one; a mapping overrides only
        the keys it names.
        """
        if overrides is None:
            return self
        if isinstance(overrides, RecoveryConfig):
            return overrides
        data: Dict[str, Any] = self.model_dump()
        data.update(overrides)
        return RecoveryConfig.model_validate(data)

    def backoff_delay_ms(self, attempt: int) -> float:
        """Delay before retry ``attempt + 1`` (attempt is 1-based)."""
        delay = self.base_delay_ms * (self.backoff_multiplier ** (attempt - 1))
        return min(delay, self.max_delay_ms)
