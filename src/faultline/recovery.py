"""Automatic recovery of failed operations.

``RecoveryOrchestrator.attempt_recovery`` classifies the causing error, picks
an ordered list of strategies for its type and runs them until one produces
a result. Every strategy execution is recorded as a ``RecoveryAttempt``.
"""

import asyncio
import contextlib
import gc
import threading
import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import (
    Any,
    Awaitable,
    Callable,
    Deque,
    Dict,
    FrozenSet,
    Iterable,
    List,
    Mapping,
    Optional,
    Sequence,
    Union,
)

from pydantic import BaseModel, Field

from faultline.circuit_breaker import CircuitBreakerRegistry
from faultline.classifier import ErrorClassifier
from faultline.errors import (
    CircuitOpenError,
    ErrorInfo,
    FailoverUnavailableError,
    FallbackUnavailableError,
    RecoveryExhaustedError,
)
from faultline.health import HealthMonitor
from faultline.logging import get_logger
from faultline.metrics import MetricsCollector
from faultline.models import (
    CircuitState,
    ErrorClassification,
    ErrorSeverity,
    ErrorType,
    HealthStatus,
    RecoveryAttempt,
    RecoveryConfig,
    RecoveryStrategy,
    utcnow,
)
from faultline.scheduler import call_maybe_async

logger = get_logger(__name__, component="recovery")

Operation = Callable[[], Union[Awaitable[Any], Any]]
AlertHandler = Callable[[str, ErrorClassification], Union[Awaitable[None], None]]
CleanupHook = Callable[[], Union[Awaitable[None], None]]

STRATEGY_PLANS: Dict[ErrorType, List[RecoveryStrategy]] = {
    ErrorType.RATE_LIMIT: [RecoveryStrategy.RATE_LIMIT_BACKOFF],
    ErrorType.NETWORK: [
        RecoveryStrategy.EXPONENTIAL_BACKOFF,
        RecoveryStrategy.CIRCUIT_BREAKER,
        RecoveryStrategy.FAILOVER,
    ],
    ErrorType.DATABASE: [
        RecoveryStrategy.EXPONENTIAL_BACKOFF,
        RecoveryStrategy.CIRCUIT_BREAKER,
        RecoveryStrategy.RESOURCE_CLEANUP,
    ],
    ErrorType.AUTHENTICATION: [
        RecoveryStrategy.IMMEDIATE_RETRY,
        RecoveryStrategy.HEALTH_CHECK_RECOVERY,
    ],
}

# Strategies that re-run the operation outside the breaker.
DIRECT_RETRY_STRATEGIES: FrozenSet[RecoveryStrategy] = frozenset(
    {
        RecoveryStrategy.IMMEDIATE_RETRY,
        RecoveryStrategy.EXPONENTIAL_BACKOFF,
        RecoveryStrategy.HEALTH_CHECK_RECOVERY,
        RecoveryStrategy.RATE_LIMIT_BACKOFF,
        RecoveryStrategy.RESOURCE_CLEANUP,
    }
)

SECURITY_TAGS = frozenset({"security", "attack", "malicious", "breach"})


def select_strategies(
    error_type: ErrorType,
    strategy_order: Optional[Sequence[RecoveryStrategy]] = None,
) -> List[RecoveryStrategy]:
    """Ordered strategies for an error type, always ending in graceful degradation."""
    if error_type in STRATEGY_PLANS:
        strategies = list(STRATEGY_PLANS[error_type])
    else:
        strategies = list(strategy_order if strategy_order is not None else RecoveryConfig().strategy_order)
    if RecoveryStrategy.GRACEFUL_DEGRADATION not in strategies:
        strategies.append(RecoveryStrategy.GRACEFUL_DEGRADATION)
    return strategies


class RetryPolicy:
    """Decides which classified errors may be retried automatically."""

    NEVER_RETRY: FrozenSet[ErrorType] = frozenset({ErrorType.VALIDATION, ErrorType.AUTHORIZATION})
    CONDITIONAL_RETRY: FrozenSet[ErrorType] = frozenset(
        {ErrorType.RATE_LIMIT, ErrorType.NETWORK, ErrorType.DATABASE}
    )

    def __init__(
        self,
        min_confidence: float = 0.6,
        retryable_severities: Iterable[ErrorSeverity] = (ErrorSeverity.LOW, ErrorSeverity.MEDIUM),
        security_tags: Iterable[str] = SECURITY_TAGS,
    ):
        self.min_confidence = min_confidence
        self.retryable_severities = frozenset(retryable_severities)
        self.security_tags = frozenset(security_tags)

    def is_retry_forbidden(self, error_type: ErrorType) -> bool:
        return error_type in self.NEVER_RETRY

    def should_retry(self, classification: ErrorClassification) -> bool:
        if self.is_retry_forbidden(classification.type):
            return False
        if classification.type in self.CONDITIONAL_RETRY:
            return (
                classification.confidence >= self.min_confidence
                and classification.severity in self.retryable_severities
            )
        return classification.auto_recoverable and classification.severity != ErrorSeverity.CRITICAL

    def requires_alert(self, classification: ErrorClassification) -> bool:
        return classification.severity == ErrorSeverity.CRITICAL and bool(
            self.security_tags.intersection(classification.tags)
        )


def plan_strategies(
    error_type: ErrorType,
    config: Optional[RecoveryConfig] = None,
    retry_policy: Optional[RetryPolicy] = None,
) -> List[RecoveryStrategy]:
    """Strategies that will actually run for an error type under ``config``."""
    config = config or RecoveryConfig()
    retry_policy = retry_policy or RetryPolicy()
    strategies = select_strategies(error_type, config.strategy_order)
    if retry_policy.is_retry_forbidden(error_type):
        strategies = [s for s in strategies if s == RecoveryStrategy.GRACEFUL_DEGRADATION]
    enabled = set(config.enabled_strategies)
    return [s for s in strategies if s in enabled]


# ============================================================================
# Fallback providers and failover targets
# ============================================================================


class FallbackResult(BaseModel):
    """Degraded data served instead of a real result."""

    service_name: str
    data: Any = None
    source: str = Field(default="default", description="'cache' or 'default'")
    fallback_mode: bool = True
    cached_at: Optional[datetime] = None


class FallbackProvider:
    """Supplies cached or default data for a service."""

    async def get(self, service_name: str, classification: ErrorClassification) -> FallbackResult:
        raise NotImplementedError

    def update(self, value: Any) -> None:
        """Offer a fresh successful result. Ignored by default."""


class StaticFallback(FallbackProvider):
    """Always returns the same default data."""

    def __init__(self, data: Any):
        self.data = data

    async def get(self, service_name: str, classification: ErrorClassification) -> FallbackResult:
        return FallbackResult(service_name=service_name, data=self.data, source="default")


_MISSING = object()


class CachedFallback(FallbackProvider):
    """Serves the last known good result, or a default when nothing is cached.

    Example:
        >>> fallback = CachedFallback(default={"campaigns": []}, max_age_seconds=600)
        >>> orchestrator.register_fallback("campaigns", fallback)
    """

    def __init__(
        self,
        default: Any = _MISSING,
        max_age_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._default = default
        self.max_age_seconds = max_age_seconds
        self._clock = clock
        self._value: Any = _MISSING
        self._stored_at: Optional[float] = None
        self._cached_at: Optional[datetime] = None
        self._lock = threading.Lock()

    def update(self, value: Any) -> None:
        with self._lock:
            self._value = value
            self._stored_at = self._clock()
            self._cached_at = utcnow()

    def _fresh(self) -> bool:
        if self._value is _MISSING or self._stored_at is None:
            return False
        if self.max_age_seconds is None:
            return True
        return self._clock() - self._stored_at <= self.max_age_seconds

    async def get(self, service_name: str, classification: ErrorClassification) -> FallbackResult:
        with self._lock:
            if self._fresh():
                return FallbackResult(
                    service_name=service_name,
                    data=self._value,
                    source="cache",
                    cached_at=self._cached_at,
                )
        if self._default is not _MISSING:
            return FallbackResult(service_name=service_name, data=self._default, source="default")
        raise FallbackUnavailableError(service_name, "no cached or default data")


@dataclass(frozen=True)
class FailoverTarget:
    """Secondary target used when the primary keeps failing."""

    name: str
    operation: Operation
    use_circuit_breaker: bool = True


# ============================================================================
# Orchestrator
# ============================================================================


class RecoveryOrchestrator:
    """Runs recovery strategies for failed operations.

    Example:
        >>> orchestrator = RecoveryOrchestrator(classifier, breakers, monitor)
        >>> try:
        ...     data = await fetch_campaigns()
        ... except Exception as e:
        ...     data = await orchestrator.attempt_recovery("campaigns", fetch_campaigns, e)
    """

    def __init__(
        self,
        classifier: Optional[ErrorClassifier] = None,
        breakers: Optional[CircuitBreakerRegistry] = None,
        health_monitor: Optional[HealthMonitor] = None,
        config: Optional[RecoveryConfig] = None,
        retry_policy: Optional[RetryPolicy] = None,
        metrics: Optional[MetricsCollector] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        alert_handler: Optional[AlertHandler] = None,
        max_history: int = 1000,
    ):
        """Initialize orchestrator.

        Args:
            classifier: Classifier for causing errors.
            breakers: Circuit breaker registry used by the circuit breaker
                and failover strategies.
            health_monitor: Monitor used by health check recovery.
            config: Default recovery configuration.
            retry_policy: Policy for retry gating and security alerts.
            metrics: Optional metrics collector.
            sleep: Sleep function, injectable for tests.
            alert_handler: Called with (service, classification) on
                security alerts.
            max_history: Attempts retained per service.
        """
        self.config = config or RecoveryConfig()
        self.classifier = classifier or ErrorClassifier(metrics=metrics)
        self.breakers = breakers or CircuitBreakerRegistry(
            failure_threshold=self.config.circuit_breaker_threshold,
            timeout_ms=self.config.circuit_breaker_timeout_ms,
            metrics=metrics,
        )
        self.health_monitor = health_monitor or HealthMonitor(
            check_interval_seconds=self.config.health_check_interval_ms / 1000,
            metrics=metrics,
            sleep=sleep,
        )
        self.retry_policy = retry_policy or RetryPolicy()
        self.metrics = metrics
        self.alert_handler = alert_handler
        self._sleep = sleep
        self.max_history = max_history

        self._lock = threading.Lock()
        self._failover_targets: Dict[str, FailoverTarget] = {}
        self._fallbacks: Dict[str, FallbackProvider] = {}
        self._cleanup_hooks: Dict[str, List[CleanupHook]] = {}
        self._attempts: Dict[str, Deque[RecoveryAttempt]] = {}

    # Registries (copy-on-write)

    def update_config(self, overrides: Union[RecoveryConfig, Mapping[str, Any]]) -> RecoveryConfig:
        with self._lock:
            self.config = self.config.merged(overrides)
        logger.info("recovery_config_updated", config=self.config.model_dump(mode="json"))
        return self.config

    def register_failover(
        self,
        service_name: str,
        operation: Operation,
        target_name: Optional[str] = None,
        use_circuit_breaker: bool = True,
    ) -> None:
        """Register a secondary target for ``service_name``."""
        target = FailoverTarget(
            name=target_name or f"{service_name}:failover",
            operation=operation,
            use_circuit_breaker=use_circuit_breaker,
        )
        with self._lock:
            self._failover_targets = {**self._failover_targets, service_name: target}
        logger.info("failover_target_registered", service=service_name, target=target.name)

    def register_fallback(self, service_name: str, provider: FallbackProvider) -> None:
        with self._lock:
            self._fallbacks = {**self._fallbacks, service_name: provider}
        logger.info("fallback_provider_registered", service=service_name, provider=type(provider).__name__)

    def register_cleanup(self, service_name: str, hook: CleanupHook) -> None:
        """Register a cleanup hook run by resource cleanup (``"*"`` for all services)."""
        with self._lock:
            hooks = self._cleanup_hooks.get(service_name, [])
            self._cleanup_hooks = {**self._cleanup_hooks, service_name: [*hooks, hook]}

    def get_fallback(self, service_name: str) -> Optional[FallbackProvider]:
        return self._fallbacks.get(service_name)

    # Planning

    def plan(self, classification: ErrorClassification, config: RecoveryConfig) -> List[RecoveryStrategy]:
        """Strategies that will actually run for this classification."""
        return plan_strategies(classification.type, config, self.retry_policy)

    # Recovery

    async def attempt_recovery(
        self,
        service_name: str,
        operation: Operation,
        causing_error: Any,
        config: Union[RecoveryConfig, Mapping[str, Any], None] = None,
        context: Optional[Mapping[str, Any]] = None,
        classification: Optional[ErrorClassification] = None,
    ) -> Any:
        """Recover a failed operation.

        Args:
            service_name: Service the operation talks to.
            operation: Zero-argument sync or async callable to re-run.
            causing_error: The error the first call failed with.
            config: Per-call overrides of the orchestrator's config.
            context: Request context passed to the classifier.
            classification: An existing classification of ``causing_error``.
                When given, the error is not classified (or counted) again.

        Returns:
            The first successful strategy's result (a ``FallbackResult`` when
            graceful degradation produced it).

        Raises:
            RecoveryExhaustedError: Every strategy failed.
        """
        cfg = self.config.merged(config)
        if classification is None:
            info, classification = self.classifier.classify_info(causing_error, context)
        else:
            info = ErrorInfo.from_error(causing_error)

        if self.retry_policy.requires_alert(classification):
            await self._raise_alert(service_name, classification)

        if not cfg.enable_auto_recovery:
            logger.info("auto_recovery_disabled", service=service_name, error_id=classification.error_id)
            if isinstance(causing_error, Exception):
                raise causing_error
            raise RecoveryExhaustedError(service_name, 0, error_id=classification.error_id)

        strategies = self.plan(classification, cfg)
        logger.info(
            "recovery_started",
            service=service_name,
            error_id=classification.error_id,
            error_type=classification.type.value,
            severity=classification.severity.value,
            strategies=[s.value for s in strategies],
        )

        tracker = self.metrics.track_recovery(service_name) if self.metrics else contextlib.nullcontext()
        with tracker:
            return await self._run_strategies(
                service_name, operation, info, classification, strategies, cfg
            )

    async def _run_strategies(
        self,
        service_name: str,
        operation: Operation,
        info: ErrorInfo,
        classification: ErrorClassification,
        strategies: List[RecoveryStrategy],
        cfg: RecoveryConfig,
    ) -> Any:
        last_error: Optional[BaseException] = None

        for attempt_number, strategy in enumerate(strategies, start=1):
            start_time = time.perf_counter()
            try:
                result = await self._execute_strategy(
                    strategy, service_name, operation, info, classification, cfg
                )
            except asyncio.CancelledError:
                self._record_attempt(
                    service_name, attempt_number, strategy, False, start_time, classification, "cancelled"
                )
                raise
            except Exception as e:
                last_error = e
                self._record_attempt(
                    service_name, attempt_number, strategy, False, start_time, classification, str(e)
                )
                logger.warning(
                    "recovery_strategy_failed",
                    service=service_name,
                    strategy=strategy.value,
                    error=str(e),
                    error_id=classification.error_id,
                )
                continue

            self._record_attempt(service_name, attempt_number, strategy, True, start_time, classification)
            if not isinstance(result, FallbackResult):
                provider = self._fallbacks.get(service_name)
                if provider is not None:
                    provider.update(result)
            logger.info(
                "recovery_succeeded",
                service=service_name,
                strategy=strategy.value,
                attempt=attempt_number,
                error_id=classification.error_id,
            )
            return result

        logger.error(
            "recovery_exhausted",
            service=service_name,
            strategies_attempted=len(strategies),
            error_id=classification.error_id,
        )
        raise RecoveryExhaustedError(
            service_name, len(strategies), last_error=last_error, error_id=classification.error_id
        )

    async def execute(
        self,
        service_name: str,
        operation: Operation,
        config: Union[RecoveryConfig, Mapping[str, Any], None] = None,
        context: Optional[Mapping[str, Any]] = None,
    ) -> Any:
        """Run ``operation`` and fall back to ``attempt_recovery`` if it fails."""
        try:
            result = await call_maybe_async(operation)
        except Exception as e:
            return await self.attempt_recovery(service_name, operation, e, config=config, context=context)
        provider = self._fallbacks.get(service_name)
        if provider is not None:
            provider.update(result)
        return result

    async def _execute_strategy(
        self,
        strategy: RecoveryStrategy,
        service_name: str,
        operation: Operation,
        info: ErrorInfo,
        classification: ErrorClassification,
        cfg: RecoveryConfig,
    ) -> Any:
        logger.debug("recovery_strategy_started", service=service_name, strategy=strategy.value)
        if strategy in DIRECT_RETRY_STRATEGIES:
            self._check_breaker(service_name, strategy)
        if strategy == RecoveryStrategy.IMMEDIATE_RETRY:
            return await call_maybe_async(operation)
        if strategy == RecoveryStrategy.EXPONENTIAL_BACKOFF:
            return await self._exponential_backoff(service_name, operation, cfg)
        if strategy == RecoveryStrategy.CIRCUIT_BREAKER:
            breaker = self.breakers.get(
                service_name,
                failure_threshold=cfg.circuit_breaker_threshold,
                timeout_ms=cfg.circuit_breaker_timeout_ms,
            )
            return await breaker.execute(operation)
        if strategy == RecoveryStrategy.HEALTH_CHECK_RECOVERY:
            return await self._health_check_recovery(service_name, operation, cfg)
        if strategy == RecoveryStrategy.FAILOVER:
            return await self._failover(service_name, cfg)
        if strategy == RecoveryStrategy.GRACEFUL_DEGRADATION:
            return await self._graceful_degradation(service_name, classification)
        if strategy == RecoveryStrategy.RATE_LIMIT_BACKOFF:
            return await self._rate_limit_backoff(service_name, operation, info, cfg)
        if strategy == RecoveryStrategy.RESOURCE_CLEANUP:
            return await self._resource_cleanup(service_name, operation, cfg)
        raise ValueError(f"Unknown recovery strategy: {strategy}")

    def _check_breaker(self, service_name: str, strategy: RecoveryStrategy) -> None:
        """Refuse to call the operation while the service's breaker is open."""
        breaker = self.breakers.find(service_name)
        if breaker is None:
            return
        retry_after = breaker.retry_after_seconds()
        if retry_after is None or retry_after <= 0:
            return
        logger.info(
            "recovery_strategy_skipped",
            service=service_name,
            strategy=strategy.value,
            retry_after_seconds=retry_after,
        )
        raise CircuitOpenError(
            f"Circuit breaker is open for {service_name}",
            service=service_name,
            retry_after_seconds=retry_after,
        )

    async def _exponential_backoff(
        self, service_name: str, operation: Operation, cfg: RecoveryConfig
    ) -> Any:
        attempt = 1
        while True:
            try:
                return await call_maybe_async(operation)
            except Exception as e:
                logger.warning(
                    "retry_failed",
                    service=service_name,
                    attempt=attempt,
                    max_retries=cfg.max_retries,
                    error=str(e),
                )
                if attempt >= cfg.max_retries:
                    raise
            delay_ms = cfg.backoff_delay_ms(attempt)
            logger.debug("retry_backoff", service=service_name, attempt=attempt, delay_ms=delay_ms)
            await self._sleep(delay_ms / 1000.0)
            attempt += 1

    async def _health_check_recovery(
        self, service_name: str, operation: Operation, cfg: RecoveryConfig
    ) -> Any:
        if not self.health_monitor.is_registered(service_name):
            logger.debug("health_probe_not_registered", service=service_name)
            return await call_maybe_async(operation)
        await self.health_monitor.wait_for_healthy(
            service_name,
            timeout_seconds=cfg.health_wait_timeout_ms / 1000.0,
            poll_interval_seconds=cfg.health_poll_interval_ms / 1000.0,
        )
        return await call_maybe_async(operation)

    async def _failover(self, service_name: str, cfg: RecoveryConfig) -> Any:
        target = self._failover_targets.get(service_name)
        if target is None:
            raise FailoverUnavailableError(service_name)
        logger.info("failover_started", service=service_name, target=target.name)
        await self._sleep(cfg.failover_delay_ms / 1000.0)
        if target.use_circuit_breaker:
            breaker = self.breakers.get(
                target.name,
                failure_threshold=cfg.circuit_breaker_threshold,
                timeout_ms=cfg.circuit_breaker_timeout_ms,
            )
            return await breaker.execute(target.operation)
        return await call_maybe_async(target.operation)

    async def _graceful_degradation(
        self, service_name: str, classification: ErrorClassification
    ) -> FallbackResult:
        provider = self._fallbacks.get(service_name)
        if provider is None:
            raise FallbackUnavailableError(service_name)
        result = await provider.get(service_name, classification)
        logger.warning(
            "degraded_mode_activated",
            service=service_name,
            source=result.source,
            error_id=classification.error_id,
        )
        return result

    async def _rate_limit_backoff(
        self, service_name: str, operation: Operation, info: ErrorInfo, cfg: RecoveryConfig
    ) -> Any:
        if info.retry_after_seconds is not None:
            wait_ms = info.retry_after_seconds * 1000.0
        else:
            wait_ms = float(cfg.rate_limit_delay_ms)
        wait_ms = min(wait_ms, float(cfg.max_delay_ms))
        logger.info("rate_limit_backoff", service=service_name, wait_ms=wait_ms)
        await self._sleep(wait_ms / 1000.0)
        return await call_maybe_async(operation)

    async def _resource_cleanup(
        self, service_name: str, operation: Operation, cfg: RecoveryConfig
    ) -> Any:
        hooks = [*self._cleanup_hooks.get("*", []), *self._cleanup_hooks.get(service_name, [])]
        for hook in hooks:
            try:
                await call_maybe_async(hook)
            except Exception as e:
                logger.warning("cleanup_hook_failed", service=service_name, error=str(e))
        collected = gc.collect()
        logger.info("resource_cleanup_completed", service=service_name, hooks=len(hooks), collected=collected)
        await self._sleep(cfg.cleanup_pause_ms / 1000.0)
        return await call_maybe_async(operation)

    async def _raise_alert(self, service_name: str, classification: ErrorClassification) -> None:
        logger.error(
            "security_alert",
            service=service_name,
            error_id=classification.error_id,
            error_type=classification.type.value,
            tags=classification.tags,
        )
        if self.metrics:
            self.metrics.increment_security_alert(classification.type.value)
        if self.alert_handler is not None:
            try:
                await call_maybe_async(lambda: self.alert_handler(service_name, classification))
            except Exception as e:
                logger.error("alert_handler_failed", service=service_name, error=str(e))

    # History and metrics

    def _record_attempt(
        self,
        service_name: str,
        attempt_number: int,
        strategy: RecoveryStrategy,
        success: bool,
        start_time: float,
        classification: ErrorClassification,
        error: Optional[str] = None,
    ) -> RecoveryAttempt:
        attempt = RecoveryAttempt(
            attempt_number=attempt_number,
            service_name=service_name,
            strategy=strategy,
            success=success,
            error=error,
            duration_ms=(time.perf_counter() - start_time) * 1000,
            error_id=classification.error_id,
        )
        with self._lock:
            history = self._attempts.get(service_name)
            if history is None:
                history = deque(maxlen=self.max_history)
                self._attempts[service_name] = history
            history.append(attempt)
        if self.metrics:
            self.metrics.record_recovery_attempt(service_name, strategy.value, success)
        return attempt

    def get_attempts(self, service_name: str) -> List[RecoveryAttempt]:
        with self._lock:
            return list(self._attempts.get(service_name, ()))

    def clear_history(self, service_name: Optional[str] = None) -> None:
        with self._lock:
            if service_name is None:
                self._attempts.clear()
            else:
                self._attempts.pop(service_name, None)

    def get_recovery_metrics(self, service_name: Optional[str] = None) -> Dict[str, Any]:
        """Per-service detail, or an aggregate summary when no service is given."""
        if service_name is not None:
            health = self.health_monitor.get_health(service_name)
            breaker = self.breakers.find(service_name)
            return {
                "service": service_name,
                "health": health.model_dump(mode="json") if health else None,
                "circuit_breaker": breaker.snapshot().model_dump(mode="json") if breaker else None,
                "recovery_attempts": [a.model_dump(mode="json") for a in self.get_attempts(service_name)],
            }

        all_health = self.health_monitor.get_all_health()
        snapshots = self.breakers.snapshot_all()
        with self._lock:
            attempt_counts = {name: len(history) for name, history in self._attempts.items()}

        services = sorted(set(all_health) | set(snapshots) | set(attempt_counts))
        return {
            "services": services,
            "summary": {
                "total_services": len(services),
                "healthy_services": sum(
                    1 for h in all_health.values() if h.status == HealthStatus.HEALTHY
                ),
                "unhealthy_services": sum(
                    1 for h in all_health.values() if h.status == HealthStatus.UNHEALTHY
                ),
                "circuit_breakers_open": sum(
                    1 for s in snapshots.values() if s.state == CircuitState.OPEN
                ),
                "total_recovery_attempts": sum(attempt_counts.values()),
            },
        }
