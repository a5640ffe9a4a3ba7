"""Composition root wiring the classifier, breakers, monitor and orchestrator.

Applications create one ``ResilienceService`` (usually from ``load_config``)
and pass it around instead of reaching for module-level singletons.
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Union

from faultline.analysis import ErrorTrendAnalyzer
from faultline.circuit_breaker import CircuitBreakerRegistry
from faultline.classifier import ErrorClassifier
from faultline.config import FaultlineConfig
from faultline.health import HealthMonitor, HealthProbe
from faultline.logging import configure_logging, get_logger
from faultline.metrics import MetricsCollector, start_metrics_server
from faultline.middleware import RecoveryMiddleware
from faultline.models import ErrorClassification, ErrorSeverity, RecoveryConfig
from faultline.recovery import (
    AlertHandler,
    CachedFallback,
    CleanupHook,
    FallbackProvider,
    Operation,
    RecoveryOrchestrator,
    RetryPolicy,
)

logger = get_logger(__name__, component="service")


class ResilienceService:
    """Owns every component of the error detection and recovery engine.

    Example:
        >>> service = ResilienceService.from_config(load_config("config"))
        >>> service.register_service("payments", probe=payments.ping, fallback=CachedFallback())
        >>> await service.start()
        >>> result = await service.execute("payments", charge)
        >>> await service.stop()
    """

    def __init__(
        self,
        config: Optional[FaultlineConfig] = None,
        metrics: Optional[MetricsCollector] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        alert_handler: Optional[AlertHandler] = None,
    ):
        """Initialize service.

        Args:
            config: Full configuration; defaults when omitted.
            metrics: Metrics collector; one is created when metrics are
                enabled and none is given.
            sleep: Sleep function shared by recovery and health waits.
            alert_handler: Receives security alerts.
        """
        self.config = config or FaultlineConfig()
        cfg = self.config

        if metrics is None and cfg.metrics.enabled:
            metrics = MetricsCollector(max_cardinality=cfg.metrics.max_cardinality)
        self.metrics = metrics

        self.analyzer = ErrorTrendAnalyzer(
            max_recent=cfg.classifier.max_recent_per_type,
            spike_threshold=cfg.classifier.spike_threshold,
            trend_window_seconds=cfg.classifier.trend_window_seconds,
            retention_seconds=cfg.classifier.retention_hours * 3600,
        )
        self.classifier = ErrorClassifier(
            analyzer=self.analyzer,
            metrics=metrics,
            analysis_interval_seconds=cfg.classifier.analysis_interval_seconds,
            prune_interval_seconds=cfg.classifier.prune_interval_seconds,
        )
        self.breakers = CircuitBreakerRegistry(
            failure_threshold=cfg.recovery.circuit_breaker_threshold,
            timeout_ms=cfg.recovery.circuit_breaker_timeout_ms,
            metrics=metrics,
        )
        self.health_monitor = HealthMonitor(
            check_interval_seconds=cfg.recovery.health_check_interval_ms / 1000,
            probe_timeout_seconds=cfg.health.probe_timeout_seconds,
            failure_threshold=cfg.health.failure_threshold,
            degraded_threshold_ms=cfg.health.degraded_threshold_ms,
            error_window=cfg.health.error_window,
            metrics=metrics,
            sleep=sleep,
        )
        self.retry_policy = RetryPolicy(
            min_confidence=cfg.retry_policy.min_confidence,
            retryable_severities=[ErrorSeverity(s) for s in cfg.retry_policy.retryable_severities],
        )
        self.orchestrator = RecoveryOrchestrator(
            classifier=self.classifier,
            breakers=self.breakers,
            health_monitor=self.health_monitor,
            config=cfg.recovery,
            retry_policy=self.retry_policy,
            metrics=metrics,
            sleep=sleep,
            alert_handler=alert_handler,
        )
        self.middleware = RecoveryMiddleware(
            classifier=self.classifier,
            orchestrator=self.orchestrator,
            retry_policy=self.retry_policy,
            metrics=metrics,
            expose_internal_messages=cfg.middleware.expose_internal_messages,
            default_retry_after_seconds=cfg.middleware.default_retry_after_seconds,
            rate_limit_retry_after_seconds=cfg.recovery.rate_limit_delay_ms / 1000,
        )
        for route, default in cfg.middleware.critical_endpoints.items():
            self.middleware.register_critical_endpoint(route, CachedFallback(default=default))

        self._started = False

    @classmethod
    def from_config(cls, config: FaultlineConfig, **kwargs: Any) -> "ResilienceService":
        """Configure logging from ``config`` and build the service."""
        configure_logging(
            log_level=config.logging.log_level,
            log_format=config.logging.log_format,
            log_file=str(config.logging.log_file) if config.logging.log_file else None,
        )
        return cls(config, **kwargs)

    # Registration

    def register_service(
        self,
        name: str,
        probe: Optional[HealthProbe] = None,
        fallback: Optional[FallbackProvider] = None,
        failover: Optional[Operation] = None,
        cleanup: Optional[CleanupHook] = None,
        interval_seconds: Optional[float] = None,
    ) -> None:
        """Register a dependency and whatever recovery helpers it has."""
        if probe is not None:
            self.health_monitor.register_service(name, probe, interval_seconds=interval_seconds)
        if fallback is not None:
            self.orchestrator.register_fallback(name, fallback)
        if failover is not None:
            self.orchestrator.register_failover(name, failover)
        if cleanup is not None:
            self.orchestrator.register_cleanup(name, cleanup)
        logger.info(
            "service_registered",
            service=name,
            probe=probe is not None,
            fallback=fallback is not None,
            failover=failover is not None,
        )

    # Operations

    def classify(self, error: Any, context: Optional[Mapping[str, Any]] = None) -> ErrorClassification:
        return self.classifier.classify(error, context)

    async def execute(
        self,
        service_name: str,
        operation: Operation,
        config: Union[RecoveryConfig, Mapping[str, Any], None] = None,
        context: Optional[Mapping[str, Any]] = None,
    ) -> Any:
        return await self.orchestrator.execute(service_name, operation, config=config, context=context)

    async def attempt_recovery(
        self,
        service_name: str,
        operation: Operation,
        causing_error: Any,
        config: Union[RecoveryConfig, Mapping[str, Any], None] = None,
        context: Optional[Mapping[str, Any]] = None,
        classification: Optional[ErrorClassification] = None,
    ) -> Any:
        return await self.orchestrator.attempt_recovery(
            service_name,
            operation,
            causing_error,
            config=config,
            context=context,
            classification=classification,
        )

    def get_recovery_metrics(self, service_name: Optional[str] = None) -> Dict[str, Any]:
        return self.orchestrator.get_recovery_metrics(service_name)

    def get_detection_metrics(self) -> Dict[str, Any]:
        return self.classifier.get_detection_metrics()

    # Lifecycle

    async def start(self) -> None:
        """Start background analysis, health probing and the metrics server."""
        if self._started:
            return
        self.classifier.start()
        self.health_monitor.start()
        if self.metrics is not None and self.config.metrics.start_server:
            start_metrics_server(self.metrics, port=self.config.metrics.port, addr=self.config.metrics.addr)
        self._started = True
        logger.info("resilience_service_started", environment=self.config.environment)

    async def stop(self) -> None:
        if not self._started:
            return
        await self.classifier.stop()
        await self.health_monitor.stop()
        self._started = False
        logger.info("resilience_service_stopped")

    async def __aenter__(self) -> "ResilienceService":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()
