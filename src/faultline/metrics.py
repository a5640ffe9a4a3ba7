"""Prometheus metrics for the error detection and recovery engine.

Tracks classifications, recovery attempts, circuit breaker state, service
health and middleware responses. Each ``MetricsCollector`` owns its own
``CollectorRegistry`` so several engines (or tests) can coexist in one
process.

Includes cardinality controls to prevent metric explosion from unbounded
service names.
"""

import time
from collections import defaultdict
from contextlib import contextmanager
from threading import Lock
from typing import Any, Dict, Iterator, Optional, Set, Tuple

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
    start_http_server,
)

from faultline.logging import get_logger

logger = get_logger(__name__, component="metrics")

OVERFLOW_LABEL = "other"


class CardinalityTracker:
    """Tracks and limits metric label cardinality to prevent metric explosion.

    Service names come from callers, so a misbehaving caller could create an
    unbounded number of label sets. This tracker enforces a limit per metric.
    """

    def __init__(self, max_cardinality: int = 1000):
        """Initialize cardinality tracker.

        Args:
            max_cardinality: Maximum number of unique label combinations allowed.
        """
        self.max_cardinality = max_cardinality
        self.label_sets: Dict[str, Set[Tuple[str, ...]]] = defaultdict(set)
        self.dropped_counts: Dict[str, int] = defaultdict(int)
        self._lock = Lock()

    def check_and_add(self, metric_name: str, labels: Tuple[str, ...]) -> bool:
        """Check if label combination is allowed and add it if under limit.

        Args:
            metric_name: Name of the metric.
            labels: Tuple of label values.

        Returns:
            True if allowed, False if cardinality limit exceeded.
        """
        with self._lock:
            label_set = self.label_sets[metric_name]

            if labels in label_set:
                return True

            if len(label_set) >= self.max_cardinality:
                self.dropped_counts[metric_name] += 1
                if self.dropped_counts[metric_name] % 100 == 1:  # Log every 100 drops
                    logger.warning(
                        "metric_cardinality_limit_exceeded",
                        metric_name=metric_name,
                        cardinality=len(label_set),
                        max_cardinality=self.max_cardinality,
                        dropped_count=self.dropped_counts[metric_name],
                    )
                return False

            label_set.add(labels)
            return True

    def get_cardinality(self, metric_name: str) -> int:
        """Get current cardinality for a metric."""
        with self._lock:
            return len(self.label_sets.get(metric_name, set()))

    def get_stats(self) -> Dict[str, Any]:
        """Get cardinality statistics.

        Returns:
            Dictionary with cardinality stats per metric.
        """
        with self._lock:
            return {
                "metrics": {
                    name: {
                        "cardinality": len(labels),
                        "dropped": self.dropped_counts.get(name, 0),
                    }
                    for name, labels in self.label_sets.items()
                },
                "total_label_combinations": sum(len(labels) for labels in self.label_sets.values()),
                "max_cardinality": self.max_cardinality,
            }


_CIRCUIT_STATE_VALUES = {"closed": 0, "half_open": 1, "open": 2}
_HEALTH_STATUS_VALUES = {"unknown": -1, "unhealthy": 0, "degraded": 1, "healthy": 2}


class MetricsCollector:
    """Metrics collector for the recovery engine.

    Example:
        >>> metrics = MetricsCollector()
        >>> metrics.record_classification("network", "high", 0.85, 0.0004)
        >>> with metrics.track_recovery("payments"):
        ...     ...
    """

    def __init__(
        self,
        registry: Optional[CollectorRegistry] = None,
        max_cardinality: int = 1000,
        namespace: str = "faultline",
    ) -> None:
        """Initialize metrics collector.

        Args:
            registry: Prometheus registry to register with. A private registry
                is created when omitted.
            max_cardinality: Maximum unique label combinations per metric.
            namespace: Metric name prefix.
        """
        self.registry = registry if registry is not None else CollectorRegistry()
        self.cardinality_tracker = CardinalityTracker(max_cardinality=max_cardinality)

        self.system_info = Info(
            "system", "faultline system information", namespace=namespace, registry=self.registry
        )
        self.system_info.info({"version": "0.1.0", "app": "faultline"})

        # Classification metrics
        self.errors_classified = Counter(
            "errors_classified_total",
            "Errors classified by type and severity",
            ["error_type", "severity"],
            namespace=namespace,
            registry=self.registry,
        )
        self.fallback_classifications = Counter(
            "fallback_classifications_total",
            "Classifications that degraded to the fallback result",
            namespace=namespace,
            registry=self.registry,
        )
        self.classification_latency = Histogram(
            "classification_latency_seconds",
            "Time spent classifying one error",
            namespace=namespace,
            registry=self.registry,
            buckets=(0.0001, 0.0005, 0.001, 0.005, 0.01, 0.05, 0.1),
        )
        self.error_anomalies = Counter(
            "error_anomalies_total",
            "Anomalies flagged by pattern analysis",
            ["error_type"],
            namespace=namespace,
            registry=self.registry,
        )

        # Recovery metrics
        self.recovery_attempts = Counter(
            "recovery_attempts_total",
            "Recovery strategy executions",
            ["service", "strategy", "outcome"],
            namespace=namespace,
            registry=self.registry,
        )
        self.recoveries = Counter(
            "recoveries_total",
            "Recovery runs by final outcome",
            ["service", "outcome"],
            namespace=namespace,
            registry=self.registry,
        )
        self.recovery_duration = Histogram(
            "recovery_duration_seconds",
            "Duration of full recovery runs",
            ["service"],
            namespace=namespace,
            registry=self.registry,
            buckets=(0.01, 0.1, 0.5, 1.0, 5.0, 15.0, 30.0, 60.0, 120.0),
        )
        self.security_alerts = Counter(
            "security_alerts_total",
            "Critical security classifications that triggered an alert",
            ["error_type"],
            namespace=namespace,
            registry=self.registry,
        )

        # Circuit breaker metrics
        self.circuit_breaker_state = Gauge(
            "circuit_breaker_state",
            "Circuit breaker state (0=closed, 1=half_open, 2=open)",
            ["service"],
            namespace=namespace,
            registry=self.registry,
        )
        self.circuit_breaker_rejections = Counter(
            "circuit_breaker_rejections_total",
            "Calls rejected without invoking the operation",
            ["service"],
            namespace=namespace,
            registry=self.registry,
        )
        self.circuit_breaker_failures = Counter(
            "circuit_breaker_failures_total",
            "Operation failures recorded by circuit breakers",
            ["service"],
            namespace=namespace,
            registry=self.registry,
        )

        # Health metrics
        self.service_health = Gauge(
            "service_health_status",
            "Service health (-1=unknown, 0=unhealthy, 1=degraded, 2=healthy)",
            ["service"],
            namespace=namespace,
            registry=self.registry,
        )
        self.health_probe_latency = Histogram(
            "health_probe_latency_seconds",
            "Health probe duration",
            ["service"],
            namespace=namespace,
            registry=self.registry,
            buckets=(0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0),
        )

        # Middleware metrics
        self.middleware_responses = Counter(
            "middleware_error_responses_total",
            "Error responses rendered by the recovery middleware",
            ["status_code", "error_type", "fallback"],
            namespace=namespace,
            registry=self.registry,
        )

        logger.debug("metrics_collector_initialized", namespace=namespace)

    def _service_label(self, metric_name: str, service: str) -> str:
        if self.cardinality_tracker.check_and_add(metric_name, (service,)):
            return service
        return OVERFLOW_LABEL

    # Classification

    def record_classification(
        self,
        error_type: str,
        severity: str,
        confidence: float,
        duration_seconds: float,
        fallback: bool = False,
    ) -> None:
        """Record one classification result."""
        self.errors_classified.labels(error_type=error_type, severity=severity).inc()
        self.classification_latency.observe(duration_seconds)
        if fallback:
            self.fallback_classifications.inc()

    def increment_anomaly(self, error_type: str) -> None:
        self.error_anomalies.labels(error_type=error_type).inc()

    # Recovery

    def record_recovery_attempt(self, service: str, strategy: str, success: bool) -> None:
        """Record one strategy execution.

        Args:
            service: Service name.
            strategy: Strategy name.
            success: Whether the strategy produced a result.
        """
        service = self._service_label("recovery_attempts", service)
        outcome = "success" if success else "failure"
        self.recovery_attempts.labels(service=service, strategy=strategy, outcome=outcome).inc()

    @contextmanager
    def track_recovery(self, service: str) -> Iterator[None]:
        """Context manager timing a recovery run and counting its outcome."""
        service = self._service_label("recoveries", service)
        start_time = time.monotonic()
        outcome = "failure"
        try:
            yield
            outcome = "success"
        finally:
            self.recovery_duration.labels(service=service).observe(time.monotonic() - start_time)
            self.recoveries.labels(service=service, outcome=outcome).inc()

    def increment_security_alert(self, error_type: str) -> None:
        self.security_alerts.labels(error_type=error_type).inc()

    # Circuit breakers

    def update_circuit_breaker_state(self, service: str, state: str) -> None:
        """Update circuit breaker state gauge.

        Args:
            service: Service name.
            state: Circuit breaker state (closed, half_open, open).
        """
        service = self._service_label("circuit_breaker_state", service)
        self.circuit_breaker_state.labels(service=service).set(_CIRCUIT_STATE_VALUES.get(state, 0))

    def increment_circuit_breaker_rejection(self, service: str) -> None:
        service = self._service_label("circuit_breaker_rejections", service)
        self.circuit_breaker_rejections.labels(service=service).inc()

    def increment_circuit_breaker_failures(self, service: str) -> None:
        service = self._service_label("circuit_breaker_failures", service)
        self.circuit_breaker_failures.labels(service=service).inc()

    # Health

    def record_health_probe(self, service: str, status: str, duration_seconds: float) -> None:
        """Record a health probe result."""
        service = self._service_label("service_health", service)
        self.service_health.labels(service=service).set(_HEALTH_STATUS_VALUES.get(status, -1))
        self.health_probe_latency.labels(service=service).observe(duration_seconds)

    # Middleware

    def record_middleware_response(self, status_code: int, error_type: str, fallback: bool) -> None:
        self.middleware_responses.labels(
            status_code=str(status_code),
            error_type=error_type,
            fallback="true" if fallback else "false",
        ).inc()

    # Utility methods

    def get_sample_value(self, name: str, labels: Optional[Dict[str, str]] = None) -> Optional[float]:
        """Read a single sample from this collector's registry."""
        return self.registry.get_sample_value(name, labels or {})

    def export(self) -> bytes:
        """Render all metrics in the Prometheus text format."""
        return generate_latest(self.registry)

    def get_cardinality_stats(self) -> Dict[str, Any]:
        return self.cardinality_tracker.get_stats()


def start_metrics_server(
    collector: MetricsCollector,
    port: int = 9090,
    addr: str = "0.0.0.0",
) -> None:
    """Start the Prometheus metrics HTTP server for a collector.

    The server runs in a separate thread.

    Args:
        collector: Collector whose registry is exposed.
        port: Port to listen on (default: 9090).
        addr: Address to bind to (default: 0.0.0.0 for all interfaces).
    """
    logger.info("starting_metrics_server", port=port, addr=addr)
    try:
        start_http_server(port=port, addr=addr, registry=collector.registry)
        logger.info("metrics_server_started", port=port, addr=addr)
    except OSError as e:
        if "Address already in use" in str(e):
            logger.warning(
                "metrics_server_already_running",
                port=port,
                addr=addr,
            )
        else:
            logger.error(
                "metrics_server_start_failed",
                port=port,
                addr=addr,
                error=str(e),
            )
            raise
