"""Periodic health probing of named service dependencies.

Each registered service has a probe callback. ``HealthMonitor.probe`` runs it
with a timeout and folds the outcome into the service's ``ServiceHealth``
record; ``start()`` runs one ``RepeatingTask`` per service so probing never
happens on the request path.
"""

import asyncio
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque, Dict, Iterable, Mapping, Optional, Union

import httpx
from pydantic import BaseModel, Field

from faultline.errors import HealthCheckTimeoutError, ServiceNotRegisteredError
from faultline.logging import get_logger
from faultline.metrics import MetricsCollector
from faultline.models import HealthStatus, ServiceHealth, utcnow
from faultline.scheduler import RepeatingTask, call_maybe_async

logger = get_logger(__name__, component="health")


class ProbeResult(BaseModel):
    """Outcome reported by a health probe."""

    healthy: bool
    response_time_ms: Optional[float] = Field(default=None, ge=0.0)
    message: str = ""
    details: Dict[str, Any] = Field(default_factory=dict)


HealthProbe = Callable[[], Union[Awaitable[Any], Any]]


def _to_probe_result(value: Any) -> ProbeResult:
    if isinstance(value, ProbeResult):
        return value
    if isinstance(value, bool):
        return ProbeResult(healthy=value)
    if isinstance(value, Mapping):
        return ProbeResult(
            healthy=bool(value.get("healthy", True)),
            response_time_ms=value.get("response_time_ms"),
            message=str(value.get("message", "")),
        )
    # A probe that returned without raising counts as healthy
    return ProbeResult(healthy=True)


def is_serving(health: ServiceHealth) -> bool:
    """True if the last probe succeeded (healthy, or degraded by latency only)."""
    if health.status == HealthStatus.HEALTHY:
        return True
    return health.status == HealthStatus.DEGRADED and health.consecutive_failures == 0


@dataclass
class _ServiceEntry:
    probe: HealthProbe
    interval_seconds: float
    health: ServiceHealth
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    window: Deque[bool] = field(default_factory=deque)
    successes: int = 0
    task: Optional[RepeatingTask] = None


class HealthMonitor:
    """Maintains health records for registered services.

    Example:
        >>> monitor = HealthMonitor(check_interval_seconds=30)
        >>> monitor.register_service("payments", payments_client.ping)
        >>> health = await monitor.probe("payments")
        >>> monitor.start()
    """

    def __init__(
        self,
        check_interval_seconds: float = 30.0,
        probe_timeout_seconds: float = 5.0,
        failure_threshold: int = 1,
        degraded_threshold_ms: float = 1000.0,
        error_window: int = 10,
        metrics: Optional[MetricsCollector] = None,
        clock: Callable[[], float] = time.perf_counter,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """Initialize health monitor.

        Args:
            check_interval_seconds: Default probe interval per service.
            probe_timeout_seconds: Max time a single probe may take.
            failure_threshold: Consecutive failures before a service is
                reported unhealthy; fewer failures report degraded.
            degraded_threshold_ms: Successful probes slower than this
                report degraded.
            error_window: Number of recent probes used for ``error_rate``.
            metrics: Optional metrics collector.
            clock: Timer used to measure probe latency.
            sleep: Sleep function used while waiting for a service.
        """
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        self.check_interval_seconds = check_interval_seconds
        self.probe_timeout_seconds = probe_timeout_seconds
        self.failure_threshold = failure_threshold
        self.degraded_threshold_ms = degraded_threshold_ms
        self.error_window = error_window
        self._metrics = metrics
        self._clock = clock
        self._sleep = sleep
        self._services: Dict[str, _ServiceEntry] = {}
        self._running = False

    # Registration

    def register_service(
        self,
        name: str,
        probe: HealthProbe,
        interval_seconds: Optional[float] = None,
    ) -> None:
        """Register (or replace) the probe for a service."""
        previous = self._services.get(name)
        entry = _ServiceEntry(
            probe=probe,
            interval_seconds=interval_seconds or self.check_interval_seconds,
            health=previous.health if previous else ServiceHealth(service_name=name),
            window=deque(maxlen=self.error_window),
        )
        if previous is not None:
            entry.window.extend(previous.window)
            entry.successes = previous.successes
            entry.task = previous.task
        self._services[name] = entry

        if self._running and entry.task is None:
            self._start_service(name, entry)

        logger.info("health_service_registered", service=name, interval_seconds=entry.interval_seconds)

    async def unregister_service(self, name: str) -> bool:
        entry = self._services.pop(name, None)
        if entry is None:
            return False
        if entry.task is not None:
            await entry.task.stop()
        logger.info("health_service_unregistered", service=name)
        return True

    def is_registered(self, name: str) -> bool:
        return name in self._services

    def services(self) -> Iterable[str]:
        return list(self._services)

    # Reads

    def get_health(self, name: str) -> Optional[ServiceHealth]:
        entry = self._services.get(name)
        return entry.health.model_copy() if entry else None

    def get_all_health(self) -> Dict[str, ServiceHealth]:
        return {name: entry.health.model_copy() for name, entry in list(self._services.items())}

    # Probing

    async def probe(self, name: str) -> ServiceHealth:
        """Probe one service now and return its updated health record.

        Raises:
            ServiceNotRegisteredError: No probe is registered for ``name``.
        """
        entry = self._services.get(name)
        if entry is None:
            raise ServiceNotRegisteredError(name)

        async with entry.lock:
            start_time = self._clock()
            try:
                result = _to_probe_result(
                    await asyncio.wait_for(
                        call_maybe_async(entry.probe), timeout=self.probe_timeout_seconds
                    )
                )
            except asyncio.TimeoutError:
                result = ProbeResult(
                    healthy=False,
                    message=f"Health check timeout after {self.probe_timeout_seconds}s",
                )
                logger.warning("health_probe_timeout", service=name, timeout_seconds=self.probe_timeout_seconds)
            except Exception as e:
                result = ProbeResult(healthy=False, message=f"Health check error: {e}")
                logger.warning("health_probe_error", service=name, error=str(e))

            elapsed_ms = (self._clock() - start_time) * 1000
            if result.response_time_ms is None:
                result = result.model_copy(update={"response_time_ms": elapsed_ms})

            entry.health = self._apply(entry, result)
            health = entry.health.model_copy()

        logger.info(
            "health_check_completed",
            service=name,
            status=health.status.value,
            response_time_ms=health.response_time_ms,
            consecutive_failures=health.consecutive_failures,
        )
        if self._metrics:
            self._metrics.record_health_probe(name, health.status.value, elapsed_ms / 1000)
        return health

    def _apply(self, entry: _ServiceEntry, result: ProbeResult) -> ServiceHealth:
        previous = entry.health
        entry.window.append(result.healthy)
        total_checks = previous.total_checks + 1

        if result.healthy:
            entry.successes += 1
            consecutive_failures = 0
            if (result.response_time_ms or 0.0) > self.degraded_threshold_ms:
                status = HealthStatus.DEGRADED
            else:
                status = HealthStatus.HEALTHY
        else:
            consecutive_failures = previous.consecutive_failures + 1
            if consecutive_failures >= self.failure_threshold:
                status = HealthStatus.UNHEALTHY
            else:
                status = HealthStatus.DEGRADED

        failures_in_window = sum(1 for ok in entry.window if not ok)
        return ServiceHealth(
            service_name=previous.service_name,
            status=status,
            last_check=utcnow(),
            response_time_ms=result.response_time_ms or 0.0,
            error_rate=100.0 * failures_in_window / len(entry.window),
            consecutive_failures=consecutive_failures,
            uptime_pct=100.0 * entry.successes / total_checks,
            total_checks=total_checks,
            message=result.message,
        )

    async def probe_all(self) -> Dict[str, ServiceHealth]:
        """Probe every registered service concurrently."""
        names = list(self._services)
        results = await asyncio.gather(*(self.probe(name) for name in names), return_exceptions=True)
        health: Dict[str, ServiceHealth] = {}
        for name, result in zip(names, results):
            if isinstance(result, ServiceHealth):
                health[name] = result
            elif isinstance(result, ServiceNotRegisteredError):
                continue
            elif isinstance(result, BaseException):
                raise result
        return health

    async def wait_for_healthy(
        self,
        name: str,
        timeout_seconds: float,
        poll_interval_seconds: float = 5.0,
    ) -> ServiceHealth:
        """Probe until the service serves again or the budget runs out.

        Raises:
            HealthCheckTimeoutError: The service did not recover in time.
            ServiceNotRegisteredError: No probe is registered for ``name``.
        """
        remaining = timeout_seconds
        while True:
            health = await self.probe(name)
            if is_serving(health):
                return health
            if remaining <= 0:
                raise HealthCheckTimeoutError(name, timeout_seconds * 1000)
            wait = min(poll_interval_seconds, remaining)
            logger.debug("waiting_for_service_health", service=name, wait_seconds=wait)
            await self._sleep(wait)
            remaining -= wait

    # Background loop

    def _start_service(self, name: str, entry: _ServiceEntry) -> None:
        async def run_probe() -> None:
            if name in self._services:
                await self.probe(name)

        entry.task = RepeatingTask(
            f"health_probe:{name}", entry.interval_seconds, run_probe, run_immediately=True
        )
        entry.task.start()

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self) -> None:
        """Start periodic probing of all registered services."""
        if self._running:
            logger.warning("health_monitoring_already_running")
            return
        self._running = True
        for name, entry in list(self._services.items()):
            if entry.task is None:
                self._start_service(name, entry)
        logger.info("health_monitoring_started", services=len(self._services))

    async def stop(self) -> None:
        """Stop all probe loops and wait for them to exit."""
        self._running = False
        for entry in list(self._services.values()):
            task, entry.task = entry.task, None
            if task is not None:
                await task.stop()
        logger.info("health_monitoring_stopped")


class HttpHealthProbe:
    """Probe that GETs a URL and treats expected status codes as healthy."""

    def __init__(
        self,
        url: str,
        timeout_seconds: float = 5.0,
        expected_statuses: Iterable[int] = (200,),
        client: Optional[httpx.AsyncClient] = None,
    ):
        """Initialize HTTP probe.

        Args:
            url: Health endpoint URL.
            timeout_seconds: Request timeout.
            expected_statuses: Status codes that mean healthy.
            client: Shared client; one is created lazily when omitted.
        """
        self.url = url
        self.timeout_seconds = timeout_seconds
        self.expected_statuses = frozenset(expected_statuses)
        self._client = client
        self._owns_client = client is None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout_seconds)
        return self._client

    async def __call__(self) -> ProbeResult:
        client = await self._get_client()
        start_time = time.perf_counter()
        try:
            response = await client.get(self.url)
        except httpx.ConnectError as e:
            return ProbeResult(
                healthy=False,
                response_time_ms=(time.perf_counter() - start_time) * 1000,
                message=f"Cannot connect to {self.url}: {e}",
                details={"url": self.url, "error": "connection_refused"},
            )
        elapsed_ms = (time.perf_counter() - start_time) * 1000

        healthy = response.status_code in self.expected_statuses
        return ProbeResult(
            healthy=healthy,
            response_time_ms=elapsed_ms,
            message=f"{self.url} returned status {response.status_code}",
            details={"url": self.url, "status_code": response.status_code},
        )

    async def close(self) -> None:
        """Close the HTTP client if this probe created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
