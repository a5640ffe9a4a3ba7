"""Per-service circuit breakers.

CLOSED passes calls through, OPEN fails fast until the timeout elapses, and
HALF_OPEN admits exactly one trial call whose outcome decides between CLOSED
and OPEN. Concurrent callers arriving while the trial is in flight are
rejected instead of piling onto a dependency that is still recovering.
"""

import asyncio
import threading
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar, Union

from faultline.errors import CircuitOpenError, InvalidTransitionError
from faultline.logging import get_logger
from faultline.metrics import MetricsCollector
from faultline.models import CircuitBreakerSnapshot, CircuitState
from faultline.scheduler import call_maybe_async

logger = get_logger(__name__, component="circuit_breaker")

T = TypeVar("T")
Operation = Callable[[], Union[Awaitable[T], T]]

_ALLOWED_TRANSITIONS = {
    CircuitState.CLOSED: {CircuitState.OPEN},
    CircuitState.OPEN: {CircuitState.HALF_OPEN},
    CircuitState.HALF_OPEN: {CircuitState.CLOSED, CircuitState.OPEN},
}


class CircuitBreaker:
    """Finite-state gate around calls to one dependency.

    Example:
        >>> breaker = CircuitBreaker("payments", failure_threshold=3, timeout_ms=60000)
        >>> result = await breaker.execute(charge_card)
    """

    def __init__(
        self,
        service_name: str,
        failure_threshold: int = 5,
        timeout_ms: float = 60000,
        clock: Callable[[], float] = time.monotonic,
        metrics: Optional[MetricsCollector] = None,
    ):
        """Initialize circuit breaker.

        Args:
            service_name: Service key this breaker guards.
            failure_threshold: Consecutive failures that open the circuit.
            timeout_ms: Time spent OPEN before a trial call is allowed.
            clock: Monotonic clock in seconds, injectable for tests.
            metrics: Optional metrics collector.
        """
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        self.service_name = service_name
        self.failure_threshold = failure_threshold
        self.timeout_ms = timeout_ms
        self._clock = clock
        self._metrics = metrics
        self._lock = asyncio.Lock()
        self._generation = 0
        self._init_state()

    def _init_state(self) -> None:
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._last_failure_at: Optional[float] = None
        self._next_attempt_at: Optional[float] = None
        self._trial_in_flight = False
        self._total_calls = 0
        self._total_rejections = 0

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    def retry_after_seconds(self) -> Optional[float]:
        """Seconds until an OPEN breaker admits a trial call, else None."""
        if self._state != CircuitState.OPEN or self._next_attempt_at is None:
            return None
        return max(0.0, self._next_attempt_at - self._clock())

    def snapshot(self) -> CircuitBreakerSnapshot:
        return CircuitBreakerSnapshot(
            service_name=self.service_name,
            state=self._state,
            failure_count=self._failure_count,
            success_count=self._success_count,
            last_failure_at=self._last_failure_at,
            next_attempt_at=self._next_attempt_at,
            total_calls=self._total_calls,
            total_rejections=self._total_rejections,
        )

    def reset(self) -> None:
        """Forget all state and start again CLOSED."""
        self._generation += 1
        self._init_state()
        logger.info("circuit_breaker_reset", service=self.service_name)
        if self._metrics:
            self._metrics.update_circuit_breaker_state(self.service_name, self._state.value)

    def _transition_to(self, new_state: CircuitState) -> None:
        """Move to ``new_state``. Caller must hold the lock."""
        old_state = self._state
        if new_state not in _ALLOWED_TRANSITIONS[old_state]:
            raise InvalidTransitionError(self.service_name, old_state.value, new_state.value)

        self._state = new_state
        self._generation += 1
        if new_state == CircuitState.OPEN:
            self._next_attempt_at = self._clock() + self.timeout_ms / 1000.0
        elif new_state == CircuitState.CLOSED:
            self._failure_count = 0
            self._next_attempt_at = None

        logger.info(
            "circuit_state_changed",
            service=self.service_name,
            old_state=old_state.value,
            new_state=new_state.value,
            failure_count=self._failure_count,
        )
        if self._metrics:
            self._metrics.update_circuit_breaker_state(self.service_name, new_state.value)

    def _reject(self, reason: str) -> CircuitOpenError:
        self._total_rejections += 1
        retry_after = self.retry_after_seconds()
        logger.warning(
            "circuit_open_rejected",
            service=self.service_name,
            state=self._state.value,
            reason=reason,
            failure_count=self._failure_count,
        )
        if self._metrics:
            self._metrics.increment_circuit_breaker_rejection(self.service_name)
        return CircuitOpenError(
            f"Circuit breaker is open for {self.service_name}",
            service=self.service_name,
            retry_after_seconds=retry_after,
        )

    async def _admit(self) -> Tuple[bool, int]:
        """Decide whether a call may run.

        Returns:
            ``(is_trial, generation)``: whether this is the half-open trial,
            and the state generation the call was admitted under.
        """
        async with self._lock:
            self._total_calls += 1

            if self._state == CircuitState.OPEN:
                if self._next_attempt_at is not None and self._clock() < self._next_attempt_at:
                    raise self._reject("timeout_not_elapsed")
                self._transition_to(CircuitState.HALF_OPEN)

            if self._state == CircuitState.HALF_OPEN:
                if self._trial_in_flight:
                    raise self._reject("trial_in_flight")
                self._trial_in_flight = True
                return True, self._generation

            return False, self._generation

    def _is_current(self, is_trial: bool, generation: int) -> bool:
        """Whether an outcome may move the state machine.

        Calls admitted before the last transition only update counters, and
        while HALF_OPEN only the trial decides.
        """
        if generation != self._generation:
            return False
        return is_trial or self._state != CircuitState.HALF_OPEN

    async def _record_success(self, is_trial: bool, generation: int) -> None:
        async with self._lock:
            self._success_count += 1
            if not self._is_current(is_trial, generation):
                logger.debug("circuit_stale_outcome", service=self.service_name, outcome="success")
                return
            if is_trial:
                self._trial_in_flight = False
            self._failure_count = 0
            if self._state == CircuitState.HALF_OPEN:
                self._transition_to(CircuitState.CLOSED)

    async def _record_failure(self, is_trial: bool, generation: int, error: Exception) -> None:
        async with self._lock:
            self._last_failure_at = self._clock()
            if self._is_current(is_trial, generation):
                if is_trial:
                    self._trial_in_flight = False
                self._failure_count += 1

                if self._state == CircuitState.HALF_OPEN:
                    self._transition_to(CircuitState.OPEN)
                elif self._failure_count >= self.failure_threshold:
                    self._transition_to(CircuitState.OPEN)

            logger.debug(
                "circuit_call_failed",
                service=self.service_name,
                failure_count=self._failure_count,
                state=self._state.value,
                stale=generation != self._generation,
                error=str(error),
            )
        if self._metrics:
            self._metrics.increment_circuit_breaker_failures(self.service_name)

    async def execute(self, operation: Operation) -> Any:
        """Run ``operation`` through the breaker.

        Args:
            operation: Zero-argument sync or async callable.

        Returns:
            The operation's result.

        Raises:
            CircuitOpenError: The call was rejected without running.
            Exception: Whatever the operation raised.
        """
        is_trial, generation = await self._admit()
        try:
            result = await call_maybe_async(operation)
        except asyncio.CancelledError:
            # A cancelled trial tells us nothing; let the next caller try.
            if is_trial and generation == self._generation:
                self._trial_in_flight = False
            raise
        except Exception as e:
            await self._record_failure(is_trial, generation, e)
            raise
        await self._record_success(is_trial, generation)
        return result


class CircuitBreakerRegistry:
    """Lazily creates one breaker per service key."""

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout_ms: float = 60000,
        clock: Callable[[], float] = time.monotonic,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.failure_threshold = failure_threshold
        self.timeout_ms = timeout_ms
        self._clock = clock
        self._metrics = metrics
        self._breakers: Dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

    def get(
        self,
        service_name: str,
        failure_threshold: Optional[int] = None,
        timeout_ms: Optional[float] = None,
    ) -> CircuitBreaker:
        """Return the breaker for ``service_name``, creating it on first use.

        Thresholds passed here update an existing breaker so that per-call
        configuration overrides take effect.
        """
        with self._lock:
            breaker = self._breakers.get(service_name)
            if breaker is None:
                breaker = CircuitBreaker(
                    service_name,
                    failure_threshold=failure_threshold or self.failure_threshold,
                    timeout_ms=self.timeout_ms if timeout_ms is None else timeout_ms,
                    clock=self._clock,
                    metrics=self._metrics,
                )
                self._breakers[service_name] = breaker
                logger.debug("circuit_breaker_created", service=service_name)
            else:
                if failure_threshold is not None:
                    breaker.failure_threshold = failure_threshold
                if timeout_ms is not None:
                    breaker.timeout_ms = timeout_ms
            return breaker

    def find(self, service_name: str) -> Optional[CircuitBreaker]:
        with self._lock:
            return self._breakers.get(service_name)

    def reset(self, service_name: str) -> bool:
        breaker = self.find(service_name)
        if breaker is None:
            return False
        breaker.reset()
        return True

    def names(self) -> List[str]:
        with self._lock:
            return list(self._breakers)

    def snapshot_all(self) -> Dict[str, CircuitBreakerSnapshot]:
        with self._lock:
            breakers = list(self._breakers.values())
        return {breaker.service_name: breaker.snapshot() for breaker in breakers}

    def open_count(self) -> int:
        return sum(
            1 for snapshot in self.snapshot_all().values() if snapshot.state == CircuitState.OPEN
        )
