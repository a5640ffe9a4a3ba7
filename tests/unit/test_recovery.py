"""Tests for the recovery orchestrator and retry policy."""

import asyncio

import pytest

from faultline.circuit_breaker import CircuitBreakerRegistry
from faultline.classifier import ErrorClassifier
from faultline.errors import FallbackUnavailableError, RecoveryExhaustedError
from faultline.health import HealthMonitor
from faultline.models import (
    CircuitState,
    ErrorClassification,
    ErrorSeverity,
    ErrorType,
    RecoveryConfig,
    RecoveryStrategy,
)
from faultline.recovery import (
    CachedFallback,
    FallbackResult,
    RecoveryOrchestrator,
    RetryPolicy,
    StaticFallback,
    plan_strategies,
    select_strategies,
)


class FlakyOperation:
    """Fails ``failures`` times, then returns ``result``."""

    def __init__(self, failures, result="ok", message="boom"):
        self.failures = failures
        self.result = result
        self.message = message
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise RuntimeError(self.message)
        return self.result


def classification(error_type, severity=ErrorSeverity.MEDIUM, confidence=0.9, tags=(), auto_recoverable=True):
    return ErrorClassification(
        error_id="err_000000000000_000000",
        type=error_type,
        severity=severity,
        confidence=confidence,
        tags=list(tags),
        auto_recoverable=auto_recoverable,
    )


@pytest.fixture
def orchestrator(recording_sleep):
    return RecoveryOrchestrator(sleep=recording_sleep)


class TestStrategySelection:
    """Tests for select_strategies and plan."""

    def test_throttled_plan(self):
        result = ErrorClassifier().classify("429 too many requests")

        assert result.type == ErrorType.RATE_LIMIT
        assert result.confidence >= 0.9
        assert select_strategies(result.type) == [
            RecoveryStrategy.RATE_LIMIT_BACKOFF,
            RecoveryStrategy.GRACEFUL_DEGRADATION,
        ]

    def test_database_plan(self):
        assert select_strategies(ErrorType.DATABASE) == [
            RecoveryStrategy.EXPONENTIAL_BACKOFF,
            RecoveryStrategy.CIRCUIT_BREAKER,
            RecoveryStrategy.RESOURCE_CLEANUP,
            RecoveryStrategy.GRACEFUL_DEGRADATION,
        ]

    def test_network_plan(self):
        assert select_strategies(ErrorType.NETWORK) == [
            RecoveryStrategy.EXPONENTIAL_BACKOFF,
            RecoveryStrategy.CIRCUIT_BREAKER,
            RecoveryStrategy.FAILOVER,
            RecoveryStrategy.GRACEFUL_DEGRADATION,
        ]

    def test_authentication_plan(self):
        assert select_strategies(ErrorType.AUTHENTICATION) == [
            RecoveryStrategy.IMMEDIATE_RETRY,
            RecoveryStrategy.HEALTH_CHECK_RECOVERY,
            RecoveryStrategy.GRACEFUL_DEGRADATION,
        ]

    def test_other_types_use_configured_order(self):
        order = [RecoveryStrategy.IMMEDIATE_RETRY]

        assert select_strategies(ErrorType.INTERNAL, order) == [
            RecoveryStrategy.IMMEDIATE_RETRY,
            RecoveryStrategy.GRACEFUL_DEGRADATION,
        ]
        assert select_strategies(ErrorType.TIMEOUT) == [
            RecoveryStrategy.EXPONENTIAL_BACKOFF,
            RecoveryStrategy.CIRCUIT_BREAKER,
            RecoveryStrategy.HEALTH_CHECK_RECOVERY,
            RecoveryStrategy.GRACEFUL_DEGRADATION,
        ]

    @pytest.mark.parametrize("error_type", [ErrorType.VALIDATION, ErrorType.AUTHORIZATION])
    def test_plan_never_retries_caller_errors(self, orchestrator, error_type):
        plan = orchestrator.plan(classification(error_type), RecoveryConfig())

        assert plan == [RecoveryStrategy.GRACEFUL_DEGRADATION]

    def test_plan_respects_enabled_strategies(self, orchestrator):
        config = RecoveryConfig(enabled_strategies=[RecoveryStrategy.CIRCUIT_BREAKER])

        plan = orchestrator.plan(classification(ErrorType.DATABASE), config)

        assert plan == [RecoveryStrategy.CIRCUIT_BREAKER]

    @pytest.mark.parametrize("error_type", list(ErrorType))
    def test_plan_strategies_matches_orchestrator(self, orchestrator, error_type):
        config = RecoveryConfig()

        assert plan_strategies(error_type) == orchestrator.plan(classification(error_type), config)


class TestRetryPolicy:
    """Tests for retry gating and alerting."""

    def test_never_retry(self):
        policy = RetryPolicy()

        assert not policy.should_retry(classification(ErrorType.VALIDATION, ErrorSeverity.LOW))
        assert not policy.should_retry(classification(ErrorType.AUTHORIZATION))

    def test_conditional_retry(self):
        policy = RetryPolicy()

        assert policy.should_retry(classification(ErrorType.RATE_LIMIT, confidence=0.95))
        assert not policy.should_retry(classification(ErrorType.RATE_LIMIT, confidence=0.5))
        assert not policy.should_retry(classification(ErrorType.NETWORK, ErrorSeverity.HIGH))
        assert policy.should_retry(classification(ErrorType.DATABASE, ErrorSeverity.LOW, confidence=0.6))

    def test_other_types_follow_auto_recoverable(self):
        policy = RetryPolicy()

        assert policy.should_retry(classification(ErrorType.TIMEOUT))
        assert not policy.should_retry(classification(ErrorType.TIMEOUT, auto_recoverable=False))
        assert not policy.should_retry(classification(ErrorType.TIMEOUT, ErrorSeverity.CRITICAL))

    def test_requires_alert(self):
        policy = RetryPolicy()

        assert policy.requires_alert(
            classification(ErrorType.SUSPICIOUS_ACTIVITY, ErrorSeverity.CRITICAL, tags=("security",))
        )
        assert not policy.requires_alert(
            classification(ErrorType.SUSPICIOUS_ACTIVITY, ErrorSeverity.HIGH, tags=("security",))
        )
        assert not policy.requires_alert(classification(ErrorType.MEMORY_LEAK, ErrorSeverity.CRITICAL))


class TestBackoff:
    """Tests for exponential backoff through attempt_recovery."""

    @pytest.mark.asyncio
    async def test_delays_double_up_to_max_retries(self, orchestrator, recording_sleep):
        operation = FlakyOperation(failures=100)

        with pytest.raises(RecoveryExhaustedError) as exc_info:
            await orchestrator.attempt_recovery("reports", operation, RuntimeError("boom"))

        # backoff (5 calls), circuit breaker (1), health check without a probe (1)
        assert recording_sleep.calls == [1.0, 2.0, 4.0, 8.0]
        assert operation.calls == 7
        assert str(exc_info.value) == "Recovery failed for reports after trying 4 strategies"
        assert isinstance(exc_info.value.last_error, FallbackUnavailableError)

    @pytest.mark.asyncio
    async def test_delays_are_capped(self, orchestrator, recording_sleep):
        config = {"max_retries": 4, "base_delay_ms": 1000, "max_delay_ms": 3000}

        with pytest.raises(RecoveryExhaustedError):
            await orchestrator.attempt_recovery("reports", FlakyOperation(100), RuntimeError("boom"), config=config)

        assert recording_sleep.calls == [1.0, 2.0, 3.0]

    @pytest.mark.asyncio
    async def test_succeeds_on_third_attempt(self, orchestrator, recording_sleep):
        operation = FlakyOperation(failures=2, result={"rows": 3})

        result = await orchestrator.attempt_recovery("reports", operation, RuntimeError("boom"))

        assert result == {"rows": 3}
        assert recording_sleep.calls == [1.0, 2.0]
        attempts = orchestrator.get_attempts("reports")
        assert len(attempts) == 1
        assert attempts[0].strategy == RecoveryStrategy.EXPONENTIAL_BACKOFF
        assert attempts[0].success is True

    @pytest.mark.asyncio
    async def test_one_attempt_recorded_per_strategy(self, orchestrator):
        with pytest.raises(RecoveryExhaustedError):
            await orchestrator.attempt_recovery("reports", FlakyOperation(100), RuntimeError("boom"))

        attempts = orchestrator.get_attempts("reports")
        assert [a.attempt_number for a in attempts] == [1, 2, 3, 4]
        assert [a.strategy for a in attempts] == [
            RecoveryStrategy.EXPONENTIAL_BACKOFF,
            RecoveryStrategy.CIRCUIT_BREAKER,
            RecoveryStrategy.HEALTH_CHECK_RECOVERY,
            RecoveryStrategy.GRACEFUL_DEGRADATION,
        ]
        assert not any(a.success for a in attempts)
        assert len({a.error_id for a in attempts}) == 1

    @pytest.mark.asyncio
    async def test_last_retry_error_is_reported(self, orchestrator, recording_sleep):
        operation = FlakyOperation(failures=100, message="still down")
        config = {"max_retries": 2, "enabled_strategies": [RecoveryStrategy.EXPONENTIAL_BACKOFF]}

        with pytest.raises(RecoveryExhaustedError) as exc_info:
            await orchestrator.attempt_recovery("reports", operation, RuntimeError("boom"), config=config)

        assert operation.calls == 2
        assert recording_sleep.calls == [1.0]
        assert isinstance(exc_info.value.last_error, RuntimeError)
        assert str(exc_info.value.last_error) == "still down"


class TestStrategies:
    """Tests for individual strategies."""

    @pytest.mark.asyncio
    async def test_throttled_waits_upstream_hint(self, orchestrator, recording_sleep):
        operation = FlakyOperation(failures=0)

        result = await orchestrator.attempt_recovery(
            "ads", operation, {"message": "rate limit exceeded", "retry_after": 2}
        )

        assert result == "ok"
        assert recording_sleep.calls == [2.0]
        assert orchestrator.get_attempts("ads")[0].strategy == RecoveryStrategy.RATE_LIMIT_BACKOFF

    @pytest.mark.asyncio
    async def test_throttled_default_wait(self, orchestrator, recording_sleep):
        await orchestrator.attempt_recovery("ads", FlakyOperation(0), "429 too many requests")

        assert recording_sleep.calls == [5.0]

    @pytest.mark.asyncio
    async def test_throttled_wait_is_capped(self, orchestrator, recording_sleep):
        await orchestrator.attempt_recovery(
            "ads", FlakyOperation(0), {"message": "rate limit exceeded", "retry_after": 3600}
        )

        assert recording_sleep.calls == [30.0]

    @pytest.mark.asyncio
    async def test_failover_to_secondary(self, orchestrator, recording_sleep):
        orchestrator.register_failover("crm", lambda: "secondary", target_name="crm-replica")

        result = await orchestrator.attempt_recovery(
            "crm", FlakyOperation(100), "network error: upstream reset", config={"max_retries": 1}
        )

        assert result == "secondary"
        assert recording_sleep.calls == [1.0]
        attempts = orchestrator.get_attempts("crm")
        assert attempts[-1].strategy == RecoveryStrategy.FAILOVER
        assert attempts[-1].success is True
        assert orchestrator.breakers.find("crm-replica") is not None

    @pytest.mark.asyncio
    async def test_bad_input_only_degrades(self, orchestrator):
        orchestrator.register_fallback("forms", StaticFallback({"fields": []}))
        operation = FlakyOperation(0)

        result = await orchestrator.attempt_recovery("forms", operation, ValueError("validation failed: email"))

        assert isinstance(result, FallbackResult)
        assert result.fallback_mode is True
        assert result.data == {"fields": []}
        assert result.source == "default"
        assert operation.calls == 0

    @pytest.mark.asyncio
    async def test_bad_input_without_fallback_is_exhausted(self, orchestrator):
        with pytest.raises(RecoveryExhaustedError) as exc_info:
            await orchestrator.attempt_recovery("forms", FlakyOperation(0), ValueError("invalid input"))

        assert exc_info.value.strategies_attempted == 1

    @pytest.mark.asyncio
    async def test_cached_fallback_serves_last_good_value(self, orchestrator):
        orchestrator.register_fallback("campaigns", CachedFallback(default={"campaigns": []}))

        assert await orchestrator.execute("campaigns", lambda: {"campaigns": [1, 2]}) == {"campaigns": [1, 2]}
        result = await orchestrator.attempt_recovery("campaigns", FlakyOperation(0), ValueError("invalid input"))

        assert result.source == "cache"
        assert result.data == {"campaigns": [1, 2]}
        assert result.cached_at is not None

    @pytest.mark.asyncio
    async def test_cached_fallback_default_and_expiry(self, clock):
        fallback = CachedFallback(default={"campaigns": []}, max_age_seconds=60, clock=clock)
        info = classification(ErrorType.INTERNAL)

        assert (await fallback.get("campaigns", info)).source == "default"
        fallback.update({"campaigns": [1]})
        assert (await fallback.get("campaigns", info)).source == "cache"
        clock.advance(61)
        assert (await fallback.get("campaigns", info)).source == "default"

    @pytest.mark.asyncio
    async def test_cached_fallback_without_data(self):
        with pytest.raises(FallbackUnavailableError):
            await CachedFallback().get("campaigns", classification(ErrorType.INTERNAL))

    @pytest.mark.asyncio
    async def test_resource_cleanup_runs_hooks(self, orchestrator, recording_sleep):
        cleaned = []
        orchestrator.register_cleanup("*", lambda: cleaned.append("global"))

        async def close_pool():
            cleaned.append("pool")

        orchestrator.register_cleanup("warehouse", close_pool)

        result = await orchestrator.attempt_recovery(
            "warehouse",
            FlakyOperation(failures=2, result="rows"),
            "connect ECONNREFUSED 10.0.0.5:5432",
            config={"max_retries": 1},
        )

        assert result == "rows"
        assert cleaned == ["global", "pool"]
        assert recording_sleep.calls == [2.0]
        assert orchestrator.get_attempts("warehouse")[-1].strategy == RecoveryStrategy.RESOURCE_CLEANUP

    @pytest.mark.asyncio
    async def test_health_check_waits_for_probe(self, recording_sleep):
        monitor = HealthMonitor(sleep=recording_sleep)
        probe_results = iter([False, True])
        monitor.register_service("sso", lambda: next(probe_results))
        orchestrator = RecoveryOrchestrator(health_monitor=monitor, sleep=recording_sleep)

        # immediate retry fails once, then health check recovery succeeds
        result = await orchestrator.attempt_recovery("sso", FlakyOperation(1), "JWT token expired")

        assert result == "ok"
        assert recording_sleep.calls == [5.0]
        assert orchestrator.get_attempts("sso")[-1].strategy == RecoveryStrategy.HEALTH_CHECK_RECOVERY

    @pytest.mark.asyncio
    async def test_breaker_strategy_opens_shared_breaker(self, recording_sleep, clock):
        breakers = CircuitBreakerRegistry(clock=clock)
        orchestrator = RecoveryOrchestrator(breakers=breakers, sleep=recording_sleep)
        config = {"max_retries": 1, "circuit_breaker_threshold": 1}

        with pytest.raises(RecoveryExhaustedError):
            await orchestrator.attempt_recovery("reports", FlakyOperation(100), RuntimeError("boom"), config=config)

        assert breakers.find("reports").state == CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_open_breaker_skips_direct_retries(self, recording_sleep, clock):
        breakers = CircuitBreakerRegistry(failure_threshold=1, timeout_ms=30000, clock=clock)
        orchestrator = RecoveryOrchestrator(breakers=breakers, sleep=recording_sleep)
        orchestrator.register_fallback("search", StaticFallback({"hits": []}))
        with pytest.raises(RuntimeError):
            await breakers.get("search").execute(FlakyOperation(1))
        operation = FlakyOperation(0)

        result = await orchestrator.attempt_recovery("search", operation, "network error: upstream reset")

        assert isinstance(result, FallbackResult)
        assert operation.calls == 0
        assert recording_sleep.calls == []
        attempts = orchestrator.get_attempts("search")
        assert [a.strategy for a in attempts] == [
            RecoveryStrategy.EXPONENTIAL_BACKOFF,
            RecoveryStrategy.CIRCUIT_BREAKER,
            RecoveryStrategy.FAILOVER,
            RecoveryStrategy.GRACEFUL_DEGRADATION,
        ]
        assert "Circuit breaker is open for search" in attempts[0].error

    @pytest.mark.asyncio
    async def test_direct_retries_resume_after_breaker_timeout(self, recording_sleep, clock):
        breakers = CircuitBreakerRegistry(failure_threshold=1, timeout_ms=30000, clock=clock)
        orchestrator = RecoveryOrchestrator(breakers=breakers, sleep=recording_sleep)
        with pytest.raises(RuntimeError):
            await breakers.get("search").execute(FlakyOperation(1))
        clock.advance(31)
        operation = FlakyOperation(0, result={"hits": [1]})

        result = await orchestrator.attempt_recovery("search", operation, "network error: upstream reset")

        assert result == {"hits": [1]}
        assert operation.calls == 1
        assert orchestrator.get_attempts("search")[0].strategy == RecoveryStrategy.EXPONENTIAL_BACKOFF


class TestOrchestration:
    """Tests for alerting, configuration and cancellation."""

    @pytest.mark.asyncio
    async def test_security_alert(self, recording_sleep, metrics):
        alerts = []
        orchestrator = RecoveryOrchestrator(
            sleep=recording_sleep,
            metrics=metrics,
            alert_handler=lambda service, info: alerts.append((service, info.type)),
        )

        await orchestrator.attempt_recovery("login", FlakyOperation(0), "possible SQL injection attempt")

        assert alerts == [("login", ErrorType.SUSPICIOUS_ACTIVITY)]
        assert (
            metrics.get_sample_value("faultline_security_alerts_total", {"error_type": "suspicious_activity"})
            == 1.0
        )

    @pytest.mark.asyncio
    async def test_existing_classification_is_not_counted_again(self, orchestrator):
        given = classification(ErrorType.RATE_LIMIT)

        result = await orchestrator.attempt_recovery(
            "ads", FlakyOperation(0), RuntimeError("429 too many requests"), classification=given
        )

        assert result == "ok"
        assert orchestrator.classifier.get_detection_metrics()["total_errors"] == 0
        assert orchestrator.get_attempts("ads")[0].error_id == given.error_id
        assert orchestrator.get_attempts("ads")[0].strategy == RecoveryStrategy.RATE_LIMIT_BACKOFF

    @pytest.mark.asyncio
    async def test_auto_recovery_disabled_reraises(self, orchestrator):
        error = RuntimeError("boom")
        operation = FlakyOperation(0)

        with pytest.raises(RuntimeError) as exc_info:
            await orchestrator.attempt_recovery("reports", operation, error, config={"enable_auto_recovery": False})

        assert exc_info.value is error
        assert operation.calls == 0

    @pytest.mark.asyncio
    async def test_update_config(self, orchestrator, recording_sleep):
        orchestrator.update_config({"max_retries": 2, "base_delay_ms": 10})

        await orchestrator.attempt_recovery("reports", FlakyOperation(1), RuntimeError("boom"))

        assert recording_sleep.calls == [0.01]

    def test_invalid_override_rejected(self, orchestrator):
        with pytest.raises(Exception):
            orchestrator.update_config({"max_retries": 0})

    @pytest.mark.asyncio
    async def test_cancellation_propagates(self):
        sleeping = asyncio.Event()

        async def blocking_sleep(seconds):
            sleeping.set()
            await asyncio.Event().wait()

        orchestrator = RecoveryOrchestrator(sleep=blocking_sleep)
        task = asyncio.create_task(
            orchestrator.attempt_recovery("reports", FlakyOperation(100), RuntimeError("boom"))
        )
        await sleeping.wait()
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        attempts = orchestrator.get_attempts("reports")
        assert attempts[-1].error == "cancelled"
        assert attempts[-1].success is False

    @pytest.mark.asyncio
    async def test_execute_success_skips_recovery(self, orchestrator):
        assert await orchestrator.execute("reports", FlakyOperation(0)) == "ok"
        assert orchestrator.get_attempts("reports") == []

    @pytest.mark.asyncio
    async def test_execute_failure_recovers(self, orchestrator):
        assert await orchestrator.execute("reports", FlakyOperation(1)) == "ok"
        assert orchestrator.get_attempts("reports")[0].success is True


class TestRecoveryMetrics:
    """Tests for get_recovery_metrics and Prometheus counters."""

    @pytest.mark.asyncio
    async def test_per_service_view(self, orchestrator):
        await orchestrator.attempt_recovery("reports", FlakyOperation(1), RuntimeError("boom"))

        view = orchestrator.get_recovery_metrics("reports")

        assert view["service"] == "reports"
        assert view["health"] is None
        assert view["circuit_breaker"] is None
        assert len(view["recovery_attempts"]) == 1

    @pytest.mark.asyncio
    async def test_summary(self, recording_sleep, clock):
        monitor = HealthMonitor(sleep=recording_sleep)
        monitor.register_service("crm", lambda: True)
        await monitor.probe("crm")
        breakers = CircuitBreakerRegistry(clock=clock)
        orchestrator = RecoveryOrchestrator(health_monitor=monitor, breakers=breakers, sleep=recording_sleep)

        with pytest.raises(RecoveryExhaustedError):
            await orchestrator.attempt_recovery(
                "reports",
                FlakyOperation(100),
                RuntimeError("boom"),
                config={"max_retries": 1, "circuit_breaker_threshold": 1},
            )

        summary = orchestrator.get_recovery_metrics()["summary"]

        assert summary["total_services"] == 2
        assert summary["healthy_services"] == 1
        assert summary["unhealthy_services"] == 0
        assert summary["circuit_breakers_open"] == 1
        assert summary["total_recovery_attempts"] == 4

    @pytest.mark.asyncio
    async def test_clear_history(self, orchestrator):
        await orchestrator.attempt_recovery("reports", FlakyOperation(1), RuntimeError("boom"))

        orchestrator.clear_history("reports")

        assert orchestrator.get_attempts("reports") == []

    @pytest.mark.asyncio
    async def test_prometheus_counters(self, recording_sleep, metrics):
        orchestrator = RecoveryOrchestrator(sleep=recording_sleep, metrics=metrics)

        await orchestrator.attempt_recovery("reports", FlakyOperation(1), RuntimeError("boom"))

        assert (
            metrics.get_sample_value(
                "faultline_recovery_attempts_total",
                {"service": "reports", "strategy": "exponential_backoff", "outcome": "success"},
            )
            == 1.0
        )
        assert metrics.get_sample_value("faultline_recoveries_total", {"service": "reports", "outcome": "success"}) == 1.0
