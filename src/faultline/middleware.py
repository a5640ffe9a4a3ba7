"""Boundary middleware turning failures into HTTP-style responses.

``RecoveryMiddleware.wrap`` works with any async handler; on error it
classifies the failure, optionally runs recovery for routes bound to a
service, and renders an ``ErrorResponse``. ``RecoveryHTTPMiddleware`` plugs
the same logic into a Starlette application.
"""

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from faultline.circuit_breaker import CircuitBreakerRegistry
from faultline.classifier import ErrorClassifier
from faultline.errors import ErrorInfo, FallbackUnavailableError
from faultline.logging import get_logger, redact_sensitive
from faultline.metrics import MetricsCollector
from faultline.models import CircuitState, ErrorClassification, ErrorType, utcnow
from faultline.recovery import FallbackProvider, FallbackResult, RecoveryOrchestrator, RetryPolicy

logger = get_logger(__name__, component="middleware")

STATUS_MAP: Dict[ErrorType, int] = {
    ErrorType.RATE_LIMIT: 429,
    ErrorType.AUTHENTICATION: 401,
    ErrorType.AUTHORIZATION: 403,
    ErrorType.VALIDATION: 400,
    ErrorType.NOT_FOUND: 404,
    ErrorType.DATABASE: 503,
    ErrorType.NETWORK: 502,
}
DEFAULT_STATUS = 500
FALLBACK_HEADER = "X-Fallback-Mode"
GENERIC_MESSAGE = "An unexpected error occurred"
MAX_MESSAGE_LENGTH = 500

_DEPENDENCY_TYPES = frozenset(
    {ErrorType.DATABASE, ErrorType.NETWORK, ErrorType.EXTERNAL_SERVICE, ErrorType.TIMEOUT}
)

Handler = Callable[[Any], Awaitable[Any]]


class StrategyHint(str, Enum):
    """What the client should expect from the server side."""

    RETRY_AFTER = "retryAfter"
    CIRCUIT_BREAKER = "circuitBreaker"
    FALLBACK_DATA = "fallbackData"


class ErrorResponse(BaseModel):
    """JSON body rendered for a failed request."""

    model_config = ConfigDict(populate_by_name=True)

    error: bool = True
    message: str
    type: str
    severity: str
    error_id: str = Field(alias="errorId")
    timestamp: str
    estimated_resolution_time: int = Field(alias="estimatedResolutionTime")
    retry_after: Optional[int] = Field(default=None, alias="retryAfter")
    strategy: Optional[StrategyHint] = None
    fallback_mode: Optional[bool] = Field(default=None, alias="fallbackMode")

    def to_body(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class FallbackResponse(BaseModel):
    """Body served by critical endpoints in degraded mode."""

    model_config = ConfigDict(populate_by_name=True)

    error: bool = False
    fallback_mode: bool = Field(default=True, alias="fallbackMode")
    data: Any = None
    source: str
    message: str = "Serving fallback data"
    type: str
    error_id: str = Field(alias="errorId")
    timestamp: str

    def to_body(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


@dataclass
class MiddlewareResponse:
    """Protocol-neutral response produced by the middleware."""

    status_code: int
    body: Dict[str, Any]
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def is_fallback(self) -> bool:
        return bool(self.body.get("fallbackMode"))


def status_for(error_type: ErrorType) -> int:
    return STATUS_MAP.get(error_type, DEFAULT_STATUS)


class RecoveryMiddleware:
    """Classifies handler failures and renders well-formed responses.

    Example:
        >>> middleware = RecoveryMiddleware(classifier, orchestrator)
        >>> middleware.register_critical_endpoint("/api/dashboard", CachedFallback(default={}))
        >>> handler = middleware.wrap(get_dashboard, route="/api/dashboard")
        >>> response = await handler(request)
    """

    def __init__(
        self,
        classifier: Optional[ErrorClassifier] = None,
        orchestrator: Optional[RecoveryOrchestrator] = None,
        retry_policy: Optional[RetryPolicy] = None,
        metrics: Optional[MetricsCollector] = None,
        expose_internal_messages: bool = True,
        default_retry_after_seconds: float = 1.0,
        rate_limit_retry_after_seconds: float = 5.0,
    ):
        """Initialize middleware.

        Args:
            classifier: Classifier for handler errors. Defaults to the
                orchestrator's classifier.
            orchestrator: Recovery orchestrator for service-bound routes.
            retry_policy: Policy deciding retries and retry hints.
            metrics: Optional metrics collector.
            expose_internal_messages: Include redacted messages of 500
                responses; a generic message is used otherwise.
            default_retry_after_seconds: Hint for retryable errors without
                an upstream retry-after.
            rate_limit_retry_after_seconds: Hint for rate limited errors
                without an upstream retry-after.
        """
        if classifier is None:
            classifier = orchestrator.classifier if orchestrator else ErrorClassifier(metrics=metrics)
        self.classifier = classifier
        self.orchestrator = orchestrator
        self.retry_policy = retry_policy or (orchestrator.retry_policy if orchestrator else RetryPolicy())
        self.metrics = metrics
        self.expose_internal_messages = expose_internal_messages
        self.default_retry_after_seconds = default_retry_after_seconds
        self.rate_limit_retry_after_seconds = rate_limit_retry_after_seconds
        self._critical_endpoints: Dict[str, FallbackProvider] = {}
        self._route_services: Dict[str, str] = {}

    @property
    def breakers(self) -> Optional[CircuitBreakerRegistry]:
        return self.orchestrator.breakers if self.orchestrator else None

    def register_critical_endpoint(self, route: str, provider: FallbackProvider) -> None:
        """Serve tagged fallback data instead of an error on ``route``."""
        self._critical_endpoints = {**self._critical_endpoints, route: provider}
        logger.info("critical_endpoint_registered", route=route)

    def bind_service(self, route: str, service_name: str) -> None:
        """Run recovery against ``service_name`` when ``route`` fails."""
        self._route_services = {**self._route_services, route: service_name}

    def is_critical(self, route: Optional[str]) -> bool:
        return route is not None and route in self._critical_endpoints

    def wrap(
        self,
        handler: Handler,
        route: Optional[str] = None,
        service_name: Optional[str] = None,
    ) -> Handler:
        """Wrap an async ``handler(request)``; successes pass through unchanged."""

        async def wrapped(request: Any) -> Any:
            try:
                result = await handler(request)
            except Exception as e:
                return await self.handle_error(
                    e,
                    route=route,
                    service_name=service_name,
                    retry_operation=lambda: handler(request),
                )
            # Last good response feeds cached fallbacks
            if route is not None and route in self._critical_endpoints:
                self._critical_endpoints[route].update(result)
            return result

        wrapped.__name__ = getattr(handler, "__name__", "wrapped")
        wrapped.__doc__ = getattr(handler, "__doc__", None)
        return wrapped

    async def handle_error(
        self,
        error: BaseException,
        route: Optional[str] = None,
        service_name: Optional[str] = None,
        retry_operation: Optional[Callable[[], Awaitable[Any]]] = None,
        context: Optional[Mapping[str, Any]] = None,
    ) -> Any:
        """Turn an error into a response, recovering first when allowed.

        Returns:
            The recovered handler result, or a ``MiddlewareResponse``.
        """
        context = dict(context or {})
        if route is not None:
            context.setdefault("resource", route)
        info, classification = self.classifier.classify_info(error, context)
        service_name = service_name or (self._route_services.get(route) if route else None)

        logger.warning(
            "request_failed",
            route=route,
            service=service_name,
            error_id=classification.error_id,
            error_type=classification.type.value,
            severity=classification.severity.value,
        )

        if (
            retry_operation is not None
            and service_name is not None
            and self.orchestrator is not None
            and self.retry_policy.should_retry(classification)
        ):
            try:
                result = await self.orchestrator.attempt_recovery(
                    service_name, retry_operation, info, context=context, classification=classification
                )
            except Exception as e:
                logger.warning("request_recovery_failed", route=route, service=service_name, error=str(e))
            else:
                if isinstance(result, FallbackResult):
                    return self._fallback_response(result, classification)
                logger.info("request_recovered", route=route, service=service_name)
                return result

        if self.is_critical(route):
            provider = self._critical_endpoints[route]
            try:
                fallback = await provider.get(service_name or route, classification)
            except FallbackUnavailableError as e:
                logger.error("critical_fallback_unavailable", route=route, error=str(e))
            else:
                return self._fallback_response(fallback, classification)

        return self.build_error_response(info, classification, route=route, service_name=service_name)

    def _fallback_response(
        self, fallback: FallbackResult, classification: ErrorClassification
    ) -> MiddlewareResponse:
        body = FallbackResponse(
            data=fallback.data,
            source=fallback.source,
            type=classification.type.value,
            error_id=classification.error_id,
            timestamp=utcnow().isoformat(),
        ).to_body()
        if self.metrics:
            self.metrics.record_middleware_response(200, classification.type.value, True)
        logger.warning(
            "fallback_response_served",
            error_id=classification.error_id,
            source=fallback.source,
        )
        return MiddlewareResponse(status_code=200, body=body, headers={FALLBACK_HEADER: "true"})

    def _strategy_hint(
        self,
        info: ErrorInfo,
        classification: ErrorClassification,
        route: Optional[str],
        service_name: Optional[str],
    ) -> Tuple[Optional[StrategyHint], Optional[float]]:
        """Return ``(hint, retry_after_seconds)`` for a classified error."""
        breaker = None
        if service_name and self.breakers is not None:
            breaker = self.breakers.find(service_name)

        breaker_open = breaker is not None and breaker.state == CircuitState.OPEN
        if classification.type == ErrorType.CIRCUIT_BREAKER or breaker_open:
            retry_after = info.retry_after_seconds
            if retry_after is None and info.details.get("retry_after_seconds") is not None:
                retry_after = float(info.details["retry_after_seconds"])
            if retry_after is None and breaker_open:
                retry_after = breaker.retry_after_seconds()
            return StrategyHint.CIRCUIT_BREAKER, retry_after

        if self.retry_policy.should_retry(classification):
            retry_after = info.retry_after_seconds
            if retry_after is None:
                retry_after = (
                    self.rate_limit_retry_after_seconds
                    if classification.type == ErrorType.RATE_LIMIT
                    else self.default_retry_after_seconds
                )
            return StrategyHint.RETRY_AFTER, retry_after

        if classification.type in _DEPENDENCY_TYPES:
            return StrategyHint.CIRCUIT_BREAKER, None

        if self.orchestrator is not None and service_name and self.orchestrator.get_fallback(service_name):
            return StrategyHint.FALLBACK_DATA, None

        return None, None

    def build_error_response(
        self,
        info: ErrorInfo,
        classification: ErrorClassification,
        route: Optional[str] = None,
        service_name: Optional[str] = None,
    ) -> MiddlewareResponse:
        """Render the error body and status for a classification."""
        status_code = status_for(classification.type)
        if status_code >= 500 and not self.expose_internal_messages and classification.type == ErrorType.INTERNAL:
            message = GENERIC_MESSAGE
        else:
            message = redact_sensitive(info.message.splitlines()[0] if info.message else GENERIC_MESSAGE)
        message = message[:MAX_MESSAGE_LENGTH]

        hint, retry_after = self._strategy_hint(info, classification, route, service_name)
        response = ErrorResponse(
            message=message,
            type=classification.type.value,
            severity=classification.severity.value,
            error_id=classification.error_id,
            timestamp=utcnow().isoformat(),
            estimated_resolution_time=classification.estimated_resolution_minutes,
            retry_after=math.ceil(retry_after) if retry_after is not None else None,
            strategy=hint,
        )

        headers: Dict[str, str] = {}
        if response.retry_after is not None:
            headers["Retry-After"] = str(response.retry_after)
        if self.metrics:
            self.metrics.record_middleware_response(status_code, classification.type.value, False)
        return MiddlewareResponse(status_code=status_code, body=response.to_body(), headers=headers)


class RecoveryHTTPMiddleware(BaseHTTPMiddleware):
    """Starlette adapter: renders classified failures as JSON responses.

    The request body may already be consumed when the error surfaces, so this
    adapter does not re-run handlers; it classifies and responds (serving
    fallback data on critical endpoints).

    Example:
        >>> app.add_middleware(RecoveryHTTPMiddleware, recovery=RecoveryMiddleware(classifier))
    """

    def __init__(self, app, recovery: RecoveryMiddleware):
        super().__init__(app)
        self.recovery = recovery

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        try:
            return await call_next(request)
        except Exception as e:
            route = request.url.path
            rendered = await self.recovery.handle_error(
                e,
                route=route,
                context={"action": request.method, "resource": route},
            )
            if not isinstance(rendered, MiddlewareResponse):
                return rendered
            return JSONResponse(
                content=rendered.body,
                status_code=rendered.status_code,
                headers=rendered.headers,
            )
