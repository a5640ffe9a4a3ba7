"""Exception hierarchy and error normalization for faultline.

Provides:
- Custom exception hierarchy for structured error handling
- ``ErrorInfo``, the single normalized shape every raw error is turned into
  before classification
"""

import errno
import json
import re
import traceback
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

# ============================================================================
# Exception Hierarchy
# ============================================================================


class FaultlineError(Exception):
    """Base exception for all faultline errors."""

    def __init__(
        self,
        message: str,
        code: str = "UNKNOWN",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}
        self.timestamp = datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "type": self.__class__.__name__,
            "message": self.message,
            "code": self.code,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
        }


class CircuitOpenError(FaultlineError):
    """Circuit breaker rejected the call without invoking the operation."""

    def __init__(
        self,
        message: str,
        service: str,
        retry_after_seconds: Optional[float] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        details = details or {}
        details["service"] = service
        if retry_after_seconds is not None:
            details["retry_after_seconds"] = retry_after_seconds
        super().__init__(message, code="CIRCUIT_OPEN", details=details)
        self.service = service
        self.retry_after_seconds = retry_after_seconds


class InvalidTransitionError(FaultlineError):
    """A circuit breaker was asked to move along an edge that does not exist."""

    def __init__(self, service: str, old_state: str, new_state: str):
        super().__init__(
            f"Invalid circuit transition for '{service}': {old_state} -> {new_state}",
            code="INVALID_TRANSITION",
            details={"service": service, "from": old_state, "to": new_state},
        )


class RecoveryExhaustedError(FaultlineError):
    """Every selected recovery strategy failed."""

    def __init__(
        self,
        service: str,
        strategies_attempted: int,
        last_error: Optional[BaseException] = None,
        error_id: Optional[str] = None,
    ):
        details: Dict[str, Any] = {
            "service": service,
            "strategies_attempted": strategies_attempted,
        }
        if last_error is not None:
            details["last_error"] = str(last_error)
        if error_id:
            details["error_id"] = error_id
        super().__init__(
            f"Recovery failed for {service} after trying {strategies_attempted} strategies",
            code="RECOVERY_EXHAUSTED",
            details=details,
        )
        self.service = service
        self.strategies_attempted = strategies_attempted
        self.last_error = last_error


class HealthCheckTimeoutError(FaultlineError):
    """A service did not become healthy in time."""

    def __init__(self, service: str, timeout_ms: float):
        super().__init__(
            f"Service {service} did not become healthy within {int(timeout_ms)}ms",
            code="HEALTH_CHECK_TIMEOUT",
            details={"service": service, "timeout_ms": timeout_ms},
        )
        self.service = service
        self.timeout_ms = timeout_ms


class FailoverUnavailableError(FaultlineError):
    """No secondary target is registered for a service."""

    def __init__(self, service: str):
        super().__init__(
            f"No failover target registered for {service}",
            code="FAILOVER_UNAVAILABLE",
            details={"service": service},
        )


class FallbackUnavailableError(FaultlineError):
    """No fallback data could be produced for a service."""

    def __init__(self, service: str, reason: str = "no fallback provider registered"):
        super().__init__(
            f"Graceful degradation unavailable for {service}: {reason}",
            code="FALLBACK_UNAVAILABLE",
            details={"service": service, "reason": reason},
        )


class ServiceNotRegisteredError(FaultlineError):
    """The health monitor has no probe for the requested service."""

    def __init__(self, service: str):
        super().__init__(
            f"Service '{service}' is not registered with the health monitor",
            code="SERVICE_NOT_REGISTERED",
            details={"service": service},
        )


class ConfigurationError(FaultlineError):
    """Configuration errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="CONFIGURATION_ERROR", details=details)


# ============================================================================
# Error Normalization
# ============================================================================

_STATUS_ATTRIBUTES = ("status_code", "status", "statusCode", "http_status")
_RETRY_AFTER_RE = re.compile(r"retry[\s_-]*after[\s:=]*(\d+(?:\.\d+)?)\s*(ms|s|seconds?)?", re.IGNORECASE)


class ErrorInfo(BaseModel):
    """Normalized description of a raw error.

    Everything downstream of the boundary (matchers, strategies, the
    middleware) reads this instead of poking at arbitrary error objects.
    """

    model_config = ConfigDict(frozen=True)

    message: str = ""
    name: Optional[str] = None
    code: Optional[str] = None
    status: Optional[int] = None
    stack: Optional[str] = None
    exception_types: Tuple[str, ...] = Field(default_factory=tuple)
    retry_after_seconds: Optional[float] = None
    details: Dict[str, Any] = Field(default_factory=dict)

    @property
    def search_text(self) -> str:
        """Lower-cased ``message stack name`` used by text matchers."""
        return f"{self.message} {self.stack or ''} {self.name or ''}".lower()

    @classmethod
    def from_error(cls, error: Any) -> "ErrorInfo":
        """Normalize an exception, string, mapping or arbitrary object."""
        if isinstance(error, ErrorInfo):
            return error
        if isinstance(error, BaseException):
            return cls._from_exception(error)
        if isinstance(error, str):
            return cls(message=error, retry_after_seconds=_retry_after_from_text(error))
        if isinstance(error, Mapping):
            return cls._from_mapping(error)
        return cls(message=str(error), name=type(error).__name__)

    @classmethod
    def _from_exception(cls, error: BaseException) -> "ErrorInfo":
        message = str(error) or type(error).__name__
        details: Dict[str, Any] = {}

        if isinstance(error, FaultlineError):
            message = error.message
            details = dict(error.details)

        code = _exception_code(error)
        status = _exception_status(error)

        stack = None
        if error.__traceback__ is not None:
            frames = traceback.extract_tb(error.__traceback__)
            stack = "\n".join(
                f"{frame.filename.rsplit('/', 1)[-1]}:{frame.lineno} in {frame.name}"
                for frame in frames
            )

        exception_types = tuple(
            klass.__name__
            for klass in type(error).__mro__
            if klass not in (object, BaseException)
        )

        return cls(
            message=message,
            name=type(error).__name__,
            code=code,
            status=status,
            stack=stack,
            exception_types=exception_types,
            retry_after_seconds=_exception_retry_after(error, details, message),
            details=details,
        )

    @classmethod
    def _from_mapping(cls, error: Mapping) -> "ErrorInfo":
        message = error.get("message")
        if not message:
            try:
                message = json.dumps(error, default=str, sort_keys=True)
            except (TypeError, ValueError):
                message = str(error)

        status = None
        for attr in _STATUS_ATTRIBUTES:
            status = _as_status(error.get(attr))
            if status is not None:
                break

        retry_after = _as_seconds(error.get("retry_after"))
        if retry_after is None and error.get("retry_after_ms") is not None:
            retry_after = _as_seconds(error.get("retry_after_ms"), millis=True)
        if retry_after is None:
            retry_after = _retry_after_from_text(str(message))

        code = error.get("code")
        return cls(
            message=str(message),
            name=error.get("name"),
            code=str(code) if code is not None else None,
            status=status,
            stack=error.get("stack"),
            retry_after_seconds=retry_after,
        )


def _exception_code(error: BaseException) -> Optional[str]:
    if isinstance(error, FaultlineError):
        return error.code
    code = getattr(error, "code", None)
    if code is not None:
        return str(code)
    if isinstance(error, OSError) and error.errno is not None:
        return errno.errorcode.get(error.errno, str(error.errno))
    return None


def _exception_status(error: BaseException) -> Optional[int]:
    for attr in _STATUS_ATTRIBUTES:
        status = _as_status(getattr(error, attr, None))
        if status is not None:
            return status
    # httpx.HTTPStatusError and friends carry the response
    response = getattr(error, "response", None)
    if response is not None:
        return _as_status(getattr(response, "status_code", None))
    return None


def _exception_retry_after(
    error: BaseException, details: Mapping[str, Any], message: str
) -> Optional[float]:
    retry_after = _as_seconds(getattr(error, "retry_after", None))
    if retry_after is not None:
        return retry_after
    retry_after = _as_seconds(getattr(error, "retry_after_seconds", None))
    if retry_after is not None:
        return retry_after
    if details.get("retry_after_ms") is not None:
        return _as_seconds(details["retry_after_ms"], millis=True)

    response = getattr(error, "response", None)
    headers = getattr(response, "headers", None) or getattr(error, "headers", None)
    if headers is not None:
        try:
            header = headers.get("retry-after") or headers.get("Retry-After")
        except AttributeError:
            header = None
        retry_after = _as_seconds(header)
        if retry_after is not None:
            return retry_after

    return _retry_after_from_text(message)


def _retry_after_from_text(text: str) -> Optional[float]:
    match = _RETRY_AFTER_RE.search(text)
    if not match:
        return None
    value = float(match.group(1))
    if (match.group(2) or "").lower() == "ms":
        value /= 1000.0
    return value


def _as_status(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    try:
        status = int(value)
    except (TypeError, ValueError):
        return None
    return status if 100 <= status <= 599 else None


def _as_seconds(value: Any, millis: bool = False) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        return None
    if millis:
        seconds /= 1000.0
    return seconds if seconds >= 0 else None
