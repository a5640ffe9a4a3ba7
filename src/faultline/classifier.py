"""Pattern-based error classification.

``ErrorClassifier`` turns any raw error (exception, string, mapping) plus an
optional request context into an ``ErrorClassification``. Matching is done
by pluggable ``PatternMatcher`` objects so alternative matchers can be
registered without touching the recovery code.
"""

import hashlib
import json
import re
import threading
import time
from typing import (
    Any,
    Callable,
    Dict,
    FrozenSet,
    Iterable,
    List,
    Mapping,
    Optional,
    Pattern,
    Tuple,
    Union,
)

from pydantic import BaseModel, ConfigDict, Field

from faultline.analysis import ErrorTrendAnalyzer, PatternAnalysis
from faultline.errors import ErrorInfo
from faultline.logging import get_logger
from faultline.metrics import MetricsCollector
from faultline.models import (
    BusinessImpact,
    ErrorClassification,
    ErrorSeverity,
    ErrorType,
    PatternMatch,
    TechnicalComplexity,
    UserImpact,
)
from faultline.scheduler import RepeatingTask

logger = get_logger(__name__, component="classifier")

MATCH_THRESHOLD = 0.5
API_BOOST = 1.2
API_BOOST_STATUSES = frozenset({400, 401, 403, 429, 500, 502, 503})
FALLBACK_CONFIDENCE = 0.1
FALLBACK_TAGS = ["unclassified", "fallback"]


# ============================================================================
# Matchers
# ============================================================================


class PatternMatcher:
    """Decides how strongly an error matches a rule.

    ``matches`` returns a strength in [0, 1]; the owning pattern scales its
    own confidence by it.
    """

    def matches(self, info: ErrorInfo) -> float:
        raise NotImplementedError

    def describe(self) -> str:
        return self.__class__.__name__


class RegexMatcher(PatternMatcher):
    """Case-insensitive regex search over ``message + stack + name``."""

    def __init__(self, pattern: Union[str, Pattern[str]]):
        if isinstance(pattern, str):
            pattern = re.compile(pattern, re.IGNORECASE)
        self.pattern = pattern

    def matches(self, info: ErrorInfo) -> float:
        return 1.0 if self.pattern.search(info.search_text) else 0.0

    def describe(self) -> str:
        return f"regex:{self.pattern.pattern}"


class SubstringMatcher(PatternMatcher):
    """Case-insensitive substring test over ``message + stack + name``."""

    def __init__(self, text: str):
        self.text = text.lower()

    def matches(self, info: ErrorInfo) -> float:
        return 1.0 if self.text in info.search_text else 0.0

    def describe(self) -> str:
        return f"substring:{self.text}"


class StatusCodeMatcher(PatternMatcher):
    """Matches errors carrying one of the given HTTP-like status codes."""

    def __init__(self, statuses: Iterable[int]):
        self.statuses: FrozenSet[int] = frozenset(statuses)

    def matches(self, info: ErrorInfo) -> float:
        return 1.0 if info.status in self.statuses else 0.0

    def describe(self) -> str:
        return f"status:{','.join(str(s) for s in sorted(self.statuses))}"


class ExceptionTypeMatcher(PatternMatcher):
    """Matches when the exception class or any base has one of the names."""

    def __init__(self, names: Iterable[str]):
        self.names: FrozenSet[str] = frozenset(names)

    def matches(self, info: ErrorInfo) -> float:
        if info.name in self.names:
            return 1.0
        return 1.0 if self.names.intersection(info.exception_types) else 0.0

    def describe(self) -> str:
        return f"exception:{','.join(sorted(self.names))}"


class ErrorCodeMatcher(PatternMatcher):
    """Matches symbolic error codes such as ``ECONNREFUSED``."""

    def __init__(self, codes: Iterable[str]):
        self.codes: FrozenSet[str] = frozenset(code.upper() for code in codes)

    def matches(self, info: ErrorInfo) -> float:
        return 1.0 if info.code and info.code.upper() in self.codes else 0.0

    def describe(self) -> str:
        return f"code:{','.join(sorted(self.codes))}"


class ErrorPattern(BaseModel):
    """A registered detection rule."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    id: str
    name: str
    description: str = ""
    matcher: PatternMatcher
    type: ErrorType
    severity: ErrorSeverity
    tags: Tuple[str, ...] = ()
    confidence: float = Field(ge=0.0, le=1.0)
    action_required: bool = False
    auto_recoverable: bool = True

    def score(self, info: ErrorInfo) -> float:
        """Confidence this pattern assigns to ``info`` (0 when no match)."""
        confidence = self.confidence * self.matcher.matches(info)
        if confidence and info.status in API_BOOST_STATUSES and "api" in self.tags:
            confidence *= API_BOOST
        return min(confidence, 1.0)


def default_patterns() -> List[ErrorPattern]:
    """Built-in patterns in registration (tie-break) order."""
    return [
        ErrorPattern(
            id="db_connection_timeout",
            name="Database Connection Timeout",
            description="Database connection timeout or unavailability",
            matcher=RegexMatcher(r"connection.*timeout|connect.*econnrefused|database.*unavailable"),
            type=ErrorType.DATABASE,
            severity=ErrorSeverity.HIGH,
            tags=("database", "connection", "timeout"),
            confidence=0.9,
            action_required=True,
        ),
        ErrorPattern(
            id="rate_limit_exceeded",
            name="API Rate Limit Exceeded",
            description="External API rate limit exceeded",
            matcher=RegexMatcher(r"rate.*limit|too.*many.*requests|429"),
            type=ErrorType.RATE_LIMIT,
            severity=ErrorSeverity.MEDIUM,
            tags=("api", "rate_limit", "throttling"),
            confidence=0.95,
        ),
        ErrorPattern(
            id="auth_token_expired",
            name="Authentication Token Expired",
            description="User authentication token has expired",
            matcher=RegexMatcher(r"token.*expired|unauthorized|401.*auth"),
            type=ErrorType.AUTHENTICATION,
            severity=ErrorSeverity.MEDIUM,
            tags=("authentication", "token", "expired"),
            confidence=0.85,
            action_required=True,
        ),
        ErrorPattern(
            id="memory_leak",
            name="Memory Leak Detection",
            description="Potential memory leak or high memory usage",
            matcher=RegexMatcher(r"out.*of.*memory|heap.*overflow|memory.*leak"),
            type=ErrorType.MEMORY_LEAK,
            severity=ErrorSeverity.CRITICAL,
            tags=("memory", "performance", "leak"),
            confidence=0.8,
            action_required=True,
            auto_recoverable=False,
        ),
        ErrorPattern(
            id="suspicious_activity",
            name="Suspicious Security Activity",
            description="Potential security threat detected",
            matcher=RegexMatcher(r"sql.*injection|xss.*attack|suspicious.*pattern"),
            type=ErrorType.SUSPICIOUS_ACTIVITY,
            severity=ErrorSeverity.CRITICAL,
            tags=("security", "attack", "malicious"),
            confidence=0.7,
            action_required=True,
            auto_recoverable=False,
        ),
        ErrorPattern(
            id="data_validation_failed",
            name="Data Validation Failure",
            description="Input data validation failed",
            matcher=RegexMatcher(r"validation.*failed|invalid.*input|schema.*error"),
            type=ErrorType.VALIDATION,
            severity=ErrorSeverity.LOW,
            tags=("validation", "input", "data"),
            confidence=0.9,
        ),
        ErrorPattern(
            id="network_connectivity",
            name="Network Connectivity Issue",
            description="Network connectivity or timeout issue",
            matcher=RegexMatcher(r"network.*error|connection.*refused|econnrefused|timeout.*error"),
            type=ErrorType.NETWORK,
            severity=ErrorSeverity.HIGH,
            tags=("network", "connectivity", "timeout"),
            confidence=0.85,
            action_required=True,
        ),
        ErrorPattern(
            id="workflow_execution_failed",
            name="Workflow Execution Failure",
            description="Workflow execution failed",
            matcher=RegexMatcher(r"workflow.*failed|n8n.*error|execution.*error"),
            type=ErrorType.WORKFLOW_EXECUTION,
            severity=ErrorSeverity.HIGH,
            tags=("workflow", "n8n", "execution"),
            confidence=0.9,
            action_required=True,
        ),
        ErrorPattern(
            id="access_forbidden",
            name="Access Forbidden",
            description="Caller is authenticated but not allowed",
            matcher=RegexMatcher(r"forbidden|permission.*denied|access.*denied|not\s+authorized"),
            type=ErrorType.AUTHORIZATION,
            severity=ErrorSeverity.MEDIUM,
            tags=("authorization", "access"),
            confidence=0.85,
            action_required=True,
        ),
        ErrorPattern(
            id="resource_not_found",
            name="Resource Not Found",
            description="Requested resource does not exist",
            matcher=RegexMatcher(r"not\s*found|does not exist|no such"),
            type=ErrorType.NOT_FOUND,
            severity=ErrorSeverity.LOW,
            tags=("not_found", "resource"),
            confidence=0.8,
        ),
        ErrorPattern(
            id="circuit_open",
            name="Circuit Breaker Open",
            description="Call rejected by an open circuit breaker",
            matcher=RegexMatcher(r"circuit.*open"),
            type=ErrorType.CIRCUIT_BREAKER,
            severity=ErrorSeverity.MEDIUM,
            tags=("circuit_breaker", "backpressure"),
            confidence=0.9,
        ),
        ErrorPattern(
            id="resource_exhausted",
            name="Resource Exhaustion",
            description="Connection pool, disk or similar capacity exhausted",
            matcher=RegexMatcher(r"too many connections|pool.*exhausted|resource.*exhausted|no space left"),
            type=ErrorType.RESOURCE_EXHAUSTION,
            severity=ErrorSeverity.HIGH,
            tags=("resource", "capacity"),
            confidence=0.8,
            action_required=True,
        ),
        ErrorPattern(
            id="request_timed_out",
            name="Request Timed Out",
            description="Operation exceeded its deadline",
            matcher=RegexMatcher(r"timed out|deadline exceeded"),
            type=ErrorType.TIMEOUT,
            severity=ErrorSeverity.MEDIUM,
            tags=("timeout",),
            confidence=0.75,
        ),
        ErrorPattern(
            id="connection_error_code",
            name="Connection Error Code",
            description="Socket-level error code",
            matcher=ErrorCodeMatcher(
                ["ECONNREFUSED", "ECONNRESET", "ETIMEDOUT", "EHOSTUNREACH", "ENETUNREACH", "EPIPE"]
            ),
            type=ErrorType.NETWORK,
            severity=ErrorSeverity.HIGH,
            tags=("network", "connectivity"),
            confidence=0.8,
            action_required=True,
        ),
        ErrorPattern(
            id="connection_exception",
            name="Connection Exception",
            description="Python connection error hierarchy",
            matcher=ExceptionTypeMatcher(["ConnectionError"]),
            type=ErrorType.NETWORK,
            severity=ErrorSeverity.HIGH,
            tags=("network", "connectivity"),
            confidence=0.8,
            action_required=True,
        ),
        ErrorPattern(
            id="timeout_exception",
            name="Timeout Exception",
            description="Python timeout error hierarchy",
            matcher=ExceptionTypeMatcher(["TimeoutError"]),
            type=ErrorType.TIMEOUT,
            severity=ErrorSeverity.MEDIUM,
            tags=("timeout",),
            confidence=0.75,
        ),
        ErrorPattern(
            id="permission_exception",
            name="Permission Exception",
            description="Operating system permission error",
            matcher=ExceptionTypeMatcher(["PermissionError"]),
            type=ErrorType.AUTHORIZATION,
            severity=ErrorSeverity.MEDIUM,
            tags=("authorization",),
            confidence=0.8,
            action_required=True,
        ),
        ErrorPattern(
            id="memory_exception",
            name="Memory Exception",
            description="Interpreter ran out of memory",
            matcher=ExceptionTypeMatcher(["MemoryError"]),
            type=ErrorType.MEMORY_LEAK,
            severity=ErrorSeverity.CRITICAL,
            tags=("memory", "performance"),
            confidence=0.8,
            action_required=True,
            auto_recoverable=False,
        ),
        ErrorPattern(
            id="model_validation_exception",
            name="Model Validation Exception",
            description="Schema validation error raised by a model layer",
            matcher=ExceptionTypeMatcher(["ValidationError"]),
            type=ErrorType.VALIDATION,
            severity=ErrorSeverity.LOW,
            tags=("validation", "data"),
            confidence=0.8,
        ),
        ErrorPattern(
            id="http_unauthorized",
            name="HTTP 401",
            matcher=StatusCodeMatcher([401]),
            type=ErrorType.AUTHENTICATION,
            severity=ErrorSeverity.MEDIUM,
            tags=("authentication",),
            confidence=0.8,
            action_required=True,
        ),
        ErrorPattern(
            id="http_forbidden",
            name="HTTP 403",
            matcher=StatusCodeMatcher([403]),
            type=ErrorType.AUTHORIZATION,
            severity=ErrorSeverity.MEDIUM,
            tags=("authorization",),
            confidence=0.8,
            action_required=True,
        ),
        ErrorPattern(
            id="http_not_found",
            name="HTTP 404",
            matcher=StatusCodeMatcher([404]),
            type=ErrorType.NOT_FOUND,
            severity=ErrorSeverity.LOW,
            tags=("not_found",),
            confidence=0.8,
        ),
        ErrorPattern(
            id="http_bad_request",
            name="HTTP 400/422",
            matcher=StatusCodeMatcher([400, 422]),
            type=ErrorType.VALIDATION,
            severity=ErrorSeverity.LOW,
            tags=("validation",),
            confidence=0.8,
        ),
        ErrorPattern(
            id="http_too_many_requests",
            name="HTTP 429",
            matcher=StatusCodeMatcher([429]),
            type=ErrorType.RATE_LIMIT,
            severity=ErrorSeverity.MEDIUM,
            tags=("rate_limit", "throttling"),
            confidence=0.8,
        ),
    ]


# ============================================================================
# Lookup tables
# ============================================================================

CATEGORY_MAP: Dict[ErrorType, str] = {
    ErrorType.AUTHENTICATION: "Security",
    ErrorType.AUTHORIZATION: "Security",
    ErrorType.SECURITY_BREACH: "Security",
    ErrorType.SUSPICIOUS_ACTIVITY: "Security",
    ErrorType.VALIDATION: "Data",
    ErrorType.NOT_FOUND: "Data",
    ErrorType.DATABASE: "Infrastructure",
    ErrorType.NETWORK: "Infrastructure",
    ErrorType.TIMEOUT: "Infrastructure",
    ErrorType.CIRCUIT_BREAKER: "Infrastructure",
    ErrorType.CONFIGURATION: "Infrastructure",
    ErrorType.RATE_LIMIT: "External Services",
    ErrorType.EXTERNAL_SERVICE: "External Services",
    ErrorType.WORKFLOW_EXECUTION: "Business Logic",
    ErrorType.MEMORY_LEAK: "Performance",
    ErrorType.RESOURCE_EXHAUSTION: "Performance",
    ErrorType.PERFORMANCE_DEGRADATION: "Performance",
}

BUSINESS_IMPACT_MAP: Dict[ErrorType, BusinessImpact] = {
    ErrorType.DATABASE: BusinessImpact.CRITICAL,
    ErrorType.SECURITY_BREACH: BusinessImpact.CRITICAL,
    ErrorType.SUSPICIOUS_ACTIVITY: BusinessImpact.HIGH,
    ErrorType.WORKFLOW_EXECUTION: BusinessImpact.HIGH,
    ErrorType.AUTHENTICATION: BusinessImpact.HIGH,
    ErrorType.MEMORY_LEAK: BusinessImpact.HIGH,
    ErrorType.NETWORK: BusinessImpact.MEDIUM,
    ErrorType.VALIDATION: BusinessImpact.LOW,
    ErrorType.NOT_FOUND: BusinessImpact.LOW,
    ErrorType.RATE_LIMIT: BusinessImpact.LOW,
}

USER_IMPACT_MAP: Dict[ErrorType, UserImpact] = {
    ErrorType.DATABASE: UserImpact.SEVERE,
    ErrorType.AUTHENTICATION: UserImpact.SEVERE,
    ErrorType.NETWORK: UserImpact.MODERATE,
    ErrorType.MEMORY_LEAK: UserImpact.MODERATE,
    ErrorType.VALIDATION: UserImpact.MINIMAL,
    ErrorType.NOT_FOUND: UserImpact.MINIMAL,
    ErrorType.RATE_LIMIT: UserImpact.MINIMAL,
}

COMPLEXITY_MAP: Dict[ErrorType, TechnicalComplexity] = {
    ErrorType.VALIDATION: TechnicalComplexity.SIMPLE,
    ErrorType.NOT_FOUND: TechnicalComplexity.SIMPLE,
    ErrorType.RATE_LIMIT: TechnicalComplexity.SIMPLE,
    ErrorType.AUTHENTICATION: TechnicalComplexity.MODERATE,
    ErrorType.NETWORK: TechnicalComplexity.MODERATE,
    ErrorType.DATABASE: TechnicalComplexity.COMPLEX,
    ErrorType.WORKFLOW_EXECUTION: TechnicalComplexity.COMPLEX,
    ErrorType.MEMORY_LEAK: TechnicalComplexity.EXPERT,
    ErrorType.SECURITY_BREACH: TechnicalComplexity.EXPERT,
    ErrorType.SUSPICIOUS_ACTIVITY: TechnicalComplexity.EXPERT,
}

RESOLUTION_MINUTES_MAP: Dict[ErrorType, int] = {
    ErrorType.VALIDATION: 15,
    ErrorType.NOT_FOUND: 15,
    ErrorType.AUTHENTICATION: 30,
    ErrorType.AUTHORIZATION: 30,
    ErrorType.RATE_LIMIT: 5,
    ErrorType.CIRCUIT_BREAKER: 5,
    ErrorType.NETWORK: 60,
    ErrorType.DATABASE: 120,
    ErrorType.WORKFLOW_EXECUTION: 45,
    ErrorType.MEMORY_LEAK: 240,
    ErrorType.SUSPICIOUS_ACTIVITY: 240,
    ErrorType.SECURITY_BREACH: 480,
}

DEFAULT_CATEGORY = "General"
DEFAULT_RESOLUTION_MINUTES = 60


def infer_severity(info: ErrorInfo) -> ErrorSeverity:
    """Severity for errors no pattern recognised."""
    if info.status is not None and info.status >= 500:
        return ErrorSeverity.HIGH
    if info.status is not None and info.status >= 400:
        return ErrorSeverity.MEDIUM
    message = info.message.lower()
    if "critical" in message:
        return ErrorSeverity.CRITICAL
    if "warning" in message:
        return ErrorSeverity.LOW
    return ErrorSeverity.MEDIUM


def _short_hash(payload: Mapping[str, Any], length: int) -> str:
    encoded = json.dumps(payload, sort_keys=True, default=str).encode("utf-8")
    return hashlib.sha256(encoded).hexdigest()[:length]


def _context_value(context: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if context.get(key) is not None:
            return context[key]
    return None


def generate_error_id(info: ErrorInfo, context: Optional[Mapping[str, Any]] = None) -> str:
    """Correlation id: same error and context always give the same id."""
    context = context or {}
    error_hash = _short_hash({"message": info.message, "name": info.name, "code": info.code}, 12)
    context_hash = _short_hash(
        {
            "user_id": _context_value(context, "user_id", "userId"),
            "action": context.get("action"),
            "resource": context.get("resource"),
        },
        6,
    )
    return f"err_{error_hash}_{context_hash}"


# ============================================================================
# Classifier
# ============================================================================


class ErrorClassifier:
    """Classifies errors against a registry of patterns.

    Example:
        >>> classifier = ErrorClassifier()
        >>> result = classifier.classify("429 too many requests")
        >>> result.type
        <ErrorType.RATE_LIMIT: 'rate_limit'>
    """

    def __init__(
        self,
        patterns: Optional[Iterable[ErrorPattern]] = None,
        analyzer: Optional[ErrorTrendAnalyzer] = None,
        metrics: Optional[MetricsCollector] = None,
        spike_threshold: int = 100,
        analysis_interval_seconds: float = 300.0,
        prune_interval_seconds: float = 3600.0,
        include_defaults: bool = True,
        on_analysis: Optional[Callable[[PatternAnalysis], Any]] = None,
    ):
        """Initialize classifier.

        Args:
            patterns: Extra patterns registered after the defaults.
            analyzer: Trend analyzer; a new one is created when omitted.
            metrics: Optional metrics collector.
            spike_threshold: Frequency that flags an anomaly.
            analysis_interval_seconds: Period of the trend analysis job.
            prune_interval_seconds: Period of the pruning job.
            include_defaults: Register ``default_patterns()`` first.
            on_analysis: Callback receiving each periodic analysis.
        """
        registered: List[ErrorPattern] = default_patterns() if include_defaults else []
        if patterns:
            registered.extend(patterns)
        self._patterns: Tuple[ErrorPattern, ...] = ()
        self._registry_lock = threading.Lock()
        for pattern in registered:
            self.add_pattern(pattern)

        self.analyzer = analyzer or ErrorTrendAnalyzer(spike_threshold=spike_threshold)
        self.metrics = metrics
        self.on_analysis = on_analysis
        self.last_analysis: Optional[PatternAnalysis] = None

        self._stats_lock = threading.Lock()
        self._total_errors = 0
        self._errors_by_type: Dict[str, int] = {}
        self._errors_by_severity: Dict[str, int] = {}
        self._average_detection_ms = 0.0

        self._analysis_task = RepeatingTask(
            "error_pattern_analysis", analysis_interval_seconds, self.analyze_patterns
        )
        self._prune_task = RepeatingTask("error_record_prune", prune_interval_seconds, self.analyzer.prune)

    # Registry

    def add_pattern(self, pattern: ErrorPattern) -> None:
        """Register a pattern, replacing any pattern with the same id in place."""
        with self._registry_lock:
            patterns = list(self._patterns)
            for index, existing in enumerate(patterns):
                if existing.id == pattern.id:
                    patterns[index] = pattern
                    break
            else:
                patterns.append(pattern)
            self._patterns = tuple(patterns)
        logger.debug("error_pattern_registered", pattern_id=pattern.id, error_type=pattern.type.value)

    def remove_pattern(self, pattern_id: str) -> bool:
        """Unregister a pattern. Returns False if no such pattern exists."""
        with self._registry_lock:
            remaining = tuple(p for p in self._patterns if p.id != pattern_id)
            removed = len(remaining) != len(self._patterns)
            self._patterns = remaining
        if removed:
            logger.info("error_pattern_removed", pattern_id=pattern_id)
        return removed

    def get_pattern(self, pattern_id: str) -> Optional[ErrorPattern]:
        for pattern in self._patterns:
            if pattern.id == pattern_id:
                return pattern
        return None

    def patterns(self) -> List[ErrorPattern]:
        return list(self._patterns)

    # Classification

    def classify(
        self,
        error: Any,
        context: Optional[Mapping[str, Any]] = None,
    ) -> ErrorClassification:
        """Classify an error. Never raises.

        Args:
            error: Exception, message string, mapping or any object.
            context: Optional request context (``user_id``, ``action``,
                ``resource``).

        Returns:
            The classification, or a low-confidence fallback if classifying
            failed internally.
        """
        start_time = time.perf_counter()
        try:
            info = ErrorInfo.from_error(error)
            classification = self._classify(info, context or {})
            self.analyzer.record(classification, message=info.message)
        except Exception as e:
            logger.error("error_classification_failed", error=str(e), exc_info=True)
            classification = self.fallback_classification(error, context)

        duration = time.perf_counter() - start_time
        try:
            self._update_detection_stats(classification, duration)
        except Exception as e:
            logger.warning("detection_stats_update_failed", error=str(e))

        logger.debug(
            "error_classified",
            error_id=classification.error_id,
            error_type=classification.type.value,
            severity=classification.severity.value,
            confidence=classification.confidence,
        )
        return classification

    def classify_info(
        self, error: Any, context: Optional[Mapping[str, Any]] = None
    ) -> Tuple[ErrorInfo, ErrorClassification]:
        """Classify and also return the normalized ``ErrorInfo``."""
        try:
            info = ErrorInfo.from_error(error)
        except Exception:
            info = ErrorInfo(message=str(error))
        return info, self.classify(info, context)

    def _classify(self, info: ErrorInfo, context: Mapping[str, Any]) -> ErrorClassification:
        matches: List[PatternMatch] = []
        best: Optional[ErrorPattern] = None
        best_confidence = 0.0
        tags: List[str] = []

        for pattern in self._patterns:
            confidence = pattern.score(info)
            if confidence <= MATCH_THRESHOLD:
                continue
            matches.append(
                PatternMatch(
                    pattern_id=pattern.id,
                    name=pattern.name,
                    type=pattern.type,
                    severity=pattern.severity,
                    confidence=confidence,
                )
            )
            for tag in pattern.tags:
                if tag not in tags:
                    tags.append(tag)
            if confidence > best_confidence:
                best_confidence = confidence
                best = pattern

        if info.status is not None and "http" not in tags:
            tags.append("http")
        if info.stack and "exception" not in tags:
            tags.append("exception")
        if info.code and "coded_error" not in tags:
            tags.append("coded_error")

        error_type = best.type if best else ErrorType.INTERNAL
        severity = best.severity if best else infer_severity(info)

        return ErrorClassification(
            error_id=generate_error_id(info, context),
            type=error_type,
            severity=severity,
            confidence=best_confidence,
            matched_patterns=matches,
            tags=tags,
            category=CATEGORY_MAP.get(error_type, DEFAULT_CATEGORY),
            business_impact=BUSINESS_IMPACT_MAP.get(error_type, BusinessImpact.MEDIUM),
            user_impact=USER_IMPACT_MAP.get(error_type, UserImpact.MODERATE),
            technical_complexity=COMPLEXITY_MAP.get(error_type, TechnicalComplexity.MODERATE),
            estimated_resolution_minutes=RESOLUTION_MINUTES_MAP.get(
                error_type, DEFAULT_RESOLUTION_MINUTES
            ),
            auto_recoverable=best.auto_recoverable if best else False,
            action_required=best.action_required if best else severity == ErrorSeverity.CRITICAL,
        )

    @staticmethod
    def fallback_classification(
        error: Any = None, context: Optional[Mapping[str, Any]] = None
    ) -> ErrorClassification:
        """Classification used when classifying itself failed."""
        try:
            error_id = "fallback_" + _short_hash({"error": str(error), "context": dict(context or {})}, 12)
        except Exception:
            error_id = f"fallback_{int(time.time() * 1000)}"
        return ErrorClassification(
            error_id=error_id,
            type=ErrorType.INTERNAL,
            severity=ErrorSeverity.MEDIUM,
            confidence=FALLBACK_CONFIDENCE,
            tags=list(FALLBACK_TAGS),
        )

    # Detection metrics

    def _update_detection_stats(self, classification: ErrorClassification, duration: float) -> None:
        detection_ms = duration * 1000
        with self._stats_lock:
            self._total_errors += 1
            type_key = classification.type.value
            severity_key = classification.severity.value
            self._errors_by_type[type_key] = self._errors_by_type.get(type_key, 0) + 1
            self._errors_by_severity[severity_key] = self._errors_by_severity.get(severity_key, 0) + 1
            self._average_detection_ms += (detection_ms - self._average_detection_ms) / self._total_errors

        if self.metrics:
            self.metrics.record_classification(
                classification.type.value,
                classification.severity.value,
                classification.confidence,
                duration,
                fallback=classification.is_fallback,
            )

    def get_detection_metrics(self) -> Dict[str, Any]:
        """Totals by type and severity plus the mean detection time."""
        with self._stats_lock:
            return {
                "total_errors": self._total_errors,
                "errors_by_type": dict(self._errors_by_type),
                "errors_by_severity": dict(self._errors_by_severity),
                "average_detection_time_ms": self._average_detection_ms,
                "registered_patterns": len(self._patterns),
            }

    # Trend analysis

    def analyze_patterns(self) -> PatternAnalysis:
        """Run one trend/anomaly analysis pass."""
        analysis = self.analyzer.analyze()
        self.last_analysis = analysis

        for anomaly in analysis.anomalies:
            logger.warning(
                "error_anomaly_detected",
                error_type=anomaly.error_type,
                frequency=anomaly.frequency,
                recommendation=anomaly.recommendation,
            )
            if self.metrics:
                self.metrics.increment_anomaly(anomaly.error_type)

        for prediction in analysis.predictions:
            logger.info(
                "error_prediction",
                error_type=prediction.error_type,
                probability=prediction.probability,
                timeframe=prediction.timeframe,
            )

        logger.info(
            "error_pattern_analysis_completed",
            trends=len(analysis.trends),
            anomalies=len(analysis.anomalies),
            predictions=len(analysis.predictions),
        )
        if self.on_analysis is not None:
            self.on_analysis(analysis)
        return analysis

    def start(self) -> None:
        """Start periodic analysis and pruning (requires a running loop)."""
        self._analysis_task.start()
        self._prune_task.start()

    async def stop(self) -> None:
        await self._analysis_task.stop()
        await self._prune_task.stop()

    @property
    def is_running(self) -> bool:
        return self._analysis_task.is_running or self._prune_task.is_running
