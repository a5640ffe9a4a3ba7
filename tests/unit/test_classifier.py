"""Tests for pattern-based error classification."""

import errno
import re
from concurrent.futures import ThreadPoolExecutor

import pytest
from pydantic import BaseModel, ValidationError

from faultline.classifier import (
    ErrorClassifier,
    ErrorPattern,
    PatternMatcher,
    RegexMatcher,
    StatusCodeMatcher,
    SubstringMatcher,
    default_patterns,
    generate_error_id,
    infer_severity,
)
from faultline.errors import ErrorInfo
from faultline.models import (
    BusinessImpact,
    ErrorSeverity,
    ErrorType,
    TechnicalComplexity,
    UserImpact,
)


def make_pattern(pattern_id, matcher, error_type=ErrorType.EXTERNAL_SERVICE, confidence=0.9, tags=()):
    return ErrorPattern(
        id=pattern_id,
        name=pattern_id,
        matcher=matcher,
        type=error_type,
        severity=ErrorSeverity.MEDIUM,
        tags=tags,
        confidence=confidence,
    )


class ExplodingMatcher(PatternMatcher):
    def matches(self, info):
        raise RuntimeError("matcher exploded")


@pytest.fixture
def classifier():
    return ErrorClassifier()


class TestDefaultPatterns:
    """Tests for the built-in pattern set."""

    def test_ids_are_unique(self):
        ids = [p.id for p in default_patterns()]
        assert len(ids) == len(set(ids))

    def test_throttling_message(self, classifier):
        result = classifier.classify("429 too many requests")

        assert result.type == ErrorType.RATE_LIMIT
        assert result.confidence >= 0.9
        assert result.severity == ErrorSeverity.MEDIUM
        assert result.matched_patterns[0].pattern_id == "rate_limit_exceeded"
        assert result.category == "External Services"

    def test_database_refused(self, classifier):
        result = classifier.classify("connect ECONNREFUSED 127.0.0.1:5432")

        assert result.type == ErrorType.DATABASE
        assert result.confidence == pytest.approx(0.9)
        assert result.business_impact == BusinessImpact.CRITICAL
        assert result.user_impact == UserImpact.SEVERE
        assert result.technical_complexity == TechnicalComplexity.COMPLEX
        assert result.estimated_resolution_minutes == 120
        # Both the database and the network pattern matched
        assert {m.pattern_id for m in result.matched_patterns} >= {
            "db_connection_timeout",
            "network_connectivity",
        }

    def test_refused_socket_exception(self, classifier):
        result = classifier.classify(ConnectionRefusedError(errno.ECONNREFUSED, "Connection refused"))

        assert result.type == ErrorType.NETWORK
        assert result.severity == ErrorSeverity.HIGH
        assert "coded_error" in result.tags
        assert "network" in result.tags

    def test_bad_input_message(self, classifier):
        result = classifier.classify(ValueError("validation failed: email is required"))

        assert result.type == ErrorType.VALIDATION
        assert result.severity == ErrorSeverity.LOW
        assert result.estimated_resolution_minutes == 15

    def test_expired_token(self, classifier):
        result = classifier.classify("JWT token expired")

        assert result.type == ErrorType.AUTHENTICATION
        assert result.action_required is True

    def test_security_pattern(self, classifier):
        result = classifier.classify("possible SQL injection in query parameter")

        assert result.type == ErrorType.SUSPICIOUS_ACTIVITY
        assert result.severity == ErrorSeverity.CRITICAL
        assert "security" in result.tags
        assert result.auto_recoverable is False

    def test_permission_exception(self, classifier):
        result = classifier.classify(PermissionError("nope"))

        assert result.type == ErrorType.AUTHORIZATION

    def test_missing_resource_status(self, classifier):
        result = classifier.classify(ErrorInfo(message="lookup failed", status=404))

        assert result.type == ErrorType.NOT_FOUND
        assert "http" in result.tags

    def test_pydantic_errors(self, classifier):
        class Payload(BaseModel):
            count: int

        try:
            Payload(count="many")
        except ValidationError as e:
            result = classifier.classify(e)

        assert result.type == ErrorType.VALIDATION
        assert "exception" in result.tags


class TestScoring:
    """Tests for confidence, threshold and tie-breaking rules."""

    def test_api_boost_is_capped(self, classifier):
        result = classifier.classify(ErrorInfo(message="rate limit hit", status=429))

        assert result.confidence == 1.0
        assert result.type == ErrorType.RATE_LIMIT

    def test_api_boost_only_for_listed_statuses(self):
        pattern = make_pattern("api_thing", SubstringMatcher("quota"), confidence=0.7, tags=("api",))

        boosted = pattern.score(ErrorInfo(message="quota", status=503))
        plain = pattern.score(ErrorInfo(message="quota", status=418))

        assert boosted == pytest.approx(0.84)
        assert plain == pytest.approx(0.7)

    def test_threshold_is_exclusive(self):
        classifier = ErrorClassifier(
            patterns=[make_pattern("weak", SubstringMatcher("boom"), confidence=0.5)],
            include_defaults=False,
        )

        result = classifier.classify("boom")

        assert result.type == ErrorType.INTERNAL
        assert result.matched_patterns == []
        assert result.confidence == 0.0

    def test_tie_goes_to_first_registered(self):
        classifier = ErrorClassifier(
            patterns=[
                make_pattern("first", SubstringMatcher("boom"), ErrorType.EXTERNAL_SERVICE),
                make_pattern("second", SubstringMatcher("boom"), ErrorType.CONFIGURATION),
            ],
            include_defaults=False,
        )

        result = classifier.classify("boom")

        assert result.type == ErrorType.EXTERNAL_SERVICE
        assert [m.pattern_id for m in result.matched_patterns] == ["first", "second"]

    def test_higher_confidence_wins_regardless_of_order(self):
        classifier = ErrorClassifier(
            patterns=[
                make_pattern("low", SubstringMatcher("boom"), ErrorType.EXTERNAL_SERVICE, confidence=0.6),
                make_pattern("high", SubstringMatcher("boom"), ErrorType.CONFIGURATION, confidence=0.8),
            ],
            include_defaults=False,
        )

        assert classifier.classify("boom").type == ErrorType.CONFIGURATION

    def test_regex_matcher_checks_name(self):
        matcher = RegexMatcher(r"gatewayerror")

        assert matcher.matches(ErrorInfo(message="x", name="GatewayError")) == 1.0
        assert matcher.matches(ErrorInfo(message="x")) == 0.0

    def test_status_matcher(self):
        matcher = StatusCodeMatcher([502, 504])

        assert matcher.matches(ErrorInfo(status=504)) == 1.0
        assert matcher.matches(ErrorInfo(status=500)) == 0.0
        assert matcher.describe() == "status:502,504"


class TestUnmatched:
    """Tests for errors no pattern recognises."""

    def test_defaults(self, classifier):
        result = classifier.classify("something odd happened")

        assert result.type == ErrorType.INTERNAL
        assert result.severity == ErrorSeverity.MEDIUM
        assert result.confidence == 0.0
        assert result.category == "General"
        assert result.estimated_resolution_minutes == 60
        assert result.auto_recoverable is False

    @pytest.mark.parametrize(
        "info,expected",
        [
            (ErrorInfo(message="upstream said no", status=503), ErrorSeverity.HIGH),
            (ErrorInfo(message="teapot", status=418), ErrorSeverity.MEDIUM),
            (ErrorInfo(message="critical failure in ledger"), ErrorSeverity.CRITICAL),
            (ErrorInfo(message="warning: disk nearly full"), ErrorSeverity.LOW),
            (ErrorInfo(message="odd"), ErrorSeverity.MEDIUM),
        ],
    )
    def test_infer_severity(self, info, expected):
        assert infer_severity(info) == expected

    def test_critical_requires_action(self, classifier):
        result = classifier.classify("critical failure in ledger")

        assert result.severity == ErrorSeverity.CRITICAL
        assert result.action_required is True


class TestFallback:
    """Tests for the never-raise guarantee."""

    def test_internal_failure_yields_fallback(self):
        classifier = ErrorClassifier(
            patterns=[make_pattern("broken", ExplodingMatcher())],
            include_defaults=False,
        )

        result = classifier.classify("anything")

        assert result.is_fallback
        assert result.type == ErrorType.INTERNAL
        assert result.severity == ErrorSeverity.MEDIUM
        assert result.confidence == 0.1
        assert result.tags == ["unclassified", "fallback"]
        assert result.error_id.startswith("fallback_")

    def test_fallback_is_counted(self):
        classifier = ErrorClassifier(
            patterns=[make_pattern("broken", ExplodingMatcher())],
            include_defaults=False,
        )

        classifier.classify("anything")

        assert classifier.get_detection_metrics()["total_errors"] == 1


class TestErrorId:
    """Tests for correlation id generation."""

    def test_format(self, classifier):
        result = classifier.classify("boom")

        assert re.fullmatch(r"err_[0-9a-f]{12}_[0-9a-f]{6}", result.error_id)

    def test_stable_for_equal_inputs(self, classifier):
        context = {"user_id": "u1", "action": "GET", "resource": "/api/items"}

        first = classifier.classify("boom", context)
        second = classifier.classify("boom", context)

        assert first.error_id == second.error_id

    def test_context_changes_suffix_only(self):
        info = ErrorInfo(message="boom")

        a = generate_error_id(info, {"user_id": "u1"})
        b = generate_error_id(info, {"user_id": "u2"})

        assert a != b
        assert a.rsplit("_", 1)[0] == b.rsplit("_", 1)[0]

    def test_camel_case_user_key(self):
        info = ErrorInfo(message="boom")

        assert generate_error_id(info, {"userId": "u1"}) == generate_error_id(info, {"user_id": "u1"})


class TestRegistry:
    """Tests for dynamic pattern registration."""

    def test_add_and_remove(self, classifier):
        count = len(classifier.patterns())
        pattern = make_pattern("quota_exceeded", SubstringMatcher("quota exceeded"), confidence=0.99)

        classifier.add_pattern(pattern)
        assert len(classifier.patterns()) == count + 1
        assert classifier.classify("quota exceeded for tenant").type == ErrorType.EXTERNAL_SERVICE

        assert classifier.remove_pattern("quota_exceeded") is True
        assert classifier.remove_pattern("quota_exceeded") is False
        assert classifier.get_pattern("quota_exceeded") is None

    def test_add_replaces_same_id_in_place(self, classifier):
        ids_before = [p.id for p in classifier.patterns()]
        replacement = make_pattern("rate_limit_exceeded", SubstringMatcher("never-matches-anything"))

        classifier.add_pattern(replacement)

        assert [p.id for p in classifier.patterns()] == ids_before
        assert classifier.get_pattern("rate_limit_exceeded") is replacement

    def test_registration_while_classifying(self, classifier):
        baseline = len(classifier.patterns())
        pattern = make_pattern(
            "zebra_stampede", SubstringMatcher("zebra stampede"), error_type=ErrorType.CONFIGURATION, confidence=0.99
        )

        def classify_many():
            return [classifier.classify("zebra stampede in tenant blue") for _ in range(300)]

        def toggle_pattern():
            for _ in range(300):
                classifier.add_pattern(pattern)
                classifier.remove_pattern("zebra_stampede")

        with ThreadPoolExecutor(max_workers=4) as pool:
            readers = [pool.submit(classify_many) for _ in range(3)]
            writer = pool.submit(toggle_pattern)
            writer.result()
            results = [r for future in readers for r in future.result()]

        assert len(results) == 900
        assert not any(r.is_fallback for r in results)
        for result in results:
            matched = {m.pattern_id for m in result.matched_patterns}
            if "zebra_stampede" in matched:
                assert result.type == ErrorType.CONFIGURATION
        assert len(classifier.patterns()) == baseline
        assert classifier.get_detection_metrics()["total_errors"] == 900


class TestDetectionMetrics:
    """Tests for detection statistics and pattern analysis."""

    def test_counts(self, classifier):
        classifier.classify("429 too many requests")
        classifier.classify("429 too many requests")
        classifier.classify("something odd happened")

        stats = classifier.get_detection_metrics()

        assert stats["total_errors"] == 3
        assert stats["errors_by_type"] == {"rate_limit": 2, "internal": 1}
        assert stats["errors_by_severity"] == {"medium": 3}
        assert stats["average_detection_time_ms"] >= 0.0
        assert stats["registered_patterns"] == len(classifier.patterns())

    def test_records_into_analyzer(self, classifier):
        classifier.classify("429 too many requests")

        assert classifier.analyzer.frequency("rate_limit") == 1
        assert classifier.analyzer.recent("rate_limit")[0].message == "429 too many requests"

    def test_analysis_flags_spikes(self, metrics):
        seen = []
        classifier = ErrorClassifier(metrics=metrics, spike_threshold=2, on_analysis=seen.append)
        for _ in range(3):
            classifier.classify("429 too many requests")

        analysis = classifier.analyze_patterns()

        assert [a.error_type for a in analysis.anomalies] == ["rate_limit"]
        assert classifier.last_analysis is analysis
        assert seen == [analysis]
        assert metrics.get_sample_value("faultline_error_anomalies_total", {"error_type": "rate_limit"}) == 1.0

    def test_records_classification_metrics(self, metrics):
        classifier = ErrorClassifier(metrics=metrics)

        classifier.classify("429 too many requests")

        assert (
            metrics.get_sample_value(
                "faultline_errors_classified_total", {"error_type": "rate_limit", "severity": "medium"}
            )
            == 1.0
        )

    @pytest.mark.asyncio
    async def test_background_jobs_start_and_stop(self, classifier):
        classifier.start()
        assert classifier.is_running

        await classifier.stop()
        assert not classifier.is_running
