"""Property-based tests for classification and backoff."""

from hypothesis import given, settings
from hypothesis import strategies as st

from faultline.classifier import ErrorClassifier, generate_error_id
from faultline.errors import ErrorInfo
from faultline.models import ErrorType, RecoveryConfig
from faultline.recovery import select_strategies

classifier = ErrorClassifier()

error_inputs = st.one_of(
    st.text(max_size=200),
    st.builds(
        ErrorInfo,
        message=st.text(max_size=100),
        status=st.one_of(st.none(), st.integers(min_value=100, max_value=599)),
        code=st.one_of(st.none(), st.sampled_from(["ECONNREFUSED", "ETIMEDOUT", "EPIPE", "E_UNKNOWN"])),
    ),
    st.dictionaries(
        st.sampled_from(["message", "status", "code", "retry_after"]),
        st.one_of(st.text(max_size=30), st.integers(), st.none()),
        max_size=4,
    ),
    st.integers(),
    st.none(),
)


@given(error_inputs)
@settings(max_examples=200, deadline=None)
def test_classification_is_always_well_formed(error):
    result = classifier.classify(error)

    assert 0.0 <= result.confidence <= 1.0
    assert result.type in ErrorType
    assert result.error_id
    for match in result.matched_patterns:
        assert match.confidence > 0.5


@given(st.text(max_size=100), st.text(max_size=20), st.text(max_size=20))
@settings(deadline=None)
def test_error_id_is_deterministic(message, user_id, action):
    info = ErrorInfo(message=message)
    context = {"user_id": user_id, "action": action}

    assert generate_error_id(info, context) == generate_error_id(info, dict(context))


@given(
    base=st.integers(min_value=0, max_value=10_000),
    extra=st.integers(min_value=0, max_value=100_000),
    multiplier=st.floats(min_value=1.0, max_value=4.0),
    attempts=st.integers(min_value=1, max_value=20),
)
def test_backoff_is_monotonic_and_capped(base, extra, multiplier, attempts):
    config = RecoveryConfig(base_delay_ms=base, max_delay_ms=base + extra, backoff_multiplier=multiplier)

    delays = [config.backoff_delay_ms(attempt) for attempt in range(1, attempts + 1)]

    assert delays == sorted(delays)
    assert all(delay <= config.max_delay_ms for delay in delays)


@given(st.sampled_from(list(ErrorType)))
def test_every_plan_ends_in_graceful_degradation(error_type):
    plan = select_strategies(error_type)

    assert plan
    assert plan[-1].value == "graceful_degradation"
    assert len(set(plan)) == len(plan)
