"""Unit tests for RetryPolicy and retry_with_policy."""

from __future__ import annotations

import random
from unittest.mock import AsyncMock, MagicMock

import pytest

from calsync.sync.errors import (
    CalendarRequestError,
    CalendarTransportError,
    ErrorClassifier,
    ErrorKind,
    HttpStatusFailure,
    MessageFailure,
    RetryExhaustedError,
    TransportFailure,
)
from calsync.sync.retry import JITTER_MAX_MS, RetryPolicy, retry_with_policy

pytestmark = pytest.mark.unit


@pytest.fixture
def classifier() -> ErrorClassifier:
    return ErrorClassifier()


def _no_jitter() -> random.Random:
    rng = MagicMock(spec=random.Random)
    rng.uniform.return_value = 0
    return rng


# ---------------------------------------------------------------------------
# RetryPolicy.decide
# ---------------------------------------------------------------------------


class TestRetryPolicyDecide:
    def test_rate_limit_sequence(self, classifier):
        """Three consecutive 429s: retry, retry, give up."""
        policy = RetryPolicy(rng=_no_jitter())
        error = classifier.classify(HttpStatusFailure(status_code=429, message="Too Many Requests"))

        decisions = [policy.decide(error, attempt) for attempt in range(3)]

        assert [d.should_retry for d in decisions] == [True, True, False]
        assert decisions[0].delay_ms == 60_000
        assert decisions[1].delay_ms == 60_000  # 120000 capped
        assert decisions[2].delay_ms == 0
        assert [d.attempts_used for d in decisions] == [1, 2, 3]

    def test_exponential_growth_before_cap(self, classifier):
        policy = RetryPolicy(max_attempts=5, rng=_no_jitter())
        error = classifier.classify(MessageFailure(message="token_expired"))

        delays = [policy.decide(error, attempt).delay_ms for attempt in range(4)]

        assert delays == [5_000, 10_000, 20_000, 40_000]

    def test_default_base_delay_when_no_retry_after(self, classifier):
        policy = RetryPolicy(rng=_no_jitter())
        error = classifier.classify(HttpStatusFailure(status_code=401))
        assert error.retry_after_seconds is None

        assert policy.decide(error, 0).delay_ms == 5_000

    def test_jitter_is_bounded(self, classifier):
        policy = RetryPolicy(max_attempts=3, rng=random.Random(1234))
        error = classifier.classify(MessageFailure(message="token_expired"))

        for _ in range(50):
            decision = policy.decide(error, 0)
            assert 5_000 <= decision.delay_ms <= 5_000 + JITTER_MAX_MS

    def test_delay_never_exceeds_cap_and_never_decreases(self, classifier):
        policy = RetryPolicy(max_attempts=10, rng=random.Random(7))
        error = classifier.classify(TransportFailure(message="down"))

        delays = [policy.decide(error, attempt).delay_ms for attempt in range(9)]

        assert all(delay <= 60_000 for delay in delays)
        assert delays == sorted(delays)

    def test_custom_max_delay(self, classifier):
        policy = RetryPolicy(max_delay_ms=1_000, rng=_no_jitter())
        error = classifier.classify(TransportFailure(message="down"))
        assert policy.decide(error, 0).delay_ms == 1_000

    def test_non_recoverable_never_retries(self, classifier):
        policy = RetryPolicy()
        error = classifier.classify(MessageFailure(message="totally unexpected"))
        assert error.code == ErrorKind.UNKNOWN_ERROR

        decision = policy.decide(error, 0)

        assert decision.should_retry is False
        assert decision.delay_ms == 0
        assert decision.max_attempts == 0
        assert decision.attempts_used == 0

    def test_zero_max_attempts_never_retries(self, classifier):
        policy = RetryPolicy(max_attempts=0)
        error = classifier.classify(TransportFailure(message="down"))
        assert policy.decide(error, 0).should_retry is False

    def test_negative_attempt_rejected(self, classifier):
        policy = RetryPolicy()
        error = classifier.classify(TransportFailure(message="down"))
        with pytest.raises(ValueError):
            policy.decide(error, -1)

    def test_invalid_construction(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=-1)
        with pytest.raises(ValueError):
            RetryPolicy(max_delay_ms=0)


# ---------------------------------------------------------------------------
# retry_with_policy
# ---------------------------------------------------------------------------


class TestRetryWithPolicy:
    async def test_returns_first_success(self, classifier):
        operation = AsyncMock(return_value=["ok"])
        sleep = AsyncMock()

        result = await retry_with_policy(operation, classifier=classifier, sleep=sleep)

        assert result == ["ok"]
        operation.assert_awaited_once()
        sleep.assert_not_awaited()

    async def test_retries_then_succeeds(self, classifier):
        operation = AsyncMock(
            side_effect=[CalendarTransportError("down"), CalendarTransportError("down"), ["ok"]]
        )
        sleep = AsyncMock()
        on_retry = MagicMock()

        result = await retry_with_policy(
            operation,
            classifier=classifier,
            policy=RetryPolicy(rng=_no_jitter()),
            sleep=sleep,
            on_retry=on_retry,
        )

        assert result == ["ok"]
        assert operation.await_count == 3
        assert [call.args[0] for call in sleep.await_args_list] == [30.0, 60.0]
        assert on_retry.call_count == 2

    async def test_exhaustion_raises_with_classified_error(self, classifier):
        cause = CalendarRequestError(status_code=429, message="Too Many Requests")
        operation = AsyncMock(side_effect=cause)
        sleep = AsyncMock()

        with pytest.raises(RetryExhaustedError) as exc_info:
            await retry_with_policy(operation, classifier=classifier, sleep=sleep)

        assert exc_info.value.attempts == 3
        assert exc_info.value.error.code == ErrorKind.RATE_LIMIT
        assert exc_info.value.__cause__ is cause
        assert operation.await_count == 3
        assert sleep.await_count == 2

    async def test_non_recoverable_fails_immediately(self, classifier):
        operation = AsyncMock(side_effect=ValueError("bad payload"))
        sleep = AsyncMock()

        with pytest.raises(RetryExhaustedError) as exc_info:
            await retry_with_policy(operation, classifier=classifier, sleep=sleep)

        assert exc_info.value.attempts == 1
        assert exc_info.value.error.code == ErrorKind.UNKNOWN_ERROR
        sleep.assert_not_awaited()
