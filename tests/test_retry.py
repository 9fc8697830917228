"""Tests for the retry policy."""

from __future__ import annotations

import pytest

from qbolink.errors import CallSite, ErrorClassifier
from qbolink.exceptions import ProviderHTTPError
from qbolink.resilience.retry import RetryPolicy

_classifier = ErrorClassifier()
SERVER_ERROR = _classifier.classify(ProviderHTTPError(503), CallSite.FETCH)
NOT_FOUND = _classifier.classify(ProviderHTTPError(404), CallSite.FETCH)


class TestRetryPolicy:
    def test_rejects_zero_attempts(self) -> None:
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)

    def test_should_retry_counts_first_attempt(self) -> None:
        policy = RetryPolicy(max_attempts=3)
        assert policy.should_retry(SERVER_ERROR, 1)
        assert policy.should_retry(SERVER_ERROR, 2)
        assert not policy.should_retry(SERVER_ERROR, 3)

    def test_non_retryable_never_retries(self) -> None:
        assert not RetryPolicy().should_retry(NOT_FOUND, 1)

    def test_exponential_delay_without_jitter(self) -> None:
        policy = RetryPolicy(base_delay=1.0, exponential_base=2.0, jitter=False)
        assert [policy.get_delay(n) for n in (1, 2, 3)] == [1.0, 2.0, 4.0]

    def test_delay_is_capped(self) -> None:
        policy = RetryPolicy(base_delay=10.0, max_delay=15.0, jitter=False)
        assert policy.get_delay(5) == 15.0

    def test_equal_jitter_bounds(self) -> None:
        policy = RetryPolicy(base_delay=4.0, jitter=True)
        for _ in range(50):
            assert 2.0 <= policy.get_delay(1) <= 4.0

    def test_retry_after_wins(self) -> None:
        rate_limited = _classifier.classify(
            ProviderHTTPError(429, headers={"Retry-After": "12"}),
            CallSite.FETCH,
        )
        policy = RetryPolicy(base_delay=1.0)
        assert policy.get_delay(1, rate_limited) == 12.0

    def test_retry_after_ignored_when_disabled(self) -> None:
        rate_limited = _classifier.classify(
            ProviderHTTPError(429, headers={"Retry-After": "12"}),
            CallSite.FETCH,
        )
        policy = RetryPolicy(base_delay=1.0, jitter=False, respect_retry_after=False)
        assert policy.get_delay(1, rate_limited) == 1.0
