from unittest.mock import Mock

import pytest

from app.services.errors import ExternalServiceError, RetryableError
from app.services.retry import RetryPolicy, call_with_retry, exponential_backoff_with_jitter


def _policy(max_attempts=3):
    return RetryPolicy(max_attempts=max_attempts, backoff_fn=lambda attempt: attempt * 100)


class TestCallWithRetry:
    def test_returns_first_success(self):
        fn = Mock(return_value="ok")
        sleep = Mock()
        assert call_with_retry(fn, _policy(), sleep=sleep) == "ok"
        assert fn.call_count == 1
        sleep.assert_not_called()

    def test_retries_retryable_errors_until_success(self):
        fn = Mock(side_effect=[RetryableError("openai", "timeout"), RetryableError("openai", "503"), "ok"])
        sleep = Mock()
        on_retry = Mock()

        assert call_with_retry(fn, _policy(), sleep=sleep, on_retry=on_retry) == "ok"
        assert fn.call_count == 3
        assert [c.args[0] for c in sleep.call_args_list] == [0.1, 0.2]
        assert on_retry.call_count == 2

    def test_reraises_last_error_when_exhausted(self):
        fn = Mock(side_effect=RetryableError("openai", "timeout"))
        with pytest.raises(RetryableError):
            call_with_retry(fn, _policy(max_attempts=2), sleep=Mock())
        assert fn.call_count == 2

    def test_non_retryable_error_is_not_retried(self):
        fn = Mock(side_effect=ExternalServiceError("openai", "bad request", 400))
        with pytest.raises(ExternalServiceError):
            call_with_retry(fn, _policy(), sleep=Mock())
        assert fn.call_count == 1

    def test_zero_attempts_still_calls_once(self):
        fn = Mock(return_value="ok")
        assert call_with_retry(fn, _policy(max_attempts=0), sleep=Mock()) == "ok"


class TestBackoff:
    def test_exponential_without_jitter(self):
        backoff = exponential_backoff_with_jitter(250, rng=lambda: 0.5)
        assert [backoff(1), backoff(2), backoff(3)] == [250, 500, 1000]

    def test_jitter_bounds(self):
        low = exponential_backoff_with_jitter(1000, rng=lambda: 0.0)
        high = exponential_backoff_with_jitter(1000, rng=lambda: 1.0)
        assert low(1) == 800
        assert high(1) == 1200
