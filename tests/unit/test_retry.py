import pytest

from photobooth.core.retry import RetryExhaustedError, RetryPolicy, linear_backoff


class Flaky:
    def __init__(self, failures: int, error: Exception = RuntimeError("boom")):
        self.failures = failures
        self.error = error
        self.calls = 0

    def __call__(self, value):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return value


def test_linear_backoff():
    backoff = linear_backoff(2.0)
    assert [backoff(n) for n in (1, 2, 3)] == [2.0, 4.0, 6.0]


def test_succeeds_after_transient_failure():
    sleeps = []
    func = Flaky(failures=1)
    policy = RetryPolicy(max_attempts=3, backoff=linear_backoff(2.0), sleep=sleeps.append)

    assert policy.call(func, "ok") == "ok"
    assert func.calls == 2
    assert sleeps == [2.0]


def test_exhaustion_reports_attempts_and_last_error():
    sleeps = []
    func = Flaky(failures=10, error=RuntimeError("upstream 503"))
    policy = RetryPolicy(max_attempts=3, backoff=linear_backoff(2.0), sleep=sleeps.append)

    with pytest.raises(RetryExhaustedError) as exc_info:
        policy.call(func, "never")

    assert func.calls == 3
    # No sleep after the final attempt
    assert sleeps == [2.0, 4.0]
    assert exc_info.value.attempts == 3
    assert str(exc_info.value.last_error) == "upstream 503"


def test_non_retryable_errors_propagate_immediately():
    sleeps = []
    func = Flaky(failures=1, error=KeyError("fatal"))
    policy = RetryPolicy(max_attempts=3, retry_on=(RuntimeError,), sleep=sleeps.append)

    with pytest.raises(KeyError):
        policy.call(func, "x")

    assert func.calls == 1
    assert sleeps == []


def test_rejects_zero_attempts():
    with pytest.raises(ValueError):
        RetryPolicy(max_attempts=0)
