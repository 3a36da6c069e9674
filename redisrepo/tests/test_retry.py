"""
Unit Tests: Retry Policy

Tests:
    - Transient vs permanent error classification
    - Exception groups
    - Linear backoff schedule
    - Exhaustion re-raises the original exception
"""

import pytest
from redis import exceptions as redis_errors

from redisrepo.core.errors import ConfigurationError
from redisrepo.reliability.retry import (
    RetryPolicy,
    calculate_backoff,
    is_retryable,
    run_with_retry,
)


class Flaky:
    """Callable failing with the given errors before succeeding."""

    def __init__(self, *errors, result="ok"):
        self.errors = list(errors)
        self.result = result
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.result


class TestClassification:
    """Tests for is_retryable."""

    @pytest.mark.parametrize("error", [
        TimeoutError(),
        redis_errors.TimeoutError(),
        redis_errors.ConnectionError(),
        redis_errors.BusyLoadingError(),
        redis_errors.TryAgainError(),
        redis_errors.ClusterDownError("CLUSTERDOWN"),
    ])
    def test_transient(self, error):
        assert is_retryable(error)

    @pytest.mark.parametrize("error", [
        redis_errors.ResponseError("WRONGTYPE"),
        redis_errors.NoScriptError(),
        ValueError(),
        MemoryError(),
    ])
    def test_permanent(self, error):
        assert not is_retryable(error)

    def test_group_with_transient_member(self):
        group = ExceptionGroup("batch", [ValueError(), redis_errors.TimeoutError()])
        assert is_retryable(group)

    def test_nested_group(self):
        inner = ExceptionGroup("inner", [redis_errors.ConnectionError()])
        assert is_retryable(ExceptionGroup("outer", [inner]))

    def test_group_with_fatal_member(self):
        """Memory exhaustion vetoes the whole group."""
        group = ExceptionGroup("batch", [redis_errors.TimeoutError(), MemoryError()])
        assert not is_retryable(group)

    def test_group_without_transient_member(self):
        assert not is_retryable(ExceptionGroup("batch", [ValueError()]))


class TestBackoff:
    """Tests for the linear schedule."""

    def test_linear(self):
        assert [calculate_backoff(i, 50) for i in range(4)] == [50.0, 100.0, 150.0, 200.0]


class TestRunWithRetry:
    """Tests for run_with_retry and RetryPolicy."""

    def test_success_first_try(self):
        sleeps = []
        op = Flaky()
        assert run_with_retry(op, 5, sleep=sleeps.append) == "ok"
        assert op.calls == 1
        assert sleeps == []

    def test_recovers_after_transient(self):
        sleeps = []
        op = Flaky(redis_errors.TimeoutError(), redis_errors.ConnectionError())
        assert run_with_retry(op, 5, sleep=sleeps.append) == "ok"
        assert op.calls == 3
        assert sleeps == [0.05, 0.1]

    def test_exhaustion_reraises_last(self):
        """Every attempt fails: the last exception surfaces unchanged."""
        sleeps = []
        errors = [redis_errors.TimeoutError(f"t{i}") for i in range(5)]
        op = Flaky(*errors)
        with pytest.raises(redis_errors.TimeoutError) as exc_info:
            run_with_retry(op, 5, sleep=sleeps.append)
        assert exc_info.value is errors[-1]
        assert op.calls == 5
        assert len(sleeps) == 4  # no sleep after the final attempt

    def test_permanent_not_retried(self):
        op = Flaky(redis_errors.ResponseError("WRONGTYPE"))
        with pytest.raises(redis_errors.ResponseError):
            run_with_retry(op, 5, sleep=lambda _: None)
        assert op.calls == 1

    def test_single_attempt(self):
        """A budget of one never retries, even on a timeout."""
        op = Flaky(redis_errors.TimeoutError())
        with pytest.raises(redis_errors.TimeoutError):
            RetryPolicy.no_retry().run(op)
        assert op.calls == 1

    def test_invalid_budget(self):
        with pytest.raises(ConfigurationError):
            run_with_retry(Flaky(), 0)
        with pytest.raises(ConfigurationError):
            RetryPolicy(max_attempts=0)

    def test_policy_presets(self):
        assert RetryPolicy.default().max_attempts == 5
        assert RetryPolicy.no_retry().max_attempts == 1
        assert RetryPolicy.for_transactions().max_attempts == 5

    def test_with_attempts_keeps_sleep(self):
        sleeps = []
        policy = RetryPolicy(max_attempts=1, sleep=sleeps.append).with_attempts(2)
        op = Flaky(redis_errors.TimeoutError())
        assert policy.run(op) == "ok"
        assert sleeps == [0.05]

    def test_logs_warning_then_error(self, caplog):
        op = Flaky(redis_errors.TimeoutError(), redis_errors.TimeoutError())
        with caplog.at_level("WARNING", logger="redisrepo.reliability.retry"):
            with pytest.raises(redis_errors.TimeoutError):
                run_with_retry(op, 2, sleep=lambda _: None)
        levels = [record.levelname for record in caplog.records]
        assert levels == ["WARNING", "ERROR"]
