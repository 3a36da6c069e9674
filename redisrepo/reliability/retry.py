"""
Retry Policy: Bounded Attempts with Linear Backoff

Implements the retry strategy used around every store call:
- Linear backoff: 50ms x (attempt + 1), no sleep after the final attempt
- 5 attempts for idempotent commands, 1 for non-idempotent ones
  (increment, decrement, append, atomic exchange)
- Only transient errors are retried; everything else propagates at once

The last exception is re-raised unchanged, so callers see the original
redis-py error type rather than a wrapper.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, TypeVar

from redis import exceptions as redis_errors

from redisrepo.core import constants as C
from redisrepo.core.errors import ConfigurationError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# redis.exceptions.BusyLoadingError subclasses ConnectionError
_TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    TimeoutError,
    redis_errors.TimeoutError,
    redis_errors.ConnectionError,
    redis_errors.TryAgainError,
    redis_errors.ClusterDownError,
)

_FATAL_ERRORS: tuple[type[BaseException], ...] = (MemoryError, RecursionError)


# =============================================================================
# CLASSIFICATION
# =============================================================================

def _group_members(group: BaseExceptionGroup) -> list[BaseException]:
    members: list[BaseException] = []
    for exc in group.exceptions:
        if isinstance(exc, BaseExceptionGroup):
            members.extend(_group_members(exc))
        else:
            members.append(exc)
    return members


def is_retryable(exc: BaseException) -> bool:
    """
    Decide whether a failed attempt may be tried again.

    An exception group is retryable when it holds at least one transient
    member and no fatal one.
    """
    if isinstance(exc, BaseExceptionGroup):
        members = _group_members(exc)
        if any(isinstance(m, _FATAL_ERRORS) for m in members):
            return False
        return any(isinstance(m, _TRANSIENT_ERRORS) for m in members)
    return isinstance(exc, _TRANSIENT_ERRORS)


def calculate_backoff(attempt: int, base_delay_ms: int) -> float:
    """Delay in milliseconds after failed attempt ``attempt`` (0-indexed)."""
    return float(base_delay_ms * (attempt + 1))


# =============================================================================
# EXECUTION
# =============================================================================

def run_with_retry(
    operation: Callable[[], T],
    max_attempts: int,
    *,
    base_delay_ms: int = C.RETRY_DELAY_MS,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Run ``operation`` up to ``max_attempts`` times.

    Args:
        operation: Zero-argument callable performing one attempt
        max_attempts: Total attempt budget (>= 1)
        base_delay_ms: Backoff unit
        sleep: Sleep function taking seconds (injectable for tests)

    Returns:
        The first successful result.

    Raises:
        ConfigurationError: max_attempts < 1
        Exception: the last attempt's exception, unchanged
    """
    if max_attempts < 1:
        raise ConfigurationError.invalid("max_attempts", max_attempts, "must be at least 1")

    attempt = 0
    while True:
        try:
            return operation()
        except Exception as e:
            if not is_retryable(e):
                raise
            if attempt + 1 >= max_attempts:
                logger.error(
                    f"Operation failed after {attempt + 1} attempt(s): {e!r}",
                    exc_info=True,
                )
                raise
            delay = calculate_backoff(attempt, base_delay_ms)
            logger.warning(
                f"Attempt {attempt + 1}/{max_attempts} failed, retrying in {delay:.0f}ms: {e!r}",
                exc_info=True,
            )
            sleep(delay / 1000)
            attempt += 1


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """
    Retry configuration.

    Example:
        >>> RetryPolicy.default().run(lambda: client.get(key))
        >>> RetryPolicy.no_retry().run(lambda: client.incrby(key, 1))
    """

    max_attempts: int = C.DEFAULT_RETRIES
    base_delay_ms: int = C.RETRY_DELAY_MS
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False, compare=False)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ConfigurationError.invalid(
                "max_attempts", self.max_attempts, "must be at least 1"
            )
        if self.base_delay_ms < 0:
            raise ConfigurationError.invalid(
                "base_delay_ms", self.base_delay_ms, "must be >= 0"
            )

    @classmethod
    def default(cls) -> RetryPolicy:
        """Policy for idempotent commands."""
        return cls()

    @classmethod
    def no_retry(cls) -> RetryPolicy:
        """Single attempt (for non-idempotent commands)."""
        return cls(max_attempts=C.NO_RETRIES)

    @classmethod
    def for_transactions(cls) -> RetryPolicy:
        return cls(max_attempts=C.TRANSACTION_ATTEMPTS)

    def with_attempts(self, max_attempts: int) -> RetryPolicy:
        return RetryPolicy(max_attempts, self.base_delay_ms, self.sleep)

    def run(self, operation: Callable[[], T]) -> T:
        return run_with_retry(
            operation,
            self.max_attempts,
            base_delay_ms=self.base_delay_ms,
            sleep=self.sleep,
        )
