"""
Reliability module: bounded retry with linear backoff.
"""

from redisrepo.reliability.retry import (
    RetryPolicy,
    run_with_retry,
    is_retryable,
    calculate_backoff,
)

__all__ = [
    "RetryPolicy",
    "run_with_retry",
    "is_retryable",
    "calculate_backoff",
]
