"""
Observability module: structured logging with request-scoped context.
"""

from redisrepo.observability.logging import (
    LogLevel,
    JsonFormatter,
    log_context,
    current_log_context,
    setup_logging,
)

__all__ = [
    "LogLevel",
    "JsonFormatter",
    "log_context",
    "current_log_context",
    "setup_logging",
]
