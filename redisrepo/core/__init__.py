"""
Core module: Type definitions, error hierarchy, and configuration.

This module provides the foundational abstractions for the repository:
- Result monad for status reporting
- Error hierarchy with stable error codes
- Connection configuration with validation
"""

from redisrepo.core.types import (
    Result,
    Ok,
    Err,
    Timestamp,
)
from redisrepo.core.errors import (
    ErrorCode,
    RedisRepoError,
    StoreConnectionError,
    CodecError,
    ScriptError,
    TransactionError,
    ConfigurationError,
)
from redisrepo.core.config import RedisConfig

__all__ = [
    "Result",
    "Ok",
    "Err",
    "Timestamp",
    "ErrorCode",
    "RedisRepoError",
    "StoreConnectionError",
    "CodecError",
    "ScriptError",
    "TransactionError",
    "ConfigurationError",
    "RedisConfig",
]
