"""
Typed, Transactional Data Access over Redis

- Typed codec: Python scalars <-> Redis wire values, with explicit nulls
- Connection pool: fixed round-robin set of independent clients
- Retry policy: bounded attempts with linear backoff on transient errors
- Script cache: parameterized Lua scripts, reloaded on server eviction
- Transaction batch: MULTI/EXEC units with deferred typed results
"""

__version__ = "1.0.0"

# =============================================================================
# PUBLIC API EXPORTS
# =============================================================================
from redisrepo.core.types import Result, Ok, Err
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
from redisrepo.reliability.retry import RetryPolicy, run_with_retry, is_retryable
from redisrepo.storage import codec
from redisrepo.storage.enums import When, SortOrder, Exclude, SetOperation, Aggregation
from redisrepo.storage.pool import ConnectionPool
from redisrepo.storage.scripts import ScriptArguments, ScriptCache
from redisrepo.storage.transaction import BatchState, DeferredResult, TransactionBatch
from redisrepo.storage.context import RedisContext

__all__ = [
    "__version__",
    "Result",
    "Ok",
    "Err",
    "ErrorCode",
    "RedisRepoError",
    "StoreConnectionError",
    "CodecError",
    "ScriptError",
    "TransactionError",
    "ConfigurationError",
    "RedisConfig",
    "RetryPolicy",
    "run_with_retry",
    "is_retryable",
    "codec",
    "When",
    "SortOrder",
    "Exclude",
    "SetOperation",
    "Aggregation",
    "ConnectionPool",
    "ScriptArguments",
    "ScriptCache",
    "BatchState",
    "DeferredResult",
    "TransactionBatch",
    "RedisContext",
]
