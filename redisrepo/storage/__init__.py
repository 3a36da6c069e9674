"""
Storage Module: Typed Redis Access
==================================

Provides:
- Typed codec between Python scalars and Redis wire values
- Round-robin connection pool over independent redis-py clients
- Script cache with reload-on-eviction
- Transactional batch engine with deferred typed results
- Single-shot typed context tying them together

Example:
    >>> from redisrepo.storage import RedisContext, codec
    >>> ctx = RedisContext(RedisConfig(namespace="orders"))
    >>> ctx.set("pending", 4)
    >>> ctx.try_get("pending", codec.INT64)
    (True, 4)
"""

from redisrepo.storage import codec
from redisrepo.storage.codec import ScalarCodec, codec_for, codec_for_value
from redisrepo.storage.enums import (
    When,
    SortOrder,
    Exclude,
    SetOperation,
    Aggregation,
)
from redisrepo.storage.operations import Operation, OperationKind, namespace_key
from redisrepo.storage.pool import ConnectionPool, ConnectionSlot
from redisrepo.storage.scripts import (
    ScriptArguments,
    ScriptCache,
    ScriptEntry,
    PreparedScript,
    prepare_script,
)
from redisrepo.storage.transaction import BatchState, DeferredResult, TransactionBatch
from redisrepo.storage.context import RedisContext

__all__ = [
    "codec",
    "ScalarCodec",
    "codec_for",
    "codec_for_value",
    "When",
    "SortOrder",
    "Exclude",
    "SetOperation",
    "Aggregation",
    "Operation",
    "OperationKind",
    "namespace_key",
    "ConnectionPool",
    "ConnectionSlot",
    "ScriptArguments",
    "ScriptCache",
    "ScriptEntry",
    "PreparedScript",
    "prepare_script",
    "BatchState",
    "DeferredResult",
    "TransactionBatch",
    "RedisContext",
]
