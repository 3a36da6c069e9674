"""
Error Hierarchy

Every error raised by this library (rather than passed through from
redis-py) is a ``RedisRepoError`` subclass tagged with an ``ErrorCode``.
Timeouts and dropped connections are deliberately absent: they are
retried and then surface as the redis-py exception itself.

Each instance carries an ``error_id`` and a ``Timestamp`` for matching
log lines, an optional ``cause``, and a ``context`` dict of the values
involved.

Usage:
    try:
        found, value = ctx.try_get("counter", codec.INT64)
    except CodecError as e:
        match e.code:
            case ErrorCode.CODEC_DECODE_MISMATCH:
                handle_wrong_type(e.context["raw"])
            case ErrorCode.CODEC_UNSUPPORTED_TYPE:
                ...
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

from redisrepo.core.types import Timestamp


# =============================================================================
# ERROR CODE ENUMERATION
# =============================================================================
class ErrorCode(Enum):
    """
    Stable numeric codes, one per failure category.

    The thousands digit names the subsystem:
    - 1xxx: Connection errors
    - 2xxx: Codec errors
    - 3xxx: Script errors
    - 4xxx: Transaction errors
    - 9xxx: Configuration/internal errors
    """

    # Connection errors (1xxx)
    CONNECTION_FAILED = 1001
    POOL_CLOSED = 1002

    # Codec errors (2xxx)
    CODEC_UNSUPPORTED_TYPE = 2001
    CODEC_DECODE_MISMATCH = 2002
    CODEC_OUT_OF_RANGE = 2003

    # Script errors (3xxx)
    SCRIPT_EVICTED = 3001
    SCRIPT_INVALID_PARAMETER = 3002

    # Transaction errors (4xxx)
    TRANSACTION_COMMIT_FAILED = 4001
    TRANSACTION_INVALID_STATE = 4002
    TRANSACTION_NOT_EXECUTED = 4003
    TRANSACTION_STALE_RESULT = 4004

    # Configuration errors (9xxx)
    CONFIGURATION_INVALID = 9001


# =============================================================================
# BASE ERROR CLASS
# =============================================================================
@dataclass(eq=False)
class RedisRepoError(Exception):
    """Root of the hierarchy; catch this to handle any library error."""

    code: ErrorCode
    message: str
    error_id: str = field(default_factory=lambda: str(uuid4()))
    timestamp: Timestamp = field(default_factory=Timestamp.now)
    cause: Optional[BaseException] = None
    context: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        super().__init__(self.message)
        if self.cause is not None:
            self.__cause__ = self.cause

    def to_dict(self) -> dict[str, Any]:
        """Plain-dict form for JSON log payloads and error reports."""
        return {
            "error_id": self.error_id,
            "code": self.code.name,
            "code_value": self.code.value,
            "message": self.message,
            "timestamp_nanos": self.timestamp.nanos,
            "context": self.context,
        }

    def __str__(self) -> str:
        return f"[{self.code.name}] {self.message} (id={self.error_id[:8]})"

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"code={self.code.name}, "
            f"message={self.message!r}, "
            f"error_id={self.error_id!r})"
        )


# =============================================================================
# CONNECTION ERRORS
# =============================================================================
@dataclass(eq=False)
class StoreConnectionError(RedisRepoError):
    """
    Errors establishing or using pooled connections.

    Connection failures are fatal at construction: they are surfaced
    immediately and never retried.
    """

    @classmethod
    def connection_failed(
        cls,
        host: str,
        port: int,
        cause: Optional[BaseException] = None,
    ) -> StoreConnectionError:
        """Could not establish a connection to the server."""
        return cls(
            code=ErrorCode.CONNECTION_FAILED,
            message=(
                f"Failed connecting to Redis server at {host}:{port} "
                f"- please check connection details"
            ),
            cause=cause,
            context={"host": host, "port": port},
        )

    @classmethod
    def pool_closed(cls) -> StoreConnectionError:
        """Pool was shut down; handles are disposed."""
        return cls(
            code=ErrorCode.POOL_CLOSED,
            message="Connection pool is closed",
        )


# =============================================================================
# CODEC ERRORS
# =============================================================================
@dataclass(eq=False)
class CodecError(RedisRepoError):
    """
    Errors converting between Python scalars and wire values.

    A decode mismatch is distinct from "not found": it means the key
    exists but holds something that is not the requested type.
    """

    @classmethod
    def unsupported_type(cls, type_name: str) -> CodecError:
        """Requested type is outside the supported scalar set."""
        return cls(
            code=ErrorCode.CODEC_UNSUPPORTED_TYPE,
            message=f"Type not supported: {type_name}",
            context={"type": type_name},
        )

    @classmethod
    def decode_mismatch(
        cls,
        expected: str,
        raw: Any,
        cause: Optional[BaseException] = None,
    ) -> CodecError:
        """Present value cannot be parsed as the requested type."""
        return cls(
            code=ErrorCode.CODEC_DECODE_MISMATCH,
            message=f"Cannot decode {type(raw).__name__} value as {expected}",
            cause=cause,
            context={"expected": expected, "raw": repr(raw)[:100]},
        )

    @classmethod
    def out_of_range(cls, type_name: str, value: int) -> CodecError:
        """Integer does not fit the requested width."""
        return cls(
            code=ErrorCode.CODEC_OUT_OF_RANGE,
            message=f"Value {value} out of range for {type_name}",
            context={"type": type_name, "value": value},
        )


# =============================================================================
# SCRIPT ERRORS
# =============================================================================
@dataclass(eq=False)
class ScriptError(RedisRepoError):
    """Errors from server-side script preparation and evaluation."""

    @classmethod
    def evicted(
        cls,
        sha: str,
        cause: Optional[BaseException] = None,
    ) -> ScriptError:
        """Script missing again right after a reload."""
        return cls(
            code=ErrorCode.SCRIPT_EVICTED,
            message=f"Script {sha[:12]} not found on server after reload",
            cause=cause,
            context={"sha": sha},
        )

    @classmethod
    def invalid_parameter(cls, name: str, limit: int) -> ScriptError:
        """Script references a parameter slot that does not exist."""
        return cls(
            code=ErrorCode.SCRIPT_INVALID_PARAMETER,
            message=f"Script parameter @{name} is outside the {limit} available slots",
            context={"parameter": name, "limit": limit},
        )

    @classmethod
    def unknown_parameter(cls, name: str) -> ScriptError:
        return cls(
            code=ErrorCode.SCRIPT_INVALID_PARAMETER,
            message=f"Unknown script parameter name {name!r}; expected Key<n>, IntArg<n>, LongArg<n> or StringArg<n>",
            context={"parameter": name},
        )


# =============================================================================
# TRANSACTION ERRORS
# =============================================================================
@dataclass(eq=False)
class TransactionError(RedisRepoError):
    """
    Errors from the transactional batch engine.

    Commit failure is fatal: the atomic unit was not applied.
    """

    @classmethod
    def commit_failed(cls, operations: int) -> TransactionError:
        """Atomic submission reported non-commit (e.g. watched key changed)."""
        return cls(
            code=ErrorCode.TRANSACTION_COMMIT_FAILED,
            message="Could not commit transaction",
            context={"operations": operations},
        )

    @classmethod
    def invalid_state(cls, action: str, state: str) -> TransactionError:
        """Lifecycle violation (record/execute outside RECORDING)."""
        return cls(
            code=ErrorCode.TRANSACTION_INVALID_STATE,
            message=f"Cannot {action} while batch is {state}",
            context={"action": action, "state": state},
        )

    @classmethod
    def not_executed(cls, position: int) -> TransactionError:
        """Deferred result read before its batch executed."""
        return cls(
            code=ErrorCode.TRANSACTION_NOT_EXECUTED,
            message=f"Result #{position} is not available before execute()",
            context={"position": position},
        )

    @classmethod
    def stale_result(cls, position: int) -> TransactionError:
        """Deferred result belongs to a batch that has been restarted."""
        return cls(
            code=ErrorCode.TRANSACTION_STALE_RESULT,
            message=f"Result #{position} belongs to a previous run of this batch",
            context={"position": position},
        )


# =============================================================================
# CONFIGURATION ERRORS
# =============================================================================
@dataclass(eq=False)
class ConfigurationError(RedisRepoError, ValueError):
    """Invalid configuration detected at construction time."""

    @classmethod
    def invalid(cls, name: str, value: Any, reason: str) -> ConfigurationError:
        return cls(
            code=ErrorCode.CONFIGURATION_INVALID,
            message=f"Invalid {name}={value!r}: {reason}",
            context={"name": name, "value": repr(value), "reason": reason},
        )
