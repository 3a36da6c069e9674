"""
Small Value Types

- ``Ok`` / ``Err``: outcome of a probe that reports rather than raises
  (``ConnectionPool.health_check``)
- ``Timestamp``: wall-clock instant in nanoseconds, stamped on every
  ``RedisRepoError`` and used to time batch submissions
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Callable, ClassVar, Generic, Literal, TypeVar, Union

T = TypeVar("T")
E = TypeVar("E")
U = TypeVar("U")


# =============================================================================
# RESULT
# =============================================================================
@dataclass(frozen=True, slots=True)
class Ok(Generic[T]):
    """Successful outcome carrying ``value``."""

    value: T

    def is_ok(self) -> Literal[True]:
        return True

    def is_err(self) -> Literal[False]:
        return False

    def unwrap(self) -> T:
        return self.value

    def unwrap_or(self, default: Any) -> T:
        return self.value

    def map(self, fn: Callable[[T], U]) -> Ok[U]:
        return Ok(fn(self.value))


@dataclass(frozen=True, slots=True)
class Err(Generic[E]):
    """Failed outcome carrying a description in ``error``."""

    error: E

    def is_ok(self) -> Literal[False]:
        return False

    def is_err(self) -> Literal[True]:
        return True

    def unwrap(self) -> Any:
        """
        Raises:
            RuntimeError: always; check ``is_ok()`` first.
        """
        raise RuntimeError(f"unwrap() on a failed result: {self.error}")

    def unwrap_or(self, default: T) -> T:
        return default

    def map(self, fn: Callable[[Any], Any]) -> Err[E]:
        return self


Result = Union[Ok[T], Err[E]]


# =============================================================================
# TIMESTAMP
# =============================================================================
@dataclass(frozen=True, slots=True, order=True)
class Timestamp:
    """Nanoseconds since the Unix epoch."""

    nanos: int

    _PER_SECOND: ClassVar[int] = 1_000_000_000
    _PER_MILLI: ClassVar[int] = 1_000_000

    @classmethod
    def now(cls) -> Timestamp:
        return cls(time.time_ns())

    @property
    def seconds(self) -> float:
        return self.nanos / self._PER_SECOND

    @property
    def millis(self) -> int:
        """Whole milliseconds, truncated."""
        return self.nanos // self._PER_MILLI

    def elapsed_millis(self) -> float:
        return (time.time_ns() - self.nanos) / self._PER_MILLI
