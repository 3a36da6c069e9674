"""
Typed Redis Context
===================

Single-shot, retry-wrapped typed access to a Redis database through a
round-robin connection pool. Each call takes the next pooled connection
per attempt, so a retried command may run on a different connection.

Retry Budget:
-------------
| Operation                                         | Attempts         |
|---------------------------------------------------|------------------|
| reads, set, delete, TTL, lists, sets, sorted sets | default_retries  |
| increment, decrement, set_or_append, exchange     | 1 (not retried)  |
| run_script                                        | default_retries  |

Namespacing:
------------
With a namespace every key becomes ``ns=<namespace>:k=<key>``; keys
returned by ``get_keys`` have the prefix stripped again.

Example:
    >>> with RedisContext(RedisConfig(namespace="billing")) as ctx:
    ...     ctx.set("invoices", 3)
    ...     ctx.increment("invoices")
    ...     found, value = ctx.try_get("invoices", codec.INT64)
"""

from __future__ import annotations

import logging
import time
from datetime import timedelta
from typing import Any, Callable, Optional, Sequence, TypeVar, Union

from redisrepo.core import constants as C
from redisrepo.core.config import RedisConfig
from redisrepo.core.errors import CodecError
from redisrepo.core.types import Result
from redisrepo.reliability.retry import RetryPolicy
from redisrepo.storage import codec
from redisrepo.storage import operations as ops
from redisrepo.storage.codec import ScalarCodec
from redisrepo.storage.enums import Exclude, SetOperation, SortOrder, When, score_bounds
from redisrepo.storage.pool import ClientFactory, ConnectionPool
from redisrepo.storage.scripts import ScriptArguments, ScriptCache
from redisrepo.storage.transaction import TransactionBatch

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RedisContext:
    """
    Typed data-access facade over a ``ConnectionPool``.

    Thread-safe: share one context across worker threads.
    """

    __slots__ = ("_config", "_namespace", "_pool", "_owns_pool", "_scripts", "_retry", "_single")

    def __init__(
        self,
        config: Optional[RedisConfig] = None,
        *,
        namespace: Optional[str] = None,
        pool: Optional[ConnectionPool] = None,
        client_factory: Optional[ClientFactory] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """
        Args:
            config: Connection settings (defaults to ``RedisConfig()``).
            namespace: Overrides ``config.namespace``.
            pool: Use an existing pool instead of building one; the
                context will not close a pool it did not create.
            client_factory: Passed to the pool when one is built.
            sleep: Backoff sleep (injectable for tests).

        Raises:
            ConfigurationError: invalid pool size.
            StoreConnectionError: a connection failed at construction.
        """
        self._config = config or (pool.config if pool is not None else RedisConfig())
        self._namespace = self._config.namespace if namespace is None else namespace
        self._owns_pool = pool is None
        self._pool = pool or ConnectionPool(self._config, client_factory=client_factory)
        self._scripts = ScriptCache()
        self._retry = RetryPolicy(self._config.default_retries, self._config.retry_delay_ms, sleep)
        self._single = RetryPolicy(C.NO_RETRIES, self._config.retry_delay_ms, sleep)

    # -------------------------------------------------------------------------
    # PLUMBING
    # -------------------------------------------------------------------------

    @property
    def namespace(self) -> str:
        return self._namespace

    @property
    def pool(self) -> ConnectionPool:
        return self._pool

    @property
    def scripts(self) -> ScriptCache:
        return self._scripts

    def key(self, key: str) -> str:
        """Apply the namespace convention to ``key``."""
        return ops.namespace_key(self._namespace, key)

    def _run(self, operation: ops.Operation, policy: Optional[RetryPolicy] = None) -> Any:
        return (policy or self._retry).run(lambda: operation.run(self._pool.acquire()))

    def _call(self, command: Callable[[Any], T], policy: Optional[RetryPolicy] = None) -> T:
        return (policy or self._retry).run(lambda: command(self._pool.acquire()))

    # -------------------------------------------------------------------------
    # STRINGS
    # -------------------------------------------------------------------------

    def try_get(self, key: str, value_codec: ScalarCodec[T] = codec.STRING) -> tuple[bool, Optional[T]]:
        """
        Look up ``key``.

        Returns:
            ``(False, default)`` when absent, ``(True, None)`` for a stored
            null on a nullable codec, else ``(True, value)``.

        Raises:
            CodecError: the stored value is not of the requested type.
        """
        return self._run(ops.try_get_value(self.key(key), value_codec))

    def get(self, key: str, value_codec: ScalarCodec[T] = codec.STRING) -> Optional[T]:
        """Value, or the codec default when absent."""
        return self._run(ops.get_value(self.key(key), value_codec))

    def set(
        self,
        key: str,
        value: Any,
        expiry: Optional[timedelta] = None,
        value_codec: Optional[ScalarCodec[Any]] = None,
        when: When = When.ALWAYS,
    ) -> bool:
        """
        Store ``value``; the codec is inferred from the value when omitted.

        Returns:
            Whether the value was written (always True for ``When.ALWAYS``).
        """
        return self._run(ops.set_value(self.key(key), value, value_codec, expiry, when))

    def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return self._run(ops.delete([self.key(k) for k in keys]))

    def set_or_append(self, key: str, value: str) -> int:
        """APPEND (single attempt); returns the new length."""
        return self._run(ops.append(self.key(key), value), self._single)

    def increment(self, key: str, amount: Union[int, float] = 1) -> Union[int, float]:
        """Single attempt: a retried increment could apply twice."""
        return self._run(ops.increment(self.key(key), amount), self._single)

    def decrement(self, key: str, amount: Union[int, float] = 1) -> Union[int, float]:
        return self._run(ops.decrement(self.key(key), amount), self._single)

    def atomic_exchange(
        self,
        key: str,
        value: Any,
        value_codec: Optional[ScalarCodec[Any]] = None,
    ) -> Any:
        """Swap in ``value`` (single attempt); returns the previous value or the default."""
        return self._run(ops.exchange(self.key(key), value, value_codec), self._single)

    # -------------------------------------------------------------------------
    # TIME TO LIVE
    # -------------------------------------------------------------------------

    def get_time_to_live(self, key: str) -> Optional[timedelta]:
        """Remaining TTL; None when the key is missing or persistent."""
        return self._run(ops.time_to_live(self.key(key)))

    def set_time_to_live(self, key: str, expiry: Optional[timedelta]) -> bool:
        """
        Update the TTL of an existing key.

        A missing key is left alone. ``expiry=None`` clears the TTL, but
        only when one is currently set.

        Returns:
            Whether the TTL was changed.
        """
        namespaced = self.key(key)
        exists = self._call(lambda client: client.exists(namespaced))
        if not exists:
            return False
        if expiry is None and self._run(ops.time_to_live(namespaced)) is None:
            return False
        return self._run(ops.expire(namespaced, expiry))

    # -------------------------------------------------------------------------
    # LOCKS AND KEYS
    # -------------------------------------------------------------------------

    def try_get_distributed_lock(self, name: str, locker: str, ttl: timedelta) -> bool:
        """
        Take the lock ``name`` for ``locker`` for ``ttl``.

        Returns True when the lock was free, or is already held by the
        same locker.
        """
        if self.set(name, locker, expiry=ttl, value_codec=codec.STRING, when=When.NOT_EXISTS):
            return True
        found, current = self.try_get(name, codec.STRING)
        if found and current == locker:
            return True
        logger.debug(f"Lock {name!r} is held by {current!r}, not {locker!r}")
        return False

    def get_keys(self, pattern: str = "*") -> list[str]:
        """
        Keys matching ``pattern`` within the namespace, prefix stripped.

        Iterates the whole keyspace with SCAN; not for hot paths.
        """
        match_pattern = self.key(pattern)
        prefix_length = len(self.key(""))

        def scan(client: Any) -> list[str]:
            return [
                codec.STRING.decode(raw)[prefix_length:]
                for raw in client.scan_iter(match=match_pattern, count=C.SCAN_COUNT)
            ]

        return self._call(scan)

    # -------------------------------------------------------------------------
    # LISTS
    # -------------------------------------------------------------------------

    def add_to_list(self, key: str, value: str) -> int:
        return self.add_range_to_list(key, [value])

    def add_range_to_list(self, key: str, values: Sequence[str]) -> int:
        """RPUSH; returns the list length."""
        namespaced = self.key(key)
        wire = [codec.STRING.encode(v) for v in values]
        return codec.reply_int(self._call(lambda client: client.rpush(namespaced, *wire)))

    def get_list(self, key: str, start: int = 0, stop: int = -1) -> list[str]:
        namespaced = self.key(key)
        raw = self._call(lambda client: client.lrange(namespaced, start, stop))
        return codec.list_of(codec.STRING)(raw)

    # -------------------------------------------------------------------------
    # SETS
    # -------------------------------------------------------------------------

    @staticmethod
    def _encode_members(values: Sequence[Any]) -> list[codec.WireValue]:
        encoded = []
        for value in values:
            if value is None:
                raise CodecError.unsupported_type("None as set member")
            encoded.append(codec.codec_for_value(value).encode(value))
        return encoded

    def set_add(self, key: str, *values: Any) -> int:
        """SADD; returns how many members were new."""
        namespaced = self.key(key)
        wire = self._encode_members(values)
        if not wire:
            return 0
        return codec.reply_int(self._call(lambda client: client.sadd(namespaced, *wire)))

    def set_remove(self, key: str, *values: Any) -> int:
        namespaced = self.key(key)
        wire = self._encode_members(values)
        if not wire:
            return 0
        return codec.reply_int(self._call(lambda client: client.srem(namespaced, *wire)))

    def set_length(self, key: str) -> int:
        namespaced = self.key(key)
        return codec.reply_int(self._call(lambda client: client.scard(namespaced)))

    def get_set_members(self, key: str, member_codec: ScalarCodec[T] = codec.STRING) -> list[T]:
        namespaced = self.key(key)
        return codec.list_of(member_codec)(self._call(lambda client: client.smembers(namespaced)))

    def set_contains(self, key: str, member: Any) -> bool:
        namespaced = self.key(key)
        wire = self._encode_members([member])[0]
        return codec.reply_bool(self._call(lambda client: client.sismember(namespaced, wire)))

    def _combine_sets(self, operation: SetOperation, keys: Sequence[str]) -> list[str]:
        if not keys:
            return []
        namespaced = [self.key(k) for k in keys]
        match operation:
            case SetOperation.UNION:
                raw = self._call(lambda client: client.sunion(namespaced))
            case SetOperation.INTERSECT:
                raw = self._call(lambda client: client.sinter(namespaced))
            case SetOperation.DIFFERENCE:
                raw = self._call(lambda client: client.sdiff(namespaced))
        return codec.list_of(codec.STRING)(raw)

    def _combine_sets_and_store(self, operation: SetOperation, destination: str, keys: Sequence[str]) -> int:
        if not keys:
            return 0
        target = self.key(destination)
        namespaced = [self.key(k) for k in keys]
        match operation:
            case SetOperation.UNION:
                raw = self._call(lambda client: client.sunionstore(target, namespaced))
            case SetOperation.INTERSECT:
                raw = self._call(lambda client: client.sinterstore(target, namespaced))
            case SetOperation.DIFFERENCE:
                raw = self._call(lambda client: client.sdiffstore(target, namespaced))
        return codec.reply_int(raw)

    def union_sets(self, keys: Sequence[str]) -> list[str]:
        return self._combine_sets(SetOperation.UNION, keys)

    def intersect_sets(self, keys: Sequence[str]) -> list[str]:
        return self._combine_sets(SetOperation.INTERSECT, keys)

    def get_sets_difference(self, keys: Sequence[str]) -> list[str]:
        """Members of the first set that are in none of the others."""
        return self._combine_sets(SetOperation.DIFFERENCE, keys)

    def union_sets_and_store(self, destination: str, keys: Sequence[str]) -> int:
        return self._combine_sets_and_store(SetOperation.UNION, destination, keys)

    def intersect_sets_and_store(self, destination: str, keys: Sequence[str]) -> int:
        return self._combine_sets_and_store(SetOperation.INTERSECT, destination, keys)

    def store_sets_difference(self, destination: str, keys: Sequence[str]) -> int:
        return self._combine_sets_and_store(SetOperation.DIFFERENCE, destination, keys)

    # -------------------------------------------------------------------------
    # SORTED SETS
    # -------------------------------------------------------------------------

    def sorted_set_add(
        self,
        key: str,
        member: Any,
        score: float,
        member_codec: Optional[ScalarCodec[Any]] = None,
        when: When = When.ALWAYS,
    ) -> bool:
        """ZADD; True when the member was new."""
        return self._run(ops.sorted_set_add(self.key(key), member, score, member_codec, when))

    def sorted_set_add_many(
        self,
        key: str,
        members: Sequence[tuple[Any, float]],
        member_codec: Optional[ScalarCodec[Any]] = None,
        when: When = When.ALWAYS,
    ) -> int:
        if not members:
            return 0
        return self._run(ops.sorted_set_add_many(self.key(key), members, member_codec, when))

    def sorted_set_length(
        self,
        key: str,
        start: float = float("-inf"),
        stop: float = float("inf"),
        exclude: Exclude = Exclude.NONE,
    ) -> int:
        """Members whose score lies within the bounds (ZCOUNT)."""
        namespaced = self.key(key)
        low, high = score_bounds(start, stop, exclude)
        return codec.reply_int(self._call(lambda client: client.zcount(namespaced, low, high)))

    def sorted_set_range_by_score(
        self,
        key: str,
        start: float = float("-inf"),
        stop: float = float("inf"),
        exclude: Exclude = Exclude.NONE,
        order: SortOrder = SortOrder.ASCENDING,
        skip: int = 0,
        take: int = -1,
        member_codec: ScalarCodec[T] = codec.STRING,
    ) -> list[T]:
        return self._run(ops.sorted_set_range_by_score(
            self.key(key), start, stop, exclude, order, skip, take, member_codec,
        ))

    def sorted_set_range_by_score_with_scores(
        self,
        key: str,
        start: float = float("-inf"),
        stop: float = float("inf"),
        exclude: Exclude = Exclude.NONE,
        order: SortOrder = SortOrder.ASCENDING,
        skip: int = 0,
        take: int = -1,
        member_codec: ScalarCodec[T] = codec.STRING,
    ) -> list[tuple[T, float]]:
        return self._run(ops.sorted_set_range_by_score(
            self.key(key), start, stop, exclude, order, skip, take, member_codec, True,
        ))

    def sorted_set_range_by_rank(
        self,
        key: str,
        start: int = 0,
        stop: int = -1,
        order: SortOrder = SortOrder.ASCENDING,
        member_codec: ScalarCodec[T] = codec.STRING,
    ) -> list[T]:
        return self._run(ops.sorted_set_range_by_rank(self.key(key), start, stop, order, member_codec))

    def sorted_set_range_by_rank_with_scores(
        self,
        key: str,
        start: int = 0,
        stop: int = -1,
        order: SortOrder = SortOrder.ASCENDING,
        member_codec: ScalarCodec[T] = codec.STRING,
    ) -> list[tuple[T, float]]:
        return self._run(ops.sorted_set_range_by_rank(
            self.key(key), start, stop, order, member_codec, True,
        ))

    def sorted_set_remove(
        self,
        key: str,
        *members: Any,
        member_codec: Optional[ScalarCodec[Any]] = None,
    ) -> int:
        if not members:
            return 0
        return self._run(ops.sorted_set_remove(self.key(key), members, member_codec))

    def sorted_set_remove_range_by_score(
        self,
        key: str,
        start: float,
        stop: float,
        exclude: Exclude = Exclude.NONE,
    ) -> int:
        return self._run(ops.sorted_set_remove_range_by_score(self.key(key), start, stop, exclude))

    def sorted_set_remove_range_by_rank(self, key: str, start: int, stop: int = -1) -> int:
        return self._run(ops.sorted_set_remove_range_by_rank(self.key(key), start, stop))

    # -------------------------------------------------------------------------
    # SCRIPTS
    # -------------------------------------------------------------------------

    def create_script_arguments(self) -> ScriptArguments:
        """Argument slots whose keys are namespaced like every other key."""
        return ScriptArguments(self.key)

    def run_script(
        self,
        source: str,
        arguments: Optional[ScriptArguments] = None,
        decoder: Optional[ops.CodecOrDecoder] = None,
    ) -> Any:
        """
        Evaluate a parameterized script.

        Args:
            source: Lua source using ``@Key1`` / ``@IntArg1``-style parameters.
            arguments: Slot values (see ``create_script_arguments``).
            decoder: Codec or callable applied to the raw reply.

        Raises:
            ScriptError: the script vanished from the server twice in a row.
        """
        decode = ops.as_decoder(decoder)
        raw = self._call(lambda client: self._scripts.evaluate(client, source, arguments))
        return decode(raw)

    # -------------------------------------------------------------------------
    # TRANSACTIONS AND LIFECYCLE
    # -------------------------------------------------------------------------

    def transaction(self) -> TransactionBatch:
        """New batch sharing this context's pool, namespace and script cache."""
        return TransactionBatch(
            self._pool,
            namespace=self._namespace,
            scripts=self._scripts,
            policy=self._retry.with_attempts(C.TRANSACTION_ATTEMPTS),
        )

    def health_check(self) -> Result[dict[str, Any], str]:
        return self._pool.health_check()

    def close(self) -> None:
        """Close the pool if this context created it."""
        if self._owns_pool:
            self._pool.close()

    def __enter__(self) -> RedisContext:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"RedisContext(namespace={self._namespace!r}, pool={self._pool!r})"
