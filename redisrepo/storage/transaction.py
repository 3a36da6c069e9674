"""
Transactional Batch Engine
==========================

Records typed commands against one connection and submits them as a
single MULTI/EXEC unit. Each recorded command hands back a
``DeferredResult`` that becomes readable once the batch has executed.

Lifecycle:
----------
```
         start()                execute()
  IDLE ----------> RECORDING ------------> EXECUTED
                     ^   |                    |
                     |   +--- record ops      |
                     +------------------------+
                            start() again
```

- ``start`` is valid in every state; it takes a connection from the pool,
  clears the recorded list and invalidates every handle from earlier runs
- Recording and ``execute`` are only valid while RECORDING
- ``execute`` retries the atomic submission on transient errors
  (5 attempts). A submission that reports "not committed" (a watched key
  changed) raises ``TransactionError(TRANSACTION_COMMIT_FAILED)``

Result Semantics:
-----------------
- Results keep record order; nothing is reordered or coalesced
- A per-command server error inside EXEC (e.g. WRONGTYPE) is stored at
  its position and raised when that handle is read
- The first successful read decodes and memoizes the value

Thread Safety:
--------------
A batch is single-caller. Share the pool, not the batch.

Example:
    >>> batch = ctx.transaction()
    >>> batch.start()
    >>> batch.set("a", 1)
    >>> total = batch.increment("a", 5)
    >>> batch.execute()
    >>> total.get()
    6
"""

from __future__ import annotations

import logging
from datetime import timedelta
from enum import Enum
from typing import Any, Callable, Generic, Optional, Sequence, TypeVar, Union
from uuid import uuid4

from redis import exceptions as redis_errors

from redisrepo.core.errors import TransactionError
from redisrepo.core.types import Timestamp
from redisrepo.observability.logging import log_context
from redisrepo.reliability.retry import RetryPolicy
from redisrepo.storage import codec
from redisrepo.storage import operations as ops
from redisrepo.storage.codec import ScalarCodec
from redisrepo.storage.enums import Aggregation, Exclude, SetOperation, SortOrder, When
from redisrepo.storage.pool import ConnectionPool
from redisrepo.storage.scripts import ScriptArguments, ScriptCache

logger = logging.getLogger(__name__)

T = TypeVar("T")


class BatchState(Enum):
    IDLE = "idle"
    RECORDING = "recording"
    EXECUTED = "executed"


class DeferredResult(Generic[T]):
    """
    Handle to the reply of one recorded command.

    Bound to a position and to the batch generation it was recorded in.
    """

    __slots__ = ("_batch", "_generation", "_position", "_decode", "_value", "_decoded")

    def __init__(
        self,
        batch: TransactionBatch,
        generation: int,
        position: int,
        decode: Callable[[Any], T],
    ) -> None:
        self._batch = batch
        self._generation = generation
        self._position = position
        self._decode = decode
        self._value: Optional[T] = None
        self._decoded = False

    @property
    def position(self) -> int:
        return self._position

    @property
    def ready(self) -> bool:
        """True when ``get`` would not raise a lifecycle error."""
        return self._batch._is_readable(self._generation)

    def get(self) -> T:
        """
        Decoded reply.

        Raises:
            TransactionError: read before execute, or the batch was restarted.
            redis.exceptions.ResponseError: the command failed inside EXEC.
            CodecError: the reply does not decode to the requested type.
        """
        raw = self._batch._raw_result(self._generation, self._position)
        if not self._decoded:
            if isinstance(raw, Exception):
                raise raw
            self._value = self._decode(raw)
            self._decoded = True
        return self._value  # type: ignore[return-value]

    def __repr__(self) -> str:
        return f"DeferredResult(position={self._position}, ready={self.ready})"


class TransactionBatch:
    """
    Ordered list of typed commands submitted as one MULTI/EXEC unit.

    Obtain instances from ``RedisContext.transaction()``.
    """

    __slots__ = (
        "_pool",
        "_namespace",
        "_scripts",
        "_policy",
        "_state",
        "_generation",
        "_client",
        "_operations",
        "_handles",
        "_results",
        "_watch",
        "_watch_pipeline",
        "_batch_id",
    )

    def __init__(
        self,
        pool: ConnectionPool,
        *,
        namespace: str = "",
        scripts: Optional[ScriptCache] = None,
        policy: Optional[RetryPolicy] = None,
    ) -> None:
        self._pool = pool
        self._namespace = namespace
        self._scripts = scripts or ScriptCache()
        self._policy = policy or RetryPolicy.for_transactions()
        self._state = BatchState.IDLE
        self._generation = 0
        self._client: Any = None
        self._operations: list[ops.Operation] = []
        self._handles: list[DeferredResult[Any]] = []
        self._results: list[Any] = []
        self._watch: tuple[str, ...] = ()
        self._watch_pipeline: Any = None
        self._batch_id = ""

    # -------------------------------------------------------------------------
    # LIFECYCLE
    # -------------------------------------------------------------------------

    @property
    def state(self) -> BatchState:
        return self._state

    @property
    def batch_id(self) -> str:
        return self._batch_id

    def __len__(self) -> int:
        return len(self._operations)

    def key(self, key: str) -> str:
        return ops.namespace_key(self._namespace, key)

    def start(self, watch: Sequence[str] = ()) -> TransactionBatch:
        """
        Begin a new recording on a fresh connection.

        Args:
            watch: Keys that must not change between now and EXEC. If any
                does, ``execute`` raises a commit failure.
        """
        self._release_watch()
        self._client = self._pool.acquire()
        self._operations = []
        self._handles = []
        self._results = []
        self._generation += 1
        self._batch_id = uuid4().hex[:12]
        self._watch = tuple(self.key(k) for k in watch)
        if self._watch:
            pipeline = self._client.pipeline(transaction=True)
            pipeline.watch(*self._watch)
            self._watch_pipeline = pipeline
        self._state = BatchState.RECORDING
        logger.debug(
            f"Batch {self._batch_id} started (generation {self._generation}, "
            f"watching {len(self._watch)} key(s))"
        )
        return self

    def reset(self) -> None:
        """Drop the recording and any watch; old handles become stale."""
        self._release_watch()
        self._operations = []
        self._handles = []
        self._results = []
        self._generation += 1
        self._client = None
        self._state = BatchState.IDLE

    def _release_watch(self) -> None:
        if self._watch_pipeline is not None:
            self._watch_pipeline.reset()
            self._watch_pipeline = None

    def _require_recording(self, action: str) -> None:
        if self._state is not BatchState.RECORDING:
            raise TransactionError.invalid_state(action, self._state.name)

    def _record(self, operation: ops.Operation) -> DeferredResult[Any]:
        self._require_recording(f"record {operation.kind.value}")
        handle: DeferredResult[Any] = DeferredResult(
            self, self._generation, len(self._operations), operation.decode
        )
        self._operations.append(operation)
        self._handles.append(handle)
        return handle

    def _is_readable(self, generation: int) -> bool:
        return generation == self._generation and self._state is BatchState.EXECUTED

    def _raw_result(self, generation: int, position: int) -> Any:
        if generation != self._generation:
            raise TransactionError.stale_result(position)
        if self._state is not BatchState.EXECUTED:
            raise TransactionError.not_executed(position)
        return self._results[position]

    # -------------------------------------------------------------------------
    # EXECUTION
    # -------------------------------------------------------------------------

    def _submit(self, operations: tuple[ops.Operation, ...]) -> tuple[bool, list[Any]]:
        """One atomic submission. Returns ``(committed, raw replies)``."""
        client = self._client
        sources = [op.script for op in operations if op.script is not None]
        if sources:
            self._scripts.ensure_loaded(client, sources)

        if self._watch:
            pipeline, self._watch_pipeline = self._watch_pipeline, None
            if pipeline is None:
                logger.warning(f"Batch {self._batch_id}: watch lost after a failed attempt")
                return False, []
            pipeline.multi()
        else:
            pipeline = client.pipeline(transaction=True)

        try:
            for op in operations:
                sha = self._scripts.get_or_load(client, op.script).sha if op.script else None
                op.apply(pipeline, sha=sha)
            try:
                raw = pipeline.execute(raise_on_error=False)
            except redis_errors.WatchError:
                logger.warning(f"Batch {self._batch_id}: watched key changed")
                return False, []
            replies = iter(raw)
            return True, [op.args[0] if op.is_local else next(replies) for op in operations]
        finally:
            pipeline.reset()

    def execute(self) -> list[DeferredResult[Any]]:
        """
        Submit the recorded commands atomically.

        Returns:
            Every handle, in record order.

        Raises:
            TransactionError: not RECORDING, or the transaction did not commit.
            redis.exceptions.RedisError: non-transient failure, or transient
                failure on every attempt.
        """
        self._require_recording("execute")
        operations = tuple(self._operations)
        started = Timestamp.now()

        with log_context(batch_id=self._batch_id):
            committed, raw = self._policy.run(lambda: self._submit(operations))
            if not committed:
                logger.error(
                    f"Batch {self._batch_id} not committed ({len(operations)} operation(s))"
                )
                raise TransactionError.commit_failed(len(operations))

            self._results = raw
            self._state = BatchState.EXECUTED
            failed = sum(1 for r in raw if isinstance(r, Exception))
            logger.debug(
                f"Batch {self._batch_id} committed {len(operations)} operation(s) "
                f"in {started.elapsed_millis():.1f}ms ({failed} failed)"
            )
        return list(self._handles)

    def execute_and_wait(self) -> list[Any]:
        """Execute and decode every result in record order."""
        return [handle.get() for handle in self.execute()]

    def execute_and_wait_typed(self, result_type: type[T]) -> list[T]:
        """
        Execute and keep only results of ``result_type``, in order.

        ``bool`` results are not treated as ``int``.
        """
        results = self.execute_and_wait()
        return [
            value for value in results
            if isinstance(value, result_type)
            and not (isinstance(value, bool) and result_type is not bool)
        ]

    # -------------------------------------------------------------------------
    # STRINGS
    # -------------------------------------------------------------------------

    def set(
        self,
        key: str,
        value: Any,
        expiry: Optional[timedelta] = None,
        value_codec: Optional[ScalarCodec[Any]] = None,
        when: When = When.ALWAYS,
    ) -> DeferredResult[bool]:
        return self._record(ops.set_value(self.key(key), value, value_codec, expiry, when))

    def get(self, key: str, value_codec: ScalarCodec[T] = codec.STRING) -> DeferredResult[Optional[T]]:
        """Value, or the codec default when the key is absent."""
        return self._record(ops.get_value(self.key(key), value_codec))

    def try_get(self, key: str, value_codec: ScalarCodec[T] = codec.STRING) -> DeferredResult[tuple[bool, Optional[T]]]:
        return self._record(ops.try_get_value(self.key(key), value_codec))

    def delete(self, *keys: str) -> DeferredResult[int]:
        return self._record(ops.delete([self.key(k) for k in keys]))

    def set_or_append(self, key: str, value: str) -> DeferredResult[int]:
        return self._record(ops.append(self.key(key), value))

    def increment(self, key: str, amount: Union[int, float] = 1) -> DeferredResult[Union[int, float]]:
        return self._record(ops.increment(self.key(key), amount))

    def decrement(self, key: str, amount: Union[int, float] = 1) -> DeferredResult[Union[int, float]]:
        return self._record(ops.decrement(self.key(key), amount))

    def atomic_exchange(
        self,
        key: str,
        value: Any,
        value_codec: Optional[ScalarCodec[Any]] = None,
    ) -> DeferredResult[Any]:
        """Previous value (or the codec default) after the swap."""
        return self._record(ops.exchange(self.key(key), value, value_codec))

    def get_time_to_live(self, key: str) -> DeferredResult[Optional[timedelta]]:
        return self._record(ops.time_to_live(self.key(key)))

    def set_time_to_live(self, key: str, expiry: Optional[timedelta]) -> DeferredResult[bool]:
        """PEXPIRE, or PERSIST for ``None``."""
        return self._record(ops.expire(self.key(key), expiry))

    # -------------------------------------------------------------------------
    # SORTED SETS
    # -------------------------------------------------------------------------

    def sorted_set_add(
        self,
        key: str,
        member: Any,
        score: float,
        member_codec: Optional[ScalarCodec[Any]] = None,
    ) -> DeferredResult[bool]:
        return self._record(ops.sorted_set_add(self.key(key), member, score, member_codec))

    def sorted_set_operation(
        self,
        destination: str,
        sources: Sequence[str],
        weights: Optional[Sequence[float]] = None,
        operation: SetOperation = SetOperation.UNION,
        aggregation: Aggregation = Aggregation.SUM,
    ) -> DeferredResult[int]:
        """Combine sorted sets into ``destination``; yields its size."""
        return self._record(ops.sorted_set_combine(
            self.key(destination), [self.key(k) for k in sources],
            weights, operation, aggregation,
        ))

    def sorted_set_range_by_rank(
        self,
        key: str,
        start: int = 0,
        stop: int = -1,
        order: SortOrder = SortOrder.ASCENDING,
        member_codec: ScalarCodec[T] = codec.STRING,
        with_scores: bool = False,
    ) -> DeferredResult[list[Any]]:
        return self._record(ops.sorted_set_range_by_rank(
            self.key(key), start, stop, order, member_codec, with_scores,
        ))

    def sorted_set_range_by_score(
        self,
        key: str,
        start: float = float("-inf"),
        stop: float = float("inf"),
        order: SortOrder = SortOrder.ASCENDING,
        skip: int = 0,
        take: int = -1,
        member_codec: ScalarCodec[T] = codec.STRING,
        with_scores: bool = False,
        exclude: Exclude = Exclude.NONE,
    ) -> DeferredResult[list[Any]]:
        return self._record(ops.sorted_set_range_by_score(
            self.key(key), start, stop, exclude, order, skip, take, member_codec, with_scores,
        ))

    def sorted_set_rank(
        self,
        key: str,
        member: Any,
        order: SortOrder = SortOrder.ASCENDING,
        member_codec: Optional[ScalarCodec[Any]] = None,
    ) -> DeferredResult[Optional[int]]:
        return self._record(ops.sorted_set_rank(self.key(key), member, member_codec, order))

    def sorted_set_remove_range_by_rank(self, key: str, start: int, stop: int = -1) -> DeferredResult[int]:
        return self._record(ops.sorted_set_remove_range_by_rank(self.key(key), start, stop))

    def sorted_set_remove_range_by_score(
        self,
        key: str,
        start: float,
        stop: float,
        exclude: Exclude = Exclude.NONE,
    ) -> DeferredResult[int]:
        return self._record(ops.sorted_set_remove_range_by_score(self.key(key), start, stop, exclude))

    # -------------------------------------------------------------------------
    # SCRIPTS
    # -------------------------------------------------------------------------

    def create_script_arguments(self) -> ScriptArguments:
        return ScriptArguments(self.key)

    def run_script(
        self,
        source: str,
        arguments: Optional[ScriptArguments] = None,
        decoder: Optional[ops.CodecOrDecoder] = None,
    ) -> DeferredResult[Any]:
        """
        Record an EVALSHA. The script is uploaded now if it is new, and
        checked again just before submission.
        """
        self._require_recording("record script")
        entry = self._scripts.get_or_load(self._client, source)
        keys, args = entry.prepared.bind(arguments)
        return self._record(ops.script(source, keys, args, decoder))

    def __repr__(self) -> str:
        return (
            f"TransactionBatch(state={self._state.name}, operations={len(self._operations)}, "
            f"generation={self._generation})"
        )
