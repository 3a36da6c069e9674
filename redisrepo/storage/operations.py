"""
Command Builders
================

Every typed command is described once, as an immutable ``Operation``:
the redis-py method to call, its already-encoded arguments, and the
decoder for the raw reply. The same description is either run directly
against a client (``RedisContext``) or queued into a MULTI pipeline
(``TransactionBatch``), so both paths share one encoding.

Keys passed to the builders are already namespaced.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Any, Callable, Optional, Sequence, Union

from redisrepo.core.errors import CodecError, ConfigurationError
from redisrepo.storage import codec
from redisrepo.storage.codec import ScalarCodec, WireValue
from redisrepo.storage.enums import (
    Aggregation,
    Exclude,
    SetOperation,
    SortOrder,
    When,
    aggregate_name,
    is_descending,
    score_bounds,
    when_kwargs,
)

Decoder = Callable[[Any], Any]
CodecOrDecoder = Union[ScalarCodec[Any], Decoder]


def namespace_key(namespace: str, key: str) -> str:
    """``ns=<namespace>:k=<key>``; keys pass through when namespace is empty."""
    return f"ns={namespace}:k={key}" if namespace else key


class OperationKind(Enum):
    SET = "set"
    GET = "get"
    DELETE = "delete"
    INCREMENT = "increment"
    DECREMENT = "decrement"
    APPEND = "append"
    EXCHANGE = "exchange"
    EXPIRE = "expire"
    TTL = "ttl"
    SORTED_SET_ADD = "sorted_set_add"
    SORTED_SET_COMBINE = "sorted_set_combine"
    SORTED_SET_RANGE = "sorted_set_range"
    SORTED_SET_RANK = "sorted_set_rank"
    SORTED_SET_REMOVE = "sorted_set_remove"
    SCRIPT = "script"


@dataclass(frozen=True, slots=True)
class Operation:
    """One recorded command and the decoder for its reply."""

    kind: OperationKind
    key: str
    command: str
    args: tuple[Any, ...] = ()
    options: tuple[tuple[str, Any], ...] = ()
    decode: Decoder = codec.identity
    script: Optional[str] = None

    @property
    def is_local(self) -> bool:
        """True when the reply is known without contacting the server."""
        return not self.command

    def apply(self, target: Any, sha: Optional[str] = None) -> Any:
        """
        Invoke the command on a client or queue it on a pipeline.

        Script operations are sent as EVALSHA and need the script's SHA.
        Local operations send nothing and return their fixed reply.
        """
        if self.is_local:
            return self.args[0]
        if self.kind is OperationKind.SCRIPT:
            return target.evalsha(sha, *self.args)
        return getattr(target, self.command)(*self.args, **dict(self.options))

    def run(self, client: Any) -> Any:
        """Invoke on a client and decode the reply."""
        return self.decode(self.apply(client))


def _resolve_codec(value: Any, value_codec: Optional[ScalarCodec[Any]]) -> ScalarCodec[Any]:
    return value_codec if value_codec is not None else codec.codec_for_value(value)


def as_decoder(decoder: Optional[CodecOrDecoder]) -> Decoder:
    if decoder is None:
        return codec.identity
    if isinstance(decoder, ScalarCodec):
        return decoder.decode
    return decoder


def _range_decoder(member_codec: ScalarCodec[Any], with_scores: bool) -> Decoder:
    return codec.scored_list_of(member_codec) if with_scores else codec.list_of(member_codec)


def _member(value: Any, member_codec: Optional[ScalarCodec[Any]]) -> WireValue:
    if value is None:
        raise CodecError.unsupported_type("None as sorted set member")
    return _resolve_codec(value, member_codec).encode(value)


# =============================================================================
# STRINGS
# =============================================================================

def set_value(
    key: str,
    value: Any,
    value_codec: Optional[ScalarCodec[Any]] = None,
    expiry: Optional[timedelta] = None,
    when: When = When.ALWAYS,
) -> Operation:
    """SET; the reply decodes to whether the value was written."""
    wire = _resolve_codec(value, value_codec).encode(value)
    options = dict(when_kwargs(when))
    if expiry is not None:
        options["px"] = expiry
    return Operation(
        OperationKind.SET, key, "set", (key, wire),
        tuple(options.items()), codec.reply_bool,
    )


def get_value(key: str, value_codec: ScalarCodec[Any] = codec.STRING) -> Operation:
    """GET decoded to the value, or the codec default when absent."""
    return Operation(OperationKind.GET, key, "get", (key,), decode=value_codec.decode_or_default)


def try_get_value(key: str, value_codec: ScalarCodec[Any] = codec.STRING) -> Operation:
    """GET decoded to ``(found, value)``."""
    return Operation(OperationKind.GET, key, "get", (key,), decode=value_codec.decode_lookup)


def delete(keys: Sequence[str]) -> Operation:
    """DEL; with no keys nothing is sent and the reply is 0."""
    if not keys:
        return Operation(OperationKind.DELETE, "", "", (0,))
    return Operation(
        OperationKind.DELETE, keys[0], "delete", tuple(keys),
        decode=codec.reply_int,
    )


def _check_amount(amount: Any) -> None:
    if isinstance(amount, bool) or not isinstance(amount, (int, float)):
        raise CodecError.unsupported_type(f"{type(amount).__name__} as amount")


def increment(key: str, amount: Union[int, float]) -> Operation:
    """INCRBY for ints, INCRBYFLOAT for floats."""
    _check_amount(amount)
    if isinstance(amount, float):
        return Operation(OperationKind.INCREMENT, key, "incrbyfloat", (key, amount), decode=codec.reply_float)
    return Operation(OperationKind.INCREMENT, key, "incrby", (key, amount), decode=codec.reply_int)


def decrement(key: str, amount: Union[int, float]) -> Operation:
    """DECRBY for ints; floats go through INCRBYFLOAT with the negated amount."""
    _check_amount(amount)
    if isinstance(amount, float):
        return Operation(OperationKind.DECREMENT, key, "incrbyfloat", (key, -amount), decode=codec.reply_float)
    return Operation(OperationKind.DECREMENT, key, "decrby", (key, amount), decode=codec.reply_int)


def append(key: str, value: str) -> Operation:
    """APPEND; the reply is the new length."""
    return Operation(
        OperationKind.APPEND, key, "append", (key, codec.STRING.encode(value)),
        decode=codec.reply_int,
    )


def exchange(key: str, value: Any, value_codec: Optional[ScalarCodec[Any]] = None) -> Operation:
    """GETSET; the reply decodes to the previous value (or the default)."""
    resolved = _resolve_codec(value, value_codec)
    return Operation(
        OperationKind.EXCHANGE, key, "getset", (key, resolved.encode(value)),
        decode=resolved.decode_or_default,
    )


# =============================================================================
# KEYS
# =============================================================================

def expire(key: str, expiry: Optional[timedelta]) -> Operation:
    """PEXPIRE, or PERSIST when ``expiry`` is None."""
    if expiry is None:
        return Operation(OperationKind.EXPIRE, key, "persist", (key,), decode=codec.reply_bool)
    return Operation(OperationKind.EXPIRE, key, "pexpire", (key, expiry), decode=codec.reply_bool)


def time_to_live(key: str) -> Operation:
    """PTTL decoded to a timedelta, or None for missing/persistent keys."""
    return Operation(OperationKind.TTL, key, "pttl", (key,), decode=codec.reply_ttl)


# =============================================================================
# SORTED SETS
# =============================================================================

def sorted_set_add(
    key: str,
    member: Any,
    score: float,
    member_codec: Optional[ScalarCodec[Any]] = None,
    when: When = When.ALWAYS,
) -> Operation:
    """ZADD of a single member; the reply decodes to whether it was new."""
    wire = _member(member, member_codec)
    return Operation(
        OperationKind.SORTED_SET_ADD, key, "zadd", (key, {wire: float(score)}),
        tuple(when_kwargs(when).items()), codec.reply_bool,
    )


def sorted_set_add_many(
    key: str,
    members: Sequence[tuple[Any, float]],
    member_codec: Optional[ScalarCodec[Any]] = None,
    when: When = When.ALWAYS,
) -> Operation:
    """ZADD of several ``(member, score)`` pairs; the reply is the count added."""
    mapping = {_member(m, member_codec): float(s) for m, s in members}
    return Operation(
        OperationKind.SORTED_SET_ADD, key, "zadd", (key, mapping),
        tuple(when_kwargs(when).items()), codec.reply_int,
    )


def sorted_set_combine(
    destination: str,
    sources: Sequence[str],
    weights: Optional[Sequence[float]] = None,
    operation: SetOperation = SetOperation.UNION,
    aggregation: Aggregation = Aggregation.SUM,
) -> Operation:
    """
    ZUNIONSTORE / ZINTERSTORE / ZDIFFSTORE into ``destination``.

    The reply is the size of the resulting set. ZDIFFSTORE takes neither
    weights nor an aggregate.

    Raises:
        ConfigurationError: no sources, or weights that do not pair up
            with them.
    """
    if not sources:
        raise ConfigurationError.invalid("sources", [], "at least one source key is required")
    if weights is not None and len(weights) != len(sources):
        raise ConfigurationError.invalid(
            "weights", list(weights), f"expected {len(sources)} weight(s)"
        )
    keys: Any = dict(zip(sources, weights)) if weights is not None else list(sources)
    options = (("aggregate", aggregate_name(aggregation)),)
    match operation:
        case SetOperation.UNION:
            return Operation(
                OperationKind.SORTED_SET_COMBINE, destination, "zunionstore",
                (destination, keys), options, codec.reply_int,
            )
        case SetOperation.INTERSECT:
            return Operation(
                OperationKind.SORTED_SET_COMBINE, destination, "zinterstore",
                (destination, keys), options, codec.reply_int,
            )
        case SetOperation.DIFFERENCE:
            return Operation(
                OperationKind.SORTED_SET_COMBINE, destination, "zdiffstore",
                (destination, list(sources)), decode=codec.reply_int,
            )


def sorted_set_range_by_rank(
    key: str,
    start: int = 0,
    stop: int = -1,
    order: SortOrder = SortOrder.ASCENDING,
    member_codec: ScalarCodec[Any] = codec.STRING,
    with_scores: bool = False,
) -> Operation:
    return Operation(
        OperationKind.SORTED_SET_RANGE, key, "zrange", (key, start, stop),
        (("desc", is_descending(order)), ("withscores", with_scores)),
        _range_decoder(member_codec, with_scores),
    )


def sorted_set_range_by_score(
    key: str,
    start: float = float("-inf"),
    stop: float = float("inf"),
    exclude: Exclude = Exclude.NONE,
    order: SortOrder = SortOrder.ASCENDING,
    skip: int = 0,
    take: int = -1,
    member_codec: ScalarCodec[Any] = codec.STRING,
    with_scores: bool = False,
) -> Operation:
    """
    ZRANGEBYSCORE / ZREVRANGEBYSCORE.

    ``start`` is always the lower score bound and ``stop`` the upper one;
    ``order`` only changes the direction of the result.
    """
    low, high = score_bounds(start, stop, exclude)
    options: dict[str, Any] = {"withscores": with_scores}
    if skip != 0 or take != -1:
        options["start"] = skip
        options["num"] = take
    if is_descending(order):
        command, args = "zrevrangebyscore", (key, high, low)
    else:
        command, args = "zrangebyscore", (key, low, high)
    return Operation(
        OperationKind.SORTED_SET_RANGE, key, command, args,
        tuple(options.items()), _range_decoder(member_codec, with_scores),
    )


def sorted_set_rank(
    key: str,
    member: Any,
    member_codec: Optional[ScalarCodec[Any]] = None,
    order: SortOrder = SortOrder.ASCENDING,
) -> Operation:
    """ZRANK / ZREVRANK; None when the member is absent."""
    command = "zrevrank" if is_descending(order) else "zrank"
    return Operation(
        OperationKind.SORTED_SET_RANK, key, command, (key, _member(member, member_codec)),
        decode=codec.NULLABLE_INT64.decode,
    )


def sorted_set_remove(
    key: str,
    members: Sequence[Any],
    member_codec: Optional[ScalarCodec[Any]] = None,
) -> Operation:
    return Operation(
        OperationKind.SORTED_SET_REMOVE, key, "zrem",
        (key, *[_member(m, member_codec) for m in members]),
        decode=codec.reply_int,
    )


def sorted_set_remove_range_by_rank(key: str, start: int, stop: int = -1) -> Operation:
    return Operation(
        OperationKind.SORTED_SET_REMOVE, key, "zremrangebyrank", (key, start, stop),
        decode=codec.reply_int,
    )


def sorted_set_remove_range_by_score(
    key: str,
    start: float,
    stop: float,
    exclude: Exclude = Exclude.NONE,
) -> Operation:
    low, high = score_bounds(start, stop, exclude)
    return Operation(
        OperationKind.SORTED_SET_REMOVE, key, "zremrangebyscore", (key, low, high),
        decode=codec.reply_int,
    )


# =============================================================================
# SCRIPTS
# =============================================================================

def script(
    source: str,
    keys: Sequence[WireValue],
    args: Sequence[WireValue],
    decoder: Optional[CodecOrDecoder] = None,
) -> Operation:
    """EVALSHA of a prepared script; the SHA is resolved when sent."""
    return Operation(
        OperationKind.SCRIPT, str(keys[0]) if keys else "", "evalsha",
        (len(keys), *keys, *args), decode=as_decoder(decoder), script=source,
    )
