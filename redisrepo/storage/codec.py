"""
Typed Codec: Python Scalars <-> Redis Wire Values
=================================================

Bidirectional conversion between the supported Python scalar types and
the values redis-py sends and receives.

Supported Types:
----------------
| Codec            | Python        | Wire (encode)        | Nullable |
|------------------|---------------|----------------------|----------|
| STRING           | str           | str                  | no       |
| BYTES            | bytes         | bytes                | no       |
| INT32            | int (32-bit)  | int                  | no       |
| INT64            | int (64-bit)  | int                  | no       |
| DOUBLE           | float         | float                | no       |
| BOOL             | bool          | int -1 / 0           | no       |
| NULLABLE_INT32   | int | None    | int / b""            | yes      |
| NULLABLE_INT64   | int | None    | int / b""            | yes      |
| NULLABLE_DOUBLE  | float | None  | float / b""          | yes      |
| NULLABLE_BOOL    | bool | None   | int -1 / 0 / b""     | yes      |

Lookup Contract:
----------------
``decode_lookup(raw)`` distinguishes three outcomes:

1. ``raw is None`` (key absent)            -> ``(False, codec.default)``
2. ``raw == b""`` on a nullable codec      -> ``(True, None)``
3. anything else                           -> ``(True, parsed)``

A present value that does not parse raises ``CodecError`` with
``CODEC_DECODE_MISMATCH``; it is never reported as "not found".

Booleans are stored as -1 (true) and 0 (false). The mapping is a fixed
wire-format constant shared with existing stored data.
"""

from __future__ import annotations

import re
import types
import typing
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Generic, Optional, TypeVar, Union

from redisrepo.core import constants as C
from redisrepo.core.errors import CodecError

T = TypeVar("T")

# Values redis-py accepts as command arguments / returns as replies
WireValue = Union[bytes, str, int, float]

_INTEGER_PATTERN = re.compile(r"[+-]?\d+")


# =============================================================================
# PRIMITIVE PARSERS
# =============================================================================

def _to_text(raw: WireValue) -> str:
    if isinstance(raw, (bytes, bytearray, memoryview)):
        return bytes(raw).decode("utf-8")
    if isinstance(raw, str):
        return raw
    if isinstance(raw, (int, float)) and not isinstance(raw, bool):
        return str(raw)
    raise TypeError(f"not a scalar reply: {type(raw).__name__}")


def _parse_integer(raw: WireValue, low: int, high: int) -> int:
    if isinstance(raw, bool):
        raise TypeError("boolean reply is not an integer")
    if isinstance(raw, int):
        value = raw
    elif isinstance(raw, float):
        if not raw.is_integer():
            raise ValueError(f"{raw!r} is not integral")
        value = int(raw)
    else:
        text = _to_text(raw)
        if not _INTEGER_PATTERN.fullmatch(text):
            raise ValueError(f"{text!r} is not an integer")
        value = int(text)
    if not (low <= value <= high):
        raise ValueError(f"{value} outside [{low}, {high}]")
    return value


def _parse_int32(raw: WireValue) -> int:
    return _parse_integer(raw, C.INT32_MIN, C.INT32_MAX)


def _parse_int64(raw: WireValue) -> int:
    return _parse_integer(raw, C.INT64_MIN, C.INT64_MAX)


def _parse_double(raw: WireValue) -> float:
    if isinstance(raw, bool):
        raise TypeError("boolean reply is not a double")
    if isinstance(raw, (int, float)):
        return float(raw)
    return float(_to_text(raw))


def _parse_bool(raw: WireValue) -> bool:
    return _parse_int64(raw) != C.BOOL_FALSE_WIRE


def _parse_bytes(raw: WireValue) -> bytes:
    if isinstance(raw, (bytes, bytearray, memoryview)):
        return bytes(raw)
    return _to_text(raw).encode("utf-8")


# =============================================================================
# PRIMITIVE ENCODERS
# =============================================================================

def _encode_str(value: Any) -> WireValue:
    if not isinstance(value, str):
        raise CodecError.unsupported_type(f"{type(value).__name__} as string")
    return value


def _encode_bytes(value: Any) -> WireValue:
    if not isinstance(value, (bytes, bytearray, memoryview)):
        raise CodecError.unsupported_type(f"{type(value).__name__} as bytes")
    return bytes(value)


def _integer_encoder(type_name: str, low: int, high: int) -> Callable[[Any], WireValue]:
    def encode(value: Any) -> WireValue:
        if isinstance(value, bool) or not isinstance(value, int):
            raise CodecError.unsupported_type(f"{type(value).__name__} as {type_name}")
        if not (low <= value <= high):
            raise CodecError.out_of_range(type_name, value)
        return value
    return encode


def _encode_double(value: Any) -> WireValue:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise CodecError.unsupported_type(f"{type(value).__name__} as double")
    return float(value)


def _encode_bool(value: Any) -> WireValue:
    if not isinstance(value, bool):
        raise CodecError.unsupported_type(f"{type(value).__name__} as bool")
    return C.BOOL_TRUE_WIRE if value else C.BOOL_FALSE_WIRE


# =============================================================================
# SCALAR CODEC
# =============================================================================

@dataclass(frozen=True, slots=True)
class ScalarCodec(Generic[T]):
    """
    One tagged variant per supported scalar type.

    Instances are module constants (``STRING``, ``INT64``, ...); there is
    no way to build a codec for an arbitrary type.
    """

    name: str
    python_type: type
    nullable: bool
    default: Any
    _encoder: Callable[[Any], WireValue]
    _parser: Callable[[WireValue], Any]

    def encode(self, value: Optional[T]) -> WireValue:
        """
        Convert a Python value to its wire form.

        ``None`` is only accepted by nullable codecs and encodes to the
        absent marker (empty bulk string).

        Raises:
            CodecError: unsupported value type or integer out of range.
        """
        if value is None:
            if self.nullable:
                return C.NULL_MARKER
            raise CodecError.unsupported_type(f"None as {self.name}")
        return self._encoder(value)

    def decode(self, raw: Any) -> Optional[T]:
        """
        Decode a reply known to be present.

        Raises:
            CodecError: reply is of the wrong shape or does not parse.
        """
        if raw is None or (self.nullable and raw in (C.NULL_MARKER, "")):
            if self.nullable:
                return None
            raise CodecError.decode_mismatch(self.name, raw)
        if isinstance(raw, (list, tuple, set, dict)):
            raise CodecError.decode_mismatch(self.name, raw)
        try:
            return self._parser(raw)
        except (ValueError, TypeError, UnicodeDecodeError) as e:
            raise CodecError.decode_mismatch(self.name, raw, cause=e) from e

    def decode_lookup(self, raw: Any) -> tuple[bool, Optional[T]]:
        """Decode a GET-style reply into ``(found, value)``."""
        if raw is None:
            return False, self.default
        return True, self.decode(raw)

    def decode_or_default(self, raw: Any) -> Optional[T]:
        """Decode a GET-style reply, using the default when absent."""
        return self.decode_lookup(raw)[1]

    def __repr__(self) -> str:
        return f"ScalarCodec({self.name})"


STRING: ScalarCodec[str] = ScalarCodec("string", str, False, None, _encode_str, _to_text)
BYTES: ScalarCodec[bytes] = ScalarCodec("bytes", bytes, False, None, _encode_bytes, _parse_bytes)
INT32: ScalarCodec[int] = ScalarCodec(
    "int32", int, False, 0,
    _integer_encoder("int32", C.INT32_MIN, C.INT32_MAX), _parse_int32,
)
INT64: ScalarCodec[int] = ScalarCodec(
    "int64", int, False, 0,
    _integer_encoder("int64", C.INT64_MIN, C.INT64_MAX), _parse_int64,
)
DOUBLE: ScalarCodec[float] = ScalarCodec("double", float, False, 0.0, _encode_double, _parse_double)
BOOL: ScalarCodec[bool] = ScalarCodec("bool", bool, False, False, _encode_bool, _parse_bool)

NULLABLE_INT32: ScalarCodec[int] = ScalarCodec(
    "int32?", int, True, None,
    _integer_encoder("int32", C.INT32_MIN, C.INT32_MAX), _parse_int32,
)
NULLABLE_INT64: ScalarCodec[int] = ScalarCodec(
    "int64?", int, True, None,
    _integer_encoder("int64", C.INT64_MIN, C.INT64_MAX), _parse_int64,
)
NULLABLE_DOUBLE: ScalarCodec[float] = ScalarCodec(
    "double?", float, True, None, _encode_double, _parse_double,
)
NULLABLE_BOOL: ScalarCodec[bool] = ScalarCodec(
    "bool?", bool, True, None, _encode_bool, _parse_bool,
)

ALL_CODECS: tuple[ScalarCodec[Any], ...] = (
    STRING, BYTES, INT32, INT64, DOUBLE, BOOL,
    NULLABLE_INT32, NULLABLE_INT64, NULLABLE_DOUBLE, NULLABLE_BOOL,
)


# =============================================================================
# CODEC RESOLUTION
# =============================================================================

def _nullable_member(annotation: Any) -> Optional[type]:
    """Return X for ``Optional[X]`` / ``X | None``, else None."""
    origin = typing.get_origin(annotation)
    if origin is not Union and origin is not types.UnionType:
        return None
    members = [arg for arg in typing.get_args(annotation) if arg is not type(None)]
    if len(members) != 1 or len(typing.get_args(annotation)) != 2:
        return None
    return members[0]


def codec_for(annotation: Any) -> ScalarCodec[Any]:
    """
    Resolve the codec for a Python type annotation.

    ``int`` maps to INT64 (Python ints are unbounded; use INT32 explicitly
    for 32-bit slots). ``Optional[X]`` maps to the nullable variant.

    Raises:
        CodecError: the annotation is outside the supported set.
    """
    inner = _nullable_member(annotation)
    if inner is not None:
        match inner:
            case t if t is bool:
                return NULLABLE_BOOL
            case t if t is int:
                return NULLABLE_INT64
            case t if t is float:
                return NULLABLE_DOUBLE
        raise CodecError.unsupported_type(repr(annotation))

    match annotation:
        case t if t is bool:
            return BOOL
        case t if t is int:
            return INT64
        case t if t is float:
            return DOUBLE
        case t if t is str:
            return STRING
        case t if t is bytes:
            return BYTES
    raise CodecError.unsupported_type(getattr(annotation, "__name__", repr(annotation)))


def codec_for_value(value: Any) -> ScalarCodec[Any]:
    """
    Infer a codec from a runtime value.

    ``None`` cannot be inferred: pass a nullable codec explicitly.
    """
    match value:
        case bool():
            return BOOL
        case int():
            return INT64
        case float():
            return DOUBLE
        case str():
            return STRING
        case bytes() | bytearray() | memoryview():
            return BYTES
        case None:
            raise CodecError.unsupported_type("None (pass a nullable codec)")
    raise CodecError.unsupported_type(type(value).__name__)


# =============================================================================
# COMPOSITE / REPLY DECODERS
# =============================================================================

def list_of(codec: ScalarCodec[T]) -> Callable[[Any], list[Optional[T]]]:
    """Decoder for array replies whose items are all of one scalar type."""
    def decode(raw: Any) -> list[Optional[T]]:
        if not isinstance(raw, (list, tuple, set)):
            raise CodecError.decode_mismatch(f"list[{codec.name}]", raw)
        return [codec.decode(item) for item in raw]
    return decode


def scored_list_of(codec: ScalarCodec[T]) -> Callable[[Any], list[tuple[Optional[T], float]]]:
    """Decoder for sorted-set replies fetched WITHSCORES."""
    def decode(raw: Any) -> list[tuple[Optional[T], float]]:
        if not isinstance(raw, (list, tuple)):
            raise CodecError.decode_mismatch(f"list[({codec.name}, score)]", raw)
        result = []
        for entry in raw:
            if not isinstance(entry, (list, tuple)) or len(entry) != 2:
                raise CodecError.decode_mismatch(f"({codec.name}, score)", entry)
            member, score = entry
            result.append((codec.decode(member), DOUBLE.decode(score)))
        return result
    return decode


def reply_bool(raw: Any) -> bool:
    """Status/flag replies: True, 1, b"OK" -> True; None, 0 -> False."""
    if raw is None:
        return False
    if isinstance(raw, bool):
        return raw
    if isinstance(raw, int):
        return raw != 0
    if isinstance(raw, (bytes, str)) and _to_text(raw) == "OK":
        return True
    raise CodecError.decode_mismatch("bool reply", raw)


def reply_int(raw: Any) -> int:
    """Integer replies (counts, lengths)."""
    return INT64.decode(raw)


def reply_float(raw: Any) -> float:
    """Floating point replies (INCRBYFLOAT)."""
    return DOUBLE.decode(raw)


def reply_ttl(raw: Any) -> Optional[timedelta]:
    """PTTL reply: -2 (missing) and -1 (persistent) both mean no TTL."""
    millis = INT64.decode(raw)
    if millis < 0:
        return None
    return timedelta(milliseconds=millis)


def identity(raw: Any) -> Any:
    return raw


__all__ = [
    "WireValue",
    "ScalarCodec",
    "STRING",
    "BYTES",
    "INT32",
    "INT64",
    "DOUBLE",
    "BOOL",
    "NULLABLE_INT32",
    "NULLABLE_INT64",
    "NULLABLE_DOUBLE",
    "NULLABLE_BOOL",
    "ALL_CODECS",
    "codec_for",
    "codec_for_value",
    "list_of",
    "scored_list_of",
    "reply_bool",
    "reply_int",
    "reply_float",
    "reply_ttl",
    "identity",
]
