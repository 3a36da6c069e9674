"""
Server-Side Script Cache
========================

Lua scripts are written with named parameters and executed by SHA1.

Parameters:
-----------
| Name                        | Slots | Bound as | Encoded as     |
|-----------------------------|-------|----------|----------------|
| ``@Key1`` .. ``@Key10``     | 10    | KEYS     | namespaced key |
| ``@IntArg1`` .. ``@IntArg20``   | 20 | ARGV    | int32          |
| ``@LongArg1`` .. ``@LongArg20`` | 20 | ARGV    | int64          |
| ``@StringArg1`` .. ``@StringArg20`` | 20 | ARGV | string       |

``prepare_script`` rewrites each referenced parameter into ``KEYS[i]`` or
``ARGV[j]`` in order of first appearance; parameters a script never
mentions are not sent.

Eviction:
---------
The server may drop its script cache at any time (restart, SCRIPT FLUSH,
failover). ``evaluate`` reloads exactly once on NOSCRIPT and retries;
a second NOSCRIPT in a row raises ``ScriptError(SCRIPT_EVICTED)``.
Inside MULTI a queued EVALSHA cannot be retried on its own, so
transactions call ``ensure_loaded`` before submitting.

Example:
    >>> cache = ScriptCache()
    >>> args = ScriptArguments(key_fn).apply(Key1="counter", IntArg1=5)
    >>> cache.evaluate(client, "return redis.call('INCRBY', @Key1, @IntArg1)", args)
"""

from __future__ import annotations

import logging
import re
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Iterable, Optional, Sequence

import redis
from redis import exceptions as redis_errors

from redisrepo.core import constants as C
from redisrepo.core.errors import ScriptError
from redisrepo.storage import codec

logger = logging.getLogger(__name__)

_PARAMETER_PATTERN = re.compile(r"@(Key|IntArg|LongArg|StringArg)(\d+)\b")


# =============================================================================
# PARAMETERS
# =============================================================================

class ParameterKind(Enum):
    KEY = "Key"
    INT = "IntArg"
    LONG = "LongArg"
    STRING = "StringArg"


def slot_limit(kind: ParameterKind) -> int:
    match kind:
        case ParameterKind.KEY:
            return C.SCRIPT_KEY_SLOTS
        case ParameterKind.INT:
            return C.SCRIPT_INT_SLOTS
        case ParameterKind.LONG:
            return C.SCRIPT_LONG_SLOTS
        case ParameterKind.STRING:
            return C.SCRIPT_STRING_SLOTS


@dataclass(frozen=True, slots=True)
class ScriptParameter:
    kind: ParameterKind
    slot: int  # 1-based

    @property
    def name(self) -> str:
        return f"{self.kind.value}{self.slot}"


def _parse_parameter(prefix: str, digits: str) -> ScriptParameter:
    kind = ParameterKind(prefix)
    slot = int(digits)
    limit = slot_limit(kind)
    if not (1 <= slot <= limit):
        raise ScriptError.invalid_parameter(f"{prefix}{digits}", limit)
    return ScriptParameter(kind, slot)


class ScriptArguments:
    """
    Fixed-size parameter slots for one script invocation.

    Keys pass through the owning context's namespace function when set.
    Unset keys and strings are sent as empty strings, unset numbers as 0.
    """

    __slots__ = ("_key_fn", "_keys", "_ints", "_longs", "_strings")

    def __init__(self, key_fn: Optional[Callable[[str], str]] = None) -> None:
        self._key_fn = key_fn or (lambda k: k)
        self._keys: list[Optional[str]] = [None] * C.SCRIPT_KEY_SLOTS
        self._ints: list[int] = [0] * C.SCRIPT_INT_SLOTS
        self._longs: list[int] = [0] * C.SCRIPT_LONG_SLOTS
        self._strings: list[Optional[str]] = [None] * C.SCRIPT_STRING_SLOTS

    @staticmethod
    def _check_slot(kind: ParameterKind, slot: int) -> int:
        limit = slot_limit(kind)
        if not (1 <= slot <= limit):
            raise ScriptError.invalid_parameter(f"{kind.value}{slot}", limit)
        return slot - 1

    # -------------------------------------------------------------------------
    # SETTERS (1-based slots, chainable)
    # -------------------------------------------------------------------------

    def set_key(self, slot: int, key: str) -> ScriptArguments:
        self._keys[self._check_slot(ParameterKind.KEY, slot)] = self._key_fn(key)
        return self

    def set_int_arg(self, slot: int, value: int) -> ScriptArguments:
        codec.INT32.encode(value)
        self._ints[self._check_slot(ParameterKind.INT, slot)] = value
        return self

    def set_long_arg(self, slot: int, value: int) -> ScriptArguments:
        codec.INT64.encode(value)
        self._longs[self._check_slot(ParameterKind.LONG, slot)] = value
        return self

    def set_string_arg(self, slot: int, value: Optional[str]) -> ScriptArguments:
        if value is not None:
            codec.STRING.encode(value)
        self._strings[self._check_slot(ParameterKind.STRING, slot)] = value
        return self

    def set_keys(self, keys: Sequence[str]) -> ScriptArguments:
        """Fill key slots from 1 in order."""
        for slot, key in enumerate(keys, start=1):
            self.set_key(slot, key)
        return self

    def set_int_args(self, values: Sequence[int]) -> ScriptArguments:
        for slot, value in enumerate(values, start=1):
            self.set_int_arg(slot, value)
        return self

    def set_long_args(self, values: Sequence[int]) -> ScriptArguments:
        for slot, value in enumerate(values, start=1):
            self.set_long_arg(slot, value)
        return self

    def set_string_args(self, values: Sequence[Optional[str]]) -> ScriptArguments:
        for slot, value in enumerate(values, start=1):
            self.set_string_arg(slot, value)
        return self

    def apply(self, **named: Any) -> ScriptArguments:
        """
        Set slots by parameter name.

        Example:
            >>> args.apply(Key1="queue", IntArg1=10, StringArg2="worker-7")
        """
        for name, value in named.items():
            found = _PARAMETER_PATTERN.fullmatch(f"@{name}")
            if found is None:
                raise ScriptError.unknown_parameter(name)
            parameter = _parse_parameter(found.group(1), found.group(2))
            match parameter.kind:
                case ParameterKind.KEY:
                    self.set_key(parameter.slot, value)
                case ParameterKind.INT:
                    self.set_int_arg(parameter.slot, value)
                case ParameterKind.LONG:
                    self.set_long_arg(parameter.slot, value)
                case ParameterKind.STRING:
                    self.set_string_arg(parameter.slot, value)
        return self

    # -------------------------------------------------------------------------
    # BINDING
    # -------------------------------------------------------------------------

    def wire_value(self, parameter: ScriptParameter) -> codec.WireValue:
        index = parameter.slot - 1
        match parameter.kind:
            case ParameterKind.KEY:
                return self._keys[index] or ""
            case ParameterKind.INT:
                return codec.INT32.encode(self._ints[index])
            case ParameterKind.LONG:
                return codec.INT64.encode(self._longs[index])
            case ParameterKind.STRING:
                value = self._strings[index]
                return "" if value is None else value

    def __repr__(self) -> str:
        keys = [k for k in self._keys if k is not None]
        return f"ScriptArguments(keys={keys!r})"


# =============================================================================
# PREPARED SCRIPTS
# =============================================================================

@dataclass(frozen=True, slots=True)
class PreparedScript:
    """Script body with named parameters rewritten to KEYS/ARGV."""

    source: str
    body: str
    keys: tuple[ScriptParameter, ...]
    args: tuple[ScriptParameter, ...]

    def bind(self, arguments: Optional[ScriptArguments]) -> tuple[list[codec.WireValue], list[codec.WireValue]]:
        """Return ``(keys, args)`` in KEYS / ARGV order."""
        arguments = arguments or ScriptArguments()
        return (
            [arguments.wire_value(p) for p in self.keys],
            [arguments.wire_value(p) for p in self.args],
        )


def prepare_script(source: str) -> PreparedScript:
    """
    Rewrite ``@Key1``-style parameters into KEYS[i] / ARGV[j].

    Raises:
        ScriptError: a parameter slot is out of range.
    """
    keys: dict[ScriptParameter, int] = {}
    args: dict[ScriptParameter, int] = {}

    def substitute(match: re.Match[str]) -> str:
        parameter = _parse_parameter(match.group(1), match.group(2))
        if parameter.kind is ParameterKind.KEY:
            position = keys.setdefault(parameter, len(keys) + 1)
            return f"KEYS[{position}]"
        position = args.setdefault(parameter, len(args) + 1)
        return f"ARGV[{position}]"

    body = _PARAMETER_PATTERN.sub(substitute, source)
    return PreparedScript(source, body, tuple(keys), tuple(args))


@dataclass(frozen=True, slots=True)
class ScriptEntry:
    """A prepared script and the SHA1 the server knows it by."""
    prepared: PreparedScript
    sha: str


# =============================================================================
# CACHE
# =============================================================================

class ScriptCache:
    """
    Thread-safe map from script source to its loaded entry.

    One lock per source serializes loading, so concurrent first use
    uploads once and stores a single entry.
    """

    __slots__ = ("_entries", "_locks", "_registry_lock")

    def __init__(self) -> None:
        self._entries: dict[str, ScriptEntry] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def _lock_for(self, source: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(source)
            if lock is None:
                lock = self._locks[source] = threading.Lock()
            return lock

    @staticmethod
    def _load(client: "redis.Redis", prepared: PreparedScript) -> ScriptEntry:
        sha = client.script_load(prepared.body)
        if isinstance(sha, bytes):
            sha = sha.decode("ascii")
        return ScriptEntry(prepared, sha)

    def get_or_load(self, client: "redis.Redis", source: str) -> ScriptEntry:
        """Return the cached entry, preparing and uploading on first use."""
        entry = self._entries.get(source)
        if entry is not None:
            return entry
        with self._lock_for(source):
            entry = self._entries.get(source)
            if entry is None:
                entry = self._load(client, prepare_script(source))
                self._entries[source] = entry
                logger.debug(f"Loaded script {entry.sha[:12]}")
            return entry

    def reload(
        self,
        client: "redis.Redis",
        source: str,
        stale: Optional[ScriptEntry] = None,
    ) -> ScriptEntry:
        """
        Upload again and replace the entry.

        When ``stale`` is given and another thread already replaced it,
        the newer entry is returned without a second upload.
        """
        with self._lock_for(source):
            current = self._entries.get(source)
            if stale is not None and current is not None and current is not stale:
                return current
            prepared = current.prepared if current is not None else prepare_script(source)
            entry = self._load(client, prepared)
            self._entries[source] = entry
            logger.info(f"Reloaded script {entry.sha[:12]} after eviction")
            return entry

    def evaluate(
        self,
        client: "redis.Redis",
        source: str,
        arguments: Optional[ScriptArguments] = None,
    ) -> Any:
        """
        EVALSHA through the cached entry, reloading once on NOSCRIPT.

        Raises:
            ScriptError: the script was missing again right after reload.
            redis.exceptions.RedisError: any other server error, unchanged.
        """
        entry = self.get_or_load(client, source)
        keys, args = entry.prepared.bind(arguments)
        try:
            return client.evalsha(entry.sha, len(keys), *keys, *args)
        except redis_errors.NoScriptError:
            logger.warning(f"Script {entry.sha[:12]} not found on server, reloading")

        entry = self.reload(client, source, stale=entry)
        try:
            return client.evalsha(entry.sha, len(keys), *keys, *args)
        except redis_errors.NoScriptError as e:
            raise ScriptError.evicted(entry.sha, cause=e) from e

    def ensure_loaded(self, client: "redis.Redis", sources: Iterable[str]) -> list[ScriptEntry]:
        """
        Make sure every script is present on the server.

        Called before a MULTI block that contains EVALSHA.
        """
        unique = list(dict.fromkeys(sources))
        if not unique:
            return []
        entries = [self.get_or_load(client, source) for source in unique]
        present = client.script_exists(*[entry.sha for entry in entries])
        result = []
        for source, entry, exists in zip(unique, entries, present):
            if not exists:
                entry = self.reload(client, source, stale=entry)
            result.append(entry)
        return result

    def sha_for(self, source: str) -> Optional[str]:
        entry = self._entries.get(source)
        return entry.sha if entry is not None else None

    def clear(self) -> None:
        """Forget every entry (e.g. after SCRIPT FLUSH)."""
        with self._registry_lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, source: object) -> bool:
        return source in self._entries
