"""
Shared fixtures: an in-memory Redis double.

``FakeServer`` holds the keyspace; every ``FakeRedis`` handed out by
``FakeServer.client`` talks to the same server, like independent
connections to one Redis. Only the redis-py surface used by the library
is implemented, with redis-py's RESP2 reply shapes (bytes values,
``True``/``None`` from SET, lists of ``(member, score)`` tuples, ...).

Failure injection:
    server.fail("incrby", redis.exceptions.TimeoutError("t/o"))
makes the next ``incrby`` call (on any client) raise that error.
"""

from __future__ import annotations

import fnmatch
import hashlib
from datetime import timedelta
from typing import Any, Callable, Iterator, Optional

import pytest
from redis import exceptions as redis_errors

from redisrepo.core.config import RedisConfig
from redisrepo.storage.context import RedisContext
from redisrepo.storage.pool import ConnectionPool

WRONGTYPE = "WRONGTYPE Operation against a key holding the wrong kind of value"

ScriptHandler = Callable[["FakeRedis", list[bytes], list[bytes]], Any]


def _enc(value: Any) -> bytes:
    """Encode an argument the way redis-py does."""
    if isinstance(value, bytes):
        return value
    if isinstance(value, str):
        return value.encode("utf-8")
    if isinstance(value, bool):
        raise redis_errors.DataError("Invalid input of type: 'bool'")
    if isinstance(value, int):
        return str(value).encode()
    if isinstance(value, float):
        return repr(value).encode()
    raise redis_errors.DataError(f"Invalid input of type: {type(value).__name__!r}")


def _millis(value: Any) -> int:
    if isinstance(value, timedelta):
        return int(value.total_seconds() * 1000)
    return int(value)


def _parse_bound(raw: Any) -> tuple[float, bool]:
    text = raw.decode() if isinstance(raw, bytes) else str(raw)
    exclusive = text.startswith("(")
    if exclusive:
        text = text[1:]
    return float(text), exclusive


def _in_range(score: float, low: tuple[float, bool], high: tuple[float, bool]) -> bool:
    low_value, low_excl = low
    high_value, high_excl = high
    above = score > low_value if low_excl else score >= low_value
    below = score < high_value if high_excl else score <= high_value
    return above and below


def _slice(items: list[Any], start: int, end: int) -> list[Any]:
    size = len(items)
    if start < 0:
        start = max(size + start, 0)
    if end < 0:
        end = size + end
    if start >= size or start > end:
        return []
    return items[start:end + 1]


class FakeServer:
    """Keyspace, script store and call log shared by every client."""

    def __init__(self) -> None:
        self.data: dict[bytes, Any] = {}
        self.ttl: dict[bytes, int] = {}
        self.versions: dict[bytes, int] = {}
        self.scripts: dict[str, bytes] = {}
        self.script_handlers: dict[str, ScriptHandler] = {}
        self.calls: list[tuple[int, str]] = []
        self.failures: dict[str, list[BaseException]] = {}
        self.clients: list[FakeRedis] = []
        self.exec_count = 0
        self.refuse_connections_after: Optional[int] = None

    def client(self, **kwargs: Any) -> FakeRedis:
        """Client factory compatible with ``redis.Redis(**kwargs)``."""
        fake = FakeRedis(self, len(self.clients), kwargs)
        self.clients.append(fake)
        return fake

    def fail(self, command: str, *errors: BaseException) -> None:
        self.failures.setdefault(command, []).extend(errors)

    def on_script(self, body: str, handler: ScriptHandler) -> None:
        """Register the Python behaviour of a (prepared) Lua body."""
        self.script_handlers[body] = handler

    def flush_scripts(self) -> None:
        self.scripts.clear()

    def commands(self, name: str) -> list[int]:
        """Client indexes that issued ``name``, in call order."""
        return [index for index, command in self.calls if command == name]

    def touch(self, key: bytes) -> None:
        self.versions[key] = self.versions.get(key, 0) + 1


class FakeRedis:
    """Subset of ``redis.Redis`` backed by a ``FakeServer``."""

    def __init__(self, server: FakeServer, index: int, kwargs: dict[str, Any]) -> None:
        self.server = server
        self.index = index
        self.kwargs = kwargs
        self.closed = False

    # ------------------------------------------------------------------ helpers

    def _call(self, command: str) -> None:
        self.server.calls.append((self.index, command))
        pending = self.server.failures.get(command)
        if pending:
            raise pending.pop(0)

    def _typed(self, key: bytes, kind: type) -> Any:
        value = self.server.data.get(key)
        if value is not None and not isinstance(value, kind):
            raise redis_errors.ResponseError(WRONGTYPE)
        return value

    def _write(self, key: bytes, value: Any) -> None:
        self.server.data[key] = value
        self.server.touch(key)

    def _remove(self, key: bytes) -> bool:
        existed = self.server.data.pop(key, None) is not None
        self.server.ttl.pop(key, None)
        if existed:
            self.server.touch(key)
        return existed

    def _zset(self, name: Any) -> dict[bytes, float]:
        return self._typed(_enc(name), dict) or {}

    @staticmethod
    def _ordered(zset: dict[bytes, float]) -> list[tuple[bytes, float]]:
        return sorted(zset.items(), key=lambda item: (item[1], item[0]))

    # ------------------------------------------------------------ connection

    def ping(self) -> bool:
        self._call("ping")
        limit = self.server.refuse_connections_after
        if limit is not None and self.index >= limit:
            raise redis_errors.ConnectionError("Connection refused")
        return True

    def close(self) -> None:
        self.closed = True

    def pipeline(self, transaction: bool = True) -> FakePipeline:
        return FakePipeline(self, transaction)

    # --------------------------------------------------------------- strings

    def get(self, name: Any) -> Optional[bytes]:
        self._call("get")
        return self._typed(_enc(name), bytes)

    def set(self, name: Any, value: Any, ex: Any = None, px: Any = None,
            nx: bool = False, xx: bool = False) -> Optional[bool]:
        self._call("set")
        key = _enc(name)
        exists = key in self.server.data
        if (nx and exists) or (xx and not exists):
            return None
        self.server.data[key] = _enc(value)
        self.server.touch(key)
        self.server.ttl.pop(key, None)
        if px is not None:
            self.server.ttl[key] = _millis(px)
        elif ex is not None:
            self.server.ttl[key] = _millis(ex) * (1 if isinstance(ex, timedelta) else 1000)
        return True

    def getset(self, name: Any, value: Any) -> Optional[bytes]:
        self._call("getset")
        key = _enc(name)
        previous = self._typed(key, bytes)
        self._write(key, _enc(value))
        self.server.ttl.pop(key, None)
        return previous

    def delete(self, *names: Any) -> int:
        self._call("delete")
        return sum(1 for name in names if self._remove(_enc(name)))

    def exists(self, *names: Any) -> int:
        self._call("exists")
        return sum(1 for name in names if _enc(name) in self.server.data)

    def _add_integer(self, command: str, name: Any, amount: int) -> int:
        self._call(command)
        key = _enc(name)
        current = self._typed(key, bytes) or b"0"
        try:
            value = int(current)
        except ValueError:
            raise redis_errors.ResponseError("value is not an integer or out of range") from None
        value += amount
        self._write(key, str(value).encode())
        return value

    def incrby(self, name: Any, amount: int = 1) -> int:
        return self._add_integer("incrby", name, amount)

    def decrby(self, name: Any, amount: int = 1) -> int:
        return self._add_integer("decrby", name, -amount)

    def incrbyfloat(self, name: Any, amount: float = 1.0) -> float:
        self._call("incrbyfloat")
        key = _enc(name)
        current = self._typed(key, bytes) or b"0"
        try:
            value = float(current) + amount
        except ValueError:
            raise redis_errors.ResponseError("value is not a valid float") from None
        self._write(key, repr(value).encode())
        return value

    def append(self, name: Any, value: Any) -> int:
        self._call("append")
        key = _enc(name)
        current = self._typed(key, bytes) or b""
        updated = current + _enc(value)
        self._write(key, updated)
        return len(updated)

    # ------------------------------------------------------------------ keys

    def pttl(self, name: Any) -> int:
        self._call("pttl")
        key = _enc(name)
        if key not in self.server.data:
            return -2
        return self.server.ttl.get(key, -1)

    def pexpire(self, name: Any, time: Any) -> bool:
        self._call("pexpire")
        key = _enc(name)
        if key not in self.server.data:
            return False
        self.server.ttl[key] = _millis(time)
        self.server.touch(key)
        return True

    def persist(self, name: Any) -> bool:
        self._call("persist")
        key = _enc(name)
        if self.server.ttl.pop(key, None) is None:
            return False
        self.server.touch(key)
        return True

    def scan_iter(self, match: Optional[str] = None, count: Optional[int] = None) -> Iterator[bytes]:
        self._call("scan")
        for key in list(self.server.data):
            if match is None or fnmatch.fnmatchcase(key.decode(), match):
                yield key

    # ----------------------------------------------------------------- lists

    def rpush(self, name: Any, *values: Any) -> int:
        self._call("rpush")
        key = _enc(name)
        items = self._typed(key, list)
        if items is None:
            items = []
        items.extend(_enc(v) for v in values)
        self._write(key, items)
        return len(items)

    def lrange(self, name: Any, start: int, end: int) -> list[bytes]:
        self._call("lrange")
        return _slice(list(self._typed(_enc(name), list) or []), start, end)

    # ------------------------------------------------------------------ sets

    def _set(self, name: Any) -> set[bytes]:
        return self._typed(_enc(name), set) or set()

    def sadd(self, name: Any, *values: Any) -> int:
        self._call("sadd")
        members = set(self._set(name))
        before = len(members)
        members.update(_enc(v) for v in values)
        self._write(_enc(name), members)
        return len(members) - before

    def srem(self, name: Any, *values: Any) -> int:
        self._call("srem")
        members = set(self._set(name))
        before = len(members)
        members.difference_update(_enc(v) for v in values)
        if members:
            self._write(_enc(name), members)
        else:
            self._remove(_enc(name))
        return before - len(members)

    def scard(self, name: Any) -> int:
        self._call("scard")
        return len(self._set(name))

    def smembers(self, name: Any) -> set[bytes]:
        self._call("smembers")
        return set(self._set(name))

    def sismember(self, name: Any, value: Any) -> bool:
        self._call("sismember")
        return _enc(value) in self._set(name)

    def _combine(self, keys: list[Any], operation: str) -> set[bytes]:
        sets = [self._set(k) for k in keys]
        result = set(sets[0])
        for other in sets[1:]:
            match operation:
                case "union":
                    result |= other
                case "inter":
                    result &= other
                case "diff":
                    result -= other
        return result

    def sunion(self, keys: list[Any]) -> set[bytes]:
        self._call("sunion")
        return self._combine(keys, "union")

    def sinter(self, keys: list[Any]) -> set[bytes]:
        self._call("sinter")
        return self._combine(keys, "inter")

    def sdiff(self, keys: list[Any]) -> set[bytes]:
        self._call("sdiff")
        return self._combine(keys, "diff")

    def _store_set(self, dest: Any, members: set[bytes]) -> int:
        if members:
            self._write(_enc(dest), members)
        else:
            self._remove(_enc(dest))
        return len(members)

    def sunionstore(self, dest: Any, keys: list[Any]) -> int:
        self._call("sunionstore")
        return self._store_set(dest, self._combine(keys, "union"))

    def sinterstore(self, dest: Any, keys: list[Any]) -> int:
        self._call("sinterstore")
        return self._store_set(dest, self._combine(keys, "inter"))

    def sdiffstore(self, dest: Any, keys: list[Any]) -> int:
        self._call("sdiffstore")
        return self._store_set(dest, self._combine(keys, "diff"))

    # ----------------------------------------------------------- sorted sets

    def zadd(self, name: Any, mapping: dict[Any, float], nx: bool = False, xx: bool = False) -> int:
        self._call("zadd")
        key = _enc(name)
        zset = dict(self._zset(name))
        added = 0
        for member, score in mapping.items():
            member = _enc(member)
            exists = member in zset
            if (nx and exists) or (xx and not exists):
                continue
            if not exists:
                added += 1
            zset[member] = float(score)
        if zset:
            self._write(key, zset)
        return added

    def zcard(self, name: Any) -> int:
        self._call("zcard")
        return len(self._zset(name))

    def zcount(self, name: Any, min: Any, max: Any) -> int:
        self._call("zcount")
        low, high = _parse_bound(min), _parse_bound(max)
        return sum(1 for score in self._zset(name).values() if _in_range(score, low, high))

    @staticmethod
    def _shape(entries: list[tuple[bytes, float]], withscores: bool) -> list[Any]:
        if withscores:
            return [(member, score) for member, score in entries]
        return [member for member, _ in entries]

    def zrange(self, name: Any, start: int, end: int, desc: bool = False,
               withscores: bool = False) -> list[Any]:
        self._call("zrange")
        entries = self._ordered(self._zset(name))
        if desc:
            entries.reverse()
        return self._shape(_slice(entries, start, end), withscores)

    def _by_score(self, name: Any, low: Any, high: Any, start: Optional[int],
                  num: Optional[int], withscores: bool, desc: bool) -> list[Any]:
        if (start is None) != (num is None):
            raise redis_errors.DataError("``start`` and ``num`` must both be specified")
        low_bound, high_bound = _parse_bound(low), _parse_bound(high)
        entries = [e for e in self._ordered(self._zset(name)) if _in_range(e[1], low_bound, high_bound)]
        if desc:
            entries.reverse()
        if start is not None:
            entries = entries[start:] if num < 0 else entries[start:start + num]
        return self._shape(entries, withscores)

    def zrangebyscore(self, name: Any, min: Any, max: Any, start: Optional[int] = None,
                      num: Optional[int] = None, withscores: bool = False) -> list[Any]:
        self._call("zrangebyscore")
        return self._by_score(name, min, max, start, num, withscores, desc=False)

    def zrevrangebyscore(self, name: Any, max: Any, min: Any, start: Optional[int] = None,
                         num: Optional[int] = None, withscores: bool = False) -> list[Any]:
        self._call("zrevrangebyscore")
        return self._by_score(name, min, max, start, num, withscores, desc=True)

    def _rank(self, name: Any, value: Any, desc: bool) -> Optional[int]:
        members = [m for m, _ in self._ordered(self._zset(name))]
        if desc:
            members.reverse()
        member = _enc(value)
        return members.index(member) if member in members else None

    def zrank(self, name: Any, value: Any) -> Optional[int]:
        self._call("zrank")
        return self._rank(name, value, desc=False)

    def zrevrank(self, name: Any, value: Any) -> Optional[int]:
        self._call("zrevrank")
        return self._rank(name, value, desc=True)

    def _replace_zset(self, name: Any, zset: dict[bytes, float]) -> None:
        if zset:
            self._write(_enc(name), zset)
        else:
            self._remove(_enc(name))

    def zrem(self, name: Any, *values: Any) -> int:
        self._call("zrem")
        zset = dict(self._zset(name))
        removed = sum(1 for v in values if zset.pop(_enc(v), None) is not None)
        self._replace_zset(name, zset)
        return removed

    def zremrangebyrank(self, name: Any, min: int, max: int) -> int:
        self._call("zremrangebyrank")
        zset = dict(self._zset(name))
        doomed = _slice(self._ordered(zset), min, max)
        for member, _ in doomed:
            del zset[member]
        self._replace_zset(name, zset)
        return len(doomed)

    def zremrangebyscore(self, name: Any, min: Any, max: Any) -> int:
        self._call("zremrangebyscore")
        low, high = _parse_bound(min), _parse_bound(max)
        zset = dict(self._zset(name))
        doomed = [m for m, s in zset.items() if _in_range(s, low, high)]
        for member in doomed:
            del zset[member]
        self._replace_zset(name, zset)
        return len(doomed)

    def _combine_zsets(self, dest: Any, keys: Any, aggregate: Optional[str], intersect: bool) -> int:
        weights = dict(keys) if isinstance(keys, dict) else {k: 1.0 for k in keys}
        pick = {"SUM": lambda a, b: a + b, "MIN": min, "MAX": max}[aggregate or "SUM"]
        result: Optional[dict[bytes, float]] = None
        for source, weight in weights.items():
            weighted = {m: s * weight for m, s in self._zset(source).items()}
            if result is None:
                result = weighted
            elif intersect:
                result = {m: pick(result[m], s) for m, s in weighted.items() if m in result}
            else:
                for member, score in weighted.items():
                    result[member] = pick(result[member], score) if member in result else score
        self._replace_zset(dest, result or {})
        return len(result or {})

    def zunionstore(self, dest: Any, keys: Any, aggregate: Optional[str] = None) -> int:
        self._call("zunionstore")
        return self._combine_zsets(dest, keys, aggregate, intersect=False)

    def zinterstore(self, dest: Any, keys: Any, aggregate: Optional[str] = None) -> int:
        self._call("zinterstore")
        return self._combine_zsets(dest, keys, aggregate, intersect=True)

    def zdiffstore(self, dest: Any, keys: list[Any]) -> int:
        self._call("zdiffstore")
        result = dict(self._zset(keys[0]))
        for other in keys[1:]:
            for member in self._zset(other):
                result.pop(member, None)
        self._replace_zset(dest, result)
        return len(result)

    # --------------------------------------------------------------- scripts

    def script_load(self, script: str) -> str:
        self._call("script_load")
        sha = hashlib.sha1(script.encode()).hexdigest()
        self.server.scripts[sha] = script.encode()
        return sha

    def script_exists(self, *shas: str) -> list[bool]:
        self._call("script_exists")
        return [sha in self.server.scripts for sha in shas]

    def evalsha(self, sha: str, numkeys: int, *keys_and_args: Any) -> Any:
        self._call("evalsha")
        body = self.server.scripts.get(sha)
        if body is None:
            raise redis_errors.NoScriptError("No matching script. Please use EVAL.")
        handler = self.server.script_handlers[body.decode()]
        encoded = [_enc(v) for v in keys_and_args]
        return handler(self, encoded[:numkeys], encoded[numkeys:])


# Redis rejects these while queuing when given no keys, which aborts the
# whole EXEC.
_VARIADIC_KEY_COMMANDS = {"delete": "del", "exists": "exists"}
_STORE_COMMANDS = {"zunionstore", "zinterstore", "zdiffstore"}


def _queue_error(name: str, args: tuple[Any, ...]) -> Optional[str]:
    if name in _VARIADIC_KEY_COMMANDS:
        keys: Any = args
    elif name in _STORE_COMMANDS:
        keys = args[1] if len(args) > 1 else ()
    else:
        return None
    if keys:
        return None
    return f"wrong number of arguments for '{_VARIADIC_KEY_COMMANDS.get(name, name)}' command"


class FakePipeline:
    """MULTI/EXEC pipeline with WATCH, queuing calls by attribute name."""

    def __init__(self, client: FakeRedis, transaction: bool) -> None:
        self.client = client
        self.transaction = transaction
        self.queue: list[tuple[str, tuple[Any, ...], dict[str, Any]]] = []
        self.queue_errors: list[redis_errors.ResponseError] = []
        self.watched: dict[bytes, int] = {}

    def watch(self, *names: Any) -> None:
        self.client._call("watch")
        self.watched = {_enc(n): self.client.server.versions.get(_enc(n), 0) for n in names}

    def multi(self) -> None:
        pass

    def reset(self) -> None:
        self.queue = []
        self.queue_errors = []
        self.watched = {}

    def __getattr__(self, name: str) -> Any:
        if name.startswith("_"):
            raise AttributeError(name)
        getattr(self.client, name)

        def queue(*args: Any, **kwargs: Any) -> FakePipeline:
            error = _queue_error(name, args)
            if error is not None:
                self.queue_errors.append(redis_errors.ResponseError(
                    f"Command # {len(self.queue) + 1} ({name.upper()}) of pipeline caused error: {error}"
                ))
            self.queue.append((name, args, kwargs))
            return self
        return queue

    def execute(self, raise_on_error: bool = True) -> list[Any]:
        server = self.client.server
        try:
            self.client._call("exec")
            if self.queue_errors:
                raise self.queue_errors[0]
            for key, version in self.watched.items():
                if server.versions.get(key, 0) != version:
                    raise redis_errors.WatchError("Watched variable changed.")
            results: list[Any] = []
            for name, args, kwargs in self.queue:
                try:
                    results.append(getattr(self.client, name)(*args, **kwargs))
                except redis_errors.ResponseError as e:
                    results.append(e)
            server.exec_count += 1
            if raise_on_error:
                for result in results:
                    if isinstance(result, Exception):
                        raise result
            return results
        finally:
            self.reset()


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def server() -> FakeServer:
    return FakeServer()


@pytest.fixture
def sleeps() -> list[float]:
    """Collects backoff sleeps instead of sleeping."""
    return []


@pytest.fixture
def pool(server: FakeServer) -> Iterator[ConnectionPool]:
    pool = ConnectionPool(RedisConfig(total_connections=2), client_factory=server.client)
    yield pool
    pool.close()


@pytest.fixture
def ctx(server: FakeServer, sleeps: list[float]) -> Iterator[RedisContext]:
    context = RedisContext(
        RedisConfig(namespace="test"),
        client_factory=server.client,
        sleep=sleeps.append,
    )
    yield context
    context.close()


@pytest.fixture
def plain_ctx(server: FakeServer, sleeps: list[float]) -> Iterator[RedisContext]:
    """Context without a namespace."""
    context = RedisContext(RedisConfig(), client_factory=server.client, sleep=sleeps.append)
    yield context
    context.close()
