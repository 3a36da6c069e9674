"""
Connection and Behaviour Settings
=================================

``RedisConfig`` is immutable and validated on construction, so a pool or
context built from it never has to re-check its inputs. Defaults come
from ``core.constants``.

Environment:
------------
``RedisConfig.from_env(prefix)`` reads ``<prefix>_<FIELD>`` for every
field, e.g. ``REDISREPO_HOST``, ``REDISREPO_TOTAL_CONNECTIONS``,
``REDISREPO_SSL``. Unset or empty variables keep the default.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, fields
from typing import Any, Dict, Optional

from redis.backoff import NoBackoff
from redis.retry import Retry

from redisrepo.core import constants as C
from redisrepo.core.errors import ConfigurationError

_TRUE_WORDS = frozenset({"1", "true", "yes", "on"})
_FALSE_WORDS = frozenset({"0", "false", "no", "off"})


@dataclass(frozen=True, slots=True)
class RedisConfig:
    """
    Settings shared by ``ConnectionPool`` and ``RedisContext``.

    Attributes:
        host / port / db / password / ssl: Where and how to connect.
        namespace: Prefix applied as ``ns=<namespace>:k=<key>``; empty
            disables prefixing.
        total_connections: Independent clients in the round-robin pool.
        default_retries: Attempts for idempotent commands.
        retry_delay_ms: Backoff unit; the i-th retry waits ``delay * i``.
        connect_timeout_ms / socket_timeout_ms: Passed to redis-py. A
            command exceeding the socket timeout fails with a retryable
            ``redis.exceptions.TimeoutError``.
        client_name: Sent as CLIENT SETNAME.

    Example:
        >>> RedisConfig(host="cache.internal", namespace="billing", total_connections=4)
    """

    host: str = C.DEFAULT_HOST
    port: int = C.DEFAULT_PORT
    password: Optional[str] = None
    db: int = 0
    namespace: str = ""
    total_connections: int = C.DEFAULT_TOTAL_CONNECTIONS
    default_retries: int = C.DEFAULT_RETRIES
    retry_delay_ms: int = C.RETRY_DELAY_MS
    connect_timeout_ms: int = C.CONNECT_TIMEOUT_MS
    socket_timeout_ms: int = C.SOCKET_TIMEOUT_MS
    ssl: bool = False
    client_name: Optional[str] = None

    def __post_init__(self) -> None:
        checks = (
            ("port", 1 <= self.port <= 65535, "must be in [1, 65535]"),
            ("db", 0 <= self.db <= 15, "must be in [0, 15]"),
            ("total_connections", self.total_connections >= 1, "must be greater than 0"),
            ("default_retries", self.default_retries >= 1, "must be at least 1"),
            ("retry_delay_ms", self.retry_delay_ms >= 0, "must be >= 0"),
            ("connect_timeout_ms", self.connect_timeout_ms > 0, "must be > 0"),
            ("socket_timeout_ms", self.socket_timeout_ms > 0, "must be > 0"),
        )
        for name, valid, reason in checks:
            if not valid:
                raise ConfigurationError.invalid(name, getattr(self, name), reason)

    @classmethod
    def from_env(cls, prefix: str = "REDISREPO") -> RedisConfig:
        """
        Build from ``<prefix>_<FIELD>`` environment variables.

        Raises:
            ConfigurationError: a variable does not parse, or the result
                fails validation.
        """
        overrides: dict[str, Any] = {}
        for item in fields(cls):
            raw = os.environ.get(f"{prefix}_{item.name.upper()}", "").strip()
            if not raw:
                continue
            overrides[item.name] = _parse_env(item.name, raw, item.default)
        return cls(**overrides)

    def get_connection_kwargs(self) -> Dict[str, Any]:
        """
        Keyword arguments for ``redis.Redis``.

        Replies stay as bytes; decoding belongs to the codec. redis-py's
        own reconnect-and-resend retry is switched off so that
        ``RetryPolicy`` is the only layer deciding how often a command is
        sent.
        """
        kwargs: Dict[str, Any] = dict(
            host=self.host,
            port=self.port,
            db=self.db,
            ssl=self.ssl,
            decode_responses=False,
            socket_connect_timeout=self.connect_timeout_ms / C.SECOND_MS,
            socket_timeout=self.socket_timeout_ms / C.SECOND_MS,
            retry=Retry(NoBackoff(), 0),
        )
        if self.password:
            kwargs["password"] = self.password
        if self.client_name:
            kwargs["client_name"] = self.client_name
        return kwargs


def _parse_env(name: str, raw: str, default: Any) -> Any:
    """Parse ``raw`` into the type of the field's default."""
    if isinstance(default, bool):
        word = raw.lower()
        if word in _TRUE_WORDS:
            return True
        if word in _FALSE_WORDS:
            return False
        raise ConfigurationError.invalid(name, raw, "expected a boolean")
    if isinstance(default, int):
        try:
            return int(raw)
        except ValueError:
            raise ConfigurationError.invalid(name, raw, "expected an integer") from None
    return raw
