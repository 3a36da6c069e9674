"""
Round-Robin Connection Pool
===========================

A fixed set of independent ``redis.Redis`` handles, built eagerly and
handed out in strict rotation.

Design Principles:
------------------
1. **Fail Fast**: every handle is verified with PING at construction;
   a failure raises immediately and is never retried
2. **Lock-Free**: ``acquire`` is ``next(counter) % N`` on an
   ``itertools.count``, whose ``__next__`` is atomic under the GIL
3. **Fixed Membership**: handles are never recreated; redis-py
   reconnects the underlying sockets on its own

Thread Safety:
--------------
- ``acquire`` may be called from any number of threads
- Each ``redis.Redis`` handle is itself thread-safe (it owns its own
  redis-py connection pool)
- ``close`` is idempotent
"""

from __future__ import annotations

import itertools
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import redis
from redis import exceptions as redis_errors

from redisrepo.core.config import RedisConfig
from redisrepo.core.errors import ConfigurationError, StoreConnectionError
from redisrepo.core.types import Err, Ok, Result

logger = logging.getLogger(__name__)

ClientFactory = Callable[..., "redis.Redis"]


@dataclass(frozen=True, slots=True)
class ConnectionSlot:
    """One pooled client handle and its position in the rotation."""
    index: int
    client: "redis.Redis"


class ConnectionPool:
    """
    Round-robin pool of independent Redis clients.

    Example:
        >>> with ConnectionPool(RedisConfig(total_connections=4)) as pool:
        ...     pool.acquire().ping()
    """

    __slots__ = ("_config", "_slots", "_counter", "_closed", "_close_lock")

    def __init__(
        self,
        config: Optional[RedisConfig] = None,
        *,
        size: Optional[int] = None,
        client_factory: Optional[ClientFactory] = None,
    ) -> None:
        """
        Build and verify every handle.

        Args:
            config: Connection settings (defaults to ``RedisConfig()``).
            size: Overrides ``config.total_connections``.
            client_factory: Callable receiving the redis-py kwargs and
                returning a client; defaults to ``redis.Redis``.

        Raises:
            ConfigurationError: size < 1 (before any connection is made).
            StoreConnectionError: a handle failed its initial PING.
        """
        self._config = config or RedisConfig()
        total = self._config.total_connections if size is None else size
        if total < 1:
            raise ConfigurationError.invalid("total_connections", total, "must be greater than 0")

        factory = client_factory or redis.Redis
        kwargs = self._config.get_connection_kwargs()

        slots: list[ConnectionSlot] = []
        for index in range(total):
            try:
                client = factory(**kwargs)
                client.ping()
            except (redis_errors.RedisError, OSError) as e:
                logger.error(
                    f"Connection {index + 1}/{total} to "
                    f"{self._config.host}:{self._config.port} failed: {e!r}"
                )
                for slot in slots:
                    slot.client.close()
                raise StoreConnectionError.connection_failed(
                    self._config.host, self._config.port, cause=e
                ) from e
            slots.append(ConnectionSlot(index, client))

        self._slots: tuple[ConnectionSlot, ...] = tuple(slots)
        self._counter = itertools.count()
        self._closed = False
        self._close_lock = threading.Lock()
        logger.info(
            f"Connection pool ready: {total} connection(s) to "
            f"{self._config.host}:{self._config.port}"
        )

    # -------------------------------------------------------------------------
    # ACCESS
    # -------------------------------------------------------------------------

    def acquire(self) -> "redis.Redis":
        """
        Next handle in rotation. Never blocks.

        Raises:
            StoreConnectionError: pool is closed.
        """
        if self._closed:
            raise StoreConnectionError.pool_closed()
        return self._slots[next(self._counter) % len(self._slots)].client

    @property
    def size(self) -> int:
        return len(self._slots)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def config(self) -> RedisConfig:
        return self._config

    # -------------------------------------------------------------------------
    # LIFECYCLE
    # -------------------------------------------------------------------------

    def health_check(self) -> Result[Dict[str, Any], str]:
        """
        PING every handle.

        Returns:
            Ok with per-connection status, Err naming the failed slots.
        """
        if self._closed:
            return Err("Connection pool is closed")

        status: Dict[str, Any] = {}
        failed: list[str] = []
        for slot in self._slots:
            try:
                slot.client.ping()
                status[f"connection_{slot.index}"] = "ok"
            except (redis_errors.RedisError, OSError) as e:
                status[f"connection_{slot.index}"] = repr(e)
                failed.append(str(slot.index))

        if failed:
            return Err(f"Health check failed for connection(s): {', '.join(failed)}")
        return Ok({"connections": len(self._slots), "status": status})

    def close(self) -> None:
        """Dispose every handle. Safe to call multiple times."""
        with self._close_lock:
            if self._closed:
                return
            self._closed = True
        for slot in self._slots:
            slot.client.close()
        logger.info(f"Connection pool closed ({len(self._slots)} connection(s))")

    def __enter__(self) -> ConnectionPool:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def __repr__(self) -> str:
        return (
            f"ConnectionPool(host={self._config.host!r}, port={self._config.port}, "
            f"size={len(self._slots)}, closed={self._closed})"
        )
