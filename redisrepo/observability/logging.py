"""
Structured Logging

Library modules log through ``logging.getLogger(__name__)`` and never
install handlers. Applications that want one JSON object per line call
``setup_logging``; fields bound with ``log_context`` (for example the
``batch_id`` of a transaction) are merged into every record emitted
inside the block, across function calls on the same thread or task.
"""

from __future__ import annotations

import json
import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from enum import IntEnum
from typing import Any, Iterator, Optional, TextIO


class LogLevel(IntEnum):
    DEBUG = logging.DEBUG
    INFO = logging.INFO
    WARNING = logging.WARNING
    ERROR = logging.ERROR
    CRITICAL = logging.CRITICAL


_context_fields: ContextVar[dict[str, Any]] = ContextVar("redisrepo_log_fields", default={})

# Attributes every LogRecord carries; anything else came from ``extra=``
_STANDARD_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", (), None))
) | {"message", "asctime"}


class JsonFormatter(logging.Formatter):
    """One JSON object per record: core fields, context fields, extras."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "@timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(_context_fields.get())
        payload.update(
            (name, value) for name, value in vars(record).items()
            if name not in _STANDARD_ATTRS
        )
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


@contextmanager
def log_context(**fields: Any) -> Iterator[dict[str, Any]]:
    """
    Bind ``fields`` to every record logged inside the block.

    Nested blocks extend the outer fields; the outer set is restored on
    exit.

    Example:
        >>> with log_context(batch_id="3f2a9c"):
        ...     logger.info("submitting")
    """
    token = _context_fields.set({**_context_fields.get(), **fields})
    try:
        yield _context_fields.get()
    finally:
        _context_fields.reset(token)


def current_log_context() -> dict[str, Any]:
    return dict(_context_fields.get())


def setup_logging(
    level: LogLevel = LogLevel.INFO,
    json_output: bool = True,
    stream: Optional[TextIO] = None,
) -> None:
    """
    Replace the root handlers with a single stream handler.

    Args:
        level: Threshold for the root logger and the handler.
        json_output: ``JsonFormatter`` when True, plain text otherwise.
        stream: Defaults to stderr.
    """
    handler = logging.StreamHandler(stream if stream is not None else sys.stderr)
    handler.setFormatter(
        JsonFormatter() if json_output
        else logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s")
    )
    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(int(level))

    # connection-level chatter from redis-py
    logging.getLogger("redis").setLevel(logging.WARNING)
