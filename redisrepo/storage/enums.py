"""
Command option enums and their mapping onto redis-py arguments.

Each mapping is a pure function over a closed enum; unknown members are
impossible by construction, so every ``match`` is exhaustive.
"""

from __future__ import annotations

import math
from enum import Enum
from typing import Any


class When(Enum):
    """Condition for SET / ZADD."""
    ALWAYS = 0
    EXISTS = 1
    NOT_EXISTS = 2


class SortOrder(Enum):
    ASCENDING = 0
    DESCENDING = 1


class Exclude(Enum):
    """Which score-range bounds are exclusive."""
    NONE = 0
    START = 1
    STOP = 2
    BOTH = 3


class SetOperation(Enum):
    UNION = 0
    INTERSECT = 1
    DIFFERENCE = 2


class Aggregation(Enum):
    """How scores of members present in several sorted sets are combined."""
    SUM = 0
    MIN = 1
    MAX = 2


def when_kwargs(when: When) -> dict[str, Any]:
    """SET / ZADD condition flags."""
    match when:
        case When.ALWAYS:
            return {}
        case When.EXISTS:
            return {"xx": True}
        case When.NOT_EXISTS:
            return {"nx": True}


def is_descending(order: SortOrder) -> bool:
    match order:
        case SortOrder.ASCENDING:
            return False
        case SortOrder.DESCENDING:
            return True


def aggregate_name(aggregation: Aggregation) -> str:
    match aggregation:
        case Aggregation.SUM:
            return "SUM"
        case Aggregation.MIN:
            return "MIN"
        case Aggregation.MAX:
            return "MAX"


def format_score(score: float, exclusive: bool = False) -> str:
    """
    Render a score bound for ZRANGEBYSCORE-family commands.

    Infinite bounds render as ``-inf`` / ``+inf``; an exclusive finite
    bound gets the ``(`` prefix.
    """
    if math.isinf(score):
        return "+inf" if score > 0 else "-inf"
    text = repr(float(score))
    return f"({text}" if exclusive else text


def score_bounds(start: float, stop: float, exclude: Exclude = Exclude.NONE) -> tuple[str, str]:
    """Return ``(min, max)`` bound strings for a score range."""
    match exclude:
        case Exclude.NONE:
            return format_score(start), format_score(stop)
        case Exclude.START:
            return format_score(start, True), format_score(stop)
        case Exclude.STOP:
            return format_score(start), format_score(stop, True)
        case Exclude.BOTH:
            return format_score(start, True), format_score(stop, True)


__all__ = [
    "When",
    "SortOrder",
    "Exclude",
    "SetOperation",
    "Aggregation",
    "when_kwargs",
    "is_descending",
    "aggregate_name",
    "format_score",
    "score_bounds",
]
