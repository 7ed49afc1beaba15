#!/usr/bin/env python3
"""
Per-window aggregation state.

A window instance owns exactly one AggregationState. Which running
structures it carries is decided once per window operator from the
needs of its downstream operators (StateRequirements), so a window
feeding only MEAN never pays for an ordered multiset.
"""

from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, FrozenSet, Iterable, Optional, Tuple

from ..types import DataPoint
from .aggregators import ExactSum, OrderedValues, TrendAccumulator, TrendLine, parse_function


@dataclass(frozen=True)
class StateRequirements:
    """What a window operator's consumers need from its state."""
    functions: FrozenSet[str] = frozenset()
    trend: bool = False
    buffer: bool = False

    @property
    def ordered(self) -> bool:
        return any(parse_function(f)[0] in ('min', 'max', 'percentile') for f in self.functions)

    def union(self, other: 'StateRequirements') -> 'StateRequirements':
        return StateRequirements(
            functions=self.functions | other.functions,
            trend=self.trend or other.trend,
            buffer=self.buffer or other.buffer,
        )


class AggregationState:
    """
    Running statistics for the points currently assigned to one window.

    Invariant: every structure reflects exactly the points added and not
    yet retracted.
    """

    __slots__ = ('requirements', 'count', '_sum', '_ordered', '_trend', '_points')

    def __init__(self, requirements: StateRequirements, trend_origin: float = 0.0):
        self.requirements = requirements
        self.count = 0
        self._sum = ExactSum()
        self._ordered: Optional[OrderedValues] = OrderedValues() if requirements.ordered else None
        self._trend: Optional[TrendAccumulator] = (
            TrendAccumulator(trend_origin) if requirements.trend else None
        )
        self._points: Optional[Deque[DataPoint]] = deque() if requirements.buffer else None

    def add(self, point: DataPoint) -> None:
        self.count += 1
        self._sum.add(point.value)
        if self._ordered is not None:
            self._ordered.add(point.value)
        if self._trend is not None:
            self._trend.add(point.timestamp, point.value)
        if self._points is not None:
            self._points.append(point)

    def retract(self, point: DataPoint) -> None:
        """Remove a previously added point, symmetric to add()."""
        if self._points is not None:
            self._points.remove(point)
        if self._ordered is not None:
            self._ordered.retract(point.value)
        self.count -= 1
        self._sum.retract(point.value)
        if self._trend is not None:
            self._trend.retract(point.timestamp, point.value)

    def merge(self, other: 'AggregationState') -> None:
        """Fold another window's state into this one (session merges)."""
        self.count += other.count
        self._sum.merge(other._sum)
        if self._ordered is not None:
            self._ordered.merge(other._ordered)
        if self._trend is not None:
            self._trend.merge(other._trend)
        if self._points is not None:
            merged = sorted(list(self._points) + list(other._points), key=lambda p: p.timestamp)
            self._points = deque(merged)

    def oldest(self) -> Optional[DataPoint]:
        """Earliest-arrived point still held (requires a buffer)."""
        if not self._points:
            return None
        return self._points[0]

    @property
    def points(self) -> Tuple[DataPoint, ...]:
        return tuple(self._points) if self._points is not None else ()

    @property
    def sum(self) -> float:
        return self._sum.value

    def aggregate(self, function: str) -> Optional[float]:
        kind, q = parse_function(function)
        if kind == 'count':
            return float(self.count)
        if kind == 'sum':
            return self._sum.value
        if self.count == 0:
            return None
        if kind == 'mean':
            return self._sum.value / self.count
        if kind == 'min':
            return self._ordered.min
        if kind == 'max':
            return self._ordered.max
        return self._ordered.percentile(q)

    def aggregates(self, functions: Iterable[str]) -> Dict[str, Any]:
        return {fn: self.aggregate(fn) for fn in functions}

    def trend(self) -> TrendLine:
        return self._trend.line()


def requirements_for(functions: Iterable[str] = (), trend: bool = False,
                     buffer: bool = False) -> StateRequirements:
    return StateRequirements(frozenset(functions), trend, buffer)
