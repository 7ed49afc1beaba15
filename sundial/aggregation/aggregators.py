#!/usr/bin/env python3
"""
Incremental aggregators.

Every aggregator supports add / retract / merge so window state can be
maintained per point without rescans:
- ExactSum: Shewchuk partials; result is the correctly rounded exact sum,
  independent of arrival order, and retraction is exact
- OrderedValues: sorted multiset (bisect) for min/max/median/percentiles
- TrendAccumulator: least-squares sums for slope/intercept
"""

import math
import re
from bisect import bisect_left, insort
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

_PERCENTILE_RE = re.compile(r'^p(\d{1,3}(?:\.\d+)?)$')

SIMPLE_FUNCTIONS = ('count', 'sum', 'mean', 'min', 'max', 'median')


def parse_function(name: str) -> Tuple[str, Optional[float]]:
    """
    Parse an aggregate function name.

    Returns:
        (kind, quantile) where quantile is only set for percentiles

    Raises:
        ValueError: For unknown names or out-of-range percentiles
    """
    name = name.strip().lower()
    if name in SIMPLE_FUNCTIONS:
        if name == 'median':
            return ('percentile', 50.0)
        return (name, None)
    match = _PERCENTILE_RE.match(name)
    if match:
        q = float(match.group(1))
        if 0.0 <= q <= 100.0:
            return ('percentile', q)
    raise ValueError(f"Unknown aggregate function {name!r}")


class ExactSum:
    """Running sum kept as non-overlapping partials (msum recipe)."""

    __slots__ = ('_partials',)

    def __init__(self):
        self._partials: List[float] = []

    def add(self, x: float) -> None:
        partials = self._partials
        i = 0
        for y in partials:
            if abs(x) < abs(y):
                x, y = y, x
            hi = x + y
            lo = y - (hi - x)
            if lo:
                partials[i] = lo
                i += 1
            x = hi
        partials[i:] = [x]

    def retract(self, x: float) -> None:
        self.add(-x)

    def merge(self, other: 'ExactSum') -> None:
        for partial in other._partials:
            self.add(partial)

    @property
    def value(self) -> float:
        return math.fsum(self._partials)

    def copy(self) -> 'ExactSum':
        clone = ExactSum()
        clone._partials = list(self._partials)
        return clone


class OrderedValues:
    """Sorted multiset supporting insert, retract and order statistics."""

    __slots__ = ('_values',)

    def __init__(self):
        self._values: List[float] = []

    def __len__(self) -> int:
        return len(self._values)

    def add(self, x: float) -> None:
        insort(self._values, x)

    def retract(self, x: float) -> None:
        index = bisect_left(self._values, x)
        if index == len(self._values) or self._values[index] != x:
            raise KeyError(f"Value {x} not present")
        del self._values[index]

    def merge(self, other: 'OrderedValues') -> None:
        self._values = sorted(self._values + other._values)

    @property
    def min(self) -> Optional[float]:
        return self._values[0] if self._values else None

    @property
    def max(self) -> Optional[float]:
        return self._values[-1] if self._values else None

    def percentile(self, q: float) -> Optional[float]:
        """Linear interpolation between closest ranks (numpy's default)."""
        values = self._values
        if not values:
            return None
        position = (len(values) - 1) * (q / 100.0)
        lower = math.floor(position)
        upper = math.ceil(position)
        if lower == upper:
            return values[lower]
        fraction = position - lower
        return values[lower] + (values[upper] - values[lower]) * fraction


@dataclass(frozen=True)
class TrendLine:
    """Least-squares line ``value = slope * t + intercept`` over a window."""
    slope: Optional[float]
    intercept: Optional[float]
    r_squared: Optional[float]
    count: int
    projection: Tuple[Tuple[float, float], ...] = ()

    def at(self, timestamp: float) -> Optional[float]:
        if self.slope is None:
            return None
        return self.slope * timestamp + self.intercept

    def to_dict(self) -> Dict[str, Any]:
        return {
            'slope': self.slope,
            'intercept': self.intercept,
            'r_squared': self.r_squared,
            'count': self.count,
            'projection': [list(p) for p in self.projection],
        }


class TrendAccumulator:
    """
    Sums for an ordinary least-squares fit.

    Timestamps are shifted by ``origin`` before squaring to keep the
    normal equations well conditioned for large epoch values.
    """

    __slots__ = ('origin', 'n', '_st', '_sv', '_stt', '_stv', '_svv')

    def __init__(self, origin: float = 0.0):
        self.origin = origin
        self.n = 0
        self._st = ExactSum()
        self._sv = ExactSum()
        self._stt = ExactSum()
        self._stv = ExactSum()
        self._svv = ExactSum()

    def _update(self, timestamp: float, value: float, sign: int) -> None:
        t = timestamp - self.origin
        self.n += sign
        self._st.add(sign * t)
        self._sv.add(sign * value)
        self._stt.add(sign * t * t)
        self._stv.add(sign * t * value)
        self._svv.add(sign * value * value)

    def add(self, timestamp: float, value: float) -> None:
        self._update(timestamp, value, 1)

    def retract(self, timestamp: float, value: float) -> None:
        self._update(timestamp, value, -1)

    def merge(self, other: 'TrendAccumulator') -> None:
        if other.origin != self.origin:
            raise ValueError("Cannot merge trend state with different origins")
        self.n += other.n
        self._st.merge(other._st)
        self._sv.merge(other._sv)
        self._stt.merge(other._stt)
        self._stv.merge(other._stv)
        self._svv.merge(other._svv)

    def line(self) -> TrendLine:
        n = self.n
        if n < 2:
            return TrendLine(None, None, None, n)

        st, sv = self._st.value, self._sv.value
        denom_t = n * self._stt.value - st * st
        if denom_t <= 0:
            # All points share one timestamp
            return TrendLine(None, None, None, n)

        cov = n * self._stv.value - st * sv
        slope = cov / denom_t
        intercept_rel = (sv - slope * st) / n
        intercept = intercept_rel - slope * self.origin

        denom_v = n * self._svv.value - sv * sv
        r_squared = (cov * cov) / (denom_t * denom_v) if denom_v > 0 else 1.0
        return TrendLine(slope, intercept, min(1.0, r_squared), n)
