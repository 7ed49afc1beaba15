"""
Unit Tests for incremental aggregation

Tests exact summation, order statistics, least-squares trend state and
the per-window AggregationState (add, retract, merge).
"""

import math
import random

import numpy as np
import pytest

from sundial.aggregation import (
    AggregationState,
    ExactSum,
    OrderedValues,
    TrendAccumulator,
    parse_function,
    requirements_for,
)
from sundial.types import DataPoint

ALL_FUNCTIONS = ["count", "sum", "mean", "min", "max", "median", "p90"]


def shuffled(values, seed):
    values = list(values)
    random.Random(seed).shuffle(values)
    return values


class TestParseFunction:
    """Test aggregate function names"""

    def test_simple_functions(self):
        assert parse_function("mean") == ("mean", None)
        assert parse_function(" COUNT ") == ("count", None)

    def test_percentiles(self):
        assert parse_function("median") == ("percentile", 50.0)
        assert parse_function("p95") == ("percentile", 95.0)
        assert parse_function("p99.9") == ("percentile", 99.9)

    def test_unknown(self):
        for name in ("mode", "p101", "p", "avg"):
            with pytest.raises(ValueError):
                parse_function(name)


class TestExactSum:
    """Test order-independent summation"""

    def test_matches_fsum_for_any_order(self):
        """Catastrophic cancellation does not depend on arrival order"""
        values = [1e16, 1.0, -1e16, 3.14159, 1e-8, -2.5, 7e15, -7e15, 0.1, 0.2]
        expected = math.fsum(values)

        for seed in range(20):
            total = ExactSum()
            for v in shuffled(values, seed):
                total.add(v)
            assert total.value == expected

    def test_retract_is_exact(self):
        """Retraction leaves exactly the remaining sum"""
        total = ExactSum()
        for v in [0.1] * 10 + [1e20, -3.0]:
            total.add(v)
        total.retract(1e20)
        total.retract(-3.0)

        assert total.value == math.fsum([0.1] * 10)

    def test_merge(self):
        a, b = ExactSum(), ExactSum()
        for v in (0.1, 0.2):
            a.add(v)
        for v in (0.3, 1e-17):
            b.add(v)
        a.merge(b)

        assert a.value == math.fsum([0.1, 0.2, 0.3, 1e-17])


class TestOrderedValues:
    """Test the sorted multiset"""

    def test_percentiles_match_numpy(self):
        """Linear interpolation between closest ranks"""
        rng = random.Random(3)
        values = [rng.uniform(-100, 100) for _ in range(101)]
        ordered = OrderedValues()
        for v in values:
            ordered.add(v)

        for q in (0, 1, 25, 50, 90, 99, 100):
            assert ordered.percentile(q) == pytest.approx(float(np.percentile(values, q)))
        assert ordered.min == min(values)
        assert ordered.max == max(values)

    def test_retract(self):
        ordered = OrderedValues()
        for v in (5, 1, 3, 3):
            ordered.add(v)
        ordered.retract(3)

        assert len(ordered) == 3
        assert ordered.percentile(50) == 3
        with pytest.raises(KeyError):
            ordered.retract(42)

    def test_empty(self):
        ordered = OrderedValues()
        assert ordered.min is None
        assert ordered.percentile(50) is None


class TestTrendAccumulator:
    """Test least-squares trend state"""

    def test_exact_line(self):
        trend = TrendAccumulator()
        for t in range(10):
            trend.add(t, 2 * t + 5)
        line = trend.line()

        assert line.slope == pytest.approx(2.0)
        assert line.intercept == pytest.approx(5.0)
        assert line.r_squared == pytest.approx(1.0)
        assert line.count == 10

    def test_large_timestamps_with_origin(self):
        """Shifting by the origin keeps epoch-scale timestamps accurate"""
        origin = 1.7e9
        trend = TrendAccumulator(origin=origin)
        for t in range(60):
            trend.add(origin + t, 0.5 * t + 3)
        line = trend.line()

        assert line.slope == pytest.approx(0.5, rel=1e-9)
        assert line.at(origin + 100) == pytest.approx(53.0, rel=1e-6)

    def test_degenerate(self):
        """Fewer than two distinct timestamps give no line"""
        trend = TrendAccumulator()
        trend.add(1, 1)
        assert trend.line().slope is None

        trend.add(1, 2)
        assert trend.line().slope is None
        assert trend.line().at(5) is None

    def test_retract_and_merge(self):
        a = TrendAccumulator()
        b = TrendAccumulator()
        for t in range(5):
            a.add(t, 3 * t)
        for t in range(5, 10):
            b.add(t, 3 * t)
        a.add(100, -1000)
        a.retract(100, -1000)
        a.merge(b)

        assert a.line().slope == pytest.approx(3.0)
        with pytest.raises(ValueError):
            a.merge(TrendAccumulator(origin=1.0))


class TestAggregationState:
    """Test per-window state"""

    def make_points(self, n=50, seed=11):
        rng = random.Random(seed)
        return [DataPoint(float(i), rng.uniform(0, 1000)) for i in range(n)]

    def test_aggregates_match_rescan(self):
        """Incremental results equal a full recomputation"""
        pts = self.make_points()
        state = AggregationState(requirements_for(ALL_FUNCTIONS))
        for p in pts:
            state.add(p)
        values = [p.value for p in pts]
        result = state.aggregates(ALL_FUNCTIONS)

        assert result["count"] == 50.0
        assert result["sum"] == math.fsum(values)
        assert result["mean"] == pytest.approx(sum(values) / 50)
        assert result["min"] == min(values)
        assert result["max"] == max(values)
        assert result["median"] == pytest.approx(float(np.median(values)))
        assert result["p90"] == pytest.approx(float(np.percentile(values, 90)))

    def test_permutation_stable(self):
        """Every arrival order yields identical results"""
        pts = self.make_points()
        reference = None
        for seed in range(10):
            state = AggregationState(requirements_for(ALL_FUNCTIONS))
            for p in shuffled(pts, seed):
                state.add(p)
            result = state.aggregates(ALL_FUNCTIONS)
            if reference is None:
                reference = result
            assert result == reference

    def test_retract_symmetric_to_add(self):
        """Retracting points equals never having added them"""
        pts = self.make_points(10)
        full = AggregationState(requirements_for(ALL_FUNCTIONS, trend=True, buffer=True))
        for p in pts:
            full.add(p)
        for p in pts[:4]:
            full.retract(p)

        fresh = AggregationState(requirements_for(ALL_FUNCTIONS, trend=True, buffer=True))
        for p in pts[4:]:
            fresh.add(p)

        assert full.aggregates(ALL_FUNCTIONS) == fresh.aggregates(ALL_FUNCTIONS)
        assert full.points == fresh.points
        assert full.trend().slope == pytest.approx(fresh.trend().slope)

    def test_merge(self):
        """Merging two states equals one state over both"""
        pts = self.make_points(20)
        left = AggregationState(requirements_for(ALL_FUNCTIONS, buffer=True))
        right = AggregationState(requirements_for(ALL_FUNCTIONS, buffer=True))
        for p in pts[10:]:
            left.add(p)
        for p in pts[:10]:
            right.add(p)
        left.merge(right)

        both = AggregationState(requirements_for(ALL_FUNCTIONS, buffer=True))
        for p in pts:
            both.add(p)
        assert left.aggregates(ALL_FUNCTIONS) == both.aggregates(ALL_FUNCTIONS)
        assert [p.timestamp for p in left.points] == [p.timestamp for p in pts]

    def test_empty_window(self):
        state = AggregationState(requirements_for(ALL_FUNCTIONS))

        assert state.aggregate("count") == 0.0
        assert state.aggregate("sum") == 0.0
        assert state.aggregate("mean") is None
        assert state.aggregate("max") is None

    def test_only_required_structures(self):
        """Mean-only windows keep no ordered multiset or buffer"""
        state = AggregationState(requirements_for(["mean"]))
        state.add(DataPoint(0, 1.0))

        assert not requirements_for(["mean"]).ordered
        assert requirements_for(["p50"]).ordered
        assert state.points == ()
        assert state.oldest() is None
