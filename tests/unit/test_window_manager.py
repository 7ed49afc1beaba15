"""
Unit Tests for WindowManager

Tests window assignment, watermark-driven closure, late diversion,
session merging, the per-window memory bound and query-extent clipping.
"""

import pytest

from sundial.aggregation import requirements_for
from sundial.context import QueryContext, WindowOverflowPolicy
from sundial.errors import WindowOverflow
from sundial.execution.operator_graph import WindowKind, WindowParams
from sundial.types import DataPoint, EventKind, WindowBounds
from sundial.windows import WindowManager

FUNCTIONS = ["count", "mean"]


def manager(context, metrics, kind=WindowKind.TUMBLING, functions=FUNCTIONS, extent=None, **params):
    if kind != WindowKind.SESSION:
        params.setdefault("size", 10)
    return WindowManager("w", WindowParams(kind, **params), requirements_for(functions),
                         context, metrics, extent=extent)


class TestWindowClosure:
    """Test assignment and watermark-driven closure"""

    def test_close_until_emits_in_end_order(self, context, metrics, points):
        """Windows at or below the watermark close in ascending end order"""
        wm = manager(context, metrics)
        for p in points(range(25)):
            wm.assign(p)

        closed = wm.close_until(20)

        assert [w.bounds for w in closed] == [WindowBounds(0, 10), WindowBounds(10, 20)]
        assert [w.state.count for w in closed] == [10, 10]
        assert closed[0].state.aggregate("mean") == pytest.approx(4.5)
        assert wm.open_count == 1
        assert metrics.value("sundial_windows_closed_total", node="w") == 2

    def test_watermark_never_moves_back(self, context, metrics, points):
        wm = manager(context, metrics)
        for p in points(range(25)):
            wm.assign(p)
        wm.close_until(20)

        assert wm.close_until(5) == []
        assert wm.watermark == 20

    def test_closed_window_immutable(self, context, metrics, points):
        """A point behind the watermark is late and changes nothing"""
        wm = manager(context, metrics)
        for p in points(range(25)):
            wm.assign(p)
        closed = wm.close_until(20)

        assignment = wm.assign(DataPoint(5, 1000.0))

        assert assignment.late
        assert assignment.windows == []
        assert closed[0].state.count == 10
        assert closed[0].state.aggregate("mean") == pytest.approx(4.5)
        assert metrics.value("sundial_points_late_total", node="w") == 1

    def test_partially_closed_sliding_point_not_late(self, context, metrics):
        """A point with one open window left is assigned, not late"""
        wm = manager(context, metrics, WindowKind.SLIDING, slide=5)
        wm.assign(DataPoint(11, 1.0))
        wm.close_until(10)

        assignment = wm.assign(DataPoint(7, 2.0))

        assert not assignment.late
        assert assignment.windows == [WindowBounds(5, 15)]
        assert assignment.skipped == 1

    def test_close_all(self, context, metrics, points):
        wm = manager(context, metrics)
        for p in points([25, 3, 14]):
            wm.assign(p)

        closed = wm.close_all()

        assert [w.bounds.start for w in closed] == [0, 10, 20]
        assert not any(w.partial for w in closed)
        assert wm.open_count == 0
        assert wm.watermark == 30

    def test_close_all_partial(self, context, metrics, points):
        """Partial flush marks windows and leaves the watermark alone"""
        wm = manager(context, metrics)
        for p in points([1, 2]):
            wm.assign(p)

        closed = wm.close_all(partial=True)

        assert [w.partial for w in closed] == [True]
        assert wm.watermark == float("-inf")

    def test_discard_all(self, context, metrics, points):
        wm = manager(context, metrics, WindowKind.SLIDING, slide=5)
        for p in points(range(12)):
            wm.assign(p)

        assert wm.discard_all() == 4
        assert wm.open_count == 0
        assert metrics.value("sundial_open_windows", node="w") == 0

    def test_retract(self, context, metrics):
        """Retraction updates every window holding the point"""
        wm = manager(context, metrics, WindowKind.SLIDING, slide=5)
        point = DataPoint(7, 3.0)
        wm.assign(point)
        wm.assign(DataPoint(8, 5.0))

        assert wm.retract(point) == 2
        assert [w.state.count for w in wm.open_windows()] == [1, 1]

    def test_keyed_windows(self, context, metrics):
        """Partition keys get separate instances ordered by key"""
        wm = manager(context, metrics, key_by="host")
        wm.assign(DataPoint(1, 1.0, {"host": "b"}))
        wm.assign(DataPoint(2, 3.0, {"host": "a"}))
        wm.assign(DataPoint(3, 5.0, {"host": "a"}))

        closed = wm.close_all()

        assert [w.key for w in closed] == ["a", "b"]
        assert [w.state.aggregate("mean") for w in closed] == [4.0, 1.0]


class TestSessionWindows:
    """Test gap-based session windows"""

    def test_sessions_split_on_gap(self, context, metrics, points):
        wm = manager(context, metrics, WindowKind.SESSION, gap=5)
        for p in points([0, 2, 20]):
            wm.assign(p)

        assert [w.bounds for w in wm.open_windows()] == [WindowBounds(0, 7), WindowBounds(20, 25)]

    def test_bridging_point_merges_sessions(self, context, metrics, points):
        """An out-of-order point joining two sessions merges their state"""
        wm = manager(context, metrics, WindowKind.SESSION, gap=5)
        for p in points([0, 2, 10, 20]):
            wm.assign(p)
        assert wm.open_count == 3

        wm.assign(DataPoint(6, 6.0))

        windows = wm.open_windows()
        assert [w.bounds for w in windows] == [WindowBounds(0, 15), WindowBounds(20, 25)]
        assert windows[0].state.count == 4
        assert windows[0].state.aggregate("mean") == pytest.approx(4.5)

    def test_session_closure_and_late(self, context, metrics, points):
        wm = manager(context, metrics, WindowKind.SESSION, gap=5)
        for p in points([0, 2, 20]):
            wm.assign(p)

        closed = wm.close_until(10)
        assert [w.bounds for w in closed] == [WindowBounds(0, 7)]

        assert wm.assign(DataPoint(1, 1.0)).late
        assert not wm.assign(DataPoint(8, 1.0)).late


class TestWindowMemoryBound:
    """Test max_window_points enforcement"""

    def test_evict_oldest(self, metrics, points):
        """Overflow retracts the oldest point and records an event"""
        context = QueryContext(max_window_points=3)
        wm = manager(context, metrics)
        for p in points(range(5), values=[10, 20, 30, 40, 50]):
            wm.assign(p)

        closed = wm.close_all()

        assert closed[0].state.count == 3
        assert closed[0].state.aggregate("mean") == pytest.approx(40.0)
        assert metrics.value("sundial_window_evictions_total", node="w") == 2
        evictions = metrics.events(EventKind.WINDOW_EVICTION)
        assert [e.timestamp for e in evictions] == [0.0, 1.0]

    def test_fail(self, metrics, points):
        """FAIL mode raises a structured WindowOverflow"""
        context = QueryContext(max_window_points=3, window_overflow_policy=WindowOverflowPolicy.FAIL)
        wm = manager(context, metrics)
        for p in points(range(3)):
            wm.assign(p)

        with pytest.raises(WindowOverflow) as exc_info:
            wm.assign(DataPoint(3, 3.0))
        assert exc_info.value.node_id == "w"
        assert exc_info.value.window == (0, 10)
        assert exc_info.value.timestamp == 3


class TestQueryExtent:
    """Test clipping of grid windows to the query time range"""

    def test_sliding_hour_yields_eleven_windows(self, context, metrics, points):
        wm = manager(context, metrics, WindowKind.SLIDING, functions=["count"], slide=5, extent=(0, 60))
        for p in points(range(60)):
            wm.assign(p)

        closed = wm.close_all()

        assert len(closed) == 11
        assert [w.bounds.start for w in closed] == list(range(0, 55, 5))
        assert all(w.state.count == 10 for w in closed)

    def test_clipped_windows_not_late(self, context, metrics):
        wm = manager(context, metrics, WindowKind.SLIDING, slide=5, extent=(0, 60))

        assignment = wm.assign(DataPoint(2, 1.0))

        assert assignment.windows == [WindowBounds(0, 10)]
        assert not assignment.late

    def test_unclipped_includes_edge_windows(self, context, metrics, points):
        wm = manager(context, metrics, WindowKind.SLIDING, functions=["count"], slide=5)
        for p in points(range(60)):
            wm.assign(p)

        assert len(wm.close_all()) == 13
