"""
Unit Tests for metrics, errors and the in-memory sources and sinks
"""

import asyncio

import pytest

from sundial.errors import (
    CompileError,
    ForecastError,
    InsufficientData,
    QueryFailed,
    SourceUnavailable,
    SundialError,
    WindowOverflow,
)
from sundial.metrics import EngineMetrics
from sundial.sinks import CallbackSink, CollectingSink
from sundial.sources import IterableStreamingSource, ListSource, QueueSource
from sundial.types import DataPoint, EngineEvent, EventKind


class TestEngineMetrics:
    """Test metric collection"""

    def test_missing_samples_read_as_zero(self, metrics):
        assert metrics.value("sundial_points_ingested_total", stream="nope") == 0.0

    def test_counters_and_summary(self, metrics):
        metrics.points_ingested.labels(stream="a").inc(3)
        metrics.points_ingested.labels(stream="b").inc(2)
        metrics.windows_closed.labels(node="w").inc()

        assert metrics.value("sundial_points_ingested_total", stream="a") == 3
        summary = metrics.summary()
        assert summary["sundial_points_ingested"] == 5
        assert summary["sundial_windows_closed"] == 1
        assert "sundial_open_windows" not in summary

    def test_registries_are_per_query(self):
        first, second = EngineMetrics("one"), EngineMetrics("two")
        first.points_ingested.labels(stream="s").inc()

        assert second.value("sundial_points_ingested_total", stream="s") == 0

    def test_metrics_text(self, metrics):
        metrics.reconnects.labels(stream="s").inc()

        text = metrics.get_metrics_text()

        assert "sundial_source_reconnects_total" in text
        assert 'stream="s"' in text

    def test_events(self, metrics):
        metrics.record_event(EngineEvent(kind=EventKind.LATE_DATA, message="late", stream="s"))
        metrics.record_event(EngineEvent(kind=EventKind.RECONNECT, message="again", stream="s"))

        assert len(metrics.events()) == 2
        assert [e.message for e in metrics.events(EventKind.RECONNECT)] == ["again"]
        assert metrics.events()[0].to_dict()["kind"] == "late_data"

    def test_event_trail_is_bounded(self):
        metrics = EngineMetrics("bounded", max_events=3)
        for i in range(5):
            metrics.record_event(EngineEvent(kind=EventKind.BUFFER_DROP, message=str(i)))

        assert [e.message for e in metrics.events()] == ["2", "3", "4"]

    def test_sample_memory(self, metrics):
        rss = metrics.sample_memory()

        assert rss > 0
        assert metrics.value("sundial_process_memory_bytes") == rss


class TestErrors:
    """Test the error taxonomy"""

    def test_structured_dict(self):
        error = WindowOverflow("too many points", node_id="window_0", window=(0, 10), timestamp=7)

        assert error.to_dict() == {
            "kind": "window_overflow", "message": "too many points",
            "node_id": "window_0", "window": [0, 10], "timestamp": 7,
        }

    def test_query_failed_wraps_cause(self):
        cause = WindowOverflow("too many points", node_id="window_0", window=(0, 10))

        failed = QueryFailed(cause)

        assert failed.cause is cause
        assert failed.node_id == "window_0"
        assert "window_overflow" in failed.message
        data = failed.to_dict()
        assert data["fatal"] is True
        assert data["kind"] == "window_overflow"
        assert data["window"] == [0, 10]

    def test_hierarchy(self):
        assert issubclass(InsufficientData, ForecastError)
        for cls in (CompileError, SourceUnavailable, ForecastError, QueryFailed):
            assert issubclass(cls, SundialError)


class TestSources:
    """Test the in-memory sources"""

    def test_list_source_stamps_stream(self):
        source = ListSource("cpu", [DataPoint(0, 1.0), DataPoint(1, 2.0, stream="cpu")])

        assert [p.stream for p in source] == ["cpu", "cpu"]

    @pytest.mark.asyncio
    async def test_iterable_source_resumes(self):
        source = IterableStreamingSource("s", [DataPoint(t, 0.0) for t in range(3)])
        seen = []

        async def emit(point):
            seen.append(point.timestamp)
            if len(seen) == 2 and source.position == 1:
                raise SourceUnavailable("blip")

        with pytest.raises(SourceUnavailable):
            await source.subscribe(emit)
        await source.subscribe(emit)

        assert seen == [0, 1, 1, 2]

    @pytest.mark.asyncio
    async def test_queue_source_end_and_fail(self):
        source = QueueSource("s")
        seen = []

        async def emit(point):
            seen.append(point)

        source.push_nowait(DataPoint(1, 1.0))
        source.fail()
        with pytest.raises(SourceUnavailable):
            await asyncio.wait_for(source.subscribe(emit), timeout=1)

        await source.push(DataPoint(2, 2.0))
        source.end()
        await asyncio.wait_for(source.subscribe(emit), timeout=1)

        assert [p.timestamp for p in seen] == [1, 2]
        assert all(p.stream == "s" for p in seen)


class TestSinks:
    """Test the result sinks"""

    def test_collecting_and_callback(self, points):
        collected = CollectingSink("out")
        forwarded = []
        callback = CallbackSink(forwarded.append)

        for p in points([1, 2]):
            collected.emit(p)
            callback.emit(p)

        assert len(collected) == 2
        assert collected.results == forwarded
