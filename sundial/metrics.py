#!/usr/bin/env python3
"""
Metrics Collection for Sundial

Per-query Prometheus metrics plus an audit trail of engine events:
- Ingestion, late data, side-output evictions and buffer drops
- Window closures, evictions and open-window gauges per operator
- Forecast failures and durations per model kind
- Reconnects and backpressure timeouts
- Process memory (psutil)

Each query owns its own CollectorRegistry so concurrent queries never
share counters.
"""

import logging
import threading
from collections import deque
from typing import Any, Deque, Dict, List, Optional

import psutil
from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest

from .types import EngineEvent, EventKind

logger = logging.getLogger(__name__)

_EVENT_LOG_LEVELS = {
    EventKind.LATE_DATA: logging.DEBUG,
    EventKind.BUFFER_DROP: logging.DEBUG,
    EventKind.WINDOW_EVICTION: logging.WARNING,
    EventKind.BACKPRESSURE_TIMEOUT: logging.WARNING,
    EventKind.SOURCE_ERROR: logging.WARNING,
    EventKind.RECONNECT: logging.INFO,
    EventKind.STREAM_FAILED: logging.ERROR,
    EventKind.FORECAST_FAILURE: logging.WARNING,
    EventKind.STATE_CHANGE: logging.INFO,
}


class EngineMetrics:
    """
    Metrics and event recorder for one query.

    Counters are exposed through a private registry; ``value()`` reads a
    single sample back, mostly for tests and the CLI summary.
    """

    def __init__(self, query_name: str = "query", max_events: int = 10000):
        self.query_name = query_name
        self.registry = CollectorRegistry()
        self._events: Deque[EngineEvent] = deque(maxlen=max_events)
        self._lock = threading.Lock()
        self._process = psutil.Process()
        self._setup_prometheus_metrics()

    def _setup_prometheus_metrics(self):
        """Set up Prometheus metric definitions."""
        self.points_ingested = Counter(
            'sundial_points_ingested_total',
            'Points accepted from sources',
            ['stream'],
            registry=self.registry
        )
        self.points_invalid = Counter(
            'sundial_points_invalid_total',
            'Points rejected for non-finite values',
            ['stream'],
            registry=self.registry
        )
        self.points_late = Counter(
            'sundial_points_late_total',
            'Points diverted because their windows were already closed',
            ['node'],
            registry=self.registry
        )
        self.side_output_evicted = Counter(
            'sundial_side_output_evicted_total',
            'Late points pushed out of the bounded side output',
            ['node'],
            registry=self.registry
        )
        self.buffer_dropped = Counter(
            'sundial_buffer_dropped_total',
            'Points dropped by a full source buffer',
            ['stream', 'policy'],
            registry=self.registry
        )
        self.backpressure_timeouts = Counter(
            'sundial_backpressure_timeouts_total',
            'Producers blocked past the backpressure deadline',
            ['stream'],
            registry=self.registry
        )
        self.window_evictions = Counter(
            'sundial_window_evictions_total',
            'Points evicted from windows over the memory bound',
            ['node'],
            registry=self.registry
        )
        self.windows_closed = Counter(
            'sundial_windows_closed_total',
            'Window instances finalized',
            ['node'],
            registry=self.registry
        )
        self.results_emitted = Counter(
            'sundial_results_emitted_total',
            'Results delivered to sinks',
            ['kind'],
            registry=self.registry
        )
        self.forecast_failures = Counter(
            'sundial_forecast_failures_total',
            'Forecast invocations that produced a failure result',
            ['node', 'reason'],
            registry=self.registry
        )
        self.reconnects = Counter(
            'sundial_source_reconnects_total',
            'Source reconnect attempts',
            ['stream'],
            registry=self.registry
        )
        self.open_windows = Gauge(
            'sundial_open_windows',
            'Window instances currently open',
            ['node'],
            registry=self.registry
        )
        self.buffer_depth = Gauge(
            'sundial_buffer_depth',
            'Points waiting in a source buffer',
            ['stream'],
            registry=self.registry
        )
        self.watermark = Gauge(
            'sundial_watermark',
            'Current watermark per stream',
            ['stream'],
            registry=self.registry
        )
        self.process_memory = Gauge(
            'sundial_process_memory_bytes',
            'Resident memory of the engine process',
            registry=self.registry
        )
        self.closure_latency = Histogram(
            'sundial_window_closure_seconds',
            'Time spent finalizing closed windows',
            ['node'],
            registry=self.registry
        )
        self.forecast_duration = Histogram(
            'sundial_forecast_duration_seconds',
            'Forecast fit+predict duration',
            ['model'],
            registry=self.registry
        )

    def record_event(self, event: EngineEvent) -> None:
        """Append an event to the audit trail and log it."""
        with self._lock:
            self._events.append(event)
        level = _EVENT_LOG_LEVELS.get(event.kind, logging.INFO)
        logger.log(level, f"[{self.query_name}] {event.kind.value}: {event.message}")

    def events(self, kind: Optional[EventKind] = None) -> List[EngineEvent]:
        with self._lock:
            if kind is None:
                return list(self._events)
            return [e for e in self._events if e.kind == kind]

    def sample_memory(self) -> int:
        rss = self._process.memory_info().rss
        self.process_memory.set(rss)
        return rss

    def value(self, name: str, **labels: str) -> float:
        """Read back one sample; missing samples read as 0."""
        sample = self.registry.get_sample_value(name, labels or None)
        return sample if sample is not None else 0.0

    def get_metrics_text(self) -> str:
        """Get metrics in Prometheus text format."""
        return generate_latest(self.registry).decode('utf-8')

    def summary(self) -> Dict[str, Any]:
        """Totals per counter family, summed across labels."""
        totals: Dict[str, float] = {}
        for family in self.registry.collect():
            if family.type != 'counter':
                continue
            totals[family.name] = sum(
                s.value for s in family.samples if s.name.endswith('_total')
            )
        return totals
