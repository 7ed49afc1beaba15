#!/usr/bin/env python3
"""
Dataflow Executor

Synchronous operator core shared by the batch and streaming schedulers.
It exclusively owns the window state of the operators it drives:
- Validates points and tracks per-stream watermarks
- Routes points through time-range and filter checks into window managers
- Closes windows as operator watermarks advance
- Fires aggregate, trend and forecast operators on each closed window
- Delivers WindowResults to sinks in window-end order
"""

import logging
import math
import operator
import time
from collections import deque
from typing import Any, Callable, Deque, Dict, Iterable, List, Mapping, Optional, Set, Tuple

from ..aggregation import StateRequirements, TrendLine
from ..context import CancelPolicy, LateDataPolicy, QueryContext
from ..execution.operator_graph import OperatorGraph, OperatorNode, OperatorType, Predicate
from ..forecast import ForecastInvoker, ModelRegistry
from ..metrics import EngineMetrics
from ..sinks import CollectingSink, Sink
from ..types import (
    DataPoint,
    EngineEvent,
    EventKind,
    ResultKind,
    WindowResult,
    result_sort_key,
)
from ..windows import ClosedWindow, WindowManager
from .watermark import WatermarkTracker

logger = logging.getLogger(__name__)

_COMPARATORS: Dict[str, Callable[[Any, Any], bool]] = {
    '==': operator.eq,
    '!=': operator.ne,
    '<': operator.lt,
    '<=': operator.le,
    '>': operator.gt,
    '>=': operator.ge,
    'in': lambda left, right: left in right,
}

_RESULT_KINDS = {
    OperatorType.AGGREGATE: ResultKind.AGGREGATE,
    OperatorType.TREND: ResultKind.TREND,
    OperatorType.FORECAST: ResultKind.FORECAST,
}


def matches(predicate: Predicate, point: DataPoint) -> bool:
    """Evaluate one filter clause; a missing tag never matches."""
    if predicate.field == 'value':
        left = point.value
    elif predicate.field == 'timestamp':
        left = point.timestamp
    else:
        name = predicate.field[len('tag:'):]
        if name not in point.tags:
            return False
        left = point.tags[name]
    try:
        return _COMPARATORS[predicate.op](left, predicate.operand)
    except TypeError:
        return False


def default_sinks(graph: OperatorGraph, nodes: Optional[Iterable[OperatorNode]] = None) -> Dict[str, Sink]:
    """One CollectingSink per sink operator."""
    nodes = graph.sinks() if nodes is None else [n for n in nodes if n.is_sink()]
    return {n.node_id: CollectingSink(n.params.name) for n in nodes}


def deliver(graph: OperatorGraph, sinks: Mapping[str, Sink], results: Iterable[WindowResult]) -> None:
    """Hand results to every sink operator downstream of their producer."""
    for result in results:
        for sink_node in graph.downstream_of(result.operator_id):
            sink = sinks.get(sink_node.node_id)
            if sink is not None:
                sink.emit(result)


class DataflowExecutor:
    """
    Drives one set of operators (a whole graph or one independent branch).

    Not thread-safe: an executor and its window state belong to exactly
    one execution unit.
    """

    def __init__(
        self,
        graph: OperatorGraph,
        context: QueryContext,
        metrics: EngineMetrics,
        sinks: Optional[Mapping[str, Sink]] = None,
        registry: Optional[ModelRegistry] = None,
        nodes: Optional[Iterable[OperatorNode]] = None,
        deliver_results: bool = True,
        retain: Optional[int] = None,
    ):
        """
        Initialize the executor.

        Args:
            graph: Validated operator graph
            context: Query context
            metrics: Query metrics
            sinks: Sink per sink-operator id (CollectingSinks by default)
            registry: Forecast model registry
            nodes: Subset of operators to drive (default: all)
            deliver_results: Emit to sinks immediately; when False the caller
                collects ``emitted`` and delivers after merging
            retain: Keep only the most recent results and side-output points
                (default: keep everything)
        """
        self.graph = graph
        self.context = context
        self.metrics = metrics
        self.deliver_results = deliver_results

        self._nodes: List[OperatorNode] = list(nodes) if nodes is not None else list(graph.topological_order())
        node_ids = {n.node_id for n in self._nodes}
        self.sinks: Mapping[str, Sink] = sinks if sinks is not None else default_sinks(graph, self._nodes)

        self._sources: Dict[str, OperatorNode] = {
            n.params.stream: n for n in self._nodes if n.is_source()
        }
        self._managers: Dict[str, WindowManager] = {}
        self._window_streams: Dict[str, Set[str]] = {}
        for node in self._nodes:
            if node.operator_type != OperatorType.WINDOW:
                continue
            consumers = [d for d in graph.downstream_of(node.node_id) if d.node_id in node_ids]
            upstream = graph.upstream_sources(node.node_id)
            self._managers[node.node_id] = WindowManager(
                node.node_id, node.params, _requirements(consumers), context, metrics,
                extent=_extent(upstream),
            )
            self._window_streams[node.node_id] = {s.params.stream for s in upstream}

        self.tracker = WatermarkTracker(
            self._sources,
            lateness=context.lateness,
            time_unit=graph.time_unit,
            clock=context.clock,
            advance_on_idle=context.advance_on_idle,
            metrics=metrics,
        )
        self.invoker = ForecastInvoker(context, metrics, registry)

        self.emitted: Deque[WindowResult] = deque(maxlen=retain)
        self.late_points: Deque[DataPoint] = deque(maxlen=retain)

    @property
    def streams(self) -> List[str]:
        return sorted(self._sources)

    @property
    def managers(self) -> Mapping[str, WindowManager]:
        return self._managers

    def accept(self, point: DataPoint) -> bool:
        """
        Validate an incoming point and advance its stream's watermark.

        Points from unknown streams and non-finite values are rejected.
        """
        if point.stream not in self._sources:
            logger.warning(f"Dropping point for unknown stream {point.stream!r}")
            return False
        if not (math.isfinite(point.value) and math.isfinite(point.timestamp)):
            self.metrics.points_invalid.labels(stream=point.stream).inc()
            logger.warning(f"Dropping non-finite point on {point.stream}: "
                           f"({point.timestamp}, {point.value})")
            return False
        self.metrics.points_ingested.labels(stream=point.stream).inc()
        self.tracker.observe(point.stream, point.timestamp)
        return True

    def route(self, point: DataPoint) -> None:
        """Push an accepted point through filters into window operators."""
        source = self._sources[point.stream]
        time_range = source.params.time_range
        if time_range is not None and not time_range.contains(point.timestamp):
            return
        visited: Set[str] = set()
        self._route_from(source, point, visited)

    def _route_from(self, node: OperatorNode, point: DataPoint, visited: Set[str]) -> None:
        for downstream in self.graph.downstream_of(node.node_id):
            if downstream.node_id in visited:
                continue
            if downstream.operator_type == OperatorType.FILTER:
                if all(matches(p, point) for p in downstream.params.predicates):
                    self._route_from(downstream, point, visited)
            elif downstream.operator_type == OperatorType.WINDOW:
                visited.add(downstream.node_id)
                manager = self._managers.get(downstream.node_id)
                if manager is None:
                    continue
                assignment = manager.assign(point)
                if assignment.late:
                    self._late(downstream.node_id, point, manager.watermark)

    def _late(self, node_id: str, point: DataPoint, watermark: float) -> None:
        if self.context.late_data_policy == LateDataPolicy.SIDE_OUTPUT:
            if len(self.late_points) == self.late_points.maxlen:
                self.metrics.side_output_evicted.labels(node=node_id).inc()
            self.late_points.append(point)
        self.metrics.record_event(EngineEvent(
            kind=EventKind.LATE_DATA,
            message=f"Point at {point.timestamp} is behind watermark {watermark}",
            stream=point.stream,
            node_id=node_id,
            timestamp=point.timestamp,
            detail={'policy': self.context.late_data_policy.value, 'watermark': watermark},
        ))

    def process(self, point: DataPoint) -> List[WindowResult]:
        """Accept, route and then close whatever the new watermark allows."""
        if self.accept(point):
            self.route(point)
        return self.advance()

    def advance(self, limit: Optional[float] = None) -> List[WindowResult]:
        """
        Close every window at or below its operator watermark.

        Args:
            limit: Never close past this timestamp, even if the watermark has
                (points released but not yet routed are still at or after it)

        Nothing closes once cancellation is requested; in-flight windows are
        left to the cancel policy.
        """
        results: List[WindowResult] = []
        for node_id, manager in self._managers.items():
            if self.context.cancelled:
                break
            watermark = self.tracker.combined(self._window_streams[node_id])
            if limit is not None:
                watermark = min(watermark, limit)
            if watermark <= manager.watermark:
                continue
            results.extend(self._fire(node_id, manager.close_until(watermark)))
        return self._emit(results)

    def finish(self) -> List[WindowResult]:
        """End of input: close every remaining window in end order."""
        results: List[WindowResult] = []
        for node_id, manager in self._managers.items():
            results.extend(self._fire(node_id, manager.close_all()))
        return self._emit(results)

    def cancel(self) -> List[WindowResult]:
        """Apply the cancel policy to in-flight windows."""
        if self.context.cancel_policy == CancelPolicy.DISCARD:
            for manager in self._managers.values():
                manager.discard_all()
            return []
        results: List[WindowResult] = []
        for node_id, manager in self._managers.items():
            results.extend(self._fire(node_id, manager.close_all(partial=True)))
        return self._emit(results)

    def discard(self) -> None:
        for manager in self._managers.values():
            manager.discard_all()

    def close(self) -> None:
        self.invoker.close()

    def _fire(self, node_id: str, closed: List[ClosedWindow]) -> List[WindowResult]:
        if not closed:
            return []
        started = time.perf_counter()
        consumers = self.graph.downstream_of(node_id)
        results = []
        for window in closed:
            for consumer in consumers:
                result = self._evaluate(consumer, node_id, window)
                if result is not None:
                    results.append(result)
        self.metrics.closure_latency.labels(node=node_id).observe(time.perf_counter() - started)
        return results

    def _evaluate(self, consumer: OperatorNode, window_id: str,
                  window: ClosedWindow) -> Optional[WindowResult]:
        state = window.state
        kind = _RESULT_KINDS.get(consumer.operator_type)
        if kind is None:
            return None

        if kind == ResultKind.AGGREGATE:
            value = state.aggregates(consumer.params.functions)
        elif kind == ResultKind.TREND:
            value = self._trend(consumer, window_id, window)
        else:
            value = self.invoker.invoke(consumer.node_id, consumer.params, state.points, window.key)

        return WindowResult(
            operator_id=consumer.node_id,
            kind=kind,
            window=window.bounds,
            value=value,
            count=state.count,
            key=window.key,
            partial=window.partial,
        )

    def _trend(self, consumer: OperatorNode, window_id: str, window: ClosedWindow) -> TrendLine:
        line = window.state.trend()
        horizon = consumer.params.horizon
        if not horizon or line.slope is None:
            return line
        window_params = self.graph.node(window_id).params
        step = consumer.params.step or window_params.effective_slide or window_params.gap
        end = window.bounds.end
        projection = tuple(
            (end + step * k, line.at(end + step * k)) for k in range(horizon)
        )
        return TrendLine(line.slope, line.intercept, line.r_squared, line.count, projection)

    def _emit(self, results: List[WindowResult]) -> List[WindowResult]:
        if not results:
            return results
        results.sort(key=result_sort_key)
        for result in results:
            self.metrics.results_emitted.labels(kind=result.kind.value).inc()
        self.emitted.extend(results)
        if self.deliver_results:
            deliver(self.graph, self.sinks, results)
        return results

    def get_stats(self) -> Dict[str, Any]:
        return {
            'streams': {s: self.tracker.watermark(s) for s in self.streams},
            'windows': [m.get_stats() for m in self._managers.values()],
            'emitted': len(self.emitted),
            'late_points': len(self.late_points),
        }


def _requirements(consumers: Iterable[OperatorNode]) -> StateRequirements:
    functions: Set[str] = set()
    trend = buffer = False
    for node in consumers:
        if node.operator_type == OperatorType.AGGREGATE:
            functions.update(node.params.functions)
        elif node.operator_type == OperatorType.TREND:
            trend = True
        elif node.operator_type == OperatorType.FORECAST:
            buffer = True
    return StateRequirements(frozenset(functions), trend, buffer)


def _extent(sources: Iterable[OperatorNode]) -> Optional[Tuple[float, float]]:
    """Hull of the upstream time ranges; None if any source is unbounded."""
    ranges = [s.params.time_range for s in sources]
    if not ranges or any(r is None for r in ranges):
        return None
    return (min(r.start for r in ranges), max(r.end for r in ranges))
