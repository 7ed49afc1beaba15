#!/usr/bin/env python3
"""
Sundial Engine

Single entry point for executing a compiled operator graph in batch or
streaming mode. Owns the per-query metrics and context, and reports
fatal failures as a structured QueryResult instead of raising.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from .context import QueryContext
from .errors import QueryFailed
from .execution.operator_graph import OperatorGraph
from .forecast import DEFAULT_REGISTRY, ModelRegistry
from .metrics import EngineMetrics
from .scheduler import BatchScheduler, QueryState, StreamingScheduler, default_sinks
from .sinks import Sink
from .sources import BatchSource, StreamingSource
from .types import DataPoint, EngineEvent, WindowResult

logger = logging.getLogger(__name__)


@dataclass
class QueryResult:
    """Outcome of one query run."""
    query: str
    results: List[WindowResult] = field(default_factory=list)
    late_points: List[DataPoint] = field(default_factory=list)
    events: List[EngineEvent] = field(default_factory=list)
    metrics: Dict[str, float] = field(default_factory=dict)
    error: Optional[QueryFailed] = None
    state: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'query': self.query,
            'ok': self.ok,
            'state': self.state,
            'results': [r.to_dict() for r in self.results],
            'late_points': [p.to_dict() for p in self.late_points],
            'events': [e.to_dict() for e in self.events],
            'metrics': self.metrics,
            'error': self.error.to_dict() if self.error else None,
        }


class Engine:
    """
    Executes one operator graph.

    The graph is validated again before anything runs; a graph that fails
    the check is rejected with CompileError.

    Example:
        engine = Engine(graph, QueryContext(lateness=2))
        result = engine.run_batch({"cpu": ListSource("cpu", points)})
        for r in result.results:
            print(r.window, r.value)
    """

    def __init__(
        self,
        graph: OperatorGraph,
        context: Optional[QueryContext] = None,
        registry: Optional[ModelRegistry] = None,
        metrics: Optional[EngineMetrics] = None,
    ):
        self.registry = registry or DEFAULT_REGISTRY
        graph.validate(self.registry)
        self.graph = graph
        self.context = context or QueryContext()
        self.metrics = metrics or EngineMetrics(graph.name)
        self._streaming: Optional[StreamingScheduler] = None
        logger.info(f"Engine ready for query {graph.name} ({len(graph)} operators)")

    def cancel(self, reason: str = "cancelled") -> None:
        """Cooperatively cancel the running query."""
        if self._streaming is not None:
            self._streaming.cancel(reason)
        else:
            self.context.cancel(reason)

    def run_batch(self, sources: Mapping[str, BatchSource],
                  sinks: Optional[Mapping[str, Sink]] = None) -> QueryResult:
        """Evaluate the graph over finite sources keyed by stream."""
        scheduler = BatchScheduler(self.graph, self.context, self.metrics, self.registry)
        sinks = sinks if sinks is not None else default_sinks(self.graph)
        result = QueryResult(query=self.graph.name)
        try:
            result.results = scheduler.run(sources, sinks)
            result.state = QueryState.TERMINATED.value
        except QueryFailed as e:
            result.error = e
            result.state = QueryState.TERMINATED.value
        result.late_points = scheduler.late_points
        return self._finalize(result)

    def streaming(self, sources: Mapping[str, StreamingSource],
                  sinks: Optional[Mapping[str, Sink]] = None) -> StreamingScheduler:
        """Build (but do not start) the streaming scheduler for this query."""
        self._streaming = StreamingScheduler(
            self.graph, self.context, self.metrics, sources, sinks=sinks, registry=self.registry
        )
        return self._streaming

    async def run_streaming(self, sources: Mapping[str, StreamingSource],
                            sinks: Optional[Mapping[str, Sink]] = None) -> QueryResult:
        """Run the streaming query until sources end, cancellation or failure."""
        result = QueryResult(query=self.graph.name)
        try:
            scheduler = self.streaming(sources, sinks)
        except QueryFailed as e:
            result.error = e
            return self._finalize(result)

        try:
            await scheduler.run()
        except QueryFailed as e:
            result.error = e
        result.results = scheduler.results
        result.late_points = scheduler.late_points
        result.state = scheduler.state.value
        return self._finalize(result)

    def _finalize(self, result: QueryResult) -> QueryResult:
        result.events = self.metrics.events()
        result.metrics = self.metrics.summary()
        if result.error is not None:
            logger.error(f"Query {self.graph.name} failed: {result.error.to_dict()}")
        return result


def run_batch(graph: OperatorGraph, sources: Mapping[str, BatchSource],
              context: Optional[QueryContext] = None,
              registry: Optional[ModelRegistry] = None) -> QueryResult:
    """Convenience wrapper: one batch run with a fresh engine."""
    return Engine(graph, context, registry).run_batch(sources)


async def run_streaming(graph: OperatorGraph, sources: Mapping[str, StreamingSource],
                        context: Optional[QueryContext] = None,
                        registry: Optional[ModelRegistry] = None) -> QueryResult:
    """Convenience wrapper: one streaming run with a fresh engine."""
    return await Engine(graph, context, registry).run_streaming(sources)
