#!/usr/bin/env python3
"""
Batch Scheduler

Evaluates a graph over finite historical sources:
- Pulls every source lazily through ``next()``, absorbing disorder within
  the lateness bound in a per-stream reorder buffer
- Merges the streams of a branch by timestamp; points behind the
  watermark take the same late path as in streaming mode
- Closes windows as watermarks advance, then closes the remainder in
  ascending end order
- Runs independent branches on a fixed worker pool and merges their
  results deterministically by (end, start, operator id, key)
"""

import heapq
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Iterator, List, Mapping, Optional, Tuple

from ..context import QueryContext
from ..errors import QueryFailed, SundialError
from ..execution.operator_graph import OperatorGraph, OperatorNode
from ..forecast import ModelRegistry
from ..metrics import EngineMetrics
from ..sinks import Sink
from ..sources import BatchSource
from ..types import DataPoint, WindowResult, result_sort_key
from .executor import DataflowExecutor, default_sinks, deliver
from .reorder import ReorderBuffer

logger = logging.getLogger(__name__)


class BatchScheduler:
    """Runs one batch query to completion."""

    def __init__(
        self,
        graph: OperatorGraph,
        context: QueryContext,
        metrics: EngineMetrics,
        registry: Optional[ModelRegistry] = None,
    ):
        self.graph = graph
        self.context = context
        self.metrics = metrics
        self.registry = registry
        self.late_points: List[DataPoint] = []

    def run(self, sources: Mapping[str, BatchSource],
            sinks: Optional[Mapping[str, Sink]] = None) -> List[WindowResult]:
        """
        Evaluate the graph over ``sources`` (keyed by stream).

        Returns:
            Every emitted result in (end, start, operator id, key) order

        Raises:
            QueryFailed: A fatal error (missing source, window overflow in
                FAIL mode) halted the query
        """
        missing = sorted(n.params.stream for n in self.graph.sources() if n.params.stream not in sources)
        if missing:
            raise QueryFailed(SundialError(f"No batch source for stream(s): {', '.join(missing)}"))

        sinks = sinks if sinks is not None else default_sinks(self.graph)
        branches = self.graph.branches()
        logger.info(f"Batch query {self.graph.name}: {len(branches)} branch(es), "
                    f"{len(self.graph.sources())} source(s)")

        if len(branches) == 1:
            outcomes = [self._run_branch(branches[0], sources)]
        else:
            workers = min(self.context.max_workers, len(branches))
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="sundial-batch") as pool:
                futures = [pool.submit(self._run_branch, branch, sources) for branch in branches]
                outcomes = [f.result() for f in futures]

        results: List[WindowResult] = []
        for branch_results, late in outcomes:
            results.extend(branch_results)
            self.late_points.extend(late)
        results.sort(key=result_sort_key)
        deliver(self.graph, sinks, results)

        self.metrics.sample_memory()
        logger.info(f"Batch query {self.graph.name} finished: {len(results)} result(s)")
        return results

    def _run_branch(self, nodes: Tuple[OperatorNode, ...],
                    sources: Mapping[str, BatchSource]) -> Tuple[List[WindowResult], List[DataPoint]]:
        executor = DataflowExecutor(
            self.graph, self.context, self.metrics,
            registry=self.registry, nodes=nodes, deliver_results=False,
        )
        try:
            released = [_released(executor, stream, sources[stream]) for stream in executor.streams]
            for timestamp, _, _, point in heapq.merge(*released, key=lambda item: item[:3]):
                if self.context.cancelled:
                    break
                executor.route(point)
                # Points still queued in the merge are at or after this timestamp
                executor.advance(limit=timestamp)

            if self.context.cancelled:
                logger.info(f"Batch query {self.graph.name} cancelled: "
                            f"{self.context.token.reason} ({self.context.cancel_policy.value})")
                executor.cancel()
            else:
                executor.finish()
        except QueryFailed:
            raise
        except SundialError as e:
            logger.error(f"Batch query {self.graph.name} failed: {e.message}")
            raise QueryFailed(e) from e
        finally:
            executor.close()
            for stream in executor.streams:
                sources[stream].close()
        return list(executor.emitted), list(executor.late_points)


def _released(executor: DataflowExecutor, stream: str,
              source: BatchSource) -> Iterator[Tuple[float, str, int, DataPoint]]:
    """
    Pull ``source`` lazily, absorbing disorder up to the query lateness.

    Points are released once they are at or below the stream watermark;
    a point already behind the watermark is released immediately and takes
    the late path downstream.
    """
    reorder = ReorderBuffer(stream, executor.context.lateness)
    for point in source:
        if point.stream != stream:
            point = point.with_stream(stream)
        if not executor.accept(point):
            continue
        reorder.push(point)
        for sequence, ready in reorder.release(executor.tracker.watermark(stream)):
            yield ready.timestamp, stream, sequence, ready
    for sequence, ready in reorder.flush():
        yield ready.timestamp, stream, sequence, ready
