#!/usr/bin/env python3
"""
Streaming Scheduler

Evaluates a graph over unbounded push-based sources:
- One producer task per source writing into a BoundedBuffer
- One executor loop that drains every buffer, reorders each stream within
  the lateness bound and merge-sorts across streams by timestamp
- A periodic tick that advances watermarks and closes windows without
  new data
- Reconnect with bounded exponential backoff on SourceUnavailable
- Cooperative cancellation with FLUSH or DISCARD of in-flight windows
- Forecast evaluation off the event loop; only the most recent
  ``retained_results`` results and late points are kept in memory

Query lifecycle:
    INIT -> CONNECTING -> RUNNING -> (ERROR -> RECONNECTING) -> CLOSING -> TERMINATED
"""

import asyncio
import logging
from enum import Enum
from typing import Dict, List, Mapping, Optional, Tuple

from ..context import BackpressurePolicy, CancelPolicy, QueryContext
from ..errors import (
    BackpressureTimeout,
    InvalidTransition,
    QueryFailed,
    SourceUnavailable,
    SundialError,
)
from ..execution.operator_graph import OperatorGraph, OperatorType
from ..forecast import ModelRegistry
from ..metrics import EngineMetrics
from ..sinks import Sink
from ..sources import StreamingSource
from ..types import DataPoint, EngineEvent, EventKind, WindowResult
from .channels import BoundedBuffer
from .executor import DataflowExecutor
from .reorder import ReorderBuffer

logger = logging.getLogger(__name__)


class QueryState(Enum):
    """Lifecycle states of a streaming query (and of each of its streams)."""
    INIT = "init"
    CONNECTING = "connecting"
    RUNNING = "running"
    ERROR = "error"
    RECONNECTING = "reconnecting"
    CLOSING = "closing"
    TERMINATED = "terminated"


_TRANSITIONS = {
    QueryState.INIT: {QueryState.CONNECTING, QueryState.CLOSING},
    QueryState.CONNECTING: {QueryState.RUNNING, QueryState.ERROR, QueryState.CLOSING},
    QueryState.RUNNING: {QueryState.ERROR, QueryState.CLOSING},
    QueryState.ERROR: {QueryState.RECONNECTING, QueryState.CLOSING},
    QueryState.RECONNECTING: {QueryState.RUNNING, QueryState.ERROR, QueryState.CLOSING},
    QueryState.CLOSING: {QueryState.TERMINATED},
    QueryState.TERMINATED: set(),
}


class Lifecycle:
    """
    Lifecycle state machine.

    Every transition is validated and recorded as a STATE_CHANGE event;
    an illegal transition raises InvalidTransition.
    """

    def __init__(self, name: str, metrics: EngineMetrics, stream: Optional[str] = None):
        self.name = name
        self.stream = stream
        self.metrics = metrics
        self.state = QueryState.INIT
        self.history: List[QueryState] = [QueryState.INIT]

    def can_transition(self, target: QueryState) -> bool:
        return target in _TRANSITIONS[self.state]

    def transition(self, target: QueryState) -> None:
        if not self.can_transition(target):
            raise InvalidTransition(f"{self.name}: cannot go from {self.state.value} to {target.value}")
        previous = self.state
        self.state = target
        self.history.append(target)
        self.metrics.record_event(EngineEvent(
            kind=EventKind.STATE_CHANGE,
            message=f"{self.name}: {previous.value} -> {target.value}",
            stream=self.stream,
            detail={'from': previous.value, 'to': target.value},
        ))

    @property
    def terminal(self) -> bool:
        return self.state in (QueryState.CLOSING, QueryState.TERMINATED)


class StreamingScheduler:
    """
    Runs one streaming query until its sources end, it is cancelled or it fails.

    Window state is owned by the single executor loop; producers only ever
    touch their own buffer.
    """

    def __init__(
        self,
        graph: OperatorGraph,
        context: QueryContext,
        metrics: EngineMetrics,
        sources: Mapping[str, StreamingSource],
        sinks: Optional[Mapping[str, Sink]] = None,
        registry: Optional[ModelRegistry] = None,
    ):
        missing = sorted(n.params.stream for n in graph.sources() if n.params.stream not in sources)
        if missing:
            raise QueryFailed(SundialError(f"No streaming source for stream(s): {', '.join(missing)}"))

        self.graph = graph
        self.context = context
        self.metrics = metrics
        self.sources = dict(sources)
        self.executor = DataflowExecutor(graph, context, metrics, sinks=sinks, registry=registry,
                                         retain=context.retained_results)
        self.lifecycle = Lifecycle(f"query {graph.name}", metrics)
        self._forecasts = any(n.operator_type == OperatorType.FORECAST for n in graph.topological_order())

        self._streams: Dict[str, Lifecycle] = {
            s: Lifecycle(f"stream {s}", metrics, stream=s) for s in self.executor.streams
        }
        self._buffers: Dict[str, BoundedBuffer] = {}
        self._reorder: Dict[str, ReorderBuffer] = {
            s: ReorderBuffer(s, context.lateness) for s in self.executor.streams
        }
        self._producers: Dict[str, asyncio.Task] = {}
        self._finished: Dict[str, bool] = {}
        self._failure: Optional[SundialError] = None
        self._wakeup: Optional[asyncio.Event] = None

    @property
    def state(self) -> QueryState:
        return self.lifecycle.state

    def stream_state(self, stream: str) -> QueryState:
        return self._streams[stream].state

    @property
    def results(self) -> List[WindowResult]:
        return list(self.executor.emitted)

    @property
    def late_points(self) -> List[DataPoint]:
        return list(self.executor.late_points)

    def cancel(self, reason: str = "cancelled") -> None:
        """Request cooperative cancellation."""
        self.context.cancel(reason)
        if self._wakeup is not None:
            self._wakeup.set()

    async def run(self) -> List[WindowResult]:
        """
        Run the query to termination.

        Returns:
            The retained results, in emission order (sinks receive all of them)

        Raises:
            QueryFailed: A fatal error terminated the query
        """
        self._wakeup = asyncio.Event()
        self.lifecycle.transition(QueryState.CONNECTING)
        for stream in self.executor.streams:
            self._buffers[stream] = BoundedBuffer(
                stream,
                self.context.buffer_capacity,
                self.context.overflow_policy,
                self.metrics,
                timeout=self.context.backpressure_timeout,
                wakeup=self._wakeup,
            )
            self._finished[stream] = False
            self._producers[stream] = asyncio.create_task(
                self._produce(stream, self.sources[stream]), name=f"sundial-producer-{stream}"
            )
        self.lifecycle.transition(QueryState.RUNNING)
        logger.info(f"Streaming query {self.graph.name} running with {len(self._producers)} source(s)")

        try:
            await self._loop()
        except SundialError as e:
            self._failure = self._failure or e
        finally:
            await self._stop_producers()

        if self._failure is not None:
            return self._fail(self._failure)
        await self._close()
        return self.results

    async def _loop(self) -> None:
        loop = asyncio.get_running_loop()
        last_tick = loop.time()
        while True:
            if self.context.cancelled or self._failure is not None:
                return

            self._wakeup.clear()
            progressed = self._drain()
            progressed = self._finish_streams() or progressed
            if progressed:
                await self._advance()
            if all(self._finished.values()):
                return

            if loop.time() - last_tick >= self.context.tick_interval:
                last_tick = loop.time()
                await self._tick()

            if progressed:
                await asyncio.sleep(0)
                continue
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self.context.tick_interval)
            except asyncio.TimeoutError:
                last_tick = loop.time()
                await self._tick()

    async def _tick(self) -> None:
        # Release before closing so points under the advanced watermark are not late
        self.executor.tracker.tick()
        self._release()
        await self._advance()
        self.metrics.sample_memory()

    async def _advance(self) -> None:
        await self._offload(self.executor.advance)

    async def _offload(self, closure) -> None:
        """
        Run a window-closing step.

        Graphs with Forecast operators close windows on a worker thread
        while the loop awaits it; producers keep running and window state
        keeps a single writer.
        """
        if not self._forecasts:
            closure()
            return
        await asyncio.get_running_loop().run_in_executor(None, closure)

    def _drain(self) -> bool:
        """Move buffered points through reorder buffers into the executor."""
        drained = False
        for stream, buffer in self._buffers.items():
            for point in buffer.drain(self.context.buffer_capacity):
                drained = True
                if self.executor.accept(point):
                    self._reorder[stream].push(point)
        if drained:
            self._release()
        return drained

    def _release(self) -> None:
        """Route every held point at or below its stream watermark."""
        ready: List[Tuple[float, str, int, DataPoint]] = []
        for stream, reorder in self._reorder.items():
            threshold = self.executor.tracker.watermark(stream)
            ready.extend((p.timestamp, stream, seq, p) for seq, p in reorder.release(threshold))
        self._route(ready)

    def _route(self, ready: List[Tuple[float, str, int, DataPoint]]) -> None:
        ready.sort(key=lambda item: item[:3])
        for _, _, _, point in ready:
            self.executor.route(point)

    def _finish_streams(self) -> bool:
        finished = False
        for stream, buffer in self._buffers.items():
            if self._finished[stream] or not buffer.exhausted:
                continue
            self._finished[stream] = True
            finished = True
            self._route([(p.timestamp, stream, seq, p) for seq, p in self._reorder[stream].flush()])
            self.executor.tracker.finish(stream)
        return finished

    async def _produce(self, stream: str, source: StreamingSource) -> None:
        """Producer task: connect, subscribe, reconnect with backoff."""
        lifecycle = self._streams[stream]
        buffer = self._buffers[stream]
        retry = self.context.retry
        attempt = 0
        delivered = delivered_before = 0

        async def emit(point: DataPoint) -> None:
            nonlocal delivered
            if point.stream != stream:
                point = point.with_stream(stream)
            while not self.context.cancelled:
                try:
                    if await buffer.put(point):
                        delivered += 1
                    return
                except BackpressureTimeout as e:
                    if self.context.backpressure_policy == BackpressurePolicy.TERMINATE:
                        raise
                    logger.warning(f"Stream {stream} paused by backpressure: {e.message}")

        lifecycle.transition(QueryState.CONNECTING)
        try:
            while not self.context.cancelled:
                try:
                    await source.connect()
                    delivered_before = delivered
                    lifecycle.transition(QueryState.RUNNING)
                    self._sync_state()
                    await source.subscribe(emit)
                    lifecycle.transition(QueryState.CLOSING)
                    break
                except SourceUnavailable as e:
                    if lifecycle.state == QueryState.RUNNING and delivered > delivered_before:
                        attempt = 0
                    lifecycle.transition(QueryState.ERROR)
                    self._sync_state()
                    self.metrics.record_event(EngineEvent(
                        kind=EventKind.SOURCE_ERROR, message=e.message, stream=stream,
                        detail={'attempt': attempt},
                    ))
                    if attempt >= retry.max_retries:
                        self._stream_failed(stream, e, attempt)
                        break
                    delay = retry.delay_for(attempt)
                    attempt += 1
                    lifecycle.transition(QueryState.RECONNECTING)
                    self.metrics.reconnects.labels(stream=stream).inc()
                    self.metrics.record_event(EngineEvent(
                        kind=EventKind.RECONNECT,
                        message=f"Reconnecting in {delay:.3f}s (attempt {attempt}/{retry.max_retries})",
                        stream=stream,
                        detail={'attempt': attempt, 'delay': delay},
                    ))
                    await asyncio.sleep(delay)
        except BackpressureTimeout as e:
            self._failure = e
        finally:
            if not lifecycle.terminal:
                lifecycle.transition(QueryState.CLOSING)
            lifecycle.transition(QueryState.TERMINATED)
            self._sync_state()
            buffer.close()
            await source.close()

    def _stream_failed(self, stream: str, error: SourceUnavailable, attempts: int) -> None:
        logger.error(f"Stream {stream} failed after {attempts} retries: {error.message}")
        self.metrics.record_event(EngineEvent(
            kind=EventKind.STREAM_FAILED,
            message=f"Retries exhausted: {error.message}",
            stream=stream,
            detail={'attempts': attempts},
        ))

    def _sync_state(self) -> None:
        """Mirror stream reconnects onto the query lifecycle."""
        if self.lifecycle.terminal or self.lifecycle.state == QueryState.CONNECTING:
            return
        reconnecting = any(
            s.state in (QueryState.ERROR, QueryState.RECONNECTING) for s in self._streams.values()
        )
        if reconnecting and self.lifecycle.state == QueryState.RUNNING:
            self.lifecycle.transition(QueryState.ERROR)
            self.lifecycle.transition(QueryState.RECONNECTING)
        elif not reconnecting and self.lifecycle.state == QueryState.RECONNECTING:
            self.lifecycle.transition(QueryState.RUNNING)

    async def _stop_producers(self) -> None:
        for task in self._producers.values():
            if not task.done():
                task.cancel()
        outcomes = await asyncio.gather(*self._producers.values(), return_exceptions=True)
        for stream, outcome in zip(self._producers, outcomes):
            if not isinstance(outcome, Exception):
                continue
            logger.error(f"Producer for stream {stream} raised: {outcome!r}", exc_info=outcome)
            if self._failure is None:
                self._failure = (outcome if isinstance(outcome, SundialError)
                                 else SundialError(f"Producer for stream {stream} crashed: {outcome!r}"))

    async def _close(self) -> None:
        self.lifecycle.transition(QueryState.CLOSING)
        if self.context.cancelled:
            logger.info(f"Streaming query {self.graph.name} cancelled: {self.context.token.reason} "
                        f"({self.context.cancel_policy.value})")
            if self.context.cancel_policy == CancelPolicy.FLUSH:
                ready: List[Tuple[float, str, int, DataPoint]] = []
                for stream, buffer in self._buffers.items():
                    for point in buffer.drain():
                        if self.executor.accept(point):
                            self._reorder[stream].push(point)
                    ready.extend((p.timestamp, stream, seq, p) for seq, p in self._reorder[stream].flush())
                self._route(ready)
            await self._offload(self.executor.cancel)
        else:
            await self._offload(self.executor.finish)
        self.executor.close()
        self.lifecycle.transition(QueryState.TERMINATED)
        logger.info(f"Streaming query {self.graph.name} terminated: {len(self.executor.emitted)} result(s)")

    def _fail(self, error: SundialError) -> List[WindowResult]:
        logger.error(f"Streaming query {self.graph.name} failed: {error.message}")
        self.lifecycle.transition(QueryState.CLOSING)
        self.executor.discard()
        self.executor.close()
        self.lifecycle.transition(QueryState.TERMINATED)
        raise QueryFailed(error)
