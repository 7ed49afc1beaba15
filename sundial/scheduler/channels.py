#!/usr/bin/env python3
"""
Bounded per-source buffers.

Producers write into a BoundedBuffer; the executor loop drains every
buffer. A full buffer applies the query's OverflowPolicy:
- BLOCK: suspend the producer, raising BackpressureTimeout past the deadline
- DROP_OLDEST: evict the oldest buffered point
- DROP_NEWEST: reject the incoming point

Every drop is counted and recorded as an event; nothing is lost silently.
"""

import asyncio
import logging
from typing import List, Optional

from ..context import OverflowPolicy
from ..errors import BackpressureTimeout
from ..metrics import EngineMetrics
from ..types import DataPoint, EngineEvent, EventKind

logger = logging.getLogger(__name__)


class BoundedBuffer:
    """
    Bounded asyncio buffer between one source producer and the executor.

    ``wakeup`` is set on every put and on close so a single consumer can
    wait on many buffers at once.
    """

    def __init__(
        self,
        stream: str,
        capacity: int,
        policy: OverflowPolicy,
        metrics: EngineMetrics,
        timeout: Optional[float] = None,
        wakeup: Optional[asyncio.Event] = None,
    ):
        """
        Initialize the buffer.

        Args:
            stream: Stream identity (metric label)
            capacity: Maximum buffered points
            policy: Overflow policy applied when full
            metrics: Query metrics
            timeout: Seconds a BLOCK put may wait (None = forever)
            wakeup: Event set whenever the consumer has work
        """
        self.stream = stream
        self.capacity = capacity
        self.policy = policy
        self.metrics = metrics
        self.timeout = timeout
        self.wakeup = wakeup or asyncio.Event()
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=capacity)
        self._closed = False
        self.dropped = 0

    async def put(self, point: DataPoint) -> bool:
        """
        Offer a point to the buffer.

        Returns:
            True if the point was buffered, False if DROP_NEWEST rejected it

        Raises:
            BackpressureTimeout: BLOCK waited longer than ``timeout``
        """
        if self._closed:
            raise RuntimeError(f"Buffer for stream {self.stream} is closed")

        if not self._queue.full():
            self._queue.put_nowait(point)
            self._notify()
            return True

        if self.policy == OverflowPolicy.DROP_NEWEST:
            self._record_drop(point)
            return False

        if self.policy == OverflowPolicy.DROP_OLDEST:
            dropped = self._queue.get_nowait()
            self._record_drop(dropped)
            self._queue.put_nowait(point)
            self._notify()
            return True

        try:
            if self.timeout is not None:
                await asyncio.wait_for(self._queue.put(point), timeout=self.timeout)
            else:
                await self._queue.put(point)
        except asyncio.TimeoutError:
            self.metrics.backpressure_timeouts.labels(stream=self.stream).inc()
            self.metrics.record_event(EngineEvent(
                kind=EventKind.BACKPRESSURE_TIMEOUT,
                message=f"Producer blocked on full buffer for more than {self.timeout}s",
                stream=self.stream,
                timestamp=point.timestamp,
            ))
            raise BackpressureTimeout(
                f"Stream {self.stream} blocked for more than {self.timeout}s",
                timestamp=point.timestamp,
            ) from None
        self._notify()
        return True

    def _record_drop(self, point: DataPoint) -> None:
        self.dropped += 1
        self.metrics.buffer_dropped.labels(stream=self.stream, policy=self.policy.value).inc()
        self.metrics.record_event(EngineEvent(
            kind=EventKind.BUFFER_DROP,
            message=f"Buffer full ({self.capacity}), dropped point ({self.policy.value})",
            stream=self.stream,
            timestamp=point.timestamp,
        ))

    def _notify(self) -> None:
        self.metrics.buffer_depth.labels(stream=self.stream).set(self._queue.qsize())
        self.wakeup.set()

    def get_nowait(self) -> Optional[DataPoint]:
        """Next buffered point, or None when empty."""
        try:
            point = self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None
        self.metrics.buffer_depth.labels(stream=self.stream).set(self._queue.qsize())
        return point

    def drain(self, max_items: Optional[int] = None) -> List[DataPoint]:
        """Take up to ``max_items`` buffered points in arrival order."""
        points: List[DataPoint] = []
        while max_items is None or len(points) < max_items:
            point = self.get_nowait()
            if point is None:
                break
            points.append(point)
        return points

    def close(self) -> None:
        """Mark the producer finished; buffered points remain drainable."""
        self._closed = True
        self.wakeup.set()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def exhausted(self) -> bool:
        """Closed and fully drained."""
        return self._closed and self._queue.empty()

    def qsize(self) -> int:
        return self._queue.qsize()

    def full(self) -> bool:
        return self._queue.full()

    def get_stats(self) -> dict:
        """Get buffer statistics."""
        return {
            'stream': self.stream,
            'size': self.qsize(),
            'capacity': self.capacity,
            'policy': self.policy.value,
            'dropped': self.dropped,
            'closed': self._closed,
        }
