"""
Source interfaces for Sundial data streams.

Defines the two ingestion contracts the engine consumes:
- BatchSource: pull-based ``next()`` returning a point or END_OF_STREAM
- StreamingSource: push-based ``subscribe(emit)`` feeding the scheduler

Concrete connectors (files, databases, brokers) live outside the engine;
the in-memory sources here back tests, the CLI and embedding code.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Iterable, List, Optional, Union

from .errors import SourceUnavailable
from .types import END_OF_STREAM, DataPoint, EndOfStream

logger = logging.getLogger(__name__)

Emit = Callable[[DataPoint], Awaitable[None]]


class BatchSource(ABC):
    """
    Abstract base class for finite, pull-based sources.

    Examples:
        >>> source = ListSource("cpu", points)
        >>> while (point := source.next()) is not END_OF_STREAM:
        >>>     process(point)
    """

    def __init__(self, stream: str):
        self.stream = stream

    @abstractmethod
    def next(self) -> Union[DataPoint, EndOfStream]:
        """
        Return the next point, or END_OF_STREAM once exhausted.

        Points are stamped with this source's stream identity.
        """
        pass

    def __iter__(self):
        while True:
            point = self.next()
            if point is END_OF_STREAM:
                return
            yield point

    def close(self):
        """Close and cleanup resources (optional)."""
        pass


class StreamingSource(ABC):
    """
    Abstract base class for unbounded, push-based sources.

    ``connect()`` may raise SourceUnavailable, as may ``subscribe()`` while
    delivering; the scheduler retries both with backoff. ``subscribe``
    returns when the source has no more data.
    """

    def __init__(self, stream: str):
        self.stream = stream

    async def connect(self) -> None:
        """Establish the connection (optional)."""
        pass

    @abstractmethod
    async def subscribe(self, emit: Emit) -> None:
        """Deliver points by awaiting ``emit(point)`` until exhausted."""
        pass

    async def close(self) -> None:
        """Close and cleanup resources (optional)."""
        pass


def _stamp(stream: str, point: DataPoint) -> DataPoint:
    return point if point.stream == stream else point.with_stream(stream)


class ListSource(BatchSource):
    """Batch source over an in-memory sequence of points."""

    def __init__(self, stream: str, points: Iterable[DataPoint]):
        super().__init__(stream)
        self._points: List[DataPoint] = [_stamp(stream, p) for p in points]
        self._position = 0

    def next(self) -> Union[DataPoint, EndOfStream]:
        if self._position >= len(self._points):
            return END_OF_STREAM
        point = self._points[self._position]
        self._position += 1
        return point

    def __len__(self) -> int:
        return len(self._points)


class IterableStreamingSource(StreamingSource):
    """
    Streaming source replaying an in-memory sequence.

    Delivery resumes from the last emitted position after a reconnect, so
    a retried subscription never replays points.

    Args:
        stream: Stream identity
        points: Points to deliver in order
        interval: Seconds to sleep between points (0 yields to the loop)
    """

    def __init__(self, stream: str, points: Iterable[DataPoint], interval: float = 0.0):
        super().__init__(stream)
        self._points: List[DataPoint] = [_stamp(stream, p) for p in points]
        self.interval = interval
        self.position = 0

    async def subscribe(self, emit: Emit) -> None:
        while self.position < len(self._points):
            point = self._points[self.position]
            await self._before_emit(point)
            await emit(point)
            self.position += 1
            await asyncio.sleep(self.interval)

    async def _before_emit(self, point: DataPoint) -> None:
        """Hook for subclasses (e.g. injecting source failures)."""
        pass


class QueueSource(StreamingSource):
    """
    Streaming source fed by the caller through ``push()``.

    ``end()`` marks the stream finished; ``fail()`` makes the current
    subscription raise SourceUnavailable.
    """

    def __init__(self, stream: str, maxsize: int = 0):
        super().__init__(stream)
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)

    async def push(self, point: DataPoint) -> None:
        await self._queue.put(_stamp(self.stream, point))

    def push_nowait(self, point: DataPoint) -> None:
        self._queue.put_nowait(_stamp(self.stream, point))

    def end(self) -> None:
        self._queue.put_nowait(END_OF_STREAM)

    def fail(self, message: str = "source disconnected") -> None:
        self._queue.put_nowait(SourceUnavailable(message))

    async def subscribe(self, emit: Emit) -> None:
        while True:
            item: Optional[Union[DataPoint, EndOfStream, SourceUnavailable]] = await self._queue.get()
            if item is END_OF_STREAM:
                return
            if isinstance(item, SourceUnavailable):
                raise item
            await emit(item)
