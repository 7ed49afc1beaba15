"""
Per-stream reorder buffer.

Absorbs bounded disorder: points are held until their timestamp is at or
below the stream's release threshold, then released in timestamp order.
Equal timestamps keep arrival order.
"""

import heapq
import itertools
from typing import List, Optional, Tuple

from ..types import DataPoint

NEG_INF = float('-inf')


class ReorderBuffer:
    """Min-heap of pending points for one stream."""

    def __init__(self, stream: str, lateness: float = 0.0):
        self.stream = stream
        self.lateness = lateness
        self._heap: List[Tuple[float, int, DataPoint]] = []
        self._sequence = itertools.count()
        self.max_seen = NEG_INF

    def __len__(self) -> int:
        return len(self._heap)

    def push(self, point: DataPoint) -> int:
        """Hold a point; returns its arrival sequence number."""
        sequence = next(self._sequence)
        heapq.heappush(self._heap, (point.timestamp, sequence, point))
        if point.timestamp > self.max_seen:
            self.max_seen = point.timestamp
        return sequence

    def release(self, threshold: Optional[float] = None) -> List[Tuple[int, DataPoint]]:
        """
        Pop every point with ``timestamp <= threshold``.

        The threshold defaults to ``max_seen - lateness``; callers pass the
        stream watermark when it can run ahead (idle advance).

        Returns:
            (arrival sequence, point) pairs in timestamp order
        """
        if threshold is None:
            threshold = self.max_seen - self.lateness
        released = []
        while self._heap and self._heap[0][0] <= threshold:
            _, sequence, point = heapq.heappop(self._heap)
            released.append((sequence, point))
        return released

    def flush(self) -> List[Tuple[int, DataPoint]]:
        """Release everything still held, in timestamp order."""
        released = []
        while self._heap:
            _, sequence, point = heapq.heappop(self._heap)
            released.append((sequence, point))
        return released
