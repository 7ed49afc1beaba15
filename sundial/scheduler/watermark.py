"""
Watermark tracking.

Each stream's watermark is ``max observed timestamp - lateness`` and never
moves backwards. With idle advance enabled, a tick moves the watermark of
a stream that has seen no data forward by the processing time elapsed
since its last point. Finished or failed streams leave the computation.
"""

import logging
import math
import time
from typing import Callable, Dict, Iterable, Optional, Set

from ..metrics import EngineMetrics
from ..types import TimeUnit

logger = logging.getLogger(__name__)

NEG_INF = float('-inf')
POS_INF = float('inf')


class WatermarkTracker:
    """Per-stream non-decreasing watermarks."""

    def __init__(
        self,
        streams: Iterable[str],
        lateness: float = 0.0,
        time_unit: TimeUnit = TimeUnit.SECONDS,
        clock: Callable[[], float] = time.monotonic,
        advance_on_idle: bool = False,
        metrics: Optional[EngineMetrics] = None,
    ):
        self.lateness = lateness
        self.time_unit = time_unit
        self.clock = clock
        self.advance_on_idle = advance_on_idle
        self.metrics = metrics

        self._streams: Set[str] = set(streams)
        self._watermarks: Dict[str, float] = {s: NEG_INF for s in self._streams}
        self._max_seen: Dict[str, float] = {s: NEG_INF for s in self._streams}
        self._last_activity: Dict[str, Optional[float]] = {s: None for s in self._streams}
        self._finished: Set[str] = set()

    @property
    def streams(self) -> Set[str]:
        return set(self._streams)

    @property
    def active_streams(self) -> Set[str]:
        return self._streams - self._finished

    def watermark(self, stream: str) -> float:
        """Current watermark of one stream (+inf once finished)."""
        if stream in self._finished:
            return POS_INF
        return self._watermarks[stream]

    def observe(self, stream: str, timestamp: float) -> float:
        """Record an observed timestamp; returns the stream's watermark."""
        if stream in self._finished:
            return POS_INF
        self._last_activity[stream] = self.clock()
        if timestamp > self._max_seen[stream]:
            self._max_seen[stream] = timestamp
            self._set(stream, timestamp - self.lateness)
        return self._watermarks[stream]

    def _set(self, stream: str, candidate: float) -> None:
        if candidate > self._watermarks[stream]:
            self._watermarks[stream] = candidate
            if self.metrics is not None and math.isfinite(candidate):
                self.metrics.watermark.labels(stream=stream).set(candidate)

    def tick(self) -> Dict[str, float]:
        """
        Advance idle streams by elapsed processing time.

        A stream that has never produced a point stays at -inf: without
        any observation there is no event-time anchor to advance from.
        """
        if not self.advance_on_idle:
            return {}
        now = self.clock()
        advanced = {}
        for stream in sorted(self.active_streams):
            last = self._last_activity[stream]
            if last is None or not math.isfinite(self._watermarks[stream]):
                continue
            elapsed = now - last
            if elapsed <= 0:
                continue
            before = self._watermarks[stream]
            self._set(stream, before + self.time_unit.from_seconds(elapsed))
            self._last_activity[stream] = now
            advanced[stream] = self._watermarks[stream]
            logger.debug(f"Idle advance on {stream}: {before} -> {self._watermarks[stream]}")
        return advanced

    def finish(self, stream: str) -> None:
        """Remove a finished or failed stream from the computation."""
        if stream in self._streams:
            self._finished.add(stream)

    def combined(self, streams: Optional[Iterable[str]] = None) -> float:
        """
        Minimum watermark over the given (or all) streams.

        Finished streams are ignored; if every stream has finished the
        result is +inf, which closes all remaining windows.
        """
        candidates = self._streams if streams is None else set(streams)
        active = [self._watermarks[s] for s in candidates if s not in self._finished]
        if not active:
            return POS_INF
        return min(active)
