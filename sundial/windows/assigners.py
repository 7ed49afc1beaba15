#!/usr/bin/env python3
"""
Window assigners.

Map a timestamp to the half-open window bounds that contain it:
- Tumbling: exactly one window aligned to ``epoch``
- Sliding: every window whose start is on the ``slide`` grid and
  start <= ts < start + size

Session windows depend on previously seen points and are assigned by
the WindowManager itself.
"""

import math
from typing import List

from ..execution.operator_graph import WindowKind, WindowParams
from ..types import WindowBounds


class TumblingAssigner:
    """Non-overlapping windows of fixed size."""

    def __init__(self, size: float, epoch: float = 0.0):
        self.size = size
        self.epoch = epoch

    def windows_for(self, timestamp: float) -> List[WindowBounds]:
        start = self.epoch + math.floor((timestamp - self.epoch) / self.size) * self.size
        return [WindowBounds(start, start + self.size)]


class SlidingAssigner:
    """Overlapping windows of fixed size whose starts are ``slide`` apart."""

    def __init__(self, size: float, slide: float, epoch: float = 0.0):
        self.size = size
        self.slide = slide
        self.epoch = epoch

    def windows_for(self, timestamp: float) -> List[WindowBounds]:
        since_origin = timestamp - self.epoch
        first = math.floor((since_origin - self.size) / self.slide) + 1
        last = math.floor(since_origin / self.slide)
        windows = []
        for index in range(first - 1, last + 2):
            start = self.epoch + index * self.slide
            bounds = WindowBounds(start, start + self.size)
            # Guard against float rounding on the grid edges
            if bounds.contains(timestamp):
                windows.append(bounds)
        return windows


def assigner_for(params: WindowParams):
    """Assigner for a tumbling or sliding window operator."""
    if params.kind == WindowKind.TUMBLING:
        return TumblingAssigner(params.size, params.epoch)
    if params.kind == WindowKind.SLIDING:
        return SlidingAssigner(params.size, params.slide, params.epoch)
    raise ValueError(f"No grid assigner for {params.kind.value} windows")
