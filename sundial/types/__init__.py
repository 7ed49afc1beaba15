# -*- coding: utf-8 -*-
"""Type definitions for Sundial."""

from .core import DataPoint, EndOfStream, END_OF_STREAM, TimeRange, TimeUnit, WindowBounds
from .events import EngineEvent, EventKind
from .results import ResultKind, WindowResult, result_sort_key

__all__ = [
    "DataPoint", "EndOfStream", "END_OF_STREAM", "TimeRange", "TimeUnit", "WindowBounds",
    "EngineEvent", "EventKind",
    "ResultKind", "WindowResult", "result_sort_key",
]
