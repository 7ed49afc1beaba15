#!/usr/bin/env python3
"""Finalized results handed to sinks."""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from .core import WindowBounds


class ResultKind(Enum):
    AGGREGATE = "aggregate"
    TREND = "trend"
    FORECAST = "forecast"


@dataclass(frozen=True)
class WindowResult:
    """
    One (window boundaries, result) tuple emitted to a sink.

    ``partial`` marks windows flushed early by cancellation.
    """
    operator_id: str
    kind: ResultKind
    window: WindowBounds
    value: Any
    count: int
    key: Optional[Any] = None
    partial: bool = False

    def to_dict(self) -> Dict[str, Any]:
        value = self.value.to_dict() if hasattr(self.value, 'to_dict') else self.value
        return {
            'operator_id': self.operator_id,
            'kind': self.kind.value,
            'window_start': self.window.start,
            'window_end': self.window.end,
            'key': self.key,
            'count': self.count,
            'partial': self.partial,
            'value': value,
        }


def result_sort_key(result: WindowResult) -> Tuple:
    """Deterministic sink ordering: window end first, then start, operator, key."""
    return (
        result.window.end,
        result.window.start,
        result.operator_id,
        '' if result.key is None else str(result.key),
    )
