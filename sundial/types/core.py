#!/usr/bin/env python3
"""
Core value types shared by every Sundial component.

Timestamps and durations are plain numbers expressed in the owning
graph's TimeUnit; the engine never sees calendar strings.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional


class TimeUnit(Enum):
    """Resolution unit for timestamps and durations."""
    MILLISECONDS = "ms"
    SECONDS = "s"
    MINUTES = "m"
    HOURS = "h"
    DAYS = "d"

    @property
    def seconds(self) -> float:
        """Length of one unit in seconds."""
        return _UNIT_SECONDS[self]

    def from_seconds(self, seconds: float) -> float:
        """Convert a duration in seconds to this unit."""
        return seconds / _UNIT_SECONDS[self]


_UNIT_SECONDS = {
    TimeUnit.MILLISECONDS: 0.001,
    TimeUnit.SECONDS: 1.0,
    TimeUnit.MINUTES: 60.0,
    TimeUnit.HOURS: 3600.0,
    TimeUnit.DAYS: 86400.0,
}


@dataclass(frozen=True)
class TimeRange:
    """Resolved half-open interval [start, end)."""
    start: float
    end: float
    unit: TimeUnit = TimeUnit.SECONDS

    def __post_init__(self):
        if self.end < self.start:
            raise ValueError(f"TimeRange end {self.end} precedes start {self.start}")

    def contains(self, timestamp: float) -> bool:
        return self.start <= timestamp < self.end

    def to_dict(self) -> Dict[str, Any]:
        return {'start': self.start, 'end': self.end, 'unit': self.unit.value}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TimeRange':
        return cls(
            start=data['start'],
            end=data['end'],
            unit=TimeUnit(data.get('unit', TimeUnit.SECONDS.value)),
        )


@dataclass(frozen=True)
class DataPoint:
    """
    A single observation on a stream.

    ``stream`` carries the stream identity used for watermark tracking;
    sources stamp it on ingestion when the producer leaves it unset.
    """
    timestamp: float
    value: float
    tags: Mapping[str, Any] = field(default_factory=dict)
    stream: Optional[str] = None

    def tag(self, name: str, default: Any = None) -> Any:
        return self.tags.get(name, default)

    def with_stream(self, stream: str) -> 'DataPoint':
        return DataPoint(self.timestamp, self.value, self.tags, stream)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'timestamp': self.timestamp,
            'value': self.value,
            'tags': dict(self.tags),
            'stream': self.stream,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DataPoint':
        return cls(
            timestamp=data['timestamp'],
            value=float(data['value']),
            tags=dict(data.get('tags') or {}),
            stream=data.get('stream'),
        )


@dataclass(frozen=True, order=True)
class WindowBounds:
    """Half-open window interval; ordering is by (start, end)."""
    start: float
    end: float

    def contains(self, timestamp: float) -> bool:
        return self.start <= timestamp < self.end

    def as_tuple(self):
        return (self.start, self.end)


class EndOfStream:
    """Sentinel returned by pull sources once exhausted."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "END_OF_STREAM"

    def __bool__(self) -> bool:
        return False


END_OF_STREAM = EndOfStream()
