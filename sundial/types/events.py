#!/usr/bin/env python3
"""
Engine events.

Non-fatal conditions (late data, buffer drops, window eviction,
reconnects, forecast failures) are recorded as events alongside their
metric so a caller can audit what the engine diverted or discarded.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class EventKind(Enum):
    """Kinds of recorded engine events."""
    LATE_DATA = "late_data"
    BUFFER_DROP = "buffer_drop"
    BACKPRESSURE_TIMEOUT = "backpressure_timeout"
    WINDOW_EVICTION = "window_eviction"
    SOURCE_ERROR = "source_error"
    RECONNECT = "reconnect"
    STREAM_FAILED = "stream_failed"
    FORECAST_FAILURE = "forecast_failure"
    STATE_CHANGE = "state_change"


@dataclass
class EngineEvent:
    """A single recorded engine event."""
    kind: EventKind
    message: str
    stream: Optional[str] = None
    node_id: Optional[str] = None
    timestamp: Optional[float] = None
    detail: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'kind': self.kind.value,
            'message': self.message,
            'stream': self.stream,
            'node_id': self.node_id,
            'timestamp': self.timestamp,
            'detail': self.detail,
        }
