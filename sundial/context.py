#!/usr/bin/env python3
"""
Query Context

Carries per-query configuration through every component by reference:
- Lateness tolerance and late-data policy
- Buffer capacity, overflow and backpressure policy
- Window memory bound and eviction policy
- Retry/backoff for unavailable sources
- Cancellation token (the only field mutated while a query runs)

There is deliberately no process-wide instance; each query owns one.
"""

import logging
import threading
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)


class OverflowPolicy(Enum):
    """What a full per-source buffer does with a new point."""
    BLOCK = "block"              # Suspend the producer until space frees up
    DROP_OLDEST = "drop_oldest"  # Evict the oldest buffered point
    DROP_NEWEST = "drop_newest"  # Reject the incoming point


class BackpressurePolicy(Enum):
    """Reaction to a BLOCK that exceeded backpressure_timeout."""
    PAUSE = "pause"          # Stream stays paused and keeps waiting
    TERMINATE = "terminate"  # Query fails with BackpressureTimeout


class LateDataPolicy(Enum):
    DROP = "drop"
    SIDE_OUTPUT = "side_output"


class WindowOverflowPolicy(Enum):
    EVICT_OLDEST = "evict_oldest"
    FAIL = "fail"


class CancelPolicy(Enum):
    """What happens to in-flight windows on cancellation."""
    FLUSH = "flush"      # Emit partial results
    DISCARD = "discard"  # Drop without emission


class CancellationToken:
    """
    Cooperative cancellation flag shared between caller and executors.

    Backed by a threading.Event so batch worker threads and the
    streaming event loop observe the same state.
    """

    def __init__(self):
        self._event = threading.Event()
        self._reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self._reason = reason
            self._event.set()
            logger.info(f"Cancellation requested: {reason}")

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff for reconnecting sources."""
    max_retries: int = 5
    base_delay: float = 0.1
    max_delay: float = 10.0

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (0-based)."""
        return min(self.max_delay, self.base_delay * (2 ** attempt))


@dataclass(frozen=True)
class QueryContext:
    """
    Per-query configuration.

    Durations (``lateness``) are in the graph's time unit; timeouts and
    intervals (``*_timeout``, ``tick_interval``) are wall-clock seconds.
    """
    lateness: float = 0.0
    late_data_policy: LateDataPolicy = LateDataPolicy.DROP

    buffer_capacity: int = 1000
    overflow_policy: OverflowPolicy = OverflowPolicy.BLOCK
    backpressure_timeout: Optional[float] = 5.0
    backpressure_policy: BackpressurePolicy = BackpressurePolicy.PAUSE

    max_window_points: Optional[int] = None
    window_overflow_policy: WindowOverflowPolicy = WindowOverflowPolicy.EVICT_OLDEST

    cancel_policy: CancelPolicy = CancelPolicy.FLUSH
    retry: RetryPolicy = field(default_factory=RetryPolicy)

    tick_interval: float = 0.5
    advance_on_idle: bool = False
    max_workers: int = 4
    forecast_timeout: float = 5.0
    retained_results: Optional[int] = 10000

    clock: Callable[[], float] = field(default=time.monotonic, compare=False)
    token: CancellationToken = field(default_factory=CancellationToken, compare=False)

    def __post_init__(self):
        if self.lateness < 0:
            raise ValueError("lateness must be >= 0")
        if self.buffer_capacity <= 0:
            raise ValueError("buffer_capacity must be > 0")
        if self.max_window_points is not None and self.max_window_points <= 0:
            raise ValueError("max_window_points must be > 0")
        if self.max_workers <= 0:
            raise ValueError("max_workers must be > 0")
        if self.retained_results is not None and self.retained_results <= 0:
            raise ValueError("retained_results must be > 0")

    @property
    def cancelled(self) -> bool:
        return self.token.cancelled

    def cancel(self, reason: str = "cancelled") -> None:
        self.token.cancel(reason)

    def with_overrides(self, **changes: Any) -> 'QueryContext':
        """Copy with changes; a fresh token unless one is supplied."""
        changes.setdefault('token', CancellationToken())
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'lateness': self.lateness,
            'late_data_policy': self.late_data_policy.value,
            'buffer_capacity': self.buffer_capacity,
            'overflow_policy': self.overflow_policy.value,
            'backpressure_timeout': self.backpressure_timeout,
            'backpressure_policy': self.backpressure_policy.value,
            'max_window_points': self.max_window_points,
            'window_overflow_policy': self.window_overflow_policy.value,
            'cancel_policy': self.cancel_policy.value,
            'retry': {
                'max_retries': self.retry.max_retries,
                'base_delay': self.retry.base_delay,
                'max_delay': self.retry.max_delay,
            },
            'tick_interval': self.tick_interval,
            'advance_on_idle': self.advance_on_idle,
            'max_workers': self.max_workers,
            'forecast_timeout': self.forecast_timeout,
            'retained_results': self.retained_results,
        }
