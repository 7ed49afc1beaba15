#!/usr/bin/env python3
"""
Error taxonomy for Sundial.

Every engine error carries structured context (kind, offending node,
window, timestamp) so a failed query can report exactly where it broke.

Fatal vs. recoverable:
- CompileError, QueryFailed: halt the affected query
- SourceUnavailable: retried with backoff, fatal for one stream when exhausted
- LateDataDropped, WindowOverflow (evict mode): recorded, query continues
- ForecastError: converted into an explicit failure result downstream
- BackpressureTimeout: stream pauses or query terminates per policy
"""

from typing import Any, Dict, Optional, Tuple


class SundialError(Exception):
    """Base Sundial exception."""

    kind = "error"

    def __init__(
        self,
        message: str,
        node_id: Optional[str] = None,
        window: Optional[Tuple[float, float]] = None,
        timestamp: Optional[float] = None,
    ):
        super().__init__(message)
        self.message = message
        self.node_id = node_id
        self.window = window
        self.timestamp = timestamp

    def to_dict(self) -> Dict[str, Any]:
        return {
            'kind': self.kind,
            'message': self.message,
            'node_id': self.node_id,
            'window': list(self.window) if self.window is not None else None,
            'timestamp': self.timestamp,
        }


class CompileError(SundialError):
    """Malformed operator graph (cycle, dangling reference, bad edge)."""

    kind = "compile_error"


class SourceUnavailable(SundialError):
    """A source could not be reached; retryable."""

    kind = "source_unavailable"


class LateDataDropped(SundialError):
    """A point arrived for windows that are already closed."""

    kind = "late_data_dropped"


class WindowOverflow(SundialError):
    """A window instance exceeded its configured point bound."""

    kind = "window_overflow"


class BackpressureTimeout(SundialError):
    """A producer stayed blocked on a full buffer past its deadline."""

    kind = "backpressure_timeout"


class ForecastError(SundialError):
    """Base class for recoverable forecasting failures."""

    kind = "forecast_error"


class InsufficientData(ForecastError):
    kind = "insufficient_data"


class ModelDivergence(ForecastError):
    kind = "model_divergence"


class ForecastTimeout(ForecastError):
    kind = "timeout"


class InvalidTransition(SundialError):
    """Illegal query lifecycle transition."""

    kind = "invalid_transition"


class QueryFailed(SundialError):
    """Fatal query error wrapping the structured cause."""

    kind = "query_failed"

    def __init__(self, cause: SundialError):
        super().__init__(
            f"Query failed ({cause.kind}): {cause.message}",
            node_id=cause.node_id,
            window=cause.window,
            timestamp=cause.timestamp,
        )
        self.cause = cause

    def to_dict(self) -> Dict[str, Any]:
        data = self.cause.to_dict()
        data['fatal'] = True
        return data
