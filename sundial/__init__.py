# -*- coding: utf-8 -*-
"""Sundial - execution core for a time-series analytics DSL."""

from .aggregation import AggregationState, StateRequirements, TrendLine
from .config import SundialConfig
from .context import (
    BackpressurePolicy,
    CancelPolicy,
    CancellationToken,
    LateDataPolicy,
    OverflowPolicy,
    QueryContext,
    RetryPolicy,
    WindowOverflowPolicy,
)
from .engine import Engine, QueryResult, run_batch, run_streaming
from .errors import (
    BackpressureTimeout,
    CompileError,
    ForecastError,
    ForecastTimeout,
    InsufficientData,
    InvalidTransition,
    LateDataDropped,
    ModelDivergence,
    QueryFailed,
    SourceUnavailable,
    SundialError,
    WindowOverflow,
)
from .execution import (
    GraphBuilder,
    OperatorGraph,
    OperatorNode,
    OperatorType,
    Predicate,
    WindowKind,
)
from .forecast import DEFAULT_REGISTRY, ForecastAdapter, ForecastResult, ModelRegistry
from .metrics import EngineMetrics
from .scheduler import BatchScheduler, QueryState, StreamingScheduler
from .sinks import CallbackSink, CollectingSink, Sink
from .sources import BatchSource, IterableStreamingSource, ListSource, QueueSource, StreamingSource
from .types import (
    END_OF_STREAM,
    DataPoint,
    EngineEvent,
    EventKind,
    ResultKind,
    TimeRange,
    TimeUnit,
    WindowBounds,
    WindowResult,
)

__version__ = "0.1.0"

__all__ = [
    # Engine
    "Engine", "QueryResult", "run_batch", "run_streaming",
    "BatchScheduler", "StreamingScheduler", "QueryState",

    # Graph
    "GraphBuilder", "OperatorGraph", "OperatorNode", "OperatorType", "Predicate", "WindowKind",

    # Context and configuration
    "QueryContext", "RetryPolicy", "CancellationToken", "SundialConfig",
    "OverflowPolicy", "BackpressurePolicy", "LateDataPolicy", "WindowOverflowPolicy", "CancelPolicy",

    # Types
    "DataPoint", "TimeRange", "TimeUnit", "WindowBounds", "WindowResult", "ResultKind",
    "EngineEvent", "EventKind", "END_OF_STREAM",
    "AggregationState", "StateRequirements", "TrendLine",

    # Forecasting
    "ForecastAdapter", "ForecastResult", "ModelRegistry", "DEFAULT_REGISTRY",

    # Sources and sinks
    "BatchSource", "StreamingSource", "ListSource", "IterableStreamingSource", "QueueSource",
    "Sink", "CollectingSink", "CallbackSink",

    # Errors
    "SundialError", "CompileError", "SourceUnavailable", "LateDataDropped", "WindowOverflow",
    "BackpressureTimeout", "ForecastError", "InsufficientData", "ModelDivergence",
    "ForecastTimeout", "InvalidTransition", "QueryFailed",

    "EngineMetrics",
    "__version__",
]
