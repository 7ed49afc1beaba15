#!/usr/bin/env python3
"""
Execution layer for Sundial: the immutable compiled query DAG and its builder.
"""

from .operator_graph import (
    AggregateParams,
    FilterParams,
    ForecastParams,
    GraphBuilder,
    OperatorGraph,
    OperatorNode,
    OperatorType,
    Predicate,
    SinkParams,
    SourceParams,
    TrendParams,
    WindowKind,
    WindowParams,
)

__all__ = [
    'AggregateParams',
    'FilterParams',
    'ForecastParams',
    'GraphBuilder',
    'OperatorGraph',
    'OperatorNode',
    'OperatorType',
    'Predicate',
    'SinkParams',
    'SourceParams',
    'TrendParams',
    'WindowKind',
    'WindowParams',
]
