#!/usr/bin/env python3
"""Incremental aggregation engine."""

from .aggregators import (
    ExactSum,
    OrderedValues,
    TrendAccumulator,
    TrendLine,
    parse_function,
)
from .state import AggregationState, StateRequirements, requirements_for

__all__ = [
    'AggregationState',
    'ExactSum',
    'OrderedValues',
    'StateRequirements',
    'TrendAccumulator',
    'TrendLine',
    'parse_function',
    'requirements_for',
]
