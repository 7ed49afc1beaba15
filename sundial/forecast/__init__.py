"""Forecast adapter protocol, built-in strategies and invoker."""

from .base import (
    FailureReason,
    ForecastAdapter,
    ForecastFailure,
    ForecastPoint,
    ForecastRequest,
    ForecastResult,
    ModelHandle,
    infer_step,
    ordered_history,
)
from .invoker import ForecastInvoker
from .models import DriftAdapter, LastValueAdapter, MeanAdapter
from .registry import DEFAULT_REGISTRY, ModelRegistry, is_registered

__all__ = [
    'DEFAULT_REGISTRY',
    'DriftAdapter',
    'FailureReason',
    'ForecastAdapter',
    'ForecastFailure',
    'ForecastInvoker',
    'ForecastPoint',
    'ForecastRequest',
    'ForecastResult',
    'LastValueAdapter',
    'MeanAdapter',
    'ModelHandle',
    'ModelRegistry',
    'infer_step',
    'is_registered',
    'ordered_history',
]
