"""Shared forecasting datatypes and the adapter contract."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from statistics import median
from typing import Any, Dict, Mapping, Optional, Sequence, Tuple

from ..errors import InsufficientData
from ..types import DataPoint


class FailureReason(Enum):
    INSUFFICIENT_DATA = "insufficient_data"
    MODEL_DIVERGENCE = "model_divergence"
    TIMEOUT = "timeout"
    ADAPTER_ERROR = "adapter_error"


@dataclass(frozen=True)
class ForecastPoint:
    """One predicted point, optionally with a confidence band."""
    timestamp: float
    value: float
    lower: Optional[float] = None
    upper: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {'timestamp': self.timestamp, 'value': self.value,
                'lower': self.lower, 'upper': self.upper}


@dataclass(frozen=True)
class ForecastFailure:
    """Explicit "forecast unavailable" marker."""
    reason: FailureReason
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {'reason': self.reason.value, 'message': self.message}


@dataclass(frozen=True)
class ForecastRequest:
    """Window contents plus horizon and model parameters."""
    history: Tuple[DataPoint, ...]
    horizon: int
    step: Optional[float] = None
    params: Tuple[Tuple[str, Any], ...] = ()

    @property
    def model_params(self) -> Dict[str, Any]:
        return dict(self.params)


@dataclass(frozen=True)
class ForecastResult:
    """Ordered predictions, or a failure marker when ``failure`` is set."""
    model: str
    points: Tuple[ForecastPoint, ...] = ()
    failure: Optional[ForecastFailure] = None

    @property
    def ok(self) -> bool:
        return self.failure is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'model': self.model,
            'points': [p.to_dict() for p in self.points],
            'failure': self.failure.to_dict() if self.failure else None,
        }


@dataclass(frozen=True)
class ModelHandle:
    """Opaque fitted model returned by ``fit`` and consumed by ``predict``."""
    model: str
    last_timestamp: float
    step: float
    state: Mapping[str, Any] = field(default_factory=dict)
    fitted_on: int = 0


def ordered_history(history: Sequence[DataPoint]) -> Tuple[DataPoint, ...]:
    """Canonical order for fitting: by timestamp, then value."""
    return tuple(sorted(history, key=lambda p: (p.timestamp, p.value)))


def infer_step(history: Sequence[DataPoint], step: Optional[float] = None) -> float:
    """Prediction spacing: explicit ``step`` or the median observed spacing."""
    if step is not None:
        if step <= 0:
            raise ValueError("step must be > 0")
        return step
    timestamps = sorted({p.timestamp for p in history})
    if len(timestamps) < 2:
        raise InsufficientData("Need two distinct timestamps to infer forecast step")
    return median(b - a for a, b in zip(timestamps, timestamps[1:]))


class ForecastAdapter(ABC):
    """
    Uniform fit/predict boundary to a forecasting strategy.

    Implementations must be deterministic: identical history and params
    yield identical predictions. Failures are raised as ForecastError
    subclasses and never abort the query.
    """

    model_kind: str = ""

    @abstractmethod
    def fit(self, history: Sequence[DataPoint], params: Mapping[str, Any],
            step: Optional[float] = None) -> ModelHandle:
        """Fit on a window's points (any order)."""

    @abstractmethod
    def predict(self, handle: ModelHandle, horizon: int) -> Tuple[ForecastPoint, ...]:
        """Return ``horizon`` points spaced by ``handle.step`` after the history."""

    def future_timestamps(self, handle: ModelHandle, horizon: int) -> Tuple[float, ...]:
        return tuple(handle.last_timestamp + handle.step * k for k in range(1, horizon + 1))
