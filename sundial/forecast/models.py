"""
Built-in forecasting strategies.

Deterministic baselines only; real model families plug in through the
same ForecastAdapter contract.
"""

from typing import Any, Mapping, Optional, Sequence, Tuple

import numpy as np

from ..errors import InsufficientData
from ..types import DataPoint
from .base import ForecastAdapter, ForecastPoint, ModelHandle, infer_step, ordered_history


class LastValueAdapter(ForecastAdapter):
    """Naive forecast: repeat the last observed value."""

    model_kind = "last_value"

    def fit(self, history: Sequence[DataPoint], params: Mapping[str, Any],
            step: Optional[float] = None) -> ModelHandle:
        points = ordered_history(history)
        if not points:
            raise InsufficientData("last_value needs at least one point")
        last = points[-1]
        return ModelHandle(
            model=self.model_kind,
            last_timestamp=last.timestamp,
            step=infer_step(points, step),
            state={'value': last.value},
            fitted_on=len(points),
        )

    def predict(self, handle: ModelHandle, horizon: int) -> Tuple[ForecastPoint, ...]:
        value = handle.state['value']
        return tuple(ForecastPoint(ts, value) for ts in self.future_timestamps(handle, horizon))


class MeanAdapter(ForecastAdapter):
    """Historical mean with a normal-approximation band (``z``, default 1.96)."""

    model_kind = "mean"

    def fit(self, history: Sequence[DataPoint], params: Mapping[str, Any],
            step: Optional[float] = None) -> ModelHandle:
        points = ordered_history(history)
        if not points:
            raise InsufficientData("mean needs at least one point")
        values = np.array([p.value for p in points], dtype=np.float64)
        std = float(values.std(ddof=1)) if len(values) > 1 else 0.0
        return ModelHandle(
            model=self.model_kind,
            last_timestamp=points[-1].timestamp,
            step=infer_step(points, step),
            state={'mean': float(values.mean()), 'std': std, 'z': float(params.get('z', 1.96))},
            fitted_on=len(points),
        )

    def predict(self, handle: ModelHandle, horizon: int) -> Tuple[ForecastPoint, ...]:
        mean, band = handle.state['mean'], handle.state['z'] * handle.state['std']
        return tuple(
            ForecastPoint(ts, mean, mean - band, mean + band)
            for ts in self.future_timestamps(handle, horizon)
        )


class DriftAdapter(ForecastAdapter):
    """Extrapolate the line through the first and last observations."""

    model_kind = "drift"

    def fit(self, history: Sequence[DataPoint], params: Mapping[str, Any],
            step: Optional[float] = None) -> ModelHandle:
        points = ordered_history(history)
        if len(points) < 2 or points[-1].timestamp == points[0].timestamp:
            raise InsufficientData("drift needs two points with distinct timestamps")
        first, last = points[0], points[-1]
        slope = (last.value - first.value) / (last.timestamp - first.timestamp)
        return ModelHandle(
            model=self.model_kind,
            last_timestamp=last.timestamp,
            step=infer_step(points, step),
            state={'value': last.value, 'slope': slope},
            fitted_on=len(points),
        )

    def predict(self, handle: ModelHandle, horizon: int) -> Tuple[ForecastPoint, ...]:
        value, slope = handle.state['value'], handle.state['slope']
        return tuple(
            ForecastPoint(ts, value + slope * (ts - handle.last_timestamp))
            for ts in self.future_timestamps(handle, horizon)
        )
