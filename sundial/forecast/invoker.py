#!/usr/bin/env python3
"""
Forecast Invoker

Runs the fit/predict protocol for Forecast operators on window closure:
- Minimum-history check (insufficient data)
- Non-finite predictions reported as model divergence
- Per-invocation timeout on a worker thread; a worker that never returns
  is abandoned and replaced
- Retrain cadence: refit every Nth closure per (operator, key), otherwise
  predict from the cached model handle

Every failure becomes an explicit ForecastFailure result; nothing here
aborts the surrounding query.
"""

import logging
import math
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Any, Dict, Optional, Sequence, Tuple

from ..context import QueryContext
from ..errors import ForecastError, ModelDivergence
from ..execution.operator_graph import ForecastParams
from ..metrics import EngineMetrics
from ..types import DataPoint, EngineEvent, EventKind
from .base import (
    FailureReason,
    ForecastFailure,
    ForecastPoint,
    ForecastRequest,
    ForecastResult,
    ModelHandle,
)
from .registry import DEFAULT_REGISTRY, ModelRegistry

logger = logging.getLogger(__name__)

_REASONS = {
    'insufficient_data': FailureReason.INSUFFICIENT_DATA,
    'model_divergence': FailureReason.MODEL_DIVERGENCE,
    'timeout': FailureReason.TIMEOUT,
}


class ForecastInvoker:
    """Invokes forecast adapters for one query."""

    def __init__(self, context: QueryContext, metrics: EngineMetrics,
                 registry: Optional[ModelRegistry] = None):
        self.context = context
        self.metrics = metrics
        self.registry = registry or DEFAULT_REGISTRY
        self._pool: Optional[ThreadPoolExecutor] = None
        # (operator id, key) -> (handle, closures since last fit)
        self._handles: Dict[Tuple[str, Any], Tuple[ModelHandle, int]] = {}

    def _executor(self) -> ThreadPoolExecutor:
        if self._pool is None:
            self._pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="sundial-forecast")
        return self._pool

    def _abandon_pool(self) -> None:
        """Leave a hung worker behind; the next invocation gets a fresh thread."""
        if self._pool is not None:
            self._pool.shutdown(wait=False)
            self._pool = None

    def close(self) -> None:
        self._abandon_pool()

    def invoke(self, node_id: str, params: ForecastParams, history: Sequence[DataPoint],
               key: Any = None) -> ForecastResult:
        """Fit (or reuse) a model and predict ``params.horizon`` points."""
        if len(history) < params.min_points:
            return self._failed(node_id, params, FailureReason.INSUFFICIENT_DATA,
                                f"{len(history)} points < min_points {params.min_points}")

        request = ForecastRequest(history=tuple(history), horizon=params.horizon,
                                  step=params.step, params=params.params)
        adapter = self.registry.get(params.model)
        timeout = params.timeout_seconds or self.context.forecast_timeout
        cached = self._handles.get((node_id, key))
        refit = cached is None or cached[1] + 1 >= params.retrain_every

        def run() -> Tuple[ModelHandle, Tuple[ForecastPoint, ...]]:
            if refit:
                handle = adapter.fit(request.history, request.model_params, request.step)
            else:
                handle = cached[0]
            return handle, adapter.predict(handle, request.horizon)

        started = time.perf_counter()
        future = self._executor().submit(run)
        try:
            handle, points = future.result(timeout=timeout)
            _check_finite(points)
        except FutureTimeout:
            if not future.cancel():
                self._abandon_pool()
            return self._failed(node_id, params, FailureReason.TIMEOUT,
                                f"{params.model} exceeded {timeout}s")
        except ForecastError as e:
            return self._failed(node_id, params, _REASONS.get(e.kind, FailureReason.ADAPTER_ERROR),
                                e.message)
        except Exception as e:
            logger.exception(f"Forecast adapter {params.model} raised on operator {node_id}")
            return self._failed(node_id, params, FailureReason.ADAPTER_ERROR, f"{type(e).__name__}: {e}")
        finally:
            self.metrics.forecast_duration.labels(model=params.model).observe(
                time.perf_counter() - started
            )

        if refit:
            self._handles[(node_id, key)] = (handle, 0)
        else:
            self._handles[(node_id, key)] = (handle, cached[1] + 1)
        return ForecastResult(model=params.model, points=points)

    def _failed(self, node_id: str, params: ForecastParams, reason: FailureReason,
                message: str) -> ForecastResult:
        self.metrics.forecast_failures.labels(node=node_id, reason=reason.value).inc()
        self.metrics.record_event(EngineEvent(
            kind=EventKind.FORECAST_FAILURE,
            message=f"{params.model}: {message}",
            node_id=node_id,
            detail={'reason': reason.value},
        ))
        return ForecastResult(model=params.model, failure=ForecastFailure(reason, message))


def _check_finite(points: Tuple[ForecastPoint, ...]) -> None:
    for p in points:
        for v in (p.value, p.lower, p.upper):
            if v is not None and not math.isfinite(v):
                raise ModelDivergence(f"Non-finite prediction at t={p.timestamp}")
