"""
Unit Tests for forecasting

Tests the built-in adapters, the model registry and the ForecastInvoker
failure handling (insufficient data, divergence, timeout, adapter
errors) and retrain cadence.
"""

import math
import random
import time

import pytest

from sundial.engine import Engine
from sundial.execution.operator_graph import ForecastParams, GraphBuilder, WindowKind
from sundial.forecast import (
    DEFAULT_REGISTRY,
    DriftAdapter,
    FailureReason,
    ForecastInvoker,
    ForecastPoint,
    LastValueAdapter,
    MeanAdapter,
    infer_step,
)
from sundial.sources import ListSource
from sundial.types import DataPoint, EventKind, ResultKind, TimeUnit


def daily_history(n=30, seed=5):
    rng = random.Random(seed)
    return [DataPoint(float(day), rng.uniform(50, 150)) for day in range(n)]


class NaNAdapter(LastValueAdapter):
    """Predicts NaN."""

    model_kind = "nan"

    def predict(self, handle, horizon):
        return tuple(ForecastPoint(p.timestamp, math.nan) for p in super().predict(handle, horizon))


class SlowAdapter(LastValueAdapter):
    """Takes too long to fit."""

    model_kind = "slow"

    def fit(self, history, params, step=None):
        time.sleep(0.5)
        return super().fit(history, params, step)


class BrokenAdapter(LastValueAdapter):
    """Fails with an error outside the forecast taxonomy."""

    model_kind = "broken"

    def fit(self, history, params, step=None):
        raise RuntimeError("plugin bug")


class CountingAdapter(LastValueAdapter):
    """Counts fits."""

    model_kind = "counting"

    def __init__(self):
        self.fits = 0

    def fit(self, history, params, step=None):
        self.fits += 1
        return super().fit(history, params, step)


@pytest.fixture
def registry():
    return DEFAULT_REGISTRY.with_models(
        nan=NaNAdapter, slow=SlowAdapter, counting=CountingAdapter, broken=BrokenAdapter,
    )


@pytest.fixture
def invoker(context, metrics, registry):
    invoker = ForecastInvoker(context, metrics, registry)
    yield invoker
    invoker.close()


class TestAdapters:
    """Test the built-in forecasting strategies"""

    def test_last_value(self):
        history = daily_history()
        adapter = LastValueAdapter()

        handle = adapter.fit(history, {})
        predicted = adapter.predict(handle, 7)

        assert [p.timestamp for p in predicted] == [30.0, 31.0, 32.0, 33.0, 34.0, 35.0, 36.0]
        assert all(p.value == history[-1].value for p in predicted)

    def test_mean_band(self):
        history = [DataPoint(float(t), v) for t, v in enumerate([1.0, 2.0, 3.0, 4.0])]
        adapter = MeanAdapter()

        predicted = adapter.predict(adapter.fit(history, {"z": 2.0}), 2)

        std = math.sqrt(sum((v - 2.5) ** 2 for v in [1, 2, 3, 4]) / 3)
        assert predicted[0].value == pytest.approx(2.5)
        assert predicted[0].upper == pytest.approx(2.5 + 2.0 * std)
        assert predicted[0].lower == pytest.approx(2.5 - 2.0 * std)

    def test_drift_extrapolates(self):
        history = [DataPoint(float(t), 3.0 * t + 1) for t in range(10)]
        adapter = DriftAdapter()

        predicted = adapter.predict(adapter.fit(history, {}, step=2.0), 3)

        assert [p.timestamp for p in predicted] == [11.0, 13.0, 15.0]
        assert [p.value for p in predicted] == pytest.approx([34.0, 40.0, 46.0])

    def test_deterministic_for_any_input_order(self):
        """Identical history yields identical predictions"""
        history = daily_history()
        reversed_history = list(reversed(history))

        for adapter in (LastValueAdapter(), MeanAdapter(), DriftAdapter()):
            a = adapter.predict(adapter.fit(history, {}), 5)
            b = adapter.predict(adapter.fit(reversed_history, {}), 5)
            assert a == b

    def test_infer_step(self):
        history = [DataPoint(t, 0.0) for t in (0, 10, 20, 25, 35)]

        assert infer_step(history) == 10
        assert infer_step(history, step=3.0) == 3.0
        with pytest.raises(ValueError):
            infer_step(history, step=0)


class TestModelRegistry:
    """Test the closed model registry"""

    def test_builtin_kinds(self):
        assert DEFAULT_REGISTRY.kinds() == ["drift", "last_value", "mean"]
        assert "mean" in DEFAULT_REGISTRY
        assert isinstance(DEFAULT_REGISTRY.get("drift"), DriftAdapter)

    def test_unknown_kind(self):
        with pytest.raises(KeyError):
            DEFAULT_REGISTRY.get("arima")

    def test_with_models_leaves_original(self, registry):
        assert "nan" in registry
        assert "nan" not in DEFAULT_REGISTRY


class TestForecastInvoker:
    """Test the invoker protocol and failure results"""

    def test_last_value_horizon(self, invoker):
        """Seven predictions equal to the last observed value"""
        history = daily_history()

        result = invoker.invoke("fc", ForecastParams(model="last_value", horizon=7), history)

        assert result.ok
        assert len(result.points) == 7
        assert {p.value for p in result.points} == {history[-1].value}

    def test_insufficient_data(self, invoker, metrics):
        params = ForecastParams(model="mean", horizon=3, min_points=10)

        result = invoker.invoke("fc", params, daily_history(5))

        assert not result.ok
        assert result.failure.reason == FailureReason.INSUFFICIENT_DATA
        assert result.points == ()
        assert metrics.value("sundial_forecast_failures_total", node="fc",
                             reason="insufficient_data") == 1
        assert len(metrics.events(EventKind.FORECAST_FAILURE)) == 1

    def test_adapter_insufficient_data(self, invoker):
        """Adapters may reject history themselves"""
        result = invoker.invoke("fc", ForecastParams(model="drift", horizon=3), daily_history(1))

        assert result.failure.reason == FailureReason.INSUFFICIENT_DATA

    def test_divergence(self, invoker):
        result = invoker.invoke("fc", ForecastParams(model="nan", horizon=3), daily_history())

        assert result.failure.reason == FailureReason.MODEL_DIVERGENCE

    def test_timeout(self, invoker, metrics):
        params = ForecastParams(model="slow", horizon=3, timeout_seconds=0.05)

        result = invoker.invoke("fc", params, daily_history())

        assert result.failure.reason == FailureReason.TIMEOUT
        assert metrics.value("sundial_forecast_failures_total", node="fc", reason="timeout") == 1

    def test_recovers_after_timeout(self, invoker):
        """A hung model does not hold up later invocations"""
        slow = ForecastParams(model="slow", horizon=3, timeout_seconds=0.05)
        fast = ForecastParams(model="last_value", horizon=3, timeout_seconds=0.1)

        assert invoker.invoke("fc", slow, daily_history()).failure.reason == FailureReason.TIMEOUT
        result = invoker.invoke("fc", fast, daily_history())

        assert result.ok
        assert len(result.points) == 3

    def test_adapter_error(self, invoker):
        """Unexpected adapter errors become failure results"""
        params = ForecastParams(model="last_value", horizon=3, step=-1.0)

        result = invoker.invoke("fc", params, daily_history())

        assert result.failure.reason == FailureReason.ADAPTER_ERROR

    def test_arbitrary_exception_becomes_failure(self, invoker, metrics):
        result = invoker.invoke("fc", ForecastParams(model="broken", horizon=3), daily_history())

        assert result.failure.reason == FailureReason.ADAPTER_ERROR
        assert "plugin bug" in result.failure.message
        assert metrics.value("sundial_forecast_failures_total", node="fc", reason="adapter_error") == 1

    def test_retrain_cadence(self, invoker, registry):
        """retrain_every=N refits on every Nth closure per operator and key"""
        params = ForecastParams(model="counting", horizon=1, retrain_every=3)
        history = daily_history()

        values = []
        for i in range(6):
            window = history[: 10 + i]
            values.append(invoker.invoke("fc", params, window).points[0].value)

        assert registry.get("counting").fits == 2
        assert values[1] == values[0]
        assert values[3] == history[12].value

    def test_retrain_every_closure_by_default(self, invoker, registry):
        params = ForecastParams(model="counting", horizon=1)
        for key in ("a", "b", "a"):
            invoker.invoke("fc", params, daily_history(), key=key)

        assert registry.get("counting").fits == 3


class TestForecastOperator:
    """Test forecasts fired by window closure"""

    def test_daily_window_forecast(self):
        """A 30-day window forecasts 7 days of the last value"""
        history = daily_history()
        b = GraphBuilder(time_unit=TimeUnit.DAYS, name="daily")
        win = b.window(b.source("sales"), WindowKind.TUMBLING, size=30)
        b.sink(b.forecast(win, "last_value", horizon=7))

        result = Engine(b.build()).run_batch({"sales": ListSource("sales", history)})

        assert result.ok
        assert len(result.results) == 1
        forecast = result.results[0]
        assert forecast.kind == ResultKind.FORECAST
        assert forecast.count == 30
        assert [p.value for p in forecast.value.points] == [history[-1].value] * 7
        assert forecast.value.points[0].timestamp == 30.0

    def test_failure_does_not_abort_query(self):
        """Insufficient history yields a failure result, the query succeeds"""
        b = GraphBuilder(name="sparse")
        win = b.window(b.source("s"), WindowKind.TUMBLING, size=10)
        b.sink(b.forecast(win, "mean", horizon=2, min_points=5), b.aggregate(win, "count"))
        points = [DataPoint(float(t), 1.0) for t in (0, 1, 12, 13, 14, 15, 16)]

        result = Engine(b.build()).run_batch({"s": ListSource("s", points)})

        assert result.ok
        forecasts = [r for r in result.results if r.kind == ResultKind.FORECAST]
        assert [f.value.ok for f in forecasts] == [False, True]
        assert forecasts[0].value.failure.reason == FailureReason.INSUFFICIENT_DATA

    def test_adapter_crash_does_not_abort_query(self, registry):
        b = GraphBuilder(name="plugin")
        win = b.window(b.source("s"), WindowKind.TUMBLING, size=10)
        b.sink(b.forecast(win, "broken", horizon=2), b.aggregate(win, "count"))
        points = [DataPoint(float(t), 1.0) for t in range(20)]

        result = Engine(b.build(registry), registry=registry).run_batch({"s": ListSource("s", points)})

        assert result.ok
        forecasts = [r for r in result.results if r.kind == ResultKind.FORECAST]
        assert len(forecasts) == 2
        assert all(f.value.failure.reason == FailureReason.ADAPTER_ERROR for f in forecasts)
        assert [r.count for r in result.results if r.kind == ResultKind.AGGREGATE] == [10, 10]
