"""
Unit Tests for configuration

Tests SundialConfig layering (defaults, JSON files, SUNDIAL_* environment
overrides) and conversion to per-query QueryContext objects.
"""

import json

import pytest

from sundial.config import SundialConfig
from sundial.context import (
    BackpressurePolicy,
    CancellationToken,
    LateDataPolicy,
    OverflowPolicy,
    QueryContext,
    WindowOverflowPolicy,
)


@pytest.fixture(autouse=True)
def isolated_home(monkeypatch, temp_dir):
    """Keep ./sundial.json and ~/.sundial out of the tests."""
    monkeypatch.chdir(temp_dir)
    monkeypatch.setenv("HOME", str(temp_dir))
    return temp_dir


class TestDefaults:
    """Test built-in defaults"""

    def test_defaults(self):
        config = SundialConfig.load(environ={})

        assert config.streaming.buffer_capacity == 1000
        assert config.streaming.overflow_policy == "block"
        assert config.resources.max_window_points is None
        assert config.retry.max_retries == 5
        assert config.operational.log_level == "INFO"

    def test_to_dict_sections(self):
        data = SundialConfig().to_dict()

        assert set(data) == {"streaming", "resources", "retry", "operational"}
        assert data["streaming"]["lateness"] == 0.0


class TestEnvironment:
    """Test SUNDIAL_* overrides"""

    def test_typed_overrides(self):
        config = SundialConfig.load(environ={
            "SUNDIAL_BUFFER_CAPACITY": "250",
            "SUNDIAL_LATENESS": "2.5",
            "SUNDIAL_ADVANCE_ON_IDLE": "true",
            "SUNDIAL_LATE_DATA_POLICY": "side_output",
            "SUNDIAL_MAX_WINDOW_POINTS": "64",
        })

        assert config.streaming.buffer_capacity == 250
        assert config.streaming.lateness == 2.5
        assert config.streaming.advance_on_idle is True
        assert config.streaming.late_data_policy == "side_output"
        assert config.resources.max_window_points == 64

    def test_none_clears_optional(self):
        config = SundialConfig.load(environ={"SUNDIAL_BACKPRESSURE_TIMEOUT": "none"})

        assert config.streaming.backpressure_timeout is None

    def test_invalid_value_ignored(self, caplog):
        config = SundialConfig.load(environ={"SUNDIAL_BUFFER_CAPACITY": "lots"})

        assert config.streaming.buffer_capacity == 1000
        assert "SUNDIAL_BUFFER_CAPACITY" in caplog.text


class TestConfigFiles:
    """Test JSON config files"""

    def test_explicit_file(self, temp_dir):
        path = temp_dir / "custom.json"
        path.write_text(json.dumps({"streaming": {"lateness": 4}, "retry": {"max_retries": 1}}))

        config = SundialConfig.load(str(path), environ={})

        assert config.streaming.lateness == 4
        assert config.retry.max_retries == 1

    def test_working_directory_file(self, isolated_home):
        (isolated_home / "sundial.json").write_text(json.dumps({"resources": {"max_workers": 8}}))

        assert SundialConfig.load(environ={}).resources.max_workers == 8

    def test_environment_beats_file(self, temp_dir):
        path = temp_dir / "custom.json"
        path.write_text(json.dumps({"streaming": {"buffer_capacity": 10}}))

        config = SundialConfig.load(str(path), environ={"SUNDIAL_BUFFER_CAPACITY": "20"})

        assert config.streaming.buffer_capacity == 20

    def test_save_and_reload(self, temp_dir):
        config = SundialConfig()
        config.streaming.tick_interval = 0.1
        path = temp_dir / "nested" / "config.json"

        config.save_to_file(path)

        assert SundialConfig.load(str(path), environ={}).streaming.tick_interval == 0.1

    def test_unknown_keys_ignored(self):
        config = SundialConfig()

        config.update_from_dict({"streaming": {"bogus": 1}, "other": {"x": 2}})

        assert not hasattr(config.streaming, "bogus")


class TestQueryContext:
    """Test conversion to and validation of QueryContext"""

    def test_to_query_context(self):
        config = SundialConfig.load(environ={
            "SUNDIAL_OVERFLOW_POLICY": "drop_oldest",
            "SUNDIAL_WINDOW_OVERFLOW_POLICY": "fail",
            "SUNDIAL_BASE_DELAY": "0.5",
            "SUNDIAL_RETAINED_RESULTS": "500",
        })

        context = config.to_query_context(lateness=3)

        assert context.lateness == 3
        assert context.overflow_policy == OverflowPolicy.DROP_OLDEST
        assert context.window_overflow_policy == WindowOverflowPolicy.FAIL
        assert context.backpressure_policy == BackpressurePolicy.PAUSE
        assert context.retry.base_delay == 0.5
        assert context.retained_results == 500

    def test_invalid_policy(self):
        config = SundialConfig()
        config.streaming.late_data_policy = "ignore"

        with pytest.raises(ValueError):
            config.to_query_context()

    def test_fresh_context_per_query(self):
        config = SundialConfig()

        first, second = config.to_query_context(), config.to_query_context()
        first.cancel("stop")

        assert first.cancelled
        assert not second.cancelled

    def test_validation(self):
        with pytest.raises(ValueError):
            QueryContext(lateness=-1)
        with pytest.raises(ValueError):
            QueryContext(buffer_capacity=0)
        with pytest.raises(ValueError):
            QueryContext(retained_results=0)
        assert QueryContext(retained_results=None).retained_results is None

    def test_with_overrides_gets_new_token(self):
        context = QueryContext(late_data_policy=LateDataPolicy.SIDE_OUTPUT)
        context.cancel()

        copy = context.with_overrides(lateness=1)

        assert copy.late_data_policy == LateDataPolicy.SIDE_OUTPUT
        assert copy.lateness == 1
        assert not copy.cancelled
        assert isinstance(copy.token, CancellationToken)
