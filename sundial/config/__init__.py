#!/usr/bin/env python3
"""
Configuration management for Sundial.

Layered configuration for the execution engine:
- Dataclass defaults
- SUNDIAL_* environment variables
- Optional JSON config file (explicit path, ./sundial.json, ~/.sundial/config.json)

A loaded SundialConfig is turned into a per-query QueryContext; there is
no process-wide configuration instance.
"""

import json
import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional

from ..context import (
    BackpressurePolicy,
    CancelPolicy,
    LateDataPolicy,
    OverflowPolicy,
    QueryContext,
    RetryPolicy,
    WindowOverflowPolicy,
)

logger = logging.getLogger(__name__)


@dataclass
class StreamingConfig:
    """Buffering, ordering and backpressure."""
    lateness: float = 0.0
    late_data_policy: str = LateDataPolicy.DROP.value
    buffer_capacity: int = 1000
    overflow_policy: str = OverflowPolicy.BLOCK.value
    backpressure_timeout: Optional[float] = 5.0
    backpressure_policy: str = BackpressurePolicy.PAUSE.value
    tick_interval: float = 0.5
    advance_on_idle: bool = False
    cancel_policy: str = CancelPolicy.FLUSH.value


@dataclass
class ResourceConfig:
    """Memory bounds and worker pools."""
    max_window_points: Optional[int] = None
    window_overflow_policy: str = WindowOverflowPolicy.EVICT_OLDEST.value
    max_workers: int = 4
    forecast_timeout: float = 5.0
    retained_results: Optional[int] = 10000


@dataclass
class RetryConfig:
    max_retries: int = 5
    base_delay: float = 0.1
    max_delay: float = 10.0


@dataclass
class OperationalConfig:
    log_level: str = "INFO"
    enable_metrics: bool = True


_ENV_BOOL = {'1', 'true', 'yes', 'on'}


def _coerce(raw: str, current: Any, annotation: Any) -> Any:
    """Coerce an environment string to the type of the field it overrides."""
    if raw.lower() in ('none', 'null', ''):
        return None
    if isinstance(current, bool) or annotation is bool:
        return raw.lower() in _ENV_BOOL
    if isinstance(current, int) or annotation in (int, Optional[int]):
        return int(raw)
    if isinstance(current, float) or annotation in (float, Optional[float]):
        return float(raw)
    return raw


@dataclass
class SundialConfig:
    """Main Sundial configuration."""
    streaming: StreamingConfig = field(default_factory=StreamingConfig)
    resources: ResourceConfig = field(default_factory=ResourceConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    operational: OperationalConfig = field(default_factory=OperationalConfig)

    @classmethod
    def load(
        cls,
        config_file: Optional[str] = None,
        environ: Optional[Dict[str, str]] = None,
    ) -> 'SundialConfig':
        """Build a configuration from files, then environment overrides."""
        environ = os.environ if environ is None else environ
        config = cls()
        config._load_from_config_files(config_file, environ)
        config._load_from_environment(environ)
        return config

    def _sections(self) -> Dict[str, Any]:
        return {
            'streaming': self.streaming,
            'resources': self.resources,
            'retry': self.retry,
            'operational': self.operational,
        }

    def _load_from_environment(self, environ: Dict[str, str]) -> None:
        """Apply SUNDIAL_<FIELD> variables, e.g. SUNDIAL_BUFFER_CAPACITY=500."""
        for section in self._sections().values():
            for f in fields(section):
                raw = environ.get(f"SUNDIAL_{f.name.upper()}")
                if raw is None:
                    continue
                try:
                    setattr(section, f.name, _coerce(raw, getattr(section, f.name), f.type))
                except ValueError:
                    logger.warning(f"Ignoring invalid SUNDIAL_{f.name.upper()}={raw!r}")

    def _load_from_config_files(self, config_file: Optional[str], environ: Dict[str, str]) -> None:
        candidates = []
        if config_file:
            candidates.append(Path(config_file))
        if environ.get('SUNDIAL_CONFIG_FILE'):
            candidates.append(Path(environ['SUNDIAL_CONFIG_FILE']))
        candidates.extend([
            Path.cwd() / 'sundial.json',
            Path.home() / '.sundial' / 'config.json',
        ])

        for config_path in candidates:
            if config_path.is_file():
                with open(config_path, 'r') as f:
                    self.update_from_dict(json.load(f))
                logger.debug(f"Loaded configuration from {config_path}")
                break  # First found config file wins

    def update_from_dict(self, data: Dict[str, Any]) -> None:
        """Update configuration from a nested dictionary."""
        for name, section in self._sections().items():
            for key, value in (data.get(name) or {}).items():
                if hasattr(section, key):
                    setattr(section, key, value)
                else:
                    logger.warning(f"Unknown config key {name}.{key}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            name: {f.name: getattr(section, f.name) for f in fields(section)}
            for name, section in self._sections().items()
        }

    def save_to_file(self, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)

    def to_query_context(self, **overrides: Any) -> QueryContext:
        """Materialize a fresh QueryContext for one query."""
        s, r = self.streaming, self.resources
        kwargs: Dict[str, Any] = dict(
            lateness=s.lateness,
            late_data_policy=LateDataPolicy(s.late_data_policy),
            buffer_capacity=s.buffer_capacity,
            overflow_policy=OverflowPolicy(s.overflow_policy),
            backpressure_timeout=s.backpressure_timeout,
            backpressure_policy=BackpressurePolicy(s.backpressure_policy),
            tick_interval=s.tick_interval,
            advance_on_idle=s.advance_on_idle,
            cancel_policy=CancelPolicy(s.cancel_policy),
            max_window_points=r.max_window_points,
            window_overflow_policy=WindowOverflowPolicy(r.window_overflow_policy),
            max_workers=r.max_workers,
            forecast_timeout=r.forecast_timeout,
            retained_results=r.retained_results,
            retry=RetryPolicy(
                max_retries=self.retry.max_retries,
                base_delay=self.retry.base_delay,
                max_delay=self.retry.max_delay,
            ),
        )
        kwargs.update(overrides)
        return QueryContext(**kwargs)


__all__ = [
    "SundialConfig",
    "StreamingConfig",
    "ResourceConfig",
    "RetryConfig",
    "OperationalConfig",
]
