"""
Forecast model registry.

A closed mapping from model-kind identifier to adapter class. Graphs are
checked against a registry when validated, so an unknown model kind is a
compile-time rejection rather than a runtime lookup failure.
"""

import logging
from types import MappingProxyType
from typing import Dict, Mapping, Optional, Type

from .base import ForecastAdapter
from .models import DriftAdapter, LastValueAdapter, MeanAdapter

logger = logging.getLogger(__name__)


class ModelRegistry:
    """Immutable set of available forecasting strategies."""

    def __init__(self, adapters: Mapping[str, Type[ForecastAdapter]]):
        self._adapters = MappingProxyType(dict(adapters))
        self._instances: Dict[str, ForecastAdapter] = {
            kind: adapter_cls() for kind, adapter_cls in self._adapters.items()
        }

    def __contains__(self, model_kind: str) -> bool:
        return model_kind in self._adapters

    def kinds(self):
        return sorted(self._adapters)

    def get(self, model_kind: str) -> ForecastAdapter:
        try:
            return self._instances[model_kind]
        except KeyError:
            raise KeyError(f"Unknown forecast model kind {model_kind!r}") from None

    def with_models(self, **adapters: Type[ForecastAdapter]) -> 'ModelRegistry':
        """A new registry extended with additional strategies."""
        merged = dict(self._adapters)
        merged.update(adapters)
        return ModelRegistry(merged)


DEFAULT_REGISTRY = ModelRegistry({
    LastValueAdapter.model_kind: LastValueAdapter,
    MeanAdapter.model_kind: MeanAdapter,
    DriftAdapter.model_kind: DriftAdapter,
})


def is_registered(model_kind: str, registry: Optional[ModelRegistry] = None) -> bool:
    return model_kind in (registry or DEFAULT_REGISTRY)
