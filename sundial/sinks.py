"""
Sink interfaces.

A sink receives finalized WindowResults in window-end order. Export and
visualization sinks live outside the engine.
"""

import logging
import threading
from abc import ABC, abstractmethod
from typing import Callable, List

from .types import WindowResult

logger = logging.getLogger(__name__)


class Sink(ABC):
    """Abstract base class for result sinks."""

    def __init__(self, name: str = "default"):
        self.name = name

    @abstractmethod
    def emit(self, result: WindowResult) -> None:
        pass

    def close(self) -> None:
        pass


class CollectingSink(Sink):
    """Keeps every result in memory, in delivery order."""

    def __init__(self, name: str = "default"):
        super().__init__(name)
        self._lock = threading.Lock()
        self._results: List[WindowResult] = []

    def emit(self, result: WindowResult) -> None:
        with self._lock:
            self._results.append(result)

    @property
    def results(self) -> List[WindowResult]:
        with self._lock:
            return list(self._results)

    def __len__(self) -> int:
        return len(self._results)


class CallbackSink(Sink):
    """Forwards each result to a callable."""

    def __init__(self, callback: Callable[[WindowResult], None], name: str = "default"):
        super().__init__(name)
        self.callback = callback

    def emit(self, result: WindowResult) -> None:
        self.callback(result)
