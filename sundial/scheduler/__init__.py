"""Batch and streaming schedulers plus the shared dataflow executor."""

from .batch import BatchScheduler
from .channels import BoundedBuffer
from .executor import DataflowExecutor, default_sinks, deliver, matches
from .reorder import ReorderBuffer
from .streaming import Lifecycle, QueryState, StreamingScheduler
from .watermark import WatermarkTracker

__all__ = [
    'BatchScheduler',
    'BoundedBuffer',
    'DataflowExecutor',
    'Lifecycle',
    'QueryState',
    'ReorderBuffer',
    'StreamingScheduler',
    'WatermarkTracker',
    'default_sinks',
    'deliver',
    'matches',
]
