# -*- coding: utf-8 -*-
"""Event-time windowing for Sundial operators."""

from .assigners import SlidingAssigner, TumblingAssigner, assigner_for
from .manager import Assignment, ClosedWindow, WindowInstance, WindowManager

__all__ = [
    "Assignment",
    "ClosedWindow",
    "SlidingAssigner",
    "TumblingAssigner",
    "WindowInstance",
    "WindowManager",
    "assigner_for",
]
