#!/usr/bin/env python3
"""
Window Manager

Owns every open window instance of one window operator:
- Assigns points to tumbling, sliding or session windows
- Closes windows once the operator watermark reaches their end
- Diverts points whose windows have all closed to the late path
- Enforces the per-window memory bound (evict or fail)

Instances are keyed by (operator id, partition key, start, end) and are
only ever touched by the executor that drives this operator.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from ..aggregation import AggregationState, StateRequirements
from ..context import QueryContext, WindowOverflowPolicy
from ..errors import WindowOverflow
from ..execution.operator_graph import WindowKind, WindowParams
from ..metrics import EngineMetrics
from ..types import DataPoint, EngineEvent, EventKind, WindowBounds
from .assigners import assigner_for

logger = logging.getLogger(__name__)

NEG_INF = float('-inf')


class WindowInstance:
    """Open window plus the aggregation state of its assigned points."""

    __slots__ = ('operator_id', 'key', 'start', 'end', 'state', 'last_timestamp')

    def __init__(self, operator_id: str, key: Any, start: float, end: float,
                 state: AggregationState):
        self.operator_id = operator_id
        self.key = key
        self.start = start
        self.end = end
        self.state = state
        self.last_timestamp = NEG_INF

    @property
    def bounds(self) -> WindowBounds:
        return WindowBounds(self.start, self.end)

    def sort_key(self) -> Tuple:
        return (self.end, self.start, '' if self.key is None else str(self.key))


@dataclass(frozen=True)
class ClosedWindow:
    """Finalized, immutable snapshot handed to downstream operators."""
    operator_id: str
    key: Any
    bounds: WindowBounds
    state: AggregationState
    partial: bool = False


@dataclass
class Assignment:
    """Outcome of routing one point into a window operator."""
    windows: List[WindowBounds]
    late: bool = False
    skipped: int = 0


class WindowManager:
    """Creates, tracks and closes the window instances of one operator."""

    def __init__(
        self,
        operator_id: str,
        params: WindowParams,
        requirements: StateRequirements,
        context: QueryContext,
        metrics: EngineMetrics,
        extent: Optional[Tuple[float, float]] = None,
    ):
        """
        Args:
            extent: Resolved query time range; grid windows that do not lie
                entirely inside it are never materialized
        """
        self.operator_id = operator_id
        self.params = params
        self.context = context
        self.metrics = metrics
        self.extent = extent

        if context.max_window_points is not None:
            requirements = requirements.union(StateRequirements(buffer=True))
        self.requirements = requirements

        self._assigner = assigner_for(params) if params.kind != WindowKind.SESSION else None
        # Grid windows: (key, start, end) -> instance
        self._windows: Dict[Tuple[Any, float, float], WindowInstance] = {}
        # Session windows: key -> open sessions
        self._sessions: Dict[Any, List[WindowInstance]] = {}
        self._watermark = NEG_INF

    @property
    def watermark(self) -> float:
        """Highest watermark this operator has closed windows up to."""
        return self._watermark

    @property
    def open_count(self) -> int:
        return len(self._windows) + sum(len(s) for s in self._sessions.values())

    def open_windows(self) -> List[WindowInstance]:
        instances = list(self._windows.values())
        for sessions in self._sessions.values():
            instances.extend(sessions)
        return sorted(instances, key=WindowInstance.sort_key)

    def _key_for(self, point: DataPoint) -> Any:
        if self.params.key_by is None:
            return None
        return point.tag(self.params.key_by)

    def _new_state(self, start: float) -> AggregationState:
        origin = self.params.epoch if self.params.kind == WindowKind.SESSION else start
        return AggregationState(self.requirements, trend_origin=origin)

    def assign(self, point: DataPoint) -> Assignment:
        """
        Route a point into every open window that contains it.

        Windows that have already closed are skipped; if every candidate
        window is closed the point is late and is not merged anywhere.
        """
        key = self._key_for(point)
        if self.params.kind == WindowKind.SESSION:
            assignment = self._assign_session(point, key)
        else:
            assignment = self._assign_grid(point, key)

        if assignment.late:
            self.metrics.points_late.labels(node=self.operator_id).inc()
        self.metrics.open_windows.labels(node=self.operator_id).set(self.open_count)
        return assignment

    def _assign_grid(self, point: DataPoint, key: Any) -> Assignment:
        assigned: List[WindowBounds] = []
        skipped = 0
        for bounds in self._assigner.windows_for(point.timestamp):
            if self.extent is not None and not (self.extent[0] <= bounds.start and bounds.end <= self.extent[1]):
                continue
            if bounds.end <= self._watermark:
                skipped += 1
                continue
            window_key = (key, bounds.start, bounds.end)
            instance = self._windows.get(window_key)
            if instance is None:
                instance = WindowInstance(self.operator_id, key, bounds.start, bounds.end,
                                          self._new_state(bounds.start))
                self._windows[window_key] = instance
            self._add(instance, point)
            assigned.append(bounds)
        return Assignment(assigned, late=not assigned and skipped > 0, skipped=skipped)

    def _assign_session(self, point: DataPoint, key: Any) -> Assignment:
        gap = self.params.gap
        ts = point.timestamp
        if ts + gap <= self._watermark:
            return Assignment([], late=True, skipped=1)

        sessions = self._sessions.setdefault(key, [])
        # A point covers [ts, ts + gap); it joins every session it overlaps
        overlapping = [s for s in sessions if ts < s.end and s.start < ts + gap]

        if not overlapping:
            instance = WindowInstance(self.operator_id, key, ts, ts + gap, self._new_state(ts))
            sessions.append(instance)
        else:
            overlapping.sort(key=lambda s: s.start)
            instance = overlapping[0]
            for other in overlapping[1:]:
                instance.state.merge(other.state)
                instance.start = min(instance.start, other.start)
                instance.end = max(instance.end, other.end)
                instance.last_timestamp = max(instance.last_timestamp, other.last_timestamp)
                sessions.remove(other)
                logger.debug(f"Window {self.operator_id}: merged session into [{instance.start}, {instance.end})")
            instance.start = min(instance.start, ts)
            instance.end = max(instance.end, ts + gap)

        self._add(instance, point)
        return Assignment([instance.bounds])

    def _add(self, instance: WindowInstance, point: DataPoint) -> None:
        instance.state.add(point)
        instance.last_timestamp = max(instance.last_timestamp, point.timestamp)

        limit = self.context.max_window_points
        if limit is None or instance.state.count <= limit:
            return

        if self.context.window_overflow_policy == WindowOverflowPolicy.FAIL:
            raise WindowOverflow(
                f"Window [{instance.start}, {instance.end}) exceeded {limit} points",
                node_id=self.operator_id,
                window=instance.bounds.as_tuple(),
                timestamp=point.timestamp,
            )

        evicted = instance.state.oldest()
        instance.state.retract(evicted)
        self.metrics.window_evictions.labels(node=self.operator_id).inc()
        self.metrics.record_event(EngineEvent(
            kind=EventKind.WINDOW_EVICTION,
            message=f"Window [{instance.start}, {instance.end}) over {limit} points; evicted oldest",
            node_id=self.operator_id,
            timestamp=evicted.timestamp,
            detail={'window': instance.bounds.as_tuple(), 'limit': limit},
        ))

    def retract(self, point: DataPoint) -> int:
        """
        Remove a point's contribution from every open window holding it.

        Returns:
            Number of window instances updated
        """
        key = self._key_for(point)
        if self.params.kind == WindowKind.SESSION:
            targets = [s for s in self._sessions.get(key, []) if s.start <= point.timestamp < s.end]
        else:
            targets = [
                self._windows[(key, b.start, b.end)]
                for b in self._assigner.windows_for(point.timestamp)
                if (key, b.start, b.end) in self._windows
            ]
        for instance in targets:
            instance.state.retract(point)
        return len(targets)

    def close_until(self, watermark: float) -> List[ClosedWindow]:
        """
        Close every window whose end is at or below ``watermark``.

        The watermark never moves backwards; closed windows are returned
        in ascending end order and their instances are discarded.
        """
        if watermark <= self._watermark:
            return []
        self._watermark = watermark

        closed = [w for w in self._windows.values() if w.end <= watermark]
        for w in closed:
            del self._windows[(w.key, w.start, w.end)]
        for key, sessions in list(self._sessions.items()):
            ready = [s for s in sessions if s.end <= watermark]
            if ready:
                closed.extend(ready)
                remaining = [s for s in sessions if s.end > watermark]
                if remaining:
                    self._sessions[key] = remaining
                else:
                    del self._sessions[key]
        return self._finalize(closed)

    def close_all(self, partial: bool = False) -> List[ClosedWindow]:
        """Close every open window (end of input or flush on cancellation)."""
        closed = self.open_windows()
        self._windows.clear()
        self._sessions.clear()
        if not partial and closed:
            self._watermark = max(self._watermark, max(w.end for w in closed))
        return self._finalize(closed, partial=partial)

    def discard_all(self) -> int:
        """Drop every open window without emission."""
        count = self.open_count
        self._windows.clear()
        self._sessions.clear()
        self.metrics.open_windows.labels(node=self.operator_id).set(0)
        if count:
            logger.info(f"Window {self.operator_id}: discarded {count} in-flight windows")
        return count

    def _finalize(self, instances: List[WindowInstance], partial: bool = False) -> List[ClosedWindow]:
        instances.sort(key=WindowInstance.sort_key)
        if instances:
            self.metrics.windows_closed.labels(node=self.operator_id).inc(len(instances))
        self.metrics.open_windows.labels(node=self.operator_id).set(self.open_count)
        return [
            ClosedWindow(w.operator_id, w.key, w.bounds, w.state, partial=partial)
            for w in instances
        ]

    def get_stats(self) -> Dict[str, Any]:
        return {
            'operator_id': self.operator_id,
            'kind': self.params.kind.value,
            'open_windows': self.open_count,
            'watermark': self._watermark,
            'buffered_points': sum(w.state.count for w in self.open_windows()),
        }
