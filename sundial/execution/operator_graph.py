#!/usr/bin/env python3
"""
Operator Graph - Compiled Query DAG

Immutable intermediate representation handed to the engine by the
query compiler. Every other component only traverses it.

Key Concepts:
- OperatorNode: typed operator (source, filter, window, aggregate, ...)
- OperatorGraph: frozen DAG with topological traversal
- validate(): final sanity check (cycles, dangling refs, edge typing)
"""

import logging
import math
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set, Tuple, Union

from ..errors import CompileError
from ..types import TimeRange, TimeUnit

logger = logging.getLogger(__name__)


class OperatorType(Enum):
    """Operator kinds in a compiled query."""
    SOURCE = "source"
    FILTER = "filter"
    WINDOW = "window"
    AGGREGATE = "aggregate"
    TREND = "trend"
    FORECAST = "forecast"
    SINK = "sink"


class WindowKind(Enum):
    TUMBLING = "tumbling"
    SLIDING = "sliding"
    SESSION = "session"


# Allowed upstream operator types for each operator type
_ALLOWED_INPUTS = {
    OperatorType.SOURCE: frozenset(),
    OperatorType.FILTER: frozenset({OperatorType.SOURCE, OperatorType.FILTER}),
    OperatorType.WINDOW: frozenset({OperatorType.SOURCE, OperatorType.FILTER}),
    OperatorType.AGGREGATE: frozenset({OperatorType.WINDOW}),
    OperatorType.TREND: frozenset({OperatorType.WINDOW}),
    OperatorType.FORECAST: frozenset({OperatorType.WINDOW}),
    OperatorType.SINK: frozenset({OperatorType.AGGREGATE, OperatorType.TREND, OperatorType.FORECAST}),
}


@dataclass(frozen=True)
class SourceParams:
    stream: str
    time_range: Optional[TimeRange] = None


@dataclass(frozen=True)
class Predicate:
    """One clause of a filter: ``<field> <op> <operand>``."""
    field: str
    op: str
    operand: Any

    _OPS = ('==', '!=', '<', '<=', '>', '>=', 'in')

    def __post_init__(self):
        if self.op not in self._OPS:
            raise CompileError(f"Unsupported filter operator {self.op!r}")
        if self.field not in ('value', 'timestamp') and not self.field.startswith('tag:'):
            raise CompileError(f"Unsupported filter field {self.field!r}")

    def to_dict(self) -> Dict[str, Any]:
        operand = list(self.operand) if self.op == 'in' else self.operand
        return {'field': self.field, 'op': self.op, 'operand': operand}


@dataclass(frozen=True)
class FilterParams:
    predicates: Tuple[Predicate, ...] = ()


@dataclass(frozen=True)
class WindowParams:
    kind: WindowKind
    size: Optional[float] = None
    slide: Optional[float] = None
    gap: Optional[float] = None
    epoch: float = 0.0
    key_by: Optional[str] = None

    @property
    def effective_slide(self) -> Optional[float]:
        if self.kind == WindowKind.TUMBLING:
            return self.size
        return self.slide

    @property
    def windows_per_point(self) -> int:
        """Concurrent windows a point belongs to (1 for tumbling/session)."""
        if self.kind == WindowKind.SLIDING:
            return math.ceil(self.size / self.slide)
        return 1


@dataclass(frozen=True)
class AggregateParams:
    functions: Tuple[str, ...] = ('mean',)


@dataclass(frozen=True)
class TrendParams:
    horizon: int = 0
    step: Optional[float] = None


@dataclass(frozen=True)
class ForecastParams:
    model: str
    horizon: int
    step: Optional[float] = None
    params: Tuple[Tuple[str, Any], ...] = ()
    min_points: int = 1
    retrain_every: int = 1
    timeout_seconds: Optional[float] = None

    @property
    def model_params(self) -> Dict[str, Any]:
        return dict(self.params)


@dataclass(frozen=True)
class SinkParams:
    name: str = "default"


NodeParams = Union[SourceParams, FilterParams, WindowParams, AggregateParams,
                   TrendParams, ForecastParams, SinkParams]

_PARAM_TYPES = {
    OperatorType.SOURCE: SourceParams,
    OperatorType.FILTER: FilterParams,
    OperatorType.WINDOW: WindowParams,
    OperatorType.AGGREGATE: AggregateParams,
    OperatorType.TREND: TrendParams,
    OperatorType.FORECAST: ForecastParams,
    OperatorType.SINK: SinkParams,
}


@dataclass(frozen=True)
class OperatorNode:
    """
    Operator node in the compiled graph.

    Inputs reference upstream node ids; params are a frozen, variant-
    specific dataclass already validated by the compiler.
    """
    node_id: str
    operator_type: OperatorType
    inputs: Tuple[str, ...] = ()
    params: Optional[NodeParams] = None

    def is_source(self) -> bool:
        return self.operator_type == OperatorType.SOURCE

    def is_sink(self) -> bool:
        return self.operator_type == OperatorType.SINK

    def to_dict(self) -> Dict[str, Any]:
        return {
            'node_id': self.node_id,
            'operator_type': self.operator_type.value,
            'inputs': list(self.inputs),
            'params': _params_to_dict(self.params),
        }


def _params_to_dict(params: Optional[NodeParams]) -> Dict[str, Any]:
    if params is None:
        return {}
    if isinstance(params, SourceParams):
        return {
            'stream': params.stream,
            'time_range': params.time_range.to_dict() if params.time_range else None,
        }
    if isinstance(params, FilterParams):
        return {'predicates': [p.to_dict() for p in params.predicates]}
    if isinstance(params, WindowParams):
        return {
            'kind': params.kind.value, 'size': params.size, 'slide': params.slide,
            'gap': params.gap, 'epoch': params.epoch, 'key_by': params.key_by,
        }
    if isinstance(params, AggregateParams):
        return {'functions': list(params.functions)}
    if isinstance(params, TrendParams):
        return {'horizon': params.horizon, 'step': params.step}
    if isinstance(params, ForecastParams):
        return {
            'model': params.model, 'horizon': params.horizon, 'step': params.step,
            'params': dict(params.params), 'min_points': params.min_points,
            'retrain_every': params.retrain_every, 'timeout_seconds': params.timeout_seconds,
        }
    if isinstance(params, SinkParams):
        return {'name': params.name}
    raise TypeError(f"Unknown params type {type(params).__name__}")


def _params_from_dict(operator_type: OperatorType, data: Dict[str, Any]) -> NodeParams:
    data = dict(data or {})
    if operator_type == OperatorType.SOURCE:
        time_range = data.get('time_range')
        return SourceParams(
            stream=data['stream'],
            time_range=TimeRange.from_dict(time_range) if time_range else None,
        )
    if operator_type == OperatorType.FILTER:
        return FilterParams(predicates=tuple(
            Predicate(p['field'], p['op'], tuple(p['operand']) if p['op'] == 'in' else p['operand'])
            for p in data.get('predicates', [])
        ))
    if operator_type == OperatorType.WINDOW:
        return WindowParams(
            kind=WindowKind(data['kind']),
            size=data.get('size'),
            slide=data.get('slide'),
            gap=data.get('gap'),
            epoch=data.get('epoch', 0.0),
            key_by=data.get('key_by'),
        )
    if operator_type == OperatorType.AGGREGATE:
        return AggregateParams(functions=tuple(data.get('functions', ('mean',))))
    if operator_type == OperatorType.TREND:
        return TrendParams(horizon=data.get('horizon', 0), step=data.get('step'))
    if operator_type == OperatorType.FORECAST:
        return ForecastParams(
            model=data['model'],
            horizon=data['horizon'],
            step=data.get('step'),
            params=tuple(sorted((data.get('params') or {}).items())),
            min_points=data.get('min_points', 1),
            retrain_every=data.get('retrain_every', 1),
            timeout_seconds=data.get('timeout_seconds'),
        )
    return SinkParams(name=data.get('name', 'default'))


class OperatorGraph:
    """
    Immutable DAG of operator nodes.

    Built once (by the compiler or GraphBuilder) and then shared read-only
    by every execution unit. Exposes traversal only.
    """

    __slots__ = ('_name', '_time_unit', '_nodes', '_downstream', '_order')

    def __init__(self, nodes: Iterable[OperatorNode], time_unit: TimeUnit = TimeUnit.SECONDS,
                 name: str = "query"):
        node_map: Dict[str, OperatorNode] = {}
        for node in nodes:
            if node.node_id in node_map:
                raise CompileError(f"Duplicate node id {node.node_id}", node_id=node.node_id)
            node_map[node.node_id] = node

        downstream: Dict[str, List[str]] = {node_id: [] for node_id in node_map}
        for node in node_map.values():
            for upstream_id in node.inputs:
                if upstream_id in downstream:
                    downstream[upstream_id].append(node.node_id)

        object.__setattr__(self, '_name', name)
        object.__setattr__(self, '_time_unit', time_unit)
        object.__setattr__(self, '_nodes', MappingProxyType(node_map))
        object.__setattr__(self, '_downstream', MappingProxyType(
            {k: tuple(sorted(set(v))) for k, v in downstream.items()}
        ))
        object.__setattr__(self, '_order', None)

    def __setattr__(self, key, value):
        raise AttributeError("OperatorGraph is immutable")

    @property
    def name(self) -> str:
        return self._name

    @property
    def time_unit(self) -> TimeUnit:
        return self._time_unit

    @property
    def nodes(self) -> Mapping[str, OperatorNode]:
        return self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, node_id: str) -> bool:
        return node_id in self._nodes

    def node(self, node_id: str) -> OperatorNode:
        return self._nodes[node_id]

    def inputs_of(self, node_id: str) -> Tuple[OperatorNode, ...]:
        return tuple(self._nodes[i] for i in self._nodes[node_id].inputs)

    def downstream_of(self, node_id: str) -> Tuple[OperatorNode, ...]:
        return tuple(self._nodes[i] for i in self._downstream[node_id])

    def sources(self) -> List[OperatorNode]:
        return [n for n in self.topological_order() if n.is_source()]

    def sinks(self) -> List[OperatorNode]:
        return [n for n in self.topological_order() if n.is_sink()]

    def nodes_of_type(self, operator_type: OperatorType) -> List[OperatorNode]:
        return [n for n in self.topological_order() if n.operator_type == operator_type]

    def topological_order(self) -> Tuple[OperatorNode, ...]:
        """
        Topological order (sources first, sinks last).

        Kahn's algorithm with ties broken by node id so the order is
        stable across runs.

        Raises:
            CompileError: If the graph has a cycle or a dangling input
        """
        if self._order is not None:
            return self._order

        for node in self._nodes.values():
            for upstream_id in node.inputs:
                if upstream_id not in self._nodes:
                    raise CompileError(
                        f"Operator {node.node_id} references non-existent input {upstream_id}",
                        node_id=node.node_id,
                    )

        in_degree = {node_id: len(node.inputs) for node_id, node in self._nodes.items()}
        ready = sorted(node_id for node_id, degree in in_degree.items() if degree == 0)
        order: List[OperatorNode] = []

        while ready:
            node_id = ready.pop(0)
            order.append(self._nodes[node_id])
            for downstream_id in self._downstream[node_id]:
                in_degree[downstream_id] -= self._nodes[downstream_id].inputs.count(node_id)
                if in_degree[downstream_id] == 0:
                    ready.append(downstream_id)
            ready.sort()

        if len(order) != len(self._nodes):
            stuck = sorted(node_id for node_id, degree in in_degree.items() if degree > 0)
            raise CompileError(
                f"Operator graph has a cycle through {', '.join(stuck)}",
                node_id=stuck[0],
            )

        object.__setattr__(self, '_order', tuple(order))
        return self._order

    def upstream_sources(self, node_id: str) -> Tuple[OperatorNode, ...]:
        """All source nodes feeding ``node_id``, sorted by id."""
        seen: Set[str] = set()
        stack = [node_id]
        sources = []
        while stack:
            current = self._nodes[stack.pop()]
            if current.node_id in seen:
                continue
            seen.add(current.node_id)
            if current.is_source():
                sources.append(current)
            stack.extend(current.inputs)
        return tuple(sorted(sources, key=lambda n: n.node_id))

    def branches(self) -> List[Tuple[OperatorNode, ...]]:
        """Weakly connected components, each in topological order."""
        component: Dict[str, int] = {}
        next_id = 0
        for start in sorted(self._nodes):
            if start in component:
                continue
            stack = [start]
            while stack:
                node_id = stack.pop()
                if node_id in component:
                    continue
                component[node_id] = next_id
                stack.extend(self._nodes[node_id].inputs)
                stack.extend(self._downstream[node_id])
            next_id += 1

        groups: List[List[OperatorNode]] = [[] for _ in range(next_id)]
        for node in self.topological_order():
            groups[component[node.node_id]].append(node)
        return [tuple(g) for g in groups]

    def validate(self, models=None) -> bool:
        """
        Final sanity check before execution.

        Args:
            models: ModelRegistry that forecast model kinds must resolve
                against (the built-in registry when omitted)

        Returns:
            True if valid

        Raises:
            CompileError: If the graph is malformed
        """
        from ..forecast.registry import is_registered

        self.topological_order()

        for node in self._nodes.values():
            expected = _PARAM_TYPES[node.operator_type]
            if not isinstance(node.params, expected):
                raise CompileError(
                    f"Operator {node.node_id} ({node.operator_type.value}) expects "
                    f"{expected.__name__}, got {type(node.params).__name__}",
                    node_id=node.node_id,
                )

            allowed = _ALLOWED_INPUTS[node.operator_type]
            if node.is_source() and node.inputs:
                raise CompileError(f"Source operator {node.node_id} has inputs", node_id=node.node_id)
            if not node.is_source() and not node.inputs:
                raise CompileError(f"Operator {node.node_id} has no inputs", node_id=node.node_id)
            for upstream in self.inputs_of(node.node_id):
                if upstream.operator_type not in allowed:
                    raise CompileError(
                        f"Operator {node.node_id} ({node.operator_type.value}) cannot consume "
                        f"{upstream.operator_type.value} operator {upstream.node_id}",
                        node_id=node.node_id,
                    )

            if node.operator_type == OperatorType.WINDOW:
                _check_window(node)
            elif node.operator_type == OperatorType.AGGREGATE:
                from ..aggregation import parse_function
                for fn in node.params.functions:
                    try:
                        parse_function(fn)
                    except ValueError as e:
                        raise CompileError(str(e), node_id=node.node_id) from e
            elif node.operator_type == OperatorType.FORECAST:
                if not is_registered(node.params.model, models):
                    raise CompileError(
                        f"Unknown forecast model kind {node.params.model!r}",
                        node_id=node.node_id,
                    )
                if node.params.horizon <= 0 or node.params.retrain_every <= 0:
                    raise CompileError("Forecast horizon and retrain_every must be > 0",
                                       node_id=node.node_id)

        streams = [n.params.stream for n in self._nodes.values() if n.is_source()]
        if len(streams) != len(set(streams)):
            raise CompileError("Two source operators read the same stream")

        logger.debug(f"Operator graph {self._name} validated: {len(self._nodes)} operators")
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self._name,
            'time_unit': self._time_unit.value,
            'operators': [n.to_dict() for n in self.topological_order()],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], models=None) -> 'OperatorGraph':
        """Deserialize (and validate) a compiled graph."""
        try:
            nodes = []
            for op in data['operators']:
                operator_type = OperatorType(op['operator_type'])
                nodes.append(OperatorNode(
                    node_id=op['node_id'],
                    operator_type=operator_type,
                    inputs=tuple(op.get('inputs', ())),
                    params=_params_from_dict(operator_type, op.get('params')),
                ))
        except (KeyError, ValueError, TypeError) as e:
            raise CompileError(f"Malformed operator graph: {e}") from e

        graph = cls(
            nodes,
            time_unit=TimeUnit(data.get('time_unit', TimeUnit.SECONDS.value)),
            name=data.get('name', 'query'),
        )
        graph.validate(models)
        return graph


def _check_window(node: OperatorNode) -> None:
    p: WindowParams = node.params
    if p.kind == WindowKind.SESSION:
        if p.gap is None or p.gap <= 0:
            raise CompileError("Session window requires gap > 0", node_id=node.node_id)
        return
    if p.size is None or p.size <= 0:
        raise CompileError("Window size must be > 0", node_id=node.node_id)
    if p.kind == WindowKind.SLIDING:
        if p.slide is None or p.slide <= 0 or p.slide > p.size:
            raise CompileError("Sliding window requires 0 < slide <= size", node_id=node.node_id)


class GraphBuilder:
    """
    Assembles an OperatorGraph.

    Stands in for the query compiler: node ids are generated from the
    operator type unless given, and build() returns a validated,
    frozen graph.

    Example:
        b = GraphBuilder(time_unit=TimeUnit.MINUTES)
        src = b.source("cpu")
        win = b.window(src, WindowKind.TUMBLING, size=30)
        agg = b.aggregate(win, "mean")
        b.sink(agg)
        graph = b.build()
    """

    def __init__(self, time_unit: TimeUnit = TimeUnit.SECONDS, name: str = "query"):
        self.time_unit = time_unit
        self.name = name
        self._nodes: List[OperatorNode] = []
        self._counters: Dict[OperatorType, int] = {}

    def _add(self, operator_type: OperatorType, inputs: Iterable[str], params: NodeParams,
             node_id: Optional[str]) -> str:
        if node_id is None:
            index = self._counters.get(operator_type, 0)
            self._counters[operator_type] = index + 1
            node_id = f"{operator_type.value}_{index}"
        self._nodes.append(OperatorNode(node_id, operator_type, tuple(inputs), params))
        return node_id

    def source(self, stream: str, time_range: Optional[TimeRange] = None,
               node_id: Optional[str] = None) -> str:
        return self._add(OperatorType.SOURCE, (), SourceParams(stream, time_range), node_id)

    def filter(self, upstream: str, *predicates: Predicate, node_id: Optional[str] = None) -> str:
        return self._add(OperatorType.FILTER, (upstream,), FilterParams(tuple(predicates)), node_id)

    def window(self, upstream: Union[str, Iterable[str]], kind: WindowKind, size: Optional[float] = None,
               slide: Optional[float] = None, gap: Optional[float] = None, epoch: float = 0.0,
               key_by: Optional[str] = None, node_id: Optional[str] = None) -> str:
        inputs = (upstream,) if isinstance(upstream, str) else tuple(upstream)
        params = WindowParams(kind, size=size, slide=slide, gap=gap, epoch=epoch, key_by=key_by)
        return self._add(OperatorType.WINDOW, inputs, params, node_id)

    def aggregate(self, window: str, *functions: str, node_id: Optional[str] = None) -> str:
        return self._add(OperatorType.AGGREGATE, (window,),
                         AggregateParams(tuple(functions) or ('mean',)), node_id)

    def trend(self, window: str, horizon: int = 0, step: Optional[float] = None,
              node_id: Optional[str] = None) -> str:
        return self._add(OperatorType.TREND, (window,), TrendParams(horizon, step), node_id)

    def forecast(self, window: str, model: str, horizon: int, step: Optional[float] = None,
                 min_points: int = 1, retrain_every: int = 1,
                 timeout_seconds: Optional[float] = None, node_id: Optional[str] = None,
                 **model_params: Any) -> str:
        params = ForecastParams(
            model=model, horizon=horizon, step=step,
            params=tuple(sorted(model_params.items())),
            min_points=min_points, retrain_every=retrain_every,
            timeout_seconds=timeout_seconds,
        )
        return self._add(OperatorType.FORECAST, (window,), params, node_id)

    def sink(self, *upstream: str, name: str = "default", node_id: Optional[str] = None) -> str:
        return self._add(OperatorType.SINK, upstream, SinkParams(name), node_id)

    def build(self, models=None) -> OperatorGraph:
        graph = OperatorGraph(self._nodes, time_unit=self.time_unit, name=self.name)
        graph.validate(models)
        return graph
