# dag.py
from __future__ import annotations

import heapq
from collections import deque
from dataclasses import dataclass, replace
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Set, Tuple

from .config import EngineConfig
from .errors import BatchFormatError, CyclicDependencyError, DuplicateNameError, UnresolvedReferenceError
from .expr import command_hash, free_names
from .formats import FormatRegistry
from .model import Cue, Deployment, TargetSpec


class NodeKind(str, Enum):
    CONCRETE = "concrete"
    DYNAMIC_PLACEHOLDER = "dynamic_placeholder"


@dataclass(frozen=True)
class Node:
    """
    One vertex of the graph.

    Placeholders stand in for dynamic targets until the scheduler knows how many
    batches they fan out to. Batch nodes are CONCRETE nodes with a `parent`;
    they never appear in a Graph, only in the scheduler's run state.
    """
    spec: TargetSpec
    kind: NodeKind
    deps: Tuple[str, ...]
    constants: Tuple[str, ...]
    command_hash: str
    index: int
    parent: Optional[str] = None
    # batch nodes only: one dict of upstream-name -> element per repetition
    bindings: Tuple[Dict[str, Any], ...] = ()
    element_hashes: Tuple[str, ...] = ()

    @property
    def name(self) -> str:
        return self.spec.name

    @property
    def format(self) -> str:
        return self.spec.format

    @property
    def deployment(self) -> Deployment:
        return self.spec.deployment

    @property
    def priority(self) -> float:
        return self.spec.priority

    @property
    def cue(self) -> Cue:
        return self.spec.cue

    @property
    def is_placeholder(self) -> bool:
        return self.kind is NodeKind.DYNAMIC_PLACEHOLDER

    @property
    def record_kind(self) -> str:
        if self.parent is not None:
            return "branch"
        if self.is_placeholder:
            return "pattern"
        return "stem"


class Graph:
    """Immutable DAG of nodes for one pipeline invocation."""

    def __init__(
        self,
        nodes: Dict[str, Node],
        adj: Dict[str, Set[str]],
        constants: Mapping[str, Any],
    ) -> None:
        self._nodes = MappingProxyType(dict(nodes))
        self._adj: Mapping[str, FrozenSet[str]] = MappingProxyType(
            {n: frozenset(v) for n, v in adj.items()}
        )
        self._constants = MappingProxyType(dict(constants))
        self._order = tuple(sorted(self._nodes, key=lambda n: self._nodes[n].index))

    # ---- mapping-ish access ----
    def __getitem__(self, name: str) -> Node:
        return self._nodes[name]

    def __contains__(self, name: object) -> bool:
        return name in self._nodes

    def __iter__(self):
        return iter(self._order)

    def __len__(self) -> int:
        return len(self._nodes)

    @property
    def nodes(self) -> Mapping[str, Node]:
        return self._nodes

    @property
    def order(self) -> Tuple[str, ...]:
        """Topological order; ties broken by declaration order."""
        return self._order

    @property
    def constants(self) -> Mapping[str, Any]:
        return self._constants

    def dependents(self, name: str) -> FrozenSet[str]:
        return self._adj[name]

    def upstream(self, name: str) -> Set[str]:
        """Transitive dependencies of `name` (exclusive)."""
        seen: Set[str] = set()
        q = deque(self._nodes[name].deps)
        while q:
            n = q.popleft()
            if n in seen:
                continue
            seen.add(n)
            q.extend(self._nodes[n].deps)
        return seen

    def downstream(self, name: str) -> Set[str]:
        """Transitive dependents of `name` (exclusive)."""
        seen: Set[str] = set()
        q = deque(self._adj[name])
        while q:
            n = q.popleft()
            if n in seen:
                continue
            seen.add(n)
            q.extend(self._adj[n])
        return seen

    def levels(self) -> List[List[str]]:
        indeg = {n: len(node.deps) for n, node in self._nodes.items()}
        return topo_levels(dict(self._adj), indeg)

    def subgraph(self, names: Iterable[str]) -> "Graph":
        """The named targets plus everything upstream of them."""
        keep: Set[str] = set()
        for name in names:
            if name not in self._nodes:
                raise ValueError(f"Unknown target '{name}'. Known targets: {list(self._order)}")
            keep.add(name)
            keep |= self.upstream(name)
        nodes = {n: self._nodes[n] for n in self._order if n in keep}
        adj = {n: {d for d in self._adj[n] if d in keep} for n in nodes}
        return Graph(nodes, adj, self._constants)

    def manifest(self) -> List[Dict[str, Any]]:
        """Target metadata in topological order. Nothing is executed."""
        out = []
        for name in self._order:
            node = self._nodes[name]
            spec = node.spec
            out.append(
                {
                    "name": name,
                    "command": spec.command_text,
                    "format": spec.format,
                    "deployment": spec.deployment.value,
                    "pattern": spec.pattern.text() if spec.pattern else None,
                    "reps": spec.reps,
                    "priority": spec.priority,
                    "kind": node.kind.value,
                    "deps": list(node.deps),
                }
            )
        return out


# ----------------------------------------------------------------------
# Build
# ----------------------------------------------------------------------

def flatten_specs(items: Any) -> List[TargetSpec]:
    """Flatten nested factory output (lists, tuples, generators) preserving order."""
    out: List[TargetSpec] = []
    stack = [iter([items])]
    while stack:
        try:
            item = next(stack[-1])
        except StopIteration:
            stack.pop()
            continue
        if isinstance(item, TargetSpec):
            out.append(item)
        elif isinstance(item, (str, bytes)) or not hasattr(item, "__iter__"):
            raise TypeError(f"Expected TargetSpec or a sequence of them, got {type(item).__name__}")
        else:
            stack.append(iter(item))
    return out


def _apply_defaults(spec: TargetSpec, config: EngineConfig) -> TargetSpec:
    changes = {}
    if spec.format is None:
        changes["format"] = config.default_format
    if spec.deployment is None:
        changes["deployment"] = config.default_deployment
    return replace(spec, **changes) if changes else spec


def _references(spec: TargetSpec) -> List[str]:
    refs = free_names(spec.command)
    if spec.pattern is None:
        return refs
    over = list(spec.pattern.over)
    return over + [r for r in refs if r not in over]


def toposort(names: List[str], adj: Dict[str, Set[str]], indeg: Dict[str, int]) -> List[str]:
    """Kahn's algorithm; among ready nodes the earliest declared goes first."""
    position = {n: i for i, n in enumerate(names)}
    indeg = dict(indeg)  # copy (we mutate it)
    heap = [position[n] for n in names if indeg[n] == 0]
    heapq.heapify(heap)
    order: List[str] = []
    while heap:
        node = names[heapq.heappop(heap)]
        order.append(node)
        for child in adj[node]:
            indeg[child] -= 1
            if indeg[child] == 0:
                heapq.heappush(heap, position[child])

    if len(order) != len(names):
        remaining = sorted(n for n, d in indeg.items() if d > 0)
        raise CyclicDependencyError(nodes=remaining)
    return order


def topo_levels(adj: Dict[str, FrozenSet[str]], indeg: Dict[str, int]) -> List[List[str]]:
    """
    Convert DAG into topological "levels" (stages).
    Each stage can run in parallel.
    """
    indeg = dict(indeg)
    q = deque(sorted(n for n, d in indeg.items() if d == 0))

    levels: List[List[str]] = []
    processed = 0

    while q:
        level_size = len(q)
        level: List[str] = []

        for _ in range(level_size):
            node = q.popleft()
            level.append(node)
            processed += 1

            for child in sorted(adj.get(node, ())):
                indeg[child] -= 1
                if indeg[child] == 0:
                    q.append(child)

        levels.append(level)

    if processed != len(indeg):
        remaining = sorted(n for n, d in indeg.items() if d > 0)
        raise CyclicDependencyError(nodes=remaining)

    return levels


def build(
    specs: Any,
    *,
    config: Optional[EngineConfig] = None,
    constants: Optional[Mapping[str, Any]] = None,
    formats: Optional[FormatRegistry] = None,
) -> Graph:
    """
    Expand target specs into a Graph.

    Edges come from the names a command references: a name that matches a
    target is a dependency, anything else must be a key of `constants`.

    Raises:
      DuplicateNameError, UnresolvedReferenceError, CyclicDependencyError,
      BatchFormatError (dynamic target in a format that cannot hold a batch).
      Nothing partial is returned on error.
    """
    config = config or EngineConfig()
    constants = dict(constants or {})
    formats = formats or FormatRegistry.default()
    flat = [_apply_defaults(s, config) for s in flatten_specs(specs)]

    names = [s.name for s in flat]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise DuplicateNameError(names=dupes)

    for spec in flat:
        # unknown formats surface per target at run time
        if spec.is_dynamic and spec.format in formats and not formats.get(spec.format).holds_lists:
            raise BatchFormatError(target=spec.name, format=spec.format)

    name_set = set(names)
    adj: Dict[str, Set[str]] = {n: set() for n in names}   # dep -> dependents
    indeg: Dict[str, int] = {n: 0 for n in names}
    deps_of: Dict[str, Tuple[str, ...]] = {}
    consts_of: Dict[str, Tuple[str, ...]] = {}

    for spec in flat:
        deps: List[str] = []
        consts: List[str] = []
        for ref_name in _references(spec):
            if ref_name in name_set:
                deps.append(ref_name)
            elif spec.pattern is not None and ref_name in spec.pattern.over:
                # branching needs an upstream target, a constant will not do
                raise UnresolvedReferenceError(target=spec.name, name=ref_name, known=sorted(name_set))
            elif ref_name in constants:
                consts.append(ref_name)
            else:
                raise UnresolvedReferenceError(target=spec.name, name=ref_name, known=sorted(name_set))

        deps_of[spec.name] = tuple(deps)
        consts_of[spec.name] = tuple(consts)
        for d in deps:
            # Edge d -> spec.name (d must run before spec)
            if spec.name not in adj[d]:
                adj[d].add(spec.name)
                indeg[spec.name] += 1

    order = toposort(names, adj, indeg)
    by_name = {s.name: s for s in flat}

    nodes: Dict[str, Node] = {}
    for idx, name in enumerate(order):
        spec = by_name[name]
        nodes[name] = Node(
            spec=spec,
            kind=NodeKind.DYNAMIC_PLACEHOLDER if spec.is_dynamic else NodeKind.CONCRETE,
            deps=deps_of[name],
            constants=consts_of[name],
            command_hash=command_hash(spec.command),
            index=idx,
        )

    return Graph(nodes, adj, constants)
