# runner.py
from __future__ import annotations

import heapq
import itertools
import runpy
import threading
import time
import traceback
from concurrent.futures import FIRST_COMPLETED, Future, wait
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

from .cache import (
    FileStamp,
    Fingerprint,
    FingerprintStore,
    branch_command_hash,
    data_hash_of_children,
    data_hash_of_files,
)
from .config import EngineConfig
from .dag import Graph, Node, NodeKind, build, flatten_specs
from .errors import BranchError, BranchNotFoundError, InvalidPatternError, PipelineRunError
from .expr import Expr, evaluate
from .formats import FormatRegistry
from .hashing import hash_value, sha256_str, short
from .model import TargetSpec
from .ui.console import Console, get_console
from .workers import WorkerPool


class Status(str, Enum):
    SUCCEEDED = "succeeded"
    ERRORED = "errored"
    SKIPPED = "skipped"
    CACHED = "cached"


@dataclass
class TargetResult:
    name: str
    status: Status
    seconds: float = 0.0
    reason: str = ""
    error: Optional[str] = None
    error_type: Optional[str] = None
    traceback: Optional[str] = None
    parent: Optional[str] = None  # set for dynamic batches


@dataclass
class RunReport:
    """Terminal status of every target (and every dynamic batch) of one run."""
    results: Dict[str, TargetResult] = field(default_factory=dict)
    # dynamic target -> its batch names, in element order
    branches: Dict[str, List[str]] = field(default_factory=dict)
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return not any(r.status is Status.ERRORED for r in self.results.values())

    def status(self, name: str) -> Status:
        return self.results[name].status

    def statuses(self, *, include_branches: bool = False) -> Dict[str, Status]:
        return {
            n: r.status
            for n, r in self.results.items()
            if include_branches or r.parent is None
        }

    def names(self, status: Status) -> List[str]:
        return [n for n, r in self.results.items() if r.status is status]

    def errors(self) -> Dict[str, str]:
        return {n: r.error or "" for n, r in self.results.items() if r.status is Status.ERRORED}

    def counts(self) -> Dict[str, int]:
        out = {s.value: 0 for s in Status}
        for r in self.results.values():
            out[r.status.value] += 1
        return out

    def raise_for_errors(self) -> None:
        if not self.ok:
            raise PipelineRunError(self)


class CancelToken:
    """Set from any thread; the scheduler stops dispatching once it sees it."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


# ----------------------------------------------------------------------
# Execution primitives (module level so process workers can unpickle them)
# ----------------------------------------------------------------------

def execute_command(command: Expr, env: Mapping[str, Any], bindings: Sequence[Mapping[str, Any]] = ()) -> Any:
    """
    Run one target's command. With `bindings` (a dynamic batch) the command
    runs once per element and the batch value is the list of results.
    """
    if not bindings:
        return evaluate(command, env)
    out = []
    for b in bindings:
        scope = dict(env)
        scope.update(b)
        out.append(evaluate(command, scope))
    return out


def _timed_execute(command: Expr, env: Mapping[str, Any], bindings: Sequence[Mapping[str, Any]]) -> Tuple[Any, float]:
    start = time.perf_counter()
    value = execute_command(command, env, bindings)
    return value, time.perf_counter() - start


def _as_elements(target: str, upstream: str, value: Any) -> List[Any]:
    if isinstance(value, (str, bytes, dict)):
        raise InvalidPatternError(
            target, f"upstream '{upstream}' is a {type(value).__name__}; branch over a list instead"
        )
    if hasattr(value, "iloc"):
        # pandas objects branch row by row
        return [value.iloc[i:i + 1] for i in range(len(value))]
    if hasattr(value, "__len__") and hasattr(value, "__getitem__"):
        return list(value)
    raise InvalidPatternError(target, f"upstream '{upstream}' ({type(value).__name__}) cannot be split into elements")


def branch_elements(spec: TargetSpec, env: Mapping[str, Any]) -> List[Dict[str, Any]]:
    """Per-repetition bindings of a dynamic target, in deterministic order."""
    pattern = spec.pattern
    seqs = [_as_elements(spec.name, n, env[n]) for n in pattern.over]
    if pattern.kind == "map":
        lengths = {n: len(s) for n, s in zip(pattern.over, seqs)}
        if len(set(lengths.values())) > 1:
            raise InvalidPatternError(spec.name, f"map() needs upstreams of equal length, got {lengths}")
        combos = zip(*seqs)
    else:
        combos = itertools.product(*seqs)
    return [dict(zip(pattern.over, combo)) for combo in combos]


def branch_name(parent: str, index: int, element_hashes: Sequence[str]) -> str:
    return f"{parent}_{short(sha256_str(f'{index}:' + ','.join(element_hashes)))}"


def read_target(
    name: str,
    store: FingerprintStore,
    formats: Optional[FormatRegistry] = None,
    *,
    branches: Optional[Sequence[int]] = None,
) -> Any:
    """
    Load a stored target value. A dynamic target reads as the concatenation of
    its batches (optionally only the batches at the given positions).
    """
    formats = formats or FormatRegistry.default()
    fp = store.require(name)
    if fp.kind == "pattern":
        if branches is not None:
            for i in branches:
                if not 0 <= i < len(fp.children):
                    raise BranchNotFoundError(name, i, len(fp.children))
        children = fp.children if branches is None else [fp.children[i] for i in branches]
        out: List[Any] = []
        for child in children:
            out.extend(read_target(child, store, formats))
        return out
    value = formats.deserialize(fp.format, fp.paths)
    if fp.kind == "branch" and not isinstance(value, list):
        value = [value]
    return value


# ----------------------------------------------------------------------
# Scheduler
# ----------------------------------------------------------------------

@dataclass
class _Task:
    node: Node
    depend_hash: str
    remote: bool
    started: float


@dataclass
class _Outcome:
    value: Any
    seconds: float
    files: List[FileStamp]


@dataclass
class _BranchGroup:
    batches: List[str]
    pending: Set[str]
    depend_hash: str
    failed: List[str] = field(default_factory=list)


class Scheduler:
    """
    Walks a Graph in dependency order and commits results to the store.

        store = FingerprintStore(".targetkit")
        report = Scheduler(store).run(graph, WorkerPool(4))
    """

    def __init__(
        self,
        store: FingerprintStore,
        formats: Optional[FormatRegistry] = None,
        *,
        console: Optional[Console] = None,
    ):
        self.store = store
        self.formats = formats or FormatRegistry.default()
        self.console = console

    def run(
        self,
        graph: Graph,
        pool: Optional[WorkerPool] = None,
        *,
        cancel: Optional[CancelToken] = None,
    ) -> RunReport:
        own_pool = pool is None
        pool = pool or WorkerPool()
        try:
            return _Run(self, graph, pool, cancel or CancelToken()).execute()
        finally:
            if own_pool:
                pool.shutdown(wait=True)


class _Run:
    """
    State of one Scheduler.run() call.

    Only the coordinating thread touches this object. Workers receive a command
    plus its inputs and hand back a value; they never see the graph or the
    ready queue.
    """

    def __init__(self, scheduler: Scheduler, graph: Graph, pool: WorkerPool, cancel: CancelToken):
        self.store = scheduler.store
        self.formats = scheduler.formats
        self.console = scheduler.console or get_console()
        self.graph = graph
        self.pool = pool
        self.cancel = cancel

        self.report = RunReport()
        self.waiting: Dict[str, int] = {n: len(graph[n].deps) for n in graph}
        self.ready: List[Tuple[float, int, int, str]] = []
        self._seq = itertools.count()
        self.in_flight: Dict[Future, _Task] = {}
        self.values: Dict[str, Any] = {}
        self.branch_nodes: Dict[str, Node] = {}
        self.groups: Dict[str, _BranchGroup] = {}

    # ---- queue ----
    def _node(self, name: str) -> Node:
        node = self.branch_nodes.get(name)
        return node if node is not None else self.graph[name]

    def _push(self, name: str) -> None:
        node = self._node(name)
        heapq.heappush(self.ready, (-node.priority, node.index, next(self._seq), name))

    def execute(self) -> RunReport:
        for name in self.graph.order:
            if self.waiting[name] == 0:
                self._push(name)

        while self.ready or self.in_flight:
            # schedule as much as the ceiling allows
            while self.ready and len(self.in_flight) < self.pool.max_in_flight and not self.cancel.cancelled:
                _prio, _idx, _seq, name = heapq.heappop(self.ready)
                self._dispatch(name)

            if not self.in_flight:
                if self.cancel.cancelled:
                    break
                continue

            done, _ = wait(list(self.in_flight), return_when=FIRST_COMPLETED)
            for fut in done:
                self._complete(self.in_flight.pop(fut), fut)

        self.report.cancelled = self.cancel.cancelled
        self._mark_unreached()
        return self.report

    # ---- dispatch ----
    def _value(self, name: str) -> Any:
        if name not in self.values:
            self.values[name] = read_target(name, self.store, self.formats)
        return self.values[name]

    def _env(self, node: Node) -> Dict[str, Any]:
        env = {d: self._value(d) for d in node.deps}
        for c in node.constants:
            env[c] = self.graph.constants[c]
        return env

    def _dispatch(self, name: str) -> None:
        node = self._node(name)
        if node.is_placeholder:
            self._expand(node)
            return

        try:
            # hashes tracked files and constants, so it can fail like the command can
            staleness = self.store.check(node, self.graph)
        except Exception as e:
            self._fail(node, e)
            return
        if not staleness.stale:
            self._finish(node, TargetResult(name, Status.CACHED, reason=staleness.reason, parent=node.parent))
            return

        try:
            env = self._env(node)
            depend_hash = self.store.depend_hash(node, self.graph)
        except Exception as e:
            self._fail(node, e)
            return

        remote = self.pool.runs_remotely(node.deployment)
        self.console.print_target_started(name, staleness.reason, remote=remote)
        task = _Task(node=node, depend_hash=depend_hash, remote=remote, started=time.perf_counter())
        if remote:
            fut = self.pool.submit(node.deployment, _timed_execute, node.spec.command, env, node.bindings)
        else:
            fut = self.pool.submit(node.deployment, self._execute_local, node, env)
        self.in_flight[fut] = task

    def _execute_local(self, node: Node, env: Dict[str, Any]) -> _Outcome:
        # runs on a local worker thread
        value, seconds = _timed_execute(node.spec.command, env, node.bindings)
        return _Outcome(value, seconds, self._store_value(node, value))

    def _store_value(self, node: Node, value: Any) -> List[FileStamp]:
        paths = self.formats.serialize(node.format, value, self.store.object_path(node.name), target=node.name)
        if not self.formats.get(node.format).tracks_files:
            # freshly written: always hash
            return [FileStamp.of(p) for p in paths]
        previous = self.store.lookup(node.name)
        by_path = {s.path: s for s in previous.files} if previous is not None else {}
        return [FileStamp.of(p, by_path.get(str(p))) for p in paths]

    # ---- completion ----
    def _complete(self, task: _Task, fut: Future) -> None:
        node = task.node
        try:
            if task.remote:
                value, seconds = fut.result()
                files = self._store_value(node, value)
            else:
                outcome = fut.result()
                value, seconds, files = outcome.value, outcome.seconds, outcome.files
            # the value is durably stored at this point; only now supersede the record
            self.store.commit(
                Fingerprint(
                    name=node.name,
                    kind=node.record_kind,
                    command_hash=node.command_hash,
                    depend_hash=task.depend_hash,
                    format=node.format,
                    data_hash=data_hash_of_files(files),
                    files=files,
                    parent=node.parent,
                    seconds=seconds,
                )
            )
        except Exception as e:
            self._fail(node, e, seconds=time.perf_counter() - task.started)
            return

        self.values[node.name] = value
        self._finish(node, TargetResult(node.name, Status.SUCCEEDED, seconds=seconds, parent=node.parent))

    def _finish(self, node: Node, result: TargetResult) -> None:
        self.report.results[node.name] = result
        if result.status is Status.CACHED:
            self.console.print_target_cached(node.name)
        else:
            self.console.print_target_succeeded(node.name, result.seconds)

        if node.parent is not None:
            self._branch_done(node)
            return

        for child in self.graph.dependents(node.name):
            self.waiting[child] -= 1
            if self.waiting[child] == 0:
                self._push(child)

    def _fail(self, node: Node, exc: BaseException, seconds: float = 0.0) -> None:
        tb = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        self.report.results[node.name] = TargetResult(
            node.name,
            Status.ERRORED,
            seconds=seconds,
            error=str(exc),
            error_type=type(exc).__name__,
            traceback=tb,
            parent=node.parent,
        )
        self.console.print_target_errored(node.name, str(exc), tb)

        if node.parent is not None:
            self.groups[node.parent].failed.append(node.name)
            self._branch_done(node)
            return

        # prune everything downstream; independent branches keep going
        for name in sorted(self.graph.downstream(node.name), key=lambda n: self.graph[n].index):
            if name not in self.report.results:
                reason = f"upstream '{node.name}' errored"
                self.report.results[name] = TargetResult(name, Status.SKIPPED, reason=reason)
                self.console.print_target_skipped(name, reason)

    # ---- dynamic branching ----
    def _expand(self, placeholder: Node) -> None:
        """
        Fan a dynamic target out into batch nodes. All batch nodes exist before
        the first one is queued, so nothing ever sees a half-built group.
        """
        spec = placeholder.spec
        try:
            env = self._env(placeholder)
            elements = branch_elements(spec, env)
            depend_hash = self.store.depend_hash(placeholder, self.graph)
        except Exception as e:
            self._fail(placeholder, e)
            return

        over = set(spec.pattern.over)
        base_deps = tuple(d for d in placeholder.deps if d not in over)
        cmd_hash = branch_command_hash(placeholder.command_hash, spec.pattern.text(), spec.reps)

        batches: List[str] = []
        nodes: Dict[str, Node] = {}
        for i, start in enumerate(range(0, len(elements), spec.reps)):
            chunk = elements[start:start + spec.reps]
            element_hashes = tuple(hash_value(b) for b in chunk)
            name = branch_name(spec.name, i, element_hashes)
            if name in self.graph or name in self.branch_nodes:
                self._fail(placeholder, InvalidPatternError(spec.name, f"branch name '{name}' collides with a target"))
                return
            nodes[name] = Node(
                spec=replace(spec, name=name, pattern=None),
                kind=NodeKind.CONCRETE,
                deps=base_deps,
                constants=placeholder.constants,
                command_hash=cmd_hash,
                index=placeholder.index,
                parent=spec.name,
                bindings=tuple(chunk),
                element_hashes=element_hashes,
            )
            batches.append(name)

        self.branch_nodes.update(nodes)
        self.groups[spec.name] = _BranchGroup(batches=batches, pending=set(batches), depend_hash=depend_hash)
        self.report.branches[spec.name] = list(batches)
        self.console.print_branches(spec.name, len(batches), len(elements))

        if not batches:
            self._finalize_group(placeholder)
            return
        for name in batches:
            self._push(name)

    def _branch_done(self, node: Node) -> None:
        group = self.groups[node.parent]
        group.pending.discard(node.name)
        if not group.pending:
            self._finalize_group(self.graph[node.parent])

    def _finalize_group(self, placeholder: Node) -> None:
        group = self.groups[placeholder.name]
        if group.failed:
            self._fail(placeholder, BranchError(placeholder.name, list(group.failed), len(group.batches)))
            return

        try:
            children = [self.store.require(b) for b in group.batches]
            fp = Fingerprint(
                name=placeholder.name,
                kind="pattern",
                command_hash=placeholder.command_hash,
                depend_hash=group.depend_hash,
                format=placeholder.format,
                data_hash=data_hash_of_children(children),
                children=list(group.batches),
                seconds=sum(c.seconds for c in children),
            )
            previous = self.store.lookup(placeholder.name)
            all_cached = all(self.report.results[b].status is Status.CACHED for b in group.batches)
            unchanged = previous is not None and (
                previous.command_hash,
                previous.depend_hash,
                previous.format,
                previous.data_hash,
                previous.children,
            ) == (fp.command_hash, fp.depend_hash, fp.format, fp.data_hash, fp.children)

            if all_cached and unchanged:
                result = TargetResult(placeholder.name, Status.CACHED, reason="all branches up to date")
            else:
                self.store.commit(fp)
                result = TargetResult(placeholder.name, Status.SUCCEEDED, seconds=fp.seconds)
        except Exception as e:
            self._fail(placeholder, e)
            return

        if all(b in self.values for b in group.batches):
            combined: List[Any] = []
            for b in group.batches:
                combined.extend(self.values[b])
            self.values[placeholder.name] = combined
        self._finish(placeholder, result)

    # ---- end of run ----
    def _mark_unreached(self) -> None:
        reason = "cancelled" if self.cancel.cancelled else "not reached"
        for name in itertools.chain(self.graph.order, self.branch_nodes):
            if name not in self.report.results:
                node = self._node(name)
                self.report.results[name] = TargetResult(name, Status.SKIPPED, reason=reason, parent=node.parent)


# ----------------------------------------------------------------------
# Convenience entry points
# ----------------------------------------------------------------------

def outdated(graph: Graph, store: FingerprintStore) -> List[str]:
    """
    Targets the next run would execute, without running anything. Dynamic
    targets count as outdated when their record or any of their batches is.
    """
    out: List[str] = []
    stale: Set[str] = set()
    for name in graph.order:
        node = graph[name]
        if any(d in stale for d in node.deps) or store.is_stale(node, graph):
            stale.add(name)
            out.append(name)
    return out


def make(
    specs: Any,
    *,
    config: Optional[EngineConfig] = None,
    constants: Optional[Mapping[str, Any]] = None,
    names: Optional[Iterable[str]] = None,
    store: Optional[FingerprintStore] = None,
    formats: Optional[FormatRegistry] = None,
    pool: Optional[WorkerPool] = None,
    cancel: Optional[CancelToken] = None,
    console: Optional[Console] = None,
    raise_on_error: bool = False,
) -> RunReport:
    """
    Build the graph and run it.

    Build errors raise immediately. Target errors are collected in the report
    and raised (as PipelineRunError) only after the run, if raise_on_error.
    """
    config = config or EngineConfig()
    graph = build(specs, config=config, constants=constants, formats=formats)
    if names:
        graph = graph.subgraph(names)
    store = store or FingerprintStore(config.store)

    own_pool = pool is None
    pool = pool or WorkerPool.from_config(config)
    try:
        report = Scheduler(store, formats, console=console).run(graph, pool, cancel=cancel)
    finally:
        if own_pool:
            pool.shutdown(wait=True)

    if raise_on_error:
        report.raise_for_errors()
    return report


# ----------------------------------------------------------------------
# Pipeline loading (local file)
# ----------------------------------------------------------------------

@dataclass
class LoadedPipeline:
    specs: List[TargetSpec]
    constants: Dict[str, Any]
    path: Path


def load_pipeline(path: str | Path) -> LoadedPipeline:
    """
    Load a pipeline from a python file path.

    The file must define either:
      - pipeline() -> list of TargetSpec (nested lists are fine)
      - TARGETS = [TargetSpec, ...]

    Module globals become the constants commands may reference.
    """
    pl_path = Path(path).expanduser().resolve()
    if not pl_path.exists():
        raise FileNotFoundError(f"Pipeline file not found: {pl_path}")
    if pl_path.suffix != ".py":
        raise ValueError(f"Pipeline must be a .py file, got: {pl_path.name}")

    module_name = f"targetkit_pipeline_{pl_path.stem}"
    globals_dict = runpy.run_path(str(pl_path), run_name=module_name)

    factory = globals_dict.get("pipeline")
    # an imported targetkit.dsl.pipeline helper is not the file's own factory
    if callable(factory) and getattr(factory, "__module__", None) == module_name:
        raw = factory()
    elif "TARGETS" in globals_dict:
        raw = globals_dict["TARGETS"]
    else:
        raise TypeError(
            "Pipeline file must define pipeline() -> list of targets or TARGETS = [...]."
        )

    specs = flatten_specs(raw)
    constants = {k: v for k, v in globals_dict.items() if not k.startswith("__")}
    return LoadedPipeline(specs=specs, constants=constants, path=pl_path)
