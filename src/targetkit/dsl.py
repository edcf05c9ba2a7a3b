# dsl.py
from __future__ import annotations

import itertools
import re
from dataclasses import replace
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from .dag import flatten_specs
from .expr import Expr, Lit, Ref, Seq, as_expr, call, from_callable, substitute
from .hashing import hash_value
from .model import Cue, Deployment, Pattern, TargetSpec

Command = Union[Expr, Callable[..., Any]]
Templates = Union[TargetSpec, Sequence[Any]]


# ---------------------------------------------------------------------
# Target helpers
# ---------------------------------------------------------------------

def _as_command(command: Any) -> Expr:
    if isinstance(command, Expr):
        return command
    if callable(command):
        return from_callable(command)
    return as_expr(command)


def target(
    name: str,
    command: Any,
    *,
    format: Optional[str] = None,
    deployment: Optional[Union[Deployment, str]] = None,
    pattern: Optional[Pattern] = None,
    priority: float = 0.0,
    cue: Optional[Cue] = None,
    reps: int = 1,
) -> TargetSpec:
    """
    Declare a target.

    `command` is an expression (see targetkit.expr), a function whose required
    parameters name its dependencies, or a plain value.

        target("data", call(read_csv, ref("raw")))
        target("model", fit_model)          # def fit_model(data): ...
    """
    return TargetSpec(
        name=name,
        command=_as_command(command),
        format=format,
        deployment=Deployment(deployment) if deployment is not None else None,
        pattern=pattern,
        priority=priority,
        cue=cue or Cue(),
        reps=reps,
    )


def file_target(name: str, command: Any, **kwargs: Any) -> TargetSpec:
    """A target whose command returns a path (or paths) to track by content hash."""
    return target(name, command, format="file", **kwargs)


def map_over(*names: str) -> Pattern:
    return Pattern("map", tuple(names))


def cross_over(*names: str) -> Pattern:
    return Pattern("cross", tuple(names))


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class TargetBuilder:
    def __init__(self, name: str):
        self.name = name
        self._command: Optional[Expr] = None
        self._format: Optional[str] = None
        self._deployment: Optional[Deployment] = None
        self._pattern: Optional[Pattern] = None
        self._priority: float = 0.0
        self._cue: Cue = Cue()
        self._reps: int = 1

    def run(self, fn: Callable[..., Any], *args: Any, **kwargs: Any):
        self._command = call(fn, *args, **kwargs)
        return self

    def command(self, command: Any):
        self._command = _as_command(command)
        return self

    def stored_as(self, format: str):
        self._format = format
        return self

    def local(self):
        self._deployment = Deployment.LOCAL
        return self

    def map_over(self, *names: str, reps: int = 1):
        self._pattern = map_over(*names)
        self._reps = reps
        return self

    def cross_over(self, *names: str, reps: int = 1):
        self._pattern = cross_over(*names)
        self._reps = reps
        return self

    def priority(self, value: float):
        self._priority = value
        return self

    def cue(self, **kwargs: Any):
        self._cue = Cue(**kwargs)
        return self

    def build(self) -> TargetSpec:
        if self._command is None:
            raise ValueError(f"Target '{self.name}' has no command")
        return TargetSpec(
            name=self.name,
            command=self._command,
            format=self._format,
            deployment=self._deployment,
            pattern=self._pattern,
            priority=self._priority,
            cue=self._cue,
            reps=self._reps,
        )


def builder(name: str) -> TargetBuilder:
    """Convenience: builder('model').run(fit, ref('data')).build()"""
    return TargetBuilder(name)


# ---------------------------------------------------------------------
# Static branching
# ---------------------------------------------------------------------

_UNSAFE = re.compile(r"[^A-Za-z0-9.]+")


def _suffix_part(value: Any) -> str:
    if isinstance(value, (str, int, float, bool)):
        part = _UNSAFE.sub("_", str(value)).strip("_")
        if part:
            return part
    return hash_value(value)[:8]


def branch_suffix(binding: Mapping[str, Any], names: Optional[Sequence[str]] = None) -> str:
    keys = list(names) if names is not None else list(binding)
    return "_".join(_suffix_part(binding[k]) for k in keys)


def _normalize_values(values: Union[Mapping[str, Sequence[Any]], Sequence[Mapping[str, Any]]]) -> List[Dict[str, Any]]:
    if isinstance(values, Mapping):
        lengths = {k: len(v) for k, v in values.items()}
        if len(set(lengths.values())) > 1:
            raise ValueError(f"static_map() needs value lists of equal length, got {lengths}")
        keys = list(values)
        n = next(iter(lengths.values()), 0)
        return [{k: values[k][i] for k in keys} for i in range(n)]
    return [dict(b) for b in values]


def _expand_static(
    templates: Templates,
    bindings: List[Dict[str, Any]],
    names: Optional[Sequence[str]],
) -> List[TargetSpec]:
    specs = flatten_specs(templates)
    template_names = {s.name for s in specs}
    out: List[TargetSpec] = []
    for binding in bindings:
        clash = template_names & set(binding)
        if clash:
            raise ValueError(f"Parameter names collide with template target names: {sorted(clash)}")
        suffix = branch_suffix(binding, names)
        renames = {t: f"{t}_{suffix}" for t in template_names}

        subst: Dict[str, Expr] = {k: Lit(v) for k, v in binding.items()}
        subst.update({t: Ref(new) for t, new in renames.items()})

        for spec in specs:
            pattern = spec.pattern
            if pattern is not None:
                pattern = Pattern(pattern.kind, tuple(renames.get(n, n) for n in pattern.over))
            out.append(
                replace(
                    spec,
                    name=renames[spec.name],
                    command=substitute(spec.command, subst),
                    pattern=pattern,
                )
            )
    return out


def static_map(
    templates: Templates,
    values: Union[Mapping[str, Sequence[Any]], Sequence[Mapping[str, Any]]],
    *,
    names: Optional[Sequence[str]] = None,
) -> List[TargetSpec]:
    """
    One copy of every template per parameter binding.

    `values` is either a list of bindings or a dict of equal-length lists.
    References to a parameter become the bound literal; references between
    templates of the same call point at the sibling of the same binding.

        static_map(
            [target("fit", call(fit, ref("data"), ref("k"))),
             target("score", call(score, ref("fit")))],
            values={"k": [2, 3]},
        )
        # -> fit_2, score_2, fit_3, score_3
    """
    return _expand_static(templates, _normalize_values(values), names)


def static_cross(
    templates: Templates,
    *,
    names: Optional[Sequence[str]] = None,
    **axes: Sequence[Any],
) -> List[TargetSpec]:
    """Like static_map over the cartesian product of the axes (first axis outermost)."""
    keys = list(axes)
    bindings = [dict(zip(keys, combo)) for combo in itertools.product(*(axes[k] for k in keys))]
    return _expand_static(templates, bindings, names)


class Matrix:
    """
    Callable-based static expansion.

    Example:
        matrix(k=[2, 3], seed=[1]).targets(
            lambda k, seed: target(f"fit_{k}_{seed}", call(fit, ref("data"), k, seed))
        )
    """
    def __init__(self, **axes: Iterable[Any]):
        self.keys = list(axes)
        self.values = [list(v) for v in axes.values()]

    def bindings(self) -> List[Dict[str, Any]]:
        return [dict(zip(self.keys, combo)) for combo in itertools.product(*self.values)]

    def targets(self, factory: Callable[..., Any]) -> List[TargetSpec]:
        return flatten_specs([factory(**b) for b in self.bindings()])


def matrix(**axes: Iterable[Any]) -> Matrix:
    return Matrix(**axes)


def collect(*values: Any) -> List[Any]:
    return list(values)


def combine(
    name: str,
    *groups: Any,
    command: Optional[Callable[[List[Any]], Any]] = None,
    **kwargs: Any,
) -> TargetSpec:
    """
    Aggregate the targets in `groups` (specs or lists of specs) into one target.
    Without `command` the value is the list of their values in order.
    """
    refs = [Ref(s.name) for s in flatten_specs(list(groups))]
    if command is None:
        expr: Expr = call(collect, *refs)
    else:
        expr = call(command, Seq(tuple(refs), kind="list"))
    return target(name, expr, **kwargs)


# ---------------------------------------------------------------------
# Batched replication
# ---------------------------------------------------------------------

def rep_index(batches: int, reps: int) -> List[int]:
    return list(range(batches * reps))


def rep(name: str, command: Any, *, batches: int, reps: int = 1, **kwargs: Any) -> List[TargetSpec]:
    """
    Run `command` batches * reps times, grouped `reps` repetitions per batch.

    Emits an index target `<name>_rep` and a dynamic target mapped over it;
    the command may reference `<name>_rep` to see its repetition number.
    """
    if batches < 1 or reps < 1:
        raise ValueError(f"rep('{name}') needs batches >= 1 and reps >= 1, got {batches} and {reps}")
    index_name = f"{name}_rep"
    return [
        target(index_name, call(rep_index, batches, reps), deployment=Deployment.LOCAL),
        target(name, command, pattern=map_over(index_name), reps=reps, **kwargs),
    ]


# ---------------------------------------------------------------------
# Pipeline helper (single-file story)
# ---------------------------------------------------------------------

def pipeline(*items: Any) -> List[TargetSpec]:
    """
    Pipeline definition helper; nested lists from factories are flattened.

        def pipeline():
            return tk.pipeline(
                file_target("raw", "data.csv"),
                target("data", call(load, ref("raw"))),
            )

    Name your own function something else if you import this one unqualified.
    """
    return flatten_specs(list(items))
