# expr.py
"""
Commands as data.

A target's command is a small expression tree instead of a live closure, so the
engine can see which names it depends on, print it, hash it and ship it to
another process before anything is evaluated.

    from targetkit.expr import ref, call

    fit_cmd = call(fit, ref("data"), k=3)
    free_names(fit_cmd)     # ["data"]
    command_text(fit_cmd)   # "mymodule.fit(data, k=3)"
"""
from __future__ import annotations

import inspect
import operator
from dataclasses import dataclass, field
from typing import Any, Callable, List, Mapping, Tuple

from .hashing import hash_value, sha256_str

_LITERAL_TYPES = (str, int, float, bool, type(None), bytes)


class Expr:
    """Base class for expression nodes. Arithmetic and indexing build `Call`s."""

    def _binop(self, fn, other, *, swap: bool = False) -> "Call":
        other = as_expr(other)
        args = (other, self) if swap else (self, other)
        return Call(fn, args)

    def __add__(self, other):
        return self._binop(operator.add, other)

    def __radd__(self, other):
        return self._binop(operator.add, other, swap=True)

    def __sub__(self, other):
        return self._binop(operator.sub, other)

    def __rsub__(self, other):
        return self._binop(operator.sub, other, swap=True)

    def __mul__(self, other):
        return self._binop(operator.mul, other)

    def __rmul__(self, other):
        return self._binop(operator.mul, other, swap=True)

    def __truediv__(self, other):
        return self._binop(operator.truediv, other)

    def __rtruediv__(self, other):
        return self._binop(operator.truediv, other, swap=True)

    def __floordiv__(self, other):
        return self._binop(operator.floordiv, other)

    def __mod__(self, other):
        return self._binop(operator.mod, other)

    def __pow__(self, other):
        return self._binop(operator.pow, other)

    def __neg__(self):
        return Call(operator.neg, (self,))

    def __getitem__(self, key):
        return self._binop(operator.getitem, key)

    def attr(self, name: str) -> "Call":
        return Call(getattr, (self, Lit(name)))


@dataclass(frozen=True, eq=True)
class Ref(Expr):
    """Reference to another target or to an external constant."""
    name: str


@dataclass(frozen=True, eq=True)
class Lit(Expr):
    value: Any


@dataclass(frozen=True, eq=True)
class Call(Expr):
    fn: Callable[..., Any]
    args: Tuple[Expr, ...] = ()
    kwargs: Tuple[Tuple[str, Expr], ...] = ()


@dataclass(frozen=True, eq=True)
class Seq(Expr):
    items: Tuple[Expr, ...] = ()
    kind: str = "list"  # list | tuple


@dataclass(frozen=True, eq=True)
class DictExpr(Expr):
    items: Tuple[Tuple[Expr, Expr], ...] = field(default_factory=tuple)


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

def ref(name: str) -> Ref:
    if not isinstance(name, str) or not name:
        raise TypeError("ref() needs a non-empty target or constant name")
    return Ref(name)


def lit(value: Any) -> Lit:
    return Lit(value)


def as_expr(value: Any) -> Expr:
    """Lift plain Python values into expressions; containers are walked."""
    if isinstance(value, Expr):
        return value
    if isinstance(value, list):
        return Seq(tuple(as_expr(v) for v in value), kind="list")
    if isinstance(value, tuple):
        return Seq(tuple(as_expr(v) for v in value), kind="tuple")
    if isinstance(value, dict):
        return DictExpr(tuple((as_expr(k), as_expr(v)) for k, v in value.items()))
    return Lit(value)


def call(fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Call:
    if not callable(fn):
        raise TypeError(f"call() needs a callable, got {type(fn).__name__}")
    return Call(
        fn,
        tuple(as_expr(a) for a in args),
        tuple((k, as_expr(v)) for k, v in kwargs.items()),
    )


def from_callable(fn: Callable[..., Any]) -> Call:
    """
    Build `fn(a, b)` from `def fn(a, b)`: every required parameter becomes a
    reference to the target (or constant) of the same name.
    """
    sig = inspect.signature(fn)
    args: List[Expr] = []
    kwargs: List[Tuple[str, Expr]] = []
    for p in sig.parameters.values():
        if p.default is not inspect.Parameter.empty:
            continue
        if p.kind in (inspect.Parameter.POSITIONAL_ONLY, inspect.Parameter.POSITIONAL_OR_KEYWORD):
            args.append(Ref(p.name))
        elif p.kind is inspect.Parameter.KEYWORD_ONLY:
            kwargs.append((p.name, Ref(p.name)))
    return Call(fn, tuple(args), tuple(kwargs))


# ---------------------------------------------------------------------
# Analysis
# ---------------------------------------------------------------------

def _children(expr: Expr) -> List[Expr]:
    if isinstance(expr, Call):
        return list(expr.args) + [v for _k, v in expr.kwargs]
    if isinstance(expr, Seq):
        return list(expr.items)
    if isinstance(expr, DictExpr):
        out: List[Expr] = []
        for k, v in expr.items:
            out.extend((k, v))
        return out
    return []


def free_names(expr: Expr) -> List[str]:
    """Referenced names in first-appearance order, without duplicates."""
    seen = set()
    stack = [expr]
    order: List[str] = []
    # explicit pre-order walk keeps the order stable for deep expressions
    while stack:
        node = stack.pop()
        if isinstance(node, Ref):
            if node.name not in seen:
                seen.add(node.name)
                order.append(node.name)
            continue
        stack.extend(reversed(_children(node)))
    return order


def callable_name(fn: Callable[..., Any]) -> str:
    module = getattr(fn, "__module__", None) or ""
    qual = getattr(fn, "__qualname__", None) or getattr(fn, "__name__", None) or repr(fn)
    if module in ("builtins", ""):
        return qual
    return f"{module}.{qual}"


def _literal_text(value: Any) -> str:
    if isinstance(value, _LITERAL_TYPES):
        return repr(value)
    if isinstance(value, (list, tuple)) and all(isinstance(v, _LITERAL_TYPES) for v in value):
        return repr(value)
    return f"<{type(value).__name__}:{hash_value(value)[:12]}>"


def command_text(expr: Expr) -> str:
    if isinstance(expr, Ref):
        return expr.name
    if isinstance(expr, Lit):
        return _literal_text(expr.value)
    if isinstance(expr, Call):
        parts = [command_text(a) for a in expr.args]
        parts.extend(f"{k}={command_text(v)}" for k, v in expr.kwargs)
        return f"{callable_name(expr.fn)}({', '.join(parts)})"
    if isinstance(expr, Seq):
        inner = ", ".join(command_text(i) for i in expr.items)
        if expr.kind == "tuple":
            return f"({inner},)" if len(expr.items) == 1 else f"({inner})"
        return f"[{inner}]"
    if isinstance(expr, DictExpr):
        return "{" + ", ".join(f"{command_text(k)}: {command_text(v)}" for k, v in expr.items) + "}"
    raise TypeError(f"Not an expression: {expr!r}")


def _callables(expr: Expr) -> List[Callable[..., Any]]:
    out = []
    stack = [expr]
    while stack:
        node = stack.pop()
        if isinstance(node, Call):
            out.append(node.fn)
        stack.extend(_children(node))
    return out


def _source_digest(fn: Callable[..., Any]) -> str:
    try:
        src = inspect.getsource(fn)
    except (OSError, TypeError):
        # builtins and C functions have no source; their name is their identity
        return callable_name(fn)
    return sha256_str(src)


def command_hash(expr: Expr) -> str:
    """Hash of the command text plus the source of every function it calls."""
    digests = sorted({f"{callable_name(fn)}={_source_digest(fn)}" for fn in _callables(expr)})
    return sha256_str(command_text(expr) + "\n" + "\n".join(digests))


# ---------------------------------------------------------------------
# Rewriting / evaluation
# ---------------------------------------------------------------------

def substitute(expr: Expr, bindings: Mapping[str, Expr]) -> Expr:
    """Replace `Ref(name)` for every name in `bindings` by the bound expression."""
    if isinstance(expr, Ref):
        return bindings.get(expr.name, expr)
    if isinstance(expr, Lit):
        return expr
    if isinstance(expr, Call):
        return Call(
            expr.fn,
            tuple(substitute(a, bindings) for a in expr.args),
            tuple((k, substitute(v, bindings)) for k, v in expr.kwargs),
        )
    if isinstance(expr, Seq):
        return Seq(tuple(substitute(i, bindings) for i in expr.items), kind=expr.kind)
    if isinstance(expr, DictExpr):
        return DictExpr(tuple((substitute(k, bindings), substitute(v, bindings)) for k, v in expr.items))
    raise TypeError(f"Not an expression: {expr!r}")


def evaluate(expr: Expr, env: Mapping[str, Any]) -> Any:
    if isinstance(expr, Ref):
        try:
            return env[expr.name]
        except KeyError:
            raise NameError(f"name {expr.name!r} is not bound while evaluating the command") from None
    if isinstance(expr, Lit):
        return expr.value
    if isinstance(expr, Call):
        args = [evaluate(a, env) for a in expr.args]
        kwargs = {k: evaluate(v, env) for k, v in expr.kwargs}
        return expr.fn(*args, **kwargs)
    if isinstance(expr, Seq):
        items = [evaluate(i, env) for i in expr.items]
        return tuple(items) if expr.kind == "tuple" else items
    if isinstance(expr, DictExpr):
        return {evaluate(k, env): evaluate(v, env) for k, v in expr.items}
    raise TypeError(f"Not an expression: {expr!r}")
