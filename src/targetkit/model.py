# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Tuple

from .expr import Expr, command_text


class Deployment(str, Enum):
    """Where a target may run: only in the invoking process, or on any worker."""
    LOCAL = "local"
    ANY = "any"


CUE_MODES = ("thorough", "always", "never")


@dataclass(frozen=True)
class Cue:
    """
    Invalidation policy for one target.

    mode="thorough" runs every enabled check, "always" reruns unconditionally,
    "never" keeps any existing record no matter what changed.
    """
    mode: str = "thorough"
    command: bool = True
    depend: bool = True
    format: bool = True
    file: bool = True

    def __post_init__(self) -> None:
        if self.mode not in CUE_MODES:
            raise ValueError(f"Unknown cue mode {self.mode!r}. Expected one of {CUE_MODES}")


@dataclass(frozen=True)
class Pattern:
    """
    Dynamic branching directive.

    kind="map"   -> iterate the upstream values in lockstep
    kind="cross" -> iterate their cartesian product (first name outermost)
    """
    kind: str
    over: Tuple[str, ...]

    def __post_init__(self) -> None:
        if self.kind not in ("map", "cross"):
            raise ValueError(f"Unknown pattern kind {self.kind!r}. Expected 'map' or 'cross'")
        if not self.over:
            raise ValueError("A pattern needs at least one upstream target")
        if len(set(self.over)) != len(self.over):
            raise ValueError(f"Pattern lists an upstream target twice: {list(self.over)}")

    def text(self) -> str:
        return f"{self.kind}({', '.join(self.over)})"


@dataclass(frozen=True)
class TargetSpec:
    """A named unit of deferred computation plus its storage format."""
    name: str
    command: Expr

    # None means "use the EngineConfig default" (resolved by dag.build)
    format: Optional[str] = None
    deployment: Optional[Deployment] = None

    pattern: Optional[Pattern] = None
    priority: float = 0.0
    cue: Cue = field(default_factory=Cue)

    # reps per batch for dynamic targets
    reps: int = 1

    def __post_init__(self) -> None:
        if not isinstance(self.name, str) or not self.name.strip():
            raise ValueError("Target name must be a non-empty string")
        if not isinstance(self.command, Expr):
            raise TypeError(
                f"Target '{self.name}' command must be an Expr, got {type(self.command).__name__}. "
                "Use targetkit.dsl.target(), which accepts callables too."
            )
        if not isinstance(self.reps, int) or self.reps < 1:
            raise ValueError(f"Target '{self.name}' reps must be an integer >= 1, got {self.reps!r}")
        if self.deployment is not None and not isinstance(self.deployment, Deployment):
            object.__setattr__(self, "deployment", Deployment(self.deployment))

    @property
    def is_dynamic(self) -> bool:
        return self.pattern is not None

    @property
    def command_text(self) -> str:
        return command_text(self.command)
