# errors.py
"""
Error taxonomy.

Build-time errors (BuildError) are fatal to the whole build and raised straight
from dag.build(). Node-scoped errors (NodeError) only mark the target they
happened in as errored; the scheduler records them in the RunReport and keeps
going with unrelated targets.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional


class TargetkitError(Exception):
    """Root of every error raised by targetkit itself."""


# ----------------------------------------------------------------------
# Build-time
# ----------------------------------------------------------------------

class BuildError(TargetkitError):
    pass


@dataclass
class CyclicDependencyError(BuildError):
    nodes: List[str]

    def __str__(self) -> str:
        return f"Dependency cycle detected. Stuck targets: {self.nodes}"


@dataclass
class DuplicateNameError(BuildError):
    names: List[str]

    def __str__(self) -> str:
        return f"Duplicate target names found: {self.names}"


@dataclass
class UnresolvedReferenceError(BuildError):
    target: str
    name: str
    known: List[str] = field(default_factory=list)

    def __str__(self) -> str:
        return (
            f"Target '{self.target}' references '{self.name}', which is neither a target "
            f"nor a constant. Known targets: {self.known}"
        )


@dataclass
class BatchFormatError(BuildError):
    """A dynamic target stored in a format that cannot hold a batch of results."""
    target: str
    format: str

    def __str__(self) -> str:
        return (
            f"Dynamic target '{self.target}' uses format '{self.format}', which cannot store a "
            "list of branch results. Use 'object' or 'json', or combine the branches in a "
            f"downstream target stored as '{self.format}'"
        )


# ----------------------------------------------------------------------
# Node-scoped
# ----------------------------------------------------------------------

class NodeError(TargetkitError):
    pass


@dataclass
class UnknownFormatError(NodeError):
    format: str
    known: List[str] = field(default_factory=list)

    def __str__(self) -> str:
        return f"Unknown format '{self.format}'. Registered formats: {self.known}"


@dataclass
class SerializationError(NodeError):
    """Wraps the I/O or encoding failure behind a failed read or write."""
    format: str
    location: str
    operation: str  # "serialize" | "deserialize"
    cause: Optional[BaseException] = None

    def __str__(self) -> str:
        why = f": {type(self.cause).__name__}: {self.cause}" if self.cause is not None else ""
        return f"Could not {self.operation} format '{self.format}' at {self.location}{why}"


@dataclass
class StaleFileNotFoundError(NodeError):
    target: str
    path: str

    def __str__(self) -> str:
        return f"Target '{self.target}' tracks file '{self.path}', which does not exist"


@dataclass
class InvalidPatternError(NodeError):
    target: str
    message: str

    def __str__(self) -> str:
        return f"Cannot branch target '{self.target}': {self.message}"


@dataclass
class BranchError(NodeError):
    """A dynamic target whose batches did not all succeed."""
    target: str
    failed: List[str]
    total: int

    def __str__(self) -> str:
        return f"{len(self.failed)} of {self.total} branch(es) of '{self.target}' errored: {self.failed}"


@dataclass
class TargetNotFoundError(TargetkitError):
    name: str

    def __str__(self) -> str:
        return f"No stored record for target '{self.name}'. Has it been built?"


@dataclass
class BranchNotFoundError(TargetkitError):
    target: str
    position: int
    count: int

    def __str__(self) -> str:
        return f"Target '{self.target}' has {self.count} branch(es); there is no branch at position {self.position}"


# ----------------------------------------------------------------------
# Run-level
# ----------------------------------------------------------------------

class PipelineRunError(TargetkitError):
    """Raised after a run finished with at least one errored target."""

    def __init__(self, report) -> None:
        self.report = report
        failed = sorted(report.errors())
        super().__init__(f"{len(failed)} target(s) errored: {failed}")
