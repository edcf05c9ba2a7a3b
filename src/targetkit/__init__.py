from .cache import Fingerprint, FingerprintStore
from .config import EngineConfig
from .dag import Graph, NodeKind, build
from .dsl import (
    builder,
    combine,
    cross_over,
    file_target,
    map_over,
    matrix,
    pipeline,
    rep,
    static_cross,
    static_map,
    target,
)
from .expr import call, lit, ref
from .formats import Format, FormatRegistry
from .model import Cue, Deployment, Pattern, TargetSpec
from .runner import CancelToken, RunReport, Scheduler, Status, make, outdated, read_target
from .workers import WorkerPool

__all__ = [
    "CancelToken",
    "Cue",
    "Deployment",
    "EngineConfig",
    "Fingerprint",
    "FingerprintStore",
    "Format",
    "FormatRegistry",
    "Graph",
    "NodeKind",
    "Pattern",
    "RunReport",
    "Scheduler",
    "Status",
    "TargetSpec",
    "WorkerPool",
    "build",
    "builder",
    "call",
    "combine",
    "cross_over",
    "file_target",
    "lit",
    "make",
    "map_over",
    "matrix",
    "outdated",
    "pipeline",
    "read_target",
    "ref",
    "rep",
    "static_cross",
    "static_map",
    "target",
]
