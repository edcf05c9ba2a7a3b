# workers.py
from __future__ import annotations

from concurrent.futures import Executor, Future, ProcessPoolExecutor, ThreadPoolExecutor
from typing import Any, Callable, Optional

from .config import EngineConfig, default_workers
from .model import Deployment


class WorkerPool:
    """
    Bounded pool of workers.

    `local` threads live in the invoking process and are the only workers that
    may run deployment="local" targets. `remote` is an optional out-of-process
    executor for deployment="any" targets; anything shipped there must pickle.

    `max_in_flight` caps how many targets run at once across both members.
    """

    def __init__(
        self,
        max_workers: Optional[int] = None,
        *,
        remote: Optional[Executor] = None,
    ):
        if max_workers is None:
            max_workers = default_workers()
        if max_workers < 1:
            raise ValueError(f"max_workers must be >= 1, got {max_workers}")
        self.max_in_flight = max_workers
        self.local = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="targetkit-local")
        self.remote = remote

    @classmethod
    def with_processes(cls, max_workers: Optional[int] = None, remote_workers: int = 1) -> "WorkerPool":
        return cls(max_workers, remote=ProcessPoolExecutor(max_workers=remote_workers))

    @classmethod
    def from_config(cls, config: EngineConfig) -> "WorkerPool":
        if config.remote_workers > 0:
            return cls.with_processes(config.max_workers, config.remote_workers)
        return cls(config.max_workers)

    def runs_remotely(self, deployment: Deployment) -> bool:
        return self.remote is not None and deployment is Deployment.ANY

    def submit(self, deployment: Deployment, fn: Callable[..., Any], *args: Any) -> Future:
        if self.runs_remotely(deployment):
            return self.remote.submit(fn, *args)
        return self.local.submit(fn, *args)

    def shutdown(self, wait: bool = True) -> None:
        self.local.shutdown(wait=wait)
        if self.remote is not None:
            self.remote.shutdown(wait=wait)

    def __enter__(self) -> "WorkerPool":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown(wait=True)
