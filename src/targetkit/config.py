# config.py
from __future__ import annotations

import os
from typing import Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .model import Deployment

DEFAULT_STORE = ".targetkit"


def default_workers() -> int:
    c = os.cpu_count() or 2
    return max(1, c - 1)


class EngineConfig(BaseModel):
    """
    Defaults threaded explicitly through build() and make().

    Nothing here is process-wide state: two builds with two configs never see
    each other's options.
    """
    model_config = ConfigDict(frozen=True)

    store: str = DEFAULT_STORE
    max_workers: int = Field(default_factory=default_workers, ge=1)
    remote_workers: int = Field(default=0, ge=0)
    default_format: str = "object"
    default_deployment: Deployment = Deployment.ANY

    @field_validator("default_format")
    @classmethod
    def _format_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("default_format must be a non-empty format id")
        return v.strip()

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides) -> "EngineConfig":
        """Read TARGETKIT_* variables; keyword overrides win over the environment."""
        env = os.environ if environ is None else environ
        values = {}
        if "TARGETKIT_STORE" in env:
            values["store"] = env["TARGETKIT_STORE"]
        if "TARGETKIT_MAX_WORKERS" in env:
            values["max_workers"] = int(env["TARGETKIT_MAX_WORKERS"])
        if "TARGETKIT_REMOTE_WORKERS" in env:
            values["remote_workers"] = int(env["TARGETKIT_REMOTE_WORKERS"])
        if "TARGETKIT_DEFAULT_FORMAT" in env:
            values["default_format"] = env["TARGETKIT_DEFAULT_FORMAT"]
        if "TARGETKIT_DEFAULT_DEPLOYMENT" in env:
            values["default_deployment"] = env["TARGETKIT_DEFAULT_DEPLOYMENT"]
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)
