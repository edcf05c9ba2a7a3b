# tests/conftest.py
"""
Shared fixtures for the targetkit test suite.

Every test gets its own store under tmp_path and a quiet console, so runs never
leak records or progress lines into each other.
"""
import pytest

from targetkit.cache import FingerprintStore
from targetkit.config import EngineConfig
from targetkit.runner import make
from targetkit.ui.console import Console


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for var in (
        "TARGETKIT_STORE",
        "TARGETKIT_MAX_WORKERS",
        "TARGETKIT_REMOTE_WORKERS",
        "TARGETKIT_DEFAULT_FORMAT",
        "TARGETKIT_DEFAULT_DEPLOYMENT",
    ):
        monkeypatch.delenv(var, raising=False)


@pytest.fixture
def store_dir(tmp_path):
    return tmp_path / "store"


@pytest.fixture
def store(store_dir):
    return FingerprintStore(store_dir)


@pytest.fixture
def config(store_dir):
    return EngineConfig(store=str(store_dir), max_workers=2)


@pytest.fixture
def console():
    return Console(quiet=True)


@pytest.fixture
def run(config, console):
    """make() bound to the per-test store; keyword arguments pass through."""

    def _run(specs, **kwargs):
        kwargs.setdefault("config", config)
        kwargs.setdefault("console", console)
        return make(specs, **kwargs)

    return _run
