from __future__ import annotations

import sys
import time
from pathlib import Path

import pytest

# Ensure tests always import the local src tree, not an older installed wheel.
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
sys.path.insert(0, str(SRC))

from stageci.cache import CacheManager  # noqa: E402
from stageci.driver import ExecutionDriver  # noqa: E402
from stageci.graph import build_graph  # noqa: E402
from stageci.provision import LocalProvisioner  # noqa: E402
from stageci.scheduler import Scheduler  # noqa: E402
from stageci.ui.console import Console  # noqa: E402


@pytest.fixture
def project_dir(tmp_path: Path) -> Path:
    src = tmp_path / "project"
    src.mkdir()
    (src / "README.md").write_text("hello\n", encoding="utf-8")
    return src


@pytest.fixture
def state_dir(tmp_path: Path) -> Path:
    return tmp_path / "state"


@pytest.fixture
def quiet_console() -> Console:
    return Console(quiet=True)


@pytest.fixture
def make_driver(project_dir, state_dir, quiet_console):
    def _make(cache: CacheManager | None = None) -> ExecutionDriver:
        return ExecutionDriver(
            LocalProvisioner(),
            cache or CacheManager(state_dir / "cache"),
            source_dir=project_dir,
            work_root=state_dir / "work",
            log_root=state_dir / "logs",
            console=quiet_console,
        )
    return _make


@pytest.fixture
def make_scheduler(make_driver, state_dir, quiet_console):
    """Scheduler over a pipeline, running real `sh` steps in tmp dirs."""
    def _make(pipeline, *, fail_fast=True, cache=None, max_workers=None, clock=time.time) -> Scheduler:
        return Scheduler(
            build_graph(pipeline),
            make_driver(cache),
            artifact_root=state_dir / "artifacts",
            fail_fast=fail_fast,
            max_workers=max_workers,
            console=quiet_console,
            clock=clock,
        )
    return _make
