"""Shared test fixtures for the previewd test suite."""

import asyncio
import textwrap
import time

import pytest

from previewd.config import PreviewConfig
from previewd.launcher import PreviewLauncher
from previewd.ports import PortAllocator
from previewd.registry import PreviewSessionRegistry
from previewd.workspace import TaskWorkspace


@pytest.fixture(autouse=True)
def _isolated_data_dir(tmp_path, monkeypatch):
    """Keep PID files and default task dirs out of the working tree."""
    monkeypatch.setenv("PREVIEWD_DATA_DIR", str(tmp_path / ".previewd"))
    for var in ("PREVIEWD_TASKS_DIR", "PREVIEWD_HEARTBEAT_TTL", "PREVIEWD_HEARTBEAT_INTERVAL"):
        monkeypatch.delenv(var, raising=False)


@pytest.fixture
def tasks_dir(tmp_path):
    d = tmp_path / "tasks"
    d.mkdir()
    return d


@pytest.fixture
def config(tasks_dir):
    """Fast timings so real-process tests finish in a few seconds."""
    return PreviewConfig(
        tasks_dir=tasks_dir,
        port_start=20000,
        port_end=20999,
        heartbeat_ttl=2.0,
        heartbeat_interval=0.5,
        reaper_interval=0.1,
        startup_timeout=10.0,
        kill_grace=0.5,
        install_dependencies=False,
        ready_poll_initial=0.05,
        ready_poll_max=0.2,
        liveness_interval=0.1,
        liveness_failures=2,
    )


@pytest.fixture
def make_artifact(tasks_dir):
    """Write an artifact: ``make_artifact("t1", "m1", {"index.html": "..."})``."""

    def _make(task_id, model_id, files):
        root = tasks_dir / task_id / model_id
        root.mkdir(parents=True, exist_ok=True)
        for rel, content in files.items():
            path = root / rel
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(textwrap.dedent(content))
        return root

    return _make


@pytest.fixture
def workspace(tasks_dir):
    return TaskWorkspace(tasks_dir)


@pytest.fixture
def allocator(config):
    return PortAllocator(config.host, config.port_start, config.port_end)


@pytest.fixture
def launcher(config, allocator, workspace):
    return PreviewLauncher(config, allocator, workspace)


@pytest.fixture
def registry(config, launcher, workspace):
    return PreviewSessionRegistry(config, launcher, workspace)


@pytest.fixture
def wait_until():
    """Return an async helper that polls ``predicate`` until true or timeout."""

    async def _wait(predicate, timeout=10.0, interval=0.05):
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if predicate():
                return True
            await asyncio.sleep(interval)
        return predicate()

    return _wait
