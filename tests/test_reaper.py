"""Tests for previewd.reaper."""

import asyncio
import sys
from dataclasses import replace
from unittest.mock import MagicMock

import pytest

from previewd._types import PreviewStatus, SessionKey, now_ms
from previewd._utils import is_pid_alive
from previewd.launcher import PreviewLauncher
from previewd.reaper import HeartbeatReaper

linux_only = pytest.mark.skipif(
    not sys.platform.startswith("linux"), reason="real process trees need /proc"
)

SERVE_SCRIPT = """\
import http.server
import os

http.server.ThreadingHTTPServer(
    ("127.0.0.1", int(os.environ["PORT"])), http.server.SimpleHTTPRequestHandler
).serve_forever()
"""


@pytest.fixture
def mock_launcher(registry):
    launcher = MagicMock(spec=PreviewLauncher)
    registry.launcher = launcher
    return launcher


@pytest.fixture
def reaper(registry, config):
    return HeartbeatReaper(registry, config)


async def _start(registry, make_artifact, model="m1"):
    make_artifact("t1", model, {"server.py": ""})
    await registry.start("t1", model)
    return registry.get("t1", model)


class TestEvictionReason:
    async def test_fresh_session_is_kept(self, registry, mock_launcher, make_artifact, reaper):
        session = await _start(registry, make_artifact)
        assert reaper.eviction_reason(session, now_ms()) is None

    async def test_idle_session(self, registry, mock_launcher, make_artifact, reaper):
        session = await _start(registry, make_artifact)
        reason = reaper.eviction_reason(session, session.last_heartbeat + 2500)
        assert reason == "no heartbeat for 2.5s"

    async def test_max_lifetime(self, registry, mock_launcher, make_artifact, reaper, config):
        reaper.config = replace(config, max_session_seconds=60)
        session = await _start(registry, make_artifact)
        later = session.created_at + 61_000
        session.last_heartbeat = later
        assert reaper.eviction_reason(session, later) == "exceeded maximum lifetime of 60s"

    async def test_terminal_retention(self, registry, mock_launcher, make_artifact, reaper, config):
        reaper.config = replace(config, terminal_retention=30)
        session = await _start(registry, make_artifact)
        session.transition(PreviewStatus.ERROR)
        assert reaper.eviction_reason(session, session.finished_at + 10_000) is None
        assert reaper.eviction_reason(session, session.finished_at + 31_000) == "error for 31s"


class TestSweep:
    async def test_evicts_idle_sessions_only(self, registry, mock_launcher, make_artifact, reaper):
        idle = await _start(registry, make_artifact, "m1")
        fresh = await _start(registry, make_artifact, "m2")
        now = now_ms()
        idle.last_heartbeat = now - 5000
        fresh.last_heartbeat = now

        evicted = await reaper.sweep(now)
        assert evicted == [SessionKey("t1", "m1")]
        assert idle.status is PreviewStatus.STOPPED
        assert any("evicted (no heartbeat" in e.msg for e in idle.logs.entries())
        assert registry.get("t1", "m2") is fresh

    async def test_nothing_to_do(self, registry, reaper):
        assert await reaper.sweep() == []

    async def test_heartbeat_after_scan_saves_session(
        self, registry, mock_launcher, make_artifact, reaper
    ):
        session = await _start(registry, make_artifact)
        now = now_ms()
        session.last_heartbeat = now - 5000

        # Hold the key lock so the sweep's stop waits behind it
        lock = registry._lock_for(SessionKey("t1", "m1"))
        await lock.acquire()
        sweep = asyncio.create_task(reaper.sweep(now))
        await asyncio.sleep(0.05)
        session.touch(now)
        lock.release()

        assert await sweep == []
        assert session.status is PreviewStatus.STARTING

    async def test_heartbeat_with_lagging_client_clock_keeps_session(
        self, registry, mock_launcher, make_artifact, reaper
    ):
        session = await _start(registry, make_artifact)
        session.last_heartbeat = now_ms() - 5000
        # Client clock several TTLs behind the server
        assert registry.heartbeat("t1", "m1", at=now_ms() - 10_000) == 1
        assert await reaper.sweep() == []
        assert registry.get("t1", "m1") is session
        mock_launcher.release.assert_not_called()

    async def test_restart_after_scan_is_not_evicted(
        self, registry, mock_launcher, make_artifact, reaper
    ):
        old = await _start(registry, make_artifact)
        now = now_ms()
        old.last_heartbeat = now - 5000

        lock = registry._lock_for(SessionKey("t1", "m1"))
        await lock.acquire()
        restart = asyncio.create_task(registry.start("t1", "m1", force=True))
        await asyncio.sleep(0.01)
        sweep = asyncio.create_task(reaper.sweep(now))
        await asyncio.sleep(0.05)
        lock.release()

        await restart
        # The sweep targets the scanned session object, not whatever holds the key
        assert await sweep == []
        new = registry.get("t1", "m1")
        assert new is not old
        assert new.status is PreviewStatus.STARTING

    async def test_failed_eviction_does_not_block_others(
        self, registry, mock_launcher, make_artifact, reaper
    ):
        a = await _start(registry, make_artifact, "m1")
        b = await _start(registry, make_artifact, "m2")
        now = now_ms()
        a.last_heartbeat = b.last_heartbeat = now - 5000

        async def _release(session):
            if session is a:
                raise RuntimeError("kill failed")

        mock_launcher.release.side_effect = _release
        assert await reaper.sweep(now) == [SessionKey("t1", "m2")]


class TestLoop:
    async def test_background_loop_evicts(
        self, registry, mock_launcher, make_artifact, reaper, wait_until
    ):
        session = await _start(registry, make_artifact)
        session.last_heartbeat = now_ms() - 10_000
        task = reaper.start()
        assert reaper.start() is task
        try:
            assert await wait_until(lambda: len(registry) == 0, timeout=5)
        finally:
            await reaper.stop()
        assert task.done()

    async def test_loop_survives_sweep_errors(self, registry, reaper, wait_until, monkeypatch):
        calls = []

        async def _broken(now=None):
            calls.append(now)
            raise RuntimeError("boom")

        monkeypatch.setattr(reaper, "sweep", _broken)
        reaper.start()
        try:
            assert await wait_until(lambda: len(calls) >= 3, timeout=5)
        finally:
            await reaper.stop()

    async def test_stop_without_start(self, reaper):
        await reaper.stop()


@linux_only
class TestRealEviction:
    async def test_abandoned_preview_is_killed_and_port_reused(
        self, registry, allocator, make_artifact, reaper, wait_until, monkeypatch
    ):
        monkeypatch.setattr(
            "previewd.classifier._python_interpreter", lambda project_dir: sys.executable
        )
        make_artifact("t1", "m1", {"server.py": SERVE_SCRIPT})
        await registry.start("t1", "m1")
        session = registry.get("t1", "m1")
        assert await wait_until(lambda: session.status is PreviewStatus.READY)
        port, pid = session.port, session.pid

        # Simulate the viewer going away: no more heartbeats
        evicted = await reaper.sweep(now_ms() + 60_000)
        assert evicted == [SessionKey("t1", "m1")]
        assert not allocator.is_reserved(port)
        assert not is_pid_alive(pid)
