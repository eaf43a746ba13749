"""Launcher: turn a classified artifact into a live preview.

Static artifacts are served straight from the artifact directory. Dynamic
artifacts are started as a detached child (its own process group), their
combined stdout/stderr is streamed into the session's log buffer, and the
preview is declared ready once a port owned by the process tree accepts
TCP connections.

Flow for a dynamic session:
    1. Sync the sandbox copy and detect the start command
    2. Allocate a port, run the optional setup step, spawn the server
    3. Poll for readiness with backoff until the startup timeout
    4. While ready, watch for the process or its port going away
    5. On any terminal outcome, kill the tree, confirm, release the port
"""

from __future__ import annotations

import asyncio
import logging
import subprocess
import threading
import urllib.error
import urllib.request
from pathlib import Path
from typing import IO
from urllib.parse import quote

from previewd import proctree
from previewd._types import (
    PreviewSession,
    PreviewStatus,
    StartCommand,
    now_ms,
)
from previewd._utils import build_safe_env, detached_popen_kwargs
from previewd.classifier import detect_start_command
from previewd.config import PreviewConfig
from previewd.ports import PortAllocator, PortExhaustedError, is_port_open
from previewd.workspace import TaskWorkspace

logger = logging.getLogger(__name__)

_STATIC_ROUTE = "/api/preview/view"
_SETUP_POLL_INTERVAL = 0.25
_READER_JOIN_TIMEOUT = 1.0


class SpawnError(RuntimeError):
    """The OS refused to create the preview process."""


def static_url(task_id: str, model_id: str, entry: str) -> str:
    """URL of the static file route serving ``entry``."""
    return f"{_STATIC_ROUTE}/{quote(task_id)}/{quote(model_id)}/{quote(entry)}"


def probe_port(host: str, port: int, timeout: float = 2.0) -> tuple[float, str]:
    """GET / on ``host:port`` and score what answers.

    HTML scores 100, JSON 10, anything else 1; a 404 halves the score.
    Unreachable ports score -1.

    Returns:
        ``(score, service_type)`` where service_type is one of
        "frontend", "backend", "unknown" or "error".
    """
    req = urllib.request.Request(f"http://{host}:{port}/", method="GET")
    try:
        resp = urllib.request.urlopen(req, timeout=timeout)
    except urllib.error.HTTPError as e:
        resp = e
    except (urllib.error.URLError, OSError, ValueError):
        return (-1.0, "error")
    try:
        content_type = (resp.headers.get("Content-Type") or "").lower()
        body = resp.read(1000).decode(errors="replace").lower()
        status = resp.status if hasattr(resp, "status") else resp.code
    except OSError:
        return (-1.0, "error")
    finally:
        resp.close()

    if "text/html" in content_type or "<!doctype html" in body or "<html" in body:
        score, service = 100.0, "frontend"
    elif "application/json" in content_type or body.lstrip().startswith("{"):
        score, service = 10.0, "backend"
    else:
        score, service = 1.0, "unknown"
    if status == 404:
        score /= 2
    return (score, service)


def _pump_output(stream: IO[bytes], session: PreviewSession) -> None:
    """Copy lines from the child's pipe into the session log until EOF."""
    try:
        for raw in iter(stream.readline, b""):
            line = raw.decode(errors="replace").rstrip()
            if line:
                session.logs.append(line)
    except (OSError, ValueError):
        pass
    finally:
        try:
            stream.close()
        except OSError:
            pass


class PreviewLauncher:
    """Starts, watches and tears down preview processes.

    Args:
        config: Runtime settings.
        allocator: Shared port pool.
        workspace: Artifact directory resolver.
    """

    def __init__(
        self,
        config: PreviewConfig,
        allocator: PortAllocator,
        workspace: TaskWorkspace,
    ) -> None:
        self.config = config
        self.allocator = allocator
        self.workspace = workspace

    # --- Static ---

    def serve_static(self, session: PreviewSession, entry: str) -> None:
        """Mark a static session ready. No process, no port."""
        session.entry = entry
        session.url = static_url(session.task_id, session.model_id, entry)
        session.started_at = now_ms()
        session.logs.append(f"Serving static preview: {entry}")
        session.transition(PreviewStatus.READY)
        session.released = True
        logger.info(f"Static preview ready for {session.key} ({entry})")

    # --- Dynamic ---

    def launch(self, session: PreviewSession, project_root: str = "") -> asyncio.Task:
        """Start the dynamic launch in the background and return its task."""
        task = asyncio.create_task(
            self._run(session, project_root), name=f"preview:{session.key}"
        )
        session.monitor_task = task
        return task

    async def _run(self, session: PreviewSession, project_root: str) -> None:
        try:
            if await self._start_dynamic(session, project_root):
                await self._watch(session)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception(f"Launcher error for {session.key}")
            await self._fail(session, f"Internal error: {e}")

    def _prepare(self, session: PreviewSession, project_root: str) -> tuple[Path, StartCommand | None]:
        """Sync the sandbox and detect the start command (blocking)."""
        if self.config.isolate:
            base = self.workspace.isolate(session.task_id, session.model_id)
        else:
            base = self.workspace.artifact_dir(session.task_id, session.model_id)
        project_dir = base / project_root if project_root else base
        cmd = detect_start_command(project_dir, install=self.config.install_dependencies)
        return project_dir, cmd

    async def _start_dynamic(self, session: PreviewSession, project_root: str) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.startup_timeout

        try:
            project_dir, cmd = await loop.run_in_executor(
                None, self._prepare, session, project_root
            )
        except OSError as e:
            await self._fail(session, f"Failed to prepare preview directory: {e}")
            return False
        if session.status is not PreviewStatus.STARTING:
            return False
        if cmd is None:
            await self._fail(session, "Unable to determine start command")
            return False

        try:
            port = await loop.run_in_executor(None, self.allocator.allocate)
        except PortExhaustedError as e:
            await self._fail(session, str(e))
            return False
        session.port = port
        session.command = cmd
        session.logs.append(f"Allocated port {port}")

        argv, cmd_env = cmd.render(port, self.config.host)
        env = build_safe_env({**cmd_env, "PORT": str(port), "HOST": self.config.host})

        if cmd.setup:
            if not await self._run_setup(session, cmd.setup, project_dir, env, deadline):
                return False

        try:
            self._spawn(session, argv, project_dir, env)
        except SpawnError as e:
            await self._fail(session, f"Failed to start preview: {e}")
            return False
        session.started_at = now_ms()
        logger.info(f"Spawned preview for {session.key} (pid={session.pid}, port={port})")

        return await self._wait_ready(session, deadline)

    def _spawn(
        self,
        session: PreviewSession,
        argv: list[str],
        cwd: Path,
        env: dict[str, str],
    ) -> subprocess.Popen:
        try:
            proc = subprocess.Popen(
                argv,
                cwd=str(cwd),
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                **detached_popen_kwargs(),
            )
        except (OSError, ValueError) as e:
            raise SpawnError(f"{argv[0]}: {e}") from e

        session.process = proc
        session.pid = proc.pid
        session.logs.append(f"$ {' '.join(argv)}  (pid={proc.pid})")
        reader = threading.Thread(
            target=_pump_output,
            args=(proc.stdout, session),
            name=f"previewd-log-{session.key}",
            daemon=True,
        )
        reader.start()
        session.reader_thread = reader
        return proc

    async def _run_setup(
        self,
        session: PreviewSession,
        argv: list[str],
        cwd: Path,
        env: dict[str, str],
        deadline: float,
    ) -> bool:
        """Run a setup command to completion inside the startup budget."""
        loop = asyncio.get_running_loop()
        try:
            proc = self._spawn(session, argv, cwd, env)
        except SpawnError as e:
            await self._fail(session, f"Failed to run setup: {e}")
            return False

        while True:
            if session.status is not PreviewStatus.STARTING:
                return False
            rc = proc.poll()
            if rc is not None:
                break
            if loop.time() >= deadline:
                await self._fail(
                    session,
                    f"Setup did not finish within {self.config.startup_timeout:g}s",
                )
                return False
            await asyncio.sleep(_SETUP_POLL_INTERVAL)

        reader = session.reader_thread
        if reader is not None:
            await loop.run_in_executor(None, reader.join, _READER_JOIN_TIMEOUT)
        if rc != 0:
            session.exit_code = rc
            await self._fail(session, f"Setup command failed with code {rc}")
            return False
        session.logs.append("Setup finished")
        # Stray helpers left in the setup's group are not the server
        await loop.run_in_executor(
            None, lambda: proctree.kill_tree(proc.pid, self.config.kill_grace, root_alive=False)
        )
        session.process = None
        session.pid = None
        session.reader_thread = None
        return True

    def _find_serving_port(self, session: PreviewSession, root_alive: bool) -> int | None:
        """Return a connectable port owned by the session's tree (blocking)."""
        host = self.config.host
        if session.port is not None and is_port_open(host, session.port):
            return session.port
        if session.pid is None:
            return None
        if root_alive:
            pids = proctree.tree_pids(session.pid)
        else:
            pids = proctree.group_pids(session.pid)
        ports = proctree.listening_ports(pids) - {session.port}
        candidates = [p for p in sorted(ports) if is_port_open(host, p)]
        if len(candidates) <= 1:
            return candidates[0] if candidates else None
        scored = [(probe_port(host, p)[0], -p, p) for p in candidates]
        return max(scored)[2]

    async def _wait_ready(self, session: PreviewSession, deadline: float) -> bool:
        """Poll until a port of the tree answers, the root fails, or time runs out."""
        loop = asyncio.get_running_loop()
        proc = session.process
        delay = self.config.ready_poll_initial
        root_exited = False

        while True:
            if session.status is not PreviewStatus.STARTING or proc is None:
                return False
            rc = proc.poll()
            if rc is not None:
                session.exit_code = rc
                if rc != 0:
                    await self._fail(
                        session,
                        f"Process exited with code {rc} before the preview became ready",
                    )
                    return False
                if not root_exited:
                    root_exited = True
                    session.logs.append(
                        "Root process exited cleanly; waiting for a detached server"
                    )

            port = await loop.run_in_executor(
                None, self._find_serving_port, session, rc is None
            )
            if session.status is not PreviewStatus.STARTING:
                return False
            if port is not None:
                session.serving_port = port
                if port != session.port:
                    session.logs.append(
                        f"Adopted port {port} (assigned port {session.port} was not bound)"
                    )
                session.url = f"http://{self.config.public_host}:{port}"
                session.transition(PreviewStatus.READY)
                session.logs.append(f"Preview ready at {session.url}")
                logger.info(f"Preview ready for {session.key} at {session.url}")
                return True

            if loop.time() >= deadline:
                await self._fail(
                    session,
                    f"Preview did not become ready within {self.config.startup_timeout:g}s",
                )
                return False
            await asyncio.sleep(min(delay, max(0.0, deadline - loop.time())))
            delay = min(delay * 2, self.config.ready_poll_max)

    async def _watch(self, session: PreviewSession) -> None:
        """Detect a ready preview dying outside of an explicit stop."""
        loop = asyncio.get_running_loop()
        proc = session.process
        failures = 0
        while session.status is PreviewStatus.READY:
            await asyncio.sleep(self.config.liveness_interval)
            if session.status is not PreviewStatus.READY or proc is None:
                return
            rc = proc.poll()
            alive = await loop.run_in_executor(
                None, is_port_open, self.config.host, session.serving_port
            )
            if session.status is not PreviewStatus.READY:
                return
            if alive:
                failures = 0
                continue
            if rc is None:
                failures += 1
                if failures < self.config.liveness_failures:
                    continue
                msg = (
                    f"Preview stopped accepting connections on port "
                    f"{session.serving_port}; preview not running."
                )
            else:
                session.exit_code = rc
                msg = f"Preview process exited with code {rc}; preview not running."
            if session.transition(PreviewStatus.NOT_RUNNING):
                session.error = msg
                session.logs.append(msg)
                logger.warning(f"Preview {session.key} crashed: {msg}")
                await self.release(session)
            return

    async def _fail(self, session: PreviewSession, message: str) -> None:
        """Move a starting session to error, keep its logs, free its resources."""
        if not session.transition(PreviewStatus.ERROR):
            return
        session.error = message
        session.logs.append(message)
        logger.warning(f"Preview {session.key} failed: {message}")
        await self.release(session)

    # --- Teardown ---

    def _kill(self, session: PreviewSession) -> set[int]:
        """Kill the session's process tree and reap the root (blocking)."""
        proc = session.process
        survivors: set[int] = set()
        if proc is not None:
            root_alive = proc.poll() is None
            survivors = proctree.kill_tree(
                proc.pid,
                grace=self.config.kill_grace,
                ports=[session.port] if session.port is not None else [],
                root_alive=root_alive,
            )
            try:
                proc.wait(timeout=max(self.config.kill_grace, 1.0))
            except subprocess.TimeoutExpired:
                proc.kill()
                try:
                    proc.wait(timeout=1.0)
                except subprocess.TimeoutExpired:
                    survivors.add(proc.pid)
        reader = session.reader_thread
        if reader is not None:
            reader.join(_READER_JOIN_TIMEOUT)
        return survivors

    async def release(self, session: PreviewSession) -> None:
        """Kill the session's process tree, confirm, then release its port.

        Idempotent. Safe to call from the session's own monitor task.
        """
        async with session.teardown_lock:
            if session.released:
                return
            monitor = session.monitor_task
            current = asyncio.current_task()
            if monitor is not None and monitor is not current and not monitor.done():
                monitor.cancel()
                try:
                    await monitor
                except asyncio.CancelledError:
                    pass
                except Exception:
                    logger.debug(f"Monitor for {session.key} raised during cancel")

            loop = asyncio.get_running_loop()
            survivors = await loop.run_in_executor(None, self._kill, session)
            if survivors:
                # Keep the port reserved rather than risk a dual bind
                msg = f"Could not confirm termination of pids {sorted(survivors)}"
                session.logs.append(msg)
                logger.warning(f"Preview {session.key}: {msg}")
            else:
                self.allocator.release(session.port)
            session.process = None
            session.released = True
            logger.debug(f"Released resources of {session.key}")
