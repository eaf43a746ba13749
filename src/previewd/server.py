"""Preview server: Starlette + REST for the preview session orchestrator.

Runs in a background thread (default) or as a separate persistent process,
serving the status/control API that preview, comparison and judging UIs
poll. The heartbeat reaper runs on the server's event loop for as long as
the app is up; every session is stopped on shutdown.

Endpoints:
    GET  /api/health                                   → health check (returns session_id)
    GET  /api/preview/project/type/{task_id}/{model_id} → how an artifact would be previewed
    POST /api/preview/start                            → start or reuse a preview
    GET  /api/preview/status/{task_id}/{model_id}      → session snapshot
    POST /api/preview/heartbeat                        → keep sessions alive
    POST /api/preview/stop                             → stop a preview (idempotent)
    GET  /api/preview/sessions                         → all session snapshots
    GET  /api/preview/view/{task_id}/{model_id}/{path} → static artifact files
    POST /api/shutdown                                 → graceful shutdown (auth required)
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import math
import os
import secrets
import signal
import socket
import threading
import time
import uuid
from collections.abc import AsyncIterator
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import FileResponse, JSONResponse, Response
from starlette.routing import Route

from previewd._types import PreviewStatus
from previewd.classifier import static_entry
from previewd.config import PreviewConfig, load_config
from previewd.launcher import PreviewLauncher
from previewd.ports import PortAllocator
from previewd.reaper import HeartbeatReaper
from previewd.registry import PreviewSessionRegistry
from previewd.workspace import TaskWorkspace, validate_id

logger = logging.getLogger(__name__)

_DEFAULT_PORT = 7790
_MAX_PORT = 7799


class _BadRequest(Exception):
    """Request body is not the shape an endpoint needs."""


def _check_health(url: str, session_id: str | None = None) -> bool:
    """GET /api/health and optionally validate session_id matches."""
    from previewd._utils import health_check

    return health_check(url, session_id=session_id)


def _get_previewd_dir() -> Path:
    from previewd._utils import get_previewd_dir

    return get_previewd_dir()


def _not_running(task_id: str, model_id: str) -> dict[str, Any]:
    return {
        "taskId": task_id,
        "modelId": model_id,
        "status": PreviewStatus.NOT_RUNNING.value,
        "logs": [],
    }


class PreviewServer:
    """REST server for the preview pipeline.

    Owns the port allocator, launcher, registry and reaper. Designed to run
    in a background thread via ``start()``; ``app`` can also be driven
    directly (e.g. by a test client), in which case the lifespan starts the
    reaper.

    Args:
        config: Runtime settings (default: ``load_config()``).
        port: Port to bind to (auto-discovers if taken).
        host: Host to bind to (default: 127.0.0.1 for security).
        token: Bearer token required by ``/api/shutdown``.
        session_id: Identifies this server instance in health checks.
    """

    def __init__(
        self,
        config: PreviewConfig | None = None,
        port: int = _DEFAULT_PORT,
        host: str = "127.0.0.1",
        token: str | None = None,
        session_id: str | None = None,
    ) -> None:
        self.config = config or load_config()
        self.host = host
        self.port = port
        self.token = token
        self.session_id = session_id or uuid.uuid4().hex[:12]
        self._pid_path: Path | None = None
        self._server: uvicorn.Server | None = None
        self._thread: threading.Thread | None = None
        self._started = threading.Event()
        self._loop: asyncio.AbstractEventLoop | None = None

        self.workspace = TaskWorkspace(self.config.tasks_dir)
        self.allocator = PortAllocator(
            self.config.host, self.config.port_start, self.config.port_end
        )
        self.launcher = PreviewLauncher(self.config, self.allocator, self.workspace)
        self.registry = PreviewSessionRegistry(self.config, self.launcher, self.workspace)
        self.reaper = HeartbeatReaper(self.registry, self.config)

        # Server start time for health endpoint
        self._started_at = datetime.now(timezone.utc)

        self._app = self._build_app()

    @property
    def app(self) -> Starlette:
        return self._app

    def _build_app(self) -> Starlette:
        """Build the Starlette application with all routes."""
        routes = [
            Route("/api/health", self._api_health),
            Route(
                "/api/preview/project/type/{task_id}/{model_id}",
                self._api_project_type,
                methods=["GET"],
            ),
            Route("/api/preview/start", self._api_start, methods=["POST"]),
            Route(
                "/api/preview/status/{task_id}/{model_id}",
                self._api_status,
                methods=["GET"],
            ),
            Route("/api/preview/heartbeat", self._api_heartbeat, methods=["POST"]),
            Route("/api/preview/stop", self._api_stop, methods=["POST"]),
            Route("/api/preview/sessions", self._api_sessions, methods=["GET"]),
            Route(
                "/api/preview/view/{task_id}/{model_id}/{path:path}",
                self._api_view,
                methods=["GET"],
            ),
            Route("/api/shutdown", self._api_shutdown, methods=["POST"]),
        ]
        return Starlette(routes=routes, lifespan=self._lifespan)

    @contextlib.asynccontextmanager
    async def _lifespan(self, app: Starlette) -> AsyncIterator[None]:
        self.reaper.start()
        try:
            yield
        finally:
            await self.reaper.stop()
            stopped = await self.registry.stop_all()
            if stopped:
                logger.info(f"Stopped {stopped} preview(s) on shutdown")

    # --- Request helpers ---

    async def _read_body(self, request: Request) -> dict[str, Any]:
        try:
            body = await request.json()
        except Exception:
            raise _BadRequest("invalid JSON") from None
        if not isinstance(body, dict):
            raise _BadRequest("expected a JSON object")
        return body

    def _read_key(self, body: dict[str, Any]) -> tuple[str, str]:
        task_id = body.get("taskId")
        model_id = body.get("modelId") or body.get("modelName")
        if not task_id or not model_id:
            raise _BadRequest("taskId and modelId are required")
        return str(task_id), str(model_id)

    # --- Endpoints ---

    async def _api_health(self, request: Request) -> JSONResponse:
        """Health check endpoint. No auth required."""
        uptime_seconds = (datetime.now(timezone.utc) - self._started_at).total_seconds()
        return JSONResponse(
            {
                "status": "ok",
                "service": "previewd",
                "session_id": self.session_id,
                "uptime": round(uptime_seconds, 1),
                "version": "1.0",
                "sessions": len(self.registry),
            }
        )

    async def _api_project_type(self, request: Request) -> JSONResponse:
        task_id = request.path_params["task_id"]
        model_id = request.path_params["model_id"]
        loop = asyncio.get_running_loop()
        try:
            info = await loop.run_in_executor(
                None, self.registry.project_type, task_id, model_id
            )
        except ValueError as e:
            return JSONResponse({"error": str(e)}, status_code=400)
        return JSONResponse(info)

    async def _api_start(self, request: Request) -> JSONResponse:
        """Start a preview; returns immediately, callers poll status."""
        try:
            body = await self._read_body(request)
            task_id, model_id = self._read_key(body)
        except _BadRequest as e:
            return JSONResponse({"error": str(e)}, status_code=400)
        try:
            snapshot = await self.registry.start(
                task_id, model_id, force=bool(body.get("force"))
            )
        except ValueError as e:
            return JSONResponse({"error": str(e)}, status_code=400)
        return JSONResponse(snapshot)

    async def _api_status(self, request: Request) -> JSONResponse:
        task_id = request.path_params["task_id"]
        model_id = request.path_params["model_id"]
        try:
            snapshot = self.registry.status(task_id, model_id)
        except ValueError as e:
            return JSONResponse({"error": str(e)}, status_code=400)
        if snapshot is None:
            return JSONResponse(_not_running(task_id, model_id))
        return JSONResponse(snapshot)

    async def _api_heartbeat(self, request: Request) -> JSONResponse:
        """Refresh one session, or every session of a task when modelId is absent."""
        try:
            body = await self._read_body(request)
            task_id = body.get("taskId")
            if not task_id:
                raise _BadRequest("taskId is required")
            model_id = body.get("modelId") or body.get("modelName")
            ts = body.get("ts")
            if ts is not None and (
                isinstance(ts, bool) or not isinstance(ts, (int, float)) or not math.isfinite(ts)
            ):
                raise _BadRequest("ts must be epoch milliseconds")
        except _BadRequest as e:
            return JSONResponse({"error": str(e)}, status_code=400)
        try:
            refreshed = self.registry.heartbeat(
                str(task_id),
                str(model_id) if model_id else None,
                at=int(ts) if ts is not None else None,
            )
        except ValueError as e:
            return JSONResponse({"error": str(e)}, status_code=400)
        return JSONResponse({"ok": True, "refreshed": refreshed})

    async def _api_stop(self, request: Request) -> JSONResponse:
        try:
            body = await self._read_body(request)
            task_id, model_id = self._read_key(body)
        except _BadRequest as e:
            return JSONResponse({"error": str(e)}, status_code=400)
        try:
            stopped = await self.registry.stop(task_id, model_id)
        except ValueError as e:
            return JSONResponse({"error": str(e)}, status_code=400)
        return JSONResponse({"ok": True, "stopped": stopped})

    async def _api_sessions(self, request: Request) -> JSONResponse:
        return JSONResponse(self.registry.list_sessions())

    async def _api_view(self, request: Request) -> Response:
        """Serve a file from the artifact directory (static previews)."""
        task_id = request.path_params["task_id"]
        model_id = request.path_params["model_id"]
        rel_path = request.path_params.get("path", "")
        try:
            validate_id(task_id, "taskId")
            validate_id(model_id, "modelId")
        except ValueError as e:
            return JSONResponse({"error": str(e)}, status_code=400)

        loop = asyncio.get_running_loop()
        if not rel_path:
            files = await loop.run_in_executor(
                None, self.workspace.list_files, task_id, model_id
            )
            rel_path = static_entry(files) or ""
        if not rel_path:
            return JSONResponse({"error": "not found"}, status_code=404)
        target = await loop.run_in_executor(
            None, self.workspace.resolve_file, task_id, model_id, rel_path
        )
        if target is None:
            return JSONResponse({"error": "not found"}, status_code=404)
        return FileResponse(target)

    def _check_auth(self, request: Request) -> bool:
        """Check Bearer token authorization."""
        if not self.token:
            return True
        auth = request.headers.get("authorization", "")
        return auth == f"Bearer {self.token}"

    async def _api_shutdown(self, request: Request) -> JSONResponse:
        """Gracefully shut down the server. Requires auth."""
        if not self._check_auth(request):
            return JSONResponse({"error": "unauthorized"}, status_code=401)

        # Schedule shutdown after returning the response
        if self._server:
            self._server.should_exit = True
        return JSONResponse({"status": "shutting_down"})

    # --- Lifecycle ---

    def _find_port(self) -> int:
        """Find an available port, starting from self.port."""
        last = max(self.port, _MAX_PORT)
        for port in range(self.port, last + 1):
            try:
                with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
                    s.bind((self.host, port))
                    return port
            except OSError:
                continue
        raise RuntimeError(f"No available port in range {self.port}-{last}")

    def start(self, pid_path: Path | None = None) -> None:
        """Start the server in a background daemon thread.

        Args:
            pid_path: If set, write a PID file after the server binds.
        """
        if self._thread and self._thread.is_alive():
            return

        self.port = self._find_port()

        config = uvicorn.Config(
            app=self._app,
            host=self.host,
            port=self.port,
            log_level="warning",
            access_log=False,
        )
        self._server = uvicorn.Server(config)

        def _run() -> None:
            self._loop = asyncio.new_event_loop()
            asyncio.set_event_loop(self._loop)
            self._started.set()
            self._loop.run_until_complete(self._server.serve())

        self._thread = threading.Thread(target=_run, name="previewd-server", daemon=True)
        self._thread.start()
        self._started.wait(timeout=5)

        # Wait a moment for the server to fully bind
        self._wait_for_server()

        # Write PID file if requested
        if pid_path is not None:
            self._write_pid_file(pid_path)

        logger.info(f"previewd listening on {self.url}")

    def _wait_for_server(self, timeout: float = 3.0) -> None:
        """Wait for the server to accept connections."""
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            try:
                with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
                    s.settimeout(0.1)
                    s.connect((self.host, self.port))
                    return
            except (ConnectionRefusedError, OSError):
                time.sleep(0.05)

    def stop(self) -> None:
        """Stop the server (the lifespan stops every preview) and remove the PID file."""
        self._remove_pid_file()
        if self._server:
            self._server.should_exit = True
        if self._thread:
            # Teardown of running previews can take up to kill_grace each
            self._thread.join(timeout=max(3.0, self.config.kill_grace * 2 + 1))
            self._thread = None
        self._server = None
        logger.debug("Preview server stopped")

    def _write_pid_file(self, pid_path: Path) -> None:
        """Write the PID file with server metadata."""
        self._pid_path = pid_path
        pid_path.parent.mkdir(parents=True, exist_ok=True)
        info = {
            "pid": os.getpid(),
            "port": self.port,
            "host": self.host,
            "url": self.url,
            "session_id": self.session_id,
            "token": self.token,
            "tasks_dir": str(self.config.tasks_dir),
            "started_at": datetime.now(timezone.utc).isoformat(),
        }
        pid_path.write_text(json.dumps(info, indent=2))
        logger.debug(f"PID file written: {pid_path}")

    def _remove_pid_file(self) -> None:
        """Remove the PID file only if it still belongs to this server.

        Another server may have overwritten the PID file after we started.
        Blindly deleting it would orphan that newer server, so we verify
        our own PID is still recorded before unlinking.
        """
        if not self._pid_path or not self._pid_path.exists():
            self._pid_path = None
            return
        try:
            info = json.loads(self._pid_path.read_text())
            if info.get("pid") != os.getpid():
                logger.debug(
                    f"PID file belongs to pid={info.get('pid')}, not us ({os.getpid()}); leaving it"
                )
                self._pid_path = None
                return
            self._pid_path.unlink()
            logger.debug(f"PID file removed: {self._pid_path}")
        except (json.JSONDecodeError, OSError):
            pass
        self._pid_path = None

    @property
    def is_running(self) -> bool:
        """Check if the server is running."""
        return self._thread is not None and self._thread.is_alive()

    @property
    def url(self) -> str:
        return f"http://{self.host}:{self.port}"


def _run_standalone(port: int = _DEFAULT_PORT) -> None:
    """Run the preview server as a standalone persistent process.

    Acquires a file lock to prevent duplicate servers, checks the
    PID file for an existing healthy server, then starts.
    """
    import atexit
    import sys

    from previewd._utils import is_pid_alive, lock_file, unlock_file

    logging.basicConfig(
        level=os.getenv("PREVIEWD_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    data_dir = _get_previewd_dir()
    data_dir.mkdir(parents=True, exist_ok=True)

    lock_path = data_dir / ".server.lock"
    pid_path = data_dir / ".server.json"

    # Acquire cross-process file lock
    lock_fd = open(lock_path, "w")
    try:
        lock_file(lock_fd, exclusive=True, blocking=False)
    except OSError:
        # Another process holds the lock; a server is starting
        logger.debug("Another server process holds the lock, exiting")
        lock_fd.close()
        sys.exit(0)

    try:
        # Check PID file for an existing healthy server
        if pid_path.exists():
            try:
                info = json.loads(pid_path.read_text())
                pid = info.get("pid")
                host = info.get("host", "127.0.0.1")
                port_num = info.get("port")
                sid = info.get("session_id")
                api_url = f"http://{host}:{port_num}" if port_num else info.get("url")
                if (
                    pid
                    and api_url
                    and is_pid_alive(pid)
                    and _check_health(api_url, sid)
                ):
                    logger.debug(f"Healthy server already running (pid={pid}), exiting")
                    sys.exit(0)
            except (json.JSONDecodeError, OSError):
                pass

        try:
            config = load_config(data_dir)
        except ValueError as e:
            logger.error(f"Invalid configuration: {e}")
            sys.exit(2)
        config.tasks_dir.mkdir(parents=True, exist_ok=True)

        server = PreviewServer(
            config=config,
            port=port,
            host="127.0.0.1",
            token=secrets.token_hex(16),
            session_id=uuid.uuid4().hex[:12],
        )

        stop_event = threading.Event()

        def _shutdown(signum: int, frame: Any) -> None:
            logger.debug(f"Received signal {signum}, shutting down...")
            stop_event.set()

        # On Windows, only SIGINT and SIGBREAK are supported.
        # Use SIGBREAK as the Windows equivalent of SIGTERM.
        if sys.platform == "win32":
            signal.signal(signal.SIGBREAK, _shutdown)  # type: ignore[attr-defined]
        else:
            signal.signal(signal.SIGTERM, _shutdown)
        signal.signal(signal.SIGINT, _shutdown)
        atexit.register(server.stop)

        # start() writes the PID file after binding, still inside the lock
        server.start(pid_path=pid_path)

    finally:
        # Release the lock after PID file is written (or on error)
        unlock_file(lock_fd)
        lock_fd.close()

    # Block until a signal or /api/shutdown (outside lock so others can discover us)
    while not stop_event.wait(timeout=0.5):
        if not server.is_running:
            break
    server.stop()


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="previewd server")
    parser.add_argument(
        "--port", type=int, default=_DEFAULT_PORT, help="Port to bind to"
    )
    args = parser.parse_args()
    _run_standalone(port=args.port)
