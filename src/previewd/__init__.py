"""previewd: live previews of generated code artifacts.

Runs a local orchestrator that turns a task's generated artifact (static
HTML or a runnable project) into a browsable URL, keeps it alive while a
viewer sends heartbeats, and tears down the whole process tree when nobody
is watching.

Quick Start:
    from previewd import get_client, PreviewSubscription

    client = get_client()
    with PreviewSubscription(client, "task-1", "gpt-4o") as sub:
        if sub.wait_ready(timeout=60):
            print(sub.url)
"""

from __future__ import annotations

import json
import logging
import subprocess
import sys
import time
from pathlib import Path
from typing import Any

from previewd._types import PreviewKind, PreviewStatus
from previewd.client import (
    PreviewClient,
    PreviewClientError,
    PreviewSubscription,
    PreviewView,
    watch_many,
)

__all__ = [
    "PreviewClient",
    "PreviewClientError",
    "PreviewKind",
    "PreviewStatus",
    "PreviewSubscription",
    "PreviewView",
    "get_client",
    "server_status",
    "start_server",
    "stop_server",
    "watch_many",
]

logger = logging.getLogger(__name__)

DEFAULT_PORT = 7790


def _get_previewd_dir() -> Path:
    from previewd._utils import get_previewd_dir

    return get_previewd_dir()


def _pid_file_path() -> Path:
    """Return the path to the server PID file."""
    return _get_previewd_dir() / ".server.json"


def _is_process_alive(pid: int) -> bool:
    from previewd._utils import is_pid_alive

    return is_pid_alive(pid)


def _health_check(url: str, expected_session_id: str) -> bool:
    from previewd._utils import health_check

    return health_check(url, session_id=expected_session_id)


def _discover_server() -> dict[str, Any] | None:
    """Read PID file, validate process and health, return server info or None.

    Cleans up stale PID files automatically.
    """
    pid_path = _pid_file_path()
    if not pid_path.exists():
        return None

    try:
        info = json.loads(pid_path.read_text())
    except (json.JSONDecodeError, OSError):
        return None

    pid = info.get("pid")
    session_id = info.get("session_id")
    url = info.get("url")
    host = info.get("host", "127.0.0.1")
    port = info.get("port")

    if not all([pid, session_id, url]):
        return None

    if not _is_process_alive(pid):
        logger.debug(f"Stale PID file (pid={pid} not alive), removing")
        try:
            pid_path.unlink()
        except OSError:
            pass
        return None

    api_url = f"http://{host}:{port}" if port else url
    if not _health_check(api_url, session_id):
        logger.debug(f"Health check failed for {api_url}, removing stale PID file")
        try:
            pid_path.unlink()
        except OSError:
            pass
        return None

    info["api_url"] = api_url
    return info


def server_status() -> dict[str, Any] | None:
    """Return info about the running preview server for this project, or None.

    The PID file is the sole authority; ports are never scanned.
    """
    return _discover_server()


def start_server(port: int = DEFAULT_PORT, timeout: float = 5.0) -> dict[str, Any] | None:
    """Start the preview server as a detached process and wait for it.

    Returns the server info, or None if it did not become healthy within
    ``timeout`` seconds. An already running server is returned as is.
    """
    info = _discover_server()
    if info:
        return info

    from previewd._utils import detached_popen_kwargs

    cmd = [sys.executable, "-m", "previewd.server", "--port", str(port)]
    subprocess.Popen(
        cmd,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        **detached_popen_kwargs(),
    )

    # The server writes its PID file after binding
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        info = _discover_server()
        if info:
            return info
        time.sleep(0.1)
    return None


def stop_server() -> bool:
    """Stop the running preview server via POST /api/shutdown.

    Every live preview is torn down by the server before it exits.
    Returns True if a server was stopped.
    """
    info = _discover_server()
    if not info:
        return False

    url = info["api_url"]
    session_id = info.get("session_id")
    shutdown_requested = False
    with PreviewClient(url, token=info.get("token")) as client:
        try:
            client.shutdown()
            shutdown_requested = True
        except PreviewClientError:
            logger.debug(f"Failed to request shutdown for {url}")

    # Wait for process to exit; preview teardown can take a few seconds
    pid = info.get("pid")
    stopped = False
    deadline = time.monotonic() + 10.0
    while time.monotonic() < deadline:
        if not _is_process_alive(pid):
            stopped = True
            break
        time.sleep(0.1)
    if not stopped:
        stopped = not _health_check(url, session_id)

    if not stopped:
        if shutdown_requested:
            logger.debug(f"Shutdown requested but server still healthy at {url}")
        return False

    pid_path = _pid_file_path()
    if pid_path.exists():
        try:
            pid_path.unlink()
        except OSError:
            pass
    return True


def get_client(port: int = DEFAULT_PORT, autostart: bool = True) -> PreviewClient:
    """Return a client for this project's preview server.

    Args:
        port: Port to start a new server on if none is running.
        autostart: Start a server when none is running.

    Raises:
        PreviewClientError: No server is running and none could be started.
    """
    info = _discover_server()
    if info is None and autostart:
        info = start_server(port=port)
    if info is None:
        raise PreviewClientError("No preview server is running")
    return PreviewClient(info["api_url"], token=info.get("token"))
