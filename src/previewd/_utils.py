"""Shared utilities for the previewd package.

Deduplicates common patterns used across multiple modules:
PID checks, detached spawning, directory resolution, file locking,
health checks, and the child-process environment whitelist.
"""

from __future__ import annotations

import json
import os
import sys
from pathlib import Path
from typing import Any

# ---------------------------------------------------------------------------
# PID check
# ---------------------------------------------------------------------------


def _is_zombie(pid: int) -> bool:
    """True if ``pid`` has exited but not been reaped (Linux only)."""
    try:
        stat = Path(f"/proc/{pid}/stat").read_text()
    except OSError:
        return False
    # The command name is parenthesised and may contain spaces
    state = stat.rsplit(")", 1)[-1].split()
    return bool(state) and state[0] in ("Z", "X")


def is_pid_alive(pid: int) -> bool:
    """Check if a process with the given PID is alive.

    Zombie processes count as dead: they hold no sockets and cannot be
    signalled, they only wait for their parent to reap them.
    """
    if sys.platform == "win32":
        import ctypes

        kernel32 = ctypes.windll.kernel32  # type: ignore[attr-defined]
        PROCESS_QUERY_LIMITED_INFORMATION = 0x1000
        handle = kernel32.OpenProcess(PROCESS_QUERY_LIMITED_INFORMATION, False, pid)
        if handle:
            kernel32.CloseHandle(handle)
            return True
        return False
    else:
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            # Exists but belongs to another user
            return True
        except OSError:
            return False
        if sys.platform.startswith("linux") and _is_zombie(pid):
            return False
        return True


# ---------------------------------------------------------------------------
# Cross-platform file locking
# ---------------------------------------------------------------------------


def lock_file(fd: Any, exclusive: bool = True, blocking: bool = True) -> None:
    """Acquire a file lock. Works on Unix (fcntl) and Windows (msvcrt)."""
    if sys.platform == "win32":
        import msvcrt

        mode = msvcrt.LK_LOCK if blocking else msvcrt.LK_NBLCK
        # msvcrt.locking operates on the file descriptor's current position
        fd.seek(0)
        msvcrt.locking(fd.fileno(), mode, 1)
    else:
        import fcntl

        op = fcntl.LOCK_EX if exclusive else fcntl.LOCK_SH
        if not blocking:
            op |= fcntl.LOCK_NB
        fcntl.flock(fd, op)


def unlock_file(fd: Any) -> None:
    """Release a file lock."""
    if sys.platform == "win32":
        import msvcrt

        fd.seek(0)
        try:
            msvcrt.locking(fd.fileno(), msvcrt.LK_UNLCK, 1)
        except OSError:
            pass
    else:
        import fcntl

        fcntl.flock(fd, fcntl.LOCK_UN)


# ---------------------------------------------------------------------------
# Cross-platform subprocess detach kwargs
# ---------------------------------------------------------------------------


def detached_popen_kwargs() -> dict[str, Any]:
    """Return Popen kwargs that put the child in its own session/group.

    A preview's root process becomes a process-group leader, so the whole
    tree can be signalled by group even after intermediate parents exit.
    """
    if sys.platform == "win32":
        CREATE_NEW_PROCESS_GROUP = 0x00000200
        return {"creationflags": CREATE_NEW_PROCESS_GROUP}
    return {"start_new_session": True}


# ---------------------------------------------------------------------------
# Data directory resolution
# ---------------------------------------------------------------------------


def get_previewd_dir() -> Path:
    """Resolve the previewd data directory.

    Resolution order:
    1. ``PREVIEWD_DATA_DIR`` environment variable (explicit override)
    2. Walk up from cwd looking for an existing ``.previewd/`` directory
    3. Default: ``cwd / ".previewd"``
    """
    env = os.getenv("PREVIEWD_DATA_DIR")
    if env:
        return Path(env)
    cwd = Path.cwd()
    for parent in [cwd, *cwd.parents]:
        candidate = parent / ".previewd"
        if candidate.exists():
            return candidate
    return cwd / ".previewd"


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------


def health_check(url: str, session_id: str | None = None) -> bool:
    """GET /api/health and optionally validate session_id matches."""
    try:
        import urllib.request

        req = urllib.request.Request(f"{url}/api/health", method="GET")
        with urllib.request.urlopen(req, timeout=2) as resp:
            data = json.loads(resp.read())
            if data.get("status") != "ok":
                return False
            if session_id is not None:
                return data.get("session_id") == session_id
            return True
    except Exception:
        return False


# ---------------------------------------------------------------------------
# Child environment whitelist
# ---------------------------------------------------------------------------

ENV_WHITELIST: tuple[str, ...] = (
    # System basics
    "PATH",
    "HOME",
    "USER",
    "SHELL",
    "TERM",
    # Locale
    "LANG",
    "LC_ALL",
    "LC_CTYPE",
    # Temp dirs
    "TMPDIR",
    "TEMP",
    "TMP",
    # Node.js
    "NODE_PATH",
    "NODE_ENV",
    # Proxies
    "HTTP_PROXY",
    "HTTPS_PROXY",
    "http_proxy",
    "https_proxy",
    "NO_PROXY",
    "no_proxy",
    # Windows needs these to start almost anything
    "SYSTEMROOT",
    "COMSPEC",
    "PATHEXT",
)


def build_safe_env(
    extra: dict[str, str] | None = None,
    source: dict[str, str] | None = None,
) -> dict[str, str]:
    """Build the environment for an untrusted preview process.

    Only whitelisted variables are copied from ``source`` (default
    ``os.environ``) so server secrets never reach generated code.
    """
    source = os.environ if source is None else source
    env = {k: source[k] for k in ENV_WHITELIST if k in source}
    env.setdefault("LANG", "en_US.UTF-8")
    env["PYTHONUNBUFFERED"] = "1"
    if extra:
        env.update(extra)
    return env
