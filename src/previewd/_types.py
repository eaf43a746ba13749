"""Type definitions for the preview session orchestrator.

Defines the core data structures shared by the registry, launcher, reaper
and HTTP layer: session status and kind enums, the bounded log buffer, the
start command descriptor, and the ``PreviewSession`` record itself.
"""

from __future__ import annotations

import asyncio
import subprocess
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, NamedTuple


class PreviewStatus(str, Enum):
    """Lifecycle states of a preview session."""

    STARTING = "starting"
    READY = "ready"
    ERROR = "error"
    NOT_RUNNING = "not_running"
    STOPPED = "stopped"


class PreviewKind(str, Enum):
    """How an artifact is previewed."""

    STATIC = "static"
    DYNAMIC = "dynamic"
    NONE = "none"


ACTIVE_STATUSES: frozenset[PreviewStatus] = frozenset(
    {PreviewStatus.STARTING, PreviewStatus.READY}
)

# status -> statuses it may move to. STOPPED is reachable from everywhere.
_TRANSITIONS: dict[PreviewStatus, frozenset[PreviewStatus]] = {
    PreviewStatus.STARTING: frozenset(
        {PreviewStatus.READY, PreviewStatus.ERROR, PreviewStatus.STOPPED}
    ),
    PreviewStatus.READY: frozenset({PreviewStatus.NOT_RUNNING, PreviewStatus.STOPPED}),
    PreviewStatus.ERROR: frozenset({PreviewStatus.STOPPED}),
    PreviewStatus.NOT_RUNNING: frozenset({PreviewStatus.STOPPED}),
    PreviewStatus.STOPPED: frozenset(),
}


def can_transition(current: PreviewStatus, target: PreviewStatus) -> bool:
    """Return True if ``current -> target`` is a legal state change."""
    return target in _TRANSITIONS[current]


def now_ms() -> int:
    """Wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


class SessionKey(NamedTuple):
    """Identifies exactly one artifact instance."""

    task_id: str
    model_id: str

    def __str__(self) -> str:
        return f"{self.task_id}/{self.model_id}"


# ---------------------------------------------------------------------------
# Log buffer
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LogEntry:
    """A single log line: epoch-millis timestamp plus opaque message."""

    ts: int
    msg: str

    def to_dict(self) -> dict[str, Any]:
        return {"ts": self.ts, "msg": self.msg}


class LogBuffer:
    """Append-only, capacity-bounded log with ring-buffer eviction.

    Written from the launcher's reader thread and read from the event loop,
    so every access goes through a lock. Timestamps never go backwards even
    if the wall clock does.
    """

    def __init__(self, capacity: int = 500) -> None:
        if capacity < 1:
            raise ValueError(f"Log capacity must be positive, got {capacity}")
        self.capacity = capacity
        self._entries: deque[LogEntry] = deque(maxlen=capacity)
        self._lock = threading.Lock()
        self._last_ts = 0
        self._appended = 0

    def append(self, msg: str) -> LogEntry:
        with self._lock:
            ts = max(now_ms(), self._last_ts)
            self._last_ts = ts
            entry = LogEntry(ts=ts, msg=msg)
            self._entries.append(entry)
            self._appended += 1
            return entry

    def entries(self) -> list[LogEntry]:
        with self._lock:
            return list(self._entries)

    def tail(self, n: int) -> list[LogEntry]:
        """Return the ``n`` most recent entries, oldest first."""
        if n <= 0:
            return []
        with self._lock:
            return list(self._entries)[-n:]

    def to_list(self) -> list[dict[str, Any]]:
        return [e.to_dict() for e in self.entries()]

    @property
    def total_appended(self) -> int:
        """Number of entries ever appended, including evicted ones."""
        with self._lock:
            return self._appended

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


# ---------------------------------------------------------------------------
# Start command
# ---------------------------------------------------------------------------

PORT_PLACEHOLDER = "{PORT}"
HOST_PLACEHOLDER = "{HOST}"


@dataclass
class StartCommand:
    """A command that serves a dynamic artifact.

    ``argv`` and ``env`` values may contain ``{PORT}`` and ``{HOST}``,
    substituted with the allocated port and the bind host by ``render()``.
    ``setup`` is an optional command run to completion before ``argv`` (e.g.
    dependency installation).
    """

    runtime: str
    argv: list[str]
    env: dict[str, str] = field(default_factory=dict)
    cwd: str = ""
    setup: list[str] | None = None

    def render(self, port: int, host: str = "127.0.0.1") -> tuple[list[str], dict[str, str]]:
        """Return ``(argv, env)`` with the port and host placeholders substituted."""

        def _sub(value: str) -> str:
            return value.replace(PORT_PLACEHOLDER, str(port)).replace(HOST_PLACEHOLDER, host)

        argv = [_sub(a) for a in self.argv]
        env = {k: _sub(v) for k, v in self.env.items()}
        return argv, env

    def display(self) -> str:
        return " ".join(self.argv)


# ---------------------------------------------------------------------------
# Preview session
# ---------------------------------------------------------------------------


@dataclass
class PreviewSession:
    """The live binding between a ``(task_id, model_id)`` key and a preview.

    ``process`` and ``port`` are owned exclusively by this session. The port
    is released only after the process tree has been confirmed dead.
    """

    key: SessionKey
    kind: PreviewKind
    status: PreviewStatus = PreviewStatus.STARTING
    logs: LogBuffer = field(default_factory=LogBuffer)
    url: str | None = None
    port: int | None = None  # allocated port, returned to the pool on teardown
    serving_port: int | None = None  # port the preview actually answers on
    entry: str | None = None  # static entrypoint, relative to the artifact
    command: StartCommand | None = None
    process: subprocess.Popen | None = None
    pid: int | None = None
    error: str | None = None
    exit_code: int | None = None
    created_at: int = field(default_factory=now_ms)
    started_at: int | None = None
    ready_at: int | None = None
    finished_at: int | None = None
    last_heartbeat: int = field(default_factory=now_ms)
    last_client_ts: int | None = None  # newest client send time, ordering only
    monitor_task: asyncio.Task | None = None
    reader_thread: threading.Thread | None = None
    teardown_lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    released: bool = False

    @property
    def task_id(self) -> str:
        return self.key.task_id

    @property
    def model_id(self) -> str:
        return self.key.model_id

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def transition(self, target: PreviewStatus) -> bool:
        """Move to ``target`` if legal. Returns False (no change) otherwise."""
        if not can_transition(self.status, target):
            return False
        self.status = target
        if target is PreviewStatus.READY:
            self.ready_at = now_ms()
        elif target is not PreviewStatus.STARTING and self.finished_at is None:
            self.finished_at = now_ms()
        return True

    def touch(self, at: int | None = None) -> bool:
        """Record a heartbeat at server time.

        ``at`` is the client's own send time. It only orders beats; liveness
        always uses the server clock. Returns False for a beat sent before
        one already seen.
        """
        now = now_ms()
        if now > self.last_heartbeat:
            self.last_heartbeat = now
        if at is None:
            return True
        if self.last_client_ts is not None and at < self.last_client_ts:
            return False
        self.last_client_ts = int(at)
        return True

    def remaining_seconds(
        self, ttl: float, max_lifetime: float = 0, now: int | None = None
    ) -> float | None:
        """Seconds until eviction, or None for sessions the reaper ignores."""
        if not self.is_active:
            return None
        now = now_ms() if now is None else now
        remaining = ttl - (now - self.last_heartbeat) / 1000
        if max_lifetime > 0:
            remaining = min(remaining, max_lifetime - (now - self.created_at) / 1000)
        return round(max(0.0, remaining), 1)

    def snapshot(
        self, ttl: float | None = None, max_lifetime: float = 0
    ) -> dict[str, Any]:
        """JSON-ready view of the session for API callers."""
        data: dict[str, Any] = {
            "taskId": self.task_id,
            "modelId": self.model_id,
            "status": self.status.value,
            "previewKind": self.kind.value,
            "logs": self.logs.to_list(),
            "createdAt": self.created_at,
            "startedAt": self.started_at,
        }
        if self.status is PreviewStatus.READY and self.url:
            data["url"] = self.url
        if self.port is not None:
            data["port"] = self.serving_port or self.port
        if self.error:
            data["error"] = self.error
        if ttl is not None:
            remaining = self.remaining_seconds(ttl, max_lifetime)
            if remaining is not None:
                data["remainingSeconds"] = remaining
        return data
