"""Session registry: one live preview per ``(task_id, model_id)``.

All mutations for a key run under that key's ``asyncio.Lock``, so the
check-and-insert in ``start()`` is atomic and two concurrent starts never
spawn two processes. Keys are independent: a slow spawn or teardown for
one key never blocks calls for another.

Everything here runs on the server's event loop; blocking filesystem work
(listing artifact files) is pushed to the default executor.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any

from previewd._types import (
    LogBuffer,
    PreviewKind,
    PreviewSession,
    PreviewStatus,
    SessionKey,
)
from previewd.classifier import artifact_type, classify, project_root, static_entry
from previewd.config import PreviewConfig
from previewd.launcher import PreviewLauncher
from previewd.workspace import TaskWorkspace, validate_id

logger = logging.getLogger(__name__)


def _make_key(task_id: str, model_id: str) -> SessionKey:
    return SessionKey(validate_id(task_id, "taskId"), validate_id(model_id, "modelId"))


class PreviewSessionRegistry:
    """Owns every preview session and serializes mutations per key.

    Args:
        config: Runtime settings (TTL, log capacity, ...).
        launcher: Starts and tears down preview processes.
        workspace: Resolves artifact directories and file lists.
    """

    def __init__(
        self,
        config: PreviewConfig,
        launcher: PreviewLauncher,
        workspace: TaskWorkspace,
    ) -> None:
        self.config = config
        self.launcher = launcher
        self.workspace = workspace
        self._sessions: dict[SessionKey, PreviewSession] = {}
        self._locks: dict[SessionKey, asyncio.Lock] = {}

    def _lock_for(self, key: SessionKey) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    def _snapshot(self, session: PreviewSession) -> dict[str, Any]:
        return session.snapshot(
            ttl=self.config.heartbeat_ttl,
            max_lifetime=self.config.max_session_seconds,
        )

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, key: object) -> bool:
        return key in self._sessions

    def get(self, task_id: str, model_id: str) -> PreviewSession | None:
        return self._sessions.get(_make_key(task_id, model_id))

    def sessions(self) -> list[PreviewSession]:
        """Return the current sessions (a copy, safe to iterate while mutating)."""
        return list(self._sessions.values())

    # --- Operations ---

    async def start(
        self, task_id: str, model_id: str, force: bool = False
    ) -> dict[str, Any]:
        """Start a preview, or return the live one for this key.

        Returns immediately with the session's current state; dynamic
        previews are usually still ``starting`` and the caller polls
        ``status()``.

        Args:
            task_id: Task identifier.
            model_id: Run/model identifier within the task.
            force: Kill and respawn even if a session is starting or ready.

        Raises:
            ValueError: If either identifier is malformed.
        """
        key = _make_key(task_id, model_id)
        async with self._lock_for(key):
            existing = self._sessions.get(key)
            if existing is not None and existing.is_active and not force:
                return self._snapshot(existing)
            if existing is not None:
                reason = "forced restart" if existing.is_active else "restart"
                await self._teardown(existing, reason)
                self._sessions.pop(key, None)

            loop = asyncio.get_running_loop()
            files = await loop.run_in_executor(
                None, self.workspace.list_files, task_id, model_id
            )
            kind = classify(files)
            if kind is PreviewKind.NONE:
                return self._not_previewable(key, bool(files))

            session = PreviewSession(
                key=key, kind=kind, logs=LogBuffer(self.config.log_capacity)
            )
            self._sessions[key] = session
            logger.info(f"Starting {kind.value} preview for {key}")
            if kind is PreviewKind.STATIC:
                self.launcher.serve_static(session, static_entry(files))
            else:
                self.launcher.launch(session, project_root(files) or "")
            return self._snapshot(session)

    def _not_previewable(self, key: SessionKey, has_files: bool) -> dict[str, Any]:
        """Error payload for an artifact that gets no session at all."""
        if has_files:
            msg = "Artifact is not previewable: no HTML entrypoint or server manifest found"
        else:
            msg = f"No artifact files found for {key}"
        logger.info(f"Not starting preview for {key}: {msg}")
        logs = LogBuffer(1)
        logs.append(msg)
        return {
            "taskId": key.task_id,
            "modelId": key.model_id,
            "status": PreviewStatus.ERROR.value,
            "previewKind": PreviewKind.NONE.value,
            "logs": logs.to_list(),
            "error": msg,
        }

    def status(self, task_id: str, model_id: str) -> dict[str, Any] | None:
        """Return the session snapshot, or None if no session exists. Read-only."""
        session = self._sessions.get(_make_key(task_id, model_id))
        if session is None:
            return None
        return self._snapshot(session)

    def heartbeat(
        self, task_id: str, model_id: str | None = None, at: int | None = None
    ) -> int:
        """Extend the life of one session, or of every session of a task.

        Unknown keys are a no-op. Every beat refreshes at server time. ``at``
        (epoch millis, the client's send time) only flags out-of-order beats.

        Returns:
            Number of sessions refreshed.
        """
        validate_id(task_id, "taskId")
        if model_id is not None:
            session = self._sessions.get(_make_key(task_id, model_id))
            targets = [session] if session is not None else []
        else:
            targets = [s for s in self._sessions.values() if s.task_id == task_id]
        for session in targets:
            if not session.touch(at):
                logger.debug(f"Out-of-order heartbeat for {session.key}")
        return len(targets)

    async def stop(
        self,
        task_id: str,
        model_id: str,
        reason: str = "stopped by request",
        when: Callable[[PreviewSession], bool] | None = None,
    ) -> bool:
        """Stop the session, kill its process tree, and forget it.

        Idempotent: stopping an unknown key is a no-op.

        Args:
            reason: Recorded in the session log and the server log.
            when: Optional predicate re-checked under the key lock; the stop
                only happens if it returns True for the current session.

        Returns:
            True if a session was stopped.
        """
        key = _make_key(task_id, model_id)
        async with self._lock_for(key):
            session = self._sessions.get(key)
            if session is None:
                return False
            if when is not None and not when(session):
                return False
            await self._teardown(session, reason)
            if self._sessions.get(key) is session:
                del self._sessions[key]
            return True

    async def _teardown(self, session: PreviewSession, reason: str) -> None:
        was = session.status
        if session.transition(PreviewStatus.STOPPED):
            session.logs.append(f"Preview stopped: {reason}")
        await self.launcher.release(session)
        logger.info(f"Stopped preview {session.key} ({was.value}): {reason}")

    def list_sessions(self) -> list[dict[str, Any]]:
        """Snapshots of every session, oldest first."""
        ordered = sorted(self._sessions.values(), key=lambda s: s.created_at)
        return [self._snapshot(s) for s in ordered]

    async def stop_all(self, reason: str = "server shutdown") -> int:
        """Stop every session concurrently. Returns how many were stopped."""
        keys = list(self._sessions)
        if not keys:
            return 0
        results = await asyncio.gather(
            *(self.stop(k.task_id, k.model_id, reason=reason) for k in keys),
            return_exceptions=True,
        )
        stopped = 0
        for key, result in zip(keys, results):
            if isinstance(result, BaseException):
                logger.error(f"Failed to stop {key}: {result}")
            elif result:
                stopped += 1
        return stopped

    # --- Artifact info ---

    def project_type(self, task_id: str, model_id: str) -> dict[str, Any]:
        """Describe how an artifact would be previewed (blocking)."""
        files = self.workspace.list_files(task_id, model_id)
        kind = classify(files)
        return {
            "taskId": task_id,
            "modelId": model_id,
            "type": artifact_type(files),
            "previewKind": kind.value,
            "previewable": kind is not PreviewKind.NONE,
            "entry": static_entry(files),
        }
