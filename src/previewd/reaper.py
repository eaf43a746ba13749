"""Heartbeat reaper: evicts sessions nobody is watching.

Runs on a fixed interval, independent of any client's polling cadence.
Each eviction is its own ``registry.stop()`` on its own key, so the sweep
never holds a registry-wide lock and a slow teardown never delays the
others.
"""

from __future__ import annotations

import asyncio
import logging

from previewd._types import PreviewSession, SessionKey, now_ms
from previewd.config import PreviewConfig
from previewd.registry import PreviewSessionRegistry

logger = logging.getLogger(__name__)


class HeartbeatReaper:
    """Periodically stops idle, over-age and stale terminal sessions.

    - starting/ready with no heartbeat for longer than ``heartbeat_ttl``
    - starting/ready older than ``max_session_seconds`` (when set)
    - error/not_running finished more than ``terminal_retention`` ago
    """

    def __init__(self, registry: PreviewSessionRegistry, config: PreviewConfig) -> None:
        self.registry = registry
        self.config = config
        self._task: asyncio.Task | None = None

    def eviction_reason(self, session: PreviewSession, now: int) -> str | None:
        """Return why ``session`` should go at time ``now``, or None to keep it."""
        if session.is_active:
            idle = (now - session.last_heartbeat) / 1000
            if idle > self.config.heartbeat_ttl:
                return f"no heartbeat for {idle:.1f}s"
            limit = self.config.max_session_seconds
            if limit > 0 and (now - session.created_at) / 1000 > limit:
                return f"exceeded maximum lifetime of {limit:g}s"
            return None
        if session.finished_at is not None:
            age = (now - session.finished_at) / 1000
            if age > self.config.terminal_retention:
                return f"{session.status.value} for {age:.0f}s"
        return None

    async def sweep(self, now: int | None = None) -> list[SessionKey]:
        """Run one eviction pass. Returns the keys that were stopped."""
        now = now_ms() if now is None else now
        candidates: list[tuple[PreviewSession, str]] = []
        for session in self.registry.sessions():
            reason = self.eviction_reason(session, now)
            if reason is not None:
                candidates.append((session, reason))
        if not candidates:
            return []

        def _still_due(candidate: PreviewSession):
            # A heartbeat or restart may land between the scan and the stop
            return lambda s: s is candidate and self.eviction_reason(s, now) is not None

        results = await asyncio.gather(
            *(
                self.registry.stop(
                    s.task_id, s.model_id, reason=f"evicted ({reason})", when=_still_due(s)
                )
                for s, reason in candidates
            ),
            return_exceptions=True,
        )
        evicted: list[SessionKey] = []
        for (session, reason), result in zip(candidates, results):
            if isinstance(result, BaseException):
                logger.error(f"Failed to evict {session.key}: {result}")
            elif result:
                logger.info(f"Evicted preview {session.key}: {reason}")
                evicted.append(session.key)
        return evicted

    async def run(self) -> None:
        """Sweep forever, every ``reaper_interval`` seconds."""
        logger.debug(f"Reaper running every {self.config.reaper_interval:g}s")
        while True:
            try:
                await self.sweep()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Reaper sweep failed")
            await asyncio.sleep(self.config.reaper_interval)

    def start(self) -> asyncio.Task:
        """Start ``run()`` as a task on the running loop."""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run(), name="previewd-reaper")
        return self._task

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
