"""Client side of the preview protocol.

``PreviewClient`` wraps the HTTP API. ``PreviewSubscription`` is the one
polling + heartbeat loop every UI surface uses (single preview, side by
side comparison, anonymized judging): it starts the preview, polls its
status until it settles, keeps it alive with heartbeats, and reports to a
``PreviewView``. Both of its timers are owned by the subscription and are
cancelled by ``close()``.

Example:
    with PreviewClient("http://127.0.0.1:7790") as client:
        with PreviewSubscription(client, "task-1", "gpt", view=MyView()) as sub:
            if sub.wait_ready(timeout=60):
                print(sub.url)
"""

from __future__ import annotations

import contextlib
import logging
import threading
import time
from collections.abc import Iterable, Iterator
from typing import Any

import httpx

from previewd._types import PreviewStatus, now_ms

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0
_TERMINAL = frozenset(
    {PreviewStatus.ERROR.value, PreviewStatus.NOT_RUNNING.value, PreviewStatus.STOPPED.value}
)


class PreviewClientError(RuntimeError):
    """The server rejected a request or could not be reached."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class PreviewClient:
    """Thin synchronous wrapper over the preview HTTP API.

    Args:
        base_url: Server root, e.g. ``http://127.0.0.1:7790``.
        timeout_seconds: Per-request timeout.
        token: Bearer token for privileged endpoints (shutdown).
        http: Pre-built ``httpx.Client`` to use instead of creating one
            (e.g. a Starlette ``TestClient``).
    """

    def __init__(
        self,
        base_url: str = "",
        *,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        token: str | None = None,
        http: httpx.Client | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = token
        self._owns_http = http is None
        self._client = http or httpx.Client(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout_seconds, connect=2.0),
        )

    def _request(self, method: str, path: str, payload: dict[str, Any] | None = None) -> Any:
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else None
        try:
            response = self._client.request(method, path, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            raise PreviewClientError(f"{method} {path} failed: {exc}") from exc
        if not response.is_success:
            try:
                detail = response.json().get("error")
            except (ValueError, AttributeError):
                detail = None
            raise PreviewClientError(
                detail or f"HTTP {response.status_code} for {method} {path}",
                status_code=response.status_code,
            )
        return response.json()

    # --- API ---

    def health(self) -> dict[str, Any]:
        return self._request("GET", "/api/health")

    def project_type(self, task_id: str, model_id: str) -> dict[str, Any]:
        return self._request("GET", f"/api/preview/project/type/{task_id}/{model_id}")

    def start(self, task_id: str, model_id: str, force: bool = False) -> dict[str, Any]:
        payload: dict[str, Any] = {"taskId": task_id, "modelId": model_id}
        if force:
            payload["force"] = True
        return self._request("POST", "/api/preview/start", payload)

    def status(self, task_id: str, model_id: str) -> dict[str, Any]:
        return self._request("GET", f"/api/preview/status/{task_id}/{model_id}")

    def heartbeat(
        self, task_id: str, model_id: str | None = None, ts: int | None = None
    ) -> int:
        """Send a heartbeat. Returns how many sessions the server refreshed."""
        payload: dict[str, Any] = {"taskId": task_id}
        if model_id is not None:
            payload["modelId"] = model_id
        if ts is not None:
            payload["ts"] = ts
        return int(self._request("POST", "/api/preview/heartbeat", payload).get("refreshed", 0))

    def stop(self, task_id: str, model_id: str) -> bool:
        data = self._request(
            "POST", "/api/preview/stop", {"taskId": task_id, "modelId": model_id}
        )
        return bool(data.get("stopped"))

    def sessions(self) -> list[dict[str, Any]]:
        return self._request("GET", "/api/preview/sessions")

    def shutdown(self) -> None:
        self._request("POST", "/api/shutdown", {})

    def close(self) -> None:
        if self._owns_http:
            self._client.close()

    def __enter__(self) -> PreviewClient:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()


class PreviewView:
    """Callbacks for the UI surface a subscription drives.

    Subclass and override what the surface needs; the defaults do nothing.
    Callbacks run on the subscription's polling thread.
    """

    def on_update(self, label: str, snapshot: dict[str, Any]) -> None:
        """Called with every status snapshot received."""

    def on_ready(self, label: str, url: str) -> None:
        """Called once, when the preview first becomes ready."""

    def on_failure(self, label: str, snapshot: dict[str, Any], reason: str) -> None:
        """Called once, when the preview fails or the subscription gives up."""


class PreviewSubscription:
    """One UI surface's subscription to one preview.

    Starts the preview, then runs two timers until ``close()``: a status
    poll and a heartbeat. The view always reaches either ``on_ready`` or
    ``on_failure``; a preview that never settles is failed client-side
    after ``timeout`` seconds, and an unreachable server after
    ``max_errors`` consecutive transport errors.

    Args:
        client: API client.
        task_id: Task identifier.
        model_id: Run/model identifier.
        view: Callbacks to drive (default: no-op ``PreviewView``).
        label: Name passed to the view (default: ``model_id``). The judging
            surface uses this to show "A"/"B" instead of model ids.
        poll_interval: Seconds between status polls.
        heartbeat_interval: Seconds between heartbeats; must be well under
            the server's heartbeat TTL.
        timeout: Seconds to wait for ``ready`` before failing.
        max_errors: Consecutive request failures tolerated.
        force: Ask the server for a fresh process even if one is running.
        stop_on_close: Stop the preview on ``close()`` instead of letting
            the reaper evict it once heartbeats cease.
    """

    def __init__(
        self,
        client: PreviewClient,
        task_id: str,
        model_id: str,
        view: PreviewView | None = None,
        *,
        label: str | None = None,
        poll_interval: float = 1.0,
        heartbeat_interval: float = 3.0,
        timeout: float = 130.0,
        max_errors: int = 5,
        force: bool = False,
        stop_on_close: bool = False,
    ) -> None:
        self.client = client
        self.task_id = task_id
        self.model_id = model_id
        self.view = view or PreviewView()
        self.label = label or model_id
        self.poll_interval = poll_interval
        self.heartbeat_interval = heartbeat_interval
        self.timeout = timeout
        self.max_errors = max_errors
        self.force = force
        self.stop_on_close = stop_on_close

        self.snapshot: dict[str, Any] = {}
        self.failure: str | None = None
        self._ready_fired = False
        self._errors = 0
        self._started_at = 0.0
        self._lock = threading.Lock()
        self._closed = threading.Event()
        self._settled = threading.Event()
        self._poll_thread: threading.Thread | None = None
        self._heartbeat_thread: threading.Thread | None = None

    # --- State ---

    @property
    def status(self) -> str | None:
        return self.snapshot.get("status")

    @property
    def url(self) -> str | None:
        return self.snapshot.get("url")

    @property
    def ready(self) -> bool:
        return self._ready_fired and self.failure is None

    @property
    def failed(self) -> bool:
        return self.failure is not None

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    # --- Lifecycle ---

    def open(self) -> PreviewSubscription:
        """Start the preview and the poll/heartbeat timers."""
        if self._poll_thread is not None:
            return self
        self._started_at = time.monotonic()
        try:
            snapshot = self.client.start(self.task_id, self.model_id, force=self.force)
        except PreviewClientError as e:
            self._fail({}, f"Failed to start preview: {e}")
            return self
        self._handle(snapshot)
        if self.failed:
            return self

        self._beat()
        name = f"{self.task_id}/{self.model_id}"
        self._poll_thread = threading.Thread(
            target=self._poll_loop, name=f"previewd-poll-{name}", daemon=True
        )
        self._heartbeat_thread = threading.Thread(
            target=self._heartbeat_loop, name=f"previewd-heartbeat-{name}", daemon=True
        )
        self._poll_thread.start()
        self._heartbeat_thread.start()
        return self

    def close(self) -> None:
        """Cancel both timers; optionally stop the preview. Idempotent."""
        if self._closed.is_set():
            return
        self._closed.set()
        self._settled.set()
        current = threading.current_thread()
        for thread in (self._poll_thread, self._heartbeat_thread):
            if thread is not None and thread is not current:
                thread.join(timeout=max(self.poll_interval, self.heartbeat_interval) + 1)
        if self.stop_on_close:
            try:
                self.client.stop(self.task_id, self.model_id)
            except PreviewClientError as e:
                logger.debug(f"Stop on close failed for {self.label}: {e}")

    def wait_ready(self, timeout: float | None = None) -> bool:
        """Block until the preview is ready or has failed. Returns ``ready``."""
        self._settled.wait(timeout)
        return self.ready

    def __enter__(self) -> PreviewSubscription:
        return self.open()

    def __exit__(self, *_: object) -> None:
        self.close()

    # --- Timers ---

    def _poll_loop(self) -> None:
        while not self._closed.wait(self.poll_interval):
            if self.failed:
                return
            try:
                snapshot = self.client.status(self.task_id, self.model_id)
            except PreviewClientError as e:
                self._errors += 1
                logger.debug(f"Status poll failed for {self.label} ({self._errors}): {e}")
                if self._errors >= self.max_errors:
                    self._fail(self.snapshot, f"Preview server unreachable: {e}")
                    return
                self._check_timeout()
                continue
            self._errors = 0
            self._handle(snapshot)
            if self.failed:
                return

    def _heartbeat_loop(self) -> None:
        while not self._closed.wait(self.heartbeat_interval):
            if self.failed:
                return
            self._beat()

    def _beat(self) -> None:
        try:
            self.client.heartbeat(self.task_id, self.model_id, ts=now_ms())
        except PreviewClientError as e:
            logger.debug(f"Heartbeat failed for {self.label}: {e}")

    # --- State machine ---

    def _handle(self, snapshot: dict[str, Any]) -> None:
        with self._lock:
            if self._closed.is_set() or self.failed:
                return
            self.snapshot = snapshot
        self.view.on_update(self.label, snapshot)

        status = snapshot.get("status")
        if status == PreviewStatus.READY.value:
            if not self._ready_fired:
                self._ready_fired = True
                self._settled.set()
                self.view.on_ready(self.label, snapshot.get("url") or "")
            return
        if status in _TERMINAL:
            reason = snapshot.get("error") or f"Preview {status}"
            self._fail(snapshot, reason)
            return
        self._check_timeout()

    def _check_timeout(self) -> None:
        if self._ready_fired or self.failed:
            return
        if time.monotonic() - self._started_at > self.timeout:
            self._fail(self.snapshot, f"Preview did not become ready within {self.timeout:g}s")

    def _fail(self, snapshot: dict[str, Any], reason: str) -> None:
        with self._lock:
            if self.failure is not None:
                return
            self.failure = reason
        self._settled.set()
        logger.debug(f"Preview {self.label} failed: {reason}")
        self.view.on_failure(self.label, snapshot, reason)


@contextlib.contextmanager
def watch_many(
    client: PreviewClient,
    targets: Iterable[tuple[str, str] | tuple[str, str, str]],
    view: PreviewView | None = None,
    **kwargs: Any,
) -> Iterator[list[PreviewSubscription]]:
    """Open one subscription per ``(task_id, model_id[, label])`` target.

    Used by the comparison and judging surfaces. Every subscription is
    closed on exit, including when opening a later one raises.
    """
    subs: list[PreviewSubscription] = []
    try:
        for target in targets:
            task_id, model_id, *rest = target
            sub = PreviewSubscription(
                client, task_id, model_id, view, label=rest[0] if rest else None, **kwargs
            )
            subs.append(sub)
            sub.open()
        yield subs
    finally:
        for sub in subs:
            sub.close()
