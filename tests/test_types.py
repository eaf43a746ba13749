"""Tests for previewd._types.

Tests cover:
- Status/kind enum values and string serialization
- State machine transitions
- LogBuffer bound, order and timestamps
- StartCommand port substitution
- PreviewSession heartbeat monotonicity, remaining time and snapshots
"""

import pytest

from previewd._types import (
    LogBuffer,
    PreviewKind,
    PreviewSession,
    PreviewStatus,
    SessionKey,
    StartCommand,
    can_transition,
    now_ms,
)


def _session(kind=PreviewKind.DYNAMIC, **kwargs):
    return PreviewSession(key=SessionKey("task-1", "gpt"), kind=kind, **kwargs)


class TestEnums:
    def test_status_values(self):
        assert {s.value for s in PreviewStatus} == {
            "starting",
            "ready",
            "error",
            "not_running",
            "stopped",
        }

    def test_string_enum(self):
        assert PreviewStatus.READY == "ready"
        assert PreviewKind("static") is PreviewKind.STATIC

    def test_session_key_str(self):
        assert str(SessionKey("t", "m")) == "t/m"


class TestTransitions:
    def test_happy_path(self):
        assert can_transition(PreviewStatus.STARTING, PreviewStatus.READY)
        assert can_transition(PreviewStatus.READY, PreviewStatus.NOT_RUNNING)

    def test_stopped_reachable_from_every_live_state(self):
        for status in PreviewStatus:
            if status is PreviewStatus.STOPPED:
                continue
            assert can_transition(status, PreviewStatus.STOPPED)

    def test_stopped_is_final(self):
        for status in PreviewStatus:
            assert not can_transition(PreviewStatus.STOPPED, status)

    def test_no_resurrection(self):
        assert not can_transition(PreviewStatus.ERROR, PreviewStatus.READY)
        assert not can_transition(PreviewStatus.NOT_RUNNING, PreviewStatus.STARTING)
        assert not can_transition(PreviewStatus.STARTING, PreviewStatus.NOT_RUNNING)

    def test_session_transition_sets_times(self):
        s = _session()
        assert s.transition(PreviewStatus.READY)
        assert s.ready_at is not None
        assert s.finished_at is None
        assert s.transition(PreviewStatus.STOPPED)
        assert s.finished_at is not None

    def test_illegal_transition_is_noop(self):
        s = _session()
        s.transition(PreviewStatus.ERROR)
        assert not s.transition(PreviewStatus.READY)
        assert s.status is PreviewStatus.ERROR


class TestLogBuffer:
    def test_keeps_most_recent_in_order(self):
        buf = LogBuffer(capacity=3)
        for i in range(10):
            buf.append(f"line {i}")
        assert [e.msg for e in buf.entries()] == ["line 7", "line 8", "line 9"]
        assert len(buf) == 3
        assert buf.total_appended == 10

    def test_under_capacity_keeps_everything(self):
        buf = LogBuffer(capacity=5)
        buf.append("a")
        buf.append("b")
        assert [e.msg for e in buf.entries()] == ["a", "b"]

    def test_timestamps_non_decreasing(self):
        buf = LogBuffer()
        for i in range(50):
            buf.append(str(i))
        ts = [e.ts for e in buf.entries()]
        assert ts == sorted(ts)

    def test_to_list_shape(self):
        buf = LogBuffer()
        buf.append("hello")
        (entry,) = buf.to_list()
        assert set(entry) == {"ts", "msg"}
        assert entry["msg"] == "hello"
        assert isinstance(entry["ts"], int)

    def test_tail(self):
        buf = LogBuffer()
        for i in range(5):
            buf.append(str(i))
        assert [e.msg for e in buf.tail(2)] == ["3", "4"]
        assert buf.tail(0) == []

    def test_invalid_capacity(self):
        with pytest.raises(ValueError):
            LogBuffer(capacity=0)


class TestStartCommand:
    def test_render_substitutes_port(self):
        cmd = StartCommand(
            runtime="python",
            argv=["python", "-m", "flask", "run", "--port={PORT}"],
            env={"GRADIO_SERVER_PORT": "{PORT}", "OTHER": "x"},
        )
        argv, env = cmd.render(4123)
        assert argv[-1] == "--port=4123"
        assert env == {"GRADIO_SERVER_PORT": "4123", "OTHER": "x"}
        # The template itself is unchanged
        assert cmd.argv[-1] == "--port={PORT}"

    def test_render_substitutes_host(self):
        cmd = StartCommand(
            runtime="python",
            argv=["python", "manage.py", "runserver", "{HOST}:{PORT}"],
            env={"GRADIO_SERVER_NAME": "{HOST}"},
        )
        argv, env = cmd.render(4123, "127.0.0.2")
        assert argv[-1] == "127.0.0.2:4123"
        assert env == {"GRADIO_SERVER_NAME": "127.0.0.2"}
        assert cmd.render(4123)[0][-1] == "127.0.0.1:4123"

    def test_display(self):
        assert StartCommand(runtime="node", argv=["npm", "run", "dev"]).display() == "npm run dev"


class TestHeartbeat:
    def test_lagging_client_clock_still_refreshes(self):
        s = _session()
        s.last_heartbeat = now_ms() - 10_000
        before = now_ms()
        s.touch(before - 60_000)
        assert s.last_heartbeat >= before

    def test_out_of_order_beat_is_flagged(self):
        s = _session()
        sent = now_ms()
        assert s.touch(sent) is True
        assert s.touch(sent - 5000) is False
        assert s.last_client_ts == sent
        assert s.touch(sent + 10) is True
        assert s.last_client_ts == sent + 10

    def test_never_moves_back(self):
        s = _session()
        s.last_heartbeat = now_ms() + 5000
        ahead = s.last_heartbeat
        s.touch()
        assert s.last_heartbeat == ahead

    def test_future_client_time_does_not_extend_life(self):
        s = _session()
        s.touch(now_ms() + 3_600_000)
        assert s.last_heartbeat <= now_ms()

    def test_touch_without_time_uses_now(self):
        s = _session()
        s.last_heartbeat = 0
        assert s.touch() is True
        assert now_ms() - s.last_heartbeat < 1000
        assert s.last_client_ts is None


class TestRemainingSeconds:
    def test_ttl_countdown(self):
        s = _session()
        now = s.last_heartbeat + 4000
        assert s.remaining_seconds(15, now=now) == 11.0

    def test_never_negative(self):
        s = _session()
        assert s.remaining_seconds(15, now=s.last_heartbeat + 60_000) == 0.0

    def test_lifetime_cap_wins_when_nearer(self):
        s = _session()
        s.created_at = s.last_heartbeat - 55_000
        assert s.remaining_seconds(15, max_lifetime=60, now=s.last_heartbeat) == 5.0

    def test_none_for_terminal_sessions(self):
        s = _session()
        s.transition(PreviewStatus.ERROR)
        assert s.remaining_seconds(15) is None


class TestSnapshot:
    def test_starting_snapshot(self):
        s = _session()
        s.logs.append("booting")
        snap = s.snapshot(ttl=15)
        assert snap["taskId"] == "task-1"
        assert snap["modelId"] == "gpt"
        assert snap["status"] == "starting"
        assert snap["previewKind"] == "dynamic"
        assert snap["logs"][0]["msg"] == "booting"
        assert "url" not in snap
        assert 0 <= snap["remainingSeconds"] <= 15

    def test_url_only_when_ready(self):
        s = _session(url="http://localhost:4000")
        assert "url" not in s.snapshot()
        s.transition(PreviewStatus.READY)
        assert s.snapshot()["url"] == "http://localhost:4000"

    def test_reports_serving_port(self):
        s = _session(port=4000, serving_port=5173)
        assert s.snapshot()["port"] == 5173

    def test_error_snapshot(self):
        s = _session()
        s.transition(PreviewStatus.ERROR)
        s.error = "Process exited with code 1"
        snap = s.snapshot(ttl=15)
        assert snap["status"] == "error"
        assert snap["error"] == "Process exited with code 1"
        assert "remainingSeconds" not in snap
