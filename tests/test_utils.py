"""Tests for previewd._utils."""

import os
import subprocess
import sys

from previewd._utils import (
    build_safe_env,
    detached_popen_kwargs,
    get_previewd_dir,
    health_check,
    is_pid_alive,
)


class TestIsPidAlive:
    def test_own_process(self):
        assert is_pid_alive(os.getpid())

    def test_reaped_process_is_dead(self):
        proc = subprocess.Popen([sys.executable, "-c", "pass"])
        proc.wait()
        assert not is_pid_alive(proc.pid)

    def test_unreaped_zombie_counts_as_dead(self):
        if not sys.platform.startswith("linux"):
            return
        proc = subprocess.Popen([sys.executable, "-c", "pass"])
        # Wait for exit without reaping
        os.waitid(os.P_PID, proc.pid, os.WEXITED | os.WNOWAIT)
        try:
            assert not is_pid_alive(proc.pid)
        finally:
            proc.wait()


class TestBuildSafeEnv:
    def test_only_whitelisted_variables(self):
        source = {"PATH": "/bin", "HOME": "/home/u", "AWS_SECRET_ACCESS_KEY": "x"}
        env = build_safe_env(source=source)
        assert env["PATH"] == "/bin"
        assert env["HOME"] == "/home/u"
        assert "AWS_SECRET_ACCESS_KEY" not in env

    def test_extra_wins(self):
        env = build_safe_env({"PORT": "4000", "PATH": "/custom"}, source={"PATH": "/bin"})
        assert env["PORT"] == "4000"
        assert env["PATH"] == "/custom"

    def test_defaults(self):
        env = build_safe_env(source={})
        assert env["PYTHONUNBUFFERED"] == "1"
        assert "LANG" in env


class TestDetachedPopenKwargs:
    def test_new_session_on_posix(self):
        kwargs = detached_popen_kwargs()
        if sys.platform == "win32":
            assert "creationflags" in kwargs
        else:
            assert kwargs == {"start_new_session": True}


class TestGetPreviewdDir:
    def test_env_override(self, tmp_path, monkeypatch):
        monkeypatch.setenv("PREVIEWD_DATA_DIR", str(tmp_path / "custom"))
        assert get_previewd_dir() == tmp_path / "custom"

    def test_walks_up_to_existing_dir(self, tmp_path, monkeypatch):
        monkeypatch.delenv("PREVIEWD_DATA_DIR", raising=False)
        (tmp_path / ".previewd").mkdir()
        nested = tmp_path / "a" / "b"
        nested.mkdir(parents=True)
        monkeypatch.chdir(nested)
        assert get_previewd_dir() == tmp_path / ".previewd"


class TestHealthCheck:
    def test_unreachable_server(self):
        assert health_check("http://127.0.0.1:1") is False
