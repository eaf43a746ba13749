"""Configuration for the preview orchestrator.

Settings resolve in three layers: built-in defaults, then
``{data_dir}/config.json``, then ``PREVIEWD_*`` environment variables.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Mapping

from previewd._utils import get_previewd_dir

logger = logging.getLogger(__name__)

_CONFIG_FILENAME = "config.json"

# field name -> environment variable
_ENV_VARS: dict[str, str] = {
    "tasks_dir": "PREVIEWD_TASKS_DIR",
    "host": "PREVIEWD_HOST",
    "public_host": "PREVIEWD_PUBLIC_HOST",
    "port_start": "PREVIEWD_PORT_START",
    "port_end": "PREVIEWD_PORT_END",
    "heartbeat_ttl": "PREVIEWD_HEARTBEAT_TTL",
    "heartbeat_interval": "PREVIEWD_HEARTBEAT_INTERVAL",
    "reaper_interval": "PREVIEWD_REAPER_INTERVAL",
    "startup_timeout": "PREVIEWD_STARTUP_TIMEOUT",
    "max_session_seconds": "PREVIEWD_MAX_SESSION_SECONDS",
    "terminal_retention": "PREVIEWD_TERMINAL_RETENTION",
    "log_capacity": "PREVIEWD_LOG_CAPACITY",
    "kill_grace": "PREVIEWD_KILL_GRACE",
    "isolate": "PREVIEWD_ISOLATE",
    "install_dependencies": "PREVIEWD_INSTALL_DEPS",
}

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    s = str(value).strip().lower()
    if s in _TRUE:
        return True
    if s in _FALSE:
        return False
    raise ValueError(f"Invalid boolean value: {value!r}")


@dataclass
class PreviewConfig:
    """Runtime settings for the registry, launcher and reaper.

    All durations are in seconds.
    """

    tasks_dir: Path = field(default_factory=lambda: get_previewd_dir() / "tasks")
    host: str = "127.0.0.1"
    public_host: str = "localhost"
    port_start: int = 4000
    port_end: int = 10000
    heartbeat_ttl: float = 15.0
    heartbeat_interval: float = 3.0
    reaper_interval: float = 1.0
    startup_timeout: float = 120.0
    max_session_seconds: float = 0.0
    terminal_retention: float = 300.0
    log_capacity: int = 500
    kill_grace: float = 2.0
    isolate: bool = True
    install_dependencies: bool = True
    # Readiness polling backoff
    ready_poll_initial: float = 0.25
    ready_poll_max: float = 2.0
    # Crash detection cadence for ready sessions
    liveness_interval: float = 1.0
    liveness_failures: int = 3

    def __post_init__(self) -> None:
        self.tasks_dir = Path(self.tasks_dir)
        if not (0 < self.port_start <= self.port_end <= 65535):
            raise ValueError(
                f"Invalid port range {self.port_start}-{self.port_end}"
            )
        if self.heartbeat_interval <= 0:
            raise ValueError("heartbeat_interval must be positive")
        if self.heartbeat_ttl <= self.heartbeat_interval:
            raise ValueError(
                f"heartbeat_ttl ({self.heartbeat_ttl}s) must be larger than "
                f"heartbeat_interval ({self.heartbeat_interval}s)"
            )
        for name in ("reaper_interval", "startup_timeout", "ready_poll_initial",
                     "ready_poll_max", "liveness_interval"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        if self.max_session_seconds < 0 or self.terminal_retention < 0:
            raise ValueError("Durations must not be negative")
        if self.kill_grace < 0:
            raise ValueError("kill_grace must not be negative")
        if self.log_capacity < 1:
            raise ValueError("log_capacity must be positive")
        if self.liveness_failures < 1:
            raise ValueError("liveness_failures must be positive")

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["tasks_dir"] = str(self.tasks_dir)
        return data


def _coerce(name: str, raw: Any) -> Any:
    """Convert a raw JSON/env value to the type of field ``name``."""
    default = {f.name: f for f in fields(PreviewConfig)}[name]
    kind = default.type
    if kind == "bool":
        return _parse_bool(raw)
    if kind == "int":
        return int(raw)
    if kind == "float":
        return float(raw)
    if kind == "Path":
        return Path(raw)
    return str(raw)


def load_config(
    data_dir: Path | None = None,
    env: Mapping[str, str] | None = None,
    **overrides: Any,
) -> PreviewConfig:
    """Build a ``PreviewConfig`` from defaults, config.json and environment.

    Args:
        data_dir: Directory holding ``config.json`` (default: the previewd dir).
        env: Environment mapping (default: ``os.environ``).
        **overrides: Explicit values that win over every other layer.

    Raises:
        ValueError: If a value cannot be parsed or the result is invalid.
    """
    env = os.environ if env is None else env
    data_dir = get_previewd_dir() if data_dir is None else Path(data_dir)
    known = {f.name for f in fields(PreviewConfig)}
    values: dict[str, Any] = {"tasks_dir": data_dir / "tasks"}

    config_path = data_dir / _CONFIG_FILENAME
    if config_path.exists():
        try:
            file_values = json.loads(config_path.read_text())
        except (json.JSONDecodeError, OSError) as e:
            raise ValueError(f"Unreadable config file {config_path}: {e}") from e
        if not isinstance(file_values, dict):
            raise ValueError(f"Config file {config_path} must hold a JSON object")
        for name, raw in file_values.items():
            if name not in known:
                logger.warning(f"Ignoring unknown config key {name!r} in {config_path}")
                continue
            values[name] = _coerce(name, raw)

    for name, var in _ENV_VARS.items():
        raw = env.get(var)
        if raw is None or raw == "":
            continue
        try:
            values[name] = _coerce(name, raw)
        except ValueError as e:
            raise ValueError(f"Invalid value for {var}: {raw!r}") from e

    values.update(overrides)
    return PreviewConfig(**values)
