"""Task/run artifact lookup on disk.

Storage layout:
    {tasks_dir}/
    ├── {task_id}/
    │   ├── {model_id}/            # generated artifact (read-only to previews)
    │   └── {model_id}_preview/    # sandbox copy dynamic previews run from
    └── ...
"""

from __future__ import annotations

import logging
import os
import re
import shutil
from pathlib import Path

logger = logging.getLogger(__name__)

_SANDBOX_SUFFIX = "_preview"
_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")
# Never listed, never copied into a sandbox
_SKIP_DIRS = frozenset({"node_modules", "venv", ".venv", ".git", "__pycache__"})
_MAX_LISTED_FILES = 5000


def list_files(root: Path) -> list[str]:
    """List files under ``root`` as sorted, ``/``-separated relative paths.

    Dependency and VCS folders are skipped. Returns [] if ``root`` is not
    a directory.
    """
    root = Path(root)
    if not root.is_dir():
        return []
    files: list[str] = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if d not in _SKIP_DIRS)
        rel_dir = Path(dirpath).relative_to(root)
        for name in sorted(filenames):
            files.append((rel_dir / name).as_posix())
            if len(files) >= _MAX_LISTED_FILES:
                logger.debug(f"File listing for {root} truncated")
                return sorted(files)
    return sorted(files)


def validate_id(value: str, name: str = "id") -> str:
    """Reject identifiers that could escape the tasks directory."""
    if not isinstance(value, str) or not _ID_PATTERN.match(value) or ".." in value:
        raise ValueError(f"Invalid {name}: {value!r}")
    return value


class TaskWorkspace:
    """Resolves ``(task_id, model_id)`` to artifact directories.

    Args:
        tasks_dir: Root directory holding one folder per task.
    """

    def __init__(self, tasks_dir: Path) -> None:
        self.tasks_dir = Path(tasks_dir)

    def artifact_dir(self, task_id: str, model_id: str) -> Path:
        """Return the artifact directory (may not exist)."""
        validate_id(task_id, "taskId")
        validate_id(model_id, "modelId")
        return self.tasks_dir / task_id / model_id

    def sandbox_dir(self, task_id: str, model_id: str) -> Path:
        return self.artifact_dir(task_id, model_id).with_name(model_id + _SANDBOX_SUFFIX)

    def exists(self, task_id: str, model_id: str) -> bool:
        return self.artifact_dir(task_id, model_id).is_dir()

    def list_files(self, task_id: str, model_id: str) -> list[str]:
        """List artifact files as sorted, ``/``-separated relative paths.

        Dependency and VCS folders are skipped. Returns [] for a missing
        artifact.
        """
        return list_files(self.artifact_dir(task_id, model_id))

    def resolve_file(self, task_id: str, model_id: str, rel_path: str) -> Path | None:
        """Resolve a file inside the artifact, or None if outside/missing."""
        root = self.artifact_dir(task_id, model_id).resolve()
        try:
            target = (root / rel_path).resolve()
        except (OSError, RuntimeError):
            return None
        if target != root and root not in target.parents:
            return None
        if not target.is_file():
            return None
        return target

    def isolate(self, task_id: str, model_id: str) -> Path:
        """Create or re-sync the sandbox copy of an artifact.

        Installed dependencies already in the sandbox are kept, so repeated
        previews of the same artifact skip reinstalling.
        """
        src = self.artifact_dir(task_id, model_id)
        dst = self.sandbox_dir(task_id, model_id)
        ignore = shutil.ignore_patterns(*_SKIP_DIRS)
        if dst.exists():
            logger.debug(f"Syncing sandbox: {dst}")
            _prune_stale(src, dst)
        else:
            logger.info(f"Creating sandbox copy: {dst}")
        shutil.copytree(src, dst, ignore=ignore, dirs_exist_ok=True)
        return dst

    def cleanup_sandbox(self, task_id: str, model_id: str) -> None:
        """Remove the sandbox directory if it exists."""
        sandbox = self.sandbox_dir(task_id, model_id)
        if sandbox.exists():
            shutil.rmtree(sandbox, ignore_errors=True)
            logger.info(f"Cleaned up sandbox: {sandbox}")


def _prune_stale(src: Path, dst: Path) -> None:
    """Delete files in ``dst`` that no longer exist in ``src``."""
    for dirpath, dirnames, filenames in os.walk(dst):
        dirnames[:] = [d for d in dirnames if d not in _SKIP_DIRS]
        rel = Path(dirpath).relative_to(dst)
        for name in filenames:
            if not (src / rel / name).exists():
                try:
                    (Path(dirpath) / name).unlink()
                except OSError:
                    pass
