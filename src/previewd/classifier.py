"""Artifact classification: static, dynamic, or not previewable.

``classify()`` is a pure function of the artifact's file list (relative,
``/``-separated paths). ``detect_start_command()`` reads manifests on disk
to decide how a dynamic artifact is served.
"""

from __future__ import annotations

import json
import logging
import shutil
from collections.abc import Iterable
from pathlib import Path

from previewd._types import HOST_PLACEHOLDER, PORT_PLACEHOLDER, PreviewKind, StartCommand

logger = logging.getLogger(__name__)

_HTML_SUFFIXES = (".html", ".htm")
_ROOT_MANIFESTS = frozenset({"package.json", "pom.xml", "manage.py"})
# subfolder -> manifests that make it the project root
_NESTED_MANIFESTS: dict[str, tuple[str, ...]] = {
    "server": ("package.json",),
    "web": ("package.json",),
    "frontend": ("package.json",),
    "backend": ("package.json", "pom.xml"),
}
_SERVER_ENTRIES = frozenset({"server.js", "server.py"})
_NODE_ENTRIES = ("server.js", "app.js", "index.js", "main.js")
_PYTHON_ENTRIES = ("app.py", "main.py", "server.py", "web.py")
_NPM_SCRIPTS = ("start", "dev", "server")


def _normalize(files: Iterable[str]) -> set[str]:
    out: set[str] = set()
    for f in files:
        p = str(f).replace("\\", "/").strip("/")
        if p.startswith("./"):
            p = p[2:]
        if p:
            out.add(p)
    return out


def _root_files(files: set[str]) -> set[str]:
    return {f for f in files if "/" not in f}


def project_root(files: Iterable[str]) -> str | None:
    """Return the folder holding the runnable project, "" for the root.

    Returns None when the artifact has no server manifest.
    """
    normalized = _normalize(files)
    root = {f.lower() for f in _root_files(normalized)}
    if root & _ROOT_MANIFESTS or root & _SERVER_ENTRIES:
        return ""
    if "requirements.txt" in root and any(f.endswith(".py") for f in root):
        return ""
    lowered = {f.lower() for f in normalized}
    for folder, manifests in _NESTED_MANIFESTS.items():
        if any(f"{folder}/{m}" in lowered for m in manifests):
            return folder
    if not any(f.endswith(_HTML_SUFFIXES) for f in root):
        # A bare Node entrypoint with nothing to serve statically
        if root & set(_NODE_ENTRIES):
            return ""
    return None


def static_entry(files: Iterable[str]) -> str | None:
    """Return the root-level HTML entrypoint, preferring index.html."""
    html = sorted(
        f for f in _root_files(_normalize(files)) if f.lower().endswith(_HTML_SUFFIXES)
    )
    if not html:
        return None
    for f in html:
        if f.lower() in ("index.html", "index.htm"):
            return f
    return html[0]


def classify(files: Iterable[str]) -> PreviewKind:
    """Decide how an artifact can be previewed.

    - ``dynamic``: a runnable project manifest or server entrypoint exists
    - ``static``: a root-level HTML entrypoint and no server manifest
    - ``none``: anything else

    Deterministic: the same file list always gives the same answer,
    regardless of order or duplicates.
    """
    files = list(files)
    if project_root(files) is not None:
        return PreviewKind.DYNAMIC
    if static_entry(files) is not None:
        return PreviewKind.STATIC
    return PreviewKind.NONE


# ---------------------------------------------------------------------------
# Start command detection
# ---------------------------------------------------------------------------


def _read_package_json(path: Path) -> dict | None:
    try:
        data = json.loads(path.read_text())
    except (OSError, json.JSONDecodeError, UnicodeDecodeError) as e:
        logger.warning(f"Failed to parse {path}: {e}")
        return None
    return data if isinstance(data, dict) else None


def _node_command(project_dir: Path, install: bool) -> StartCommand | None:
    pkg_path = project_dir / "package.json"
    if pkg_path.exists():
        pkg = _read_package_json(pkg_path) or {}
        scripts = pkg.get("scripts") or {}
        has_deps = bool(pkg.get("dependencies") or pkg.get("devDependencies"))
        setup = None
        if install and has_deps and not (project_dir / "node_modules").exists():
            setup = ["npm", "install", "--no-audit", "--no-fund"]
        if isinstance(scripts, dict):
            for name in _NPM_SCRIPTS:
                if scripts.get(name):
                    return StartCommand(
                        runtime="node", argv=["npm", "run", name], setup=setup
                    )
        for entry in _NODE_ENTRIES:
            if (project_dir / entry).exists():
                return StartCommand(runtime="node", argv=["node", entry], setup=setup)
        main = pkg.get("main")
        if isinstance(main, str) and (project_dir / main).is_file():
            return StartCommand(runtime="node", argv=["node", main], setup=setup)
        return None
    for entry in _NODE_ENTRIES:
        if (project_dir / entry).exists():
            return StartCommand(runtime="node", argv=["node", entry])
    return None


def _python_interpreter(project_dir: Path) -> str:
    for venv in ("venv", ".venv"):
        candidate = project_dir / venv / "bin" / "python"
        if candidate.exists():
            return str(candidate)
    return shutil.which("python3") or shutil.which("python") or "python3"


def _python_command(project_dir: Path) -> StartCommand | None:
    try:
        py_files = sorted(
            p.name for p in project_dir.iterdir() if p.is_file() and p.suffix == ".py"
        )
    except OSError:
        return None
    if not py_files:
        return None
    main_py = next((f for f in py_files if f.lower() in _PYTHON_ENTRIES), py_files[0])

    frameworks: set[str] = set()
    requirements = project_dir / "requirements.txt"
    if requirements.exists():
        try:
            text = requirements.read_text().lower()
        except (OSError, UnicodeDecodeError):
            text = ""
        frameworks = {fw for fw in ("streamlit", "gradio", "flask", "django") if fw in text}
    if not frameworks:
        try:
            source = (project_dir / main_py).read_text().lower()
        except (OSError, UnicodeDecodeError):
            source = ""
        frameworks = {
            fw
            for fw in ("streamlit", "gradio", "flask", "django")
            if f"import {fw}" in source or f"from {fw}" in source
        }

    python = _python_interpreter(project_dir)
    if "streamlit" in frameworks:
        return StartCommand(
            runtime="python",
            argv=[python, "-m", "streamlit", "run", main_py,
                  "--server.address", HOST_PLACEHOLDER, "--server.port", PORT_PLACEHOLDER,
                  "--server.headless", "true"],
        )
    if "flask" in frameworks:
        return StartCommand(
            runtime="python",
            argv=[python, "-m", "flask", "run", f"--host={HOST_PLACEHOLDER}", f"--port={PORT_PLACEHOLDER}"],
            env={"FLASK_APP": main_py},
        )
    if "gradio" in frameworks:
        return StartCommand(
            runtime="python",
            argv=[python, main_py],
            env={"GRADIO_SERVER_PORT": PORT_PLACEHOLDER, "GRADIO_SERVER_NAME": HOST_PLACEHOLDER},
        )
    if "django" in frameworks and (project_dir / "manage.py").exists():
        return StartCommand(
            runtime="python",
            argv=[python, "manage.py", "runserver", f"{HOST_PLACEHOLDER}:{PORT_PLACEHOLDER}"],
        )
    return StartCommand(runtime="python", argv=[python, main_py])


def detect_start_command(project_dir: Path, install: bool = True) -> StartCommand | None:
    """Work out how to serve the project in ``project_dir``.

    Node takes precedence (package.json scripts, then common entrypoints),
    then Python (framework-specific runners, then a plain script), then
    Maven. Returns None when nothing runnable is found.

    Args:
        project_dir: Directory holding the project manifest.
        install: Add an ``npm install`` setup step when dependencies are
            declared but ``node_modules`` is missing.
    """
    project_dir = Path(project_dir)
    if not project_dir.is_dir():
        return None
    cmd = _node_command(project_dir, install)
    if cmd is None:
        cmd = _python_command(project_dir)
    if cmd is None and (project_dir / "pom.xml").exists():
        cmd = StartCommand(
            runtime="java",
            argv=["mvn", "spring-boot:run", f"-Dserver.port={PORT_PLACEHOLDER}"],
        )
    return cmd


def artifact_type(files: Iterable[str]) -> str:
    """Coarse project type label for the UI: node, java, python, html or unknown."""
    normalized = _normalize(files)
    lowered = {f.lower() for f in normalized}
    root = project_root(normalized)
    if root is not None:
        prefix = f"{root}/" if root else ""
        if f"{prefix}package.json" in lowered or any(
            f"{prefix}{e}" in lowered for e in _NODE_ENTRIES
        ):
            return "node"
        if f"{prefix}pom.xml" in lowered:
            return "java"
        return "python"
    if static_entry(normalized) is not None:
        return "html"
    return "unknown"

