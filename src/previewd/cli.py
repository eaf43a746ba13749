"""Standalone previewd CLI.

Usage:
    previewd serve    [--port PORT]
    previewd start    [--port PORT]
    previewd restart  [--port PORT]
    previewd stop
    previewd status
    previewd sessions
    previewd classify PATH
    previewd watch TASK MODEL [--force] [--stop] [--timeout SECONDS]
"""

from __future__ import annotations

import time
from pathlib import Path
from typing import Any

import typer
from rich.console import Console
from rich.table import Table

from previewd import DEFAULT_PORT

app = typer.Typer(
    name="previewd",
    help="Manage the preview server and live previews of generated artifacts.",
    no_args_is_help=True,
)
console = Console()

_STATUS_STYLES = {
    "starting": "yellow",
    "ready": "green",
    "error": "red",
    "not_running": "red",
    "stopped": "dim",
}


def _info(msg: str) -> None:
    console.print(f"[dim]>[/dim] {msg}")


def _success(msg: str) -> None:
    console.print(f"[green]✓[/green] {msg}")


def _error(msg: str) -> None:
    console.print(f"[red]✗[/red] {msg}")


def _styled(status: str) -> str:
    style = _STATUS_STYLES.get(status, "white")
    return f"[{style}]{status}[/{style}]"


@app.command()
def serve(
    port: int = typer.Option(DEFAULT_PORT, "--port", "-p", help="Port to bind to."),
) -> None:
    """Run the preview server in the foreground (blocks)."""
    from previewd.server import _run_standalone

    _info(f"Starting previewd server on port {port}...")
    _run_standalone(port=port)


@app.command()
def start(
    port: int = typer.Option(DEFAULT_PORT, "--port", "-p", help="Port to bind to."),
) -> None:
    """Start the preview server in the background."""
    from previewd import server_status

    info = server_status()
    if info:
        _info(
            f"Server already running (pid={info.get('pid')}, "
            f"port={info.get('port')}, url={info.get('url')})"
        )
        return
    _start_background(port)


@app.command()
def restart(
    port: int = typer.Option(DEFAULT_PORT, "--port", "-p", help="Port to bind to."),
) -> None:
    """Stop the running server (and its previews) and start a fresh one."""
    from previewd import server_status, stop_server

    info = server_status()
    if info:
        _info(f"Stopping server (pid={info.get('pid')}, port={info.get('port')})...")
        if stop_server():
            _success("Server stopped.")
        else:
            _error("Failed to stop server. Try killing the process manually.")
            raise typer.Exit(1)
    else:
        _info("No running server found; starting fresh.")
    _start_background(port)


@app.command()
def stop() -> None:
    """Stop the running preview server and every live preview."""
    from previewd import stop_server

    if stop_server():
        _success("Server stopped.")
    else:
        _info("No running server found.")


@app.command()
def status() -> None:
    """Show status of the preview server."""
    from previewd import server_status

    info = server_status()
    if info:
        _success("Server is running")
        console.print(f"  [bold]URL:[/bold]        {info.get('url')}")
        console.print(f"  [bold]PID:[/bold]        {info.get('pid')}")
        console.print(f"  [bold]Port:[/bold]       {info.get('port')}")
        console.print(f"  [bold]Session:[/bold]    {info.get('session_id')}")
        console.print(f"  [bold]Tasks:[/bold]      {info.get('tasks_dir')}")
        console.print(f"  [bold]Started:[/bold]    {info.get('started_at')}")
    else:
        _info("No running server found.")


@app.command()
def sessions() -> None:
    """List live preview sessions."""
    from previewd import PreviewClient, PreviewClientError, server_status

    info = server_status()
    if not info:
        _info("No running server found.")
        return
    try:
        with PreviewClient(info["api_url"]) as client:
            result = client.sessions()
    except PreviewClientError as e:
        _error(f"Could not list sessions: {e}")
        raise typer.Exit(1)

    if not result:
        _info("No preview sessions.")
        return

    table = Table(title=f"Sessions ({len(result)})")
    table.add_column("Task")
    table.add_column("Model")
    table.add_column("Kind")
    table.add_column("Status")
    table.add_column("URL")
    table.add_column("TTL", justify="right")
    for s in result:
        remaining = s.get("remainingSeconds")
        table.add_row(
            s.get("taskId", "?"),
            s.get("modelId", "?"),
            s.get("previewKind", "?"),
            _styled(s.get("status", "?")),
            s.get("url") or "",
            f"{remaining:.0f}s" if remaining is not None else "",
        )
    console.print(table)


@app.command()
def classify(
    path: Path = typer.Argument(
        ..., exists=True, file_okay=False, dir_okay=True, help="Artifact directory."
    ),
) -> None:
    """Show how an artifact directory would be previewed."""
    from previewd.classifier import (
        artifact_type,
        classify as do_classify,
        detect_start_command,
        project_root,
        static_entry,
    )
    from previewd.workspace import list_files

    files = list_files(path)
    kind = do_classify(files)
    console.print(f"  [bold]Kind:[/bold]       {kind.value}")
    console.print(f"  [bold]Type:[/bold]       {artifact_type(files)}")
    if kind.value == "static":
        console.print(f"  [bold]Entry:[/bold]      {static_entry(files)}")
    elif kind.value == "dynamic":
        root = project_root(files) or ""
        cmd = detect_start_command(path / root if root else path, install=True)
        console.print(f"  [bold]Root:[/bold]       {root or '.'}")
        if cmd is None:
            console.print("  [bold]Command:[/bold]    [red]unable to determine[/red]")
        else:
            if cmd.setup:
                console.print(f"  [bold]Setup:[/bold]      {' '.join(cmd.setup)}")
            console.print(f"  [bold]Command:[/bold]    {cmd.display()}")
    else:
        raise typer.Exit(1)


@app.command()
def watch(
    task_id: str = typer.Argument(..., help="Task identifier."),
    model_id: str = typer.Argument(..., help="Model/run identifier."),
    force: bool = typer.Option(False, "--force", help="Restart even if already running."),
    stop_after: bool = typer.Option(
        False, "--stop", help="Stop the preview when watching ends."
    ),
    timeout: float = typer.Option(130.0, "--timeout", help="Seconds to wait for ready."),
) -> None:
    """Start a preview and keep it alive until Ctrl+C."""
    from previewd import PreviewClientError, PreviewSubscription, PreviewView, get_client

    class _ConsoleView(PreviewView):
        def __init__(self) -> None:
            self.seen = 0

        def on_update(self, label: str, snapshot: dict[str, Any]) -> None:
            logs = snapshot.get("logs") or []
            for entry in logs[self.seen:]:
                console.print(f"[dim]{label}[/dim] {entry.get('msg', '')}", highlight=False)
            self.seen = max(self.seen, len(logs))

        def on_ready(self, label: str, url: str) -> None:
            _success(f"{label} ready at {url}")

        def on_failure(self, label: str, snapshot: dict[str, Any], reason: str) -> None:
            _error(f"{label}: {reason}")

    try:
        client = get_client()
    except PreviewClientError as e:
        _error(str(e))
        raise typer.Exit(1)

    sub = PreviewSubscription(
        client,
        task_id,
        model_id,
        _ConsoleView(),
        timeout=timeout,
        force=force,
        stop_on_close=stop_after,
    )
    try:
        with sub:
            if not sub.wait_ready(timeout + 1):
                raise typer.Exit(1)
            _info("Press Ctrl+C to stop watching.")
            while not sub.failed:
                time.sleep(0.5)
            raise typer.Exit(1)
    except KeyboardInterrupt:
        _info("Stopped watching.")
    finally:
        client.close()


def _start_background(port: int) -> None:
    """Start the server as a background process and wait for it to come up."""
    from previewd import start_server

    _info(f"Starting previewd server on port {port}...")
    info = start_server(port=port)
    if info:
        _success(f"Server started (pid={info.get('pid')}, url={info.get('url')})")
        return
    _error("Server process started but didn't become healthy within 5s.")
    raise typer.Exit(1)


if __name__ == "__main__":
    app()
