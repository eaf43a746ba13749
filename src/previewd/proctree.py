"""Process-tree and listening-socket inspection on top of psutil.

Every query here is best-effort: a process exiting mid-scan or a
permission error yields an empty result for that branch instead of an
exception.
"""

from __future__ import annotations

import logging
import os
import signal
from collections.abc import Iterable

import psutil

from previewd._utils import is_pid_alive

logger = logging.getLogger(__name__)


def _processes(pids: Iterable[int]) -> list[psutil.Process]:
    """Return handles for ``pids`` that still exist, newest pid first."""
    procs: list[psutil.Process] = []
    for pid in sorted(set(pids), reverse=True):
        try:
            procs.append(psutil.Process(pid))
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue
    return procs


def _running(proc: psutil.Process) -> bool:
    """True unless ``proc`` is gone or a zombie waiting to be reaped."""
    try:
        return proc.is_running() and proc.status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        return True


# ---------------------------------------------------------------------------
# Process tree
# ---------------------------------------------------------------------------


def child_pids(pid: int) -> set[int]:
    """Return the direct children of ``pid``."""
    try:
        return {child.pid for child in psutil.Process(pid).children()}
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return set()


def descendant_pids(pid: int) -> set[int]:
    """Return every descendant of ``pid`` (not including ``pid`` itself).

    psutil walks a single parent map snapshot with a visited set, so pid
    reuse cannot make the walk loop.
    """
    try:
        return {child.pid for child in psutil.Process(pid).children(recursive=True)}
    except (psutil.NoSuchProcess, psutil.AccessDenied) as e:
        logger.debug(f"Cannot list descendants of {pid}: {e}")
        return set()


def group_pids(pgid: int) -> set[int]:
    """Return the members of process group ``pgid``.

    Catches descendants that were re-parented away from the root after an
    intermediate parent exited, as long as they stayed in the group.
    """
    if not hasattr(os, "getpgid"):
        return set()
    members: set[int] = set()
    for proc in psutil.process_iter():
        try:
            if os.getpgid(proc.pid) == pgid:
                members.add(proc.pid)
        except OSError:
            continue
    return members


def tree_pids(pid: int) -> set[int]:
    """Return ``pid``, its descendants and its process group's members."""
    pids = {pid} | descendant_pids(pid) | group_pids(pid)
    return {proc.pid for proc in _processes(pids) if _running(proc)}


# ---------------------------------------------------------------------------
# Listening sockets
# ---------------------------------------------------------------------------


def _listen_ports(conns) -> set[int]:
    return {c.laddr.port for c in conns if c.status == psutil.CONN_LISTEN and c.laddr}


def listening_ports(pids: Iterable[int]) -> set[int]:
    """Return the TCP ports any of ``pids`` is listening on."""
    ports: set[int] = set()
    for proc in _processes(pids):
        try:
            ports |= _listen_ports(proc.net_connections(kind="tcp"))
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue
    return ports


def pids_listening_on(port: int) -> set[int]:
    """Return the pids holding a listening TCP socket on ``port``."""
    try:
        conns = psutil.net_connections(kind="tcp")
    except psutil.AccessDenied:
        # The system-wide table needs root on macOS; ask each process instead
        return {proc.pid for proc in psutil.process_iter() if port in listening_ports([proc.pid])}
    return {
        c.pid
        for c in conns
        if c.pid and c.status == psutil.CONN_LISTEN and c.laddr and c.laddr.port == port
    }


# ---------------------------------------------------------------------------
# Teardown
# ---------------------------------------------------------------------------


def _signal_all(procs: Iterable[psutil.Process], sig: int) -> None:
    for proc in procs:
        try:
            proc.send_signal(sig)
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue


def _killpg(pgid: int, sig: int) -> None:
    if not hasattr(os, "killpg"):
        return
    try:
        os.killpg(pgid, sig)
    except OSError:
        pass


def wait_for_exit(procs: list[psutil.Process], timeout: float) -> list[psutil.Process]:
    """Wait until all ``procs`` are gone. Returns the survivors."""
    procs = [p for p in procs if _running(p)]
    if not procs:
        return []
    _, alive = psutil.wait_procs(procs, timeout=timeout)
    return [p for p in alive if _running(p)]


def kill_tree(
    pid: int,
    grace: float = 2.0,
    ports: Iterable[int] = (),
    root_alive: bool = True,
) -> set[int]:
    """Terminate the process tree rooted at ``pid`` and confirm it is gone.

    Sends SIGTERM to the group and every discovered member (newest first),
    waits up to ``grace`` seconds, then kills survivors. Any process
    still listening on one of ``ports`` afterwards is killed too.

    Args:
        pid: Root pid, also the process-group id of the tree.
        grace: Seconds to wait after SIGTERM before escalating.
        ports: Ports owned by the tree.
        root_alive: False once the root has been reaped; its pid may then
            belong to an unrelated process, so only group members are used.

    Returns:
        Pids that could not be confirmed dead (normally empty).
    """

    def _members() -> list[psutil.Process]:
        found = tree_pids(pid) if root_alive and is_pid_alive(pid) else group_pids(pid)
        return [p for p in _processes(found) if _running(p)]

    procs = _members()
    _killpg(pid, signal.SIGTERM)
    _signal_all(procs, signal.SIGTERM)
    alive = wait_for_exit(procs, grace)

    # Late forks since the first scan
    known = {p.pid for p in alive}
    alive += [p for p in _members() if p.pid not in known]
    if alive:
        logger.debug(f"Killing {len(alive)} survivor(s) of tree {pid}")
        _killpg(pid, getattr(signal, "SIGKILL", signal.SIGTERM))
        for proc in alive:
            try:
                proc.kill()
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
        alive = wait_for_exit(alive, max(grace, 1.0))
    survivors = {p.pid for p in alive}

    for port in ports:
        holders = _processes(pids_listening_on(port))
        if holders:
            logger.debug(f"Killing {sorted(p.pid for p in holders)} still listening on port {port}")
            for proc in holders:
                try:
                    proc.kill()
                except (psutil.NoSuchProcess, psutil.AccessDenied):
                    continue
            survivors |= {p.pid for p in wait_for_exit(holders, max(grace, 1.0))}
    return survivors
