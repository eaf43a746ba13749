"""Port allocation for dynamic previews."""

from __future__ import annotations

import logging
import socket
import threading

logger = logging.getLogger(__name__)


class PortExhaustedError(RuntimeError):
    """No free port is left in the configured range."""


def is_port_free(host: str, port: int) -> bool:
    """True if nothing is bound to ``host:port`` right now."""
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            s.bind((host, port))
            return True
    except OSError:
        return False


def is_port_open(host: str, port: int, timeout: float = 0.35) -> bool:
    """True if a TCP connection to ``host:port`` succeeds."""
    try:
        with socket.create_connection((host, int(port)), timeout=timeout):
            return True
    except OSError:
        return False


class PortAllocator:
    """Hands out free local ports from ``[start, end]``.

    A port stays reserved from ``allocate()`` until ``release()``; callers
    release only after the owning process tree is confirmed dead, so a
    port is never handed out while a previous owner may still bind it.
    Thread-safe.

    Args:
        host: Interface used for the bind check.
        start: First port of the range (inclusive).
        end: Last port of the range (inclusive).
    """

    def __init__(self, host: str = "127.0.0.1", start: int = 4000, end: int = 10000) -> None:
        if not (0 < start <= end <= 65535):
            raise ValueError(f"Invalid port range {start}-{end}")
        self.host = host
        self.start = start
        self.end = end
        self._reserved: set[int] = set()
        self._lock = threading.Lock()
        self._cursor = start

    def allocate(self) -> int:
        """Reserve and return a free port.

        Scans round-robin from just after the last allocation so a port
        that was just released is not immediately reused.

        Raises:
            PortExhaustedError: Every port in the range is reserved or bound.
        """
        with self._lock:
            span = self.end - self.start + 1
            for i in range(span):
                port = self.start + (self._cursor - self.start + i) % span
                if port in self._reserved:
                    continue
                if not is_port_free(self.host, port):
                    continue
                self._reserved.add(port)
                self._cursor = port + 1 if port < self.end else self.start
                logger.debug(f"Allocated port {port}")
                return port
        raise PortExhaustedError(f"No free ports available in {self.start}-{self.end}")

    def release(self, port: int | None) -> None:
        """Return ``port`` to the pool. Unknown ports are ignored."""
        if port is None:
            return
        with self._lock:
            if port in self._reserved:
                self._reserved.discard(port)
                logger.debug(f"Released port {port}")

    def is_reserved(self, port: int) -> bool:
        with self._lock:
            return port in self._reserved

    @property
    def reserved(self) -> frozenset[int]:
        with self._lock:
            return frozenset(self._reserved)
