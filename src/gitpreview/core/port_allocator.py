"""Preview port allocation."""

from __future__ import annotations

import errno
import socket
import threading

from gitpreview.errors import PortExhaustionError

MAX_PORT = 65535

_IN_USE_ERRNOS = frozenset(
    {errno.EADDRINUSE, errno.EACCES, getattr(errno, "WSAEADDRINUSE", errno.EADDRINUSE)}
)


class PortAllocator:
    """Hand out TCP ports unique within this engine and free on the host."""

    def __init__(self, *, host: str = "127.0.0.1", fallback_port: int = 3000) -> None:
        self._host = host
        self._fallback_port = fallback_port
        self._reserved: set[int] = set()
        self._lock = threading.Lock()

    def allocate(self, preferred_port: int = 0) -> int:
        """Reserve the first usable port at or above ``preferred_port``.

        A candidate is usable when no earlier allocation holds it and a
        bind probe on the host succeeds.

        Raises:
            PortExhaustionError: If probing runs past the valid port range.
        """
        start = preferred_port if preferred_port > 0 else self._fallback_port
        with self._lock:
            for port in range(start, MAX_PORT + 1):
                if port in self._reserved:
                    continue
                if self._is_bindable(port):
                    self._reserved.add(port)
                    return port
        msg = f"No available port at or above {start}"
        raise PortExhaustionError(msg)

    def release(self, port: int) -> None:
        if port <= 0:
            return
        with self._lock:
            self._reserved.discard(port)

    def reserved(self) -> frozenset[int]:
        with self._lock:
            return frozenset(self._reserved)

    def _is_bindable(self, port: int) -> bool:
        try:
            with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as probe:
                probe.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
                probe.bind((self._host, port))
        except OSError:
            return False
        return self._is_free_on_ipv6_loopback(port)

    def _is_free_on_ipv6_loopback(self, port: int) -> bool:
        """Dev servers that resolve ``localhost`` to ``::1`` listen there only."""
        if not socket.has_ipv6:
            return True
        try:
            with socket.socket(socket.AF_INET6, socket.SOCK_STREAM) as probe:
                probe.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
                probe.bind(("::1", port))
        except OSError as exc:
            # Hosts without IPv6 loopback cannot have a listener there.
            return exc.errno not in _IN_USE_ERRNOS
        return True
