"""Module and listener states plus in-flight connection tracking."""

import logging
import socket
import threading
import time
from enum import Enum

from httpd.domain.correlation_id import ComponentLoggerAdapter

LIFECYCLE_LOGGER = ComponentLoggerAdapter(logging.getLogger("http_server.lifecycle"), {})


class ModuleState(Enum):
    IDLE = "idle"
    RUNNING = "running"


class ListenerState(Enum):
    CREATED = "created"
    LISTENING = "listening"
    SHUTTING_DOWN = "shutting_down"
    CLOSED = "closed"


class ConnectionTracker:
    """Tracks worker threads and their client sockets for graceful draining."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._workers: dict[threading.Thread, socket.socket] = {}
        self._busy: set[threading.Thread] = set()

    def should_stop(self) -> bool:
        """Check if the accept loop should stop accepting new connections."""
        return self._stop_event.is_set()

    def request_stop(self) -> None:
        self._stop_event.set()

    def register(self, thread: threading.Thread, client_socket: socket.socket) -> None:
        with self._lock:
            self._workers[thread] = client_socket

    def release(self, thread: threading.Thread) -> None:
        with self._lock:
            self._workers.pop(thread, None)
            self._busy.discard(thread)

    def mark_busy(self, thread: threading.Thread) -> None:
        """Record that the worker has started reading a request."""
        with self._lock:
            if thread in self._workers:
                self._busy.add(thread)

    def busy_count(self) -> int:
        with self._lock:
            return len(self._busy)

    def active_count(self) -> int:
        with self._lock:
            return len(self._workers)

    def wait_for_workers(self, timeout: float) -> bool:
        """Wait for all worker threads to complete within the timeout."""
        deadline = time.monotonic() + timeout
        while True:
            with self._lock:
                self._workers = {
                    w: s for w, s in self._workers.items() if w.is_alive()
                }
                self._busy.intersection_update(self._workers)
                active_workers = list(self._workers)
            if not active_workers:
                return True
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                LIFECYCLE_LOGGER.warning(
                    "Shutdown timeout exceeded",
                    extra={
                        "event": "shutdown_timeout",
                        "remaining_connections": len(active_workers),
                    },
                )
                return False
            for worker in active_workers:
                worker.join(timeout=min(0.1, remaining))
                if time.monotonic() >= deadline:
                    break

    def close_idle(self) -> int:
        """Shut down sockets whose worker has not started a request yet."""
        with self._lock:
            sockets = [
                sock for thread, sock in self._workers.items() if thread not in self._busy
            ]
        return _shutdown_all(sockets)

    def force_close(self) -> int:
        """Shut down every tracked client socket; return how many were open.

        Workers still own their sockets and close them once their blocked
        reads or writes fail.
        """
        with self._lock:
            sockets = list(self._workers.values())
        return _shutdown_all(sockets)


def _shutdown_all(sockets: list[socket.socket]) -> int:
    for client_socket in sockets:
        try:
            client_socket.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
    return len(sockets)
