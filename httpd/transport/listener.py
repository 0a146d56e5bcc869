"""Listener runtime: accept loop, per-connection workers, bounded shutdown."""

import logging
import socket
import ssl
import threading
import time
from typing import Callable, Optional

from httpd.bootstrap.config import ServerConfig
from httpd.bootstrap.socket_factory import create_listener_socket
from httpd.domain.correlation_id import (
    ComponentLoggerAdapter,
    bind_connection_id,
    new_connection_id,
    release_connection_id,
)
from httpd.domain.errors import ListenFault
from httpd.lifecycle.state import ConnectionTracker, ListenerState

LISTENER_LOGGER = ComponentLoggerAdapter(
    logging.getLogger("http_server.transport.listener"), {}
)

HandlerFactory = Callable[..., object]
FaultHandler = Callable[[ListenFault], None]


class ListenerRuntime:
    """Owns one listening socket for exactly one running period.

    ``serve()`` blocks until ``shutdown()`` is called or a fatal fault occurs;
    it is normally run through ``start()`` on a dedicated thread.
    """

    def __init__(
        self,
        config: ServerConfig,
        handler_factory: HandlerFactory,
        on_fault: Optional[FaultHandler] = None,
    ) -> None:
        self.config = config
        self.handler_factory = handler_factory
        self.on_fault = on_fault
        self.tracker = ConnectionTracker()
        self._state = ListenerState.CREATED
        self._state_lock = threading.Lock()
        self._listening = threading.Event()
        self._finished = threading.Event()
        self._socket: Optional[socket.socket] = None
        self._thread: Optional[threading.Thread] = None
        self.bound_port: Optional[int] = None

    @property
    def state(self) -> ListenerState:
        with self._state_lock:
            return self._state

    def _transition(self, expected: ListenerState, target: ListenerState) -> bool:
        with self._state_lock:
            if self._state is not expected:
                return False
            self._state = target
            return True

    def start(self) -> threading.Thread:
        """Run ``serve()`` on a new thread and return it."""
        thread = threading.Thread(
            target=self._run, name=f"http-listener-{self.config.address}", daemon=True
        )
        self._thread = thread
        thread.start()
        return thread

    def wait_until_listening(self, timeout: float) -> bool:
        """Block until the socket is bound; False on timeout or early exit."""
        self._listening.wait(timeout)
        return self._listening.is_set() and self.state is ListenerState.LISTENING

    def _run(self) -> None:
        try:
            self.serve()
        except ListenFault as fault:
            if self.on_fault is None:
                raise
            self.on_fault(fault)

    def serve(self) -> None:
        """Bind and accept until shutdown is requested.

        Raises:
            ListenFault: If the socket cannot be bound or accept fails while
                the listener is not shutting down.
        """
        try:
            server_socket = create_listener_socket(self.config)
        except ListenFault:
            with self._state_lock:
                self._state = ListenerState.CLOSED
            self._finished.set()
            raise

        self._socket = server_socket
        self.bound_port = server_socket.getsockname()[1]
        if not self._transition(ListenerState.CREATED, ListenerState.LISTENING):
            # shutdown() won the race before the socket was bound
            server_socket.close()
            self._finished.set()
            return

        LISTENER_LOGGER.info(
            "%s server starting on %s://%s:%d",
            self.config.scheme.upper(),
            self.config.scheme,
            self.config.host,
            self.bound_port,
            extra={
                "event": "server_listening",
                "address": self.config.host,
                "port": self.bound_port,
                "directory": self.config.root,
                "tls": self.config.tls,
            },
        )
        self._listening.set()
        try:
            self._accept_loop(server_socket)
        except ListenFault:
            with self._state_lock:
                self._state = ListenerState.CLOSED
            raise
        finally:
            server_socket.close()
            self._finished.set()

    def _accept_loop(self, server_socket: socket.socket) -> None:
        while not self.tracker.should_stop():
            try:
                client_socket, client_address = server_socket.accept()
            except socket.timeout:
                continue
            except OSError as error:
                if self.tracker.should_stop():
                    break
                LISTENER_LOGGER.error(
                    "Socket accept failed",
                    extra={"event": "accept_error", "error_type": type(error).__name__},
                )
                raise ListenFault(self.config.address, error) from error

            if self.tracker.should_stop():
                client_socket.close()
                break

            worker = threading.Thread(
                target=self._handle_connection,
                args=(client_socket, client_address),
                daemon=True,
            )
            self.tracker.register(worker, client_socket)
            worker.start()

    def _handle_connection(
        self, client_socket: socket.socket, client_address: tuple[str, int]
    ) -> None:
        token = bind_connection_id(new_connection_id())
        try:
            if isinstance(client_socket, ssl.SSLSocket):
                client_socket.settimeout(self.config.socket_timeout)
                client_socket.do_handshake()
            self.handler_factory(client_socket, client_address, self)
        except (ssl.SSLError, OSError) as error:
            if LISTENER_LOGGER.logger.isEnabledFor(logging.DEBUG):
                LISTENER_LOGGER.debug(
                    "Connection aborted",
                    extra={
                        "event": "connection_aborted",
                        "client": client_address[0],
                        "error": str(error),
                    },
                )
        except Exception:  # pylint: disable=broad-except
            LISTENER_LOGGER.exception(
                "Unhandled error while serving connection",
                extra={"event": "handler_error", "client": client_address[0]},
            )
        finally:
            try:
                client_socket.close()
            except OSError:
                pass
            self.tracker.release(threading.current_thread())
            release_connection_id(token)

    def request_started(self) -> None:
        """Called by the handler on its worker thread once a request line arrives."""
        self.tracker.mark_busy(threading.current_thread())

    def active_connections(self) -> int:
        return self.tracker.active_count()

    def busy_connections(self) -> int:
        return self.tracker.busy_count()

    def shutdown(self, timeout: float) -> bool:
        """Stop accepting and drain in-flight connections.

        Connections that have not sent a request line yet are closed at once.
        Waits up to ``timeout`` seconds for the other workers, then forcibly
        closes what is left. Returns True when every connection finished in time.
        """
        with self._state_lock:
            if self._state in (ListenerState.SHUTTING_DOWN, ListenerState.CLOSED):
                return True
            was_listening = self._state is ListenerState.LISTENING
            self._state = ListenerState.SHUTTING_DOWN

        deadline = time.monotonic() + timeout
        self.tracker.request_stop()
        LISTENER_LOGGER.info(
            "Waiting for active connections to complete",
            extra={"event": "shutdown_waiting", "grace_seconds": timeout},
        )
        if was_listening:
            self._finished.wait(timeout)

        idle = self.tracker.close_idle()
        if idle:
            LISTENER_LOGGER.info(
                "Closed idle connections",
                extra={"event": "idle_connections_closed", "remaining_connections": idle},
            )

        drained = self.tracker.wait_for_workers(max(0.0, deadline - time.monotonic()))
        if not drained:
            closed = self.tracker.force_close()
            LISTENER_LOGGER.warning(
                "Forcibly closed connections",
                extra={"event": "connections_killed", "remaining_connections": closed},
            )
            self.tracker.wait_for_workers(1.0)

        with self._state_lock:
            self._state = ListenerState.CLOSED
        LISTENER_LOGGER.info("Server shutdown complete", extra={"event": "server_stopped"})
        return drained
