"""Lifecycle controller of the ``http.server`` module."""

import logging
import os
import threading
from pathlib import Path
from typing import Callable, Optional

from httpd.bootstrap.config import (
    DEFAULT_SHUTDOWN_GRACE_SECONDS,
    DEFAULT_SOCKET_TIMEOUT,
    MODULE_NAME,
    PARAM_ADDRESS,
    PARAM_CERTIFICATE,
    PARAM_KEY,
    PARAM_PATH,
    PARAM_PORT,
    ServerConfig,
)
from httpd.domain.correlation_id import ComponentLoggerAdapter
from httpd.domain.errors import AlreadyRunning, BadParameter, ListenFault, NotRunning
from httpd.domain.parameters import (
    IPV4_VALIDATOR,
    PARAM_IFACE_ADDRESS,
    ParamStore,
    int_parameter,
    string_parameter,
)
from httpd.lifecycle.state import ModuleState
from httpd.tls.provisioner import (
    ensure_certificate,
    profile_from_store,
    register_profile_parameters,
)
from httpd.transport.dispatcher import build_handler
from httpd.transport.listener import ListenerRuntime

MODULE_LOGGER = ComponentLoggerAdapter(logging.getLogger("http_server.module"), {})
ACCESS_LOGGER = ComponentLoggerAdapter(logging.getLogger("http_server.access"), {})


def register_parameters(store: ParamStore) -> None:
    """Declare every parameter the module reads."""
    store.add(string_parameter(PARAM_PATH, ".", "Server folder."))
    store.add(string_parameter(PARAM_ADDRESS, PARAM_IFACE_ADDRESS,
                               "Address to bind the http server to.", IPV4_VALIDATOR))
    store.add(int_parameter(PARAM_PORT, 80, "Port to bind the http server to.",
                            minimum=1, maximum=65535))
    store.add(string_parameter(
        PARAM_CERTIFICATE, "",
        "TLS certificate file, if not empty will configure this as a HTTPS server "
        "(will be auto generated if filled but not existing)."))
    store.add(string_parameter(
        PARAM_KEY, "",
        "TLS key file, if not empty will configure this as a HTTPS server "
        "(will be auto generated if filled but not existing)."))
    register_profile_parameters(store, MODULE_NAME)


def expand_path(name: str, value: str) -> str:
    """Expand ``~`` and make the path absolute; empty stays empty."""
    if not value:
        return ""
    try:
        expanded = Path(value).expanduser()
    except RuntimeError as error:
        raise BadParameter(name, f"cannot expand {value!r}: {error}") from error
    return os.path.abspath(expanded)


def log_listen_fault(fault: ListenFault) -> None:
    MODULE_LOGGER.critical(
        "Listener terminated unexpectedly",
        extra={"event": "listen_fault", "address": fault.address, "error": str(fault.error)},
    )


class HttpServerModule:
    """Serves a directory over HTTP or HTTPS and can be started and stopped.

    The module reads its configuration from a ``ParamStore`` it does not own.
    Only one running period exists at a time; every ``start()`` builds a new
    listener and every ``stop()`` discards it.
    """

    name = MODULE_NAME
    description = (
        "A simple HTTP server, to be used to serve files and scripts across the network."
    )

    def __init__(
        self,
        store: ParamStore,
        fault_handler: Optional[Callable[[ListenFault], None]] = None,
        shutdown_grace_seconds: float = DEFAULT_SHUTDOWN_GRACE_SECONDS,
        socket_timeout: int = DEFAULT_SOCKET_TIMEOUT,
        access_logger: Optional[logging.LoggerAdapter] = None,
    ) -> None:
        self.store = store
        self.fault_handler = fault_handler or log_listen_fault
        self.shutdown_grace_seconds = shutdown_grace_seconds
        self.socket_timeout = socket_timeout
        self.access_logger = access_logger or ACCESS_LOGGER
        self._lock = threading.Lock()
        # held across resolve and the state flip of configure, start and stop
        self._transition_lock = threading.Lock()
        self._state = ModuleState.IDLE
        self._listener: Optional[ListenerRuntime] = None
        self.config: Optional[ServerConfig] = None
        register_parameters(store)

    @property
    def state(self) -> ModuleState:
        with self._lock:
            return self._state

    @property
    def running(self) -> bool:
        return self.state is ModuleState.RUNNING

    @property
    def listener(self) -> Optional[ListenerRuntime]:
        with self._lock:
            return self._listener

    @property
    def bound_port(self) -> Optional[int]:
        listener = self.listener
        return listener.bound_port if listener is not None else None

    def configure(self) -> ServerConfig:
        """Resolve parameters and provision TLS material without binding.

        Raises:
            AlreadyRunning: If the module is running.
            BadParameter: If a parameter is invalid or cannot be expanded.
            CertificateProvisioningError: If a new pair cannot be generated.
        """
        with self._transition_lock:
            config, _ = self._resolve()
            with self._lock:
                self.config = config
            return config

    def _resolve(self) -> tuple[ServerConfig, type]:
        if self.running:
            raise AlreadyRunning(self.name)

        root = expand_path(PARAM_PATH, self.store.get_string(PARAM_PATH))
        if not os.path.isdir(root):
            raise BadParameter(PARAM_PATH, f"{root} is not a directory")
        handler = build_handler(root, self.access_logger, self.socket_timeout)

        host = self.store.get_string(PARAM_ADDRESS)
        port = self.store.get_int(PARAM_PORT)
        cert_file = expand_path(PARAM_CERTIFICATE, self.store.get_string(PARAM_CERTIFICATE))
        key_file = expand_path(PARAM_KEY, self.store.get_string(PARAM_KEY))

        ensure_certificate(
            cert_file, key_file, lambda: profile_from_store(self.store, self.name)
        )

        config = ServerConfig(
            root=root,
            host=host,
            port=port,
            cert_file=cert_file or None,
            key_file=key_file or None,
            socket_timeout=self.socket_timeout,
            shutdown_grace_seconds=self.shutdown_grace_seconds,
        )
        return config, handler

    def start(self) -> None:
        """Configure and launch the listener thread.

        Only one start, configure or stop runs at a time, so a rejected start
        never touches the TLS files of a running listener.

        Raises:
            AlreadyRunning: If the module is already running.
        """
        with self._transition_lock:
            config, handler = self._resolve()
            with self._lock:
                self.config = config
                listener = ListenerRuntime(config, handler)
                listener.on_fault = lambda fault: self._on_fault(listener, fault)
                self._listener = listener
                self._state = ModuleState.RUNNING
                listener.start()
        MODULE_LOGGER.info(
            "Module started", extra={"event": "module_started", "state": "running"}
        )

    def stop(self) -> None:
        """Stop accepting and wait for in-flight requests up to the grace period.

        Raises:
            NotRunning: If the module is idle.
        """
        with self._transition_lock:
            with self._lock:
                if self._state is not ModuleState.RUNNING:
                    raise NotRunning(self.name)
                self._state = ModuleState.IDLE
                listener = self._listener
                self._listener = None
            if listener is not None:
                listener.shutdown(self.shutdown_grace_seconds)
        MODULE_LOGGER.info(
            "Module stopped", extra={"event": "module_stopped", "state": "idle"}
        )

    def wait_until_listening(self, timeout: float = 5.0) -> bool:
        listener = self.listener
        return listener is not None and listener.wait_until_listening(timeout)

    def _on_fault(self, listener: ListenerRuntime, fault: ListenFault) -> None:
        with self._lock:
            if self._listener is listener:
                self._listener = None
                self._state = ModuleState.IDLE
        self.fault_handler(fault)
