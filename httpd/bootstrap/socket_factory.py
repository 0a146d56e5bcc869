"""Listening socket creation and TLS configuration."""

import logging
import socket
import ssl

from httpd.bootstrap.config import ACCEPT_POLL_SECONDS, ServerConfig
from httpd.domain.correlation_id import ComponentLoggerAdapter
from httpd.domain.errors import ListenFault

SOCKET_LOGGER = ComponentLoggerAdapter(logging.getLogger("http_server.socket"), {})


def create_tls_context(cert_file: str, key_file: str) -> ssl.SSLContext:
    """Build a server-side context that loads (never generates) the given pair."""
    tls_context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    tls_context.minimum_version = ssl.TLSVersion.TLSv1_2
    tls_context.load_cert_chain(cert_file, key_file)
    return tls_context


def create_listener_socket(config: ServerConfig) -> socket.socket:
    """Bind the listening socket, wrapping it in TLS when configured.

    Accepts on the returned socket time out every ACCEPT_POLL_SECONDS so the
    accept loop can observe shutdown requests.
    """
    try:
        server_socket = socket.create_server((config.host, config.port))
    except OSError as error:
        SOCKET_LOGGER.critical(
            "Failed to bind listener",
            extra={"event": "bind_failed", "address": config.address, "error": str(error)},
        )
        raise ListenFault(config.address, error) from error

    server_socket.settimeout(ACCEPT_POLL_SECONDS)
    if not config.tls:
        return server_socket

    try:
        tls_context = create_tls_context(str(config.cert_file), str(config.key_file))
    except (ssl.SSLError, OSError) as error:
        server_socket.close()
        SOCKET_LOGGER.critical(
            "Failed to load TLS certificates",
            extra={
                "event": "tls_load_failed",
                "certificate": config.cert_file,
                "error": str(error),
            },
        )
        raise ListenFault(config.address, error) from error
    # handshakes run on worker threads, not in accept()
    return tls_context.wrap_socket(
        server_socket, server_side=True, do_handshake_on_connect=False
    )
