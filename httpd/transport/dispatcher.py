"""Catch-all request handler wrapping the standard library file server."""

import logging
from http.server import SimpleHTTPRequestHandler
from typing import Any, Union
from urllib.parse import urlsplit

from httpd.bootstrap.config import DEFAULT_SOCKET_TIMEOUT

Logger = Union[logging.Logger, logging.LoggerAdapter]


def client_host(client_address: Any) -> str:
    """Host portion of a peer address, without the port."""
    if isinstance(client_address, tuple) and client_address:
        return str(client_address[0])
    return str(client_address).rsplit(":", 1)[0]


def access_line(client: str, method: str, host: str, path: str) -> str:
    return f"{client} {method} {host}{path}"


class AccessLogHandler(SimpleHTTPRequestHandler):
    """Logs one access line per request, then lets the file server answer it."""

    access_logger: Logger = logging.getLogger("http_server.access")

    def parse_request(self) -> bool:
        request_started = getattr(self.server, "request_started", None)
        if request_started is not None:
            request_started()
        if not super().parse_request():
            return False
        client = client_host(self.client_address)
        host = self.headers.get("Host", "")
        path = urlsplit(self.path).path
        self.access_logger.info(
            access_line(client, self.command, host, path),
            extra={
                "event": "request",
                "client": client,
                "method": self.command,
                "host": host,
                "path": path,
            },
        )
        return True

    def log_message(self, format: str, *args: Any) -> None:  # pylint: disable=redefined-builtin
        self.access_logger.debug("%s - %s", self.address_string(), format % args)


def build_handler(
    root: str, logger: Logger, socket_timeout: int = DEFAULT_SOCKET_TIMEOUT
) -> type[AccessLogHandler]:
    """Create a handler class serving ``root`` and logging to ``logger``.

    The returned class is constructed by the listener as
    ``handler(request, client_address, server)``.
    """

    class RootHandler(AccessLogHandler):
        access_logger = logger
        timeout = socket_timeout

        def __init__(self, *args: Any, **kwargs: Any) -> None:
            super().__init__(*args, directory=root, **kwargs)

    return RootHandler
