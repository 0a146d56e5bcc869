"""Resolved server configuration, process defaults, and CLI parsing."""

import argparse
import os
from dataclasses import dataclass
from typing import Optional


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value is not None else default


MODULE_NAME = "http.server"

DEFAULT_SOCKET_TIMEOUT = _env_int("HTTP_SERVER_SOCKET_TIMEOUT", 60)
DEFAULT_SHUTDOWN_GRACE_SECONDS = _env_int("HTTP_SERVER_SHUTDOWN_GRACE_SECONDS", 60)
ACCEPT_POLL_SECONDS = 0.5

PARAM_PATH = f"{MODULE_NAME}.path"
PARAM_ADDRESS = f"{MODULE_NAME}.address"
PARAM_PORT = f"{MODULE_NAME}.port"
PARAM_CERTIFICATE = f"{MODULE_NAME}.certificate"
PARAM_KEY = f"{MODULE_NAME}.key"


@dataclass(frozen=True)
class ServerConfig:
    """Snapshot of the parameters for one start/stop cycle."""

    root: str
    host: str
    port: int
    cert_file: Optional[str] = None
    key_file: Optional[str] = None
    socket_timeout: int = DEFAULT_SOCKET_TIMEOUT
    shutdown_grace_seconds: float = DEFAULT_SHUTDOWN_GRACE_SECONDS

    @property
    def tls(self) -> bool:
        """True when both a certificate and a key are configured."""
        return bool(self.cert_file) and bool(self.key_file)

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"

    @property
    def scheme(self) -> str:
        return "https" if self.tls else "http"


def _assignment(value: str) -> tuple[str, str]:
    name, sep, raw = value.partition("=")
    if not sep or not name.strip():
        raise argparse.ArgumentTypeError(f"expected NAME=VALUE, got {value!r}")
    return name.strip(), raw


def parse_cli_args(argv: list[str]) -> argparse.Namespace:
    """Return parsed CLI arguments for the console entry point."""
    parser = argparse.ArgumentParser(
        description="Static file HTTP/HTTPS server controlled from an operator console"
    )
    parser.add_argument(
        "--set",
        dest="assignments",
        metavar="NAME=VALUE",
        type=_assignment,
        action="append",
        default=[],
        help=f"Set a parameter before the console starts, e.g. {PARAM_PORT}=8080",
    )
    parser.add_argument(
        "--start",
        action="store_true",
        help=f"Run '{MODULE_NAME} on' immediately",
    )
    parser.add_argument(
        "--no-console",
        dest="console",
        action="store_false",
        help="Do not read commands from stdin; run until SIGINT or SIGTERM",
    )
    default_log_level = os.getenv("HTTP_SERVER_LOG_LEVEL", "INFO").upper()
    default_destination = os.getenv("HTTP_SERVER_LOG_DESTINATION", "stdout")
    parser.add_argument(
        "--log-level",
        default=default_log_level,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        type=str.upper,
    )
    parser.add_argument(
        "--log-destination",
        default=default_destination,
        help="stdout or a file path",
    )
    parser.add_argument(
        "--text-logs",
        dest="use_json",
        action="store_false",
        help="Emit plain text log lines instead of JSON",
    )
    parser.add_argument(
        "--shutdown-grace-seconds",
        type=float,
        default=DEFAULT_SHUTDOWN_GRACE_SECONDS,
        help="Seconds to wait for in-flight requests when stopping",
    )
    return parser.parse_args(argv)
