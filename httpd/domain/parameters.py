"""Named, typed and validated parameters read by the server module."""

import logging
import re
import socket
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Pattern, Union

from httpd.domain.correlation_id import ComponentLoggerAdapter
from httpd.domain.errors import BadParameter

PARAMS_LOGGER = ComponentLoggerAdapter(logging.getLogger("http_server.params"), {})

PARAM_IFACE_ADDRESS = "<interface address>"
FALLBACK_ADDRESS = "127.0.0.1"

IPV4_VALIDATOR = re.compile(
    r"^(25[0-5]|2[0-4]\d|1\d\d|[1-9]?\d)(\.(25[0-5]|2[0-4]\d|1\d\d|[1-9]?\d)){3}$"
)


class ParamType(Enum):
    """Value type of a parameter."""

    STRING = "string"
    INT = "int"


def interface_address() -> str:
    """Return the primary IPv4 address of this host, or loopback if unknown."""
    try:
        # connect() on UDP only selects a route, no packet is sent
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
            sock.connect(("8.8.8.8", 80))
            address: str = sock.getsockname()[0]
            return address
    except OSError:
        return FALLBACK_ADDRESS


@dataclass(frozen=True)
class Parameter:
    """Declaration of a single configurable value."""

    name: str
    default: str
    description: str
    kind: ParamType = ParamType.STRING
    validator: Optional[Pattern[str]] = None
    minimum: Optional[int] = None
    maximum: Optional[int] = None

    def coerce(self, value: str) -> Union[str, int]:
        """Validate a raw string value and convert it to the declared type."""
        if self.kind is ParamType.INT:
            try:
                number = int(value.strip())
            except ValueError as error:
                raise BadParameter(self.name, f"{value!r} is not an integer") from error
            if self.minimum is not None and number < self.minimum:
                raise BadParameter(self.name, f"{number} is lower than {self.minimum}")
            if self.maximum is not None and number > self.maximum:
                raise BadParameter(self.name, f"{number} is greater than {self.maximum}")
            return number
        if self.validator is not None and not self.validator.match(value):
            raise BadParameter(self.name, f"{value!r} does not match {self.validator.pattern}")
        return value


def string_parameter(
    name: str,
    default: str,
    description: str,
    validator: Optional[Pattern[str]] = None,
) -> Parameter:
    return Parameter(name, default, description, ParamType.STRING, validator)


def int_parameter(
    name: str,
    default: int,
    description: str,
    minimum: Optional[int] = None,
    maximum: Optional[int] = None,
) -> Parameter:
    return Parameter(
        name, str(default), description, ParamType.INT, minimum=minimum, maximum=maximum
    )


class ParamStore:
    """Thread-safe registry of parameters and their current raw values.

    Values are stored as strings, the way an operator types them, and are
    validated both when set and when read. Defaults may be placeholders such
    as ``<interface address>`` which are resolved on every read.
    """

    def __init__(
        self, resolvers: Optional[dict[str, Callable[[], str]]] = None
    ) -> None:
        self._lock = threading.Lock()
        self._params: dict[str, Parameter] = {}
        self._values: dict[str, str] = {}
        self._resolvers: dict[str, Callable[[], str]] = (
            dict(resolvers)
            if resolvers is not None
            else {PARAM_IFACE_ADDRESS: interface_address}
        )

    def add(self, param: Parameter) -> None:
        """Register a parameter; an existing value for the same name is kept."""
        with self._lock:
            self._params[param.name] = param
            self._values.setdefault(param.name, param.default)

    def has(self, name: str) -> bool:
        with self._lock:
            return name in self._params

    def parameters(self) -> list[Parameter]:
        """Return declared parameters sorted by name."""
        with self._lock:
            return sorted(self._params.values(), key=lambda p: p.name)

    def _lookup(self, name: str) -> tuple[Parameter, str]:
        with self._lock:
            param = self._params.get(name)
            if param is None:
                raise BadParameter(name, "unknown parameter")
            return param, self._values[name]

    def set(self, name: str, value: str) -> None:
        """Validate and store a raw value."""
        param, _ = self._lookup(name)
        if value not in self._resolvers:
            param.coerce(value)
        with self._lock:
            self._values[name] = value
        PARAMS_LOGGER.info(
            "%s => %s", name, value, extra={"event": "param_set", "param": name}
        )

    def raw(self, name: str) -> str:
        """Return the stored value without resolving placeholders."""
        return self._lookup(name)[1]

    def _resolve(self, param: Parameter, value: str) -> Union[str, int]:
        resolver = self._resolvers.get(value)
        if resolver is not None:
            value = resolver()
        return param.coerce(value)

    def get_string(self, name: str) -> str:
        param, value = self._lookup(name)
        if param.kind is not ParamType.STRING:
            raise BadParameter(name, f"is a {param.kind.value} parameter")
        return str(self._resolve(param, value))

    def get_int(self, name: str) -> int:
        param, value = self._lookup(name)
        if param.kind is not ParamType.INT:
            raise BadParameter(name, f"is a {param.kind.value} parameter")
        return int(self._resolve(param, value))
