"""Per-connection identifiers and the component-aware logger adapter."""

import contextvars
import logging
import uuid
from typing import Any, MutableMapping, Optional

LOGGER_NAMESPACE = "http_server"

_connection_id_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "connection_id", default=None
)


def new_connection_id() -> str:
    """Return a short random identifier for an accepted connection."""
    return uuid.uuid4().hex[:12]


def get_connection_id() -> Optional[str]:
    return _connection_id_var.get()


def bind_connection_id(connection_id: str) -> contextvars.Token:
    """Attach a connection id to the current thread's context."""
    return _connection_id_var.set(connection_id)


def release_connection_id(token: contextvars.Token) -> None:
    _connection_id_var.reset(token)


class ComponentLoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that injects the component name and connection id."""

    def process(
        self, msg: str, kwargs: MutableMapping[str, Any]
    ) -> tuple[str, MutableMapping[str, Any]]:
        extra = dict(kwargs.get("extra") or {})

        connection_id = get_connection_id()
        extra["connection_id"] = connection_id if connection_id is not None else "-"

        name = self.logger.name
        prefix = LOGGER_NAMESPACE + "."
        extra["component"] = name[len(prefix) :] if name.startswith(prefix) else name

        kwargs["extra"] = extra
        return msg, kwargs
