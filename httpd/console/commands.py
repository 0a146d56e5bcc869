"""Operator console commands driving the server module."""

import logging
import shlex
from dataclasses import dataclass
from typing import Callable, Optional, TextIO

from httpd.domain.correlation_id import ComponentLoggerAdapter
from httpd.domain.errors import ModuleError
from httpd.domain.parameters import ParamStore
from httpd.lifecycle.controller import HttpServerModule

CONSOLE_LOGGER = ComponentLoggerAdapter(logging.getLogger("http_server.console"), {})


@dataclass
class Command:
    usage: str
    description: str
    run: Callable[[list[str]], Optional[str]]


class Console:
    """Parses operator input lines and dispatches them to the module.

    Commands return a message for the operator; ``ModuleError`` raised by
    the module is reported as ``error: <message>`` and never ends the session.
    """

    def __init__(self, module: HttpServerModule, store: ParamStore) -> None:
        self.module = module
        self.store = store
        self.finished = False
        self._commands: dict[str, Command] = {
            f"{module.name} on": Command(
                f"{module.name} on", "Start httpd server.", self._start
            ),
            f"{module.name} off": Command(
                f"{module.name} off", "Stop httpd server.", self._stop
            ),
            "set": Command("set NAME VALUE", "Set a parameter value.", self._set),
            "get": Command("get NAME", "Show a parameter value.", self._get),
            "help": Command("help", "List commands and parameters.", self._help),
            "quit": Command("quit", "Stop the server if running and exit.", self._quit),
        }

    def _match(self, words: list[str]) -> tuple[Optional[Command], list[str]]:
        for size in (2, 1):
            key = " ".join(words[:size])
            if len(words) >= size and key in self._commands:
                return self._commands[key], words[size:]
        return None, words

    def execute(self, line: str) -> Optional[str]:
        """Run one input line and return the text to show the operator."""
        try:
            words = shlex.split(line)
        except ValueError as error:
            return f"error: {error}"
        if not words:
            return None
        command, args = self._match(words)
        if command is None:
            return f"error: unknown command {words[0]!r}, try 'help'"
        try:
            return command.run(args)
        except ModuleError as error:
            CONSOLE_LOGGER.error(
                "Command failed",
                extra={"event": "command_failed", "error": str(error)},
            )
            return f"error: {error}"

    def run(self, stream: TextIO, output: TextIO) -> None:
        """Read commands from ``stream`` until EOF or ``quit``."""
        for line in stream:
            reply = self.execute(line)
            if reply:
                print(reply, file=output, flush=True)
            if self.finished:
                break

    def _start(self, args: list[str]) -> Optional[str]:
        self.module.start()
        return None

    def _stop(self, args: list[str]) -> Optional[str]:
        self.module.stop()
        return None

    def _set(self, args: list[str]) -> Optional[str]:
        if len(args) < 1:
            return "usage: set NAME VALUE"
        name, value = args[0], " ".join(args[1:])
        self.store.set(name, value)
        return f"{name} => {value}"

    def _get(self, args: list[str]) -> Optional[str]:
        if len(args) != 1:
            return "usage: get NAME"
        return f"{args[0]}: {self.store.raw(args[0])!r}"

    def _help(self, args: list[str]) -> Optional[str]:
        lines = [f"{self.module.name} ({self.module.state.value}): {self.module.description}", ""]
        for command in self._commands.values():
            lines.append(f"  {command.usage:<28} {command.description}")
        lines.extend(["", "  Parameters", ""])
        for param in self.store.parameters():
            lines.append(f"  {param.name:<44} : {param.description}")
            lines.append(f"  {'':<44}   (default={param.default!r})")
        return "\n".join(lines)

    def _quit(self, args: list[str]) -> Optional[str]:
        if self.module.running:
            self.module.stop()
        self.finished = True
        return None
