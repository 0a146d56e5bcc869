"""Operator console hosting the http.server module."""

import _thread
import logging
import signal
import sys
import threading
from typing import Optional

from httpd.bootstrap.config import parse_cli_args
from httpd.bootstrap.logging_setup import configure_logging
from httpd.console.commands import Console
from httpd.domain.correlation_id import ComponentLoggerAdapter
from httpd.domain.errors import ListenFault, ModuleError
from httpd.domain.parameters import ParamStore
from httpd.lifecycle.controller import HttpServerModule

SERVER_LOGGER = ComponentLoggerAdapter(logging.getLogger("http_server.server"), {})


class FaultLatch:
    """Records a fatal listener fault and wakes the main thread."""

    def __init__(self, interrupt_console: bool) -> None:
        self.fault: Optional[ListenFault] = None
        self.event = threading.Event()
        self._interrupt_console = interrupt_console

    def __call__(self, fault: ListenFault) -> None:
        SERVER_LOGGER.critical(
            "Fatal listener error",
            extra={"event": "listen_fault", "address": fault.address, "error": str(fault.error)},
        )
        self.fault = fault
        self.event.set()
        if self._interrupt_console:
            _thread.interrupt_main()


def main(argv: Optional[list[str]] = None) -> int:
    """Run the console; the exit status is 1 after a fatal listener fault."""
    args = parse_cli_args(sys.argv[1:] if argv is None else argv)
    configure_logging(args.log_level, args.log_destination, args.use_json)

    latch = FaultLatch(interrupt_console=args.console)
    store = ParamStore()
    module = HttpServerModule(
        store,
        fault_handler=latch,
        shutdown_grace_seconds=args.shutdown_grace_seconds,
    )
    console = Console(module, store)

    try:
        for name, value in args.assignments:
            store.set(name, value)
        if args.start:
            module.start()
    except ModuleError as error:
        SERVER_LOGGER.error(
            "Startup failed", extra={"event": "startup_failed", "error": str(error)}
        )
        return 2

    if not args.console:
        def shutdown_handler(signum: int, _frame) -> None:
            SERVER_LOGGER.info(
                "Received shutdown signal",
                extra={"event": "shutdown_signal", "signal": signum},
            )
            latch.event.set()

        signal.signal(signal.SIGTERM, shutdown_handler)
        signal.signal(signal.SIGINT, shutdown_handler)
        while not latch.event.wait(0.5):
            pass
    else:
        try:
            console.run(sys.stdin, sys.stdout)
        except KeyboardInterrupt:
            SERVER_LOGGER.info("Console interrupted", extra={"event": "console_interrupted"})

    if module.running:
        module.stop()
    return 1 if latch.fault is not None else 0


if __name__ == "__main__":
    sys.exit(main())
