"""Shared pytest fixtures for integration and unit tests."""

from __future__ import annotations

import subprocess
import sys
from pathlib import Path
from typing import Generator, TypedDict

import pytest

from httpd.domain.parameters import PARAM_IFACE_ADDRESS, ParamStore
from httpd.lifecycle.controller import HttpServerModule
from tests.utils.http import reserve_port, wait_for_port

PROJECT_ROOT = Path(__file__).resolve().parent.parent
CONSOLE_ENTRYPOINT = PROJECT_ROOT / "main.py"
INDEX_BODY = b"<html><body>hello from the test root</body></html>\n"
TEST_KEY_BITS = "2048"


class ConsoleProcessInfo(TypedDict):
    """Metadata describing a running console process."""

    base_url: str
    host: str
    port: int
    directory: Path
    process: subprocess.Popen[str]


@pytest.fixture(name="www")
def www_fixture(tmp_path: Path) -> Path:
    """Directory with an index.html, served by the module under test."""

    root = tmp_path / "www"
    root.mkdir()
    (root / "index.html").write_bytes(INDEX_BODY)
    return root


@pytest.fixture(name="store")
def store_fixture() -> ParamStore:
    """Parameter store whose interface address resolves to loopback."""

    return ParamStore(resolvers={PARAM_IFACE_ADDRESS: lambda: "127.0.0.1"})


@pytest.fixture(name="module")
def module_fixture(
    store: ParamStore, www: Path
) -> Generator[HttpServerModule, None, None]:
    """Server module bound to a free loopback port, stopped on teardown."""

    module = HttpServerModule(store, shutdown_grace_seconds=5)
    store.set("http.server.path", str(www))
    store.set("http.server.address", "127.0.0.1")
    store.set("http.server.port", str(reserve_port()))
    store.set("http.server.certificate.bits", TEST_KEY_BITS)
    yield module
    if module.running:
        module.stop()


def launch_console(
    directory: Path, extra_args: list[str] | None = None
) -> Generator[ConsoleProcessInfo, None, None]:
    host = "127.0.0.1"
    port = reserve_port(host)
    args = [
        sys.executable,
        str(CONSOLE_ENTRYPOINT),
        "--no-console",
        "--start",
        "--set",
        f"http.server.path={directory}",
        "--set",
        f"http.server.address={host}",
        "--set",
        f"http.server.port={port}",
        "--shutdown-grace-seconds",
        "5",
    ]
    if extra_args:
        args.extend(extra_args)

    with subprocess.Popen(
        args,
        cwd=PROJECT_ROOT,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
    ) as process:
        try:
            wait_for_port(host, port)
        except Exception:
            process.terminate()
            stdout, stderr = process.communicate(timeout=5)
            print(f"\nConsole stdout:\n{stdout}")
            print(f"\nConsole stderr:\n{stderr}")
            raise

        yield {
            "base_url": f"http://{host}:{port}",
            "host": host,
            "port": port,
            "directory": directory,
            "process": process,
        }

        if process.poll() is None:
            process.terminate()
            try:
                process.wait(timeout=10)
            except subprocess.TimeoutExpired:
                process.kill()


@pytest.fixture(name="console_process")
def console_process_fixture(www: Path) -> Generator[ConsoleProcessInfo, None, None]:
    """Run ``main.py`` as a separate process serving the test root over HTTP."""

    yield from launch_console(www)
