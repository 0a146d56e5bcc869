"""Unit tests for the module lifecycle controller."""

import socket
import threading
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from httpd.domain.errors import (
    AlreadyRunning,
    BadParameter,
    CertificateProvisioningError,
    ListenFault,
    NotRunning,
)
from httpd.domain.parameters import ParamStore
from httpd.lifecycle.controller import HttpServerModule, expand_path
from httpd.lifecycle.state import ModuleState
from httpd.tls.provisioner import generate_self_signed as real_generate
from tests.utils.http import reserve_port, wait_until
from tests.utils.tls import certificate_matches_key


def test_parameters_are_registered(store: ParamStore):
    """Creating the module declares its parameters with their defaults."""
    HttpServerModule(store)
    assert store.raw("http.server.path") == "."
    assert store.raw("http.server.port") == "80"
    assert store.raw("http.server.certificate") == ""
    assert store.raw("http.server.key") == ""
    assert store.has("http.server.certificate.commonname")


def test_configure_resolves_snapshot_without_binding(module: HttpServerModule, www: Path):
    """configure() builds the config but opens no socket."""
    with patch("httpd.bootstrap.socket_factory.socket.create_server") as create_server:
        config = module.configure()

    create_server.assert_not_called()
    assert config.root == str(www)
    assert config.host == "127.0.0.1"
    assert config.address == f"127.0.0.1:{config.port}"
    assert config.tls is False
    assert config.cert_file is None and config.key_file is None
    assert module.config is config
    assert module.state is ModuleState.IDLE


def test_configure_expands_home_in_certificate_paths(
    module: HttpServerModule, store: ParamStore, tmp_path: Path, monkeypatch
):
    """'~' in certificate and key paths points at the home directory."""
    monkeypatch.setenv("HOME", str(tmp_path))
    store.set("http.server.certificate", "~/tls/cert.pem")
    store.set("http.server.key", "~/tls/key.pem")

    config = module.configure()

    assert config.cert_file == str(tmp_path / "tls" / "cert.pem")
    assert config.key_file == str(tmp_path / "tls" / "key.pem")
    assert config.tls is True
    assert (tmp_path / "tls" / "cert.pem").exists()


def test_expand_path_failure_is_bad_parameter():
    """Unknown users in '~user' cannot be expanded."""
    with pytest.raises(BadParameter, match="cannot expand"):
        expand_path("http.server.key", "~no-such-user-for-tests/key.pem")
    assert expand_path("http.server.key", "") == ""


def test_missing_root_is_bad_parameter(module: HttpServerModule, store: ParamStore, tmp_path: Path):
    """The served path must be an existing directory."""
    store.set("http.server.path", str(tmp_path / "nope"))
    with pytest.raises(BadParameter, match="http.server.path"):
        module.configure()
    assert module.config is None


def test_bad_address_aborts_configure(module: HttpServerModule, store: ParamStore):
    """A placeholder resolving to something invalid is reported on read."""
    store._resolvers["<broken>"] = lambda: "not-an-ip"  # pylint: disable=protected-access
    store.set("http.server.address", "<broken>")
    with pytest.raises(BadParameter, match="http.server.address"):
        module.configure()


def test_provisioning_failure_aborts_start(module: HttpServerModule, store: ParamStore, tmp_path: Path):
    """A generation failure leaves the module idle with no listener."""
    store.set("http.server.certificate", str(tmp_path / "cert.pem"))
    store.set("http.server.key", str(tmp_path / "key.pem"))
    with patch(
        "httpd.lifecycle.controller.ensure_certificate",
        side_effect=CertificateProvisioningError("disk full"),
    ):
        with pytest.raises(CertificateProvisioningError):
            module.start()
    assert module.state is ModuleState.IDLE
    assert module.listener is None


def test_start_twice_raises_already_running(module: HttpServerModule, store: ParamStore):
    """A second start fails and leaves the running configuration in place."""
    module.start()
    assert module.wait_until_listening()
    config, listener = module.config, module.listener

    store.set("http.server.port", "8081")
    with pytest.raises(AlreadyRunning):
        module.start()
    with pytest.raises(AlreadyRunning):
        module.configure()

    assert module.config is config
    assert module.listener is listener
    assert module.running


def test_stop_while_idle_raises_not_running_every_time(module: HttpServerModule):
    """Idle stop is consistently a NotRunning error with no side effects."""
    for _ in range(3):
        with pytest.raises(NotRunning):
            module.stop()
    assert module.state is ModuleState.IDLE


def test_start_stop_cycles_use_fresh_listeners(module: HttpServerModule):
    """Each running period gets its own listener object."""
    module.start()
    assert module.wait_until_listening()
    first = module.listener
    module.stop()
    assert module.listener is None

    module.start()
    assert module.wait_until_listening()
    assert module.listener is not first
    module.stop()
    assert module.state is ModuleState.IDLE


def test_concurrent_starts_only_one_wins(module: HttpServerModule):
    """Racing start() calls produce exactly one running listener."""
    barrier = threading.Barrier(4)
    outcomes = []

    def attempt():
        barrier.wait()
        try:
            module.start()
            outcomes.append("started")
        except AlreadyRunning:
            outcomes.append("rejected")

    threads = [threading.Thread(target=attempt) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert outcomes.count("started") == 1
    assert outcomes.count("rejected") == 3


def test_stop_right_after_start_does_not_race(module: HttpServerModule):
    """Stopping before the listener thread binds still shuts it down."""
    module.start()
    listener = module.listener
    module.stop()
    assert wait_until(lambda: listener.state.value == "closed")


def test_listen_fault_reaches_fault_handler_and_clears_state(store: ParamStore, www: Path):
    """A bind failure is delivered to the supervisor and the module goes idle."""
    faults = []
    delivered = threading.Event()

    def supervisor(fault):
        faults.append(fault)
        delivered.set()

    module = HttpServerModule(store, fault_handler=supervisor, shutdown_grace_seconds=1)
    with socket.create_server(("127.0.0.1", 0)) as busy:
        store.set("http.server.path", str(www))
        store.set("http.server.address", "127.0.0.1")
        store.set("http.server.port", str(busy.getsockname()[1]))
        module.start()
        assert delivered.wait(5.0)

    assert isinstance(faults[0], ListenFault)
    assert module.state is ModuleState.IDLE
    with pytest.raises(NotRunning):
        module.stop()


def test_default_fault_handler_logs_critical(store: ParamStore, caplog):
    """Without a supervisor the fault is logged at CRITICAL."""
    module = HttpServerModule(store)
    module.fault_handler(ListenFault("127.0.0.1:80", OSError("boom")))
    assert any(
        r.levelname == "CRITICAL" and getattr(r, "event", None) == "listen_fault"
        for r in caplog.records
    )


def test_concurrent_tls_starts_generate_one_pair(
    module: HttpServerModule, store: ParamStore, tmp_path: Path
):
    """Rejected starts never rewrite the pair the running listener loaded."""
    cert_file, key_file = tmp_path / "cert.pem", tmp_path / "key.pem"
    store.set("http.server.certificate", str(cert_file))
    store.set("http.server.key", str(key_file))
    generations = []

    def counting_generate(*args):
        generations.append(args)
        return real_generate(*args)

    barrier = threading.Barrier(3)
    outcomes = []

    def attempt():
        barrier.wait()
        try:
            module.start()
            outcomes.append("started")
        except AlreadyRunning:
            outcomes.append("rejected")

    with patch(
        "httpd.tls.provisioner.generate_self_signed", side_effect=counting_generate
    ):
        threads = [threading.Thread(target=attempt) for _ in range(3)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        generated = cert_file.read_bytes()

    assert len(generations) == 1
    assert sorted(outcomes) == ["rejected", "rejected", "started"]
    assert module.wait_until_listening()
    assert cert_file.read_bytes() == generated
    assert certificate_matches_key(str(cert_file), str(key_file))


def test_custom_access_logger_is_used(store: ParamStore, www: Path):
    """The access logger given at construction reaches the listener's handler."""
    access_logger = MagicMock()
    module = HttpServerModule(store, access_logger=access_logger)
    store.set("http.server.path", str(www))
    store.set("http.server.address", "127.0.0.1")
    store.set("http.server.port", str(reserve_port()))
    module.start()
    try:
        assert module.listener.handler_factory.access_logger is access_logger
    finally:
        module.stop()
