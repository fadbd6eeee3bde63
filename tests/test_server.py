"""Tests for sshproxy/server.py

ProxyServer lifecycle against a fake SecureTransport; the real asyncssh
transport is covered by test_integration.py.
"""

import asyncio
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Optional

import pytest

from sshproxy.bridge import SessionBridgeFactory
from sshproxy.configuration import Address, TransportOptions
from sshproxy.errors import (
    BindFailure,
    ConfigurationError,
    ProxyStateError,
    ResourceCreationFailure,
    ShutdownInterruption,
    TransportError,
)
from sshproxy.security import CipherPolicy, PasswordAuthenticatorAdapter
from sshproxy.server import ProxyServer, ServerState
from sshproxy.transport import SecureTransport


class FakeTransport(SecureTransport):
    """Records what ProxyServer configures and how it is started and stopped."""

    def __init__(self, start_error=None, stop_error=None, start_delay=0.0, stop_delay=0.0):
        super().__init__()
        self.start_error = start_error
        self.start_delay = start_delay
        self.stop_error = stop_error
        self.stop_delay = stop_delay
        self.started_on = []
        self.stopped = 0
        self._bound: Optional[Address] = None

    @property
    def bound_address(self):
        return self._bound

    async def start(self, address):
        self._check_configured()
        self.started_on.append(address)
        # Blocking work on the shared pool, like password checks
        await self.io_service.run_blocking(lambda: None)
        if self.start_delay:
            await asyncio.sleep(self.start_delay)
        if self.start_error is not None:
            error, self.start_error = self.start_error, None
            raise error
        self._bound = Address(address.host, address.port or 40830)

    async def stop(self):
        self.stopped += 1
        if self.stop_delay:
            await asyncio.sleep(self.stop_delay)
        if self.stop_error is not None:
            raise self.stop_error
        self._bound = None


@pytest.fixture
def configuration(make_configuration, backend):
    return make_configuration(backend.address, idle_timeout=120.0, auth_timeout=10.0)


class TestBind:
    def test_configures_transport(self, executor, configuration):
        transport = FakeTransport()
        server = ProxyServer(executor, transport)

        server.bind(configuration)
        try:
            assert server.state is ServerState.BOUND
            assert server.bound_address == Address("127.0.0.1", 40830)
            assert transport.started_on == [configuration.binding_address]

            assert isinstance(transport.cipher_policy, CipherPolicy)
            assert transport.cipher_policy.is_excluded("arcfour256")
            assert isinstance(transport.authenticator, PasswordAuthenticatorAdapter)
            assert transport.authenticator.authenticate("admin", "secret") is True
            assert transport.authenticator.authenticate("admin", "nope") is False
            assert transport.key_pair_provider is configuration.key_pair_provider
            assert transport.io_service is server.io_service
            assert transport.options == TransportOptions(idle_timeout=120.0, auth_timeout=10.0)

            factory = transport.subsystem_factory
            assert isinstance(factory, SessionBridgeFactory)
            assert factory.name == "netconf"
            assert factory.backend_address == configuration.backend_address
            assert factory.io_service is server.io_service
        finally:
            server.close()

    def test_io_service_runs_on_supplied_pool(self, executor, configuration):
        server = ProxyServer(executor, FakeTransport())

        server.bind(configuration)
        try:
            assert server.io_service.executor is executor
        finally:
            server.close()

    def test_bind_twice(self, executor, configuration):
        server = ProxyServer(executor, FakeTransport())
        server.bind(configuration)
        try:
            with pytest.raises(ProxyStateError):
                server.bind(configuration)
        finally:
            server.close()

    def test_bind_after_close(self, executor, configuration):
        server = ProxyServer(executor, FakeTransport())
        server.close()

        with pytest.raises(ProxyStateError):
            server.bind(configuration)

    def test_invalid_configuration(self, executor, make_configuration, backend):
        server = ProxyServer(executor, FakeTransport())

        with pytest.raises(ConfigurationError):
            server.bind(make_configuration(backend.address, idle_timeout=0))

        assert server.state is ServerState.CREATED
        assert server.io_service is None

    def test_bind_failure_is_retryable(self, executor, configuration):
        transport = FakeTransport(start_error=OSError(98, "Address already in use"))
        server = ProxyServer(executor, transport)

        with pytest.raises(BindFailure, match="Address already in use"):
            server.bind(configuration)

        assert server.state is ServerState.CREATED
        service = server.io_service

        server.bind(configuration)
        try:
            assert server.state is ServerState.BOUND
            assert server.io_service is service
            assert len(transport.started_on) == 2
        finally:
            server.close()

    def test_bind_failure_is_os_error(self, executor, configuration):
        server = ProxyServer(executor, FakeTransport(start_error=PermissionError(13, "denied")))

        with pytest.raises(OSError) as excinfo:
            server.bind(configuration)

        assert isinstance(excinfo.value, BindFailure)
        assert isinstance(excinfo.value.__cause__, PermissionError)
        server.close()

    def test_single_worker_pool_rejected(self, configuration):
        executor = ThreadPoolExecutor(max_workers=1)
        server = ProxyServer(executor, FakeTransport())
        try:
            begin = time.monotonic()
            with pytest.raises(ResourceCreationFailure):
                server.bind(configuration)

            assert time.monotonic() - begin < 5.0
            assert server.state is ServerState.CREATED
            assert server.io_service is None
        finally:
            server.close()
            executor.shutdown(wait=True)

    def test_start_timeout_is_not_bind_failure(self, executor, configuration, monkeypatch):
        monkeypatch.setattr("sshproxy.server.BIND_TIMEOUT", 0.2)
        server = ProxyServer(executor, FakeTransport(start_delay=30.0))

        with pytest.raises(TransportError, match="did not start") as excinfo:
            server.bind(configuration)

        assert not isinstance(excinfo.value, BindFailure)
        assert server.state is ServerState.CREATED
        server.close()
        assert server.io_service.terminated


class TestClose:
    """Shutdown of transport and I/O service"""

    def test_close_unbound(self, executor):
        server = ProxyServer(executor, FakeTransport())

        server.close()

        assert server.state is ServerState.CLOSED
        assert server.io_service is None

    def test_close_stops_transport_and_io_service(self, executor, configuration):
        transport = FakeTransport()
        server = ProxyServer(executor, transport)
        server.bind(configuration)

        server.close()

        assert server.state is ServerState.CLOSED
        assert transport.stopped == 1
        assert server.io_service.closed
        assert server.io_service.terminated

    def test_close_twice(self, executor, configuration):
        transport = FakeTransport()
        server = ProxyServer(executor, transport)
        server.bind(configuration)

        server.close()
        server.close()

        assert transport.stopped == 1

    def test_close_after_failed_bind(self, executor, configuration):
        transport = FakeTransport(start_error=OSError(98, "Address already in use"))
        server = ProxyServer(executor, transport)
        with pytest.raises(BindFailure):
            server.bind(configuration)

        server.close()

        assert transport.stopped == 0
        assert server.io_service.terminated

    def test_pool_survives_close(self, executor, configuration):
        server = ProxyServer(executor, FakeTransport())
        server.bind(configuration)

        server.close()

        assert not executor._shutdown
        assert executor.submit(lambda: 7).result(timeout=5) == 7

    def test_interrupted_stop(self, executor, configuration):
        transport = FakeTransport(stop_error=asyncio.CancelledError())
        server = ProxyServer(executor, transport)
        server.bind(configuration)

        with pytest.raises(ShutdownInterruption):
            server.close()

        assert server.state is ServerState.CLOSED
        assert server.io_service.terminated

        # Already closed, nothing left to interrupt
        server.close()

    def test_slow_stop_is_bounded(self, executor, configuration):
        transport = FakeTransport(stop_delay=30.0)
        server = ProxyServer(executor, transport, stop_timeout=0.2)
        server.bind(configuration)

        server.close()

        assert server.state is ServerState.CLOSED
        assert server.io_service.terminated

    def test_context_manager(self, executor, configuration):
        with ProxyServer(executor, FakeTransport()) as server:
            server.bind(configuration)
            assert server.state is ServerState.BOUND

        assert server.state is ServerState.CLOSED


class TestStats:
    def test_stats(self, executor, configuration):
        server = ProxyServer(executor, FakeTransport())

        assert server.get_stats() == {
            "state": "created",
            "bound_address": None,
            "active_connections": 0,
            "active_sessions": 0,
        }

        server.bind(configuration)
        try:
            stats = server.get_stats()
            assert stats["state"] == "bound"
            assert stats["bound_address"] == "127.0.0.1:40830"
        finally:
            server.close()

        assert server.get_stats()["state"] == "closed"
