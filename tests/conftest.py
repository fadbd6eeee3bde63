# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""Pytest fixtures for sshproxy tests.

Everything runs locally: the proxy listens on 127.0.0.1 with a kernel-chosen
port and the backend is a threaded TCP server that records (and by default
echoes) what it receives.
"""

import os
import socket
import socketserver
import tempfile
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import pytest

# Keep test runs from writing into the user's data dir
os.environ.setdefault("SSHPROXY_LOG_FILE", str(Path(tempfile.gettempdir()) / "sshproxy-tests.log"))

from sshproxy.configuration import Address, ProxyConfiguration  # noqa: E402
from sshproxy.io_service import AsyncIOService  # noqa: E402
from sshproxy.security import GeneratedKeyPairProvider, StaticPasswordAuthenticator  # noqa: E402

USERS = {"admin": "secret"}


def unused_port() -> int:
    """Port that nothing listens on (at the time of the call)."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


def wait_until(predicate, timeout=5.0, interval=0.02):
    """Poll predicate from a test thread until it holds or timeout expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


class RecordingBackend:
    """Threaded TCP backend standing in for the management protocol server.

    Args:
        echo: Send every received chunk straight back.
        hangup: Close each connection right after accepting it.
    """

    def __init__(self, echo: bool = True, hangup: bool = False):
        self.echo = echo
        self.hangup = hangup
        self.received = bytearray()
        self.connections = 0
        self.connected = threading.Event()
        self.closed = threading.Event()
        self.lock = threading.Lock()

        backend = self

        class Handler(socketserver.BaseRequestHandler):
            def handle(self):
                with backend.lock:
                    backend.connections += 1
                backend.connected.set()
                try:
                    if backend.hangup:
                        return
                    while True:
                        data = self.request.recv(65536)
                        if not data:
                            break
                        with backend.lock:
                            backend.received.extend(data)
                        if backend.echo:
                            self.request.sendall(data)
                except OSError:
                    pass
                finally:
                    backend.closed.set()

        self.server = socketserver.ThreadingTCPServer(("127.0.0.1", 0), Handler)
        self.server.daemon_threads = True
        host, port = self.server.server_address[:2]
        self.address = Address(host, port)
        self._thread = threading.Thread(
            target=self.server.serve_forever, daemon=True, name="test-backend"
        )

    def start(self) -> "RecordingBackend":
        self._thread.start()
        return self

    def stop(self) -> None:
        self.server.shutdown()
        self.server.server_close()
        self._thread.join(timeout=5.0)

    def data(self) -> bytes:
        with self.lock:
            return bytes(self.received)


@pytest.fixture
def executor():
    """Caller-owned thread pool shared by everything under test."""
    pool = ThreadPoolExecutor(max_workers=4, thread_name_prefix="test-io")
    yield pool
    pool.shutdown(wait=False)


@pytest.fixture
def io_service(executor):
    service = AsyncIOService(executor)
    yield service
    service.close(immediate=True)


@pytest.fixture
def backend():
    server = RecordingBackend().start()
    yield server
    server.stop()


@pytest.fixture(scope="session")
def key_pair_provider():
    """One generated host key for the whole run."""
    return GeneratedKeyPairProvider()


@pytest.fixture
def make_configuration(key_pair_provider):
    """Build a ProxyConfiguration listening on 127.0.0.1 with a free port."""

    def _make(backend_address: Address, **overrides) -> ProxyConfiguration:
        values = dict(
            binding_address=Address("127.0.0.1", 0),
            backend_address=backend_address,
            authenticator=StaticPasswordAuthenticator(USERS),
            key_pair_provider=key_pair_provider,
            idle_timeout=30.0,
        )
        values.update(overrides)
        return ProxyConfiguration(**values)

    return _make
