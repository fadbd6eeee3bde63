# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""SSH proxy server lifecycle.

ProxyServer terminates SSH, authenticates clients and bridges the configured
subsystem channel of every session to a backend service on a local address.

    executor = ThreadPoolExecutor(max_workers=8)
    server = ProxyServer(executor)
    server.bind(configuration)
    ...
    server.close()
    executor.shutdown()

Lifecycle: CREATED -> BOUND -> CLOSED. The shared AsyncIOService is created
once, on the first bind(), and closed once, on close(). The thread pool is
owned by the caller and is never shut down here.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import enum
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, Optional

from sshproxy.bridge import SessionBridgeFactory
from sshproxy.configuration import Address, ProxyConfiguration
from sshproxy.errors import BindFailure, ProxyStateError, ShutdownInterruption, TransportError
from sshproxy.io_service import SHUTDOWN_TIMEOUT, AsyncIOService
from sshproxy.security import CipherPolicy, PasswordAuthenticatorAdapter
from sshproxy.transport import AsyncSSHTransport, SecureTransport
from sshproxy.utils.logging import get_logger

logger = get_logger(__name__)

BIND_TIMEOUT = 30.0  # seconds


class ServerState(enum.Enum):
    CREATED = "created"
    BOUND = "bound"
    CLOSED = "closed"


class ProxyServer:
    """SSH server that delegates decrypted subsystem traffic to a backend."""

    def __init__(
        self,
        executor: ThreadPoolExecutor,
        transport: Optional[SecureTransport] = None,
        stop_timeout: float = SHUTDOWN_TIMEOUT,
    ):
        self._executor = executor
        self._transport = transport if transport is not None else AsyncSSHTransport()
        self._stop_timeout = stop_timeout
        self._io_service: Optional[AsyncIOService] = None
        self._bridge_factory: Optional[SessionBridgeFactory] = None
        self._state = ServerState.CREATED
        self._lock = threading.Lock()

    @property
    def state(self) -> ServerState:
        return self._state

    @property
    def io_service(self) -> Optional[AsyncIOService]:
        return self._io_service

    @property
    def transport(self) -> SecureTransport:
        return self._transport

    @property
    def bound_address(self) -> Optional[Address]:
        return self._transport.bound_address

    def bind(self, configuration: ProxyConfiguration) -> None:
        """Configure the SSH transport and start listening.

        Raises:
            ConfigurationError: If the configuration is invalid.
            ResourceCreationFailure: If the shared event loop cannot be created.
            BindFailure: If the listening socket cannot be opened. The server
                stays CREATED and bind() may be retried.
            TransportError: If the SSH server did not start within BIND_TIMEOUT.
                The server stays CREATED.
            ProxyStateError: If the server is already bound or closed.
        """
        with self._lock:
            if self._state is not ServerState.CREATED:
                raise ProxyStateError(f"Cannot bind a server in state {self._state.value}")

            configuration.validate()

            if self._io_service is None:
                self._io_service = AsyncIOService(self._executor)

            self._bridge_factory = SessionBridgeFactory(
                self._io_service,
                configuration.backend_address,
                configuration.subsystem,
            )

            transport = self._transport
            transport.set_cipher_policy(CipherPolicy())
            transport.set_authenticator(PasswordAuthenticatorAdapter(configuration.authenticator))
            transport.set_key_pair_provider(configuration.key_pair_provider)
            transport.set_io_service(self._io_service)
            transport.set_options(configuration.transport_options())
            transport.set_subsystem_factory(self._bridge_factory)

            try:
                self._io_service.run(
                    transport.start(configuration.binding_address), timeout=BIND_TIMEOUT
                )
            except concurrent.futures.TimeoutError as e:
                # An OSError subclass on 3.11+
                raise TransportError(
                    f"SSH server on {configuration.binding_address} did not start "
                    f"within {BIND_TIMEOUT}s"
                ) from e
            except OSError as e:
                raise BindFailure(f"Cannot listen on {configuration.binding_address}: {e}") from e

            self._state = ServerState.BOUND
            logger.info(
                f"Proxy bound to {self.bound_address}, "
                f"bridging subsystem {configuration.subsystem!r} to {configuration.backend_address}"
            )

    def close(self) -> None:
        """Stop accepting, close live sessions and release the I/O service.

        Never raises on a server that was not bound or is already closed.

        Raises:
            ShutdownInterruption: If stopping the transport was interrupted.
                The I/O service is released anyway.
        """
        with self._lock:
            if self._state is ServerState.CLOSED:
                return
            was_bound = self._state is ServerState.BOUND

            try:
                if was_bound:
                    self._stop_transport()
            except (
                concurrent.futures.CancelledError,
                asyncio.CancelledError,
                InterruptedError,
            ) as e:
                raise ShutdownInterruption("Interrupted while stopping SSH server") from e
            finally:
                self._state = ServerState.CLOSED
                if self._io_service is not None:
                    self._io_service.close(immediate=True)
                logger.info("Proxy closed")

    def _stop_transport(self) -> None:
        try:
            self._io_service.run(self._transport.stop(), timeout=self._stop_timeout)
        except concurrent.futures.TimeoutError:
            logger.warning(
                f"SSH server did not stop within {self._stop_timeout}s, forcing shutdown"
            )

    def get_stats(self) -> Dict[str, Any]:
        """Server state and session counts."""
        bound = self.bound_address
        return {
            "state": self._state.value,
            "bound_address": str(bound) if bound else None,
            "active_connections": getattr(self._transport, "active_connections", 0),
            "active_sessions": self._bridge_factory.active_sessions if self._bridge_factory else 0,
        }

    def __enter__(self) -> "ProxyServer":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()
