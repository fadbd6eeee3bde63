# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""SSH transport used by ProxyServer.

SecureTransport is the narrow interface the proxy needs from an SSH library:
configuration setters plus start/stop. AsyncSSHTransport implements it with
AsyncSSH; tests can substitute a fake.

Architecture:
- The listening socket is opened by an Acceptor of the shared AsyncIOService
- asyncssh serves on that socket, on the service's event loop
- Password auth only, delegated to PasswordAuthenticatorAdapter
- login_timeout bounds authentication; connections that relay no data for
  idle_timeout seconds are closed by a per-connection timer
- Session channels are handed to the subsystem factory (SessionBridgeFactory)
- No PTYs, shells, exec, port/agent/X11 forwarding
"""

from __future__ import annotations

import asyncio
import socket
from abc import ABC, abstractmethod
from typing import Any, List, Optional, Set

import asyncssh
from asyncssh.encryption import get_default_encryption_algs

from sshproxy.bridge import SessionBridgeFactory
from sshproxy.configuration import Address, TransportOptions
from sshproxy.io_service import Acceptor, AsyncIOService
from sshproxy.security import CipherPolicy, KeyPairProvider, PasswordAuthenticatorAdapter
from sshproxy.utils.logging import get_logger

logger = get_logger(__name__)


class SecureTransport(ABC):
    """Configuration surface and lifecycle of an SSH server implementation."""

    def __init__(self) -> None:
        self.cipher_policy = CipherPolicy()
        self.authenticator: Optional[PasswordAuthenticatorAdapter] = None
        self.key_pair_provider: Optional[KeyPairProvider] = None
        self.io_service: Optional[AsyncIOService] = None
        self.options: Optional[TransportOptions] = None
        self.subsystem_factory: Optional[SessionBridgeFactory] = None

    def set_cipher_policy(self, policy: CipherPolicy) -> None:
        self.cipher_policy = policy

    def set_authenticator(self, authenticator: PasswordAuthenticatorAdapter) -> None:
        self.authenticator = authenticator

    def set_key_pair_provider(self, provider: KeyPairProvider) -> None:
        self.key_pair_provider = provider

    def set_io_service(self, service: AsyncIOService) -> None:
        self.io_service = service

    def set_options(self, options: TransportOptions) -> None:
        self.options = options

    def set_subsystem_factory(self, factory: SessionBridgeFactory) -> None:
        self.subsystem_factory = factory

    def _check_configured(self) -> None:
        missing = [
            name
            for name in ("authenticator", "key_pair_provider", "io_service", "options")
            if getattr(self, name) is None
        ]
        if missing:
            raise RuntimeError(f"Transport not configured: missing {', '.join(missing)}")

    @property
    @abstractmethod
    def bound_address(self) -> Optional[Address]:
        """Address actually listened on, None when not started."""

    @abstractmethod
    async def start(self, address: Address) -> None:
        """Bind to address and start accepting connections.

        Raises:
            OSError: If the listening socket cannot be opened.
        """

    @abstractmethod
    async def stop(self) -> None:
        """Stop listening and close every live connection."""


class ProxySSHServer(asyncssh.SSHServer):
    """Per-connection SSH server callbacks."""

    def __init__(self, transport: "AsyncSSHTransport"):
        self._transport = transport
        self._conn: Optional[asyncssh.SSHServerConnection] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._idle_timer: Optional[asyncio.TimerHandle] = None
        self._last_activity = 0.0
        self.username: Optional[str] = None
        self.peer: Any = None

    def connection_made(self, conn: asyncssh.SSHServerConnection) -> None:
        self._conn = conn
        self.peer = conn.get_extra_info("peername")
        self._loop = asyncio.get_running_loop()
        self._transport.connection_opened(conn)
        self.touch()
        self._schedule_idle_check(self._transport.options.idle_timeout)
        logger.debug(f"SSH connection from {self.peer}")

    def touch(self) -> None:
        """Record activity on this connection, postponing the idle timeout."""
        if self._loop is not None:
            self._last_activity = self._loop.time()

    def _schedule_idle_check(self, delay: float) -> None:
        self._idle_timer = self._loop.call_later(delay, self._check_idle)

    def _check_idle(self) -> None:
        timeout = self._transport.options.idle_timeout
        remaining = timeout - (self._loop.time() - self._last_activity)
        if remaining > 0:
            self._schedule_idle_check(remaining)
            return

        self._idle_timer = None
        logger.info(f"Closing connection from {self.peer} ({self.username}): idle for {timeout}s")
        self._conn.close()

    def connection_lost(self, exc: Optional[Exception]) -> None:
        if self._idle_timer is not None:
            self._idle_timer.cancel()
            self._idle_timer = None
        self._transport.connection_closed(self._conn)
        if exc:
            logger.info(f"SSH connection from {self.peer} ({self.username}) lost: {exc}")
        else:
            logger.debug(f"SSH connection from {self.peer} ({self.username}) closed")

    def begin_auth(self, username: str) -> bool:
        self.username = username
        return True

    def password_auth_supported(self) -> bool:
        return True

    def public_key_auth_supported(self) -> bool:
        return False

    def kbdint_auth_supported(self) -> bool:
        return False

    async def validate_password(self, username: str, password: str) -> bool:
        self.touch()
        # The authenticator may block, run it on the shared pool
        accepted = await self._transport.io_service.run_blocking(
            self._transport.authenticator.authenticate, username, password, self._conn
        )
        if accepted:
            logger.info(f"User {username} authenticated from {self.peer}")
        else:
            logger.warning(f"Authentication failed for {username} from {self.peer}")
        return accepted

    def session_requested(self) -> Any:
        factory = self._transport.subsystem_factory
        if factory is None:
            return False
        bridge = factory.create()
        bridge.on_activity = self.touch
        return bridge


class AsyncSSHTransport(SecureTransport):
    """SecureTransport backed by asyncssh."""

    def __init__(self) -> None:
        super().__init__()
        self._acceptor: Optional[Acceptor] = None
        self._connections: Set[asyncssh.SSHServerConnection] = set()

    @property
    def bound_address(self) -> Optional[Address]:
        if self._acceptor is None:
            return None
        return self._acceptor.bound_address

    @property
    def active_connections(self) -> int:
        return len(self._connections)

    def encryption_algs(self) -> List[str]:
        """asyncssh default ciphers after the cipher policy is applied."""
        offered = list(get_default_encryption_algs())
        return [alg.decode("ascii") for alg in self.cipher_policy.apply(offered)]

    def connection_opened(self, conn: asyncssh.SSHServerConnection) -> None:
        self._connections.add(conn)

    def connection_closed(self, conn: Optional[asyncssh.SSHServerConnection]) -> None:
        self._connections.discard(conn)

    async def start(self, address: Address) -> None:
        self._check_configured()
        host_keys = self.key_pair_provider.load_keys()
        acceptor = self.io_service.create_acceptor(
            lambda sock: self._listen(sock, host_keys)
        )
        await acceptor.bind(address)
        self._acceptor = acceptor
        logger.info(f"SSH proxy listening on {acceptor.bound_address}")

    async def _listen(self, sock: socket.socket, host_keys: List[asyncssh.SSHKey]) -> Any:
        return await asyncssh.listen(
            sock=sock,
            server_factory=lambda: ProxySSHServer(self),
            server_host_keys=host_keys,
            encryption_algs=self.encryption_algs(),
            encoding=None,  # Binary mode, payload is never decoded
            allow_pty=False,
            agent_forwarding=False,
            x11_forwarding=False,
            login_timeout=self.options.auth_timeout,
        )

    async def stop(self) -> None:
        acceptor, self._acceptor = self._acceptor, None
        if acceptor is not None:
            acceptor.close()

        connections = list(self._connections)
        for conn in connections:
            conn.close()
        if connections:
            await asyncio.gather(
                *(conn.wait_closed() for conn in connections), return_exceptions=True
            )
            logger.info(f"Closed {len(connections)} active SSH connections")
        self._connections.clear()

        if acceptor is not None:
            await acceptor.wait_closed()
