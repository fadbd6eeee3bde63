# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""Subsystem session that bridges an SSH channel to the backend service.

Each SSH session channel gets one SessionBridge. Once the client requests the
configured subsystem, the bridge connects to the backend address and relays
bytes in both directions without looking at them:

    REQUESTED -> BACKEND_CONNECTING -> BRIDGING -> CLOSED

End of stream or an error on either side closes both sides. A backend that
cannot be reached closes the client channel with exit status 1; there is no
retry.

Backend connections are opened through the shared AsyncIOService connector,
on the same event loop and pool as the SSH listener, rather than on a
separate client loop.
"""

from __future__ import annotations

import asyncio
import enum
import threading
from typing import Callable, List, Optional, Set

import asyncssh

from sshproxy.configuration import DEFAULT_SUBSYSTEM, Address
from sshproxy.errors import BackendUnavailable, RelayError, TransportError
from sshproxy.io_service import AsyncIOService
from sshproxy.utils.logging import get_logger

logger = get_logger(__name__)

BACKEND_FAILURE_EXIT_STATUS = 1


class BridgeState(enum.Enum):
    REQUESTED = "requested"
    BACKEND_CONNECTING = "backend_connecting"
    BRIDGING = "bridging"
    CLOSED = "closed"


class _BackendProtocol(asyncio.Protocol):
    """Backend side of a bridge; forwards every event to the bridge."""

    def __init__(self, bridge: "SessionBridge"):
        self._bridge = bridge

    def data_received(self, data: bytes) -> None:
        self._bridge.backend_data_received(data)

    def eof_received(self) -> bool:
        self._bridge.backend_eof_received()
        return False

    def pause_writing(self) -> None:
        self._bridge.pause_client()

    def resume_writing(self) -> None:
        self._bridge.resume_client()

    def connection_lost(self, exc: Optional[Exception]) -> None:
        self._bridge.backend_connection_lost(exc)


class SessionBridge(asyncssh.SSHServerSession):
    """Relays one SSH subsystem channel to one backend connection."""

    def __init__(
        self,
        io_service: AsyncIOService,
        backend_address: Address,
        subsystem: str = DEFAULT_SUBSYSTEM,
        on_closed: Optional[Callable[["SessionBridge"], None]] = None,
    ):
        self._io_service = io_service
        self._backend_address = backend_address
        self._subsystem = subsystem
        self._on_closed = on_closed

        self._state = BridgeState.REQUESTED
        self._chan: Optional[asyncssh.SSHServerChannel] = None
        self._backend: Optional[asyncio.Transport] = None
        self._connect_task: Optional[asyncio.Task] = None
        self._subsystem_granted = False
        self._pending: List[bytes] = []
        self.username: Optional[str] = None
        self.error: Optional[Exception] = None
        self.on_activity: Optional[Callable[[], None]] = None

    @property
    def state(self) -> BridgeState:
        return self._state

    @property
    def backend(self) -> Optional[asyncio.Transport]:
        return self._backend

    # SSH channel callbacks

    def connection_made(self, chan: asyncssh.SSHServerChannel) -> None:
        self._chan = chan
        self.username = chan.get_extra_info("username")

    def subsystem_requested(self, subsystem: str) -> bool:
        if subsystem != self._subsystem:
            logger.warning(f"Rejected subsystem {subsystem!r} requested by {self.username}")
            return False
        self._subsystem_granted = True
        return True

    def session_started(self) -> None:
        if not self._subsystem_granted or self._state is not BridgeState.REQUESTED:
            self.close()
            return

        self._state = BridgeState.BACKEND_CONNECTING
        self._chan.pause_reading()
        self._connect_task = asyncio.ensure_future(self._connect_backend())

    def data_received(self, data: bytes, datatype: asyncssh.DataType) -> None:
        # Only the main data stream is relayed
        if datatype is not None:
            return
        self._touch()
        if self._backend is None:
            self._pending.append(data)
            return
        self._backend.write(data)

    def eof_received(self) -> bool:
        logger.debug(f"Client {self.username} sent EOF")
        self.close()
        return False

    def pause_writing(self) -> None:
        if self._backend is not None:
            self._backend.pause_reading()

    def resume_writing(self) -> None:
        if self._backend is not None and not self._backend.is_closing():
            self._backend.resume_reading()

    def connection_lost(self, exc: Optional[Exception]) -> None:
        if exc:
            self._relay_failed(f"Client channel of {self.username} lost", exc)
        self._chan = None
        self.close()

    # Backend callbacks

    async def _connect_backend(self) -> None:
        try:
            connector = self._io_service.create_connector(lambda: _BackendProtocol(self))
            transport, _ = await connector.connect(self._backend_address)
        except (OSError, TransportError) as e:
            self._backend_failed(
                BackendUnavailable(f"Backend {self._backend_address} unavailable: {e}")
            )
            return

        if self._state is BridgeState.CLOSED:
            transport.close()
            return

        self._backend = transport
        self._state = BridgeState.BRIDGING
        logger.info(f"Bridging {self.username} to backend {self._backend_address}")

        pending, self._pending = self._pending, []
        for data in pending:
            transport.write(data)
        self._chan.resume_reading()

    def backend_data_received(self, data: bytes) -> None:
        if self._chan is None:
            return
        self._touch()
        try:
            self._chan.write(data)
        except (BrokenPipeError, OSError) as e:
            self._relay_failed("Failed writing to client channel", e)
            self.close()

    def backend_eof_received(self) -> None:
        logger.debug(f"Backend closed stream for {self.username}")
        self.close()

    def backend_connection_lost(self, exc: Optional[Exception]) -> None:
        if exc:
            self._relay_failed("Backend connection lost", exc)
        self._backend = None
        self.close()

    def pause_client(self) -> None:
        if self._chan is not None:
            self._chan.pause_reading()

    def resume_client(self) -> None:
        if self._chan is not None:
            self._chan.resume_reading()

    def _touch(self) -> None:
        if self.on_activity is not None:
            self.on_activity()

    # Shutdown

    def _relay_failed(self, message: str, exc: BaseException) -> None:
        self.error = RelayError(f"{message}: {exc}")
        logger.warning(f"{message} ({self.username}): {exc}")

    def _backend_failed(self, error: BackendUnavailable) -> None:
        self.error = error
        logger.warning(f"{error} (session of {self.username})")
        chan = self._chan
        if chan is not None:
            try:
                chan.write_stderr(f"{error}\r\n".encode("utf-8"))
                chan.exit(BACKEND_FAILURE_EXIT_STATUS)
            except OSError as e:
                logger.debug(f"Could not report backend failure to client: {e}")
        self.close()

    def close(self) -> None:
        """Close both sides; further calls do nothing."""
        if self._state is BridgeState.CLOSED:
            return

        was_bridging = self._state is BridgeState.BRIDGING
        self._state = BridgeState.CLOSED
        self._pending.clear()

        task = self._connect_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

        backend, self._backend = self._backend, None
        if backend is not None:
            backend.close()

        chan = self._chan
        if chan is not None:
            chan.close()

        if was_bridging:
            logger.info(f"Bridge for {self.username} to {self._backend_address} closed")

        if self._on_closed:
            self._on_closed(self)


class SessionBridgeFactory:
    """Creates a SessionBridge per SSH session and tracks the live ones."""

    def __init__(
        self,
        io_service: AsyncIOService,
        backend_address: Address,
        name: str = DEFAULT_SUBSYSTEM,
    ):
        self.io_service = io_service
        self.backend_address = backend_address
        self.name = name
        self._active: Set[SessionBridge] = set()
        self._lock = threading.Lock()

    def create(self) -> SessionBridge:
        bridge = SessionBridge(
            self.io_service,
            self.backend_address,
            self.name,
            on_closed=self._bridge_closed,
        )
        with self._lock:
            self._active.add(bridge)
        return bridge

    __call__ = create

    def _bridge_closed(self, bridge: SessionBridge) -> None:
        with self._lock:
            self._active.discard(bridge)

    @property
    def active_sessions(self) -> int:
        with self._lock:
            return len(self._active)
