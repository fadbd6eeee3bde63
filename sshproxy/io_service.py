# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""Shared asynchronous I/O service backed by a caller-supplied thread pool.

One AsyncIOService wraps one asyncio event loop (the "channel group"). The
loop runs on a worker of the supplied ThreadPoolExecutor, and blocking helpers
of the proxy go to that same pool through run_blocking(), so acceptors,
connectors and password checks share the one pool instead of creating their
own. The pool is never installed as the loop's default executor: closing a
loop shuts its default executor down.

The pool belongs to the caller. Closing the service stops and closes the
loop, never the pool. It needs at least two workers, one for the loop and
one for blocking work.

Usage:
    executor = ThreadPoolExecutor(max_workers=8)
    service = AsyncIOService(executor)
    acceptor = service.create_acceptor(serve_socket)
    service.run(acceptor.bind(Address("127.0.0.1", 830)))
    ...
    service.close(immediate=True)
    executor.shutdown()
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import socket
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Awaitable, Callable, Coroutine, Optional, Tuple, TypeVar

from sshproxy.configuration import Address
from sshproxy.errors import IOServiceClosed, ResourceCreationFailure
from sshproxy.utils.logging import get_logger

logger = get_logger(__name__)

SHUTDOWN_TIMEOUT = 5.0  # seconds to wait for the loop to terminate
STARTUP_TIMEOUT = 5.0  # seconds to wait for a pool worker to pick up the loop
MIN_WORKERS = 2  # the loop itself plus one for blocking work
LISTEN_BACKLOG = 100

T = TypeVar("T")

# Receives a bound, listening, non-blocking socket and returns a listener
# exposing close() and wait_closed().
AcceptHandler = Callable[[socket.socket], Awaitable[Any]]
ProtocolFactory = Callable[[], asyncio.Protocol]


class Acceptor:
    """Listening endpoint bound to the service's event loop."""

    def __init__(self, service: "AsyncIOService", handler: AcceptHandler):
        self._service = service
        self._handler = handler
        self._listener: Any = None
        self.bound_address: Optional[Address] = None

    async def bind(self, address: Address) -> None:
        """Open the listening socket and hand it to the handler.

        Raises:
            OSError: If the socket cannot be bound (address in use, permission).
            IOServiceClosed: If the service was closed.
        """
        self._service.check_open()

        family = socket.AF_INET6 if ":" in address.host else socket.AF_INET
        sock = socket.create_server(
            (address.host, address.port), family=family, backlog=LISTEN_BACKLOG
        )
        sock.setblocking(False)

        try:
            self._listener = await self._handler(sock)
        except BaseException:
            sock.close()
            raise

        host, port = sock.getsockname()[:2]
        self.bound_address = Address(host, port)
        logger.debug(f"Acceptor bound to {self.bound_address}")

    def close(self) -> None:
        """Stop accepting new connections."""
        if self._listener is not None:
            self._listener.close()

    async def wait_closed(self) -> None:
        """Wait until the listener and the connections it accepted are closed."""
        listener, self._listener = self._listener, None
        if listener is None:
            return
        await listener.wait_closed()
        logger.debug(f"Acceptor on {self.bound_address} closed")


class Connector:
    """Outbound connection factory bound to the service's event loop."""

    def __init__(self, service: "AsyncIOService", handler: ProtocolFactory):
        self._service = service
        self._handler = handler

    async def connect(self, address: Address) -> Tuple[asyncio.Transport, asyncio.Protocol]:
        """Open a TCP connection using the connector's protocol factory.

        Raises:
            OSError: If the connection is refused or unreachable.
            IOServiceClosed: If the service was closed.
        """
        self._service.check_open()
        return await self._service.loop.create_connection(
            self._handler, address.host, address.port
        )


class AsyncIOService:
    """Event loop running on, and delegating blocking work to, a shared pool."""

    def __init__(
        self,
        executor: ThreadPoolExecutor,
        name: str = "sshproxy-io",
        shutdown_timeout: float = SHUTDOWN_TIMEOUT,
        startup_timeout: float = STARTUP_TIMEOUT,
    ):
        if not isinstance(executor, ThreadPoolExecutor):
            raise ResourceCreationFailure(
                f"Cannot create channel group from {type(executor).__name__}, "
                "a ThreadPoolExecutor is required"
            )
        if executor._max_workers < MIN_WORKERS:
            raise ResourceCreationFailure(
                f"Cannot create channel group from a pool of {executor._max_workers} "
                f"worker(s), at least {MIN_WORKERS} are required"
            )

        self.name = name
        self.shutdown_timeout = shutdown_timeout
        self._executor = executor
        self._closed = False
        self._lock = threading.Lock()
        self._started = threading.Event()
        self._loop_thread: Optional[int] = None

        self._loop = asyncio.new_event_loop()

        try:
            self._runner = executor.submit(self._run)
        except RuntimeError as e:
            self._loop.close()
            raise ResourceCreationFailure(f"Cannot create channel group: {e}") from e

        if not self._started.wait(startup_timeout):
            self._closed = True
            if self._runner.cancel():
                self._loop.close()
            else:
                self._loop.call_soon_threadsafe(self._loop.stop)
            raise ResourceCreationFailure(
                f"Cannot create channel group: no pool worker picked up the "
                f"event loop within {startup_timeout}s"
            )

        logger.debug(f"I/O service {name} started")

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        return self._loop

    @property
    def executor(self) -> ThreadPoolExecutor:
        return self._executor

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def terminated(self) -> bool:
        """True once the event loop has stopped and been closed."""
        return self._runner.done()

    def check_open(self) -> None:
        if self._closed:
            raise IOServiceClosed(f"I/O service {self.name} is closed")

    def create_acceptor(self, handler: AcceptHandler) -> Acceptor:
        self.check_open()
        return Acceptor(self, handler)

    def create_connector(self, handler: ProtocolFactory) -> Connector:
        self.check_open()
        return Connector(self, handler)

    def run_blocking(self, func: Callable[..., T], *args: Any) -> "asyncio.Future[T]":
        """Run a blocking callable on the shared pool; await from the loop."""
        return self._loop.run_in_executor(self._executor, func, *args)

    def run(self, coro: Coroutine[Any, Any, T], timeout: Optional[float] = None) -> T:
        """Run a coroutine on the event loop from another thread and wait for it.

        Raises:
            IOServiceClosed: If the service is closed.
            concurrent.futures.TimeoutError: If timeout expires (the coroutine
                is cancelled).
        """
        if self._closed:
            coro.close()
            raise IOServiceClosed(f"I/O service {self.name} is closed")
        if threading.get_ident() == self._loop_thread:
            coro.close()
            raise RuntimeError("AsyncIOService.run() called from its own event loop")

        try:
            future = asyncio.run_coroutine_threadsafe(coro, self._loop)
        except RuntimeError as e:
            coro.close()
            raise IOServiceClosed(f"I/O service {self.name} is closed") from e

        try:
            return future.result(timeout=timeout)
        except concurrent.futures.TimeoutError:
            future.cancel()
            raise

    def _run(self) -> None:
        """Body of the pool worker that owns the event loop."""
        self._loop_thread = threading.get_ident()
        asyncio.set_event_loop(self._loop)
        self._loop.call_soon(self._started.set)
        try:
            self._loop.run_forever()
        finally:
            try:
                self._cancel_pending()
                self._loop.run_until_complete(self._loop.shutdown_asyncgens())
            finally:
                asyncio.set_event_loop(None)
                self._loop.close()
                logger.debug(f"I/O service {self.name} event loop closed")

    def _cancel_pending(self) -> None:
        pending = asyncio.all_tasks(self._loop)
        if not pending:
            return
        for task in pending:
            task.cancel()
        self._loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        logger.debug(f"Cancelled {len(pending)} pending tasks on {self.name}")

    async def _drain(self) -> None:
        """Let in-flight tasks finish, then stop the loop."""
        current = asyncio.current_task()
        pending = [task for task in asyncio.all_tasks() if task is not current]
        if pending:
            await asyncio.wait(pending, timeout=self.shutdown_timeout)
        self._loop.stop()

    def close(self, immediate: bool = True) -> None:
        """Stop the event loop and wait up to shutdown_timeout for it to end.

        Immediate close cancels everything in flight. Graceful close waits for
        in-flight tasks first and falls back to an immediate close when the
        bound expires. Errors during the wait are logged at debug level only;
        after close() returns the service is closed regardless. Calling close()
        again is a no-op.
        """
        with self._lock:
            if self._closed:
                return
            self._closed = True

        try:
            if not immediate:
                asyncio.run_coroutine_threadsafe(self._drain(), self._loop)
                try:
                    self._runner.result(timeout=self.shutdown_timeout)
                    return
                except concurrent.futures.TimeoutError:
                    logger.debug(f"Graceful close of {self.name} timed out, forcing")

            self._loop.call_soon_threadsafe(self._loop.stop)
            self._runner.result(timeout=self.shutdown_timeout)
        except Exception as e:
            logger.debug(f"Exception caught while closing channel group {self.name}: {e}")
        finally:
            logger.debug(f"I/O service {self.name} closed")
