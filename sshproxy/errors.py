# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""Exception types raised by sshproxy.

Server lifecycle errors (bind, channel group creation, shutdown) propagate to
the caller. Session errors (backend unavailable, relay failures) only ever
close the session they belong to.
"""


class ProxyError(Exception):
    """Base class for all sshproxy errors."""


class ConfigurationError(ProxyError, ValueError):
    """Proxy configuration failed validation."""


class ProxyStateError(ProxyError, RuntimeError):
    """Operation not allowed in the server's current lifecycle state."""


class BindFailure(ProxyError, OSError):
    """Listening socket could not be opened."""


class TransportError(ProxyError, RuntimeError):
    """The asynchronous I/O layer failed."""


class ResourceCreationFailure(TransportError):
    """The shared event loop could not be built from the supplied thread pool."""


class IOServiceClosed(TransportError):
    """Work was submitted to an I/O service that has already been closed."""


class ShutdownInterruption(ProxyError, RuntimeError):
    """Stopping the SSH server was interrupted."""


class BackendUnavailable(ProxyError, ConnectionError):
    """Backend connection for a session could not be established."""


class RelayError(ProxyError, ConnectionError):
    """I/O error while relaying bytes between client and backend."""
