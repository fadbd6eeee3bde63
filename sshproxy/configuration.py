# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""Runtime configuration handed to ProxyServer.bind().

This is the in-process form of the configuration: addresses, the
authenticator capability and the host key provider. The YAML file form lives
in sshproxy.models.proxy_config and is turned into a ProxyConfiguration by
sshproxy.host_config.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Optional

from sshproxy.errors import ConfigurationError

if TYPE_CHECKING:
    from sshproxy.security import KeyPairProvider

DEFAULT_SUBSYSTEM = "netconf"

Authenticator = Callable[[str, str], bool]


@dataclass(frozen=True)
class Address:
    """A host:port pair."""

    host: str
    port: int

    @classmethod
    def parse(cls, value: str) -> "Address":
        """Parse "host:port" (IPv6 hosts in brackets: "[::1]:830")."""
        host, sep, port = value.rpartition(":")
        if not sep or not host:
            raise ConfigurationError(f"Invalid address {value!r}, expected host:port")
        if host.startswith("[") and host.endswith("]"):
            host = host[1:-1]
        try:
            return cls(host, int(port))
        except ValueError:
            raise ConfigurationError(f"Invalid port in address {value!r}")

    def validate(self, name: str) -> None:
        if not self.host:
            raise ConfigurationError(f"{name}: host must not be empty")
        if not 0 <= self.port <= 65535:
            raise ConfigurationError(f"{name}: port {self.port} out of range")

    def __str__(self) -> str:
        if ":" in self.host:
            return f"[{self.host}]:{self.port}"
        return f"{self.host}:{self.port}"


@dataclass(frozen=True)
class TransportOptions:
    """Timeouts enforced by the SSH transport, in seconds."""

    idle_timeout: float
    auth_timeout: float


@dataclass
class ProxyConfiguration:
    """Everything ProxyServer needs to start listening.

    auth_timeout defaults to idle_timeout when not given.
    """

    binding_address: Address
    backend_address: Address
    authenticator: Authenticator
    key_pair_provider: "KeyPairProvider"
    idle_timeout: float
    auth_timeout: Optional[float] = None
    subsystem: str = DEFAULT_SUBSYSTEM

    @property
    def effective_auth_timeout(self) -> float:
        if self.auth_timeout is None:
            return self.idle_timeout
        return self.auth_timeout

    def validate(self) -> None:
        """Check the configuration once, before anything is started.

        Raises:
            ConfigurationError: On the first invalid field.
        """
        self.binding_address.validate("binding_address")
        self.backend_address.validate("backend_address")
        if self.backend_address.port == 0:
            raise ConfigurationError("backend_address: port must not be 0")
        if not callable(self.authenticator):
            raise ConfigurationError("authenticator must be callable")
        if self.key_pair_provider is None:
            raise ConfigurationError("key_pair_provider is required")
        if self.idle_timeout <= 0:
            raise ConfigurationError(f"idle_timeout must be positive, got {self.idle_timeout}")
        if self.effective_auth_timeout <= 0:
            raise ConfigurationError(
                f"auth_timeout must be positive, got {self.effective_auth_timeout}"
            )
        if not self.subsystem:
            raise ConfigurationError("subsystem name must not be empty")

    def transport_options(self) -> TransportOptions:
        return TransportOptions(
            idle_timeout=float(self.idle_timeout),
            auth_timeout=float(self.effective_auth_timeout),
        )
