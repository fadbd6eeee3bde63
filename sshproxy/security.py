# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""Security policy surface of the proxy.

- CipherPolicy: strips weak stream ciphers from the advertised algorithm list
- PasswordAuthenticatorAdapter: wraps a (username, password) -> bool capability
- KeyPairProvider: host key material for the SSH handshake
- StaticPasswordAuthenticator: credential check backed by the config file
"""

from __future__ import annotations

import hmac
import os
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Iterable, List, MutableSequence, Optional, TypeVar

import asyncssh

from sshproxy.configuration import Authenticator
from sshproxy.utils.logging import get_logger

logger = get_logger(__name__)

# RC4 based ciphers
WEAK_CIPHERS = ("arcfour128", "arcfour256")

DEFAULT_HOST_KEY_ALGORITHM = "ssh-ed25519"

T = TypeVar("T")


def cipher_name(entry: Any) -> str:
    """Name of an algorithm entry: bytes/str names or objects with a .name."""
    if isinstance(entry, bytes):
        return entry.decode("ascii")
    if isinstance(entry, str):
        return entry
    return str(getattr(entry, "name"))


class CipherPolicy:
    """Removes weak ciphers from an ordered list of offered ciphers."""

    def __init__(self, excluded: Iterable[str] = WEAK_CIPHERS):
        self.excluded = tuple(excluded)

    def is_excluded(self, entry: Any) -> bool:
        name = cipher_name(entry)
        return any(weak in name for weak in self.excluded)

    def apply(self, offered: MutableSequence[T]) -> MutableSequence[T]:
        """Drop every excluded entry in place and return the same list.

        Matching is by substring, so vendor suffixed variants go too. The
        remaining entries keep their relative order.
        """
        offered[:] = [entry for entry in offered if not self.is_excluded(entry)]
        return offered


class PasswordAuthenticatorAdapter:
    """Adapts an external authenticator capability to the transport."""

    def __init__(self, authenticator: Authenticator):
        self._authenticator = authenticator

    def authenticate(self, username: str, password: str, session: Any = None) -> bool:
        return bool(self._authenticator(username, password))


class StaticPasswordAuthenticator:
    """Checks credentials against a fixed username -> password mapping."""

    def __init__(self, users: Dict[str, str]):
        self._users = dict(users)

    def __call__(self, username: str, password: str) -> bool:
        expected = self._users.get(username)
        if expected is None:
            return False
        return hmac.compare_digest(expected.encode("utf-8"), password.encode("utf-8"))


class KeyPairProvider(ABC):
    """Source of the server's host keys."""

    @abstractmethod
    def load_keys(self) -> List[asyncssh.SSHKey]:
        """Return the host private keys to offer during the handshake."""


class GeneratedKeyPairProvider(KeyPairProvider):
    """Generates one in-memory host key on first use."""

    def __init__(self, algorithm: str = DEFAULT_HOST_KEY_ALGORITHM):
        self.algorithm = algorithm
        self._key: Optional[asyncssh.SSHKey] = None
        self._lock = threading.Lock()

    def load_keys(self) -> List[asyncssh.SSHKey]:
        with self._lock:
            if self._key is None:
                self._key = asyncssh.generate_private_key(self.algorithm)
                logger.info(f"Generated {self.algorithm} host key")
            return [self._key]


class FileKeyPairProvider(KeyPairProvider):
    """Loads the host key from disk, generating and saving it if missing."""

    def __init__(self, path: Path, algorithm: str = DEFAULT_HOST_KEY_ALGORITHM):
        self.path = Path(path).expanduser()
        self.algorithm = algorithm
        self._lock = threading.Lock()

    def load_keys(self) -> List[asyncssh.SSHKey]:
        with self._lock:
            if self.path.exists():
                return [asyncssh.read_private_key(str(self.path))]
            return [self._generate()]

    def _generate(self) -> asyncssh.SSHKey:
        key = asyncssh.generate_private_key(self.algorithm)
        self.path.parent.mkdir(parents=True, exist_ok=True)

        # Create with 0600 before any key material is written
        fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "wb") as f:
            f.write(key.export_private_key("openssh"))
        os.chmod(self.path, 0o600)

        logger.info(f"Generated {self.algorithm} host key at {self.path}")
        return key
