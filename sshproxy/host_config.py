# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""Configuration file loading for the sshproxy daemon."""

import logging
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import ValidationError

from sshproxy.configuration import Address, ProxyConfiguration
from sshproxy.errors import ConfigurationError
from sshproxy.models.proxy_config import ProxyConfigModel
from sshproxy.paths import ProxyPaths
from sshproxy.security import FileKeyPairProvider, StaticPasswordAuthenticator

logger = logging.getLogger(__name__)


class ProxyHostConfig:
    """Proxy configuration loaded from config.yml.

    A missing file means defaults. With strict=False an unreadable or invalid
    file is logged and replaced by defaults; with strict=True it raises
    ConfigurationError.
    """

    def __init__(self, config_path: Optional[Path] = None, strict: bool = False):
        self.config_path = Path(config_path) if config_path else ProxyPaths.config_file()
        self.strict = strict
        self.model = self._load()

    def _load(self) -> ProxyConfigModel:
        if not self.config_path.exists():
            logger.debug(f"No config at {self.config_path}, using defaults")
            return ProxyConfigModel()

        try:
            with open(self.config_path) as f:
                raw_config = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            return self._fail(f"Failed to load config from {self.config_path}: {e}")

        if not isinstance(raw_config, dict):
            return self._fail(f"Config {self.config_path} must be a mapping")

        try:
            return ProxyConfigModel.model_validate(raw_config)
        except ValidationError as e:
            return self._fail(f"Config validation errors in {self.config_path}: {e}")

    def _fail(self, message: str) -> ProxyConfigModel:
        if self.strict:
            raise ConfigurationError(message)
        logger.warning(message)
        return ProxyConfigModel()

    @property
    def host_key_path(self) -> Path:
        if self.model.host_key.path:
            return Path(self.model.host_key.path).expanduser()
        return ProxyPaths.host_key_file()

    def build_configuration(self) -> ProxyConfiguration:
        """Runtime configuration with the bundled authenticator and key provider."""
        if not self.model.users:
            logger.warning("No users configured, every login will be rejected")

        return ProxyConfiguration(
            binding_address=Address(self.model.bind.host, self.model.bind.port),
            backend_address=Address(self.model.backend.host, self.model.backend.port),
            authenticator=StaticPasswordAuthenticator(self.model.users),
            key_pair_provider=FileKeyPairProvider(
                self.host_key_path, self.model.host_key.algorithm
            ),
            idle_timeout=self.model.idle_timeout,
            auth_timeout=self.model.auth_timeout,
            subsystem=self.model.subsystem,
        )

    def get(self, *keys: str, default: Any = None) -> Any:
        """Get a nested config value, e.g. config.get("backend", "port")."""
        value: Any = self.model
        for key in keys:
            if hasattr(value, key):
                value = getattr(value, key)
            elif isinstance(value, dict) and key in value:
                value = value[key]
            else:
                return default
        if hasattr(value, "model_dump"):
            return value.model_dump()
        return value

