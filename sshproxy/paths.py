# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""Centralized path definitions for sshproxy.

Usage:
    from sshproxy.paths import ProxyPaths

    config_file = ProxyPaths.config_file()
    host_key = ProxyPaths.host_key_file()
"""

import os
from pathlib import Path


class ProxyPaths:
    """XDG-style paths used by the sshproxy daemon and CLI."""

    @staticmethod
    def config_dir() -> Path:
        """~/.config/sshproxy/ (or $XDG_CONFIG_HOME/sshproxy)"""
        xdg = os.getenv("XDG_CONFIG_HOME")
        base = Path(xdg) if xdg else Path.home() / ".config"
        return base / "sshproxy"

    @staticmethod
    def config_file() -> Path:
        """$SSHPROXY_CONFIG, else ~/.config/sshproxy/config.yml"""
        env_path = os.getenv("SSHPROXY_CONFIG")
        if env_path:
            return Path(env_path).expanduser()
        return ProxyPaths.config_dir() / "config.yml"

    @staticmethod
    def data_dir() -> Path:
        """~/.local/share/sshproxy/ (or $XDG_DATA_HOME/sshproxy)"""
        xdg = os.getenv("XDG_DATA_HOME")
        base = Path(xdg) if xdg else Path.home() / ".local" / "share"
        return base / "sshproxy"

    @staticmethod
    def host_key_file() -> Path:
        """~/.local/share/sshproxy/host_key"""
        return ProxyPaths.data_dir() / "host_key"

    @staticmethod
    def log_dir() -> Path:
        """~/.local/share/sshproxy/logs/"""
        return ProxyPaths.data_dir() / "logs"
