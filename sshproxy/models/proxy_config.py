# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT

"""Pydantic models for the proxy configuration file (~/.config/sshproxy/config.yml)."""

from typing import Dict, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


class EndpointConfig(BaseModel):
    """A host and TCP port."""

    host: str
    port: int = Field(ge=0, le=65535)

    @field_validator("host")
    @classmethod
    def host_not_empty(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("host must not be empty")
        return v.strip()


class HostKeyConfig(BaseModel):
    """Host key file. Generated on first start when missing."""

    path: Optional[str] = None  # Defaults to ~/.local/share/sshproxy/host_key
    algorithm: str = "ssh-ed25519"


class ThreadPoolConfig(BaseModel):
    """Worker pool shared by all connections.

    One worker runs the event loop, the rest serve blocking work such as
    password checks, so at least two are required.
    """

    workers: int = Field(default=8, ge=2)


class ProxyConfigModel(BaseModel):
    """Top-level proxy configuration."""

    bind: EndpointConfig = Field(default_factory=lambda: EndpointConfig(host="0.0.0.0", port=830))
    backend: EndpointConfig = Field(
        default_factory=lambda: EndpointConfig(host="127.0.0.1", port=2831)
    )
    subsystem: str = "netconf"
    idle_timeout: float = Field(default=1800.0, gt=0)  # seconds
    auth_timeout: Optional[float] = Field(default=None, gt=0)  # seconds, None = idle_timeout
    host_key: HostKeyConfig = Field(default_factory=HostKeyConfig)
    users: Dict[str, str] = Field(default_factory=dict)  # username -> password
    thread_pool: ThreadPoolConfig = Field(default_factory=ThreadPoolConfig)

    @model_validator(mode="after")
    def backend_port_set(self) -> "ProxyConfigModel":
        if self.backend.port == 0:
            raise ValueError("backend.port must not be 0")
        return self
