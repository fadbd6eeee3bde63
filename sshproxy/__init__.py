# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""sshproxy - SSH-terminating proxy that bridges a subsystem channel to a local backend."""

__version__ = "0.1.0"
