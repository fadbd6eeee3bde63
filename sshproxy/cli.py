# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""sshproxy command line interface.

`sshproxy serve` is the composition root: it owns the thread pool, builds the
ProxyServer with it and tears both down on SIGINT/SIGTERM.
"""

import signal
import sys
import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.table import Table

from sshproxy import __version__
from sshproxy.errors import ProxyError
from sshproxy.host_config import ProxyHostConfig
from sshproxy.security import DEFAULT_HOST_KEY_ALGORITHM, FileKeyPairProvider
from sshproxy.server import ProxyServer
from sshproxy.utils.logging import get_daemon_logger, get_logger

console = Console()

config_option = click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Config file (default: $SSHPROXY_CONFIG or ~/.config/sshproxy/config.yml)",
)


@click.group(invoke_without_command=True)
@click.version_option(version=__version__, prog_name="sshproxy")
@click.pass_context
def cli(ctx):
    """sshproxy - SSH proxy bridging a subsystem channel to a local backend.

    Examples:
        sshproxy serve                     # Run the proxy
        sshproxy genkey                    # Create the host key
        sshproxy show-config               # Print the effective configuration
    """
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@cli.command()
@config_option
@click.option("--debug", is_flag=True, help="Verbose logging")
def serve(config_path: Optional[Path], debug: bool):
    """Run the proxy until SIGINT/SIGTERM."""
    logger = get_daemon_logger("sshproxy.serve", debug=debug)

    try:
        host_config = ProxyHostConfig(config_path, strict=True)
        configuration = host_config.build_configuration()
    except ProxyError as e:
        logger.error("Invalid configuration", exc=e)
        sys.exit(2)

    stop_event = threading.Event()

    def _handle_signal(signum, frame):
        logger.info(f"Received signal {signum}, shutting down")
        stop_event.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    executor = ThreadPoolExecutor(
        max_workers=host_config.model.thread_pool.workers, thread_name_prefix="sshproxy-io"
    )
    server = ProxyServer(executor)
    try:
        try:
            server.bind(configuration)
        except (ProxyError, OSError) as e:
            logger.error("Failed to start proxy", exc=e)
            sys.exit(1)

        # Short waits keep the main thread responsive to signals
        while not stop_event.wait(1.0):
            pass
    finally:
        server.close()
        executor.shutdown(wait=True)


@cli.command()
@config_option
@click.option(
    "--path",
    "key_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Key file (default: host_key.path from the config)",
)
@click.option("--algorithm", default=None, help=f"Key algorithm (default: {DEFAULT_HOST_KEY_ALGORITHM})")
def genkey(config_path: Optional[Path], key_path: Optional[Path], algorithm: Optional[str]):
    """Create the host key file if it does not exist."""
    host_config = ProxyHostConfig(config_path)
    path = key_path or host_config.host_key_path
    algorithm = algorithm or host_config.model.host_key.algorithm

    if path.exists():
        console.print(f"[yellow]Host key already exists: {path}[/yellow]")
        return

    key = FileKeyPairProvider(path, algorithm).load_keys()[0]
    get_logger("sshproxy.genkey").success(f"Created {algorithm} host key at {path}")
    console.print(key.export_public_key().decode("ascii").strip(), style="dim")


@cli.command(name="show-config")
@config_option
def show_config(config_path: Optional[Path]):
    """Print the effective configuration."""
    host_config = ProxyHostConfig(config_path)

    table = Table(title=f"SSHPROXY CONFIG ({host_config.config_path})")
    table.add_column("SETTING", style="cyan")
    table.add_column("VALUE", style="green")

    bind = host_config.get("bind")
    backend = host_config.get("backend")
    auth_timeout = host_config.get("auth_timeout")
    table.add_row("bind", f"{bind['host']}:{bind['port']}")
    table.add_row("backend", f"{backend['host']}:{backend['port']}")
    table.add_row("subsystem", host_config.get("subsystem"))
    table.add_row("idle_timeout", f"{host_config.get('idle_timeout')}s")
    table.add_row(
        "auth_timeout",
        f"{auth_timeout}s" if auth_timeout is not None else "same as idle_timeout",
    )
    table.add_row("host_key", f"{host_config.host_key_path} ({host_config.get('host_key', 'algorithm')})")
    table.add_row("users", ", ".join(sorted(host_config.get("users", default={}))) or "(none)")
    table.add_row("thread_pool.workers", str(host_config.get("thread_pool", "workers")))

    console.print(table)


def main():
    cli()


if __name__ == "__main__":
    main()
