"""Logging setup for sshproxy.

Provides:
1. Centralized logging configuration under the "sshproxy" logger namespace
2. Debug mode via SSHPROXY_DEBUG env var or programmatic flag
3. Log levels via SSHPROXY_LOG_LEVEL env var
4. Rotating log file plus Rich console output for interactive commands
5. Daemon mode: plain stderr output for the long-running server

Usage:
    from sshproxy.utils.logging import get_logger, configure_logging

    # In the CLI entry point:
    configure_logging(debug=debug, daemon=True)

    # In any module:
    logger = get_logger(__name__)
    logger.info("Session opened")
    logger.error("Backend unavailable", exc=exception)

Environment Variables:
    SSHPROXY_DEBUG=1          Enable debug mode (verbose output)
    SSHPROXY_LOG_LEVEL=DEBUG  Set log level (DEBUG, INFO, WARNING, ERROR)
    SSHPROXY_LOG_FILE=/path   Override log file location
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from rich.console import Console

from sshproxy.paths import ProxyPaths

_configured = False
_defaults_only = False
_debug_mode = False
_daemon_mode = False
_log_file: Optional[Path] = None

console = Console(stderr=True)

LOG_FILE_MAX_BYTES = 10 * 1024 * 1024
LOG_FILE_BACKUPS = 5


def _get_log_file() -> Path:
    global _log_file
    if _log_file:
        return _log_file

    env_log_file = os.environ.get("SSHPROXY_LOG_FILE")
    if env_log_file:
        _log_file = Path(env_log_file)
    else:
        _log_file = ProxyPaths.log_dir() / "sshproxy.log"

    return _log_file


def is_debug_mode() -> bool:
    """Check if debug mode is enabled."""
    return _debug_mode or os.environ.get("SSHPROXY_DEBUG", "").lower() in ("1", "true", "yes")


def configure_logging(
    debug: bool = False,
    daemon: bool = False,
    log_level: Optional[str] = None,
    log_file: Optional[Path] = None,
) -> None:
    """Configure the logging system.

    Should be called once at startup. Later calls are ignored, except that
    an explicit call replaces the defaults get_logger() applied at import.

    Args:
        debug: Enable debug mode (verbose output)
        daemon: Daemon mode (stderr handler, no Rich formatting)
        log_level: Override log level (DEBUG, INFO, WARNING, ERROR)
        log_file: Override log file path
    """
    global _configured, _defaults_only, _debug_mode, _daemon_mode, _log_file

    if _configured and not _defaults_only:
        return

    _debug_mode = debug or is_debug_mode()
    _daemon_mode = daemon

    if log_file:
        _log_file = log_file

    if log_level:
        level_name = log_level.upper()
    else:
        level_name = os.environ.get("SSHPROXY_LOG_LEVEL", "DEBUG" if _debug_mode else "INFO").upper()

    level = getattr(logging, level_name, logging.INFO)

    root_logger = logging.getLogger("sshproxy")
    root_logger.setLevel(logging.DEBUG)
    for handler in root_logger.handlers:
        handler.close()
    root_logger.handlers.clear()

    # File handler always captures everything
    try:
        path = _get_log_file()
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            path,
            maxBytes=LOG_FILE_MAX_BYTES,
            backupCount=LOG_FILE_BACKUPS,
            encoding="utf-8",
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(
            logging.Formatter(
                "%(asctime)s | %(levelname)-8s | %(name)s | %(threadName)s | %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
        root_logger.addHandler(file_handler)
    except OSError:
        # Can't write log file, continue without it
        pass

    if _daemon_mode:
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setLevel(level)
        stderr_handler.setFormatter(
            logging.Formatter("%(asctime)s %(name)s: %(levelname)s: %(message)s")
        )
        root_logger.addHandler(stderr_handler)

    _configured = True
    _defaults_only = False

    root_logger.debug(
        f"Logging configured: level={level_name}, debug={_debug_mode}, daemon={_daemon_mode}"
    )


class ProxyLogger:
    """Module logger with optional Rich console echo.

    In daemon mode the stderr handler already shows records, so nothing is
    echoed to the console. Interactive commands (genkey, show-config) get
    colored console output for info and above.
    """

    def __init__(self, name: str):
        self.name = name
        self.logger = logging.getLogger(name)
        self.console = console

    def _echo(self, markup: str, console_output: bool) -> None:
        if console_output and not _daemon_mode:
            self.console.print(markup)

    def debug(self, message: str, console_output: bool = False) -> None:
        self.logger.debug(message)
        self._echo(f"[dim][DEBUG] {message}[/dim]", console_output and is_debug_mode())

    def info(self, message: str, console_output: bool = False) -> None:
        self.logger.info(message)
        self._echo(f"[blue]{message}[/blue]", console_output)

    def success(self, message: str, console_output: bool = True) -> None:
        self.logger.info(message)
        self._echo(f"[green]✓ {message}[/green]", console_output)

    def warning(self, message: str, console_output: bool = False) -> None:
        self.logger.warning(message)
        self._echo(f"[yellow]⚠ {message}[/yellow]", console_output)

    def error(
        self,
        message: str,
        exc: Optional[BaseException] = None,
        console_output: bool = False,
    ) -> None:
        """Log an error, with the exception's traceback when one is given."""
        if exc:
            self.logger.error(f"{message}: {exc}", exc_info=exc)
            message = f"{message}: {exc}"
        else:
            self.logger.error(message)
        self._echo(f"[red]✗ {message}[/red]", console_output)


def get_logger(name: str) -> ProxyLogger:
    """Get a logger for a module, configuring defaults on first use.

    Args:
        name: Module name (typically __name__)
    """
    global _defaults_only

    if not _configured:
        configure_logging()
        _defaults_only = True

    if not name.startswith("sshproxy"):
        name = f"sshproxy.{name}"

    return ProxyLogger(name)


def get_daemon_logger(name: str, debug: bool = False) -> ProxyLogger:
    """Get a logger configured for daemon mode (stderr, no Rich)."""
    configure_logging(debug=debug, daemon=True)
    return get_logger(name)
