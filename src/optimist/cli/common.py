"""Shared utilities for Optimist CLI commands."""
import logging
from pathlib import Path
from typing import Optional

import click

from ..config import EngineConfig, load_config

# Verbosity levels
VERBOSITY_QUIET = 0
VERBOSITY_NORMAL = 1
VERBOSITY_VERBOSE = 2

_LOG_LEVELS = {
    VERBOSITY_QUIET: logging.ERROR,
    VERBOSITY_NORMAL: logging.WARNING,
    VERBOSITY_VERBOSE: logging.DEBUG,
}


def configure_logging(verbosity: int) -> None:
    """Route engine logs to stderr at a level matching the verbosity."""
    logging.basicConfig(
        level=_LOG_LEVELS.get(verbosity, logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def get_config(ctx_config_path: Optional[Path] = None) -> EngineConfig:
    """Get the engine configuration.

    Priority: --config flag > OPTIMIST_CONFIG env var > defaults.

    Args:
        ctx_config_path: Value from --config CLI option, if provided.
    """
    return load_config(Path(ctx_config_path) if ctx_config_path else None)


def should_print(verbosity: int, message_level: int) -> bool:
    """Determine if a message should be printed based on verbosity settings.

    Args:
        verbosity: Current verbosity level (0=quiet, 1=normal, 2=verbose).
        message_level: Minimum verbosity level required for this message.
    """
    return verbosity >= message_level


def echo_verbose(message: str, verbosity: int) -> None:
    """Print a message only in verbose mode."""
    if should_print(verbosity, VERBOSITY_VERBOSE):
        click.echo(message, err=False)


def echo_normal(message: str, verbosity: int) -> None:
    """Print a message in normal and verbose modes."""
    if should_print(verbosity, VERBOSITY_NORMAL):
        click.echo(message, err=False)


def echo_quiet(message: str, verbosity: int) -> None:
    """Print a critical message that should always be shown (even in quiet mode).

    Args:
        message: The critical message to print.
        verbosity: Current verbosity level (unused, but kept for consistency).
    """
    click.echo(message, err=False)
