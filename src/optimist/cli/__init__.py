"""Optimist CLI - developer tooling for the reconciliation engine

Command groups are organized into separate modules:
- config.py: config show, validate
- simulate.py: simulate
- journal.py: journal inspect
- common.py: shared utilities
"""
from pathlib import Path
import click

from .. import __version__
from .common import (
    VERBOSITY_NORMAL,
    VERBOSITY_QUIET,
    VERBOSITY_VERBOSE,
    configure_logging,
)
from .config import config_group
from .journal import journal_group
from .simulate import simulate


@click.group()
@click.version_option(version=__version__, prog_name="optimist")
@click.option('--config', 'config_path', type=click.Path(dir_okay=False), default=None,
              envvar='OPTIMIST_CONFIG', help='Engine configuration file (YAML)')
@click.option('--verbose', '-v', is_flag=True, default=False,
              help='Enable verbose output')
@click.option('--quiet', '-q', is_flag=True, default=False,
              help='Suppress non-essential output')
@click.pass_context
def cli(ctx, config_path, verbose, quiet):
    """Optimist - optimistic mutation reconciliation engine

    \b
    Key Commands:
        config show       Print the effective configuration
        config validate   Validate a configuration file
        simulate          Run a scripted scenario
        journal inspect   List journaled entities and operations

    \b
    Examples:
        optimist config validate engine.yaml
        optimist simulate scenarios/rollback.yaml
        optimist journal inspect state.db
    """
    ctx.ensure_object(dict)

    # Validate mutually exclusive flags
    if verbose and quiet:
        raise click.UsageError("--verbose and --quiet are mutually exclusive")

    if quiet:
        ctx.obj['verbosity'] = VERBOSITY_QUIET
    elif verbose:
        ctx.obj['verbosity'] = VERBOSITY_VERBOSE
    else:
        ctx.obj['verbosity'] = VERBOSITY_NORMAL

    ctx.obj['config_path'] = Path(config_path) if config_path else None
    configure_logging(ctx.obj['verbosity'])


cli.add_command(config_group, name='config')
cli.add_command(journal_group, name='journal')
cli.add_command(simulate)


def main():
    """Entry point for the CLI."""
    cli()


__all__ = [
    'cli',
    'main',
]
