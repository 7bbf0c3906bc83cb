"""Configuration commands for Optimist CLI."""
import sys
from pathlib import Path
import click

from ..config import EngineConfig
from ..errors import ConfigError
from .common import VERBOSITY_NORMAL, echo_normal, echo_quiet, get_config


@click.group()
def config_group():
    """Configuration management commands."""
    pass


@config_group.command('show')
@click.pass_context
def config_show(ctx) -> None:
    """Display the effective engine configuration as YAML.

    Examples:
        optimist config show
        optimist --config engine.yaml config show
    """
    verbosity = ctx.obj.get('verbosity', VERBOSITY_NORMAL)
    try:
        config = get_config(ctx.obj.get('config_path'))
    except ConfigError as e:
        echo_quiet(click.style(f"Error: {e.message}", fg="red"), verbosity)
        sys.exit(1)

    source = ctx.obj.get('config_path') or "defaults"
    echo_normal(click.style(f"Effective configuration ({source}):", fg="cyan", bold=True), verbosity)
    echo_quiet(config.to_yaml().rstrip(), verbosity)


@config_group.command('validate')
@click.argument('path', type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_context
def config_validate(ctx, path: Path) -> None:
    """Validate a configuration file.

    Args:
        path: YAML file with engine options (top level or under 'engine:')

    Examples:
        optimist config validate engine.yaml
    """
    verbosity = ctx.obj.get('verbosity', VERBOSITY_NORMAL)
    try:
        EngineConfig.from_yaml(path)
    except ConfigError as e:
        where = f" [{e.key}]" if e.key else ""
        echo_quiet(click.style(f"✗ Invalid configuration{where}: {e.message}", fg="red"), verbosity)
        sys.exit(1)

    echo_normal(click.style(f"✓ {path} is valid", fg="green"), verbosity)
