"""Scenario simulation command for Optimist CLI."""
import asyncio
import sys
from pathlib import Path
import click
import yaml

from ..errors import OptimistError
from ..simulation import run_scenario
from .common import VERBOSITY_NORMAL, echo_normal, echo_quiet, echo_verbose, get_config


@click.command('simulate')
@click.argument('scenario', type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_context
def simulate(ctx, scenario: Path) -> None:
    """Run a scripted scenario through the engine.

    Prints the effective state after every step. Exits with status 1 when
    any 'expect' step does not hold.

    Args:
        scenario: YAML file with 'entities' and 'steps' (and optional 'config')

    Examples:
        optimist simulate scenarios/rollback.yaml
        optimist -v simulate scenarios/conflict.yaml
    """
    verbosity = ctx.obj.get('verbosity', VERBOSITY_NORMAL)

    try:
        data = yaml.safe_load(scenario.read_text()) or {}
    except yaml.YAMLError as e:
        echo_quiet(click.style(f"Error: Invalid scenario YAML: {e}", fg="red"), verbosity)
        sys.exit(1)
    if not isinstance(data, dict):
        echo_quiet(click.style("Error: Scenario must be a mapping", fg="red"), verbosity)
        sys.exit(1)

    try:
        config = get_config(ctx.obj.get('config_path'))
        result = asyncio.run(run_scenario(data, config))
    except (OptimistError, ValueError, KeyError) as e:
        echo_quiet(click.style(f"Error: Scenario aborted: {e}", fg="red"), verbosity)
        sys.exit(1)

    echo_normal(click.style(f"Scenario {scenario.name}", fg="cyan", bold=True), verbosity)
    for line in result.lines:
        if line.lstrip().split(" ", 1)[-1].startswith("FAIL"):
            echo_normal(click.style(line, fg="red"), verbosity)
        else:
            echo_normal(line, verbosity)

    if result.op_ids:
        echo_verbose("\nOperations:", verbosity)
        for alias, op_id in result.op_ids.items():
            echo_verbose(f"  {alias}: {op_id}", verbosity)

    if not result.ok:
        echo_quiet(click.style(f"✗ {len(result.failures)} expectation(s) failed", fg="red"), verbosity)
        sys.exit(1)

    echo_normal(click.style("✓ All expectations held", fg="green"), verbosity)
