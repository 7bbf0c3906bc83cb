"""Journal inspection commands for Optimist CLI."""
import json
from pathlib import Path
import click

from ..journal import SQLiteJournal
from ..patches import encode_patch
from .common import VERBOSITY_NORMAL, echo_normal, echo_quiet


@click.group()
def journal_group():
    """Durable journal commands."""
    pass


@journal_group.command('inspect')
@click.argument('db', type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option('--json-output', is_flag=True, help='Output as JSON')
@click.pass_context
def journal_inspect(ctx, db: Path, json_output: bool) -> None:
    """List confirmed entities and in-flight operations in a journal.

    Args:
        db: SQLite journal file
        --json-output: Output as JSON (for scripts)

    Examples:
        optimist journal inspect ~/.myapp/optimist.sqlite
        optimist journal inspect state.db --json-output
    """
    verbosity = ctx.obj.get('verbosity', VERBOSITY_NORMAL)

    with SQLiteJournal(db) as journal:
        entities = journal.load_entities()
        operations = journal.load_operations()

    if json_output:
        payload = {
            "entities": {entity_id: state.to_dict() for entity_id, state in entities.items()},
            "operations": [
                {**operation.to_dict(), "conflict": conflict.to_dict() if conflict else None}
                for operation, conflict in operations
            ],
        }
        click.echo(json.dumps(payload, indent=2, default=str))
        return

    echo_normal(click.style(f"Entities ({len(entities)}):", fg="cyan", bold=True), verbosity)
    for entity_id, state in entities.items():
        fields = "<deleted>" if state.fields is None else json.dumps(state.fields, sort_keys=True)
        echo_quiet(f"  {entity_id} v{state.version}: {fields}", verbosity)

    echo_normal(click.style(f"\nOperations ({len(operations)}):", fg="cyan", bold=True), verbosity)
    if not operations:
        echo_normal(click.style("  No operations in flight.", fg="yellow"), verbosity)
    for operation, conflict in operations:
        status = operation.status.value
        if conflict is not None:
            status = f"{status} (remote v{conflict.remote_version})"
        echo_quiet(
            f"  {operation.op_id} {operation.entity_id} {operation.kind.value} "
            f"base=v{operation.base_version} attempt={operation.attempt} {status} "
            f"{json.dumps(encode_patch(operation.forward_patch), sort_keys=True)}",
            verbosity,
        )
