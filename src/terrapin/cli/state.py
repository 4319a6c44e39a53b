"""State commands for inspecting and reconciling recorded resources."""

import json

import click
from rich.markup import escape
from rich.panel import Panel
from rich.syntax import Syntax
from rich.table import Table

from terrapin.cli.common import console, exit_unexpected, exit_with_error, get_engine
from terrapin.declarations.ref import ResourceRef
from terrapin.state.models import ResourceStatus
from terrapin.utils.errors import EngineError, ErrorContext, StateError


def _parse_ref(value: str) -> ResourceRef:
    try:
        return ResourceRef.parse(value)
    except ValueError as e:
        raise click.BadParameter(str(e))


@click.group()
def state():
    """Inspect and reconcile recorded state."""


@state.command('list')
@click.pass_context
def list_resources(ctx):
    """List recorded resources."""
    try:
        store = get_engine(ctx).store
        resources = store.list()
        if not resources:
            console.print("[dim]No resources recorded[/dim]")
            return

        table = Table(title=f"State (serial {store.serial})", show_header=True)
        table.add_column("Resource", style="cyan")
        table.add_column("ID")
        table.add_column("Status")
        table.add_column("Depends on", style="dim")
        for resource in resources:
            status = resource.status.value
            if resource.status == ResourceStatus.UNKNOWN:
                status = f"[magenta]{status}[/magenta]"
            table.add_row(resource.key, resource.id or "", status, ", ".join(resource.dependencies))
        console.print(table)

    except EngineError as e:
        exit_with_error(e)
    except Exception as e:
        exit_unexpected(e, "state list")


@state.command('show')
@click.argument('ref')
@click.pass_context
def show(ctx, ref):
    """Show the recorded state of one resource."""
    target = _parse_ref(ref)
    try:
        resource = get_engine(ctx).store.get_ref(target)
        if resource is None:
            raise StateError(
                f"Resource not found in state: {target}",
                context=ErrorContext(resource_id=str(target))
            )
        document = json.dumps(resource.model_dump(mode='json'), indent=2, sort_keys=True)
        console.print(Panel(Syntax(document, "json"), title=str(target), border_style="cyan"))

    except EngineError as e:
        exit_with_error(e)
    except Exception as e:
        exit_unexpected(e, "state show")


@state.command('resolve')
@click.argument('ref')
@click.option('--id', 'physical_id', required=True, help='Identifier of the resource at the provider')
@click.pass_context
def resolve(ctx, ref, physical_id):
    """Mark a resource in unknown state as applied with the given id."""
    target = _parse_ref(ref)
    try:
        store = get_engine(ctx).store
        with store:
            resolved = store.resolve(target, physical_id)
        console.print(f"[green]✓[/green] {resolved.key} recorded as {escape(physical_id)}")

    except EngineError as e:
        exit_with_error(e)
    except Exception as e:
        exit_unexpected(e, "state resolve")


@state.command('forget')
@click.argument('ref')
@click.option('--yes', '-y', is_flag=True, help='Skip confirmation prompt')
@click.pass_context
def forget(ctx, ref, yes):
    """Drop a resource from state without touching the provider."""
    target = _parse_ref(ref)
    try:
        if not yes and not click.confirm(
            f"Forget {target}? The provider resource, if any, will no longer be managed",
            default=False
        ):
            console.print("[yellow]Cancelled.[/yellow]")
            return

        store = get_engine(ctx).store
        with store:
            store.forget(target)
        console.print(f"[green]✓[/green] {target} removed from state")

    except EngineError as e:
        exit_with_error(e)
    except Exception as e:
        exit_unexpected(e, "state forget")
