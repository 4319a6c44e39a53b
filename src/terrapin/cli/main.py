"""Main CLI entry point."""

import signal
import sys
from typing import Optional, Tuple

import click
from rich.markup import escape
from rich.panel import Panel
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskProgressColumn, TextColumn
from rich.table import Table

from terrapin import __version__
from terrapin.cli.common import console, exit_unexpected, exit_with_error, get_config, get_engine
from terrapin.cli.drift import drift, warn_drift
from terrapin.cli.state import state
from terrapin.config.parser import load_config
from terrapin.orchestrator.dependency_graph import DependencyGraph
from terrapin.orchestrator.executor import ApplyResult, ExecutionStatus
from terrapin.orchestrator.planner import Operation, OperationVerb, Plan
from terrapin.utils.errors import EngineError, IndeterminateProviderError
from terrapin.utils.logging import get_logger, setup_logging

logger = get_logger(__name__)

VERB_STYLES = {
    OperationVerb.CREATE: "[green]+ create[/green]",
    OperationVerb.UPDATE: "[yellow]~ update[/yellow]",
    OperationVerb.DELETE: "[red]- delete[/red]",
}

STATUS_MARKS = {
    ExecutionStatus.SUCCESS: "[green]✓[/green]",
    ExecutionStatus.FAILED: "[red]✗[/red]",
    ExecutionStatus.SKIPPED: "[dim]-[/dim]",
    ExecutionStatus.CANCELLED: "[yellow]⊘[/yellow]",
    ExecutionStatus.UNKNOWN: "[magenta]?[/magenta]",
}


@click.group()
@click.version_option(__version__, prog_name='terrapin')
@click.option('--config', 'config_path', type=click.Path(dir_okay=False), help='Path to terrapin.yaml')
@click.option('--state', 'state_path', help='State file path')
@click.option('--provider', type=click.Choice(['memory', 'aws']), help='Provider to use')
@click.option('--profile', help='AWS profile to use')
@click.option('--region', help='AWS region')
@click.option('--log-level', type=click.Choice(['debug', 'info', 'warning', 'error']), help='Console log level')
@click.pass_context
def cli(ctx, config_path, state_path, provider, profile, region, log_level):
    """Terrapin declarative infrastructure provisioning."""
    ctx.ensure_object(dict)

    overrides = {
        'state': {'path': state_path},
        'provider': {'name': provider, 'profile': profile, 'region': region},
        'logging': {'level': log_level},
    }
    try:
        config = load_config(config_path, overrides)
    except EngineError as e:
        exit_with_error(e)

    ctx.obj['config'] = config
    setup_logging(config.logging.level, config.logging.dir)


cli.add_command(drift)
cli.add_command(state)


def _paths(ctx: click.Context, paths: Tuple[str, ...]) -> Tuple[str, ...]:
    return paths or tuple(get_config(ctx).declarations)


def _print_plan(plan: Plan) -> None:
    """Render a plan as a table."""
    if plan.blocked:
        console.print("\n[bold yellow]Blocked (needs 'terrapin state resolve' or 'forget'):[/bold yellow]")
        for blocked in plan.blocked:
            console.print(f"  [yellow]![/yellow] {blocked.target}: {escape(blocked.reason)}")

    if plan.is_empty():
        console.print("\n[green]No changes.[/green] Infrastructure matches the declarations.")
        return

    table = Table(title="Plan", show_header=True)
    table.add_column("#", justify="right", style="dim")
    table.add_column("Action")
    table.add_column("Resource", style="cyan")
    table.add_column("Rank", justify="right")
    table.add_column("Changes")

    for position, operation in enumerate(plan.operations, 1):
        table.add_row(
            str(position),
            VERB_STYLES[operation.verb],
            str(operation.target),
            str(operation.dependency_rank),
            _describe_changes(operation),
        )

    console.print()
    console.print(table)
    summary = plan.summary()
    console.print(
        f"\nPlan: [green]{summary['create']} to create[/green], "
        f"[yellow]{summary['update']} to update[/yellow], "
        f"[red]{summary['delete']} to delete[/red]."
    )


def _describe_changes(operation: Operation) -> str:
    if operation.verb == OperationVerb.UPDATE:
        return escape("\n".join(f"{name}: {old!r} -> {new!r}" for name, old, new in operation.changes))
    if operation.verb == OperationVerb.DELETE and operation.prior is not None:
        return escape(operation.prior.id or "")
    return ""


class RichProgressCallback:
    """Progress callback that displays updates using Rich."""

    def __init__(self, progress: Progress, task_id, total: int):
        self.progress = progress
        self.task_id = task_id
        self.completed = 0
        self.progress.update(task_id, total=total)

    def __call__(self, operation: Operation, status: ExecutionStatus, detail: Optional[str]) -> None:
        if status == ExecutionStatus.IN_PROGRESS:
            self.progress.update(self.task_id, description=f"[cyan]{operation.verb.value}:[/cyan] {operation.target}")
            return

        self.completed += 1
        self.progress.update(
            self.task_id,
            completed=self.completed,
            description=f"{STATUS_MARKS.get(status, '')} {operation}"
        )
        if status != ExecutionStatus.SUCCESS:
            self.progress.console.print(
                f"  {STATUS_MARKS.get(status, '')} {operation}: {escape(detail or status.value)}"
            )


def _confirmer(yes: bool, action: str):
    def confirm(plan: Plan) -> bool:
        _print_plan(plan)
        if yes:
            return True
        return click.confirm(f"\nDo you want to {action}?", default=False)
    return confirm


def _run_with_progress(ctx: click.Context, run, title: str) -> Tuple[Plan, Optional[ApplyResult]]:
    """Run an engine apply or destroy with a progress bar and Ctrl-C cancellation."""
    engine = get_engine(ctx)
    holder = {}

    def on_interrupt(signum, frame):
        console.print("\n[yellow]Interrupted: finishing in-flight operations, press Ctrl-C again to abort[/yellow]")
        signal.signal(signal.SIGINT, signal.default_int_handler)
        engine.cancel()

    def progress_callback(operation, status, detail):
        if 'callback' not in holder:
            # Progress only starts once the plan is confirmed
            progress = Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                BarColumn(),
                TaskProgressColumn(),
                console=console
            )
            progress.start()
            task_id = progress.add_task(f"[cyan]{title}...", total=None)
            holder['progress'] = progress
            holder['callback'] = RichProgressCallback(progress, task_id, holder['total'])
        holder['callback'](operation, status, detail)

    def confirm_and_count(confirm):
        def wrapped(plan: Plan) -> bool:
            holder['total'] = len(plan.operations)
            return confirm(plan)
        return wrapped

    previous = signal.signal(signal.SIGINT, on_interrupt)
    try:
        return run(engine, confirm_and_count, progress_callback)
    finally:
        signal.signal(signal.SIGINT, previous)
        if 'progress' in holder:
            holder['progress'].stop()


def _report(plan: Plan, result: Optional[ApplyResult], action: str) -> None:
    """Print the outcome and exit non-zero unless everything succeeded."""
    if result is None:
        console.print(f"\n[yellow]{action.capitalize()} cancelled.[/yellow] Nothing was changed.")
        return

    if plan.is_empty():
        if plan.blocked:
            console.print("[yellow]Nothing was run because the remaining changes are blocked.[/yellow]")
        return

    if result.is_success():
        console.print(Panel.fit(
            f"[green]✓ {action.capitalize()} complete[/green]\n\n"
            f"Applied: {len(result.applied)}\n"
            f"Duration: {result.duration:.2f}s",
            title=f"{action.capitalize()} Complete",
            border_style="green"
        ))
        if plan.blocked:
            console.print(f"[yellow]{len(plan.blocked)} resource(s) were blocked and not planned.[/yellow]")
        return

    changed = ", ".join(str(ref) for ref in result.changed()) or "none"
    console.print(Panel.fit(
        f"[red]✗ {action.capitalize()} {result.status.value}[/red]\n\n"
        f"Applied: {len(result.applied)}\n"
        f"Failed: {len(result.failed)}\n"
        f"Skipped: {len(result.skipped)}\n"
        f"Cancelled: {len(result.cancelled)}\n"
        f"Unknown: {len(result.unknown)}\n"
        f"Duration: {result.duration:.2f}s\n\n"
        f"Changed before stopping: {escape(changed)}",
        title=f"{action.capitalize()} Failed",
        border_style="red"
    ))

    for operation_result in result.operations:
        if operation_result.status in (ExecutionStatus.FAILED, ExecutionStatus.UNKNOWN):
            detail = str(operation_result.error) if operation_result.error else operation_result.reason
            console.print(
                f"  {STATUS_MARKS[operation_result.status]} {operation_result.operation}: {escape(detail or '')}"
            )

    if result.unknown:
        console.print(
            "\n[magenta]Some outcomes are unknown.[/magenta] Inspect the provider, then run "
            "'terrapin state resolve KIND.NAME --id ID' or 'terrapin state forget KIND.NAME'."
        )
        sys.exit(IndeterminateProviderError.exit_code)

    if result.error is not None:
        console.print(f"\n[red]{escape(result.error.to_user_message())}[/red]")
        sys.exit(result.error.exit_code)
    sys.exit(1)


@cli.command()
@click.argument('paths', nargs=-1, type=click.Path())
@click.pass_context
def validate(ctx, paths):
    """Validate declarations without contacting the provider."""
    try:
        declarations = get_engine(ctx).load(_paths(ctx, paths))
        DependencyGraph.from_declarations(declarations).validate()

        table = Table(title="Declarations", show_header=True)
        table.add_column("Resource", style="cyan")
        table.add_column("Depends on")
        table.add_column("Source", style="dim")
        for declaration in declarations:
            table.add_row(
                str(declaration.ref),
                ", ".join(str(ref) for ref in sorted(declaration.dependencies)),
                declaration.source or ""
            )
        console.print(table)
        console.print(f"\n[green]✓ {len(declarations)} declarations are valid[/green]")

    except EngineError as e:
        exit_with_error(e)
    except Exception as e:
        exit_unexpected(e, "validation")


@cli.command()
@click.argument('paths', nargs=-1, type=click.Path())
@click.option('--destroy', 'destroy_plan', is_flag=True, help='Plan deletion of every recorded resource')
@click.option('--check-drift', is_flag=True, help='Detect drift before planning and print warnings')
@click.pass_context
def plan(ctx, paths, destroy_plan, check_drift):
    """Show the changes apply would make."""
    try:
        engine = get_engine(ctx)
        if destroy_plan:
            computed = engine.plan_destroy()
        else:
            computed = engine.plan(_paths(ctx, paths), on_drift=warn_drift if check_drift else None)
        _print_plan(computed)

    except EngineError as e:
        exit_with_error(e)
    except Exception as e:
        exit_unexpected(e, "planning")


@cli.command()
@click.argument('paths', nargs=-1, type=click.Path())
@click.option('--yes', '-y', is_flag=True, help='Skip confirmation prompt')
@click.option('--max-workers', type=click.IntRange(1, 64), help='Operations running at once')
@click.option('--timeout', type=click.FloatRange(min=0, min_open=True), help='Cancel the apply after this many seconds')
@click.option('--check-drift', is_flag=True, help='Detect drift before planning and print warnings')
@click.pass_context
def apply(ctx, paths, yes, max_workers, timeout, check_drift):
    """Create, update and delete resources to match the declarations."""
    try:
        engine = get_engine(ctx)
        if max_workers:
            engine.max_workers = max_workers
        if timeout:
            engine.timeout = timeout
        declaration_paths = _paths(ctx, paths)

        console.print(Panel.fit(
            f"[bold]Applying {escape(', '.join(declaration_paths))}[/bold]\n"
            f"Project: {get_config(ctx).project}\n"
            f"Provider: {engine.provider.name}\n"
            f"State: {engine.store.state_path}",
            title="Apply",
            border_style="cyan"
        ))

        computed, result = _run_with_progress(
            ctx,
            lambda eng, counted, callback: eng.apply(
                declaration_paths,
                confirm=counted(_confirmer(yes, "apply these changes")),
                progress_callback=callback,
                on_drift=warn_drift if check_drift else None
            ),
            "Applying"
        )
        if computed.is_empty():
            _print_plan(computed)
        _report(computed, result, "apply")

    except EngineError as e:
        exit_with_error(e)
    except Exception as e:
        exit_unexpected(e, "apply")


@cli.command()
@click.option('--yes', '-y', is_flag=True, help='Skip confirmation prompt')
@click.pass_context
def destroy(ctx, yes):
    """Delete every resource recorded in state."""
    try:
        engine = get_engine(ctx)
        console.print(Panel.fit(
            f"[bold red]Destroying all resources[/bold red]\n"
            f"Project: {get_config(ctx).project}\n"
            f"State: {engine.store.state_path}",
            title="Destroy",
            border_style="red"
        ))

        computed, result = _run_with_progress(
            ctx,
            lambda eng, counted, callback: eng.destroy(
                confirm=counted(_confirmer(yes, "delete these resources")),
                progress_callback=callback
            ),
            "Destroying"
        )
        if computed.is_empty():
            _print_plan(computed)
        _report(computed, result, "destroy")

    except EngineError as e:
        exit_with_error(e)
    except Exception as e:
        exit_unexpected(e, "destroy")


if __name__ == '__main__':
    cli()
