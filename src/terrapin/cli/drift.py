"""Drift command for comparing recorded state with the provider."""

import json
import sys

import click
from rich.markup import escape
from rich.table import Table

from terrapin.cli.common import console, exit_unexpected, exit_with_error, get_engine
from terrapin.drift.models import DriftReport, DriftSeverity
from terrapin.utils.errors import EngineError

SEVERITY_STYLES = {
    DriftSeverity.HIGH: "red",
    DriftSeverity.MEDIUM: "yellow",
    DriftSeverity.LOW: "dim",
}


@click.command()
@click.option('--format', 'output_format', type=click.Choice(['table', 'json']), default='table', help='Output format')
@click.option('--exit-code', is_flag=True, help='Exit with status 1 when drift is found')
@click.pass_context
def drift(ctx, output_format, exit_code):
    """Detect resources that changed outside terrapin. Read-only."""
    try:
        report = get_engine(ctx).drift()

        if output_format == 'json':
            click.echo(json.dumps(report.model_dump(mode='json'), indent=2))
        else:
            _print_report(report)

        if exit_code and report.has_drift():
            sys.exit(1)

    except EngineError as e:
        exit_with_error(e)
    except Exception as e:
        exit_unexpected(e, "drift detection")


def _print_report(report: DriftReport) -> None:
    for key in report.skipped:
        console.print(f"[yellow]![/yellow] {key}: skipped, outcome of an interrupted operation is unknown")

    if not report.has_drift():
        console.print(
            f"[green]✓ No drift detected[/green] ({report.total_resources_checked} resources checked)"
        )
        return

    table = Table(title="Drift", show_header=True)
    table.add_column("Resource", style="cyan")
    table.add_column("Type")
    table.add_column("Severity")
    table.add_column("ID", style="dim")
    table.add_column("Differences")

    for item in report.drift_items:
        style = SEVERITY_STYLES[item.severity]
        table.add_row(
            item.resource,
            item.drift_type.value,
            f"[{style}]{item.severity.value}[/{style}]",
            item.physical_id or "",
            escape("\n".join(item.differences)),
        )

    console.print(table)
    console.print(
        f"\n{report.drift_count} drift item(s) across {report.total_resources_checked} resources checked"
    )


def warn_drift(report: DriftReport) -> None:
    """Print drift found before planning as a warning."""
    if not report.has_drift():
        return
    console.print("[bold yellow]Warning: resources changed outside terrapin since the last apply[/bold yellow]")
    _print_report(report)
    console.print("[yellow]The plan below is computed from recorded state and does not correct this drift.[/yellow]\n")
