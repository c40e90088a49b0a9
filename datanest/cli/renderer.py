"""Rich terminal rendering for run reports and registry listings.

Color scheme
------------
- green     : SUCCESS
- cyan      : SKIPPED
- bold red  : FAILED
- yellow    : BLOCKED
- dim       : PENDING
"""

from __future__ import annotations

from rich.console import Console, Group
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from datanest.models.artifacts import ArtifactRecord
from datanest.models.reports import RunReport, StepResult
from datanest.models.steps import StepState

_STATE_ICONS: dict[StepState, str] = {
    StepState.SUCCESS: "[green]SUCCESS[/green]",
    StepState.SKIPPED: "[cyan]SKIPPED[/cyan]",
    StepState.FAILED: "[bold red]FAILED[/bold red]",
    StepState.BLOCKED: "[yellow]BLOCKED[/yellow]",
    StepState.RUNNING: "[yellow]RUNNING[/yellow]",
    StepState.PENDING: "[dim]PENDING[/dim]",
}


def _detail(result: StepResult) -> str:
    if result.artifact_version is not None:
        return f"{result.artifact_name} v{result.artifact_version}"
    if result.error_kind:
        return f"[red]{result.error_kind}[/red]: {result.error_message}"
    return result.digest.removeprefix("sha256:")[:12]


class ReportRenderer:
    """Renders ``RunReport`` and registry records as Rich output.

    Parameters
    ----------
    console:
        Rich Console instance.  A new one is created if not provided.
    """

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console()

    def render_report(self, report: RunReport) -> Panel:
        """Render a RunReport as a Panel with a step table and a summary."""
        table = Table(show_header=True, header_style="bold", expand=True)
        table.add_column("Step", style="bold")
        table.add_column("Kind")
        table.add_column("Status", justify="center")
        table.add_column("Cache key", style="dim")
        table.add_column("Time", justify="right")
        table.add_column("Detail", overflow="fold")

        for result in report.steps:
            table.add_row(
                result.name,
                result.kind.value,
                _STATE_ICONS[result.status],
                result.cache_key[:12],
                f"{result.duration_seconds:.2f}s",
                _detail(result),
            )

        counts: dict[StepState, int] = {}
        for result in report.steps:
            counts[result.status] = counts.get(result.status, 0) + 1
        summary_parts = [
            f"[bold]Run:[/bold] {report.run_id}",
            *(f"{_STATE_ICONS[state]} {count}" for state, count in counts.items()),
        ]
        if report.cancelled:
            summary_parts.append("[bold yellow]cancelled[/bold yellow]")

        border = "green" if report.ok else "red"
        return Panel(
            Group(table, Text(""), Text.from_markup("  |  ".join(summary_parts))),
            title=f"[bold]{report.project}[/bold]",
            border_style=border,
        )

    def print_report(self, report: RunReport) -> None:
        self.console.print(self.render_report(report))
        for result in report.failed_steps:
            self.console.print(
                f"[bold red]✗ {result.name}[/bold red] failed with "
                f"[red]{result.error_kind}[/red]: {result.error_message}"
            )

    def print_versions(self, records: list[ArtifactRecord], latest: dict[str, int]) -> None:
        """Print a table of registered artifact versions."""
        if not records:
            self.console.print("[dim]No artifacts registered.[/dim]")
            return

        table = Table(title="Registered artifacts")
        table.add_column("Name", style="cyan")
        table.add_column("Version", justify="right", style="green")
        table.add_column("Digest", style="dim")
        table.add_column("Size", justify="right")
        table.add_column("Created")
        table.add_column("", justify="center")

        for record in records:
            marker = "[bold]latest[/bold]" if latest.get(record.name) == record.version else ""
            table.add_row(
                record.name,
                str(record.version),
                record.digest.removeprefix("sha256:")[:16],
                str(record.size_bytes),
                record.created_at.strftime("%Y-%m-%d %H:%M"),
                marker,
            )
        self.console.print(table)
