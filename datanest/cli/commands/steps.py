"""``datanest steps`` — validate the project and show its execution order."""

from __future__ import annotations

from pathlib import Path

import typer
from rich.table import Table

from datanest.cli.common import (
    DATA_ROOT_OPTION,
    EXIT_CONFIG,
    PROJECT_OPTION,
    console,
    err_console,
    open_orchestrator,
)
from datanest.core.errors import ConfigurationError


def steps_cmd(
    project: Path = PROJECT_OPTION,
    data_root: Path = DATA_ROOT_OPTION,
) -> None:
    """Print the validated step graph in execution order."""
    orchestrator = open_orchestrator(project, data_root=data_root)
    try:
        graph, selected = orchestrator.plan()
    except ConfigurationError as exc:
        err_console.print(f"[bold red]Configuration error:[/bold red] {exc}")
        raise typer.Exit(code=EXIT_CONFIG)

    table = Table(title=f"{orchestrator.project.name} ({orchestrator.data_root})")
    table.add_column("#", justify="right", style="dim")
    table.add_column("Step", style="cyan")
    table.add_column("Kind")
    table.add_column("Depends on")
    table.add_column("Script / source")
    table.add_column("Output")
    for index, name in enumerate(selected, start=1):
        step = graph.get_step(name)
        table.add_row(
            str(index),
            name,
            step.kind.value,
            ", ".join(step.depends_on),
            step.script or step.source or "",
            step.output_name,
        )
    console.print(table)
