"""Shared option definitions and helpers for datanest commands."""

from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console

from datanest.config import DatanestSettings
from datanest.core.errors import ConfigurationError
from datanest.core.orchestrator import Orchestrator
from datanest.core.project_loader import load_project

console = Console()
err_console = Console(stderr=True)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2

PROJECT_OPTION = typer.Option(
    Path("."),
    "--project",
    "-p",
    help="Project directory or datanest.toml file.",
)
DATA_ROOT_OPTION = typer.Option(
    None,
    "--data-root",
    help="Override the data root (registry + cache). [env: DATANEST_DATA_ROOT]",
)
JOBS_OPTION = typer.Option(
    None,
    "--jobs",
    "-j",
    min=1,
    help="Maximum number of steps run in parallel. [env: DATANEST_MAX_PARALLEL]",
)
RETRIES_OPTION = typer.Option(
    None,
    "--retries",
    min=0,
    help="Retries for transient fetch failures. [env: DATANEST_RETRIES]",
)


def open_orchestrator(
    project_path: Path,
    *,
    data_root: Path | None = None,
    jobs: int | None = None,
    retries: int | None = None,
) -> Orchestrator:
    """Load the project and build its orchestrator, exiting 2 on bad config."""
    settings = DatanestSettings().with_overrides(
        data_root=data_root, max_parallel=jobs, retries=retries
    )
    try:
        project = load_project(project_path)
    except ConfigurationError as exc:
        err_console.print(f"[bold red]Configuration error:[/bold red] {exc}")
        raise typer.Exit(code=EXIT_CONFIG)
    return Orchestrator(project, settings=settings)
