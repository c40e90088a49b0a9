"""``datanest getdata | usedata | install | run`` — execute the step graph.

- ``getdata``  fetch steps only
- ``usedata``  transform steps, plus any fetch steps they depend on
- ``install``  the full graph, including packaging and registration
- ``run``      alias of ``install``

Exit codes: 0 when every step succeeded or was skipped, 1 when any step
failed or was blocked, 2 for configuration errors found before execution.
"""

from __future__ import annotations

import signal
from pathlib import Path

import typer

from datanest.cli.common import (
    DATA_ROOT_OPTION,
    EXIT_CONFIG,
    EXIT_FAILED,
    EXIT_OK,
    JOBS_OPTION,
    PROJECT_OPTION,
    RETRIES_OPTION,
    console,
    err_console,
    open_orchestrator,
)
from datanest.cli.renderer import ReportRenderer
from datanest.core.errors import ConfigurationError
from datanest.models.steps import StepKind


def execute(
    kinds: list[StepKind] | None,
    project: Path,
    data_root: Path | None,
    jobs: int | None,
    retries: int | None,
) -> None:
    """Run the selected kinds, print the report and exit with its status."""
    orchestrator = open_orchestrator(project, data_root=data_root, jobs=jobs, retries=retries)

    # First Ctrl+C cancels cooperatively; in-flight steps stop at a checkpoint.
    previous = signal.getsignal(signal.SIGINT)
    signal.signal(signal.SIGINT, lambda signum, frame: orchestrator.cancel())
    try:
        report = orchestrator.run(kinds=kinds)
    except ConfigurationError as exc:
        err_console.print(f"[bold red]Configuration error:[/bold red] {exc}")
        raise typer.Exit(code=EXIT_CONFIG)
    finally:
        signal.signal(signal.SIGINT, previous)

    ReportRenderer(console=console).print_report(report)
    raise typer.Exit(code=EXIT_OK if report.ok else EXIT_FAILED)


def getdata_cmd(
    project: Path = PROJECT_OPTION,
    data_root: Path = DATA_ROOT_OPTION,
    jobs: int = JOBS_OPTION,
    retries: int = RETRIES_OPTION,
) -> None:
    """Fetch raw data (fetch steps only)."""
    execute([StepKind.FETCH], project, data_root, jobs, retries)


def usedata_cmd(
    project: Path = PROJECT_OPTION,
    data_root: Path = DATA_ROOT_OPTION,
    jobs: int = JOBS_OPTION,
    retries: int = RETRIES_OPTION,
) -> None:
    """Run transform steps, fetching any raw data they still need."""
    execute([StepKind.TRANSFORM], project, data_root, jobs, retries)


def install_cmd(
    project: Path = PROJECT_OPTION,
    data_root: Path = DATA_ROOT_OPTION,
    jobs: int = JOBS_OPTION,
    retries: int = RETRIES_OPTION,
) -> None:
    """Run the whole graph and register packaged artifacts."""
    execute(None, project, data_root, jobs, retries)
