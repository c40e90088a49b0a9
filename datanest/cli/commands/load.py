"""``datanest load NAME`` — write a registered artifact to a file or stdout.

This is the consumer read path: it never runs any step.
"""

from __future__ import annotations

import sys
from pathlib import Path

import typer

from datanest.cli.common import (
    DATA_ROOT_OPTION,
    EXIT_FAILED,
    PROJECT_OPTION,
    err_console,
    open_orchestrator,
)
from datanest.core.errors import ArtifactNotFound, CacheCorruption


def load_cmd(
    name: str = typer.Argument(..., help="Artifact name."),
    version: str = typer.Option(
        "latest", "--version", "-v", help="Version number or 'latest'."
    ),
    output: Path = typer.Option(
        None, "--output", "-o", help="Write to this file instead of stdout."
    ),
    project: Path = PROJECT_OPTION,
    data_root: Path = DATA_ROOT_OPTION,
) -> None:
    """Resolve NAME at VERSION and emit its exact registered bytes."""
    orchestrator = open_orchestrator(project, data_root=data_root)
    loader = orchestrator.loader
    try:
        if output is not None:
            record = loader.resolve_to_path(name, output, version)
            err_console.print(
                f"[green]Wrote[/green] {name} v{record.version} to {output} "
                f"({record.size_bytes} bytes)"
            )
            return
        data = loader.resolve(name, version)
    except ValueError as exc:
        raise typer.BadParameter(str(exc), param_hint="--version")
    except (ArtifactNotFound, CacheCorruption) as exc:
        err_console.print(f"[bold red]{exc.kind}:[/bold red] {exc}")
        raise typer.Exit(code=EXIT_FAILED)

    sys.stdout.buffer.write(data)
    sys.stdout.buffer.flush()
