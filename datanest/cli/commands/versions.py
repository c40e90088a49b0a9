"""``datanest versions [NAME]`` — list registered artifact versions."""

from __future__ import annotations

import json
from pathlib import Path

import typer

from datanest.cli.common import DATA_ROOT_OPTION, PROJECT_OPTION, console, open_orchestrator
from datanest.cli.renderer import ReportRenderer


def versions_cmd(
    name: str = typer.Argument(None, help="Only list this artifact."),
    as_json: bool = typer.Option(
        False, "--json", help="Print the registry metadata as JSON."
    ),
    project: Path = PROJECT_OPTION,
    data_root: Path = DATA_ROOT_OPTION,
) -> None:
    """Show every registered version, marking the latest of each name."""
    registry = open_orchestrator(project, data_root=data_root).registry

    if as_json:
        exported = registry.export()
        if name is not None:
            exported = {name: exported.get(name, [])}
        typer.echo(json.dumps(exported, indent=2))
        return

    names = [name] if name is not None else registry.names()
    records = []
    latest: dict[str, int] = {}
    for artifact in names:
        history = registry.record(artifact)
        records.extend(history.versions)
        if history.latest is not None:
            latest[artifact] = history.latest.version
    ReportRenderer(console=console).print_versions(records, latest)
