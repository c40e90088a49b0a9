"""``datanest purge KEY`` — drop a cache entry so the next run rebuilds it.

The recovery path for ``CacheCorruption``: the entry is removed, and its
blob too if that blob fails verification.
"""

from __future__ import annotations

from pathlib import Path

import typer

from datanest.cli.common import (
    DATA_ROOT_OPTION,
    EXIT_FAILED,
    PROJECT_OPTION,
    console,
    open_orchestrator,
)


def purge_cmd(
    key: str = typer.Argument(..., help="The full cache key to purge."),
    project: Path = PROJECT_OPTION,
    data_root: Path = DATA_ROOT_OPTION,
) -> None:
    """Remove the cache entry for KEY."""
    cache = open_orchestrator(project, data_root=data_root).cache
    if not cache.purge(key):
        console.print(f"[yellow]No cache entry for[/yellow] {key}")
        raise typer.Exit(code=EXIT_FAILED)
    console.print(f"[green]Purged[/green] {key}; the next run rebuilds it.")
