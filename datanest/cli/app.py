"""Main Typer application — imports and registers all CLI commands.

Entry point: ``datanest`` (configured via pyproject.toml scripts).
"""

from __future__ import annotations

import logging

import typer
from rich.logging import RichHandler

from datanest.cli.commands.build import getdata_cmd, install_cmd, usedata_cmd
from datanest.cli.commands.load import load_cmd
from datanest.cli.commands.purge import purge_cmd
from datanest.cli.commands.steps import steps_cmd
from datanest.cli.commands.versions import versions_cmd
from datanest.cli.common import err_console
from datanest.config import DatanestSettings

app = typer.Typer(
    name="datanest",
    help="datanest: reproducible fetch → transform → package pipelines for versioned datasets.",
    no_args_is_help=True,
    rich_markup_mode="rich",
    add_completion=False,
)


@app.callback()
def main_callback(
    log_level: str = typer.Option(
        None, "--log-level", help="Logging level. [env: DATANEST_LOG_LEVEL]"
    ),
) -> None:
    """Configure logging before any command runs."""
    level = (log_level or DatanestSettings().log_level).upper()
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


# Register subcommands
app.command(name="getdata", help="Fetch raw data (fetch steps only).")(getdata_cmd)
app.command(name="usedata", help="Run transforms and any fetches they need.")(usedata_cmd)
app.command(name="install", help="Run the full graph and register artifacts.")(install_cmd)
app.command(name="run", help="Alias of install.")(install_cmd)
app.command(name="load", help="Write a registered artifact to stdout or a file.")(load_cmd)
app.command(name="versions", help="List registered artifact versions.")(versions_cmd)
app.command(name="purge", help="Purge a cache entry so it is rebuilt.")(purge_cmd)
app.command(name="steps", help="Validate the project and show execution order.")(steps_cmd)


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
