"""datanest CLI — Typer-based command-line interface.

Provides the ``datanest`` command with subcommands for fetching, transforming
and packaging a project's data, and for reading registered artifacts back.

All output uses Rich for formatted terminal display.
"""
