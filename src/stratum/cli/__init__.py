"""Command line interface for stratum."""

from stratum.cli.main import cli_entrypoint, main

__all__ = ["cli_entrypoint", "main"]
