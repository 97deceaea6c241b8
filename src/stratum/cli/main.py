"""Stratum command line interface.

    stratum eval build-dataset --source ~/chat-export
    stratum eval run --dataset cases.jsonl
    stratum eval gate
    stratum context inspect telegram:42
"""

from __future__ import annotations

import asyncio
import logging
import sys
from collections.abc import Coroutine
from pathlib import Path
from typing import Any, TypeVar

import click
from rich.console import Console

from stratum import __version__
from stratum.config import StratumConfig, load_config, save_default_config
from stratum.core.errors import StratumError

T = TypeVar("T")

console = Console()


def run_async(coro: Coroutine[Any, Any, T]) -> T:
    """Run a coroutine from a synchronous click command."""
    return asyncio.run(coro)


def render_error(error: StratumError) -> None:
    console.print(f"[red]✗ {error}[/red]")
    for hint in error.recovery_hints:
        console.print(f"  [dim]→ {hint}[/dim]")


def get_config(ctx: click.Context) -> StratumConfig:
    return ctx.find_root().obj["config"]


@click.group()
@click.version_option(__version__, prog_name="stratum")
@click.option(
    "--config",
    "config_path",
    type=click.Path(path_type=Path, dir_okay=False),
    default=None,
    help="Config file (default: .stratum/config.yaml, then ~/.stratum/config.yaml)",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def main(ctx: click.Context, config_path: Path | None, verbose: bool) -> None:
    """Layered context engine: archive, retrieve and evaluate chat history."""
    config = load_config(config_path)
    verbose = verbose or config.verbose
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["config"] = config


@main.group()
def config() -> None:
    """Inspect or create configuration files."""


@config.command("init")
@click.argument("path", type=click.Path(path_type=Path, dir_okay=False), default=Path(".stratum/config.yaml"))
@click.option("--force", is_flag=True, help="Overwrite an existing file")
def config_init(path: Path, force: bool) -> None:
    """Write the default configuration to PATH."""
    if path.exists() and not force:
        console.print(f"[yellow]{path} already exists (use --force to overwrite)[/yellow]")
        sys.exit(1)
    written = save_default_config(path)
    console.print(f"[green]✓[/green] Wrote {written}")


@config.command("show")
@click.pass_context
def config_show(ctx: click.Context) -> None:
    """Print the effective configuration as YAML."""
    import yaml

    console.print(yaml.safe_dump(get_config(ctx).to_dict(), sort_keys=False), end="", markup=False)


def _register_commands() -> None:
    from stratum.cli.context_cmd import context
    from stratum.cli.eval_cmd import eval_group

    main.add_command(eval_group)
    main.add_command(context)


_register_commands()


def cli_entrypoint() -> None:
    """Console script entry point with uniform error reporting."""
    try:
        main(standalone_mode=False)
    except click.ClickException as e:
        e.show()
        sys.exit(e.exit_code)
    except click.Abort:
        console.print("\n[dim]Aborted[/dim]")
        sys.exit(130)
    except StratumError as e:
        render_error(e)
        sys.exit(1)
