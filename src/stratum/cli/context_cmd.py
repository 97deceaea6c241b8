"""``stratum context`` commands: look inside a session's layered index."""

from __future__ import annotations

import sys
from pathlib import Path

import click
from rich.table import Table

from stratum.cli.main import console, get_config
from stratum.context.storage import FileSystemArchiveStore, session_key_for
from stratum.core.result import Err

PREVIEW_CHARS = 72


def _short(text: str, limit: int = PREVIEW_CHARS) -> str:
    text = " ".join(text.split())
    return text if len(text) <= limit else text[: limit - 3] + "..."


@click.group()
def context() -> None:
    """Inspect persisted layered context."""


@context.command("inspect")
@click.argument("session_key", required=False)
@click.option("--platform", default=None, help="Build the session key from platform and chat id")
@click.option("--chat-id", default=None)
@click.option("--storage-dir", type=click.Path(file_okay=False, path_type=Path), default=None)
@click.pass_context
def inspect_cmd(
    ctx: click.Context,
    session_key: str | None,
    platform: str | None,
    chat_id: str | None,
    storage_dir: Path | None,
) -> None:
    """Show the archived nodes of SESSION_KEY (e.g. telegram:42)."""
    if session_key is None:
        if platform is None:
            raise click.UsageError("give a SESSION_KEY or --platform")
        session_key = session_key_for(platform, chat_id)

    store = FileSystemArchiveStore(storage_dir or get_config(ctx).storage_dir)
    loaded = store.try_load_index(session_key)
    if isinstance(loaded, Err):
        console.print(f"[yellow]No usable index for {session_key}: {loaded.reason}[/yellow]")
        console.print(f"  [dim]{store.index_path(session_key)}[/dim]")
        sys.exit(1)

    doc = loaded.value
    console.print(f"[bold]{doc.session_key}[/bold]  {len(doc.nodes)} nodes")
    if doc.root.abstract:
        console.print(f"Root: {_short(doc.root.abstract, 200)}")

    table = Table()
    table.add_column("Node")
    table.add_column("Messages", justify="right")
    table.add_column("Rank", justify="right")
    table.add_column("L0/L1/L2 tokens", justify="right")
    table.add_column("Abstract")
    for node in doc.nodes:
        meta = node.metadata
        est = node.token_estimate
        table.add_row(
            node.id,
            f"{meta.message_start}-{meta.message_end}",
            str(meta.recency_rank),
            f"{est.l0}/{est.l1}/{est.l2}",
            _short(node.abstract),
        )
    console.print(table)
