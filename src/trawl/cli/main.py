"""trawl CLI entry point."""

from __future__ import annotations

import importlib.metadata
import logging
from typing import Annotated

import typer
from rich.logging import RichHandler

from trawl.cli.ingest import chat_ingest_cmd, tracker_ingest_cmd
from trawl.cli.init import init_cmd
from trawl.cli.search import search_cmd, snapshot_cmd, streams_cmd, thread_cmd, topics_cmd
from trawl.cli.status import reindex_cmd, stats_cmd


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"trawl {_version()}")
        raise typer.Exit()


def _version() -> str:
    try:
        return importlib.metadata.version("trawl")
    except importlib.metadata.PackageNotFoundError:
        return "dev"


app = typer.Typer(
    name="trawl",
    help=(
        "trawl: local mirror of an issue tracker and a chat server.\n\n"
        "  trawl tracker-ingest / chat-ingest   Download (or --resume) into .trawl.db.\n"
        "  trawl search / snapshot / thread     Query the mirror offline."
    ),
    add_completion=False,
)


@app.callback()
def main_callback(
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            callback=_version_callback,
            is_eager=True,
            help="Show version and exit.",
        ),
    ] = False,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Log every batch and retry."),
    ] = False,
) -> None:
    """trawl: local mirror of an issue tracker and a chat server."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
        force=True,
    )


app.command("init")(init_cmd)
app.command("tracker-ingest")(tracker_ingest_cmd)
app.command("chat-ingest")(chat_ingest_cmd)
app.command("search")(search_cmd)
app.command("snapshot")(snapshot_cmd)
app.command("thread")(thread_cmd)
app.command("topics")(topics_cmd)
app.command("streams")(streams_cmd)
app.command("stats")(stats_cmd)
app.command("reindex")(reindex_cmd)


@app.command("version")
def version_cmd() -> None:
    """Show the installed trawl version."""
    typer.echo(f"trawl {_version()}")


if __name__ == "__main__":
    app()
