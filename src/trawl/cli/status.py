"""trawl stats / reindex: store overview and search index repair."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from trawl.cli.errors import err_config, err_no_db
from trawl.config import ConfigError, TrawlConfig, load_config
from trawl.db.connection import Database
from trawl.db.models import Corpus
from trawl.db.repository import Repository
from trawl.db.schema import initialize

console = Console()

# Field distributions shown by `trawl stats`, per corpus.
_STATS_FIELDS: dict[Corpus, tuple[str, ...]] = {
    Corpus.ISSUES: ("status", "issue_type", "specification", "work_group", "change_impact"),
    Corpus.MESSAGES: ("stream_name",),
}


def stats_cmd(
    top: Annotated[int, typer.Option("--top", min=1, help="Values shown per field.")] = 10,
    db: Annotated[Path | None, typer.Option("--db", help="Path to the mirror database.")] = None,
) -> None:
    """Show row counts and the most common values of key fields."""
    cfg = _load_cfg()
    db_path = Path(db or cfg.database)
    if not db_path.exists():
        console.print(err_no_db(str(db_path)))
        raise typer.Exit(1)

    conn = Database(db_path, readonly=True).connect()
    try:
        repo = Repository(conn)
        counts = repo.stats()
        lines = "\n".join(f"[bold]{name}:[/] {n:,}" for name, n in counts.items())
        console.print(Panel(f"[dim]{db_path}[/]\n{lines}", title="[bold]Mirror[/]", expand=False))

        for corpus, names in _STATS_FIELDS.items():
            if counts[corpus.value] == 0:
                continue
            for name in names:
                rows = repo.field_counts(corpus, name, limit=top)
                if not rows:
                    continue
                table = Table(title=f"{corpus.value} by {name}", show_header=False)
                table.add_column("Value")
                table.add_column("Count", justify="right")
                for value, n in rows:
                    table.add_row(value, f"{n:,}")
                console.print(table)
    finally:
        conn.close()


def reindex_cmd(
    check: Annotated[
        bool,
        typer.Option("--check", help="Only report stale or missing index entries."),
    ] = False,
    db: Annotated[Path | None, typer.Option("--db", help="Path to the mirror database.")] = None,
) -> None:
    """Re-derive the full-text index from the stored documents."""
    cfg = _load_cfg()
    db_path = Path(db or cfg.database)
    if not db_path.exists():
        console.print(err_no_db(str(db_path)))
        raise typer.Exit(1)

    conn = Database(db_path).connect()
    try:
        initialize(conn)
        repo = Repository(conn)
        if check:
            bad_issues = repo.verify_issue_index()
            bad_messages = repo.verify_message_index()
            if not bad_issues and not bad_messages:
                console.print("[green]✓[/] Search index is consistent.")
                return
            console.print(
                f"[yellow]Index out of sync:[/] {len(bad_issues)} issue(s), "
                f"{len(bad_messages)} message(s).\n"
                "  Run:  trawl reindex"
            )
            raise typer.Exit(1)

        n_issues = repo.rebuild_issue_index()
        n_messages = repo.rebuild_message_index()
        console.print(f"[green]✓[/] Reindexed {n_issues:,} issues and {n_messages:,} messages.")
    finally:
        conn.close()


def _load_cfg() -> TrawlConfig:
    try:
        return load_config()
    except ConfigError as exc:
        console.print(err_config(str(exc)))
        raise typer.Exit(1)
