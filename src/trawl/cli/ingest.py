"""trawl tracker-ingest / chat-ingest: mirror remote corpora into .trawl.db.

Credentials never come from config files:
  tracker  --cookie-file, or TRAWL_TRACKER_COOKIE, or TRAWL_TRACKER_USER + TRAWL_TRACKER_TOKEN
  chat     --cred-file (zuliprc: email= / key=), or TRAWL_CHAT_EMAIL + TRAWL_CHAT_API_KEY
"""

from __future__ import annotations

import os
import sqlite3
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskProgressColumn, TextColumn
from rich.table import Table

from trawl.cli.errors import (
    err_auth_expired,
    err_config,
    err_fetch_failed,
    err_malformed_record,
    err_no_chat_credentials,
    err_no_tracker_credentials,
)
from trawl.config import ConfigError, TrawlConfig, load_config
from trawl.db.connection import Database
from trawl.db.repository import Repository
from trawl.db.schema import initialize
from trawl.errors import AuthExpiredError, FetchError, MalformedRecordError
from trawl.ingest.client import ChatClient, TrackerClient, read_chat_credentials, read_cookie_file
from trawl.ingest.fetcher import PartitionResult
from trawl.ingest.service import IngestResult, IngestSettings, ingest_chat, ingest_issues
from trawl.transform.transformer import IssueTransformer, MessageTransformer

console = Console()


def tracker_ingest_cmd(
    db: Annotated[
        Path | None,
        typer.Option("--db", help="Path to the mirror database (default from trawl.yaml)."),
    ] = None,
    cookie_file: Annotated[
        Path | None,
        typer.Option("--cookie-file", help="File holding the tracker session cookie."),
    ] = None,
    resume: Annotated[
        bool,
        typer.Option("--resume", help="Continue after the issues already stored."),
    ] = False,
    batch_size: Annotated[
        int | None,
        typer.Option("--batch-size", min=1, help="Issues per request."),
    ] = None,
) -> None:
    """Mirror the issue tracker into the local database."""
    cfg = _load_cfg()
    if batch_size is not None:
        cfg.tracker.batch_size = batch_size

    cookie = os.environ.get("TRAWL_TRACKER_COOKIE")
    if cookie_file is not None:
        try:
            cookie = read_cookie_file(cookie_file)
        except (OSError, ValueError) as exc:
            console.print(f"[red]Error:[/] {exc}")
            raise typer.Exit(1)
    user = os.environ.get("TRAWL_TRACKER_USER")
    token = os.environ.get("TRAWL_TRACKER_TOKEN")
    if not cookie and not (user and token):
        console.print(err_no_tracker_credentials())
        raise typer.Exit(1)

    client = TrackerClient(
        cfg.tracker.base_url,
        jql=cfg.tracker.jql,
        fields=cfg.tracker.fields,
        cookie=cookie,
        user=user,
        token=token,
        timeout=cfg.fetch.timeout,
    )
    conn = _open_db(Path(db or cfg.database))
    repo = Repository(conn)
    console.print(f"[bold]→ {cfg.tracker.base_url}[/]  ({cfg.tracker.jql})")
    try:
        with _progress() as prog:
            task = prog.add_task("Fetching issues…", total=None)

            def _on_batch(run: PartitionResult) -> None:
                prog.update(task, completed=run.position, total=run.total)

            result = ingest_issues(
                repo,
                client,
                IssueTransformer(cfg.issue_tables()),
                IngestSettings.for_tracker(cfg),
                resume=resume,
                on_progress=_on_batch,
            )
        _print_results([result])
    except AuthExpiredError as exc:
        console.print(err_auth_expired(exc.partition, exc.resume_position, "tracker-ingest"))
        raise typer.Exit(2)
    except MalformedRecordError as exc:
        console.print(err_malformed_record(str(exc), "tracker-ingest"))
        raise typer.Exit(1)
    except FetchError as exc:
        console.print(err_fetch_failed(str(exc)))
        raise typer.Exit(1)
    finally:
        conn.close()


def chat_ingest_cmd(
    db: Annotated[
        Path | None,
        typer.Option("--db", help="Path to the mirror database (default from trawl.yaml)."),
    ] = None,
    cred_file: Annotated[
        Path | None,
        typer.Option("--cred-file", help="zuliprc-style file with email= and key= lines."),
    ] = None,
    stream: Annotated[
        list[str] | None,
        typer.Option("--stream", "-s", help="Only ingest this stream (repeatable)."),
    ] = None,
    resume: Annotated[
        bool,
        typer.Option("--resume", help="Continue each stream after its newest stored message."),
    ] = False,
    include_private: Annotated[
        bool,
        typer.Option("--include-private", help="Also ingest streams that are not web-public."),
    ] = False,
) -> None:
    """Mirror chat streams into the local database."""
    cfg = _load_cfg()
    if include_private:
        cfg.chat.public_only = False

    email = os.environ.get("TRAWL_CHAT_EMAIL")
    api_key = os.environ.get("TRAWL_CHAT_API_KEY")
    if cred_file is not None:
        try:
            creds = read_chat_credentials(cred_file)
        except (OSError, ValueError) as exc:
            console.print(f"[red]Error:[/] {exc}")
            raise typer.Exit(1)
        email, api_key = creds.email, creds.api_key
    if not email or not api_key:
        console.print(err_no_chat_credentials())
        raise typer.Exit(1)

    client = ChatClient(cfg.chat.base_url, email=email, api_key=api_key, timeout=cfg.fetch.timeout)
    conn = _open_db(Path(db or cfg.database))
    repo = Repository(conn)
    names = stream or cfg.chat.streams or None
    console.print(f"[bold]→ {cfg.chat.base_url}[/]")
    try:
        with _progress() as prog:
            task = prog.add_task("Fetching messages…", total=None)

            def _on_batch(run: PartitionResult) -> None:
                prog.update(
                    task,
                    description=f"{run.partition}: {run.committed} messages",
                    advance=1,
                )

            results = ingest_chat(
                repo,
                client,
                MessageTransformer(cfg.message_tables()),
                IngestSettings.for_chat(cfg),
                resume=resume,
                streams=names,
                on_progress=_on_batch,
            )
        _print_results(results)
    except AuthExpiredError as exc:
        console.print(err_auth_expired(exc.partition, exc.resume_position, "chat-ingest"))
        raise typer.Exit(2)
    except MalformedRecordError as exc:
        console.print(err_malformed_record(str(exc), "chat-ingest"))
        raise typer.Exit(1)
    except FetchError as exc:
        console.print(err_fetch_failed(str(exc)))
        raise typer.Exit(1)
    finally:
        conn.close()


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------


def _load_cfg() -> TrawlConfig:
    try:
        return load_config()
    except ConfigError as exc:
        console.print(err_config(str(exc)))
        raise typer.Exit(1)


def _progress() -> Progress:
    return Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TaskProgressColumn(),
        transient=True,
        console=console,
    )


def _print_results(results: list[IngestResult]) -> None:
    table = Table(show_header=True, header_style="bold")
    table.add_column("Partition")
    table.add_column("Committed", justify="right")
    table.add_column("Stored", justify="right")
    table.add_column("Available", justify="right")
    table.add_column("Complete")
    for r in results:
        table.add_row(
            r.partition,
            str(r.committed),
            str(r.stored),
            "-" if r.available is None else str(r.available),
            "[green]✓[/]" if r.complete else "[yellow]partial[/]",
        )
    console.print(table)


def _open_db(db_path: Path) -> sqlite3.Connection:
    """Open (or create) the mirror database and run migrations."""
    db = Database(db_path)
    conn = db.connect()
    initialize(conn)
    return conn
