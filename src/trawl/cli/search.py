"""trawl search / snapshot / thread / topics / streams: read-only views of the mirror."""

from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Annotated, Any

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from trawl.cli.errors import err_bad_filter, err_config, err_no_db, err_not_found, err_query_syntax
from trawl.config import ConfigError, TrawlConfig, load_config
from trawl.db.connection import Database
from trawl.db.models import Corpus, Document
from trawl.db.projection import render
from trawl.db.repository import Repository
from trawl.errors import NotFoundError, QuerySyntaxError
from trawl.search.query import Contains, Equals, FilterValue, Order, QueryEngine
from trawl.search.snapshot import IssueSnapshot, SnapshotRenderer, ThreadSnapshot

console = Console()

_SNIPPET = 120


def search_cmd(
    text: Annotated[
        str | None,
        typer.Argument(help="FTS5 full-text expression, e.g. 'alpha AND beta'."),
    ] = None,
    corpus: Annotated[
        Corpus,
        typer.Option("--corpus", "-c", help="Which corpus to search."),
    ] = Corpus.ISSUES,
    filter_: Annotated[
        list[str] | None,
        typer.Option("--filter", "-f", help="field=substring or field==exact (repeatable)."),
    ] = None,
    order: Annotated[
        Order | None,
        typer.Option("--order", help="relevance (default with text) or recent."),
    ] = None,
    limit: Annotated[
        int | None,
        typer.Option("--limit", "-n", min=1, help="Maximum results."),
    ] = None,
    since: Annotated[
        str | None,
        typer.Option("--since", help="Only documents modified after this (ISO date, or unix seconds for messages)."),
    ] = None,
    as_json: Annotated[bool, typer.Option("--json", help="Print results as JSON.")] = False,
    db: Annotated[Path | None, typer.Option("--db", help="Path to the mirror database.")] = None,
) -> None:
    """Search issues or chat messages with filters and/or full text."""
    cfg = _load_cfg()
    filters: dict[str, FilterValue] = {}
    for raw in filter_ or []:
        parsed = _parse_filter(raw)
        if parsed is None:
            console.print(err_bad_filter(raw))
            raise typer.Exit(1)
        filters[parsed[0]] = parsed[1]

    since_value: str | int | None = since
    if since is not None and corpus is Corpus.MESSAGES:
        since_value = _to_unix(since)

    conn = _open_readonly(Path(db or cfg.database))
    try:
        docs = QueryEngine(conn).query(
            corpus,
            filters=filters,
            full_text=text,
            order=order,
            limit=limit or cfg.search.default_limit,
            since=since_value,
        )
    except QuerySyntaxError as exc:
        console.print(err_query_syntax(str(exc)))
        raise typer.Exit(1)
    except ValueError as exc:
        console.print(f"[red]Error:[/] {exc}")
        raise typer.Exit(1)
    finally:
        conn.close()

    if as_json:
        typer.echo(json.dumps([_doc_json(d) for d in docs], indent=2, ensure_ascii=False))
        return
    if corpus is Corpus.ISSUES:
        _print_issue_rows(docs)
    else:
        _print_message_rows(docs)
    console.print(f"[dim]--- {len(docs)} result(s) ---[/]")


def snapshot_cmd(
    key: Annotated[str, typer.Argument(help="Issue key, e.g. FHIR-12345.")],
    as_json: Annotated[bool, typer.Option("--json", help="Print the snapshot as JSON.")] = False,
    db: Annotated[Path | None, typer.Option("--db", help="Path to the mirror database.")] = None,
) -> None:
    """Show one issue in full: fields, every comment, and resolved links."""
    cfg = _load_cfg()
    conn = _open_readonly(Path(db or cfg.database))
    try:
        snap = _renderer(conn, cfg).issue(key.strip().upper())
    except NotFoundError as exc:
        console.print(err_not_found(str(exc), "Run:  trawl search --filter key=<part of the key>  to look it up."))
        raise typer.Exit(1)
    finally:
        conn.close()

    if as_json:
        typer.echo(
            json.dumps(
                {
                    "key": snap.key,
                    "url": snap.url,
                    "fields": snap.document.fields,
                    "comments": snap.comments,
                    "links": snap.links,
                    "duplicates": snap.duplicates,
                },
                indent=2,
                ensure_ascii=False,
            )
        )
        return
    _print_issue_snapshot(snap)


def thread_cmd(
    stream: Annotated[str | None, typer.Argument(help="Stream name.")] = None,
    topic: Annotated[str | None, typer.Argument(help="Topic name.")] = None,
    message: Annotated[
        int | None,
        typer.Option("--message", "-m", help="Show the thread that owns this message id."),
    ] = None,
    as_json: Annotated[bool, typer.Option("--json", help="Print the thread as JSON.")] = False,
    db: Annotated[Path | None, typer.Option("--db", help="Path to the mirror database.")] = None,
) -> None:
    """Show every message of one chat thread in order."""
    if message is None and (stream is None or topic is None):
        console.print("[red]Error:[/] Give STREAM and TOPIC, or --message ID.")
        raise typer.Exit(1)
    cfg = _load_cfg()
    conn = _open_readonly(Path(db or cfg.database))
    try:
        renderer = _renderer(conn, cfg)
        snap = renderer.thread_of(message) if message is not None else renderer.thread(stream, topic)  # type: ignore[arg-type]
    except NotFoundError as exc:
        console.print(err_not_found(str(exc), "Run:  trawl topics <stream>  to list stored topics."))
        raise typer.Exit(1)
    finally:
        conn.close()

    if as_json:
        typer.echo(
            json.dumps(
                {
                    "stream": snap.stream.name,
                    "topic": snap.topic,
                    "url": snap.url,
                    "messages": [_doc_json(d) for d in snap.messages],
                },
                indent=2,
                ensure_ascii=False,
            )
        )
        return
    _print_thread(snap)


def topics_cmd(
    stream: Annotated[str, typer.Argument(help="Stream name.")],
    limit: Annotated[int, typer.Option("--limit", "-n", min=1, help="Maximum topics.")] = 50,
    db: Annotated[Path | None, typer.Option("--db", help="Path to the mirror database.")] = None,
) -> None:
    """List the topics of one stream, most recently active first."""
    cfg = _load_cfg()
    conn = _open_readonly(Path(db or cfg.database))
    try:
        repo = Repository(conn)
        found = repo.get_stream_by_name(stream)
        if found is None:
            console.print(err_not_found(f"Stream '{stream}'", "Run:  trawl streams  to list stored streams."))
            raise typer.Exit(1)
        rows = repo.list_topics(found.id, limit)
    finally:
        conn.close()

    table = Table(title=f"#{stream}", show_header=True, header_style="bold")
    table.add_column("Topic")
    table.add_column("Messages", justify="right")
    table.add_column("Last message")
    for name, count, last_ts in rows:
        table.add_row(name, str(count), _format_ts(last_ts))
    console.print(table)


def streams_cmd(
    as_json: Annotated[bool, typer.Option("--json", help="Print streams as JSON.")] = False,
    db: Annotated[Path | None, typer.Option("--db", help="Path to the mirror database.")] = None,
) -> None:
    """List stored streams with message counts, most active first."""
    cfg = _load_cfg()
    conn = _open_readonly(Path(db or cfg.database))
    try:
        rows = Repository(conn).list_streams()
    finally:
        conn.close()

    if as_json:
        typer.echo(
            json.dumps(
                [
                    {
                        "id": s.id,
                        "name": s.name,
                        "description": s.description,
                        "is_web_public": s.is_web_public,
                        "messages": count,
                        "last_timestamp": last_ts,
                    }
                    for s, count, last_ts in rows
                ],
                indent=2,
                ensure_ascii=False,
            )
        )
        return
    table = Table(show_header=True, header_style="bold")
    table.add_column("Stream")
    table.add_column("Messages", justify="right")
    table.add_column("Last message")
    for s, count, last_ts in rows:
        table.add_row(f"#{s.name}", str(count), _format_ts(last_ts))
    console.print(table)


# ------------------------------------------------------------------
# Rendering
# ------------------------------------------------------------------


def _print_issue_rows(docs: list[Document]) -> None:
    table = Table(show_header=True, header_style="bold")
    table.add_column("Key", style="cyan", no_wrap=True)
    table.add_column("Status")
    table.add_column("Summary")
    for d in docs:
        table.add_row(str(d.key), render(d.get("status")), render(d.get("summary")))
    console.print(table)


def _print_message_rows(docs: list[Document]) -> None:
    table = Table(show_header=True, header_style="bold")
    table.add_column("Id", style="cyan", no_wrap=True)
    table.add_column("When")
    table.add_column("Where")
    table.add_column("Sender")
    table.add_column("Content")
    for d in docs:
        table.add_row(
            str(d.key),
            _format_ts(d.modified),
            f"#{d.get('stream_name', '')} > {d.get('topic', '')}",
            render(d.get("sender")),
            _snippet(d),
        )
    console.print(table)


def _print_issue_snapshot(snap: IssueSnapshot) -> None:
    doc = snap.document
    header = f"[bold]{snap.key}[/]: {snap.summary}"
    if snap.url:
        header += f"\n[dim]{snap.url}[/]"
    console.print(Panel(header, expand=False))
    skip = {"summary", "description", "resolution_description", "comments", "links"}
    for name in sorted(doc.fields):
        if name not in skip:
            console.print(f"[bold]{name}:[/] {render(doc.fields[name])}")
    console.print("\n[bold]--- Description ---[/]")
    console.print(render(doc.get("description")) or "No description", markup=False)
    if doc.get("resolution_description"):
        console.print("\n[bold]--- Resolution ---[/]")
        console.print(render(doc.get("resolution_description")), markup=False)
    if snap.links:
        console.print(f"\n[bold]--- Links ({len(snap.links)}) ---[/]")
        for link in snap.links:
            local = "" if link["mirrored"] else " (not mirrored)"
            console.print(
                f"  {link['relation']} {link['key']} [{link['status'] or '?'}] "
                f"{link['summary'] or ''}{local}",
                markup=False,
                highlight=False,
            )
    if snap.comments:
        console.print(f"\n[bold]--- Comments ({len(snap.comments)}) ---[/]")
        for c in snap.comments:
            console.print(f"\n[dim][{c.get('created')}][/] [bold]{c.get('author')}[/]:")
            console.print(str(c.get("body") or ""), markup=False)


def _print_thread(snap: ThreadSnapshot) -> None:
    header = (
        f"[bold]#{snap.stream.name} > {snap.topic}[/]\n"
        f"{_format_ts(snap.first_timestamp)} to {_format_ts(snap.last_timestamp)}"
    )
    if snap.url:
        header += f"\n[dim]{snap.url}[/]"
    console.print(Panel(header, expand=False))
    for d in snap.messages:
        console.print(f"\n[dim][{_format_ts(d.modified)}][/] [bold]{render(d.get('sender'))}[/]:")
        console.print(str(d.get("content_text") or d.get("content") or ""), markup=False)
    console.print(f"\n[dim]--- {len(snap.messages)} message(s) ---[/]")


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------


def _parse_filter(raw: str) -> tuple[str, FilterValue] | None:
    if "==" in raw:
        name, _, value = raw.partition("==")
        return (name.strip(), Equals(value)) if name.strip() else None
    name, sep, value = raw.partition("=")
    if not sep or not name.strip():
        return None
    return name.strip(), Contains(value)


def _to_unix(value: str) -> int:
    if value.isdigit():
        return int(value)
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp())


def _format_ts(value: Any) -> str:
    if isinstance(value, int):
        return datetime.fromtimestamp(value, tz=timezone.utc).strftime("%Y-%m-%d %H:%M")
    return str(value or "")


def _snippet(doc: Document) -> str:
    text = str(doc.get("content_text") or doc.get("content") or "").replace("\n", " ")
    return text if len(text) <= _SNIPPET else text[:_SNIPPET] + "…"


def _doc_json(doc: Document) -> dict[str, Any]:
    return {"key": doc.key, "modified": doc.modified, "fields": doc.fields}


def _renderer(conn: sqlite3.Connection, cfg: TrawlConfig) -> SnapshotRenderer:
    return SnapshotRenderer(
        Repository(conn),
        duplicate_relation=cfg.tracker.duplicate_relation,
        tracker_url=cfg.tracker.base_url,
        chat_url=cfg.chat.base_url,
    )


def _load_cfg() -> TrawlConfig:
    try:
        return load_config()
    except ConfigError as exc:
        console.print(err_config(str(exc)))
        raise typer.Exit(1)


def _open_readonly(db_path: Path) -> sqlite3.Connection:
    """Open an existing mirror database read-only."""
    if not db_path.exists():
        console.print(err_no_db(str(db_path)))
        raise typer.Exit(1)
    return Database(db_path, readonly=True).connect()
