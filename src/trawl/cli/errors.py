"""trawl rich error messages: actionable feedback.

Every error shown to the user must contain:
  1. What went wrong (clear cause)
  2. The exact action the user should take to fix it

Usage:
    from trawl.cli.errors import err_no_db
    console.print(err_no_db(".trawl.db"))
    raise typer.Exit(1)
"""

from __future__ import annotations


def err_no_tracker_credentials() -> str:
    """Neither a session cookie nor user/token credentials were supplied."""
    return (
        "[red]Error:[/] No issue tracker credentials.\n"
        "  Set a browser session cookie:  export TRAWL_TRACKER_COOKIE='JSESSIONID=...'\n"
        "  or pass:  --cookie-file cookies.txt\n"
        "  or set:   export TRAWL_TRACKER_USER=<user> TRAWL_TRACKER_TOKEN=<token>"
    )


def err_no_chat_credentials() -> str:
    """No chat email/API key supplied."""
    return (
        "[red]Error:[/] No chat credentials.\n"
        "  Pass a zuliprc file:  --cred-file ~/.zuliprc   (email= and key= lines)\n"
        "  or set:  export TRAWL_CHAT_EMAIL=<email> TRAWL_CHAT_API_KEY=<key>"
    )


def err_auth_expired(partition: str | None, position: int | str | None, command: str) -> str:
    """Credentials were rejected mid-run; everything committed so far is kept."""
    where = f" while fetching {partition}" if partition else ""
    return (
        f"[red]Error:[/] Credentials rejected{where}.\n"
        f"  Progress is saved (resume position: {position}).\n"
        f"  Refresh your credentials, then run:  trawl {command} --resume"
    )


def err_fetch_failed(message: str) -> str:
    """Non-retryable API failure."""
    return (
        f"[red]Error:[/] Remote API request failed: {message}\n"
        "  Check the configured base URL and query (trawl.yaml), then retry."
    )


def err_malformed_record(message: str, command: str) -> str:
    """A fetched record could not be transformed; its batch was not committed."""
    return (
        f"[red]Error:[/] Malformed record from the API: {message}\n"
        "  The failing batch was not stored.\n"
        f"  Exclude or rename the offending field in trawl.yaml, then run:  trawl {command} --resume"
    )


def err_no_db(db_path: str = ".trawl.db") -> str:
    """No mirror database at *db_path*."""
    return (
        f"[red]Error:[/] No database found at '{db_path}'.\n"
        "  Run:  trawl tracker-ingest   or   trawl chat-ingest"
    )


def err_query_syntax(message: str) -> str:
    """Invalid FTS5 expression."""
    return (
        f"[red]Error:[/] Invalid full-text query: {message}\n"
        '  Quote phrases and special characters, e.g.  trawl search \'"Patient.identifier"\''
    )


def err_bad_filter(raw: str) -> str:
    """--filter value is not FIELD=VALUE / FIELD==VALUE."""
    return (
        f"[red]Error:[/] Invalid filter '{raw}'.\n"
        "  Use  --filter field=substring   or   --filter field==exact"
    )


def err_config(message: str) -> str:
    """Config file is invalid or contains a forbidden key."""
    return f"[red]Error:[/] Invalid configuration.\n  {message}"


def err_not_found(what: str, hint: str) -> str:
    """Issue, stream, message or thread not in the local store."""
    return (
        f"[yellow]Not found:[/] {what}\n"
        f"  {hint}"
    )
