"""trawl init: create the mirror database and a project config.

Creates:
  .trawl.db               empty mirror with schema
  trawl.yaml              project config template (no credentials)
  ~/.trawl/config.yaml    global server defaults (created once, mode 0o600)
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console

from trawl.config import ensure_global_config
from trawl.db.connection import Database
from trawl.db.schema import initialize

console = Console()

_PROJECT_TEMPLATE = """\
# trawl project configuration. Credentials go in TRAWL_* environment variables.
database: .trawl.db

tracker:
  jql: project=FHIR ORDER BY key ASC
  batch_size: 100
  # renames: {customfield_12345: my_field}
  # exclude: [customfield_99999]

chat:
  public_only: true
  # streams: [implementers, terminology]

fetch:
  backoff_initial: 2.0
  backoff_max: 60.0

search:
  default_limit: 20
"""


def init_cmd(
    project_dir: Annotated[
        Path,
        typer.Argument(help="Directory to initialize. Defaults to current directory."),
    ] = Path("."),
    global_config: Annotated[
        bool,
        typer.Option("--global-config/--no-global-config", help="Also create ~/.trawl/config.yaml."),
    ] = True,
) -> None:
    """Create an empty mirror database and a trawl.yaml template."""
    project_dir = project_dir.resolve()
    project_dir.mkdir(parents=True, exist_ok=True)

    db_path = project_dir / ".trawl.db"
    with Database(db_path) as conn:
        initialize(conn)
    console.print(f"  [green]✓[/] {db_path}")

    cfg_path = project_dir / "trawl.yaml"
    if cfg_path.exists():
        console.print(f"  [dim]↷ {cfg_path} already exists, kept[/]")
    else:
        cfg_path.write_text(_PROJECT_TEMPLATE, encoding="utf-8")
        console.print(f"  [green]✓[/] {cfg_path}")

    if global_config:
        console.print(f"  [green]✓[/] {ensure_global_config()} (global config)")

    console.print("\nNext steps:")
    console.print("  1. trawl tracker-ingest --cookie-file cookies.txt")
    console.print("  2. trawl chat-ingest --cred-file ~/.zuliprc")
    console.print("  3. trawl search 'alpha AND beta'")
