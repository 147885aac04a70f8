"""trawl database layer."""

from trawl.db.connection import Database
from trawl.db.migrations import MIGRATIONS, run_migrations
from trawl.db.models import Corpus, Document, Stream
from trawl.db.repository import Repository
from trawl.db.schema import initialize

__all__ = [
    "Corpus",
    "Database",
    "Document",
    "MIGRATIONS",
    "Repository",
    "Stream",
    "initialize",
    "run_migrations",
]
