"""Domain models for the mirror database layer."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


@dataclass
class Document:
    """One canonical record: an issue (``key`` str) or a chat message (``key`` int).

    ``fields`` maps semantic field names to scalars, flat dicts, or lists of
    scalars / flat dicts. ``modified`` is the last-modified ordering value
    (ISO string for issues, unix seconds for messages).
    """

    key: str | int
    fields: dict[str, Any] = field(default_factory=dict)
    modified: str | int | None = None

    def get(self, name: str, default: Any = None) -> Any:
        return self.fields.get(name, default)

    def fields_json(self) -> str:
        return json.dumps(self.fields, ensure_ascii=False, sort_keys=True)


@dataclass
class Stream:
    id: int
    name: str
    description: str = ""
    is_web_public: bool = False


@dataclass
class IssueIndexEntry:
    key: str
    title: str
    body: str
    labels: str
    comments: str


@dataclass
class MessageIndexEntry:
    stream_name: str
    topic: str
    sender_name: str
    content: str


class Corpus(str, Enum):
    """The two mirrored corpora and their table layout."""

    ISSUES = "issues"
    MESSAGES = "messages"

    @property
    def table(self) -> str:
        return self.value

    @property
    def index_table(self) -> str:
        return f"{self.value}_fts"

    @property
    def key_column(self) -> str:
        return "key" if self is Corpus.ISSUES else "id"

    @property
    def order_column(self) -> str:
        return "updated_at" if self is Corpus.ISSUES else "timestamp"


def json_path(field_name: str) -> str:
    """Return the SQLite JSON path for a top-level document field.

    Raises:
        ValueError: If *field_name* is empty or contains a double quote.
    """
    if not field_name or '"' in field_name:
        raise ValueError(f"Invalid field name: {field_name!r}")
    return f'$."{field_name}"'
