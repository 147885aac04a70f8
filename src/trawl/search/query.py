"""Hybrid query engine: structured field filters combined with FTS5 full text.

Filters run against the primary store's JSON ``fields`` column; full text
runs against the corpus FTS5 table and is joined back to documents by rowid.
Everything is one SQL statement, so filters and text are always AND-ed.
"""

from __future__ import annotations

import enum
import json
import logging
import sqlite3
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Union

from trawl.db.models import Corpus, Document, json_path
from trawl.errors import QuerySyntaxError

logger = logging.getLogger(__name__)

# sqlite3.OperationalError messages that mean "bad MATCH expression".
_FTS_ERROR_MARKERS = ("fts5", "syntax error", "no such column", "unterminated", "unknown special query")

# Filter name that targets the document key (issue key or message id).
KEY_FILTER = "key"


@dataclass(frozen=True)
class Contains:
    """Case-insensitive substring of the field's rendered JSON form."""

    value: str


@dataclass(frozen=True)
class Equals:
    """Exact match against a scalar, any list element, or any flat-dict member."""

    value: str | int | float | bool


FilterValue = Union[str, Contains, Equals]


class Order(str, enum.Enum):
    RELEVANCE = "relevance"
    RECENT = "recent"


class QueryEngine:
    """Read-only query surface over one mirror database connection."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    def query(
        self,
        corpus: Corpus | str,
        filters: Mapping[str, FilterValue] | None = None,
        full_text: str | None = None,
        order: Order | str | None = None,
        limit: int = 20,
        since: str | int | None = None,
    ) -> list[Document]:
        """Return up to *limit* documents matching every filter and *full_text*.

        Args:
            corpus: ``Corpus.ISSUES`` or ``Corpus.MESSAGES``.
            filters: field name -> substring (plain ``str`` or ``Contains``)
                or ``Equals``. The name ``key`` matches the issue key or message id.
            full_text: FTS5 MATCH expression, passed through verbatim.
            order: ``RELEVANCE`` (bm25; default when *full_text* is given) or
                ``RECENT`` (last modified first; default otherwise).
            since: Only documents modified strictly after this value (ISO
                string for issues, unix seconds for messages).

        Raises:
            QuerySyntaxError: *full_text* is not a valid FTS5 expression.
            ValueError: *limit* is not positive or a filter names an invalid field.
        """
        corpus = Corpus(corpus)
        if limit <= 0:
            raise ValueError(f"limit must be > 0, got {limit}")
        text = full_text.strip() if full_text and full_text.strip() else None
        order = Order(order) if order is not None else (Order.RELEVANCE if text else Order.RECENT)
        if order is Order.RELEVANCE and text is None:
            order = Order.RECENT

        clauses, params = _filter_clauses(corpus, filters or {})
        if since is not None:
            clauses.append(f"d.{corpus.order_column} > ?")
            params.append(since)

        columns = f"d.{corpus.key_column} AS doc_key, d.fields, d.{corpus.order_column} AS modified"
        fts = corpus.index_table
        if text is not None:
            sql = (
                f"SELECT {columns} FROM {fts} JOIN {corpus.table} d ON d.id = {fts}.rowid "
                f"WHERE {fts} MATCH ?"
            )
            params.insert(0, text)
        else:
            sql = f"SELECT {columns} FROM {corpus.table} d WHERE 1 = 1"
        for clause in clauses:
            sql += f" AND {clause}"

        if order is Order.RELEVANCE:
            sql += f" ORDER BY bm25({fts}), d.id"
        else:
            sql += f" ORDER BY d.{corpus.order_column} DESC, d.id DESC"
        sql += " LIMIT ?"
        params.append(limit)

        try:
            rows = self._conn.execute(sql, params).fetchall()
        except sqlite3.OperationalError as exc:
            if text is not None and any(m in str(exc).lower() for m in _FTS_ERROR_MARKERS):
                raise QuerySyntaxError(f"Invalid full-text query {text!r}: {exc}") from exc
            raise
        logger.debug("query %s returned %d rows", corpus.value, len(rows))
        return [_row_to_document(corpus, r) for r in rows]


def _filter_clauses(corpus: Corpus, filters: Mapping[str, FilterValue]) -> tuple[list[str], list[Any]]:
    clauses: list[str] = []
    params: list[Any] = []
    for name, value in filters.items():
        if name == KEY_FILTER:
            # Keys live in their own column, not in the JSON fields.
            column = f"d.{corpus.key_column}"
            if isinstance(value, Equals):
                clauses.append(f"{column} = ?")
                params.append(value.value)
            else:
                needle = value.value if isinstance(value, Contains) else str(value)
                clauses.append(f"{column} LIKE ? ESCAPE '\\'")
                params.append(f"%{_escape_like(needle)}%")
            continue
        path = json_path(name)
        if isinstance(value, Equals):
            target = int(value.value) if isinstance(value.value, bool) else value.value
            clauses.append("EXISTS (SELECT 1 FROM json_each(d.fields, ?) WHERE json_each.value = ?)")
            params.extend([path, target])
        else:
            needle = value.value if isinstance(value, Contains) else str(value)
            clauses.append("json_extract(d.fields, ?) LIKE ? ESCAPE '\\'")
            params.extend([path, f"%{_escape_like(needle)}%"])
    return clauses, params


def _escape_like(text: str) -> str:
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _row_to_document(corpus: Corpus, row: sqlite3.Row) -> Document:
    modified = row["modified"]
    if corpus is Corpus.ISSUES:
        modified = modified or None
    return Document(key=row["doc_key"], fields=json.loads(row["fields"]), modified=modified)
