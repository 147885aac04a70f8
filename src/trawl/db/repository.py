"""Repository for all mirror database operations.

Single interface for: issues, streams, messages, and their FTS5 index rows.
Every document write replaces the document and deletes then re-inserts its
index row inside one transaction, so the index never holds stale tokens and
never points at a missing document.
"""

from __future__ import annotations

import json
import sqlite3
from collections.abc import Iterable, Iterator
from contextlib import contextmanager

from trawl.db.models import (
    Corpus,
    Document,
    IssueIndexEntry,
    MessageIndexEntry,
    Stream,
    json_path,
)
from trawl.db.projection import IndexProjection, project_issue, project_message


class Repository:
    """Data access layer for the mirror database.

    Wraps an open sqlite3.Connection (autocommit mode, see
    trawl.db.connection.Database). The connection is owned by the caller and
    must be closed after use.
    """

    def __init__(
        self, conn: sqlite3.Connection, projection: IndexProjection | None = None
    ) -> None:
        """Initialise with an open database connection.

        Args:
            conn: An open sqlite3.Connection with the schema initialised
                (see trawl.db.schema.initialize).
            projection: Issue field -> FTS column mapping (defaults apply).
        """
        self._conn = conn
        self._projection = projection or IndexProjection()

    @property
    def conn(self) -> sqlite3.Connection:
        return self._conn

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Run the block as one atomic unit. Re-entrant: nested blocks join the outer one."""
        if self._conn.in_transaction:
            yield
            return
        self._conn.execute("BEGIN IMMEDIATE")
        try:
            yield
        except BaseException:
            self._conn.execute("ROLLBACK")
            raise
        self._conn.execute("COMMIT")

    # ------------------------------------------------------------------
    # Issues
    # ------------------------------------------------------------------

    def upsert_issue(self, doc: Document) -> None:
        """Replace the issue stored under ``doc.key`` together with its index row."""
        with self.transaction():
            self._write_issue(doc)

    def upsert_issues(self, docs: Iterable[Document]) -> int:
        """Upsert a whole batch atomically. Returns the number of documents written."""
        count = 0
        with self.transaction():
            for doc in docs:
                self._write_issue(doc)
                count += 1
        return count

    def _write_issue(self, doc: Document) -> None:
        self._conn.execute(
            """
            INSERT INTO issues (key, fields, updated_at) VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET
                fields = excluded.fields,
                updated_at = excluded.updated_at
            """,
            (str(doc.key), doc.fields_json(), str(doc.modified or "")),
        )
        rowid = self._conn.execute(
            "SELECT id FROM issues WHERE key = ?", (str(doc.key),)
        ).fetchone()[0]
        self._conn.execute("DELETE FROM issues_fts WHERE rowid = ?", (rowid,))
        entry = project_issue(doc, self._projection)
        self._conn.execute(
            """
            INSERT INTO issues_fts (rowid, key, title, body, labels, comments)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (rowid, entry.key, entry.title, entry.body, entry.labels, entry.comments),
        )

    def get_issue(self, key: str) -> Document | None:
        """Return the issue stored under *key*, or None."""
        row = self._conn.execute(
            "SELECT key, fields, updated_at FROM issues WHERE key = ?", (key,)
        ).fetchone()
        return _row_to_issue(row) if row else None

    def get_issues(self, keys: Iterable[str]) -> dict[str, Document]:
        """Return the stored issues among *keys*, keyed by issue key."""
        keys = list(dict.fromkeys(keys))
        if not keys:
            return {}
        placeholders = ",".join("?" * len(keys))
        rows = self._conn.execute(
            f"SELECT key, fields, updated_at FROM issues WHERE key IN ({placeholders})",
            keys,
        ).fetchall()
        return {r["key"]: _row_to_issue(r) for r in rows}

    def iter_issues(self) -> Iterator[Document]:
        """Yield every stored issue in key order."""
        for row in self._conn.execute(
            "SELECT key, fields, updated_at FROM issues ORDER BY key"
        ):
            yield _row_to_issue(row)

    def count_issues(self) -> int:
        return self._conn.execute("SELECT COUNT(*) FROM issues").fetchone()[0]

    def reset_issues(self) -> None:
        """Delete every issue and its index row (fresh, non-resume ingestion)."""
        with self.transaction():
            self._conn.execute("DELETE FROM issues_fts")
            self._conn.execute("DELETE FROM issues")

    def get_issue_index_entry(self, key: str) -> IssueIndexEntry | None:
        """Return the stored issues_fts row for *key*, or None."""
        row = self._conn.execute(
            """
            SELECT f.key, f.title, f.body, f.labels, f.comments
            FROM issues_fts f JOIN issues i ON i.id = f.rowid
            WHERE i.key = ?
            """,
            (key,),
        ).fetchone()
        if row is None:
            return None
        return IssueIndexEntry(
            key=row["key"],
            title=row["title"],
            body=row["body"],
            labels=row["labels"],
            comments=row["comments"],
        )

    def count_issue_index_entries(self) -> int:
        return self._conn.execute("SELECT COUNT(*) FROM issues_fts").fetchone()[0]

    # ------------------------------------------------------------------
    # Streams
    # ------------------------------------------------------------------

    def upsert_stream(self, stream: Stream) -> None:
        """Insert or refresh a chat stream (partition) record."""
        with self.transaction():
            self._conn.execute(
                """
                INSERT INTO streams (id, name, description, is_web_public)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name,
                    description = excluded.description,
                    is_web_public = excluded.is_web_public
                """,
                (stream.id, stream.name, stream.description, int(stream.is_web_public)),
            )

    def get_stream(self, stream_id: int) -> Stream | None:
        row = self._conn.execute(
            "SELECT id, name, description, is_web_public FROM streams WHERE id = ?",
            (stream_id,),
        ).fetchone()
        return _row_to_stream(row) if row else None

    def get_stream_by_name(self, name: str) -> Stream | None:
        row = self._conn.execute(
            "SELECT id, name, description, is_web_public FROM streams WHERE name = ?",
            (name,),
        ).fetchone()
        return _row_to_stream(row) if row else None

    def list_streams(self) -> list[tuple[Stream, int, int | None]]:
        """Return ``(stream, message_count, last_timestamp)`` per stored stream, most active first."""
        rows = self._conn.execute(
            """
            SELECT s.id, s.name, s.description, s.is_web_public,
                   COUNT(m.id) AS cnt, MAX(m.timestamp) AS last_ts
            FROM streams s LEFT JOIN messages m ON m.stream_id = s.id
            GROUP BY s.id ORDER BY cnt DESC, s.name
            """
        ).fetchall()
        return [(_row_to_stream(r), r["cnt"], r["last_ts"]) for r in rows]

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def upsert_message(self, doc: Document) -> None:
        """Replace the message stored under ``doc.key`` together with its index row."""
        with self.transaction():
            self._write_message(doc)

    def upsert_messages(self, docs: Iterable[Document]) -> int:
        """Upsert a whole batch atomically. Returns the number of messages written."""
        count = 0
        with self.transaction():
            for doc in docs:
                self._write_message(doc)
                count += 1
        return count

    def _write_message(self, doc: Document) -> None:
        message_id = int(doc.key)
        self._conn.execute(
            """
            INSERT INTO messages (id, stream_id, topic, fields, timestamp)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                stream_id = excluded.stream_id,
                topic = excluded.topic,
                fields = excluded.fields,
                timestamp = excluded.timestamp
            """,
            (
                message_id,
                int(doc.fields["stream_id"]),
                str(doc.fields.get("topic", "")),
                doc.fields_json(),
                int(doc.modified or 0),
            ),
        )
        self._conn.execute("DELETE FROM messages_fts WHERE rowid = ?", (message_id,))
        entry = project_message(doc)
        self._conn.execute(
            """
            INSERT INTO messages_fts (rowid, stream_name, topic, sender_name, content)
            VALUES (?, ?, ?, ?, ?)
            """,
            (message_id, entry.stream_name, entry.topic, entry.sender_name, entry.content),
        )

    def get_message(self, message_id: int) -> Document | None:
        row = self._conn.execute(
            "SELECT id, fields, timestamp FROM messages WHERE id = ?", (message_id,)
        ).fetchone()
        return _row_to_message(row) if row else None

    def thread_messages(self, stream_id: int, topic: str) -> list[Document]:
        """Return every message of one (stream, topic) grouping, ascending id."""
        rows = self._conn.execute(
            """
            SELECT id, fields, timestamp FROM messages
            WHERE stream_id = ? AND topic = ?
            ORDER BY id
            """,
            (stream_id, topic),
        ).fetchall()
        return [_row_to_message(r) for r in rows]

    def list_topics(self, stream_id: int, limit: int = 50) -> list[tuple[str, int, int]]:
        """Return ``(topic, message_count, last_timestamp)`` for a stream, most recent first."""
        rows = self._conn.execute(
            """
            SELECT topic, COUNT(*) AS cnt, MAX(timestamp) AS last_ts
            FROM messages WHERE stream_id = ?
            GROUP BY topic ORDER BY last_ts DESC LIMIT ?
            """,
            (stream_id, limit),
        ).fetchall()
        return [(r["topic"], r["cnt"], r["last_ts"]) for r in rows]

    def iter_messages(self) -> Iterator[Document]:
        for row in self._conn.execute("SELECT id, fields, timestamp FROM messages ORDER BY id"):
            yield _row_to_message(row)

    def count_messages(self, stream_id: int | None = None) -> int:
        if stream_id is None:
            return self._conn.execute("SELECT COUNT(*) FROM messages").fetchone()[0]
        return self._conn.execute(
            "SELECT COUNT(*) FROM messages WHERE stream_id = ?", (stream_id,)
        ).fetchone()[0]

    def max_message_id(self, stream_id: int) -> int | None:
        """Return the highest committed message id in *stream_id*, or None."""
        return self._conn.execute(
            "SELECT MAX(id) FROM messages WHERE stream_id = ?", (stream_id,)
        ).fetchone()[0]

    def reset_messages(self, stream_id: int | None = None) -> None:
        """Delete messages (all, or one stream's) together with their index rows."""
        with self.transaction():
            if stream_id is None:
                self._conn.execute("DELETE FROM messages_fts")
                self._conn.execute("DELETE FROM messages")
                return
            self._conn.execute(
                "DELETE FROM messages_fts WHERE rowid IN "
                "(SELECT id FROM messages WHERE stream_id = ?)",
                (stream_id,),
            )
            self._conn.execute("DELETE FROM messages WHERE stream_id = ?", (stream_id,))

    def get_message_index_entry(self, message_id: int) -> MessageIndexEntry | None:
        row = self._conn.execute(
            "SELECT stream_name, topic, sender_name, content FROM messages_fts WHERE rowid = ?",
            (message_id,),
        ).fetchone()
        if row is None:
            return None
        return MessageIndexEntry(
            stream_name=row["stream_name"],
            topic=row["topic"],
            sender_name=row["sender_name"],
            content=row["content"],
        )

    def count_message_index_entries(self) -> int:
        return self._conn.execute("SELECT COUNT(*) FROM messages_fts").fetchone()[0]

    # ------------------------------------------------------------------
    # Index repair
    # ------------------------------------------------------------------

    def verify_issue_index(self) -> list[str]:
        """Return keys whose index row is missing or differs from the re-derived projection."""
        bad = [
            doc.key
            for doc in self.iter_issues()
            if self.get_issue_index_entry(str(doc.key)) != project_issue(doc, self._projection)
        ]
        orphans = self._conn.execute(
            "SELECT key FROM issues_fts WHERE rowid NOT IN (SELECT id FROM issues)"
        ).fetchall()
        return [str(k) for k in bad] + [r["key"] for r in orphans]

    def verify_message_index(self) -> list[int]:
        """Return message ids whose index row is missing, stale, or orphaned."""
        bad = [
            int(doc.key)
            for doc in self.iter_messages()
            if self.get_message_index_entry(int(doc.key)) != project_message(doc)
        ]
        orphans = self._conn.execute(
            "SELECT rowid FROM messages_fts WHERE rowid NOT IN (SELECT id FROM messages)"
        ).fetchall()
        return bad + [r[0] for r in orphans]

    def rebuild_issue_index(self) -> int:
        """Drop and re-derive every issues_fts row from the primary store."""
        with self.transaction():
            self._conn.execute("DELETE FROM issues_fts")
            count = 0
            for doc in list(self.iter_issues()):
                self._write_issue(doc)
                count += 1
        return count

    def rebuild_message_index(self) -> int:
        """Drop and re-derive every messages_fts row from the primary store."""
        with self.transaction():
            self._conn.execute("DELETE FROM messages_fts")
            count = 0
            for doc in list(self.iter_messages()):
                self._write_message(doc)
                count += 1
        return count

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    def stats(self) -> dict[str, int]:
        """Row counts for every mirrored table."""
        queries = {
            "issues": "SELECT COUNT(*) FROM issues",
            "streams": "SELECT COUNT(*) FROM streams",
            "messages": "SELECT COUNT(*) FROM messages",
            "topics": "SELECT COUNT(*) FROM (SELECT DISTINCT stream_id, topic FROM messages)",
        }
        return {name: self._conn.execute(sql).fetchone()[0] for name, sql in queries.items()}

    def field_counts(self, corpus: Corpus, field_name: str, limit: int = 15) -> list[tuple[str, int]]:
        """Most common values of one document field, e.g. issue status distribution.

        Values are grouped on their rendered JSON form (lists group as a whole).
        """
        rows = self._conn.execute(
            f"""
            SELECT value, COUNT(*) AS cnt
            FROM (SELECT json_extract(fields, ?) AS value FROM {corpus.table})
            WHERE value IS NOT NULL AND value != ''
            GROUP BY value ORDER BY cnt DESC, value LIMIT ?
            """,  # noqa: S608
            (json_path(field_name), limit),
        ).fetchall()
        return [(str(r["value"]), r["cnt"]) for r in rows]


# ------------------------------------------------------------------
# Row → model helpers
# ------------------------------------------------------------------

def _row_to_issue(row: sqlite3.Row) -> Document:
    return Document(
        key=row["key"],
        fields=json.loads(row["fields"]),
        modified=row["updated_at"] or None,
    )


def _row_to_message(row: sqlite3.Row) -> Document:
    return Document(
        key=row["id"],
        fields=json.loads(row["fields"]),
        modified=row["timestamp"],
    )


def _row_to_stream(row: sqlite3.Row) -> Stream:
    return Stream(
        id=row["id"],
        name=row["name"],
        description=row["description"],
        is_web_public=bool(row["is_web_public"]),
    )
