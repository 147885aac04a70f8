"""Index entry projections: the full-text-searchable subset of a Document.

Projections are pure functions of the document so the index can always be
re-derived from the primary store (see Repository.rebuild_*_index).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from trawl.db.models import Document, IssueIndexEntry, MessageIndexEntry


@dataclass(frozen=True)
class IndexProjection:
    """Which issue fields feed which FTS5 column."""

    title_fields: tuple[str, ...] = ("summary",)
    body_fields: tuple[str, ...] = ("description", "resolution_description")
    label_fields: tuple[str, ...] = (
        "specification",
        "related_artifact",
        "work_group",
        "labels",
        "components",
    )
    comments_field: str = "comments"


def render(value: Any) -> str:
    """Flatten a resolved field value into plain text."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (str, int, float)):
        return str(value)
    if isinstance(value, dict):
        if "display_name" in value:
            return str(value.get("display_name") or value.get("handle") or "")
        if "body" in value:
            return str(value["body"])
        if "key" in value and "summary" in value:
            return f"{value['key']} {value.get('summary') or ''}".strip()
        return " ".join(render(v) for v in value.values() if v is not None)
    if isinstance(value, (list, tuple)):
        return ", ".join(s for s in (render(v) for v in value) if s)
    return str(value)


def _join(doc: Document, names: tuple[str, ...], sep: str) -> str:
    return sep.join(s for s in (render(doc.get(n)) for n in names) if s)


def project_issue(doc: Document, projection: IndexProjection | None = None) -> IssueIndexEntry:
    """Derive the issues_fts row for *doc*."""
    p = projection or IndexProjection()
    comments = doc.get(p.comments_field) or []
    if not isinstance(comments, list):
        comments = [comments]
    return IssueIndexEntry(
        key=str(doc.key),
        title=_join(doc, p.title_fields, " "),
        body=_join(doc, p.body_fields, "\n\n"),
        labels=_join(doc, p.label_fields, ", "),
        comments="\n\n".join(render(c) for c in comments if render(c)),
    )


def project_message(doc: Document) -> MessageIndexEntry:
    """Derive the messages_fts row for *doc*."""
    content = doc.get("content_text")
    if content is None:
        content = doc.get("content")
    return MessageIndexEntry(
        stream_name=render(doc.get("stream_name")),
        topic=render(doc.get("topic")),
        sender_name=render(doc.get("sender")),
        content=render(content),
    )
