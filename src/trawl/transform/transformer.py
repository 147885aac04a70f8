"""Record transformers: raw API records -> canonical Documents.

Field tables (renames + exclusions) are immutable values injected at
construction, so alternative tables can be used without global state.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any

import html2text
from bs4 import BeautifulSoup

from trawl.db.models import Document
from trawl.errors import MalformedRecordError
from trawl.transform.values import Person, parse, resolve

# Jira field id -> semantic name (standard fields + FHIR custom fields).
ISSUE_RENAMES: Mapping[str, str] = MappingProxyType({
    "issuetype": "issue_type",
    "created": "created_at",
    "updated": "updated_at",
    "resolutiondate": "resolved_at",
    "comment": "comments",
    "issuelinks": "links",
    "customfield_11302": "specification",
    "customfield_11808": "raised_in_version",
    "customfield_11300": "related_artifact",
    "customfield_11400": "work_group",
    "customfield_11807": "applied_for_version",
    "customfield_10618": "resolution_description",
    "customfield_10510": "resolution_vote",
    "customfield_10511": "change_impact",
    "customfield_10512": "change_category",
    "customfield_10525": "vote_date",
    "customfield_10612": "related_url",
    "customfield_11301": "related_pages",
    "customfield_10518": "related_sections",
    "customfield_10702": "outstanding_negatives",
    "customfield_10704": "pre_applied",
    "customfield_11810": "reconciled",
})

ISSUE_EXCLUDED: frozenset[str] = frozenset({
    "self",
    "avatarUrls",
    "iconUrl",
    "watches",
    "votes",
    "worklog",
    "timetracking",
    "progress",
    "aggregateprogress",
    "lastViewed",
    "statusCategory",
    "updateAuthor",
})

MESSAGE_RENAMES: Mapping[str, str] = MappingProxyType({
    "subject": "topic",
    "display_recipient": "stream_name",
})

MESSAGE_EXCLUDED: frozenset[str] = frozenset({
    "avatar_url",
    "client",
    "content_type",
    "flags",
    "is_me_message",
    "recipient_id",
    "sender_realm_str",
    "submessages",
    "topic_links",
    "type",
})

_h2t = html2text.HTML2Text()
_h2t.ignore_links = True
_h2t.ignore_images = True
_h2t.body_width = 0


@dataclass(frozen=True)
class TransformTables:
    """Immutable field tables for one corpus."""

    renames: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    excluded: frozenset[str] = frozenset()

    def with_overrides(
        self, renames: Mapping[str, str] | None = None, excluded: set[str] | None = None
    ) -> TransformTables:
        """Return new tables with *renames* merged over and *excluded* added."""
        merged = dict(self.renames)
        merged.update(renames or {})
        return TransformTables(
            renames=MappingProxyType(merged),
            excluded=self.excluded | frozenset(excluded or ()),
        )


DEFAULT_ISSUE_TABLES = TransformTables(renames=ISSUE_RENAMES, excluded=ISSUE_EXCLUDED)
DEFAULT_MESSAGE_TABLES = TransformTables(renames=MESSAGE_RENAMES, excluded=MESSAGE_EXCLUDED)


def html_to_text(html: str) -> str:
    """Strip rendered chat HTML down to plain text for indexing."""
    if not html or not html.strip():
        return ""
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup.find_all(["script", "style"]):
        tag.decompose()
    return _h2t.handle(str(soup)).strip()


class _Transformer:
    def __init__(self, tables: TransformTables) -> None:
        self.tables = tables

    def _resolve_fields(self, raw: Mapping[str, Any]) -> dict[str, Any]:
        out: dict[str, Any] = {}
        for name, value in raw.items():
            if name in self.tables.excluded:
                continue
            resolved = resolve(parse(value, self.tables.excluded))
            if resolved is not None:
                out[self.tables.renames.get(name, name)] = resolved
        return out


class IssueTransformer(_Transformer):
    """Jira issue (``{"key": ..., "fields": {...}}``) -> Document keyed by issue key."""

    def __init__(self, tables: TransformTables = DEFAULT_ISSUE_TABLES) -> None:
        super().__init__(tables)

    def transform(self, raw: Any) -> Document:
        if not isinstance(raw, Mapping):
            raise MalformedRecordError(f"Issue record is not an object: {type(raw).__name__}")
        key = raw.get("key")
        if not isinstance(key, str) or not key:
            raise MalformedRecordError(f"Issue record has no key (id={raw.get('id')!r})")
        fields = raw.get("fields")
        if not isinstance(fields, Mapping):
            raise MalformedRecordError(f"Issue {key} has no 'fields' object")

        out = self._resolve_fields(fields)
        modified = out.get("updated_at")
        return Document(key=key, fields=out, modified=modified if isinstance(modified, str) else None)


class MessageTransformer(_Transformer):
    """Zulip stream message -> Document keyed by message id."""

    def __init__(self, tables: TransformTables = DEFAULT_MESSAGE_TABLES) -> None:
        super().__init__(tables)

    def transform(self, raw: Any) -> Document:
        if not isinstance(raw, Mapping):
            raise MalformedRecordError(f"Message record is not an object: {type(raw).__name__}")
        for required in ("id", "stream_id", "timestamp"):
            if not _is_int(raw.get(required)):
                raise MalformedRecordError(
                    f"Message record missing integer '{required}' (id={raw.get('id')!r})"
                )
        if not isinstance(raw.get("subject"), str):
            raise MalformedRecordError(f"Message {raw['id']} has no topic")

        sender_keys = {"sender_full_name", "sender_email"}
        out = self._resolve_fields({k: v for k, v in raw.items() if k not in sender_keys})
        sender = resolve(Person(raw.get("sender_full_name"), raw.get("sender_email")))
        if sender is not None:
            out["sender"] = sender
        content = raw.get("content")
        if isinstance(content, str) and content and "content" not in self.tables.excluded:
            out["content_text"] = html_to_text(content)
        timestamp = int(raw["timestamp"])
        out["created_at"] = datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()
        return Document(key=int(raw["id"]), fields=out, modified=timestamp)


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)
