"""Complete, untruncated views of one issue or one chat thread."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any
from urllib.parse import quote

from trawl.db.models import Document, Stream
from trawl.db.repository import Repository
from trawl.errors import NotFoundError


@dataclass
class IssueSnapshot:
    """An issue with every comment (chronological) and its resolved links.

    Each link is ``{"key", "summary", "status", "type", "relation", "mirrored"}``;
    summary and status come from the local store when the target is mirrored.
    """

    document: Document
    comments: list[dict[str, Any]] = field(default_factory=list)
    links: list[dict[str, Any]] = field(default_factory=list)
    duplicates: list[dict[str, Any]] = field(default_factory=list)
    url: str | None = None

    @property
    def key(self) -> str:
        return str(self.document.key)

    @property
    def summary(self) -> str:
        return str(self.document.get("summary") or "")


@dataclass
class ThreadSnapshot:
    """Every message of one (stream, topic) grouping, ascending id."""

    stream: Stream
    topic: str
    messages: list[Document] = field(default_factory=list)
    url: str | None = None

    @property
    def first_timestamp(self) -> int | None:
        return self.messages[0].modified if self.messages else None  # type: ignore[return-value]

    @property
    def last_timestamp(self) -> int | None:
        return self.messages[-1].modified if self.messages else None  # type: ignore[return-value]


class SnapshotRenderer:
    """Build snapshots from the local store only; never touches the network.

    Args:
        repo: Store to read from.
        duplicate_relation: Link relation label that marks a duplicate.
        tracker_url: When set, snapshots carry a browse URL.
        chat_url: When set, thread snapshots carry a narrow URL.
    """

    def __init__(
        self,
        repo: Repository,
        *,
        duplicate_relation: str = "duplicates",
        tracker_url: str | None = None,
        chat_url: str | None = None,
    ) -> None:
        self._repo = repo
        self._duplicate_relation = duplicate_relation
        self._tracker_url = tracker_url.rstrip("/") if tracker_url else None
        self._chat_url = chat_url.rstrip("/") if chat_url else None

    def issue(self, key: str) -> IssueSnapshot:
        """Raises NotFoundError if *key* is not mirrored."""
        doc = self._repo.get_issue(key)
        if doc is None:
            raise NotFoundError(f"Issue {key} is not in the local store")

        comments = [c for c in doc.get("comments") or [] if isinstance(c, dict)]
        # Stable sort: comments without a timestamp keep their relative order at the end.
        comments.sort(key=lambda c: (c.get("created") is None, c.get("created") or ""))

        raw_links = [link for link in doc.get("links") or [] if isinstance(link, dict)]
        local = self._repo.get_issues(str(link["key"]) for link in raw_links if link.get("key"))
        links = [_enrich_link(link, local.get(str(link.get("key")))) for link in raw_links]
        duplicates = [link for link in links if link["relation"] == self._duplicate_relation]

        url = f"{self._tracker_url}/browse/{doc.key}" if self._tracker_url else None
        return IssueSnapshot(
            document=doc, comments=comments, links=links, duplicates=duplicates, url=url
        )

    def thread(self, stream_name: str, topic: str) -> ThreadSnapshot:
        """Raises NotFoundError if the stream is unknown or the topic has no messages."""
        stream = self._repo.get_stream_by_name(stream_name)
        if stream is None:
            raise NotFoundError(f"Stream '{stream_name}' is not in the local store")
        return self._thread(stream, topic)

    def thread_of(self, message_id: int) -> ThreadSnapshot:
        """Return the whole thread that owns *message_id*."""
        doc = self._repo.get_message(message_id)
        if doc is None:
            raise NotFoundError(f"Message {message_id} is not in the local store")
        stream = self._repo.get_stream(int(doc.fields["stream_id"]))
        if stream is None:
            raise NotFoundError(f"Stream {doc.fields['stream_id']} is not in the local store")
        return self._thread(stream, str(doc.get("topic", "")))

    def _thread(self, stream: Stream, topic: str) -> ThreadSnapshot:
        messages = self._repo.thread_messages(stream.id, topic)
        if not messages:
            raise NotFoundError(f"No messages in #{stream.name} > {topic}")
        url = None
        if self._chat_url:
            url = (
                f"{self._chat_url}/#narrow/stream/{quote(stream.name, safe='')}"
                f"/topic/{quote(topic, safe='')}"
            )
        return ThreadSnapshot(stream=stream, topic=topic, messages=messages, url=url)


def _enrich_link(link: dict[str, Any], target: Document | None) -> dict[str, Any]:
    # Stored links carry the relation in "type"; the target's own issue
    # type is only known when the target is mirrored.
    out = {
        "key": link.get("key"),
        "summary": link.get("summary"),
        "status": link.get("status"),
        "type": None,
        "relation": link.get("type"),
        "mirrored": target is not None,
    }
    if target is not None:
        out["summary"] = target.get("summary", out["summary"])
        out["status"] = target.get("status", out["status"])
        out["type"] = target.get("issue_type")
    return out
