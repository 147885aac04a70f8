"""Shared pytest fixtures."""

from __future__ import annotations

import pytest

from trawl.db.connection import Database
from trawl.db.models import Stream
from trawl.db.repository import Repository
from trawl.db.schema import initialize


@pytest.fixture
def tmp_db(tmp_path):
    """File-based DB in tmp_path with schema initialized, closed after test."""
    db = Database(tmp_path / ".trawl.db")
    conn = db.connect()
    initialize(conn)
    yield conn
    conn.close()


@pytest.fixture
def repo(tmp_db):
    return Repository(tmp_db)


@pytest.fixture
def stream(repo):
    """A web-public stream already stored (messages reference it)."""
    s = Stream(id=7, name="implementers", description="Implementer questions", is_web_public=True)
    repo.upsert_stream(s)
    return s


def make_raw_issue(key="FHIR-1", summary="Patient resource question", **fields):
    """Raw tracker issue as returned by the search API."""
    base = {
        "summary": summary,
        "description": f"Description of {key}",
        "status": {"name": "Triaged", "statusCategory": {"key": "new"}},
        "issuetype": {"name": "Change Request", "iconUrl": "https://x/icon.png"},
        "updated": "2024-01-01T10:00:00.000+0000",
        "created": "2023-12-01T10:00:00.000+0000",
    }
    base.update(fields)
    return {"id": "10001", "key": key, "self": f"https://jira/rest/api/2/issue/{key}", "fields": base}


def make_raw_message(id=1, stream_id=7, topic="Patient.identifier", content="<p>hello</p>", **extra):
    """Raw chat message as returned by the /messages API."""
    msg = {
        "id": id,
        "stream_id": stream_id,
        "display_recipient": "implementers",
        "subject": topic,
        "content": content,
        "timestamp": 1_700_000_000 + id,
        "sender_id": 42,
        "sender_full_name": "Grahame Grieve",
        "sender_email": "grahame@example.org",
        "avatar_url": "https://x/avatar.png",
        "flags": ["read"],
        "type": "stream",
    }
    msg.update(extra)
    return msg


@pytest.fixture
def raw_issue():
    return make_raw_issue


@pytest.fixture
def raw_message():
    return make_raw_message
