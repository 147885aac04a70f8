"""Tests for PaginatedFetcher: retry, abort, resume, and commit-before-advance."""

from __future__ import annotations

import pytest

from trawl.db.connection import Database
from trawl.db.models import Stream
from trawl.db.repository import Repository
from trawl.db.schema import initialize
from trawl.errors import AuthExpiredError, FetchError, MalformedRecordError, TransientFetchError
from trawl.ingest.checkpoint import OLDEST, CheckpointTracker
from trawl.ingest.client import Batch
from trawl.ingest.fetcher import (
    Backoff,
    FetchState,
    IssuePartition,
    PaginatedFetcher,
    StreamPartition,
)
from trawl.transform.transformer import IssueTransformer, MessageTransformer


class FakeTracker:
    """Serves *records* by offset; *failures* maps offset -> errors raised first."""

    def __init__(self, records, failures=None):
        self.records = records
        self.failures = {k: list(v) for k, v in (failures or {}).items()}
        self.calls: list[int] = []

    def fetch_batch(self, start_at, max_results):
        self.calls.append(start_at)
        pending = self.failures.get(start_at)
        if pending:
            raise pending.pop(0)
        return Batch(records=self.records[start_at:start_at + max_results], total=len(self.records))


class FakeChat:
    """Serves *messages* (ascending ids) by anchor, like the /messages endpoint."""

    def __init__(self, messages, failures=None):
        self.messages = messages
        self.failures = {k: list(v) for k, v in (failures or {}).items()}
        self.calls: list[int | str] = []

    def fetch_messages(self, stream_id, anchor, num_after):
        self.calls.append(anchor)
        pending = self.failures.get(anchor)
        if pending:
            raise pending.pop(0)
        if anchor == OLDEST:
            start = 0
        else:
            start = next((i for i, m in enumerate(self.messages) if m["id"] > anchor), len(self.messages))
        page = self.messages[start:start + num_after]
        return Batch(records=page, found_newest=start + num_after >= len(self.messages))


@pytest.fixture
def issues(raw_issue):
    return [raw_issue(f"FHIR-{i}") for i in range(1, 7)]


@pytest.fixture
def sleeps():
    return []


def _fetcher(sleeps, delay=0.15, backoff=None):
    return PaginatedFetcher(delay=delay, backoff=backoff or Backoff(), sleep=sleeps.append)


def _issue_partition(client, repo, start_at=0, batch_size=2):
    return IssuePartition(client, repo, IssueTransformer(), start_at=start_at, batch_size=batch_size)


def _stored_keys(repo):
    return sorted(str(d.key) for d in repo.iter_issues())


def _issue_store(repo):
    """Every stored issue with its index row, keyed by issue key."""
    return {
        d.key: (d.fields, d.modified, repo.get_issue_index_entry(str(d.key)))
        for d in repo.iter_issues()
    }


def _message_store(repo):
    return {
        d.key: (d.fields, d.modified, repo.get_message_index_entry(int(d.key)))
        for d in repo.iter_messages()
    }


@pytest.fixture
def uninterrupted(tmp_path):
    """A second, independent store for a reference run."""
    conn = Database(tmp_path / "uninterrupted.db").connect()
    initialize(conn)
    yield Repository(conn)
    conn.close()


# ------------------------------------------------------------------
# Issues
# ------------------------------------------------------------------


def test_full_run_commits_everything(repo, issues, sleeps):
    client = FakeTracker(issues)
    fetcher = _fetcher(sleeps)
    result = fetcher.run(_issue_partition(client, repo))
    assert result.committed == 6
    assert result.batches == 3
    assert result.complete is True
    assert result.total == 6
    assert fetcher.state is FetchState.DONE
    assert client.calls == [0, 2, 4]


def test_transient_failure_retries_same_position(repo, issues, sleeps):
    client = FakeTracker(issues, failures={2: [TransientFetchError("HTTP 503", status=503)]})
    result = _fetcher(sleeps).run(_issue_partition(client, repo))

    assert client.calls == [0, 2, 2, 4]
    assert result.retries == 1
    assert repo.count_issues() == 6
    assert _stored_keys(repo) == sorted(f"FHIR-{i}" for i in range(1, 7))
    assert CheckpointTracker(repo).resume_position() == 6
    # politeness delay, backoff, politeness delay; no delay after the last batch
    assert sleeps == [0.15, 2.0, 0.15]


def test_backoff_grows_and_caps(repo, issues, sleeps):
    failures = {0: [TransientFetchError("x") for _ in range(4)]}
    client = FakeTracker(issues[:2], failures=failures)
    _fetcher(sleeps, delay=0, backoff=Backoff(initial=1.0, factor=2.0, maximum=3.0)).run(
        _issue_partition(client, repo)
    )
    assert sleeps == [1.0, 2.0, 3.0, 3.0]
    assert repo.count_issues() == 2


def test_backoff_resets_after_success(repo, issues, sleeps):
    failures = {0: [TransientFetchError("x")], 2: [TransientFetchError("y")]}
    client = FakeTracker(issues[:4], failures=failures)
    _fetcher(sleeps, delay=0).run(_issue_partition(client, repo))
    assert sleeps == [2.0, 2.0]


def test_auth_expired_aborts_with_resume_position(repo, issues, sleeps):
    client = FakeTracker(issues, failures={4: [AuthExpiredError("HTTP 401", status=401)]})
    fetcher = _fetcher(sleeps)
    with pytest.raises(AuthExpiredError) as exc_info:
        fetcher.run(_issue_partition(client, repo))

    assert exc_info.value.resume_position == 4
    assert exc_info.value.partition == "issues"
    assert fetcher.state is FetchState.ABORTED
    assert repo.count_issues() == 4
    assert client.calls == [0, 2, 4]


def test_resume_after_abort_completes_without_duplicates(repo, issues, sleeps):
    client = FakeTracker(issues, failures={4: [AuthExpiredError("HTTP 401")]})
    with pytest.raises(AuthExpiredError):
        _fetcher(sleeps).run(_issue_partition(client, repo))

    start = CheckpointTracker(repo).resume_position()
    result = _fetcher(sleeps).run(_issue_partition(client, repo, start_at=start))

    assert start == 4
    assert result.committed == 2
    assert repo.count_issues() == 6
    assert _stored_keys(repo) == sorted(f"FHIR-{i}" for i in range(1, 7))


def test_resumed_store_matches_uninterrupted_run(repo, uninterrupted, issues, sleeps):
    client = FakeTracker(issues, failures={2: [AuthExpiredError("HTTP 401")]})
    with pytest.raises(AuthExpiredError):
        _fetcher(sleeps).run(_issue_partition(client, repo))
    start = CheckpointTracker(repo).resume_position()
    _fetcher(sleeps).run(_issue_partition(client, repo, start_at=start))

    _fetcher(sleeps).run(_issue_partition(FakeTracker(issues), uninterrupted))

    assert _issue_store(repo) == _issue_store(uninterrupted)
    assert len(_issue_store(repo)) == 6
    assert repo.count_issue_index_entries() == uninterrupted.count_issue_index_entries() == 6


def test_terminal_fetch_error_is_not_retried(repo, issues, sleeps):
    client = FakeTracker(issues, failures={0: [FetchError("HTTP 400", status=400)]})
    fetcher = _fetcher(sleeps)
    with pytest.raises(FetchError):
        fetcher.run(_issue_partition(client, repo))
    assert client.calls == [0]
    assert sleeps == []
    assert fetcher.state is FetchState.ABORTED


def test_malformed_record_leaves_batch_uncommitted(repo, issues, sleeps):
    records = issues[:2] + [issues[2], {"fields": {"summary": "keyless"}}] + issues[4:]
    client = FakeTracker(records)
    fetcher = _fetcher(sleeps)
    with pytest.raises(MalformedRecordError):
        fetcher.run(_issue_partition(client, repo))
    assert repo.count_issues() == 2
    assert repo.get_issue("FHIR-3") is None
    assert fetcher.state is FetchState.ABORTED


def test_empty_corpus_is_done_immediately(repo, sleeps):
    client = FakeTracker([])
    result = _fetcher(sleeps).run(_issue_partition(client, repo))
    assert result.complete is True
    assert result.committed == 0
    assert sleeps == []


def test_on_batch_reports_progress(repo, issues, sleeps):
    seen = []
    fetcher = PaginatedFetcher(delay=0, sleep=sleeps.append, on_batch=lambda r: seen.append(r.position))
    fetcher.run(_issue_partition(FakeTracker(issues), repo))
    assert seen == [2, 4, 6]


# ------------------------------------------------------------------
# Streams
# ------------------------------------------------------------------


@pytest.fixture
def messages(raw_message):
    return [raw_message(id=i) for i in (10, 20, 30, 40, 50)]


def _stream_partition(client, repo, stream, anchor=OLDEST, batch_size=2):
    return StreamPartition(
        client, repo, MessageTransformer(), stream, anchor=anchor, batch_size=batch_size
    )


def test_stream_anchor_pagination(repo, stream, messages, sleeps):
    client = FakeChat(messages)
    result = _fetcher(sleeps).run(_stream_partition(client, repo, stream))
    assert client.calls == [OLDEST, 20, 40]
    assert result.position == 50
    assert result.complete is True
    assert repo.count_messages(stream.id) == 5
    assert result.partition == "stream:implementers"


def test_stream_transient_retry(repo, stream, messages, sleeps):
    client = FakeChat(messages, failures={20: [TransientFetchError("timeout")]})
    result = _fetcher(sleeps, delay=0).run(_stream_partition(client, repo, stream))
    assert client.calls == [OLDEST, 20, 20, 40]
    assert result.committed == 5
    assert repo.count_messages() == 5


def test_stream_auth_abort_then_resume(repo, stream, messages, sleeps):
    client = FakeChat(messages, failures={40: [AuthExpiredError("HTTP 401")]})
    with pytest.raises(AuthExpiredError) as exc_info:
        _fetcher(sleeps).run(_stream_partition(client, repo, stream))
    assert exc_info.value.resume_position == 40
    assert exc_info.value.partition == "stream:implementers"

    anchor = CheckpointTracker(repo).resume_position(stream.id)
    assert anchor == 40
    _fetcher(sleeps).run(_stream_partition(client, repo, stream, anchor=anchor))
    assert [d.key for d in repo.thread_messages(stream.id, "Patient.identifier")] == [10, 20, 30, 40, 50]


def test_resumed_stream_matches_uninterrupted_run(repo, uninterrupted, stream, messages, sleeps):
    client = FakeChat(messages, failures={20: [AuthExpiredError("HTTP 401")]})
    with pytest.raises(AuthExpiredError):
        _fetcher(sleeps).run(_stream_partition(client, repo, stream))
    anchor = CheckpointTracker(repo).resume_position(stream.id)
    _fetcher(sleeps).run(_stream_partition(client, repo, stream, anchor=anchor))

    uninterrupted.upsert_stream(stream)
    _fetcher(sleeps).run(_stream_partition(FakeChat(messages), uninterrupted, stream))

    assert _message_store(repo) == _message_store(uninterrupted)
    assert sorted(_message_store(repo)) == [10, 20, 30, 40, 50]


def test_stream_without_new_messages(repo, stream, messages, sleeps):
    client = FakeChat(messages)
    result = _fetcher(sleeps).run(_stream_partition(client, repo, stream, anchor=50))
    assert result.committed == 0
    assert result.position == 50
    assert result.complete is True


def test_separate_streams_do_not_mix(repo, stream, raw_message, sleeps):
    other = Stream(id=8, name="terminology", is_web_public=True)
    repo.upsert_stream(other)
    client = FakeChat([raw_message(id=5, stream_id=8)])
    _fetcher(sleeps).run(_stream_partition(client, repo, other))
    assert repo.count_messages(8) == 1
    assert repo.count_messages(stream.id) == 0


# ------------------------------------------------------------------
# Standalone requests
# ------------------------------------------------------------------


def test_request_retries_transient_failures(sleeps):
    outcomes = [TransientFetchError("HTTP 429", status=429), TransientFetchError("HTTP 502"), ["ok"]]

    def call():
        outcome = outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    fetcher = _fetcher(sleeps)
    assert fetcher.request("streams", call) == ["ok"]
    assert sleeps == [2.0, 4.0]


def test_request_tags_auth_failure(sleeps):
    def call():
        raise AuthExpiredError("HTTP 403", status=403)

    fetcher = _fetcher(sleeps)
    with pytest.raises(AuthExpiredError) as exc_info:
        fetcher.request("streams", call, position=0)
    assert exc_info.value.partition == "streams"
    assert exc_info.value.resume_position == 0
    assert fetcher.state is FetchState.ABORTED
    assert sleeps == []
