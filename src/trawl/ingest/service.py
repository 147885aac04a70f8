"""Ingestion entry points: mirror the tracker or the chat into the local store."""

from __future__ import annotations

import logging
import time
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any, Callable

from trawl.config import TrawlConfig
from trawl.db.repository import Repository
from trawl.ingest.checkpoint import OLDEST, CheckpointTracker
from trawl.ingest.client import ChatClient, TrackerClient
from trawl.ingest.fetcher import (
    Backoff,
    IssuePartition,
    PaginatedFetcher,
    PartitionResult,
    StreamPartition,
)
from trawl.transform.transformer import IssueTransformer, MessageTransformer

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[PartitionResult], Any]


@dataclass
class IngestSettings:
    """Pagination and politeness knobs for one ingestion run."""

    batch_size: int = 100
    delay: float = 0.0
    backoff: Backoff = field(default_factory=Backoff)
    public_only: bool = True
    sleep: Callable[[float], Any] = time.sleep

    @classmethod
    def for_tracker(cls, cfg: TrawlConfig) -> IngestSettings:
        return cls(
            batch_size=cfg.tracker.batch_size,
            delay=cfg.tracker.delay,
            backoff=Backoff(initial=cfg.fetch.backoff_initial, maximum=cfg.fetch.backoff_max),
        )

    @classmethod
    def for_chat(cls, cfg: TrawlConfig) -> IngestSettings:
        return cls(
            batch_size=cfg.chat.batch_size,
            delay=cfg.chat.delay,
            backoff=Backoff(initial=cfg.fetch.backoff_initial, maximum=cfg.fetch.backoff_max),
            public_only=cfg.chat.public_only,
        )


@dataclass
class IngestResult:
    """Outcome of ingesting one partition.

    Attributes:
        partition: ``"issues"`` or ``"stream:<name>"``.
        committed: Records committed during this run.
        stored: Records held in the store for this partition after the run.
        available: Total reported by the API (tracker only).
        position: Final resume position.
        complete: The partition was fetched to exhaustion.
    """

    partition: str
    committed: int
    stored: int
    available: int | None
    position: int | str | None
    complete: bool


def ingest_issues(
    repo: Repository,
    client: TrackerClient,
    transformer: IssueTransformer,
    settings: IngestSettings,
    resume: bool = False,
    on_progress: ProgressCallback | None = None,
) -> IngestResult:
    """Mirror the issue corpus.

    With *resume*, continue at offset ``count(issues)``; otherwise drop the
    stored issues and start from offset 0.
    """
    if resume:
        start_at = CheckpointTracker(repo).resume_position()
        logger.info("Resuming issue ingestion at offset %d", start_at)
    else:
        repo.reset_issues()
        start_at = 0

    partition = IssuePartition(
        client, repo, transformer, start_at=int(start_at), batch_size=settings.batch_size
    )
    fetcher = PaginatedFetcher(settings.delay, settings.backoff, settings.sleep, on_progress)
    run = fetcher.run(partition)
    stored = repo.count_issues()
    logger.info("Issue ingestion finished: %d committed, %d stored", run.committed, stored)
    return IngestResult(
        partition=run.partition,
        committed=run.committed,
        stored=stored,
        available=run.total,
        position=run.position,
        complete=run.complete,
    )


def ingest_chat(
    repo: Repository,
    client: ChatClient,
    transformer: MessageTransformer,
    settings: IngestSettings,
    resume: bool = False,
    streams: Iterable[str] | None = None,
    on_progress: ProgressCallback | None = None,
) -> list[IngestResult]:
    """Mirror chat streams one after another.

    Args:
        streams: Restrict to these stream names. ``None`` selects every
            stream the server lists (web-public ones only when
            ``settings.public_only``).
        resume: Continue each stream after its highest stored message id;
            otherwise the selected streams' messages are dropped first.
    """
    # Nothing is committed before the listing succeeds: resume position 0 streams.
    lister = PaginatedFetcher(settings.delay, settings.backoff, settings.sleep)
    listed = lister.request("streams", client.list_streams, position=0)
    selected = [s for s in listed if s.is_web_public or not settings.public_only]
    if streams is not None:
        wanted = set(streams)
        missing = wanted - {s.name for s in selected}
        for name in sorted(missing):
            logger.warning("Stream %r not found (or not public) on the server", name)
        selected = [s for s in selected if s.name in wanted]
    logger.info("Ingesting %d streams", len(selected))

    tracker = CheckpointTracker(repo)
    results: list[IngestResult] = []
    for stream in selected:
        repo.upsert_stream(stream)
        if resume:
            anchor = tracker.resume_position(stream.id)
        else:
            repo.reset_messages(stream.id)
            anchor = OLDEST

        partition = StreamPartition(
            client, repo, transformer, stream, anchor=anchor, batch_size=settings.batch_size
        )
        fetcher = PaginatedFetcher(settings.delay, settings.backoff, settings.sleep, on_progress)
        run = fetcher.run(partition)
        results.append(
            IngestResult(
                partition=run.partition,
                committed=run.committed,
                stored=repo.count_messages(stream.id),
                available=None,
                position=run.position,
                complete=run.complete,
            )
        )
        logger.debug("Stream %s: %d committed", stream.name, run.committed)
    return results
