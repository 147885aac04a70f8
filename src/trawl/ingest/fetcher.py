"""Paginated fetch loop: fetch -> transform -> commit, one batch at a time.

State machine per partition::

    IDLE -> FETCHING -> COMMITTING -> IDLE      (more batches; fixed delay)
                     |             -> DONE      (partition exhausted)
                     -> BACKOFF -> FETCHING     (transient failure, same position)
                     -> ABORTED                 (auth expired, terminal error,
                                                 malformed record)

The position only advances after a batch is committed, so a retried or
resumed fetch never skips records.
"""

from __future__ import annotations

import enum
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Protocol, TypeVar

from trawl.db.models import Stream
from trawl.db.repository import Repository
from trawl.errors import AuthExpiredError, FetchError, TransientFetchError
from trawl.ingest.client import Batch, ChatClient, TrackerClient
from trawl.transform.transformer import IssueTransformer, MessageTransformer

logger = logging.getLogger(__name__)

T = TypeVar("T")


class FetchState(str, enum.Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    COMMITTING = "committing"
    BACKOFF = "backoff"
    ABORTED = "aborted"
    DONE = "done"


@dataclass(frozen=True)
class Backoff:
    """Exponential retry delay: ``initial * factor**attempt``, capped at ``maximum``."""

    initial: float = 2.0
    factor: float = 2.0
    maximum: float = 60.0

    def delay(self, attempt: int) -> float:
        return min(self.initial * self.factor**attempt, self.maximum)


@dataclass
class PartitionResult:
    """Progress of one partition run."""

    partition: str
    committed: int = 0
    batches: int = 0
    retries: int = 0
    position: int | str | None = None
    total: int | None = None
    complete: bool = False


class Partition(Protocol):
    """One independently paginated sequence of records."""

    name: str
    position: int | str
    total: int | None

    def fetch(self) -> Batch: ...

    def commit(self, batch: Batch) -> int: ...

    def advance(self, batch: Batch) -> None: ...

    def exhausted(self, batch: Batch) -> bool: ...


class IssuePartition:
    """The issue corpus: offset pagination, resume position = committed count."""

    def __init__(
        self,
        client: TrackerClient,
        repo: Repository,
        transformer: IssueTransformer,
        *,
        start_at: int = 0,
        batch_size: int = 100,
    ) -> None:
        self.name = "issues"
        self.position: int = start_at
        self.total: int | None = None
        self._client = client
        self._repo = repo
        self._transformer = transformer
        self._batch_size = batch_size

    def fetch(self) -> Batch:
        return self._client.fetch_batch(self.position, self._batch_size)

    def commit(self, batch: Batch) -> int:
        # Transform first so a malformed record leaves the batch uncommitted.
        docs = [self._transformer.transform(raw) for raw in batch.records]
        return self._repo.upsert_issues(docs)

    def advance(self, batch: Batch) -> None:
        self.position += len(batch.records)
        if batch.total is not None:
            self.total = batch.total

    def exhausted(self, batch: Batch) -> bool:
        if not batch.records:
            return True
        return self.total is not None and self.position >= self.total


class StreamPartition:
    """One chat stream: anchor pagination, resume position = last committed id."""

    def __init__(
        self,
        client: ChatClient,
        repo: Repository,
        transformer: MessageTransformer,
        stream: Stream,
        *,
        anchor: int | str,
        batch_size: int = 1000,
    ) -> None:
        self.name = f"stream:{stream.name}"
        self.stream = stream
        self.position: int | str = anchor
        self.total: int | None = None
        self._client = client
        self._repo = repo
        self._transformer = transformer
        self._batch_size = batch_size

    def fetch(self) -> Batch:
        return self._client.fetch_messages(self.stream.id, self.position, self._batch_size)

    def commit(self, batch: Batch) -> int:
        docs = [self._transformer.transform(raw) for raw in batch.records]
        return self._repo.upsert_messages(docs)

    def advance(self, batch: Batch) -> None:
        if batch.records:
            self.position = max(int(raw["id"]) for raw in batch.records)

    def exhausted(self, batch: Batch) -> bool:
        return batch.found_newest or not batch.records


class PaginatedFetcher:
    """Drive a partition to exhaustion with retry, backoff and politeness delay.

    Args:
        delay: Seconds to wait between committed batches.
        backoff: Retry delay policy for transient failures.
        sleep: Injected for tests; defaults to ``time.sleep``.
        on_batch: Called with the running result after each commit.
    """

    def __init__(
        self,
        delay: float = 0.0,
        backoff: Backoff | None = None,
        sleep: Callable[[float], Any] = time.sleep,
        on_batch: Callable[[PartitionResult], Any] | None = None,
    ) -> None:
        self.delay = delay
        self.backoff = backoff or Backoff()
        self.sleep = sleep
        self.on_batch = on_batch
        self.state = FetchState.IDLE

    def request(self, name: str, call: Callable[[], T], position: int | str | None = None) -> T:
        """Run one standalone API call (e.g. a stream listing) under the retry policy.

        Transient failures back off and retry; an ``AuthExpiredError`` is
        tagged with *name* and *position* before it propagates.
        """
        return self._attempt(name, call, position)

    def _attempt(
        self,
        name: str,
        call: Callable[[], T],
        position: int | str | None,
        result: PartitionResult | None = None,
    ) -> T:
        attempt = 0
        while True:
            self.state = FetchState.FETCHING
            try:
                return call()
            except AuthExpiredError as exc:
                self.state = FetchState.ABORTED
                exc.partition = name
                exc.resume_position = position
                logger.warning("%s: credentials rejected at position %s", name, position)
                raise
            except TransientFetchError as exc:
                self.state = FetchState.BACKOFF
                wait = self.backoff.delay(attempt)
                attempt += 1
                if result is not None:
                    result.retries += 1
                logger.warning("%s: %s (attempt %d, retrying in %.1fs)", name, exc, attempt, wait)
                self.sleep(wait)
            except FetchError:
                self.state = FetchState.ABORTED
                raise

    def run(self, partition: Partition) -> PartitionResult:
        """Fetch and commit batches until *partition* is exhausted.

        Raises:
            AuthExpiredError: with ``partition`` and ``resume_position`` set.
            MalformedRecordError: the failing batch is not committed.
            FetchError: any non-retryable API failure.
        """
        result = PartitionResult(partition=partition.name, position=partition.position)
        self.state = FetchState.IDLE

        while True:
            batch = self._attempt(partition.name, partition.fetch, partition.position, result)

            self.state = FetchState.COMMITTING
            try:
                written = partition.commit(batch)
            except Exception:
                self.state = FetchState.ABORTED
                raise

            partition.advance(batch)
            result.committed += written
            result.batches += 1
            result.position = partition.position
            result.total = partition.total
            logger.debug(
                "%s: committed %d records (position %s)", partition.name, written, partition.position
            )

            if partition.exhausted(batch):
                self.state = FetchState.DONE
                result.complete = True
                if self.on_batch is not None:
                    self.on_batch(result)
                return result

            if self.on_batch is not None:
                self.on_batch(result)
            self.state = FetchState.IDLE
            if self.delay > 0:
                self.sleep(self.delay)
