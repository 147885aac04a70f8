"""Error taxonomy shared by ingestion, storage and search.

Policy per error:
  MalformedRecordError  abort the ingestion run (transform bugs repeat).
  TransientFetchError   retried by the fetcher at the same position.
  AuthExpiredError      terminal; carries the exact resume position.
  FetchError            terminal non-auth API failure (e.g. HTTP 400/404).
  NotFoundError         recoverable by the caller.
  QuerySyntaxError      malformed FTS5 expression, surfaced as-is.
"""

from __future__ import annotations


class TrawlError(Exception):
    """Base class for all trawl errors."""


class MalformedRecordError(TrawlError):
    """A raw source record cannot be transformed into a Document."""


class FetchError(TrawlError):
    """The remote API returned an error that retrying will not fix."""

    def __init__(self, message: str, *, status: int | None = None, url: str = "") -> None:
        super().__init__(message)
        self.status = status
        self.url = url


class TransientFetchError(FetchError):
    """Network failure, rate limit, 5xx, or an unusable response body."""


class AuthExpiredError(FetchError):
    """Credentials were rejected (401/403). Stops the whole run.

    ``resume_position`` and ``partition`` are filled in by the fetcher once
    it knows where the run stopped.
    """

    def __init__(
        self,
        message: str,
        *,
        status: int | None = None,
        url: str = "",
        resume_position: int | str | None = None,
        partition: str | None = None,
    ) -> None:
        super().__init__(message, status=status, url=url)
        self.resume_position = resume_position
        self.partition = partition


class NotFoundError(TrawlError):
    """A document or thread key is not in the local store."""


class QuerySyntaxError(TrawlError, ValueError):
    """The full-text expression was rejected by the FTS5 parser."""
