"""trawl ingest pipeline: API clients, paginated fetcher, resume checkpoints."""

from trawl.ingest.checkpoint import OLDEST, CheckpointTracker
from trawl.ingest.client import ChatClient, TrackerClient
from trawl.ingest.fetcher import FetchState, PaginatedFetcher
from trawl.ingest.service import IngestResult, IngestSettings, ingest_chat, ingest_issues

__all__ = [
    "OLDEST",
    "ChatClient",
    "CheckpointTracker",
    "FetchState",
    "IngestResult",
    "IngestSettings",
    "PaginatedFetcher",
    "TrackerClient",
    "ingest_chat",
    "ingest_issues",
]
