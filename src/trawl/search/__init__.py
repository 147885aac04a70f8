"""trawl search: hybrid filter/full-text queries and complete snapshots."""

from trawl.search.query import Contains, Equals, Order, QueryEngine
from trawl.search.snapshot import IssueSnapshot, SnapshotRenderer, ThreadSnapshot

__all__ = [
    "Contains",
    "Equals",
    "IssueSnapshot",
    "Order",
    "QueryEngine",
    "SnapshotRenderer",
    "ThreadSnapshot",
]
