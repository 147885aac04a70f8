"""Record transformation: raw API payloads to canonical Documents."""

from trawl.transform.transformer import (
    DEFAULT_ISSUE_TABLES,
    DEFAULT_MESSAGE_TABLES,
    IssueTransformer,
    MessageTransformer,
    TransformTables,
)

__all__ = [
    "DEFAULT_ISSUE_TABLES",
    "DEFAULT_MESSAGE_TABLES",
    "IssueTransformer",
    "MessageTransformer",
    "TransformTables",
]
