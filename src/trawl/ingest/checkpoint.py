"""Resume positions derived from what the store has actually committed.

Nothing is persisted separately: a checkpoint that cannot disagree with the
store cannot go stale after a crash.
"""

from __future__ import annotations

from trawl.db.repository import Repository

# Chat API anchor meaning "start of the stream".
OLDEST = "oldest"


class CheckpointTracker:
    """Answer "where should the next fetch start?" for a partition."""

    def __init__(self, repo: Repository) -> None:
        self._repo = repo

    def resume_position(self, stream_id: int | None = None) -> int | str:
        """Return the resume position.

        Args:
            stream_id: ``None`` for the issue corpus, which resumes at offset
                ``count(issues)``. A chat stream id resumes after the highest
                committed message id, or at :data:`OLDEST` when the stream is
                empty.
        """
        if stream_id is None:
            return self._repo.count_issues()
        last = self._repo.max_message_id(stream_id)
        return OLDEST if last is None else last
