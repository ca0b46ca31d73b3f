"""
Revision Store — in-memory tracking state for failing revisions.

Written by: Debounce Tracker (only)
Read by: Status API

One mapping from revision identifier to a tagged TrackedRevision, so a
revision can never be pending and completed at the same time. A single lock
guards the whole mapping; writers hold it across check-and-update sequences
via locked(). Nothing is persisted: a restart forgets every revision.
"""

import threading
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional

from flux_rollback.models.tracking import RevisionState, TrackedRevision


class RevisionStore:
    """
    In-memory revision store.
    Completed entries are never evicted for the lifetime of the process.
    """

    def __init__(self):
        self._revisions: Dict[str, TrackedRevision] = {}
        self._lock = threading.RLock()

    @contextmanager
    def locked(self) -> Iterator["RevisionStore"]:
        """Hold the store lock for a check-and-update sequence."""
        with self._lock:
            yield self

    # --- Mutation (call inside locked()) ---

    def get(self, revision_id: str) -> TrackedRevision:
        """Current entry for a revision; untracked revisions get a fresh placeholder."""
        entry = self._revisions.get(revision_id)
        if entry is None:
            return TrackedRevision(revision_id=revision_id, state=RevisionState.UNTRACKED)
        return entry

    def put(self, entry: TrackedRevision) -> None:
        if entry.state == RevisionState.UNTRACKED:
            self._revisions.pop(entry.revision_id, None)
        else:
            self._revisions[entry.revision_id] = entry

    def discard(self, revision_id: str) -> bool:
        return self._revisions.pop(revision_id, None) is not None

    # --- Read-only views (take the lock themselves) ---

    def snapshot(self, state: Optional[RevisionState] = None) -> List[TrackedRevision]:
        """Copies of tracked revisions, optionally filtered by state."""
        with self._lock:
            return [
                entry.model_copy(deep=True)
                for entry in self._revisions.values()
                if state is None or entry.state == state
            ]

    def lookup(self, revision_id: str) -> TrackedRevision:
        with self._lock:
            return self.get(revision_id).model_copy(deep=True)

    def counts(self) -> Dict[str, int]:
        with self._lock:
            counts = {RevisionState.PENDING.value: 0, RevisionState.COMPLETED.value: 0}
            for entry in self._revisions.values():
                counts[entry.state.value] += 1
            return counts
