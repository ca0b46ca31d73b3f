"""
Debounce Tracker — turns level-triggered readiness observations into
at-most-one remediation per failing revision.

States per revision:
  UNTRACKED → PENDING(first_seen) → COMPLETED
  PENDING → UNTRACKED when the resource is observed healthy again

The tracker runs no timer of its own. Every evaluation returns how long the
caller should wait before asking again; the host loop's requeue drives the
state machine forward. Early or late re-checks are harmless because firing
is gated on elapsed time since first_seen.
"""

import logging
import time
from typing import Callable, Optional, Protocol

from flux_rollback.models.remediation import (
    RemediationOutcome,
    RemediationResult,
)
from flux_rollback.models.tracking import ResourceRef, RevisionState, TrackedRevision
from flux_rollback.tracking.store import RevisionStore

logger = logging.getLogger(__name__)

NO_RECHECK = 0.0
# A pending revision always asks for a re-check, even with a zero window.
MIN_PENDING_RECHECK = 1.0


class Remediator(Protocol):
    def remediate(self, revision_id: str) -> RemediationResult: ...


class DebounceTracker:
    """
    Shared across all reconcile workers. evaluate() is the only entry
    point that touches the store.
    """

    def __init__(
        self,
        remediator: Remediator,
        store: Optional[RevisionStore] = None,
        clock: Callable[[], float] = time.monotonic,
        retry_on_failure: bool = False,
    ):
        self.remediator = remediator
        self.store = store if store is not None else RevisionStore()
        self.clock = clock
        self.retry_on_failure = retry_on_failure

    def evaluate(
        self,
        revision_id: str,
        is_failing: bool,
        debounce_window: float,
        resource: Optional[ResourceRef] = None,
    ) -> float:
        """
        Evaluate one observation and return the re-check delay in seconds
        (0.0 means no re-check is needed).
        """
        if not revision_id:
            logger.warning(
                "Cannot create revert without revision resource=%s debounce_seconds=%s",
                resource, debounce_window,
            )
            return NO_RECHECK

        with self.store.locked() as store:
            entry = store.get(revision_id)

            if not is_failing:
                # Recovered: cancel a running window, completed stays completed
                if entry.state == RevisionState.PENDING:
                    store.discard(revision_id)
                    logger.info(
                        "Resource recovered, cancelling pending revert resource=%s revision=%s",
                        resource, revision_id,
                    )
                return NO_RECHECK

            if entry.state == RevisionState.COMPLETED:
                return NO_RECHECK

            now = self.clock()

            if entry.state == RevisionState.UNTRACKED:
                delay = max(float(debounce_window), MIN_PENDING_RECHECK)
                store.put(TrackedRevision(
                    revision_id=revision_id,
                    state=RevisionState.PENDING,
                    first_seen=now,
                    resource=resource,
                ))
                logger.info(
                    "Failure detected resource=%s revision=%s debounce_seconds=%s recheck_in=%.1fs",
                    resource, revision_id, debounce_window, delay,
                )
                return delay

            elapsed = now - entry.first_seen
            if elapsed < debounce_window:
                return float(debounce_window - elapsed)

            # Completed before the call; the remediator runs outside the lock.
            store.put(entry.model_copy(update={
                "state": RevisionState.COMPLETED,
                "completed_at": now,
            }))

        logger.info(
            "Failure stable, creating revert resource=%s revision=%s debounce_seconds=%s elapsed=%.1fs",
            resource, revision_id, debounce_window, elapsed,
        )
        result = self._remediate(revision_id)
        self._record_outcome(revision_id, result)
        return NO_RECHECK

    def _remediate(self, revision_id: str) -> RemediationResult:
        """Invoke the remediator; an unexpected exception counts as a failed attempt."""
        try:
            return self.remediator.remediate(revision_id)
        except Exception as e:
            logger.exception("Revert raised unexpectedly revision=%s", revision_id)
            return RemediationResult(
                revision_id=revision_id,
                branch="",
                url="",
                outcome=RemediationOutcome.FAILED,
                error=str(e),
            )

    def _record_outcome(self, revision_id: str, result: RemediationResult) -> None:
        with self.store.locked() as store:
            entry = store.get(revision_id)
            if entry.state != RevisionState.COMPLETED:
                return
            if not result.ok and self.retry_on_failure:
                store.discard(revision_id)
                logger.warning(
                    "Revert failed, revision forgotten so a new window can start revision=%s",
                    revision_id,
                )
                return
            store.put(entry.model_copy(update={"outcome": result.outcome}))
