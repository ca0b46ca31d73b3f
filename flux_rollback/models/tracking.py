"""Revision tracking state — what the debounce tracker knows about each revision."""

from enum import Enum
from typing import Optional

from pydantic import BaseModel

from flux_rollback.models.remediation import RemediationOutcome


class RevisionState(str, Enum):
    UNTRACKED = "untracked"
    PENDING = "pending"       # Failing, debounce window running
    COMPLETED = "completed"   # Remediation triggered; terminal for the process lifetime


class ResourceRef(BaseModel):
    """The watched resource an observation came from."""

    kind: str
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.kind} {self.namespace}/{self.name}"


class TrackedRevision(BaseModel):
    """A single revision identifier and its tagged tracking state."""

    revision_id: str
    state: RevisionState
    first_seen: Optional[float] = None      # Clock reading when the revision entered pending
    completed_at: Optional[float] = None
    resource: Optional[ResourceRef] = None  # Resource whose observation created the entry
    outcome: Optional[RemediationOutcome] = None
