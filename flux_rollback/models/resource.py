"""Watched resources — the shape the reconciliation adapter reads."""

from typing import List, Optional

from pydantic import BaseModel

from flux_rollback.models.tracking import ResourceRef


class Condition(BaseModel):
    """A status condition record (only type and status matter here)."""

    type: str
    status: str
    reason: Optional[str] = None
    message: Optional[str] = None


class WatchedResource(BaseModel):
    """A fetched Kustomization or HelmRelease, reduced to what the tracker needs."""

    kind: str
    name: str
    namespace: str
    revision_id: str = ""                   # "" = revision not known yet
    conditions: List[Condition] = []

    @property
    def is_ready(self) -> bool:
        """False only when a Ready condition explicitly reports status "False"."""
        return not any(
            c.type == "Ready" and c.status == "False" for c in self.conditions
        )

    @property
    def ref(self) -> ResourceRef:
        return ResourceRef(kind=self.kind, namespace=self.namespace, name=self.name)


class ReconcileResult(BaseModel):
    """What the adapter hands back to the host loop."""

    requeue_after: float = 0.0              # Seconds; 0 = no re-check needed
    resource: Optional[ResourceRef] = None
    revision_id: Optional[str] = None
    is_ready: Optional[bool] = None
