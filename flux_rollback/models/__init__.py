"""Flux rollback controller data models."""

from flux_rollback.models.config import ControllerConfig
from flux_rollback.models.remediation import RemediationOutcome, RemediationResult
from flux_rollback.models.resource import Condition, ReconcileResult, WatchedResource
from flux_rollback.models.tracking import ResourceRef, RevisionState, TrackedRevision

__all__ = [
    "Condition",
    "ControllerConfig",
    "ReconcileResult",
    "RemediationOutcome",
    "RemediationResult",
    "ResourceRef",
    "RevisionState",
    "TrackedRevision",
    "WatchedResource",
]
