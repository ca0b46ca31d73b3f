"""
Flux Rollback status API — FastAPI endpoints.

Read-only views of the controller for operators:
- Health and configuration
- Tracked revisions (pending and completed)
- Manual reconcile trigger
"""

from typing import Optional

from fastapi import FastAPI, HTTPException
from kubernetes.client import ApiException
from pydantic import BaseModel

from flux_rollback.models.config import ControllerConfig
from flux_rollback.models.tracking import RevisionState
from flux_rollback.reconciler.adapter import ReconciliationAdapter
from flux_rollback.reconciler.manager import ControllerManager
from flux_rollback.tracking.debounce import DebounceTracker


class ReconcileTriggerResponse(BaseModel):
    namespace: str
    name: str
    found: bool
    kind: Optional[str] = None
    revision_id: Optional[str] = None
    is_ready: Optional[bool] = None
    requeue_after: float


# --- Application Factory ---

def create_app(
    config: ControllerConfig,
    tracker: DebounceTracker,
    adapter: ReconciliationAdapter,
    manager: Optional[ControllerManager] = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""

    app = FastAPI(
        title="Flux Rollback Controller",
        description="Debounced GitLab reverts for failing Flux resources",
        version="0.1.0",
    )

    app.state.config = config
    app.state.tracker = tracker
    app.state.adapter = adapter
    app.state.manager = manager

    store = tracker.store

    # === HEALTH ===

    @app.get("/healthz")
    def healthz():
        """Liveness plus a summary of tracked revisions."""
        return {
            "status": "ok",
            "controller": manager.status if manager else "detached",
            "queue_depth": len(manager.queue) if manager else 0,
            "revisions": store.counts(),
        }

    @app.get("/config")
    def get_config():
        """Active configuration, token redacted."""
        return config.redacted()

    # === REVISIONS ===

    @app.get("/revisions")
    def list_revisions(state: Optional[RevisionState] = None):
        """Tracked revisions, optionally filtered by state."""
        return [r.model_dump(mode="json") for r in store.snapshot(state)]

    @app.get("/revisions/{revision_id:path}")
    def get_revision(revision_id: str):
        """Tracking state for one revision."""
        entry = store.lookup(revision_id)
        if entry.state == RevisionState.UNTRACKED:
            raise HTTPException(404, "Revision not tracked")
        return entry.model_dump(mode="json")

    # === RECONCILE ===

    @app.post("/reconcile/{namespace}/{name}", response_model=ReconcileTriggerResponse)
    def trigger_reconcile(namespace: str, name: str):
        """Evaluate one resource now (same path as a watch-driven reconcile)."""
        try:
            result = adapter.reconcile(name, namespace)
        except ApiException as e:
            raise HTTPException(502, f"Kubernetes API error: {e.status} {e.reason}")

        if manager is not None and result.requeue_after > 0:
            manager.queue.add_after((namespace, name), result.requeue_after)

        return ReconcileTriggerResponse(
            namespace=namespace,
            name=name,
            found=result.resource is not None,
            kind=result.resource.kind if result.resource else None,
            revision_id=result.revision_id,
            is_ready=result.is_ready,
            requeue_after=result.requeue_after,
        )

    return app
