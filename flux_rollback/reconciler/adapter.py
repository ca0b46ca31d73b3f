"""
Reconciliation Adapter — bridges Kubernetes object fetches to the Debounce Tracker.

For each trigger (namespace/name) the adapter asks each configured probe in
order and evaluates the first resource found. Probes for Flux Kustomization
and HelmRelease are provided; adding another watched kind means adding a
probe, not touching the adapter.
"""

import logging
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence, Tuple

from kubernetes.client import ApiException, CustomObjectsApi

from flux_rollback.models.config import ControllerConfig
from flux_rollback.models.resource import Condition, ReconcileResult, WatchedResource
from flux_rollback.tracking.debounce import DebounceTracker

logger = logging.getLogger(__name__)


class ResourceProbe(Protocol):
    kind: str

    def fetch(self, name: str, namespace: str) -> Optional[WatchedResource]: ...

    def watch_source(self, namespace: str = "") -> Tuple[Callable, Dict[str, Any]]: ...


class CustomResourceProbe:
    """
    Fetches one Flux custom resource kind through the CustomObjects API.

    revision_fields lists status fields to read the revision from, in order
    of preference; the first non-empty one wins.
    """

    kind: str = ""
    group: str = ""
    version: str = ""
    plural: str = ""
    revision_fields: Tuple[str, ...] = ("lastAttemptedRevision",)

    def __init__(self, api: CustomObjectsApi):
        self.api = api

    def fetch(self, name: str, namespace: str) -> Optional[WatchedResource]:
        """Return the resource, or None when no object of this kind has that name."""
        try:
            obj = self.api.get_namespaced_custom_object(
                self.group, self.version, namespace, self.plural, name
            )
        except ApiException as e:
            if e.status == 404:
                return None
            raise
        return self.to_resource(obj)

    def watch_source(self, namespace: str = "") -> Tuple[Callable, Dict[str, Any]]:
        """List function and arguments for a watch stream over this kind."""
        if namespace:
            return self.api.list_namespaced_custom_object, {
                "group": self.group,
                "version": self.version,
                "namespace": namespace,
                "plural": self.plural,
            }
        return self.api.list_cluster_custom_object, {
            "group": self.group,
            "version": self.version,
            "plural": self.plural,
        }

    def to_resource(self, obj: dict) -> WatchedResource:
        metadata = obj.get("metadata") or {}
        status = obj.get("status") or {}

        revision = ""
        for field in self.revision_fields:
            value = status.get(field)
            if value:
                revision = str(value)
                break

        conditions: List[Condition] = []
        for raw in status.get("conditions") or []:
            if not isinstance(raw, dict):
                continue
            conditions.append(Condition(
                type=str(raw.get("type", "")),
                status=str(raw.get("status", "")),
                reason=raw.get("reason"),
                message=raw.get("message"),
            ))

        return WatchedResource(
            kind=self.kind,
            name=metadata.get("name", ""),
            namespace=metadata.get("namespace", ""),
            revision_id=revision,
            conditions=conditions,
        )


class KustomizationProbe(CustomResourceProbe):
    # lastAttemptedRevision is set as soon as the source resolves, even when
    # the apply fails; lastAppliedRevision only covers older objects.
    kind = "Kustomization"
    group = "kustomize.toolkit.fluxcd.io"
    version = "v1"
    plural = "kustomizations"
    revision_fields = ("lastAttemptedRevision", "lastAppliedRevision")


class HelmReleaseProbe(CustomResourceProbe):
    kind = "HelmRelease"
    group = "helm.toolkit.fluxcd.io"
    version = "v2"
    plural = "helmreleases"
    revision_fields = ("lastAttemptedRevision",)


def default_probes(api: CustomObjectsApi) -> List[CustomResourceProbe]:
    """Probes in priority order: Kustomization before HelmRelease."""
    return [KustomizationProbe(api), HelmReleaseProbe(api)]


class ReconciliationAdapter:
    """Evaluates one namespace/name trigger and reports when to look again."""

    def __init__(
        self,
        tracker: DebounceTracker,
        probes: Sequence[ResourceProbe],
        config: ControllerConfig,
    ):
        self.tracker = tracker
        self.probes = list(probes)
        self.config = config

    def reconcile(self, name: str, namespace: str) -> ReconcileResult:
        """Fetch the resource behind a trigger and feed it to the tracker."""
        for probe in self.probes:
            resource = probe.fetch(name, namespace)
            if resource is not None:
                return self.evaluate_resource(resource)

        logger.debug("No watched resource found for %s/%s", namespace, name)
        return ReconcileResult()

    def evaluate_resource(self, resource: WatchedResource) -> ReconcileResult:
        is_ready = resource.is_ready
        requeue_after = self.tracker.evaluate(
            revision_id=resource.revision_id,
            is_failing=not is_ready,
            debounce_window=self.config.debounce_seconds,
            resource=resource.ref,
        )
        return ReconcileResult(
            requeue_after=requeue_after,
            resource=resource.ref,
            revision_id=resource.revision_id or None,
            is_ready=is_ready,
        )
