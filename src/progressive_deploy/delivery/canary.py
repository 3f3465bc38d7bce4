"""Lifecycle of the canary Deployment that runs next to the target."""

from __future__ import annotations

import copy
import logging
from typing import Any, Dict

from progressive_deploy.delivery.rollout import DeploymentRecord, Workload
from progressive_deploy.store import ResourceExistsError, ResourceNotFoundError, WorkloadStore

logger = logging.getLogger(__name__)

CANARY_SUFFIX = "-canary"
LABEL_OWNER = "progressive-deployment"
LABEL_TYPE = "deployment-type"
LABEL_VERSION = "version"
CANARY_VALUE = "canary"


class CanaryError(Exception):
    """The canary Deployment cannot be set up for this record."""

    def __init__(self, name: str, message: str) -> None:
        self.name = name
        super().__init__(f"Canary '{name}': {message}")


def canary_name(target: str) -> str:
    """Deterministic canary name for a target Deployment."""
    return f"{target}{CANARY_SUFFIX}"


def build_canary_manifest(record: DeploymentRecord, target: Workload) -> Dict[str, Any]:
    """Derive the canary Deployment manifest from the target Deployment.

    The pod template is cloned as-is apart from its labels, so the canary
    runs whatever revision the target's template currently describes.
    The selector gains ``version=canary`` so the canary never adopts stable
    pods, and the controller owner reference ties the canary's lifetime to
    the record.
    """
    spec = copy.deepcopy(target.manifest.get("spec") or {})

    template = spec.setdefault("template", {})
    template_meta = template.setdefault("metadata", {})
    template_labels = dict(template_meta.get("labels") or {})
    template_labels[LABEL_VERSION] = CANARY_VALUE
    template_labels[LABEL_TYPE] = CANARY_VALUE
    template_meta["labels"] = template_labels

    selector = spec.setdefault("selector", {})
    match_labels = dict(selector.get("matchLabels") or {})
    app = target.labels.get("app")
    if app:
        match_labels["app"] = app
    match_labels[LABEL_VERSION] = CANARY_VALUE
    selector["matchLabels"] = match_labels

    spec["replicas"] = 0

    labels = {LABEL_OWNER: record.name, LABEL_TYPE: CANARY_VALUE}
    if app:
        labels["app"] = app

    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {
            "name": canary_name(target.name),
            "namespace": record.namespace,
            "labels": labels,
            "ownerReferences": [record.owner_reference()],
        },
        "spec": spec,
    }


class CanaryManager:
    """Creates, scales and retires the canary Deployment of a record.

    Only replica counts are ever written to existing Deployments; the
    stable Deployment's template and metadata stay untouched.
    """

    def __init__(self, workloads: WorkloadStore) -> None:
        self._workloads = workloads

    def get_target(self, record: DeploymentRecord, target_name: str) -> Workload:
        return self._workloads.get_workload(record.namespace, target_name)

    def ensure_canary(self, record: DeploymentRecord, target: Workload) -> Workload:
        """Create the canary at zero replicas, or return the existing one unchanged.

        Raises:
            CanaryError: If a Deployment with the canary name exists but is
                not owned by this record.
        """
        manifest = build_canary_manifest(record, target)
        name = manifest["metadata"]["name"]
        try:
            canary = self._workloads.create_workload(manifest)
        except ResourceExistsError:
            existing = self._workloads.get_workload(record.namespace, name)
            if not existing.is_owned_by(record):
                raise CanaryError(name, f"exists and is not owned by {record.key}") from None
            logger.debug("Canary deployment already exists: %s/%s", record.namespace, name)
            return existing
        logger.info("Created canary deployment %s/%s with 0 replicas", record.namespace, name)
        return canary

    def scale(self, record: DeploymentRecord, name: str, replicas: int) -> Workload:
        workload = self._workloads.scale_workload(record.namespace, name, replicas)
        logger.info("Scaled %s/%s to %d replicas", record.namespace, name, replicas)
        return workload

    def retire_canary(self, record: DeploymentRecord) -> bool:
        """Scale the canary to zero and delete it.

        Returns:
            True if a canary was found and removed, False if there was none.
        """
        name = record.status.canary_deployment
        if not name:
            return False
        try:
            self._workloads.scale_workload(record.namespace, name, 0)
            self._workloads.delete_workload(record.namespace, name)
        except ResourceNotFoundError:
            logger.info("Canary deployment %s/%s already gone", record.namespace, name)
            return False
        logger.info("Retired canary deployment %s/%s", record.namespace, name)
        return True
