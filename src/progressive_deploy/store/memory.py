"""In-memory resource store for tests and local simulation.

Behaves like the API server where it matters to the reconciler: every
write bumps a ``resourceVersion``, status writes are compare-and-swap,
objects go through their manifest form on the way in and out, and
deleting a record cascades to the Deployments it owns.
"""

from __future__ import annotations

import copy
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from progressive_deploy.delivery.rollout import DeploymentRecord, Workload
from progressive_deploy.k8s import CRD_KIND, format_time, utcnow
from progressive_deploy.store import (
    ConflictError,
    RecordStore,
    ResourceExistsError,
    ResourceNotFoundError,
    WorkloadStore,
)

DEPLOYMENT_KIND = "Deployment"


@dataclass
class StoreEvent:
    """A mutation applied to the store."""

    kind: str
    action: str  # create, scale, update_status, update_spec, delete
    namespace: str
    name: str
    timestamp: float = field(default_factory=time.time)
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "action": self.action,
            "namespace": self.namespace,
            "name": self.name,
            "timestamp": self.timestamp,
            "details": self.details,
        }


def _key(namespace: str, name: str) -> str:
    return f"{namespace}/{name}"


class InMemoryStore(RecordStore, WorkloadStore):
    """Thread-safe in-memory implementation of both store ports."""

    def __init__(self) -> None:
        self._records: Dict[str, Dict[str, Any]] = {}
        self._workloads: Dict[str, Dict[str, Any]] = {}
        self._version = 0
        self._lock = threading.RLock()
        self.events: List[StoreEvent] = []

    def _bump(self) -> str:
        self._version += 1
        return str(self._version)

    def _emit(self, kind: str, action: str, namespace: str, name: str, **details: Any) -> None:
        self.events.append(StoreEvent(kind, action, namespace, name, details=details))

    def _stamp_new(self, metadata: Dict[str, Any]) -> None:
        metadata.setdefault("namespace", "default")
        metadata["uid"] = metadata.get("uid") or uuid.uuid4().hex
        metadata["resourceVersion"] = self._bump()
        metadata.setdefault("creationTimestamp", format_time(utcnow()))

    # -- Records --

    def add_record(self, record: DeploymentRecord) -> DeploymentRecord:
        """Create a record the way ``kubectl apply`` would."""
        with self._lock:
            key = _key(record.namespace, record.name)
            if key in self._records:
                raise ResourceExistsError(CRD_KIND, record.namespace, record.name)
            manifest = record.to_manifest()
            self._stamp_new(manifest["metadata"])
            self._records[key] = manifest
            self._emit(CRD_KIND, "create", record.namespace, record.name)
            return DeploymentRecord.from_manifest(copy.deepcopy(manifest))

    def get_record(self, namespace: str, name: str) -> DeploymentRecord:
        with self._lock:
            manifest = self._records.get(_key(namespace, name))
            if manifest is None:
                raise ResourceNotFoundError(CRD_KIND, namespace, name)
            return DeploymentRecord.from_manifest(copy.deepcopy(manifest))

    def list_records(self, namespace: Optional[str] = None) -> List[DeploymentRecord]:
        with self._lock:
            return [
                DeploymentRecord.from_manifest(copy.deepcopy(m))
                for key, m in sorted(self._records.items())
                if namespace is None or m["metadata"]["namespace"] == namespace
            ]

    def update_status(self, record: DeploymentRecord) -> DeploymentRecord:
        with self._lock:
            key = _key(record.namespace, record.name)
            current = self._records.get(key)
            if current is None:
                raise ResourceNotFoundError(CRD_KIND, record.namespace, record.name)
            if record.resource_version != current["metadata"]["resourceVersion"]:
                raise ConflictError(
                    CRD_KIND, record.namespace, record.name,
                    f"resourceVersion {record.resource_version} is stale "
                    f"(current {current['metadata']['resourceVersion']})",
                )
            current["status"] = copy.deepcopy(record.status.to_dict())
            current["metadata"]["resourceVersion"] = self._bump()
            self._emit(CRD_KIND, "update_status", record.namespace, record.name,
                       phase=current["status"]["phase"])
            return DeploymentRecord.from_manifest(copy.deepcopy(current))

    def update_spec(self, namespace: str, name: str, spec: Dict[str, Any]) -> DeploymentRecord:
        """Replace the desired state, as an edit by the user would."""
        with self._lock:
            current = self._records.get(_key(namespace, name))
            if current is None:
                raise ResourceNotFoundError(CRD_KIND, namespace, name)
            current["spec"] = copy.deepcopy(spec)
            current["metadata"]["generation"] = int(current["metadata"].get("generation") or 1) + 1
            current["metadata"]["resourceVersion"] = self._bump()
            self._emit(CRD_KIND, "update_spec", namespace, name)
            return DeploymentRecord.from_manifest(copy.deepcopy(current))

    def delete_record(self, namespace: str, name: str) -> None:
        """Delete a record and garbage-collect the Deployments it owns."""
        with self._lock:
            manifest = self._records.pop(_key(namespace, name), None)
            if manifest is None:
                raise ResourceNotFoundError(CRD_KIND, namespace, name)
            self._emit(CRD_KIND, "delete", namespace, name)
            uid = manifest["metadata"]["uid"]
            owned = [
                key for key, w in self._workloads.items()
                if any(ref.get("uid") == uid for ref in w["metadata"].get("ownerReferences") or [])
            ]
            for key in owned:
                w = self._workloads.pop(key)
                self._emit(DEPLOYMENT_KIND, "delete", w["metadata"]["namespace"],
                           w["metadata"]["name"], cascade=True)

    # -- Workloads --

    def get_workload(self, namespace: str, name: str) -> Workload:
        with self._lock:
            manifest = self._workloads.get(_key(namespace, name))
            if manifest is None:
                raise ResourceNotFoundError(DEPLOYMENT_KIND, namespace, name)
            return Workload(copy.deepcopy(manifest))

    def list_workloads(self, namespace: Optional[str] = None) -> List[Workload]:
        with self._lock:
            return [
                Workload(copy.deepcopy(m))
                for key, m in sorted(self._workloads.items())
                if namespace is None or m["metadata"]["namespace"] == namespace
            ]

    def create_workload(self, manifest: Dict[str, Any]) -> Workload:
        with self._lock:
            manifest = copy.deepcopy(manifest)
            metadata = manifest.setdefault("metadata", {})
            namespace = metadata.setdefault("namespace", "default")
            name = metadata.get("name", "")
            key = _key(namespace, name)
            if key in self._workloads:
                raise ResourceExistsError(DEPLOYMENT_KIND, namespace, name)
            self._stamp_new(metadata)
            self._workloads[key] = manifest
            self._emit(DEPLOYMENT_KIND, "create", namespace, name,
                       replicas=Workload(manifest).replicas)
            return Workload(copy.deepcopy(manifest))

    def scale_workload(self, namespace: str, name: str, replicas: int) -> Workload:
        with self._lock:
            manifest = self._workloads.get(_key(namespace, name))
            if manifest is None:
                raise ResourceNotFoundError(DEPLOYMENT_KIND, namespace, name)
            manifest.setdefault("spec", {})["replicas"] = replicas
            manifest["metadata"]["resourceVersion"] = self._bump()
            self._emit(DEPLOYMENT_KIND, "scale", namespace, name, replicas=replicas)
            return Workload(copy.deepcopy(manifest))

    def delete_workload(self, namespace: str, name: str) -> None:
        with self._lock:
            if self._workloads.pop(_key(namespace, name), None) is None:
                raise ResourceNotFoundError(DEPLOYMENT_KIND, namespace, name)
            self._emit(DEPLOYMENT_KIND, "delete", namespace, name)

    # -- Introspection --

    def scale_events(self, name: Optional[str] = None) -> List[StoreEvent]:
        """Scale operations recorded so far, optionally for one Deployment."""
        return [
            e for e in self.events
            if e.kind == DEPLOYMENT_KIND and e.action == "scale" and (name is None or e.name == name)
        ]
