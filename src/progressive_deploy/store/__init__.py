"""Persistence ports for deployment records and workloads.

The reconciler never talks to Kubernetes directly. It goes through two
narrow ports:

* ``RecordStore``: reads ProgressiveDeployment records and writes their
  status with optimistic concurrency (compare-and-swap on
  ``resource_version``).
* ``WorkloadStore``: reads, creates, scales and deletes Deployments.

``InMemoryStore`` (``progressive_deploy.store.memory``) implements both for
tests and local simulation; ``KubernetesStore``
(``progressive_deploy.k8s.store``) implements both against a live cluster.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Dict, List, Optional

if TYPE_CHECKING:
    from progressive_deploy.delivery.rollout import DeploymentRecord, Workload


class StoreError(Exception):
    """Base class for resource store failures."""

    def __init__(self, kind: str, namespace: str, name: str, message: str = "") -> None:
        self.kind = kind
        self.namespace = namespace
        self.name = name
        detail = f": {message}" if message else ""
        super().__init__(f"{kind} {namespace}/{name}{detail}")


class ResourceNotFoundError(StoreError):
    """The referenced resource does not exist."""


class ResourceExistsError(StoreError):
    """A resource with the same name already exists."""


class ConflictError(StoreError):
    """The write was based on a stale ``resource_version``."""


class StoreUnavailableError(StoreError):
    """Temporary failure talking to the backing store; safe to retry."""


TRANSIENT_ERRORS = (ConflictError, StoreUnavailableError)


class RecordStore(ABC):
    """Read ProgressiveDeployment records and persist their status."""

    @abstractmethod
    def get_record(self, namespace: str, name: str) -> DeploymentRecord:
        """Return the latest version of a record.

        Raises:
            ResourceNotFoundError: If the record does not exist.
        """

    @abstractmethod
    def list_records(self, namespace: Optional[str] = None) -> List[DeploymentRecord]:
        """List records in *namespace*, or in every namespace when ``None``."""

    @abstractmethod
    def update_status(self, record: DeploymentRecord) -> DeploymentRecord:
        """Write ``record.status`` if ``record.resource_version`` is current.

        Only the status sub-resource is written; the desired state is never
        touched.

        Raises:
            ConflictError: If the record changed since it was read.
            ResourceNotFoundError: If the record was deleted.
        """


class WorkloadStore(ABC):
    """Read and mutate Deployments."""

    @abstractmethod
    def get_workload(self, namespace: str, name: str) -> Workload:
        """Return a Deployment.

        Raises:
            ResourceNotFoundError: If the Deployment does not exist.
        """

    @abstractmethod
    def create_workload(self, manifest: Dict[str, Any]) -> Workload:
        """Create a Deployment from an ``apps/v1`` manifest.

        Raises:
            ResourceExistsError: If a Deployment with that name exists.
        """

    @abstractmethod
    def scale_workload(self, namespace: str, name: str, replicas: int) -> Workload:
        """Set the desired replica count and nothing else."""

    @abstractmethod
    def delete_workload(self, namespace: str, name: str) -> None:
        """Delete a Deployment.

        Raises:
            ResourceNotFoundError: If the Deployment does not exist.
        """


__all__ = [
    "ConflictError",
    "RecordStore",
    "ResourceExistsError",
    "ResourceNotFoundError",
    "StoreError",
    "StoreUnavailableError",
    "TRANSIENT_ERRORS",
    "WorkloadStore",
]
