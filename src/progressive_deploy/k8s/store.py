"""
Cluster-backed resource store using the official ``kubernetes`` client.

ProgressiveDeployment records are read through ``CustomObjectsApi`` and
their status is written through the status subresource with the record's
``resourceVersion``, so a stale write is rejected by the API server with
409 Conflict. Deployments go through ``AppsV1Api``; replica changes use
the scale subresource so nothing else in the Deployment is touched.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, NoReturn, Optional

import urllib3
from kubernetes import client, config
from kubernetes.client.rest import ApiException

from progressive_deploy.delivery.rollout import DeploymentRecord, Workload
from progressive_deploy.k8s import CRD_GROUP, CRD_KIND, CRD_PLURAL, CRD_VERSION
from progressive_deploy.store import (
    ConflictError,
    RecordStore,
    ResourceExistsError,
    ResourceNotFoundError,
    StoreError,
    StoreUnavailableError,
    WorkloadStore,
)

logger = logging.getLogger(__name__)

DEPLOYMENT_KIND = "Deployment"


def load_kube_config(kubeconfig: Optional[str] = None) -> None:
    """Configure the client: explicit kubeconfig, else in-cluster, else default kubeconfig."""
    if kubeconfig:
        config.load_kube_config(config_file=kubeconfig)
        logger.info("Loaded kubeconfig from %s", kubeconfig)
        return
    try:
        config.load_incluster_config()
        logger.info("Using in-cluster configuration")
    except config.ConfigException:
        config.load_kube_config()
        logger.info("Using default kubeconfig")


def _raise_for(exc: Exception, kind: str, namespace: str, name: str, creating: bool = False) -> NoReturn:
    """Translate a client exception into the store error hierarchy."""
    if isinstance(exc, ApiException):
        reason = f"{exc.status} {exc.reason}"
        if exc.status == 404:
            raise ResourceNotFoundError(kind, namespace, name) from exc
        if exc.status == 409:
            if creating:
                raise ResourceExistsError(kind, namespace, name) from exc
            raise ConflictError(kind, namespace, name, reason) from exc
        if exc.status == 429 or (exc.status or 0) >= 500:
            raise StoreUnavailableError(kind, namespace, name, reason) from exc
        raise StoreError(kind, namespace, name, reason) from exc
    raise StoreUnavailableError(kind, namespace, name, str(exc)) from exc


_CLIENT_ERRORS = (ApiException, urllib3.exceptions.HTTPError)


class KubernetesStore(RecordStore, WorkloadStore):
    """Both store ports against a live API server.

    Call ``load_kube_config()`` first, or pass a configured ``ApiClient``.
    """

    def __init__(self, api_client: Optional[client.ApiClient] = None) -> None:
        self._api_client = api_client or client.ApiClient()
        self._custom = client.CustomObjectsApi(self._api_client)
        self._apps = client.AppsV1Api(self._api_client)

    def _to_dict(self, obj: Any) -> Dict[str, Any]:
        return self._api_client.sanitize_for_serialization(obj)

    # -- Records --

    def get_record(self, namespace: str, name: str) -> DeploymentRecord:
        try:
            obj = self._custom.get_namespaced_custom_object(
                CRD_GROUP, CRD_VERSION, namespace, CRD_PLURAL, name,
            )
        except _CLIENT_ERRORS as exc:
            _raise_for(exc, CRD_KIND, namespace, name)
        return DeploymentRecord.from_manifest(obj)

    def list_records(self, namespace: Optional[str] = None) -> List[DeploymentRecord]:
        try:
            if namespace is None:
                result = self._custom.list_cluster_custom_object(CRD_GROUP, CRD_VERSION, CRD_PLURAL)
            else:
                result = self._custom.list_namespaced_custom_object(
                    CRD_GROUP, CRD_VERSION, namespace, CRD_PLURAL,
                )
        except _CLIENT_ERRORS as exc:
            _raise_for(exc, CRD_KIND, namespace or "", "")
        return [DeploymentRecord.from_manifest(item) for item in result.get("items", [])]

    def update_status(self, record: DeploymentRecord) -> DeploymentRecord:
        body = record.to_manifest()
        try:
            obj = self._custom.replace_namespaced_custom_object_status(
                CRD_GROUP, CRD_VERSION, record.namespace, CRD_PLURAL, record.name, body,
            )
        except _CLIENT_ERRORS as exc:
            _raise_for(exc, CRD_KIND, record.namespace, record.name)
        logger.debug("Updated status of %s (resourceVersion %s)",
                     record.key, obj.get("metadata", {}).get("resourceVersion"))
        return DeploymentRecord.from_manifest(obj)

    # -- Workloads --

    def get_workload(self, namespace: str, name: str) -> Workload:
        try:
            obj = self._apps.read_namespaced_deployment(name, namespace)
        except _CLIENT_ERRORS as exc:
            _raise_for(exc, DEPLOYMENT_KIND, namespace, name)
        return Workload(self._to_dict(obj))

    def create_workload(self, manifest: Dict[str, Any]) -> Workload:
        metadata = manifest.get("metadata") or {}
        namespace = metadata.get("namespace") or "default"
        name = metadata.get("name", "")
        try:
            obj = self._apps.create_namespaced_deployment(namespace, manifest)
        except _CLIENT_ERRORS as exc:
            _raise_for(exc, DEPLOYMENT_KIND, namespace, name, creating=True)
        return Workload(self._to_dict(obj))

    def scale_workload(self, namespace: str, name: str, replicas: int) -> Workload:
        try:
            self._apps.patch_namespaced_deployment_scale(
                name, namespace, {"spec": {"replicas": replicas}},
            )
            obj = self._apps.read_namespaced_deployment(name, namespace)
        except _CLIENT_ERRORS as exc:
            _raise_for(exc, DEPLOYMENT_KIND, namespace, name)
        return Workload(self._to_dict(obj))

    def delete_workload(self, namespace: str, name: str) -> None:
        try:
            self._apps.delete_namespaced_deployment(
                name, namespace, propagation_policy="Background",
            )
        except _CLIENT_ERRORS as exc:
            _raise_for(exc, DEPLOYMENT_KIND, namespace, name)
