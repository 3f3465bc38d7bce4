"""Tests for the canary Deployment lifecycle and the in-memory store."""

from __future__ import annotations

import pytest

from progressive_deploy.delivery.canary import (
    CanaryError,
    CanaryManager,
    build_canary_manifest,
    canary_name,
)
from progressive_deploy.delivery.rollout import DeploymentRecord
from progressive_deploy.k8s import CRD_KIND
from progressive_deploy.store import ConflictError, ResourceExistsError, ResourceNotFoundError


@pytest.fixture
def record(make_record):
    return make_record()


class TestBuildCanaryManifest:
    def test_labels_and_selector(self, store, record):
        target = store.get_workload("default", "web")
        manifest = build_canary_manifest(record, target)

        assert manifest["metadata"]["name"] == "web-canary"
        assert manifest["metadata"]["labels"] == {
            "app": "web",
            "progressive-deployment": "web-rollout",
            "deployment-type": "canary",
        }
        spec = manifest["spec"]
        assert spec["replicas"] == 0
        assert spec["selector"]["matchLabels"] == {"app": "web", "version": "canary"}
        assert spec["template"]["metadata"]["labels"] == {
            "app": "web", "version": "canary", "deployment-type": "canary",
        }
        assert spec["template"]["spec"] == target.manifest["spec"]["template"]["spec"]

    def test_owner_reference(self, store, record):
        manifest = build_canary_manifest(record, store.get_workload("default", "web"))
        (ref,) = manifest["metadata"]["ownerReferences"]
        assert ref["kind"] == CRD_KIND
        assert ref["uid"] == record.uid
        assert ref["controller"] is True

    def test_target_untouched(self, store, record):
        target = store.get_workload("default", "web")
        before = target.manifest["spec"]["selector"]["matchLabels"].copy()
        build_canary_manifest(record, target)
        assert target.manifest["spec"]["selector"]["matchLabels"] == before

    def test_canary_name(self):
        assert canary_name("api") == "api-canary"


class TestCanaryManager:
    def test_ensure_creates_at_zero(self, store, record):
        manager = CanaryManager(store)
        canary = manager.ensure_canary(record, store.get_workload("default", "web"))
        assert canary.name == "web-canary"
        assert canary.replicas == 0
        assert store.get_workload("default", "web-canary").is_owned_by(record)

    def test_ensure_is_idempotent(self, store, record):
        manager = CanaryManager(store)
        target = store.get_workload("default", "web")
        first = manager.ensure_canary(record, target)
        store.scale_workload("default", "web-canary", 3)
        second = manager.ensure_canary(record, target)
        assert second.uid == first.uid
        assert second.replicas == 3

    def test_foreign_canary_rejected(self, store, record):
        store.create_workload({"metadata": {"name": "web-canary"}, "spec": {"replicas": 1}})
        manager = CanaryManager(store)
        with pytest.raises(CanaryError, match="not owned"):
            manager.ensure_canary(record, store.get_workload("default", "web"))

    def test_retire(self, store, record):
        manager = CanaryManager(store)
        manager.ensure_canary(record, store.get_workload("default", "web"))
        store.scale_workload("default", "web-canary", 4)
        record.status.canary_deployment = "web-canary"

        assert manager.retire_canary(record) is True
        with pytest.raises(ResourceNotFoundError):
            store.get_workload("default", "web-canary")
        assert [e.details["replicas"] for e in store.scale_events("web-canary")] == [4, 0]

    def test_retire_missing(self, store, record):
        record.status.canary_deployment = "web-canary"
        assert CanaryManager(store).retire_canary(record) is False

    def test_retire_without_canary_name(self, store, record):
        assert CanaryManager(store).retire_canary(record) is False


class TestInMemoryStore:
    def test_resource_version_bumps(self, store, record):
        assert record.resource_version
        record.status.message = "hello"
        updated = store.update_status(record)
        assert int(updated.resource_version) > int(record.resource_version)
        assert updated.status.message == "hello"

    def test_stale_write_conflicts(self, store, record):
        store.update_status(record)
        with pytest.raises(ConflictError):
            store.update_status(record)

    def test_status_write_leaves_spec(self, store, record):
        record.spec["canarySteps"] = [100]
        updated = store.update_status(record)
        assert updated.spec["canarySteps"] == [10, 25, 50, 100]

    def test_duplicate_record(self, store, record):
        with pytest.raises(ResourceExistsError):
            store.add_record(DeploymentRecord(name=record.name, namespace=record.namespace))

    def test_update_spec_bumps_generation(self, store, record):
        updated = store.update_spec("default", record.name, {"targetDeployment": "web", "canarySteps": [100]})
        assert updated.generation == record.generation + 1

    def test_list_by_namespace(self, store, make_record):
        make_record("a", namespace="ns1")
        make_record("b", namespace="ns2")
        assert [r.name for r in store.list_records("ns1")] == ["a"]
        assert len(store.list_records()) == 2

    def test_cascading_delete(self, store, record):
        CanaryManager(store).ensure_canary(record, store.get_workload("default", "web"))
        store.delete_record("default", record.name)
        with pytest.raises(ResourceNotFoundError):
            store.get_workload("default", "web-canary")
        # the target is not owned by the record
        assert store.get_workload("default", "web").replicas == 10

    def test_missing_workload(self, store):
        with pytest.raises(ResourceNotFoundError) as exc_info:
            store.scale_workload("default", "nope", 1)
        assert exc_info.value.kind == "Deployment"
