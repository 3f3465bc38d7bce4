"""Tests for the ProgressiveDeployment resource model."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from progressive_deploy.delivery.rollout import (
    DeploymentRecord,
    DeploymentSpec,
    DeploymentStatus,
    HealthStatus,
    Phase,
    SpecError,
    Workload,
    parse_duration,
)
from progressive_deploy.k8s import CRD_API_VERSION, CRD_KIND, ConditionStatus, ConditionType


# ---------------------------------------------------------------------------
# Durations
# ---------------------------------------------------------------------------

class TestParseDuration:
    @pytest.mark.parametrize(
        "value,seconds",
        [
            (30, 30.0),
            (1.5, 1.5),
            ("45", 45.0),
            ("30s", 30.0),
            ("5m", 300.0),
            ("1h30m", 5400.0),
            ("250ms", 0.25),
            ("1m30s", 90.0),
        ],
    )
    def test_valid(self, value, seconds):
        assert parse_duration(value) == pytest.approx(seconds)

    @pytest.mark.parametrize("value", ["", "abc", "5x", "m5", "10s garbage", True, -1, "-5s"])
    def test_invalid(self, value):
        with pytest.raises(ValueError):
            parse_duration(value)

    @pytest.mark.parametrize("value", ["nan", "inf", "-inf", "Infinity", float("nan"), float("inf")])
    def test_non_finite_rejected(self, value):
        with pytest.raises(ValueError):
            parse_duration(value)


# ---------------------------------------------------------------------------
# Desired state
# ---------------------------------------------------------------------------

class TestDeploymentSpec:
    def test_defaults(self):
        spec = DeploymentSpec.model_validate({"targetDeployment": "web", "canarySteps": [50, 100]})
        assert spec.step_duration == 60.0
        assert spec.auto_promote is True
        assert spec.last_step == 1
        assert spec.checks() == {}

    def test_shorthand_checks(self):
        spec = DeploymentSpec.model_validate({
            "targetDeployment": "web",
            "canarySteps": [100],
            "metrics": {
                "errorRate": {"query": "err", "threshold": 0.05},
                "latency": {"query": "p99", "threshold": 0.5},
                "checks": [{"name": "saturation", "query": "cpu", "threshold": 0.9}],
            },
        })
        checks = spec.checks()
        assert set(checks) == {"errorRate", "latency", "saturation"}
        assert checks["latency"].threshold == 0.5

    def test_shorthand_without_query_is_ignored(self):
        spec = DeploymentSpec.model_validate({
            "targetDeployment": "web",
            "canarySteps": [100],
            "metrics": {"latency": {"threshold": 0.5}},
        })
        assert spec.checks() == {}

    @pytest.mark.parametrize("steps", [[], [0], [10, 101], [-5]])
    def test_invalid_steps(self, steps):
        record = DeploymentRecord(name="r", spec={"targetDeployment": "web", "canarySteps": steps})
        with pytest.raises(SpecError):
            record.desired()

    def test_non_finite_step_duration_is_invalid(self):
        record = DeploymentRecord(name="r", spec={
            "targetDeployment": "web", "canarySteps": [100], "stepDuration": "nan",
        })
        with pytest.raises(SpecError):
            record.desired()

    def test_missing_target(self):
        record = DeploymentRecord(name="r", spec={"canarySteps": [100]})
        with pytest.raises(SpecError) as exc_info:
            record.desired()
        assert "targetDeployment" in str(exc_info.value)

    def test_duplicate_check_names(self):
        record = DeploymentRecord(name="r", spec={
            "targetDeployment": "web",
            "canarySteps": [100],
            "metrics": {
                "errorRate": {"query": "err", "threshold": 0.05},
                "checks": [{"name": "errorRate", "query": "other", "threshold": 1}],
            },
        })
        with pytest.raises(SpecError, match="Duplicate"):
            record.desired()

    def test_to_dict_uses_camel_case(self):
        spec = DeploymentSpec.model_validate({"targetDeployment": "web", "canarySteps": [100]})
        data = spec.to_dict()
        assert data["targetDeployment"] == "web"
        assert data["canarySteps"] == [100]
        assert "autoPromote" in data


# ---------------------------------------------------------------------------
# Observed state
# ---------------------------------------------------------------------------

class TestDeploymentStatus:
    def test_round_trip(self):
        status = DeploymentStatus(
            phase=Phase.ANALYZING,
            current_step=2,
            canary_percentage=50,
            canary_deployment="web-canary",
            stable_replicas=10,
            health_status=HealthStatus.HEALTHY,
            metrics={"errorRate": 0.01},
            last_analysis_time=datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc),
        )
        status.set_condition(ConditionType.PROGRESSING, ConditionStatus.TRUE, reason="TrafficShifted")
        data = status.to_dict()
        assert data["phase"] == "Analyzing"
        assert data["healthStatus"] == "Healthy"
        assert data["lastAnalysisTime"] == "2026-01-01T12:00:00.000000Z"

        restored = DeploymentStatus.from_dict(data)
        assert restored.phase == Phase.ANALYZING
        assert restored.current_step == 2
        assert restored.stable_replicas == 10
        assert restored.last_analysis_time == status.last_analysis_time
        assert restored.get_condition(ConditionType.PROGRESSING).reason == "TrafficShifted"

    def test_analysis_time_keeps_subseconds(self):
        started = datetime(2026, 1, 1, 12, 0, 0, 750000, tzinfo=timezone.utc)
        data = DeploymentStatus(last_analysis_time=started).to_dict()
        assert data["lastAnalysisTime"] == "2026-01-01T12:00:00.750000Z"
        assert DeploymentStatus.from_dict(data).last_analysis_time == started

    def test_foreign_conditions_survive_round_trip(self):
        status = DeploymentStatus.from_dict({"conditions": [
            {"type": "ReviewedBy", "status": "Approved", "reason": "ChangeBoard",
             "message": "ticket 42", "lastTransitionTime": "2026-01-01T09:00:00Z"},
        ]})
        status.set_condition(ConditionType.PROGRESSING, ConditionStatus.TRUE, reason="TrafficShifted")
        conditions = status.to_dict()["conditions"]
        assert [c["type"] for c in conditions] == ["ReviewedBy", "Progressing"]
        assert conditions[0] == {
            "type": "ReviewedBy", "status": "Approved", "reason": "ChangeBoard",
            "message": "ticket 42", "lastTransitionTime": "2026-01-01T09:00:00Z",
        }

    def test_stable_replicas_omitted_until_known(self):
        assert "stableReplicas" not in DeploymentStatus().to_dict()

    def test_from_empty(self):
        status = DeploymentStatus.from_dict(None)
        assert status.phase == ""
        assert status.last_analysis_time is None
        assert status.paused is False

    def test_unknown_phase_survives_load(self):
        status = DeploymentStatus.from_dict({"phase": "Exploding"})
        assert status.phase == "Exploding"

    def test_set_condition_keeps_transition_time(self):
        status = DeploymentStatus()
        status.set_condition(ConditionType.PAUSED, ConditionStatus.TRUE, reason="A")
        first = status.get_condition(ConditionType.PAUSED).last_transition_time
        status.set_condition(ConditionType.PAUSED, ConditionStatus.TRUE, reason="B")
        cond = status.get_condition(ConditionType.PAUSED)
        assert cond.reason == "B"
        assert cond.last_transition_time == first
        assert len(status.conditions) == 1


class TestDeploymentRecord:
    def test_manifest_round_trip(self):
        record = DeploymentRecord(
            name="web-rollout",
            namespace="shop",
            spec={"targetDeployment": "web", "canarySteps": [100]},
            uid="abc",
            resource_version="7",
        )
        manifest = record.to_manifest()
        assert manifest["apiVersion"] == CRD_API_VERSION
        assert manifest["kind"] == CRD_KIND
        restored = DeploymentRecord.from_manifest(manifest)
        assert restored.key == "shop/web-rollout"
        assert restored.uid == "abc"
        assert restored.resource_version == "7"

    def test_owner_reference(self):
        ref = DeploymentRecord(name="r", uid="u-1").owner_reference()
        assert ref["kind"] == CRD_KIND
        assert ref["uid"] == "u-1"
        assert ref["controller"] is True


class TestWorkload:
    def test_replicas_default_to_one(self):
        assert Workload({"metadata": {"name": "w"}, "spec": {}}).replicas == 1
        assert Workload({"metadata": {"name": "w"}, "spec": {"replicas": 0}}).replicas == 0

    def test_ownership(self):
        record = DeploymentRecord(name="r", uid="u-1")
        owned = Workload({"metadata": {"name": "w", "ownerReferences": [record.owner_reference()]}})
        stranger = Workload({"metadata": {"name": "w", "ownerReferences": [
            {"kind": CRD_KIND, "uid": "other"},
        ]}})
        assert owned.is_owned_by(record)
        assert not stranger.is_owned_by(record)
