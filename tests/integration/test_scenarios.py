"""
End-to-End Rollout Scenarios

Full rollouts driven through the reconciler against the in-memory cluster,
a fake Prometheus and a controllable clock:

A. Healthy canary with auto-promote: every step passes and the rollout completes.
B. Canary degrades at the second step: rollback restores the stable Deployment.
C. Manual promotion: healthy steps hold until an operator promotes them.
D. Operator-initiated rollback and record deletion.
"""

from __future__ import annotations

import pytest

from progressive_deploy.delivery.overrides import DeploymentClient, OverrideError
from progressive_deploy.delivery.reconciler import ReconcileAction
from progressive_deploy.delivery.rollout import HealthStatus, Phase
from progressive_deploy.store import ResourceNotFoundError


def _analysis_cycles(results):
    verdicts = {
        ReconcileAction.ANALYSIS_PASSED,
        ReconcileAction.ANALYSIS_FAILED,
        ReconcileAction.AWAITING_PROMOTION,
    }
    return [r for r in results if r.action in verdicts]


# ============================================================================
# Scenario A: healthy rollout
# ============================================================================

class TestHealthyRollout:
    def test_completes_after_four_analysis_cycles(self, drive, store, make_record):
        make_record(canarySteps=[10, 25, 50, 100], stepDuration=1)

        results = drive()

        assert len(_analysis_cycles(results)) == 4
        assert all(r.action == ReconcileAction.ANALYSIS_PASSED for r in _analysis_cycles(results))
        record = store.get_record("default", "web-rollout")
        assert record.status.phase == Phase.COMPLETED
        assert record.status.canary_percentage == 100
        assert record.status.health_status == HealthStatus.HEALTHY

    def test_phase_sequence(self, drive, make_record):
        make_record(canarySteps=[10, 25, 50, 100], stepDuration=1)

        phases = [r.phase for r in drive()]

        collapsed = [p for i, p in enumerate(phases) if i == 0 or p != phases[i - 1]]
        assert collapsed == [
            "Initializing",
            "Analyzing", "Promoting",
            "Analyzing", "Promoting",
            "Analyzing", "Promoting",
            "Analyzing", "Promoting",
            "Completed",
        ]

    def test_replica_shift_per_step(self, drive, store, make_record):
        make_record(canarySteps=[10, 25, 50, 100], stepDuration=1)

        drive()

        canary = [e.details["replicas"] for e in store.scale_events("web-canary")]
        stable = [e.details["replicas"] for e in store.scale_events("web")]
        # completion hands everything back to stable and retires the canary
        assert canary == [1, 3, 5, 10, 0]
        assert stable == [9, 7, 5, 0, 10]

    def test_every_step_waits_for_step_duration(self, drive, clock, make_record):
        start = clock.now
        make_record(canarySteps=[10, 50, 100], stepDuration="30s")

        drive()

        assert (clock.now - start).total_seconds() == 90


# ============================================================================
# Scenario B: degradation at the second step
# ============================================================================

class TestDegradedRollout:
    @pytest.fixture
    def degrading(self, metrics):
        metrics.set("errors", 0.01, 0.30)
        return "errors"

    def test_rolls_back_at_second_cycle(self, drive, store, make_record, degrading):
        make_record(
            canarySteps=[10, 25, 50, 100],
            stepDuration=1,
            metrics={"errorRate": {"query": degrading, "threshold": 0.05}},
        )

        results = drive()

        cycles = _analysis_cycles(results)
        assert [c.action for c in cycles] == [
            ReconcileAction.ANALYSIS_PASSED, ReconcileAction.ANALYSIS_FAILED,
        ]
        assert results[-2].phase == "RollingBack"
        assert results[-1].action == ReconcileAction.ROLLED_BACK

        record = store.get_record("default", "web-rollout")
        assert record.status.phase == Phase.ROLLED_BACK
        assert record.status.canary_percentage == 0
        assert record.status.health_status == HealthStatus.UNHEALTHY
        assert record.status.metrics == {"errorRate": 0.30}
        assert store.get_workload("default", "web").replicas == 10
        with pytest.raises(ResourceNotFoundError):
            store.get_workload("default", "web-canary")

    def test_rolled_back_record_stays_put(self, drive, reconciler, store, clock, make_record, degrading):
        make_record(stepDuration=1, metrics={"errorRate": {"query": degrading, "threshold": 0.05}})
        drive()
        clock.advance(3600)
        assert reconciler.reconcile("default", "web-rollout").action == ReconcileAction.NOOP
        assert store.get_workload("default", "web").replicas == 10


# ============================================================================
# Scenario C: manual promotion
# ============================================================================

class TestManualPromotion:
    def test_holds_until_promoted(self, drive, store, make_record):
        make_record(canarySteps=[10, 25, 50, 100], stepDuration=1, autoPromote=False)
        client = DeploymentClient(store)

        held = drive(limit=10, until=lambda r: r.action == ReconcileAction.AWAITING_PROMOTION)
        assert held[-1].action == ReconcileAction.AWAITING_PROMOTION

        # re-analysis keeps holding at the same step
        again = drive(limit=3, until=lambda r: r.action == ReconcileAction.AWAITING_PROMOTION)
        assert again[-1].action == ReconcileAction.AWAITING_PROMOTION
        record = store.get_record("default", "web-rollout")
        assert record.status.phase == Phase.ANALYZING
        assert record.status.current_step == 0

        for step in range(3):
            client.promote("default", "web-rollout")
            results = drive(until=lambda r: r.action == ReconcileAction.AWAITING_PROMOTION)
            record = store.get_record("default", "web-rollout")
            if step < 2:
                assert results[-1].action == ReconcileAction.AWAITING_PROMOTION
                assert record.status.current_step == step + 1

        assert results[-1].action == ReconcileAction.COMPLETED
        assert record.status.phase == Phase.COMPLETED
        assert record.status.canary_percentage == 100

    def test_final_step_completes_without_promote(self, drive, store, make_record):
        make_record(canarySteps=[50, 100], stepDuration=1, autoPromote=False)
        client = DeploymentClient(store)
        drive(until=lambda r: r.action == ReconcileAction.AWAITING_PROMOTION)
        client.promote("default", "web-rollout")
        results = drive()
        assert results[-1].action == ReconcileAction.COMPLETED
        with pytest.raises(OverrideError):
            client.promote("default", "web-rollout")


# ============================================================================
# Scenario D: operator intervention
# ============================================================================

class TestOperatorIntervention:
    def test_manual_rollback_mid_step(self, drive, reconciler, store, make_record):
        make_record(canarySteps=[10, 50, 100], stepDuration=60)
        drive(until=lambda r: r.action == ReconcileAction.TRAFFIC_SHIFTED)
        assert store.get_workload("default", "web-canary").replicas == 1

        DeploymentClient(store).rollback("default", "web-rollout")
        results = drive()

        assert results[-1].action == ReconcileAction.ROLLED_BACK
        record = store.get_record("default", "web-rollout")
        assert record.status.phase == Phase.ROLLED_BACK
        assert record.status.health_status == HealthStatus.UNHEALTHY
        assert store.get_workload("default", "web").replicas == 10

    def test_deleting_record_mid_rollout_removes_canary(self, drive, reconciler, store, make_record):
        make_record(stepDuration=60)
        drive(until=lambda r: r.action == ReconcileAction.TRAFFIC_SHIFTED)
        assert store.get_workload("default", "web-canary").replicas == 1

        store.delete_record("default", "web-rollout")

        with pytest.raises(ResourceNotFoundError):
            store.get_workload("default", "web-canary")
        assert reconciler.reconcile("default", "web-rollout").action == ReconcileAction.NOOP

    def test_independent_records(self, drive, store, make_record):
        store.create_workload({
            "metadata": {"name": "api", "labels": {"app": "api"}},
            "spec": {"replicas": 4},
        })
        make_record("web-rollout")
        make_record("api-rollout", targetDeployment="api", canarySteps=[50, 100])

        drive("web-rollout")
        drive("api-rollout")

        assert store.get_record("default", "web-rollout").status.phase == Phase.COMPLETED
        assert store.get_record("default", "api-rollout").status.phase == Phase.COMPLETED
        assert [e.details["replicas"] for e in store.scale_events("api-canary")] == [2, 4, 0]
