"""Progressive Delivery: canary steps, replica shifting, analysis and rollback."""

from progressive_deploy.delivery.canary import CanaryError, CanaryManager, canary_name
from progressive_deploy.delivery.overrides import (
    DeploymentClient,
    OverrideError,
    OverrideResult,
    StatusView,
)
from progressive_deploy.delivery.reconciler import ReconcileAction, Reconciler, ReconcileResult
from progressive_deploy.delivery.rollout import (
    DeploymentRecord,
    DeploymentSpec,
    DeploymentStatus,
    HealthStatus,
    MetricCheck,
    Phase,
    SpecError,
    Workload,
)
from progressive_deploy.delivery.traffic import distribute

__all__ = [
    "CanaryError",
    "CanaryManager",
    "DeploymentClient",
    "DeploymentRecord",
    "DeploymentSpec",
    "DeploymentStatus",
    "HealthStatus",
    "MetricCheck",
    "OverrideError",
    "OverrideResult",
    "Phase",
    "ReconcileAction",
    "ReconcileResult",
    "Reconciler",
    "SpecError",
    "StatusView",
    "Workload",
    "canary_name",
    "distribute",
]
