"""progressive-deploy: replica-based canary rollouts for Kubernetes.

A ``ProgressiveDeployment`` record names a target Deployment and an ordered
list of canary percentages. The operator clones the target into a
``<target>-canary`` Deployment and moves replicas from one to the other
step by step. After each step has stabilised, Prometheus checks decide
whether the rollout advances, waits for a manual promote, or rolls back.

Core concepts
-------------
* **Reconciler**: advances one record by at most one phase per call and
  persists everything it needs to resume in the record's status.
* **Replica distribution**: ``distribute(total, percent)`` splits the
  pre-rollout replica count between stable and canary.
* **Manual overrides**: ``DeploymentClient`` promotes, rolls back,
  pauses and resumes rollouts by writing status.

Quick start::

    from progressive_deploy import DeploymentRecord, Reconciler
    from progressive_deploy.store.memory import InMemoryStore

    store = InMemoryStore()
    store.create_workload({"metadata": {"name": "web", "labels": {"app": "web"}},
                           "spec": {"replicas": 10}})
    store.add_record(DeploymentRecord(name="web-rollout",
                                      spec={"targetDeployment": "web",
                                            "canarySteps": [10, 50, 100]}))
    Reconciler(store).reconcile("default", "web-rollout")
"""

from progressive_deploy.delivery.overrides import DeploymentClient, OverrideError
from progressive_deploy.delivery.reconciler import ReconcileAction, Reconciler, ReconcileResult
from progressive_deploy.delivery.rollout import (
    DeploymentRecord,
    DeploymentSpec,
    DeploymentStatus,
    HealthStatus,
    Phase,
)
from progressive_deploy.delivery.traffic import distribute

__all__ = [
    "DeploymentClient",
    "DeploymentRecord",
    "DeploymentSpec",
    "DeploymentStatus",
    "HealthStatus",
    "OverrideError",
    "Phase",
    "ReconcileAction",
    "ReconcileResult",
    "Reconciler",
    "distribute",
]

__version__ = "0.1.0"
