"""
Canary Rollout Simulation: watch the reconciler walk a rollout offline.

Runs the full state machine against the in-memory cluster with a simulated
Prometheus and clock. The first rollout is healthy and completes; the
second regresses at 25% traffic and is rolled back automatically.

Run:
    pip install progressive-deploy
    python examples/canary_rollout.py
"""

from datetime import datetime, timedelta, timezone

from progressive_deploy.delivery import Reconciler
from progressive_deploy.delivery.rollout import DeploymentRecord, Phase
from progressive_deploy.metrics.prometheus import InstantVector, Sample
from progressive_deploy.store.memory import InMemoryStore

ERROR_RATE = 'sum(rate(http_requests_total{status=~"5.."}[1m])) / sum(rate(http_requests_total[1m]))'


class SimulatedClock:
    def __init__(self):
        self.now = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now


class SimulatedPrometheus:
    """Returns a scripted error rate per analysis, repeating the last value."""

    def __init__(self, error_rates):
        self.error_rates = list(error_rates)

    def __call__(self, url=None):
        return self

    def instant_query(self, query):
        value = self.error_rates.pop(0) if len(self.error_rates) > 1 else self.error_rates[0]
        return InstantVector([Sample(labels={}, value=value, timestamp=0.0)])


def make_cluster():
    store = InMemoryStore()
    store.create_workload({
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {"name": "checkout", "namespace": "shop", "labels": {"app": "checkout"}},
        "spec": {
            "replicas": 10,
            "selector": {"matchLabels": {"app": "checkout"}},
            "template": {
                "metadata": {"labels": {"app": "checkout"}},
                "spec": {"containers": [{"name": "checkout", "image": "registry.local/checkout:2.0"}]},
            },
        },
    })
    store.add_record(DeploymentRecord(name="checkout-rollout", namespace="shop", spec={
        "targetDeployment": "checkout",
        "canarySteps": [10, 25, 50, 100],
        "stepDuration": "5m",
        "autoPromote": True,
        "metrics": {"errorRate": {"query": ERROR_RATE, "threshold": 0.05}},
    }))
    return store


def run(title, error_rates):
    print(title)
    print("─" * 60)
    store = make_cluster()
    clock = SimulatedClock()
    reconciler = Reconciler(store, metrics_backend=SimulatedPrometheus(error_rates), clock=clock)

    for _ in range(50):
        result = reconciler.reconcile("shop", "checkout-rollout")
        status = store.get_record("shop", "checkout-rollout").status
        print(f"  {result.action.value:<20} phase={result.phase:<12} canary={status.canary_percentage:>3}%")
        if result.phase and Phase(result.phase).is_terminal:
            break
        if result.requeue_after:
            clock.now += timedelta(seconds=result.requeue_after)

    stable = store.get_workload("shop", "checkout").replicas
    print()
    print(f"  Final phase:     {status.phase}")
    print(f"  Health:          {status.health_status}")
    print(f"  Stable replicas: {stable}")
    print(f"  Last metrics:    {status.metrics}")
    print()


print("Progressive Deployment Simulation")
print("=" * 60)
print()

run("Rollout 1: healthy canary", [0.01])
run("Rollout 2: regression at 25% traffic", [0.01, 0.12])
