"""Shared fixtures: in-memory cluster, fake Prometheus and a controllable clock."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Union

import pytest

from progressive_deploy.delivery.reconciler import Reconciler, ReconcileResult
from progressive_deploy.delivery.rollout import DeploymentRecord, Phase
from progressive_deploy.metrics.prometheus import InstantVector, MetricQueryError, Sample, Scalar
from progressive_deploy.store.memory import InMemoryStore


class FakeClock:
    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


Answer = Union[float, Exception, InstantVector, Scalar]


class FakeMetrics:
    """Stands in for Prometheus.

    Each query maps to a list of answers consumed one per call; the last
    answer repeats. A float becomes a one-sample instant vector.
    """

    def __init__(self, default: Answer = 0.0) -> None:
        self.default = default
        self.answers: Dict[str, List[Answer]] = {}
        self.queries: List[str] = []
        self.urls: List[Optional[str]] = []

    def __call__(self, url: Optional[str] = None) -> FakeMetrics:
        self.urls.append(url)
        return self

    def set(self, query: str, *answers: Answer) -> None:
        self.answers[query] = list(answers)

    def instant_query(self, query: str) -> Any:
        self.queries.append(query)
        queue = self.answers.get(query)
        if queue:
            answer = queue.pop(0) if len(queue) > 1 else queue[0]
        else:
            answer = self.default
        if isinstance(answer, Exception):
            raise answer
        if isinstance(answer, (InstantVector, Scalar)):
            return answer
        return InstantVector([Sample(labels={}, value=float(answer), timestamp=0.0)])


ERROR_QUERY = 'sum(rate(http_requests_total{status=~"5.."}[1m])) / sum(rate(http_requests_total[1m]))'


def target_manifest(name: str = "web", replicas: Optional[int] = 10, namespace: str = "default") -> Dict[str, Any]:
    spec: Dict[str, Any] = {
        "selector": {"matchLabels": {"app": name}},
        "template": {
            "metadata": {"labels": {"app": name}},
            "spec": {"containers": [{"name": name, "image": f"registry.local/{name}:2.0"}]},
        },
    }
    if replicas is not None:
        spec["replicas"] = replicas
    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {"name": name, "namespace": namespace, "labels": {"app": name}},
        "spec": spec,
    }


def rollout_spec(**overrides: Any) -> Dict[str, Any]:
    spec: Dict[str, Any] = {
        "targetDeployment": "web",
        "canarySteps": [10, 25, 50, 100],
        "stepDuration": "1s",
        "autoPromote": True,
        "metrics": {
            "prometheusUrl": "http://prometheus.monitoring:9090",
            "errorRate": {"query": ERROR_QUERY, "threshold": 0.05},
        },
    }
    spec.update(overrides)
    return spec


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def metrics() -> FakeMetrics:
    return FakeMetrics(default=0.01)


@pytest.fixture
def store() -> InMemoryStore:
    s = InMemoryStore()
    s.create_workload(target_manifest())
    return s


@pytest.fixture
def make_record(store: InMemoryStore) -> Callable[..., DeploymentRecord]:
    def _make(name: str = "web-rollout", namespace: str = "default", **spec: Any) -> DeploymentRecord:
        return store.add_record(DeploymentRecord(name=name, namespace=namespace, spec=rollout_spec(**spec)))
    return _make


@pytest.fixture
def reconciler(store: InMemoryStore, metrics: FakeMetrics, clock: FakeClock) -> Reconciler:
    return Reconciler(store, metrics_backend=metrics, clock=clock, retry_seconds=5.0)


@pytest.fixture
def drive(reconciler: Reconciler, clock: FakeClock) -> Callable[..., List[ReconcileResult]]:
    """Reconcile a record repeatedly, advancing the clock by each requested delay.

    Stops at a terminal phase, when a result asks for no follow-up, when
    *until* returns True for a result, or after *limit* calls.
    """

    def _drive(
        name: str = "web-rollout",
        namespace: str = "default",
        limit: int = 50,
        until: Optional[Callable[[ReconcileResult], bool]] = None,
    ) -> List[ReconcileResult]:
        results: List[ReconcileResult] = []
        for _ in range(limit):
            result = reconciler.reconcile(namespace, name)
            results.append(result)
            if until is not None and until(result):
                break
            if result.phase and Phase(result.phase).is_terminal:
                break
            if result.requeue_after is not None:
                clock.advance(result.requeue_after)
            elif not result.requeue:
                break
        return results

    return _drive
