"""Metrics: Prometheus instant queries and threshold evaluation."""

from progressive_deploy.metrics.evaluator import Evaluation, MetricsEvaluator
from progressive_deploy.metrics.prometheus import (
    DEFAULT_PROMETHEUS_URL,
    InstantVector,
    MetricQueryError,
    PrometheusClient,
    PrometheusPool,
    QueryResult,
    Sample,
    Scalar,
)

__all__ = [
    "DEFAULT_PROMETHEUS_URL",
    "Evaluation",
    "InstantVector",
    "MetricQueryError",
    "MetricsEvaluator",
    "PrometheusClient",
    "PrometheusPool",
    "QueryResult",
    "Sample",
    "Scalar",
]
