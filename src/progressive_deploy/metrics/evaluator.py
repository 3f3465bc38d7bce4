"""Threshold-based canary health evaluation."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, Mapping

from progressive_deploy.metrics.prometheus import InstantVector, MetricQueryError, Scalar

if TYPE_CHECKING:
    from progressive_deploy.delivery.rollout import MetricCheck

logger = logging.getLogger(__name__)


@dataclass
class Evaluation:
    """Outcome of one analysis cycle."""

    healthy: bool
    observed: Dict[str, float] = field(default_factory=dict)
    breached: Dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "healthy": self.healthy,
            "observed": dict(self.observed),
            "breached": dict(self.breached),
        }


class MetricsEvaluator:
    """Evaluates metric checks against a metrics backend.

    A check is breached when its observed value is strictly greater than
    its threshold; the canary is healthy only if no check is breached.
    With no checks configured the canary is healthy by definition.

    *backend* is anything with an ``instant_query(query)`` method returning
    an ``InstantVector`` or ``Scalar``.
    """

    def __init__(self, backend: Any) -> None:
        self._backend = backend

    def query_value(self, check: MetricCheck) -> float:
        """Return the single value a check's query currently yields.

        Raises:
            MetricQueryError: If the query fails, returns no samples, or
                yields NaN.
        """
        try:
            result = self._backend.instant_query(check.query)
        except MetricQueryError as exc:
            raise MetricQueryError(check.query, exc.reason, check=check.name) from exc

        if isinstance(result, InstantVector):
            if not result.samples:
                raise MetricQueryError(check.query, "no data returned from query", check=check.name)
            if len(result.samples) > 1:
                logger.debug(
                    "Check %s returned %d series, using the first",
                    check.name, len(result.samples),
                )
            value = result.samples[0].value
        elif isinstance(result, Scalar):
            value = result.value
        else:
            raise MetricQueryError(
                check.query, f"unexpected result type: {type(result).__name__}", check=check.name,
            )

        if math.isnan(value):
            raise MetricQueryError(check.query, "query returned NaN", check=check.name)
        return value

    def evaluate(self, checks: Mapping[str, MetricCheck]) -> Evaluation:
        """Run every check once and combine the verdicts.

        Raises:
            MetricQueryError: If any individual check cannot be evaluated.
        """
        if not checks:
            logger.info("No metric checks configured, canary considered healthy")
            return Evaluation(healthy=True)

        observed: Dict[str, float] = {}
        breached: Dict[str, float] = {}
        for name, check in checks.items():
            value = self.query_value(check)
            observed[name] = value
            if value > check.threshold:
                breached[name] = value
                logger.info(
                    "Check %s exceeded threshold: value=%s threshold=%s",
                    name, value, check.threshold,
                )
            else:
                logger.debug("Check %s within threshold: value=%s threshold=%s",
                             name, value, check.threshold)

        healthy = not breached
        logger.info("Canary analysis %s: %s", "healthy" if healthy else "unhealthy", observed)
        return Evaluation(healthy=healthy, observed=observed, breached=breached)
