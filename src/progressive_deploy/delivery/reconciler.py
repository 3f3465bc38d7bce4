"""
Reconciliation engine for ProgressiveDeployment records.

Each ``reconcile()`` call loads one record, runs the handler for its
current phase, commits the resulting status and tells the caller when to
call again. Calls return promptly: the stabilisation wait of a step is
expressed as ``requeue_after`` rather than a sleep, and the moment the wait
began is persisted in ``status.lastAnalysisTime`` so a restarted operator
resumes the wait instead of starting it over.

Phases::

    (unset) -> Initializing -> Analyzing -> Promoting -> Analyzing ... -> Completed
                    |              |
                    v              v
                  Failed      RollingBack -> RolledBack

Side effects always happen before the status write that records them, so
an interrupted call is safe to repeat: scaling to the same replica counts
is idempotent and the timestamp is only armed once traffic is in place.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple

from progressive_deploy.delivery.canary import CanaryError, CanaryManager
from progressive_deploy.delivery.rollout import (
    DeploymentRecord,
    DeploymentSpec,
    HealthStatus,
    Phase,
    SpecError,
)
from progressive_deploy.delivery.traffic import distribute
from progressive_deploy.k8s import CRD_KIND, ConditionStatus, ConditionType, utcnow
from progressive_deploy.metrics.evaluator import MetricsEvaluator
from progressive_deploy.metrics.prometheus import (
    DEFAULT_PROMETHEUS_URL,
    MetricQueryError,
    PrometheusPool,
)
from progressive_deploy.store import (
    TRANSIENT_ERRORS,
    ConflictError,
    RecordStore,
    ResourceNotFoundError,
    StoreError,
    StoreUnavailableError,
    WorkloadStore,
)

logger = logging.getLogger(__name__)


class ReconcileAction(Enum):
    """What a reconcile call did."""

    INITIALIZED = "initialized"
    CANARY_CREATED = "canary_created"
    TRAFFIC_SHIFTED = "traffic_shifted"
    WAITING = "waiting"
    ANALYSIS_PASSED = "analysis_passed"
    ANALYSIS_FAILED = "analysis_failed"
    AWAITING_PROMOTION = "awaiting_promotion"
    PROMOTED = "promoted"
    COMPLETED = "completed"
    ROLLING_BACK = "rolling_back"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"
    PAUSED = "paused"
    RESET = "reset"
    RETRY = "retry"
    NOOP = "noop"


@dataclass
class ReconcileResult:
    """Result of a reconciliation cycle.

    ``requeue`` asks for another call as soon as possible; ``requeue_after``
    asks for one after that many seconds. Neither set means the record
    needs no further work until something changes it.
    """

    action: ReconcileAction
    name: str
    namespace: str
    phase: str = ""
    requeue: bool = False
    requeue_after: Optional[float] = None
    message: str = ""
    error: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action.value,
            "name": self.name,
            "namespace": self.namespace,
            "phase": self.phase,
            "requeue": self.requeue,
            "requeueAfter": self.requeue_after,
            "message": self.message,
            "error": self.error,
        }


def _phase_str(phase: Any) -> str:
    return phase.value if isinstance(phase, Enum) else str(phase)


class Reconciler:
    """Drives ProgressiveDeployment records through their phases.

    All collaborators are injected: the record store, the workload store
    (defaults to the record store when it implements both), a callable that
    returns a metrics backend for a Prometheus URL, and a clock.

    The caller must never run two reconciles for the same record at once;
    different records may be reconciled in parallel.
    """

    def __init__(
        self,
        store: RecordStore,
        workloads: Optional[WorkloadStore] = None,
        metrics_backend: Optional[Callable[[Optional[str]], Any]] = None,
        clock: Optional[Callable[[], datetime]] = None,
        retry_seconds: float = 10.0,
        default_prometheus_url: str = DEFAULT_PROMETHEUS_URL,
    ) -> None:
        self._store = store
        if workloads is None:
            if not isinstance(store, WorkloadStore):
                raise TypeError("workloads is required when the record store cannot manage workloads")
            workloads = store
        self._canary = CanaryManager(workloads)
        self._metrics_backend = metrics_backend or PrometheusPool(default_prometheus_url)
        self._clock = clock or utcnow
        self.retry_seconds = retry_seconds
        self.default_prometheus_url = default_prometheus_url

    # -- Entry point --

    def reconcile(self, namespace: str, name: str) -> ReconcileResult:
        """Advance one record by at most one phase transition."""
        try:
            record = self._store.get_record(namespace, name)
        except ResourceNotFoundError:
            logger.info("ProgressiveDeployment %s/%s not found, ignoring since it must be deleted",
                        namespace, name)
            return ReconcileResult(ReconcileAction.NOOP, name, namespace, message="Record not found")
        except StoreUnavailableError as exc:
            logger.warning("Failed to read %s/%s: %s", namespace, name, exc)
            return ReconcileResult(
                ReconcileAction.RETRY, name, namespace,
                requeue_after=self.retry_seconds, error=str(exc),
            )

        logger.debug("Reconciling %s phase=%s step=%d",
                     record.key, record.status.phase or "<unset>", record.status.current_step)
        try:
            return self._dispatch(record)
        except ConflictError as exc:
            logger.info("Status of %s changed concurrently, re-reading: %s", record.key, exc)
            return ReconcileResult(
                ReconcileAction.RETRY, name, namespace,
                phase=_phase_str(record.status.phase), requeue=True, message="Conflict on status update",
            )
        except StoreUnavailableError as exc:
            logger.warning("Transient store error while reconciling %s: %s", record.key, exc)
            return ReconcileResult(
                ReconcileAction.RETRY, name, namespace,
                phase=_phase_str(record.status.phase), requeue_after=self.retry_seconds, error=str(exc),
            )
        except ResourceNotFoundError as exc:
            if exc.kind == CRD_KIND:
                logger.info("ProgressiveDeployment %s deleted during reconcile", record.key)
                return ReconcileResult(ReconcileAction.NOOP, name, namespace, message="Record deleted")
            raise

    def _dispatch(self, record: DeploymentRecord) -> ReconcileResult:
        raw = record.status.phase
        if not raw:
            return self._initialize(record)
        try:
            phase = Phase(raw)
        except ValueError:
            return self._reset(record)

        if phase.is_terminal:
            logger.debug("%s is in terminal phase %s", record.key, phase.value)
            return ReconcileResult(ReconcileAction.NOOP, record.name, record.namespace, phase=phase.value)

        handlers = {
            Phase.INITIALIZING: self._handle_initializing,
            Phase.ANALYZING: self._handle_analyzing,
            Phase.PROMOTING: self._handle_promoting,
            Phase.ROLLING_BACK: self._handle_rolling_back,
        }
        return handlers[phase](record)

    # -- Status commit --

    def _commit(
        self,
        record: DeploymentRecord,
        action: ReconcileAction,
        message: str = "",
        requeue: bool = False,
        requeue_after: Optional[float] = None,
        error: str = "",
    ) -> ReconcileResult:
        if message:
            record.status.message = message
        updated = self._store.update_status(record)
        return ReconcileResult(
            action=action,
            name=record.name,
            namespace=record.namespace,
            phase=_phase_str(updated.status.phase),
            requeue=requeue,
            requeue_after=requeue_after,
            message=message,
            error=error,
        )

    # -- Phase handlers --

    def _initialize(self, record: DeploymentRecord) -> ReconcileResult:
        status = record.status
        status.phase = Phase.INITIALIZING
        status.current_step = 0
        status.canary_percentage = 0
        status.health_status = HealthStatus.UNKNOWN
        status.last_analysis_time = None
        status.set_condition(
            ConditionType.PROGRESSING, ConditionStatus.TRUE,
            reason="Initializing", message="Rollout accepted",
        )
        logger.info("Initializing ProgressiveDeployment %s", record.key)
        return self._commit(record, ReconcileAction.INITIALIZED, "Rollout accepted", requeue=True)

    def _reset(self, record: DeploymentRecord) -> ReconcileResult:
        unknown = record.status.phase
        logger.warning("Unknown phase %r on %s, resetting to Initializing", unknown, record.key)
        record.status.phase = Phase.INITIALIZING
        record.status.last_analysis_time = None
        return self._commit(
            record, ReconcileAction.RESET, f"Unknown phase {unknown!r} reset", requeue=True,
        )

    def _handle_initializing(self, record: DeploymentRecord) -> ReconcileResult:
        status = record.status
        try:
            spec = record.desired()
        except SpecError as exc:
            return self._fail(record, "InvalidSpec", str(exc))

        try:
            target = self._canary.get_target(record, spec.target_deployment)
        except ResourceNotFoundError:
            return self._fail(
                record, "TargetNotFound",
                f"Target deployment {record.namespace}/{spec.target_deployment} not found",
            )

        # Captured once: later steps scale the target down, so its live
        # replica count is no longer the pre-rollout total.
        if status.stable_replicas is None:
            status.stable_replicas = target.replicas

        try:
            canary = self._canary.ensure_canary(record, target)
        except CanaryError as exc:
            return self._fail(record, "CanaryCreateFailed", str(exc))
        except TRANSIENT_ERRORS:
            raise
        except StoreError as exc:
            return self._fail(record, "CanaryCreateFailed", str(exc))

        status.phase = Phase.ANALYZING
        status.current_step = 0
        status.canary_percentage = spec.canary_steps[0]
        status.canary_deployment = canary.name
        status.health_status = HealthStatus.UNKNOWN
        status.last_analysis_time = None
        status.set_condition(
            ConditionType.PROGRESSING, ConditionStatus.TRUE,
            reason="CanaryCreated", message=f"Canary deployment {canary.name} ready",
        )
        logger.info("%s moved to Analyzing: step=0 percentage=%d canary=%s",
                    record.key, status.canary_percentage, canary.name)
        return self._commit(
            record, ReconcileAction.CANARY_CREATED,
            f"Canary {canary.name} created", requeue=True,
        )

    def _handle_analyzing(self, record: DeploymentRecord) -> ReconcileResult:
        status = record.status
        try:
            spec = record.desired()
        except SpecError as exc:
            return self._abort(record, "InvalidSpec", str(exc))

        step = status.current_step
        if step < 0 or step > spec.last_step:
            return self._abort(
                record, "StepOutOfRange",
                f"Step {step} is outside canarySteps (0..{spec.last_step})",
            )

        if status.paused:
            logger.debug("%s is paused at step %d", record.key, step)
            return ReconcileResult(
                ReconcileAction.PAUSED, record.name, record.namespace,
                phase=Phase.ANALYZING.value, message="Paused",
            )

        percentage = spec.canary_steps[step]
        now = self._clock()

        if status.last_analysis_time is None:
            status.canary_percentage = percentage
            try:
                stable_n, canary_n = self._apply_traffic(record, spec, percentage)
            except ResourceNotFoundError as exc:
                return self._abort(record, "TargetNotFound", str(exc))
            except CanaryError as exc:
                return self._abort(record, "CanaryUnavailable", str(exc))

            # Armed only after both Deployments are scaled.
            status.last_analysis_time = now
            message = (
                f"Step {step + 1}/{len(spec.canary_steps)}: {percentage}% canary "
                f"({canary_n} canary, {stable_n} stable replicas)"
            )
            status.set_condition(
                ConditionType.PROGRESSING, ConditionStatus.TRUE,
                reason="TrafficShifted", message=message,
            )
            logger.info("%s traffic adjusted, waiting %.1fs for stabilization: %s",
                        record.key, spec.step_duration, message)
            return self._commit(
                record, ReconcileAction.TRAFFIC_SHIFTED, message,
                requeue_after=spec.step_duration,
            )

        elapsed = (now - status.last_analysis_time).total_seconds()
        if elapsed < spec.step_duration:
            remaining = spec.step_duration - elapsed
            logger.debug("%s still analyzing: elapsed=%.1fs remaining=%.1fs",
                         record.key, elapsed, remaining)
            return ReconcileResult(
                ReconcileAction.WAITING, record.name, record.namespace,
                phase=Phase.ANALYZING.value, requeue_after=remaining,
            )

        return self._analyze(record, spec)

    def _analyze(self, record: DeploymentRecord, spec: DeploymentSpec) -> ReconcileResult:
        status = record.status
        url = spec.metrics.prometheus_url or self.default_prometheus_url
        evaluator = MetricsEvaluator(self._metrics_backend(url))
        try:
            evaluation = evaluator.evaluate(spec.checks())
        except MetricQueryError as exc:
            logger.warning("Metric query failed for %s, retrying in %.1fs: %s",
                           record.key, self.retry_seconds, exc)
            status.health_status = HealthStatus.UNKNOWN
            status.set_condition(
                ConditionType.METRICS_AVAILABLE, ConditionStatus.FALSE,
                reason="QueryFailed", message=str(exc),
            )
            return self._commit(
                record, ReconcileAction.RETRY, "Metric query failed",
                requeue_after=self.retry_seconds, error=str(exc),
            )

        status.metrics = dict(evaluation.observed)
        status.set_condition(
            ConditionType.METRICS_AVAILABLE, ConditionStatus.TRUE,
            reason="QuerySucceeded", message=f"{len(evaluation.observed)} checks evaluated",
        )

        if not evaluation.healthy:
            breached = ", ".join(f"{k}={v:g}" for k, v in sorted(evaluation.breached.items()))
            status.phase = Phase.ROLLING_BACK
            status.health_status = HealthStatus.UNHEALTHY
            status.last_analysis_time = None
            status.set_condition(
                ConditionType.DEGRADED, ConditionStatus.TRUE,
                reason="MetricThresholdExceeded", message=breached,
            )
            logger.info("%s unhealthy at step %d (%s), rolling back",
                        record.key, status.current_step, breached)
            return self._commit(
                record, ReconcileAction.ANALYSIS_FAILED,
                f"Thresholds exceeded: {breached}", requeue=True,
            )

        status.health_status = HealthStatus.HEALTHY
        is_last = status.current_step >= spec.last_step
        if spec.auto_promote or is_last:
            status.phase = Phase.PROMOTING
            status.last_analysis_time = None
            logger.info("%s healthy at step %d, moving to Promoting", record.key, status.current_step)
            return self._commit(
                record, ReconcileAction.ANALYSIS_PASSED, "Analysis passed", requeue=True,
            )

        status.set_condition(
            ConditionType.AWAITING_PROMOTION, ConditionStatus.TRUE,
            reason="ManualPromotionRequired",
            message=f"Step {status.current_step + 1}/{len(spec.canary_steps)} healthy; waiting for promote",
        )
        logger.info("%s healthy at step %d, holding for manual promotion",
                    record.key, status.current_step)
        return self._commit(
            record, ReconcileAction.AWAITING_PROMOTION, "Awaiting manual promotion",
            requeue_after=max(spec.step_duration, self.retry_seconds),
        )

    def _handle_promoting(self, record: DeploymentRecord) -> ReconcileResult:
        status = record.status
        status.last_analysis_time = None
        try:
            spec = record.desired()
        except SpecError as exc:
            return self._abort(record, "InvalidSpec", str(exc))

        if status.current_step < 0:
            return self._abort(record, "StepOutOfRange", f"Step {status.current_step} is negative")

        if status.get_condition(ConditionType.AWAITING_PROMOTION) is not None:
            status.set_condition(
                ConditionType.AWAITING_PROMOTION, ConditionStatus.FALSE, reason="Promoted",
            )

        if status.current_step >= spec.last_step:
            # Stable takes all replicas back before the canary goes away.
            if status.stable_replicas is not None:
                try:
                    target = self._canary.get_target(record, spec.target_deployment)
                    if target.replicas != status.stable_replicas:
                        self._canary.scale(record, target.name, status.stable_replicas)
                except ResourceNotFoundError as exc:
                    return self._abort(record, "TargetNotFound", str(exc))
            self._canary.retire_canary(record)
            status.phase = Phase.COMPLETED
            status.canary_percentage = 100
            status.paused = False
            status.set_condition(
                ConditionType.AVAILABLE, ConditionStatus.TRUE,
                reason="RolloutComplete",
                message=f"Stable {spec.target_deployment} restored to {status.stable_replicas} replicas",
            )
            status.set_condition(
                ConditionType.PROGRESSING, ConditionStatus.FALSE, reason="RolloutComplete",
            )
            logger.info("%s completed all %d steps", record.key, len(spec.canary_steps))
            return self._commit(record, ReconcileAction.COMPLETED, "Rollout completed")

        status.current_step += 1
        status.canary_percentage = spec.canary_steps[status.current_step]
        status.phase = Phase.ANALYZING
        logger.info("%s promoted to step %d (%d%%)",
                    record.key, status.current_step, status.canary_percentage)
        return self._commit(
            record, ReconcileAction.PROMOTED,
            f"Promoted to step {status.current_step + 1}/{len(spec.canary_steps)}",
            requeue=True,
        )

    def _handle_rolling_back(self, record: DeploymentRecord) -> ReconcileResult:
        status = record.status
        target_name = (record.spec or {}).get("targetDeployment")

        if target_name and status.stable_replicas is not None:
            try:
                self._canary.scale(record, target_name, status.stable_replicas)
            except ResourceNotFoundError:
                logger.warning("Stable deployment %s/%s not found, nothing to restore",
                               record.namespace, target_name)
        self._canary.retire_canary(record)

        status.phase = Phase.ROLLED_BACK
        status.canary_percentage = 0
        status.last_analysis_time = None
        status.paused = False
        if not status.health_status:
            status.health_status = HealthStatus.UNKNOWN
        degraded = status.get_condition(ConditionType.DEGRADED)
        reason = degraded.reason if degraded and degraded.status == ConditionStatus.TRUE else "Rollback"
        status.set_condition(
            ConditionType.ROLLED_BACK, ConditionStatus.TRUE,
            reason=reason, message=f"Stable restored to {status.stable_replicas} replicas",
        )
        status.set_condition(
            ConditionType.PROGRESSING, ConditionStatus.FALSE, reason="RolledBack",
        )
        logger.info("%s rolled back, stable restored to %s replicas",
                    record.key, status.stable_replicas)
        return self._commit(record, ReconcileAction.ROLLED_BACK, "Rollback completed")

    # -- Helpers --

    def _apply_traffic(
        self, record: DeploymentRecord, spec: DeploymentSpec, percentage: int,
    ) -> Tuple[int, int]:
        """Scale stable and canary for *percentage*; returns ``(stable, canary)``."""
        status = record.status
        target = self._canary.get_target(record, spec.target_deployment)
        if status.stable_replicas is None:
            status.stable_replicas = target.replicas
        canary = self._canary.ensure_canary(record, target)
        if not status.canary_deployment:
            status.canary_deployment = canary.name

        stable_n, canary_n = distribute(status.stable_replicas, percentage)
        logger.debug("%s distribution: total=%d percentage=%d stable=%d canary=%d",
                     record.key, status.stable_replicas, percentage, stable_n, canary_n)
        # Canary first, so capacity never dips below the stable total.
        if canary.replicas != canary_n:
            self._canary.scale(record, canary.name, canary_n)
        if target.replicas != stable_n:
            self._canary.scale(record, target.name, stable_n)
        return stable_n, canary_n

    def _fail(self, record: DeploymentRecord, reason: str, message: str) -> ReconcileResult:
        status = record.status
        status.phase = Phase.FAILED
        status.health_status = HealthStatus.UNKNOWN
        status.canary_percentage = 0
        status.last_analysis_time = None
        status.set_condition(ConditionType.DEGRADED, ConditionStatus.TRUE, reason=reason, message=message)
        status.set_condition(ConditionType.PROGRESSING, ConditionStatus.FALSE, reason=reason)
        logger.error("%s failed during setup (%s): %s", record.key, reason, message)
        return self._commit(record, ReconcileAction.FAILED, message, error=message)

    def _abort(self, record: DeploymentRecord, reason: str, message: str) -> ReconcileResult:
        status = record.status
        status.phase = Phase.ROLLING_BACK
        status.last_analysis_time = None
        status.set_condition(ConditionType.DEGRADED, ConditionStatus.TRUE, reason=reason, message=message)
        logger.warning("%s cannot continue (%s): %s; rolling back", record.key, reason, message)
        return self._commit(record, ReconcileAction.ROLLING_BACK, message, requeue=True, error=message)
