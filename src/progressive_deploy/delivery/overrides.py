"""
Manual overrides for running rollouts.

An override is a status write that the reconciler picks up on its next
pass: ``promote`` moves an analysing step on to ``Promoting``,
``rollback`` forces ``RollingBack``, and ``pause``/``resume`` toggle the
hold on the current step. Every override is validated against the record
as it is at write time; when the write loses a race with the reconciler
the record is re-read and the override re-validated.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from progressive_deploy.delivery.rollout import (
    DeploymentRecord,
    HealthStatus,
    Phase,
    SpecError,
)
from progressive_deploy.k8s import ConditionStatus, ConditionType, utcnow
from progressive_deploy.store import ConflictError, RecordStore

logger = logging.getLogger(__name__)

MAX_CONFLICT_RETRIES = 5


class OverrideError(Exception):
    """An override is not allowed for the record's current state."""

    def __init__(self, name: str, operation: str, message: str) -> None:
        self.name = name
        self.operation = operation
        super().__init__(f"Cannot {operation} '{name}': {message}")


@dataclass
class OverrideResult:
    """Outcome of an override. ``changed`` is False for no-op requests."""

    operation: str
    name: str
    namespace: str
    changed: bool
    phase: str
    message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation": self.operation,
            "name": self.name,
            "namespace": self.namespace,
            "changed": self.changed,
            "phase": self.phase,
            "message": self.message,
        }


@dataclass
class StatusView:
    """Read-only summary of a record for display."""

    name: str
    namespace: str
    phase: str
    step: str
    canary_percentage: int
    health: str
    canary_deployment: str
    target_deployment: str
    paused: bool = False
    message: str = ""
    metrics: Dict[str, float] = field(default_factory=dict)
    conditions: List[Dict[str, Any]] = field(default_factory=list)
    created: Optional[datetime] = None

    @classmethod
    def from_record(cls, record: DeploymentRecord) -> StatusView:
        status = record.status
        steps = (record.spec or {}).get("canarySteps") or []
        total = len(steps) if isinstance(steps, list) else 0
        step = f"{status.current_step + 1}/{total}" if total else "-"
        return cls(
            name=record.name,
            namespace=record.namespace,
            phase=str(_value(status.phase)) or "Pending",
            step=step,
            canary_percentage=status.canary_percentage,
            health=str(_value(status.health_status)) or "Unknown",
            canary_deployment=status.canary_deployment,
            target_deployment=str((record.spec or {}).get("targetDeployment", "")),
            paused=status.paused,
            message=status.message,
            metrics=dict(status.metrics),
            conditions=[c.to_dict() for c in status.conditions],
            created=record.creation_timestamp,
        )

    def age(self, now: Optional[datetime] = None) -> str:
        if self.created is None:
            return "<unknown>"
        return format_age(((now or utcnow()) - self.created).total_seconds())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "namespace": self.namespace,
            "phase": self.phase,
            "step": self.step,
            "canaryPercentage": self.canary_percentage,
            "health": self.health,
            "canaryDeployment": self.canary_deployment,
            "targetDeployment": self.target_deployment,
            "paused": self.paused,
            "message": self.message,
            "metrics": dict(self.metrics),
            "conditions": list(self.conditions),
            "age": self.age(),
        }


def _value(value: Any) -> Any:
    return getattr(value, "value", value)


def format_age(seconds: float) -> str:
    """Render an age the way ``kubectl get`` does (``45s``, ``12m``, ``3h``, ``2d``)."""
    seconds = max(0, int(seconds))
    if seconds < 60:
        return f"{seconds}s"
    if seconds < 3600:
        return f"{seconds // 60}m"
    if seconds < 86400:
        return f"{seconds // 3600}h"
    return f"{seconds // 86400}d"


def _phase(record: DeploymentRecord) -> Optional[Phase]:
    try:
        return Phase(record.status.phase)
    except ValueError:
        return None


class DeploymentClient:
    """User-facing operations on ProgressiveDeployment records."""

    def __init__(self, store: RecordStore, max_retries: int = MAX_CONFLICT_RETRIES) -> None:
        self._store = store
        self.max_retries = max_retries

    # -- Reads --

    def get(self, namespace: str, name: str) -> DeploymentRecord:
        return self._store.get_record(namespace, name)

    def list(self, namespace: Optional[str] = None) -> List[DeploymentRecord]:
        return self._store.list_records(namespace)

    def status(self, namespace: str, name: str) -> StatusView:
        return StatusView.from_record(self._store.get_record(namespace, name))

    # -- Overrides --

    def promote(self, namespace: str, name: str) -> OverrideResult:
        """Advance the current step without waiting for the analysis verdict."""
        return self._apply(namespace, name, "promote", self._promote)

    def rollback(self, namespace: str, name: str) -> OverrideResult:
        """Abort the rollout and restore the stable Deployment."""
        return self._apply(namespace, name, "rollback", self._rollback)

    def pause(self, namespace: str, name: str) -> OverrideResult:
        """Hold the rollout at its current step."""
        return self._apply(namespace, name, "pause", self._pause)

    def resume(self, namespace: str, name: str) -> OverrideResult:
        """Release a paused rollout."""
        return self._apply(namespace, name, "resume", self._resume)

    def _apply(
        self,
        namespace: str,
        name: str,
        operation: str,
        mutate: Callable[[DeploymentRecord], Optional[str]],
    ) -> OverrideResult:
        """Read, validate and write, re-reading on conflict.

        *mutate* raises ``OverrideError`` when the override is not allowed,
        returns a message when the record is already in the requested state,
        or returns None after changing the record in place.
        """
        attempt = 0
        while True:
            record = self._store.get_record(namespace, name)
            noop = mutate(record)
            if noop is not None:
                logger.info("%s on %s is a no-op: %s", operation, record.key, noop)
                return OverrideResult(operation, name, namespace, False,
                                      str(_value(record.status.phase)), noop)
            try:
                updated = self._store.update_status(record)
            except ConflictError:
                attempt += 1
                if attempt > self.max_retries:
                    raise
                logger.debug("Conflict applying %s to %s, retrying (%d/%d)",
                             operation, record.key, attempt, self.max_retries)
                continue
            logger.info("Applied %s to %s, phase is now %s",
                        operation, updated.key, _value(updated.status.phase))
            return OverrideResult(operation, name, namespace, True,
                                  str(_value(updated.status.phase)), updated.status.message)

    def _promote(self, record: DeploymentRecord) -> Optional[str]:
        phase = _phase(record)
        if phase == Phase.PROMOTING:
            return "already promoting"
        if phase != Phase.ANALYZING:
            raise OverrideError(record.name, "promote",
                                f"phase is {record.status.phase or 'unset'}, expected Analyzing")
        try:
            spec = record.desired()
        except SpecError as exc:
            raise OverrideError(record.name, "promote", str(exc)) from exc
        if record.status.current_step >= spec.last_step:
            raise OverrideError(record.name, "promote",
                                "already at the final step; the rollout completes on its own")

        status = record.status
        status.phase = Phase.PROMOTING
        status.paused = False
        status.last_analysis_time = None
        status.message = f"Manually promoted from step {status.current_step + 1}/{len(spec.canary_steps)}"
        status.set_condition(
            ConditionType.AWAITING_PROMOTION, ConditionStatus.FALSE,
            reason="ManualPromotion", message=status.message,
        )
        return None

    def _rollback(self, record: DeploymentRecord) -> Optional[str]:
        phase = _phase(record)
        if phase == Phase.ROLLED_BACK:
            return "already rolled back"
        if phase == Phase.ROLLING_BACK:
            return "rollback already in progress"
        if phase == Phase.COMPLETED:
            raise OverrideError(record.name, "rollback", "rollout already completed")
        if phase == Phase.FAILED:
            raise OverrideError(record.name, "rollback", "rollout failed during setup; nothing to roll back")

        status = record.status
        status.phase = Phase.ROLLING_BACK
        status.health_status = HealthStatus.UNHEALTHY
        status.paused = False
        status.last_analysis_time = None
        status.message = "Manual rollback requested"
        status.set_condition(
            ConditionType.DEGRADED, ConditionStatus.TRUE,
            reason="ManualRollback", message=status.message,
        )
        return None

    def _pause(self, record: DeploymentRecord) -> Optional[str]:
        if _phase(record) != Phase.ANALYZING:
            raise OverrideError(record.name, "pause",
                                f"phase is {record.status.phase or 'unset'}, expected Analyzing")
        if record.status.paused:
            return "already paused"
        record.status.paused = True
        record.status.message = "Paused"
        record.status.set_condition(ConditionType.PAUSED, ConditionStatus.TRUE, reason="ManualPause")
        return None

    def _resume(self, record: DeploymentRecord) -> Optional[str]:
        if _phase(record) != Phase.ANALYZING:
            raise OverrideError(record.name, "resume",
                                f"phase is {record.status.phase or 'unset'}, expected Analyzing")
        if not record.status.paused:
            return "not paused"
        record.status.paused = False
        record.status.message = "Resumed"
        record.status.set_condition(ConditionType.PAUSED, ConditionStatus.FALSE, reason="ManualResume")
        return None
