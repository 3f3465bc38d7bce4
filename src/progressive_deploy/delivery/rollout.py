"""ProgressiveDeployment resource model: desired state, observed state, workloads."""

from __future__ import annotations

import copy
import math
import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from progressive_deploy.k8s import (
    CRD_API_VERSION,
    CRD_KIND,
    Condition,
    ConditionStatus,
    ConditionType,
    format_time,
    parse_time,
    utcnow,
)


class Phase(str, Enum):
    """Reconciliation phase of a ProgressiveDeployment."""

    INITIALIZING = "Initializing"
    ANALYZING = "Analyzing"
    PROMOTING = "Promoting"
    ROLLING_BACK = "RollingBack"
    COMPLETED = "Completed"
    ROLLED_BACK = "RolledBack"
    FAILED = "Failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_PHASES


TERMINAL_PHASES = frozenset({Phase.COMPLETED, Phase.ROLLED_BACK, Phase.FAILED})


class HealthStatus(str, Enum):
    """Verdict of the most recent canary analysis."""

    HEALTHY = "Healthy"
    UNHEALTHY = "Unhealthy"
    UNKNOWN = "Unknown"


def _plain(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


# ---------------------------------------------------------------------------
# Desired state
# ---------------------------------------------------------------------------

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ns|us|µs|ms|s|m|h)")
_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}


def parse_duration(value: Any) -> float:
    """Parse a step duration into seconds.

    Accepts plain numbers (seconds) and Go duration strings such as
    ``"30s"``, ``"5m"``, ``"1h30m"`` or ``"250ms"``.
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    else:
        text = str(value).strip()
        try:
            seconds = float(text)
        except ValueError:
            pos = 0
            seconds = 0.0
            for match in _DURATION_PART.finditer(text):
                if match.start() != pos:
                    raise ValueError(f"Invalid duration: {value!r}") from None
                seconds += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
                pos = match.end()
            if pos == 0 or pos != len(text):
                raise ValueError(f"Invalid duration: {value!r}") from None
    if not math.isfinite(seconds):
        raise ValueError(f"Duration must be finite: {value!r}")
    if seconds < 0:
        raise ValueError(f"Duration must not be negative: {value!r}")
    return seconds


class SpecError(ValueError):
    """The desired state of a ProgressiveDeployment is invalid."""

    def __init__(self, name: str, errors: List[str]) -> None:
        self.name = name
        self.errors = errors
        super().__init__(f"Invalid spec for '{name}': " + "; ".join(errors))


class MetricThreshold(BaseModel):
    """A PromQL query and the maximum acceptable value it may return."""

    query: str = ""
    threshold: float = 0.0


class MetricCheck(BaseModel):
    """A named health check evaluated at the end of each step."""

    name: str = Field(..., min_length=1)
    query: str = Field(..., min_length=1, description="PromQL instant query")
    threshold: float = Field(..., description="Unhealthy when the observed value exceeds this")


class MetricsConfig(BaseModel):
    """Metric checks and the backend that answers them."""

    model_config = ConfigDict(populate_by_name=True)

    prometheus_url: Optional[str] = Field(default=None, alias="prometheusUrl")
    checks: List[MetricCheck] = Field(default_factory=list)
    error_rate: Optional[MetricThreshold] = Field(default=None, alias="errorRate")
    latency: Optional[MetricThreshold] = Field(default=None, alias="latency")

    def named_checks(self) -> Dict[str, MetricCheck]:
        """All configured checks keyed by name, shorthand keys included."""
        result: Dict[str, MetricCheck] = {}
        for name, legacy in (("errorRate", self.error_rate), ("latency", self.latency)):
            if legacy is not None and legacy.query:
                result[name] = MetricCheck(name=name, query=legacy.query, threshold=legacy.threshold)
        for check in self.checks:
            if check.name in result:
                raise ValueError(f"Duplicate metric check name: {check.name}")
            result[check.name] = check
        return result


class DeploymentSpec(BaseModel):
    """Desired state of a ProgressiveDeployment (``.spec``)."""

    model_config = ConfigDict(populate_by_name=True)

    target_deployment: str = Field(..., alias="targetDeployment", min_length=1)
    canary_steps: List[int] = Field(..., alias="canarySteps", min_length=1)
    step_duration: float = Field(default=60.0, alias="stepDuration")
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)
    auto_promote: bool = Field(default=True, alias="autoPromote")

    @field_validator("canary_steps")
    @classmethod
    def _check_steps(cls, steps: List[int]) -> List[int]:
        for value in steps:
            if value <= 0 or value > 100:
                raise ValueError(f"canary step {value} is outside (0, 100]")
        return steps

    @field_validator("step_duration", mode="before")
    @classmethod
    def _parse_step_duration(cls, value: Any) -> float:
        return parse_duration(value)

    @property
    def last_step(self) -> int:
        return len(self.canary_steps) - 1

    def checks(self) -> Dict[str, MetricCheck]:
        return self.metrics.named_checks()

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# ---------------------------------------------------------------------------
# Observed state
# ---------------------------------------------------------------------------

@dataclass
class DeploymentStatus:
    """Status sub-resource of a ProgressiveDeployment.

    ``phase`` and ``health_status`` hold plain strings so that a value
    written by something else (or an older version) survives a round trip
    and can be handled by the reconciler instead of failing to load.
    """

    phase: str = ""
    current_step: int = 0
    canary_percentage: int = 0
    canary_deployment: str = ""
    stable_replicas: Optional[int] = None
    health_status: str = ""
    metrics: Dict[str, float] = field(default_factory=dict)
    conditions: List[Condition] = field(default_factory=list)
    last_analysis_time: Optional[datetime] = None
    paused: bool = False
    message: str = ""

    def set_condition(
        self,
        ctype: ConditionType,
        status: ConditionStatus,
        reason: str = "",
        message: str = "",
    ) -> None:
        """Set or update a condition, replacing any existing one of the same type.

        The transition time only moves when the condition's status changes.
        """
        for i, c in enumerate(self.conditions):
            if c.type == ctype:
                since = c.last_transition_time if c.status == status else utcnow()
                self.conditions[i] = Condition(ctype, status, reason, message, since)
                return
        self.conditions.append(Condition(ctype, status, reason, message))

    def get_condition(self, ctype: ConditionType) -> Condition | None:
        for c in self.conditions:
            if c.type == ctype:
                return c
        return None

    def copy(self) -> DeploymentStatus:
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "phase": _plain(self.phase),
            "currentStep": self.current_step,
            "canaryPercentage": self.canary_percentage,
            "canaryDeployment": self.canary_deployment,
            "healthStatus": _plain(self.health_status),
            "metrics": dict(self.metrics),
            "conditions": [c.to_dict() for c in self.conditions],
            "lastAnalysisTime": (
                format_time(self.last_analysis_time, fractional=True) if self.last_analysis_time else None
            ),
            "paused": self.paused,
            "message": self.message,
        }
        if self.stable_replicas is not None:
            data["stableReplicas"] = self.stable_replicas
        return data

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> DeploymentStatus:
        data = data or {}
        stable = data.get("stableReplicas")
        return cls(
            phase=data.get("phase") or "",
            current_step=int(data.get("currentStep") or 0),
            canary_percentage=int(data.get("canaryPercentage") or 0),
            canary_deployment=data.get("canaryDeployment") or "",
            stable_replicas=int(stable) if stable is not None else None,
            health_status=data.get("healthStatus") or "",
            metrics={k: float(v) for k, v in (data.get("metrics") or {}).items()},
            conditions=[Condition.from_dict(c) for c in data.get("conditions") or []],
            last_analysis_time=parse_time(data.get("lastAnalysisTime")),
            paused=bool(data.get("paused", False)),
            message=data.get("message") or "",
        )


@dataclass
class DeploymentRecord:
    """A ProgressiveDeployment: desired state plus observed status."""

    name: str
    namespace: str = "default"
    spec: Dict[str, Any] = field(default_factory=dict)
    status: DeploymentStatus = field(default_factory=DeploymentStatus)
    uid: str = ""
    resource_version: str = ""
    generation: int = 1
    creation_timestamp: Optional[datetime] = None

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"

    def desired(self) -> DeploymentSpec:
        """Validate and return the desired state.

        Raises:
            SpecError: If the spec is missing fields or holds invalid values.
        """
        try:
            spec = DeploymentSpec.model_validate(self.spec or {})
            spec.checks()
        except ValidationError as exc:
            errors = [
                f"{'.'.join(str(p) for p in e['loc']) or 'spec'}: {e['msg']}"
                for e in exc.errors()
            ]
            raise SpecError(self.name, errors) from exc
        except ValueError as exc:
            raise SpecError(self.name, [str(exc)]) from exc
        return spec

    def owner_reference(self) -> Dict[str, Any]:
        """Controller owner reference pointing at this record."""
        return {
            "apiVersion": CRD_API_VERSION,
            "kind": CRD_KIND,
            "name": self.name,
            "uid": self.uid,
            "controller": True,
            "blockOwnerDeletion": True,
        }

    def to_manifest(self) -> Dict[str, Any]:
        metadata: Dict[str, Any] = {
            "name": self.name,
            "namespace": self.namespace,
            "generation": self.generation,
        }
        if self.uid:
            metadata["uid"] = self.uid
        if self.resource_version:
            metadata["resourceVersion"] = self.resource_version
        if self.creation_timestamp is not None:
            metadata["creationTimestamp"] = format_time(self.creation_timestamp)
        return {
            "apiVersion": CRD_API_VERSION,
            "kind": CRD_KIND,
            "metadata": metadata,
            "spec": copy.deepcopy(self.spec),
            "status": self.status.to_dict(),
        }

    @classmethod
    def from_manifest(cls, manifest: Dict[str, Any]) -> DeploymentRecord:
        metadata = manifest.get("metadata") or {}
        return cls(
            name=metadata.get("name", ""),
            namespace=metadata.get("namespace") or "default",
            spec=copy.deepcopy(manifest.get("spec") or {}),
            status=DeploymentStatus.from_dict(manifest.get("status")),
            uid=metadata.get("uid", ""),
            resource_version=str(metadata.get("resourceVersion") or ""),
            generation=int(metadata.get("generation") or 1),
            creation_timestamp=parse_time(metadata.get("creationTimestamp")),
        )


# ---------------------------------------------------------------------------
# Workloads
# ---------------------------------------------------------------------------

@dataclass
class Workload:
    """An ``apps/v1`` Deployment as seen through the workload store."""

    manifest: Dict[str, Any]

    @property
    def metadata(self) -> Dict[str, Any]:
        return self.manifest.setdefault("metadata", {})

    @property
    def name(self) -> str:
        return self.metadata.get("name", "")

    @property
    def namespace(self) -> str:
        return self.metadata.get("namespace") or "default"

    @property
    def labels(self) -> Dict[str, str]:
        return dict(self.metadata.get("labels") or {})

    @property
    def uid(self) -> str:
        return self.metadata.get("uid", "")

    @property
    def replicas(self) -> int:
        # An unset replica count defaults to 1 on the API server.
        value = (self.manifest.get("spec") or {}).get("replicas")
        return 1 if value is None else int(value)

    @property
    def owner_references(self) -> List[Dict[str, Any]]:
        return list(self.metadata.get("ownerReferences") or [])

    def is_owned_by(self, record: DeploymentRecord) -> bool:
        return any(
            ref.get("uid") == record.uid and ref.get("kind") == CRD_KIND
            for ref in self.owner_references
        )


__all__ = [
    "DeploymentRecord",
    "DeploymentSpec",
    "DeploymentStatus",
    "HealthStatus",
    "MetricCheck",
    "MetricThreshold",
    "MetricsConfig",
    "Phase",
    "SpecError",
    "TERMINAL_PHASES",
    "Workload",
    "parse_duration",
]
