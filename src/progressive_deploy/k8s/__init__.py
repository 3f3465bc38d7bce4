"""
Kubernetes surface for progressive-deploy.

Provides the ``ProgressiveDeployment`` CRD definition, K8s-style status
conditions and timestamp helpers shared by the reconciler, the CLI and the
cluster-backed store.

Components:
- generate_crd_manifest: ProgressiveDeployment CRD generator
- ConditionType / ConditionStatus / Condition: K8s status conditions
- format_time / parse_time: RFC 3339 timestamps as stored in status

Usage:
    import yaml
    from progressive_deploy.k8s import generate_crd_manifest

    print(yaml.safe_dump(generate_crd_manifest(), sort_keys=False))
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Union


# ---------------------------------------------------------------------------
# CRD schema
# ---------------------------------------------------------------------------

CRD_GROUP = "progressive-deploy.io"
CRD_VERSION = "v1alpha1"
CRD_KIND = "ProgressiveDeployment"
CRD_PLURAL = "progressivedeployments"
CRD_SINGULAR = "progressivedeployment"
CRD_API_VERSION = f"{CRD_GROUP}/{CRD_VERSION}"

PHASE_VALUES = [
    "Initializing",
    "Analyzing",
    "Promoting",
    "RollingBack",
    "Completed",
    "RolledBack",
    "Failed",
]


def generate_crd_manifest() -> Dict[str, Any]:
    """Generate the ProgressiveDeployment CustomResourceDefinition manifest.

    Returns a dict suitable for serialisation to YAML and ``kubectl apply``.
    """
    return {
        "apiVersion": "apiextensions.k8s.io/v1",
        "kind": "CustomResourceDefinition",
        "metadata": {
            "name": f"{CRD_PLURAL}.{CRD_GROUP}",
        },
        "spec": {
            "group": CRD_GROUP,
            "names": {
                "kind": CRD_KIND,
                "plural": CRD_PLURAL,
                "singular": CRD_SINGULAR,
                "shortNames": ["pd"],
            },
            "scope": "Namespaced",
            "versions": [
                {
                    "name": CRD_VERSION,
                    "served": True,
                    "storage": True,
                    "schema": {
                        "openAPIV3Schema": _openapi_schema(),
                    },
                    "subresources": {"status": {}},
                    "additionalPrinterColumns": [
                        {"name": "Phase", "type": "string", "jsonPath": ".status.phase"},
                        {"name": "Step", "type": "integer", "jsonPath": ".status.currentStep"},
                        {"name": "Canary%", "type": "integer", "jsonPath": ".status.canaryPercentage"},
                        {"name": "Health", "type": "string", "jsonPath": ".status.healthStatus"},
                        {"name": "Age", "type": "date", "jsonPath": ".metadata.creationTimestamp"},
                    ],
                }
            ],
        },
    }


def _metric_threshold_schema() -> Dict[str, Any]:
    return {
        "type": "object",
        "properties": {
            "query": {"type": "string"},
            "threshold": {"type": "number"},
        },
    }


def _openapi_schema() -> Dict[str, Any]:
    """OpenAPI v3 schema for ProgressiveDeployment CRD."""
    return {
        "type": "object",
        "properties": {
            "spec": {
                "type": "object",
                "required": ["targetDeployment", "canarySteps"],
                "properties": {
                    "targetDeployment": {"type": "string", "minLength": 1},
                    "canarySteps": {
                        "type": "array",
                        "minItems": 1,
                        "items": {"type": "integer", "minimum": 1, "maximum": 100},
                    },
                    "stepDuration": {
                        "x-kubernetes-int-or-string": True,
                        "description": "Seconds, or a duration such as 30s, 5m, 1h30m",
                    },
                    "autoPromote": {"type": "boolean", "default": True},
                    "metrics": {
                        "type": "object",
                        "properties": {
                            "prometheusUrl": {"type": "string"},
                            "checks": {
                                "type": "array",
                                "items": {
                                    "type": "object",
                                    "required": ["name", "query", "threshold"],
                                    "properties": {
                                        "name": {"type": "string"},
                                        "query": {"type": "string"},
                                        "threshold": {"type": "number"},
                                    },
                                },
                            },
                            "errorRate": _metric_threshold_schema(),
                            "latency": _metric_threshold_schema(),
                        },
                    },
                },
            },
            "status": {
                "type": "object",
                "properties": {
                    "phase": {"type": "string", "enum": PHASE_VALUES},
                    "currentStep": {"type": "integer"},
                    "canaryPercentage": {"type": "integer"},
                    "canaryDeployment": {"type": "string"},
                    "stableReplicas": {"type": "integer"},
                    "healthStatus": {
                        "type": "string",
                        "enum": ["Healthy", "Unhealthy", "Unknown"],
                    },
                    "metrics": {
                        "type": "object",
                        "additionalProperties": {"type": "number"},
                    },
                    "paused": {"type": "boolean"},
                    "message": {"type": "string"},
                    "lastAnalysisTime": {"type": "string", "format": "date-time", "nullable": True},
                    "conditions": {
                        "type": "array",
                        "items": {
                            "type": "object",
                            "properties": {
                                "type": {"type": "string"},
                                "status": {"type": "string"},
                                "reason": {"type": "string"},
                                "message": {"type": "string"},
                                "lastTransitionTime": {"type": "string"},
                            },
                        },
                    },
                },
            },
        },
    }


# ---------------------------------------------------------------------------
# Timestamps
# ---------------------------------------------------------------------------

def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_time(value: datetime, fractional: bool = False) -> str:
    """Render a datetime the way the API server stores ``metav1.Time``.

    With *fractional*, microseconds are kept (``metav1.MicroTime``), for
    timestamps that elapsed-time decisions are computed from.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    fmt = "%Y-%m-%dT%H:%M:%S.%fZ" if fractional else "%Y-%m-%dT%H:%M:%SZ"
    return value.astimezone(timezone.utc).strftime(fmt)


def parse_time(value: Optional[str]) -> Optional[datetime]:
    """Parse an RFC 3339 timestamp; ``None`` and ``""`` give ``None``."""
    if not value:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# ---------------------------------------------------------------------------
# Status conditions (K8s-style)
# ---------------------------------------------------------------------------

class ConditionType(Enum):
    """Condition types reported on a ProgressiveDeployment."""

    PROGRESSING = "Progressing"
    AVAILABLE = "Available"
    DEGRADED = "Degraded"
    ROLLED_BACK = "RolledBack"
    METRICS_AVAILABLE = "MetricsAvailable"
    AWAITING_PROMOTION = "AwaitingPromotion"
    PAUSED = "Paused"


class ConditionStatus(Enum):
    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


@dataclass
class Condition:
    """A K8s-style status condition.

    Types and statuses this operator does not know are kept as plain
    strings, so conditions written by other controllers or by hand
    survive a status write unchanged.
    """

    type: Union[ConditionType, str]
    status: Union[ConditionStatus, str] = ConditionStatus.UNKNOWN
    reason: str = ""
    message: str = ""
    last_transition_time: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": getattr(self.type, "value", self.type),
            "status": getattr(self.status, "value", self.status),
            "reason": self.reason,
            "message": self.message,
            "lastTransitionTime": format_time(self.last_transition_time),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Condition:
        raw_type = data.get("type", "")
        raw_status = data.get("status", "Unknown")
        try:
            ctype: Union[ConditionType, str] = ConditionType(raw_type)
        except ValueError:
            ctype = raw_type
        try:
            status: Union[ConditionStatus, str] = ConditionStatus(raw_status)
        except ValueError:
            status = raw_status
        return cls(
            type=ctype,
            status=status,
            reason=data.get("reason", ""),
            message=data.get("message", ""),
            last_transition_time=parse_time(data.get("lastTransitionTime")) or utcnow(),
        )


__all__ = [
    "CRD_API_VERSION",
    "CRD_GROUP",
    "CRD_KIND",
    "CRD_PLURAL",
    "CRD_SINGULAR",
    "CRD_VERSION",
    "PHASE_VALUES",
    "Condition",
    "ConditionStatus",
    "ConditionType",
    "format_time",
    "generate_crd_manifest",
    "parse_time",
    "utcnow",
]
