"""Operator configuration, loaded from YAML and ``PD_*`` environment variables."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Mapping

import yaml
from pydantic import BaseModel, Field, field_validator

from progressive_deploy.metrics.prometheus import DEFAULT_PROMETHEUS_URL

ENV_PREFIX = "PD_"


class OperatorConfig(BaseModel):
    """Runtime settings for the operator process."""

    namespace: str | None = Field(
        default=None, description="Namespace to watch; all namespaces when unset",
    )
    workers: int = Field(default=2, ge=1, description="Concurrent reconcile workers")
    resync_seconds: float = Field(default=30.0, gt=0, description="Interval between full record listings")
    retry_seconds: float = Field(default=10.0, gt=0, description="Delay before retrying a failed query or write")
    prometheus_url: str = Field(default=DEFAULT_PROMETHEUS_URL, description="Used when a record sets none")
    query_timeout_seconds: float = Field(default=10.0, gt=0)
    log_level: str = Field(default="INFO")
    kubeconfig: str | None = Field(default=None, description="Path to a kubeconfig; in-cluster when unset")

    @field_validator("log_level")
    @classmethod
    def _check_level(cls, value: str) -> str:
        level = value.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {value}")
        return level

    @classmethod
    def from_yaml(cls, path: str | Path) -> OperatorConfig:
        """Load configuration from a YAML file."""
        path = Path(path)
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        return cls.model_validate(data)

    def to_yaml(self, path: str | Path) -> None:
        path = Path(path)
        data = self.model_dump(mode="json", exclude_none=True)
        with open(path, "w", encoding="utf-8") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)

    def with_env(self, environ: Mapping[str, str] | None = None) -> OperatorConfig:
        """Return a copy with any ``PD_<FIELD>`` variables applied on top."""
        environ = os.environ if environ is None else environ
        overrides: dict[str, Any] = {}
        for name in type(self).model_fields:
            value = environ.get(ENV_PREFIX + name.upper())
            if value is not None and value != "":
                overrides[name] = value
        if not overrides:
            return self
        return type(self).model_validate({**self.model_dump(), **overrides})

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> OperatorConfig:
        """Defaults overridden by ``PD_*`` environment variables."""
        return cls().with_env(environ)
