"""Prometheus instant-query client.

No Prometheus client library required, it uses urllib for HTTP against the
``/api/v1/query`` endpoint. Only the instant-query contract matters to the
rest of the operator: a query returns either an instant vector or a scalar,
and every failure surfaces as ``MetricQueryError`` rather than a zero value.
"""

from __future__ import annotations

import json
import logging
import socket
import threading
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

logger = logging.getLogger(__name__)

DEFAULT_PROMETHEUS_URL = "http://prometheus:9090"


class MetricQueryError(Exception):
    """A metric query could not be executed or returned no usable data."""

    def __init__(self, query: str, reason: str, check: str = "") -> None:
        self.query = query
        self.reason = reason
        self.check = check
        prefix = f"check '{check}': " if check else ""
        super().__init__(f"{prefix}query {query!r} failed: {reason}")


@dataclass
class Sample:
    """One element of an instant vector."""

    labels: Dict[str, str]
    value: float
    timestamp: float


@dataclass
class InstantVector:
    samples: List[Sample] = field(default_factory=list)


@dataclass
class Scalar:
    value: float
    timestamp: float = 0.0


QueryResult = Union[InstantVector, Scalar]


def _parse_point(query: str, point: Any) -> tuple[float, float]:
    try:
        ts, raw = point
        return float(raw), float(ts)
    except (TypeError, ValueError) as exc:
        raise MetricQueryError(query, f"malformed sample {point!r}") from exc


def parse_query_response(query: str, body: Dict[str, Any]) -> QueryResult:
    """Turn a decoded ``/api/v1/query`` response into a ``QueryResult``."""
    if body.get("status") != "success":
        reason = body.get("error") or body.get("errorType") or "query was not successful"
        raise MetricQueryError(query, str(reason))

    data = body.get("data") or {}
    result_type = data.get("resultType")
    result = data.get("result")

    if result_type == "vector":
        samples = []
        for item in result or []:
            value, ts = _parse_point(query, item.get("value"))
            samples.append(Sample(labels=dict(item.get("metric") or {}), value=value, timestamp=ts))
        return InstantVector(samples)
    if result_type == "scalar":
        value, ts = _parse_point(query, result)
        return Scalar(value=value, timestamp=ts)
    raise MetricQueryError(query, f"unexpected result type: {result_type}")


class PrometheusClient:
    """Synchronous client for Prometheus instant queries."""

    def __init__(self, url: str = DEFAULT_PROMETHEUS_URL, timeout: float = 10.0) -> None:
        self.url = (url or DEFAULT_PROMETHEUS_URL).rstrip("/")
        self.timeout = timeout

    def instant_query(self, query: str) -> QueryResult:
        """Evaluate *query* at the current time.

        Raises:
            MetricQueryError: On transport errors, timeouts, API errors,
                undecodable bodies and unsupported result types.
        """
        params = urllib.parse.urlencode({"query": query})
        req = urllib.request.Request(
            f"{self.url}/api/v1/query?{params}",
            headers={"Accept": "application/json"},
            method="GET",
        )
        logger.debug("Querying Prometheus at %s: %s", self.url, query)
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as resp:
                payload = resp.read()
        except urllib.error.HTTPError as exc:
            # Prometheus answers bad queries with 400/422 and a JSON error body.
            try:
                body = json.loads(exc.read() or b"{}")
            except ValueError:
                body = {}
            if not isinstance(body, dict):
                body = {}
            reason = body.get("error") or f"HTTP {exc.code}"
            raise MetricQueryError(query, str(reason)) from exc
        except (urllib.error.URLError, socket.timeout, TimeoutError, OSError) as exc:
            raise MetricQueryError(query, f"backend unreachable: {exc}") from exc

        try:
            body = json.loads(payload)
        except ValueError as exc:
            raise MetricQueryError(query, "response is not valid JSON") from exc
        if not isinstance(body, dict):
            raise MetricQueryError(query, "response is not a JSON object")

        warnings = body.get("warnings")
        if warnings:
            logger.info("Prometheus query warnings for %r: %s", query, warnings)
        return parse_query_response(query, body)


class PrometheusPool:
    """Long-lived Prometheus clients, one per backend URL.

    Owned by the process entry point and handed to the reconciler; calling
    the pool with a URL returns the client for that URL.
    """

    def __init__(self, default_url: str = DEFAULT_PROMETHEUS_URL, timeout: float = 10.0) -> None:
        self.default_url = default_url or DEFAULT_PROMETHEUS_URL
        self.timeout = timeout
        self._clients: Dict[str, PrometheusClient] = {}
        self._lock = threading.Lock()

    def __call__(self, url: Optional[str] = None) -> PrometheusClient:
        key = (url or self.default_url).rstrip("/")
        with self._lock:
            client = self._clients.get(key)
            if client is None:
                client = PrometheusClient(key, timeout=self.timeout)
                self._clients[key] = client
            return client

    def __len__(self) -> int:
        return len(self._clients)
