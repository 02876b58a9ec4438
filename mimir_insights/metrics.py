"""Prometheus-compatible HTTP API client for per-tenant usage series.

Talks to the Mimir query frontend (or any Prometheus API).  The tenant is
sent in the ``X-Scope-OrgID`` header, which is how Mimir multiplexes
tenants on a shared endpoint.
"""

from __future__ import annotations

import logging
import math
import threading
from datetime import datetime, timezone
from typing import Any

import httpx

from mimir_insights.errors import MetricsQueryError, QueryCancelled, QueryTimeout
from mimir_insights.models import MetricPoint, TimeRange, TimeSeries

logger = logging.getLogger(__name__)

# Timeout for API calls.
_TIMEOUT = httpx.Timeout(10.0, connect=5.0)

TENANT_HEADER = "X-Scope-OrgID"

# Logical metric name → PromQL template.  Each is summed so a tenant yields
# one series regardless of how many pods report it.
METRIC_QUERIES: dict[str, str] = {
    "ingestion_rate": 'sum(cortex_distributor_ingestion_rate{{tenant="{tenant}"}})',
    "rejected_samples": 'sum(cortex_distributor_rejected_samples_total{{tenant="{tenant}"}})',
    "limits_reached": 'sum(cortex_distributor_tenant_limits_reached_total{{tenant="{tenant}"}})',
    "active_series": 'sum(cortex_ingester_active_series{{tenant="{tenant}"}})',
    "memory_usage": 'sum(cortex_ingester_memory_usage_bytes{{tenant="{tenant}"}})',
}


class MetricsClient:
    """Lightweight range-query client.

    Parameters
    ----------
    base_url : str
        Base URL of the API (e.g. ``http://mimir-query-frontend:8080/prometheus``).
    timeout : float
        Read timeout in seconds; exceeding it raises ``QueryTimeout``.
    """

    def __init__(self, base_url: str, *, timeout: float = 10.0, ca_cert: str = "") -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        verify: bool | str = ca_cert if ca_cert else True
        self._client = httpx.Client(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout, connect=_TIMEOUT.connect),
            verify=verify,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "MetricsClient":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    # ── Raw helpers ───────────────────────────────────────────────────────

    def _get(
        self,
        path: str,
        params: dict[str, str],
        tenant: str = "",
        *,
        cancel: threading.Event | None = None,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """Execute a GET request and return the parsed JSON body.

        Raises ``QueryCancelled`` if *cancel* is already set (nothing is
        sent), ``QueryTimeout`` on deadline, ``MetricsQueryError`` otherwise.
        *timeout* overrides the client's read timeout for this call only.
        """
        if cancel is not None and cancel.is_set():
            raise QueryCancelled(f"GET {path} cancelled")
        deadline = self.timeout if timeout is None else timeout
        headers = {TENANT_HEADER: tenant} if tenant else None
        try:
            resp = self._client.get(
                path,
                params=params,
                headers=headers,
                timeout=httpx.Timeout(deadline, connect=_TIMEOUT.connect),
            )
            resp.raise_for_status()
            body = resp.json()
        except httpx.TimeoutException as exc:
            raise QueryTimeout(f"GET {path}", deadline) from exc
        except httpx.HTTPStatusError as exc:
            detail = exc.response.text[:500] if exc.response is not None else str(exc)
            raise MetricsQueryError(f"{path}: HTTP {exc.response.status_code}: {detail}") from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise MetricsQueryError(f"{path}: {exc}") from exc

        if body.get("status") != "success":
            raise MetricsQueryError(f"{path}: {body.get('errorType', 'error')}: {body.get('error', '')}")
        return body

    # ── Queries ───────────────────────────────────────────────────────────

    def query_range(
        self,
        promql: str,
        time_range: TimeRange,
        tenant: str = "",
        *,
        cancel: threading.Event | None = None,
        timeout: float | None = None,
    ) -> list[TimeSeries]:
        """Execute a range query and return one ``TimeSeries`` per result."""
        body = self._get(
            "/api/v1/query_range",
            params={
                "query": promql,
                "start": f"{time_range.start.timestamp():.3f}",
                "end": f"{time_range.end.timestamp():.3f}",
                "step": time_range.step,
            },
            tenant=tenant,
            cancel=cancel,
            timeout=timeout,
        )
        return parse_matrix(body, name=promql)

    def query(
        self,
        tenant: str,
        metric_name: str,
        time_range: TimeRange,
        *,
        cancel: threading.Event | None = None,
        timeout: float | None = None,
    ) -> list[TimeSeries]:
        """Fetch a named usage metric (see ``METRIC_QUERIES``) for *tenant*."""
        try:
            template = METRIC_QUERIES[metric_name]
        except KeyError:
            raise ValueError(
                f"Unknown metric '{metric_name}'. Known: {', '.join(sorted(METRIC_QUERIES))}"
            ) from None
        series = self.query_range(
            template.format(tenant=tenant), time_range, tenant=tenant, cancel=cancel, timeout=timeout
        )
        for s in series:
            s.name = metric_name
        logger.debug("%s for %s: %d series", metric_name, tenant, len(series))
        return series

    def is_reachable(self) -> bool:
        """Check if the API answers a trivial query."""
        try:
            self._get("/api/v1/query", params={"query": "1"})
            return True
        except (MetricsQueryError, QueryTimeout):
            return False


def parse_matrix(body: dict[str, Any], name: str = "") -> list[TimeSeries]:
    """Convert a ``resultType: matrix`` response into ``TimeSeries`` objects."""
    data = body.get("data", {})
    result: list[TimeSeries] = []
    for entry in data.get("result", []):
        points: list[MetricPoint] = []
        for ts, raw in entry.get("values", []):
            try:
                value = float(raw)
            except (TypeError, ValueError):
                continue
            if math.isnan(value):
                continue
            points.append(
                MetricPoint(timestamp=datetime.fromtimestamp(float(ts), tz=timezone.utc), value=value)
            )
        result.append(TimeSeries(name=name, labels=entry.get("metric", {}), points=points))
    return result
