"""Shared test fixtures."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

import pytest

from mimir_insights.config import Settings
from mimir_insights.errors import ClusterError, QueryCancelled
from mimir_insights.models import (
    ContainerPort,
    MetricPoint,
    PodUsage,
    ResourceKind,
    ResourceMetadata,
    TimeRange,
    TimeSeries,
)


def namespace(name: str, **labels: str) -> ResourceMetadata:
    return ResourceMetadata(kind=ResourceKind.NAMESPACE, name=name, labels=labels)


def deployment(
    name: str,
    ns: str,
    labels: dict[str, str] | None = None,
    image: str = "grafana/mimir:2.10.3",
    ports: tuple[str, ...] = (),
    replicas: int = 1,
) -> ResourceMetadata:
    return ResourceMetadata(
        kind=ResourceKind.DEPLOYMENT,
        name=name,
        namespace=ns,
        labels=labels or {},
        replicas=replicas,
        images=[image] if image else [],
        container_ports=[ContainerPort(name=p, port=8080 + i) for i, p in enumerate(ports)],
    )


def service(name: str, ns: str, ports: tuple[str, ...] = ("http",)) -> ResourceMetadata:
    return ResourceMetadata(
        kind=ResourceKind.SERVICE,
        name=name,
        namespace=ns,
        service_ports=[ContainerPort(name=p, port=8080 + i) for i, p in enumerate(ports)],
    )


def configmap(name: str, ns: str, data: dict[str, str] | None = None) -> ResourceMetadata:
    return ResourceMetadata(kind=ResourceKind.CONFIGMAP, name=name, namespace=ns, data=data or {})


@dataclass
class FakeLister:
    """In-memory stand-in for ``ClusterClient``.

    ``failing`` holds kinds whose listing raises ``ClusterError``;
    ``failing_namespaces`` does the same for namespace-scoped listings.
    """

    resources: list[ResourceMetadata] = field(default_factory=list)
    usage: dict[str, list[PodUsage]] = field(default_factory=dict)
    failing: set[ResourceKind] = field(default_factory=set)
    failing_namespaces: set[str] = field(default_factory=set)
    calls: int = 0

    def list_resources(
        self, kind: ResourceKind, namespace: str = "", label_selector: str = ""
    ) -> list[ResourceMetadata]:
        self.calls += 1
        if kind in self.failing:
            raise ClusterError(f"list {kind.value}", "forbidden")
        if namespace in self.failing_namespaces:
            raise ClusterError(f"list {kind.value} in {namespace}", "forbidden")
        return [
            r for r in self.resources
            if r.kind == kind and (not namespace or r.namespace == namespace)
        ]

    def get_config_resource(self, name: str, namespace: str) -> dict[str, str]:
        self.calls += 1
        if ResourceKind.CONFIGMAP in self.failing:
            raise ClusterError(f"get ConfigMap {namespace}/{name}", "forbidden")
        for r in self.resources:
            if r.kind == ResourceKind.CONFIGMAP and r.name == name and r.namespace == namespace:
                return dict(r.data)
        return {}

    def pod_usage(self, namespace: str) -> list[PodUsage]:
        return list(self.usage.get(namespace, []))


@dataclass
class FakeMetrics:
    """Metrics source returning canned series per metric name."""

    values: dict[str, list[float]] = field(default_factory=dict)
    errors: dict[str, Exception] = field(default_factory=dict)
    queried: list[str] = field(default_factory=list)

    def query(
        self,
        tenant: str,
        metric_name: str,
        time_range: TimeRange,
        *,
        cancel: threading.Event | None = None,
        timeout: float | None = None,
    ) -> list[TimeSeries]:
        self.queried.append(metric_name)
        if cancel is not None and cancel.is_set():
            raise QueryCancelled(f"{metric_name} cancelled")
        if metric_name in self.errors:
            raise self.errors[metric_name]
        values = self.values.get(metric_name)
        if values is None:
            return []
        return [make_series(metric_name, values, time_range.start)]


def make_series(name: str, values: list[float], start: datetime | None = None) -> TimeSeries:
    start = start or datetime(2024, 1, 1, tzinfo=timezone.utc)
    return TimeSeries(
        name=name,
        points=[MetricPoint(timestamp=start + timedelta(hours=i), value=v) for i, v in enumerate(values)],
    )


@pytest.fixture()
def settings() -> Settings:
    return Settings(kubeconfig="", metrics_url="", default_namespace="mimir", max_memory_bytes=10_000_000)


@pytest.fixture()
def mimir_cluster() -> FakeLister:
    """A small but realistic Mimir install plus two tenant namespaces."""
    return FakeLister(
        resources=[
            namespace("mimir", **{"app.kubernetes.io/part-of": "mimir"}),
            namespace("team-a", tenant="team-a"),
            namespace("billing-prod"),
            namespace("kube-system"),
            deployment(
                "mimir-distributor",
                "mimir",
                {"app.kubernetes.io/component": "distributor"},
                ports=("http-metrics",),
                replicas=3,
            ),
            deployment(
                "mimir-querier",
                "mimir",
                {"app.kubernetes.io/component": "querier"},
                image="grafana/mimir:2.11.0",
            ),
            deployment("mimir-insights", "mimir", {"app.kubernetes.io/component": "querier"}),
            deployment("coredns", "kube-system", {"app": "coredns"}),
            service("mimir-distributor", "mimir", ports=("http-metrics", "grpc")),
            configmap("mimir-config", "mimir", {"mimir.yaml": "distributor:\n  ingestion_rate_limit: 10000\n"}),
            configmap(
                "runtime-overrides",
                "mimir",
                {"overrides.yaml": "overrides:\n  team-a:\n    ingestion_rate: 50000\n"},
            ),
            configmap(
                "alloy-config",
                "monitoring",
                {"config.alloy": 'headers = { "X-Scope-OrgID" = "team-b" }'},
            ),
        ],
        usage={
            "team-a": [PodUsage(name="web-1", namespace="team-a", cpu_millicores=15, memory_bytes=1024)],
        },
    )
