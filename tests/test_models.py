"""Tests for mimir_insights.models and config."""

from __future__ import annotations

import pydantic
import pytest

from mimir_insights.config import Settings
from mimir_insights.errors import (
    AdmissionRejected,
    ClusterError,
    PartialSourceFailure,
    QueryTimeout,
    TotalDiscoveryFailure,
)
from mimir_insights.models import (
    ComponentType,
    DiscoveredComponent,
    PodUsage,
    ResourceKind,
    ResourceMetadata,
    ValidationResult,
)


class TestResourceMetadata:
    def test_statefulset_defaults_to_one_replica(self):
        item = {"metadata": {"name": "ingester", "namespace": "mimir"}, "spec": {}}
        res = ResourceMetadata.from_item(ResourceKind.STATEFULSET, item)
        assert res.replicas == 1
        assert res.qualified_name == "mimir/StatefulSet/ingester"

    def test_daemonset_replicas_from_status(self):
        item = {"metadata": {"name": "agent"}, "status": {"desiredNumberScheduled": 5}}
        assert ResourceMetadata.from_item(ResourceKind.DAEMONSET, item).replicas == 5

    def test_service_ports(self):
        item = {"metadata": {"name": "svc"}, "spec": {"ports": [{"name": "http-metrics", "port": 8080}]}}
        res = ResourceMetadata.from_item(ResourceKind.SERVICE, item)
        assert res.service_ports[0].port == 8080

    def test_configmap_values_are_strings(self):
        item = {"metadata": {"name": "cm"}, "data": {"a": 1}}
        assert ResourceMetadata.from_item(ResourceKind.CONFIGMAP, item).data == {"a": "1"}

    def test_null_labels(self):
        item = {"metadata": {"name": "ns", "labels": None}}
        assert ResourceMetadata.from_item(ResourceKind.NAMESPACE, item).labels == {}


class TestDiscoveredComponent:
    def test_frozen(self):
        c = DiscoveredComponent(
            name="mimir-ingester",
            component_type=ComponentType.WRITE_PATH,
            category="ingester",
            namespace="mimir",
            validation=ValidationResult(confidence=0.8),
        )
        assert c.confidence == 0.8
        with pytest.raises(pydantic.ValidationError):
            c.name = "other"


class TestPodUsage:
    @pytest.mark.parametrize("cpu,mem,active", [(0, 0, False), (1, 0, True), (0, 1, True)])
    def test_active(self, cpu, mem, active):
        assert PodUsage(name="p", cpu_millicores=cpu, memory_bytes=mem).active is active


class TestErrors:
    def test_hierarchy(self):
        assert issubclass(ClusterError, PartialSourceFailure)
        assert issubclass(QueryTimeout, PartialSourceFailure)

    def test_messages(self):
        assert str(QueryTimeout("list Service", 30)) == "list Service: timed out after 30s"
        assert "no sources succeeded" in str(TotalDiscoveryFailure("op"))
        exc = AdmissionRejected("tenant", 10, "full")
        assert "tenant" in str(exc) and exc.reason == "full"


class TestSettings:
    def test_env_defaults(self, monkeypatch):
        monkeypatch.setenv("MIMIR_INSIGHTS_METRICS_URL", "http://mimir:8080/prometheus")
        monkeypatch.setenv("MIMIR_NAMESPACE", "metrics")
        s = Settings()
        assert s.metrics_url == "http://mimir:8080/prometheus"
        assert s.default_namespace == "metrics"
        s.validate_metrics_url()

    def test_missing_metrics_url(self, monkeypatch):
        monkeypatch.delenv("MIMIR_INSIGHTS_METRICS_URL", raising=False)
        with pytest.raises(ValueError):
            Settings().validate_metrics_url()

    @pytest.mark.parametrize(
        "name,expected",
        [("kube-system", True), ("default", True), ("mimir-insights-dev", True), ("mimir", False)],
    )
    def test_system_namespaces(self, name, expected):
        assert Settings().is_system_namespace(name) is expected

    def test_ttls(self):
        s = Settings()
        assert (s.component_ttl, s.tenant_ttl, s.collection_interval) == (600, 300, 30)
