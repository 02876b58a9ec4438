"""Tests for mimir_insights.discovery module."""

from __future__ import annotations

import threading

import pytest

from mimir_insights.config import Settings
from mimir_insights.discovery import (
    DiscoveryEngine,
    SourceResult,
    SourceStatus,
    classify_config,
    collect,
    combine,
    config_checksum,
    consolidate_tenants,
    extract_org_ids,
    extract_version,
    merge_sources,
    parse_config_source,
)
from mimir_insights.errors import ClusterError, DiscoveryCancelled, TotalDiscoveryFailure
from mimir_insights.models import (
    ComponentType,
    ConfigKind,
    ResourceKind,
    TenantCandidate,
    TenantSource,
)

from conftest import FakeLister, configmap, deployment, namespace, service


# ═══════════════════════════════════════════════════════════════════════════
# Pure helpers
# ═══════════════════════════════════════════════════════════════════════════


class TestExtractVersion:
    @pytest.mark.parametrize(
        "image,expected",
        [
            ("grafana/mimir:2.10.3", "2.10.3"),
            ("grafana/mimir", "latest"),
            ("registry.local:5000/grafana/mimir", "latest"),
            ("registry.local:5000/grafana/mimir:r260", "r260"),
            ("grafana/mimir:2.9.0@sha256:abcdef", "2.9.0"),
            ("grafana/mimir:", "latest"),
        ],
    )
    def test_versions(self, image, expected):
        assert extract_version(image) == expected


class TestConfigHelpers:
    @pytest.mark.parametrize(
        "name,kind",
        [
            ("runtime-overrides", ConfigKind.OVERRIDE),
            ("tenant-acme-limits", ConfigKind.TENANT),
            ("mimir-config", ConfigKind.GLOBAL),
        ],
    )
    def test_classify(self, name, kind):
        assert classify_config(name) == kind

    def test_checksum_stable_across_key_order(self):
        a = {"a.yaml": "x: 1", "b.yaml": "y: 2"}
        b = {"b.yaml": "y: 2", "a.yaml": "x: 1"}
        assert config_checksum(a) == config_checksum(b)

    def test_checksum_changes_with_content(self):
        assert config_checksum({"a": "1"}) != config_checksum({"a": "2"})

    def test_checksum_not_fooled_by_boundary_shift(self):
        assert config_checksum({"ab": "c"}) != config_checksum({"a": "bc"})

    def test_parse_overrides_and_limits(self):
        data = {
            "overrides.yaml": (
                "overrides:\n"
                "  team-x:\n"
                "    ingestion_rate: 50000\n"
                "    max_global_series_per_user: 150000\n"
                "limits:\n"
                "  ingestion_rate: 10000\n"
            )
        }
        src = parse_config_source("runtime-overrides", "mimir", data)
        assert src.kind == ConfigKind.OVERRIDE
        assert src.tenant_overrides["team-x"]["ingestion_rate"] == 50000
        assert src.limits == {"ingestion_rate": 10000}
        assert src.keys == ("overrides.yaml",)
        assert src.checksum == config_checksum(data)

    def test_parse_component_section_limits(self):
        data = {"mimir.yaml": "ingester:\n  max_series: 5\n  ring:\n    replication_factor: 3\n"}
        src = parse_config_source("mimir-config", "mimir", data)
        assert src.limits == {"ingester.max_series": 5}

    def test_parse_tenant_config_by_name(self):
        src = parse_config_source("tenant-acme-limits", "mimir", {"limits.yaml": "ingestion_rate: 100\n"})
        assert src.kind == ConfigKind.TENANT
        assert src.tenant_overrides == {"acme": {"ingestion_rate": 100}}

    def test_parse_ignores_invalid_yaml(self):
        src = parse_config_source("mimir-config", "mimir", {"bad.yaml": "key: [unclosed", "ok.yaml": "plain text"})
        assert src.limits == {}
        assert src.tenant_overrides == {}


class TestExtractOrgIds:
    def test_header_forms(self):
        text = '''
        headers = { "X-Scope-OrgID" = "team-a" }
        x-scope-orgid: team-b
        '''
        assert extract_org_ids(text) == ["team-a", "team-b"]

    def test_federated_header_split(self):
        assert extract_org_ids("X-Scope-OrgID: a|b") == ["a", "b"]

    def test_tenant_id_key(self):
        assert extract_org_ids("tenant_id: acme\n") == ["acme"]

    def test_no_duplicates(self):
        assert extract_org_ids("X-Scope-OrgID: a\nX-Scope-OrgID: a\ntenant: a") == ["a"]


# ═══════════════════════════════════════════════════════════════════════════
# Tagged results
# ═══════════════════════════════════════════════════════════════════════════


class TestMergeSources:
    def _fail(self):
        raise ClusterError("list Service", "forbidden")

    def test_collect_tags_failure(self):
        r = collect("svc", self._fail)
        assert r.status == SourceStatus.FAILED
        assert not r.ok
        assert isinstance(r.errors[0], ClusterError)

    def test_partial_failure_keeps_successes(self):
        merged = merge_sources("op", [collect("a", lambda: [1, 2]), collect("b", self._fail)])
        assert merged.get("a") == [1, 2]
        assert merged.get("b") == []
        assert merged.partial

    def test_total_failure_raises(self):
        with pytest.raises(TotalDiscoveryFailure) as exc_info:
            merge_sources("op", [collect("a", self._fail), collect("b", self._fail)])
        assert len(exc_info.value.failures) == 2

    def test_empty_success_is_not_failure(self):
        merged = merge_sources("op", [SourceResult("a", SourceStatus.OK)])
        assert merged.get("a") == []
        assert not merged.partial

    def test_combine_some_failed_is_partial(self):
        r = combine("svc", [collect("svc@a", lambda: [1]), collect("svc@b", self._fail)])
        assert r.status == SourceStatus.PARTIAL
        assert r.ok
        assert r.items == [1]
        assert len(r.errors) == 1

    def test_combine_all_failed_or_none_failed(self):
        assert combine("svc", [collect("x", self._fail)]).status == SourceStatus.FAILED
        assert combine("svc", [collect("x", lambda: [])]).status == SourceStatus.OK

    def test_partial_source_items_survive_merge(self):
        partial = combine("svc", [collect("a", lambda: [1]), collect("b", self._fail)])
        merged = merge_sources("op", [partial])
        assert merged.get("svc") == [1]
        assert merged.partial


class TestConsolidateTenants:
    def test_first_source_wins_and_evidence_accumulates(self):
        merged = consolidate_tenants(
            [
                TenantCandidate(name="x", source=TenantSource.LABEL, namespace="x", evidence=["label"]),
                TenantCandidate(name="x", source=TenantSource.CONFIG, evidence=["config", "label"]),
                TenantCandidate(name="a", source=TenantSource.NAME, namespace="a-prod", evidence=["name"]),
            ]
        )
        assert [t.name for t in merged] == ["a", "x"]
        assert merged[1].source == TenantSource.LABEL
        assert merged[1].evidence == ("label", "config")


# ═══════════════════════════════════════════════════════════════════════════
# Components
# ═══════════════════════════════════════════════════════════════════════════


class TestDiscoverComponents:
    def test_mimir_cluster(self, mimir_cluster, settings):
        components = DiscoveryEngine(mimir_cluster, settings).discover_components()
        names = [c.name for c in components]
        assert names == ["mimir-distributor", "mimir-querier"]

        dist = components[0]
        assert dist.component_type == ComponentType.INGRESS_ROUTER
        assert dist.replicas == 3
        assert dist.version == "2.10.3"
        assert dist.confidence == 1.0
        assert "service-correlation" in dist.validation.matched_by
        assert "metrics-endpoint" in dist.validation.matched_by
        assert {e.name for e in dist.endpoints} == {"http-metrics", "grpc"}

        querier = components[1]
        assert querier.component_type == ComponentType.STORAGE_QUERY
        assert querier.confidence == 0.9
        assert querier.version == "2.11.0"

    def test_own_deployment_and_system_namespaces_excluded(self, mimir_cluster, settings):
        names = {c.name for c in DiscoveryEngine(mimir_cluster, settings).discover_components()}
        assert "mimir-insights" not in names
        assert "coredns" not in names

    def test_ranked_by_descending_confidence(self, mimir_cluster, settings):
        components = DiscoveryEngine(mimir_cluster, settings).discover_components()
        scores = [c.confidence for c in components]
        assert scores == sorted(scores, reverse=True)

    def test_confidence_floor(self):
        lister = FakeLister(resources=[deployment("team-alertmanager-proxy", "apps", image="")])
        low = Settings(min_confidence=0.30)
        high = Settings(min_confidence=0.50)
        assert len(DiscoveryEngine(lister, low).discover_components()) == 1
        assert DiscoveryEngine(lister, high).discover_components() == []

    def test_configmap_reference_adds_confidence(self):
        base = [deployment("ingester", "obs", {"app": "ingester"}, image="")]
        without = DiscoveryEngine(FakeLister(resources=list(base))).discover_components()
        with_cm = DiscoveryEngine(
            FakeLister(resources=base + [configmap("ingester-config", "obs")])
        ).discover_components()
        assert with_cm[0].confidence == round(without[0].confidence + 0.10, 2)
        assert with_cm[0].config_sources == ("ingester-config",)

    def test_namespace_restriction(self, mimir_cluster, settings):
        assert DiscoveryEngine(mimir_cluster, settings).discover_components(namespaces=["team-a"]) == []

    def test_partial_failure_still_returns_workloads(self, mimir_cluster, settings):
        mimir_cluster.failing = {ResourceKind.SERVICE}
        components = DiscoveryEngine(mimir_cluster, settings).discover_components()
        dist = next(c for c in components if c.name == "mimir-distributor")
        assert "service-correlation" not in dist.validation.matched_by
        assert dist.endpoints == ()

    def test_one_unreadable_namespace_is_skipped(self, mimir_cluster, settings):
        mimir_cluster.failing_namespaces = {"forbidden-ns"}
        components = DiscoveryEngine(mimir_cluster, settings).discover_components(
            namespaces=["mimir", "forbidden-ns"]
        )
        assert [c.name for c in components] == ["mimir-distributor", "mimir-querier"]

    def test_total_failure_raises(self, settings):
        lister = FakeLister(failing=set(ResourceKind))
        with pytest.raises(TotalDiscoveryFailure):
            DiscoveryEngine(lister, settings).discover_components()

    def test_cancellation(self, mimir_cluster, settings):
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(DiscoveryCancelled):
            DiscoveryEngine(mimir_cluster, settings).discover_components(cancel=cancel)
        assert mimir_cluster.calls == 0

    def test_payments_prod_scenario(self):
        lister = FakeLister(
            resources=[
                namespace("payments-prod"),
                namespace("scratch"),
                deployment(
                    "payments-prod-ingester",
                    "payments-prod",
                    {"app.kubernetes.io/name": "ingester-workload"},
                ),
            ]
        )
        engine = DiscoveryEngine(lister, Settings(default_namespace="mimir"))

        scores = engine.score_namespaces()
        assert scores["payments-prod"] > scores["scratch"]
        assert engine.discover_namespace() == "payments-prod"

        components = engine.discover_components()
        assert len(components) == 1
        c = components[0]
        assert c.category == "ingester"
        assert c.component_type == ComponentType.WRITE_PATH
        assert c.confidence == 0.8
        assert c.validation.matched_by == ("name-pattern", "label-selector")


# ═══════════════════════════════════════════════════════════════════════════
# Namespace root & config sources
# ═══════════════════════════════════════════════════════════════════════════


class TestNamespaceRoot:
    def test_mimir_wins(self, mimir_cluster, settings):
        engine = DiscoveryEngine(mimir_cluster, settings)
        assert engine.discover_namespace() == "mimir"
        assert "kube-system" not in engine.score_namespaces()

    def test_all_zero_falls_back_to_default(self):
        lister = FakeLister(resources=[namespace("apps"), namespace("web")])
        assert DiscoveryEngine(lister, Settings(default_namespace="metrics")).discover_namespace() == "metrics"

    def test_ties_broken_alphabetically(self):
        lister = FakeLister(
            resources=[
                namespace("zeta"),
                namespace("alpha"),
                deployment("compactor", "zeta", image=""),
                deployment("compactor", "alpha", image=""),
            ]
        )
        assert DiscoveryEngine(lister).discover_namespace() == "alpha"


class TestConfigSources:
    def test_known_names_are_fetched_and_parsed(self, mimir_cluster, settings):
        sources = DiscoveryEngine(mimir_cluster, settings).discover_config_sources("mimir")
        assert [s.name for s in sources] == ["mimir-config", "runtime-overrides"]
        overrides = sources[1]
        assert overrides.kind == ConfigKind.OVERRIDE
        assert overrides.tenant_overrides == {"team-a": {"ingestion_rate": 50000}}
        assert sources[0].limits == {"distributor.ingestion_rate_limit": 10000}

    def test_pattern_matched_listing(self):
        lister = FakeLister(resources=[configmap("team-limits-config", "obs", {"l.yaml": "limits:\n  a: 1\n"})])
        sources = DiscoveryEngine(lister).discover_config_sources("obs")
        assert [s.name for s in sources] == ["team-limits-config"]

    def test_unreadable_configmaps_raise(self, settings):
        lister = FakeLister(failing={ResourceKind.CONFIGMAP})
        with pytest.raises(TotalDiscoveryFailure):
            DiscoveryEngine(lister, settings).discover_config_sources("mimir")


# ═══════════════════════════════════════════════════════════════════════════
# Tenants
# ═══════════════════════════════════════════════════════════════════════════


class TestDiscoverTenants:
    def test_mimir_cluster(self, mimir_cluster, settings):
        tenants = DiscoveryEngine(mimir_cluster, settings).discover_tenants()
        by_name = {t.name: t for t in tenants}
        assert [t.name for t in tenants] == ["billing", "team-a", "team-b"]

        assert by_name["team-a"].source == TenantSource.LABEL
        assert by_name["team-a"].has_real_data is True
        assert len(by_name["team-a"].evidence) == 2

        assert by_name["team-b"].source == TenantSource.HEADER
        assert by_name["team-b"].has_real_data is False

        assert by_name["billing"].source == TenantSource.NAME
        assert by_name["billing"].namespace == "billing-prod"

    def test_backend_namespace_is_not_a_tenant(self):
        lister = FakeLister(resources=[namespace("mimir-prod"), namespace("shop-prod")])
        assert [t.name for t in DiscoveryEngine(lister).discover_tenants()] == ["shop"]

    def test_team_x_scenario(self):
        lister = FakeLister(
            resources=[
                namespace("team-x", tenant="team-x"),
                configmap(
                    "runtime-overrides",
                    "mimir",
                    {"overrides.yaml": "overrides:\n  team-x:\n    ingestion_rate: 25000\n"},
                ),
            ]
        )
        tenants = DiscoveryEngine(lister).discover_tenants()
        assert len(tenants) == 1
        assert tenants[0].name == "team-x"
        assert len(tenants[0].evidence) == 2

    def test_usage_failure_is_partial(self, mimir_cluster, settings):
        def broken(ns):
            raise ClusterError(f"top pods in {ns}", "metrics-server unavailable")

        mimir_cluster.pod_usage = broken
        tenants = DiscoveryEngine(mimir_cluster, settings).discover_tenants()
        assert all(not t.has_real_data for t in tenants)


# ═══════════════════════════════════════════════════════════════════════════
# Full cycle
# ═══════════════════════════════════════════════════════════════════════════


class TestTopology:
    def test_component_topology(self, mimir_cluster, settings):
        topo = DiscoveryEngine(mimir_cluster, settings).component_topology()
        assert topo.namespace_root == "mimir"
        assert len(topo.components) == 2
        assert len(topo.config_sources) == 2

    def test_discover_all(self, mimir_cluster, settings):
        result = DiscoveryEngine(mimir_cluster, settings).discover_all()
        assert result.summary() == {"components": 2, "tenants": 3, "config_sources": 2}
        assert result.last_updated is not None

    def test_service_only_cluster(self):
        lister = FakeLister(resources=[namespace("obs"), service("mimir-gateway", "obs")])
        topo = DiscoveryEngine(lister).component_topology()
        assert topo.namespace_root == "obs"
        assert topo.components == ()
