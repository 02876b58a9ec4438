"""Tests for mimir_insights.drift module."""

from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone

import pytest

from mimir_insights.drift import (
    BaselineStore,
    DriftDetector,
    data_key_impact,
    diff_configmap,
    overall_risk,
    resource_checksum,
)
from mimir_insights.errors import DiscoveryCancelled
from mimir_insights.models import (
    ConfigBaseline,
    ConfigChange,
    DriftStatus,
    ImpactLevel,
    ResourceKind,
    ResourceMetadata,
)

from conftest import FakeLister, configmap

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def _cm(name: str, ns: str = "mimir", data=None, labels=None, annotations=None) -> ResourceMetadata:
    return ResourceMetadata(
        kind=ResourceKind.CONFIGMAP,
        name=name,
        namespace=ns,
        data=data or {},
        labels=labels or {},
        annotations=annotations or {},
    )


@pytest.fixture()
def cluster() -> FakeLister:
    return FakeLister(
        resources=[
            _cm("runtime-overrides", data={"overrides.yaml": "overrides: {}"}),
            _cm("mimir-config", data={"mimir.yaml": "target: all"}, labels={"app": "mimir"}),
            _cm("kube-root-ca.crt", data={"ca.crt": "..."}),
            _cm("coredns", "kube-system", data={"Corefile": "."}),
        ]
    )


# ═══════════════════════════════════════════════════════════════════════════
# Pure helpers
# ═══════════════════════════════════════════════════════════════════════════


class TestChecksum:
    def test_key_order_does_not_matter(self):
        assert resource_checksum({"a": "1", "b": "2"}, {}, {}) == resource_checksum({"b": "2", "a": "1"}, {}, {})

    def test_labels_and_annotations_count(self):
        base = resource_checksum({"a": "1"}, {}, {})
        assert resource_checksum({"a": "1"}, {"x": "y"}, {}) != base
        assert resource_checksum({"a": "1"}, {}, {"x": "y"}) != base

    def test_label_is_not_confused_with_data_key(self):
        assert resource_checksum({"x": "y"}, {}, {}) != resource_checksum({}, {"x": "y"}, {})


class TestImpact:
    @pytest.mark.parametrize(
        "key,expected",
        [
            ("overrides.yaml", ImpactLevel.CRITICAL),
            ("runtime-config.yaml", ImpactLevel.CRITICAL),
            ("nginx.conf", ImpactLevel.HIGH),
            ("max_series.txt", ImpactLevel.HIGH),
            ("query-timeout", ImpactLevel.HIGH),
            ("README", ImpactLevel.MEDIUM),
        ],
    )
    def test_data_key_impact(self, key, expected):
        assert data_key_impact(key) == expected

    def test_overall_risk_is_highest_impact(self):
        changes = [
            ConfigChange(change_type="modified", key="labels.a", impact=ImpactLevel.LOW),
            ConfigChange(change_type="modified", key="data.b", impact=ImpactLevel.HIGH),
            ConfigChange(change_type="added", key="data.c", impact=ImpactLevel.MEDIUM),
        ]
        assert overall_risk(changes) == ImpactLevel.HIGH
        assert overall_risk([]) == ImpactLevel.LOW


class TestDiff:
    def test_added_modified_deleted(self):
        baseline = ConfigBaseline(
            namespace="mimir",
            name="cfg",
            checksum="x",
            data={"keep": "1", "change": "old", "drop": "gone"},
            labels={"team": "a"},
            created_at=NOW,
            last_modified=NOW,
        )
        current = _cm("cfg", data={"keep": "1", "change": "new", "extra": "+"}, labels={"team": "b"})
        changes = {c.key: c for c in diff_configmap(baseline, current)}
        assert set(changes) == {"data.change", "data.drop", "data.extra", "labels.team"}
        assert changes["data.change"].change_type == "modified"
        assert changes["data.change"].old_value == "old"
        assert changes["data.drop"].change_type == "deleted"
        assert changes["data.extra"].change_type == "added"
        assert changes["labels.team"].impact == ImpactLevel.LOW


# ═══════════════════════════════════════════════════════════════════════════
# Baseline store
# ═══════════════════════════════════════════════════════════════════════════


class TestBaselineStore:
    def _baseline(self, name: str, ns: str = "mimir", modified: datetime = NOW) -> ConfigBaseline:
        return ConfigBaseline(namespace=ns, name=name, checksum="c", created_at=modified, last_modified=modified)

    def test_save_and_load(self, tmp_path):
        store = BaselineStore()
        store.put(self._baseline("a"))
        path = store.save(tmp_path / "nested" / "baselines.json")
        loaded = BaselineStore.load(path)
        assert loaded.get("configmap/mimir/a").checksum == "c"

    def test_missing_file_is_empty(self, tmp_path):
        assert len(BaselineStore.load(tmp_path / "none.json")) == 0

    def test_for_namespace(self):
        store = BaselineStore()
        store.put(self._baseline("a"))
        store.put(self._baseline("b", ns="other"))
        assert [b.name for b in store.for_namespace("other")] == ["b"]
        assert len(store.for_namespace("")) == 2

    def test_cleanup(self):
        store = BaselineStore()
        store.put(self._baseline("old", modified=NOW - timedelta(days=40)))
        store.put(self._baseline("new"))
        assert store.cleanup(timedelta(days=30), now=NOW) == 1
        assert store.get("configmap/mimir/old") is None
        assert store.get("configmap/mimir/new") is not None


# ═══════════════════════════════════════════════════════════════════════════
# Detector
# ═══════════════════════════════════════════════════════════════════════════


class TestDetectDrift:
    def test_first_run_everything_is_new(self, cluster):
        report = DriftDetector(cluster).detect_drift(["mimir"], now=NOW)
        assert {e.name for e in report.entries} == {"runtime-overrides", "mimir-config"}
        assert all(e.status == DriftStatus.NEW for e in report.entries)
        assert all(e.risk == ImpactLevel.MEDIUM for e in report.entries)
        assert report.risk_counts()["medium"] == 2

    def test_unchanged_is_no_drift(self, cluster):
        detector = DriftDetector(cluster)
        detector.create_baseline(["mimir"], now=NOW)
        report = detector.detect_drift(["mimir"], now=NOW)
        assert report.count(DriftStatus.NO_DRIFT) == 2
        assert report.risk_counts()["low"] == 2

    def test_drift_is_reported_once(self, cluster):
        detector = DriftDetector(cluster)
        detector.create_baseline(["mimir"], now=NOW)
        cluster.resources[0].data["overrides.yaml"] = "overrides:\n  team-a: {ingestion_rate: 1}\n"

        report = detector.detect_drift(["mimir"], now=NOW)
        entry = next(e for e in report.entries if e.name == "runtime-overrides")
        assert entry.status == DriftStatus.DRIFTED
        assert entry.risk == ImpactLevel.CRITICAL
        assert [c.key for c in entry.changes] == ["data.overrides.yaml"]
        assert entry.baseline_checksum != entry.current_checksum

        again = detector.detect_drift(["mimir"], now=NOW)
        assert again.count(DriftStatus.DRIFTED) == 0

    def test_label_only_change_is_low_risk(self, cluster):
        detector = DriftDetector(cluster)
        detector.create_baseline(["mimir"], now=NOW)
        cluster.resources[1].labels["app"] = "mimir-v2"
        entry = next(e for e in detector.detect_drift(["mimir"]).entries if e.name == "mimir-config")
        assert entry.status == DriftStatus.DRIFTED
        assert entry.risk == ImpactLevel.LOW

    def test_deleted_configmap(self, cluster):
        detector = DriftDetector(cluster)
        detector.create_baseline(["mimir"], now=NOW)
        cluster.resources = [r for r in cluster.resources if r.name != "mimir-config"]

        report = detector.detect_drift(["mimir"], now=NOW)
        entry = next(e for e in report.entries if e.name == "mimir-config")
        assert entry.status == DriftStatus.DELETED
        assert entry.risk == ImpactLevel.HIGH
        assert entry.changes[0].key == "resource"
        assert entry.changes[0].new_value == "deleted"
        assert detector.store.get("configmap/mimir/mimir-config") is None

    def test_unmonitored_and_system_configmaps_ignored(self, cluster):
        report = DriftDetector(cluster).detect_drift(now=NOW)
        names = {e.name for e in report.entries}
        assert "kube-root-ca.crt" not in names
        assert "coredns" not in names

    def test_unreadable_namespace_skipped_and_baselines_kept(self, cluster):
        detector = DriftDetector(cluster)
        detector.create_baseline(["mimir"], now=NOW)
        cluster.failing_namespaces = {"mimir"}

        report = detector.detect_drift(["mimir"], now=NOW)
        assert report.entries == []
        assert report.unreadable_namespaces == ["mimir"]
        assert len(detector.store) == 2

    def test_cancellation(self, cluster):
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(DiscoveryCancelled):
            DriftDetector(cluster).detect_drift(["mimir"], cancel=cancel)
        assert cluster.calls == 0


class TestCreateBaseline:
    def test_counts_monitored_only(self, cluster):
        detector = DriftDetector(cluster)
        assert detector.create_baseline(now=NOW) == 2
        assert detector.store.get("configmap/mimir/runtime-overrides").data == {"overrides.yaml": "overrides: {}"}

    def test_config_in_fixture_cluster(self, mimir_cluster):
        detector = DriftDetector(mimir_cluster)
        detector.create_baseline(now=NOW)
        names = {b.name for b in detector.store.for_namespace("")}
        assert names == {"mimir-config", "runtime-overrides", "alloy-config"}

    def test_baseline_is_a_copy(self):
        cm = configmap("mimir-config", "mimir", {"a": "1"})
        detector = DriftDetector(FakeLister(resources=[cm]))
        detector.create_baseline(now=NOW)
        cm.data["a"] = "2"
        assert detector.store.get("configmap/mimir/mimir-config").data == {"a": "1"}
