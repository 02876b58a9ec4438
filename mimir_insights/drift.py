"""Configuration drift detection for backend ConfigMaps.

A baseline records each monitored ConfigMap's data, labels and annotations
together with a sha256 over all three.  Detection lists the live ConfigMaps,
compares checksums and, where they differ, reports every changed key with an
impact level.  The report's risk for a resource is the highest impact among
its changes.

Baselines live in memory and can be saved to and loaded from a JSON file so
that successive CLI runs compare against the same reference.
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path

from mimir_insights.cluster import ResourceLister
from mimir_insights.discovery import collect
from mimir_insights.errors import DiscoveryCancelled
from mimir_insights.models import (
    IMPACT_ORDER,
    ConfigBaseline,
    ConfigChange,
    DriftEntry,
    DriftReport,
    DriftStatus,
    ImpactLevel,
    ResourceKind,
    ResourceMetadata,
)

logger = logging.getLogger(__name__)

# ──────────────────────────── Constants ───────────────────────────────────────

MONITORED_NAME_HINTS = (
    "mimir",
    "cortex",
    "runtime",
    "overrides",
    "limits",
    "config",
    "alloy",
    "nginx",
    "prometheus",
)
SKIPPED_NAMESPACES = frozenset({"kube-system", "kube-public", "kube-node-lease"})

CRITICAL_KEYS = frozenset(
    {
        "runtime-config.yaml",
        "overrides.yaml",
        "limits.yaml",
        "distributor.yaml",
        "ingester.yaml",
        "querier.yaml",
    }
)
HIGH_KEYS = frozenset({"nginx.conf", "prometheus.yml", "alertmanager.yml", "config.yaml", "config.yml"})
LIMIT_KEY_HINTS = ("limit", "max_", "rate", "timeout", "threshold", "ingestion", "series", "memory", "cpu")


# ──────────────────────────── Pure helpers ────────────────────────────────────


def resource_checksum(
    data: dict[str, str], labels: dict[str, str], annotations: dict[str, str]
) -> str:
    """sha256 over data, labels and annotations, independent of key order."""
    digest = hashlib.sha256()
    for prefix, mapping in (("", data), ("label:", labels), ("annotation:", annotations)):
        for key in sorted(mapping):
            digest.update(f"{prefix}{key}".encode("utf-8"))
            digest.update(b"\0")
            digest.update(mapping[key].encode("utf-8"))
            digest.update(b"\0")
    return digest.hexdigest()


def data_key_impact(key: str) -> ImpactLevel:
    """How much a change to one ConfigMap data key matters."""
    if key in CRITICAL_KEYS:
        return ImpactLevel.CRITICAL
    if key in HIGH_KEYS:
        return ImpactLevel.HIGH
    lowered = key.lower()
    if any(hint in lowered for hint in LIMIT_KEY_HINTS):
        return ImpactLevel.HIGH
    return ImpactLevel.MEDIUM


def overall_risk(changes: list[ConfigChange]) -> ImpactLevel:
    if not changes:
        return ImpactLevel.LOW
    return max((c.impact for c in changes), key=IMPACT_ORDER.index)


def _map_changes(
    prefix: str,
    old: dict[str, str],
    new: dict[str, str],
    impact: ImpactLevel | None = None,
) -> list[ConfigChange]:
    changes: list[ConfigChange] = []
    for key in sorted(old.keys() | new.keys()):
        level = impact or data_key_impact(key)
        if key not in new:
            changes.append(ConfigChange(change_type="deleted", key=f"{prefix}.{key}", old_value=old[key], impact=level))
        elif key not in old:
            changes.append(ConfigChange(change_type="added", key=f"{prefix}.{key}", new_value=new[key], impact=level))
        elif old[key] != new[key]:
            changes.append(
                ConfigChange(
                    change_type="modified",
                    key=f"{prefix}.{key}",
                    old_value=old[key],
                    new_value=new[key],
                    impact=level,
                )
            )
    return changes


def diff_configmap(baseline: ConfigBaseline, current: ResourceMetadata) -> list[ConfigChange]:
    """Every data, label and annotation key that differs from *baseline*.

    Labels and annotations are metadata and always have low impact.
    """
    return (
        _map_changes("data", baseline.data, current.data)
        + _map_changes("labels", baseline.labels, current.labels, ImpactLevel.LOW)
        + _map_changes("annotations", baseline.annotations, current.annotations, ImpactLevel.LOW)
    )


# ──────────────────────────── Baseline store ──────────────────────────────────


class BaselineStore:
    """Thread-safe map of ``configmap/<ns>/<name>`` → ``ConfigBaseline``."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._baselines: dict[str, ConfigBaseline] = {}

    def get(self, key: str) -> ConfigBaseline | None:
        with self._lock:
            return self._baselines.get(key)

    def put(self, baseline: ConfigBaseline) -> None:
        with self._lock:
            self._baselines[baseline.key] = baseline

    def delete(self, key: str) -> None:
        with self._lock:
            self._baselines.pop(key, None)

    def for_namespace(self, namespace: str) -> list[ConfigBaseline]:
        """Baselines in *namespace*; every baseline when *namespace* is empty."""
        with self._lock:
            return [b for b in self._baselines.values() if not namespace or b.namespace == namespace]

    def cleanup(self, max_age: timedelta, now: datetime | None = None) -> int:
        """Drop baselines not modified within *max_age*; return how many."""
        cutoff = (now or datetime.now(timezone.utc)) - max_age
        with self._lock:
            stale = [k for k, b in self._baselines.items() if b.last_modified < cutoff]
            for key in stale:
                del self._baselines[key]
        return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._baselines)

    # ── Persistence ───────────────────────────────────────────────────────

    def save(self, path: Path) -> Path:
        with self._lock:
            payload = [b.model_dump(mode="json") for b in self._baselines.values()]
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        logger.info("Saved %d baselines to %s", len(payload), path)
        return path

    @classmethod
    def load(cls, path: Path) -> "BaselineStore":
        """Load a store written by ``save``; a missing file yields an empty store."""
        store = cls()
        if not path.exists():
            return store
        for raw in json.loads(path.read_text(encoding="utf-8")):
            store.put(ConfigBaseline.model_validate(raw))
        logger.info("Loaded %d baselines from %s", len(store), path)
        return store


# ──────────────────────────── Detector ────────────────────────────────────────


class DriftDetector:
    """Compares live ConfigMaps against stored baselines.

    Parameters
    ----------
    lister : ResourceLister
        Cluster access (normally a ``ClusterClient``).
    store : BaselineStore
        Where baselines are kept.  A fresh in-memory store if omitted.
    """

    def __init__(self, lister: ResourceLister, store: BaselineStore | None = None) -> None:
        self.lister = lister
        self.store = store if store is not None else BaselineStore()

    @staticmethod
    def is_monitored(cm: ResourceMetadata) -> bool:
        if cm.namespace in SKIPPED_NAMESPACES:
            return False
        lowered = cm.name.lower()
        return any(hint in lowered for hint in MONITORED_NAME_HINTS)

    def _list(
        self, namespaces: list[str], cancel: threading.Event | None, operation: str
    ) -> tuple[dict[str, list[ResourceMetadata]], list[str]]:
        """Monitored ConfigMaps per listed namespace, plus namespaces that failed."""
        listed: dict[str, list[ResourceMetadata]] = {}
        failed: list[str] = []
        for ns in namespaces or [""]:
            if cancel is not None and cancel.is_set():
                raise DiscoveryCancelled(f"{operation} cancelled")
            r = collect(
                f"configmap@{ns or 'all'}",
                lambda ns=ns: self.lister.list_resources(ResourceKind.CONFIGMAP, ns),
            )
            if not r.ok:
                for err in r.errors:
                    logger.warning("%s: cannot list ConfigMaps in %s: %s", operation, ns or "all namespaces", err)
                failed.append(ns or "*")
                continue
            listed[ns] = [cm for cm in r.items if self.is_monitored(cm)]
        return listed, failed

    def create_baseline(
        self,
        namespaces: list[str] | None = None,
        cancel: threading.Event | None = None,
        now: datetime | None = None,
    ) -> int:
        """Record the current state of every monitored ConfigMap; return how many."""
        now = now or datetime.now(timezone.utc)
        listed, _ = self._list(list(namespaces or []), cancel, "create_baseline")
        count = 0
        for configmaps in listed.values():
            for cm in configmaps:
                self.store.put(_baseline_of(cm, now))
                count += 1
        logger.info("Baseline created for %d ConfigMaps", count)
        return count

    def detect_drift(
        self,
        namespaces: list[str] | None = None,
        cancel: threading.Event | None = None,
        now: datetime | None = None,
    ) -> DriftReport:
        """Compare live ConfigMaps with their baselines.

        A ConfigMap with no baseline is reported ``new`` and becomes the
        baseline.  A drifted one is reported and its baseline is advanced, so
        each change is reported once.  A baseline whose ConfigMap has gone from
        a namespace that could be listed is reported ``deleted`` and dropped.
        Namespaces that cannot be listed are skipped and named in the report.
        """
        now = now or datetime.now(timezone.utc)
        listed, failed = self._list(list(namespaces or []), cancel, "detect_drift")
        report = DriftReport(generated_at=now, unreadable_namespaces=failed)

        for ns, configmaps in listed.items():
            seen: set[str] = set()
            for cm in configmaps:
                key = f"configmap/{cm.namespace}/{cm.name}"
                seen.add(key)
                report.entries.append(self._compare(cm, now))
            for baseline in self.store.for_namespace(ns):
                if baseline.key in seen:
                    continue
                report.entries.append(
                    DriftEntry(
                        namespace=baseline.namespace,
                        name=baseline.name,
                        status=DriftStatus.DELETED,
                        risk=ImpactLevel.HIGH,
                        baseline_checksum=baseline.checksum,
                        changes=[
                            ConfigChange(
                                change_type="deleted",
                                key="resource",
                                old_value="exists",
                                new_value="deleted",
                                impact=ImpactLevel.HIGH,
                            )
                        ],
                    )
                )
                self.store.delete(baseline.key)

        logger.info(
            "Drift check: %d resources, %d drifted, %d new, %d deleted",
            len(report.entries),
            report.count(DriftStatus.DRIFTED),
            report.count(DriftStatus.NEW),
            report.count(DriftStatus.DELETED),
        )
        return report

    def _compare(self, cm: ResourceMetadata, now: datetime) -> DriftEntry:
        checksum = resource_checksum(cm.data, cm.labels, cm.annotations)
        baseline = self.store.get(f"configmap/{cm.namespace}/{cm.name}")
        if baseline is None:
            self.store.put(_baseline_of(cm, now, checksum))
            return DriftEntry(
                namespace=cm.namespace,
                name=cm.name,
                status=DriftStatus.NEW,
                risk=ImpactLevel.MEDIUM,
                current_checksum=checksum,
            )
        if baseline.checksum == checksum:
            return DriftEntry(
                namespace=cm.namespace,
                name=cm.name,
                status=DriftStatus.NO_DRIFT,
                baseline_checksum=checksum,
                current_checksum=checksum,
            )

        changes = diff_configmap(baseline, cm)
        self.store.put(
            baseline.model_copy(
                update={
                    "checksum": checksum,
                    "data": dict(cm.data),
                    "labels": dict(cm.labels),
                    "annotations": dict(cm.annotations),
                    "last_modified": now,
                }
            )
        )
        return DriftEntry(
            namespace=cm.namespace,
            name=cm.name,
            status=DriftStatus.DRIFTED,
            risk=overall_risk(changes),
            baseline_checksum=baseline.checksum,
            current_checksum=checksum,
            changes=changes,
        )


def _baseline_of(cm: ResourceMetadata, now: datetime, checksum: str = "") -> ConfigBaseline:
    return ConfigBaseline(
        namespace=cm.namespace,
        name=cm.name,
        checksum=checksum or resource_checksum(cm.data, cm.labels, cm.annotations),
        data=dict(cm.data),
        labels=dict(cm.labels),
        annotations=dict(cm.annotations),
        created_at=now,
        last_modified=now,
    )
