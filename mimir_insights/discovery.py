"""Discover Mimir components, tenants and limit configuration in a live cluster.

Every listing call is wrapped in a tagged ``SourceResult``.  ``merge_sources``
folds them: failed sources are logged and discovery continues with whatever
succeeded; only when *every* source of an operation failed is
``TotalDiscoveryFailure`` raised.

Component confidence is the pattern score (see ``patterns``) plus
cross-validation evidence gathered from services and ConfigMaps in the same
namespace:

    service-correlation  +0.15
    configmap-reference  +0.10
    metrics-endpoint     +0.05

All contributions are additive and capped at 1.0, so one more matching
signal can never lower a score.
"""

from __future__ import annotations

import hashlib
import logging
import re
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable

import yaml

from mimir_insights.cluster import ResourceLister
from mimir_insights.config import Settings
from mimir_insights.errors import DiscoveryCancelled, PartialSourceFailure, TotalDiscoveryFailure
from mimir_insights.models import (
    WORKLOAD_KINDS,
    ComponentTopology,
    ConfigKind,
    ConfigSource,
    DiscoveredComponent,
    DiscoveryResult,
    NetworkEndpoint,
    ResourceKind,
    ResourceMetadata,
    TenantCandidate,
    TenantSource,
    TenantTopology,
    ValidationResult,
)
from mimir_insights.patterns import (
    COMPONENT_TYPES,
    CONFIG_PATTERNS,
    METRICS_PORT_NAMES,
    SERVICE_PATTERNS,
    PatternTable,
    best_match,
    compile_patterns,
    match_resource,
    matches_any,
)

logger = logging.getLogger(__name__)

# ──────────────────────────── Constants ───────────────────────────────────────

_W_SERVICE = 0.15
_W_CONFIGMAP = 0.10
_W_METRICS = 0.05

TAG_SERVICE = "service-correlation"
TAG_CONFIGMAP = "configmap-reference"
TAG_METRICS = "metrics-endpoint"

# Namespace-root point system
_PTS_NAME = 20
_PTS_LABEL = 15
_PTS_COMPONENT = 10
_PTS_SERVICE = 8
_PTS_CONFIGMAP = 5

OVERRIDE_CONFIG_NAMES = (
    "runtime-overrides",
    "mimir-runtime-overrides",
    "cortex-runtime-overrides",
    "overrides",
    "mimir-overrides",
)
MAIN_CONFIG_NAMES = ("mimir-config", "cortex-config", "mimir", "cortex")

# Sections of the main config that carry per-component limits.
_LIMIT_SECTIONS = ("distributor", "ingester", "querier", "query_frontend", "compactor", "ruler")
_LIMIT_KEY_HINTS = ("limit", "max", "rate", "burst")

AGENT_CONFIG_PATTERNS = (r"alloy", r"grafana-agent", r"agent", r"prometheus", r"otel", r"collector")
TENANT_NAME_PATTERNS = (
    r"^tenant-(.+)$",
    r"^(.+)-tenant$",
    r"^(.+)-(?:dev|prod|staging)$",
)
_TENANT_CONFIG_NAME = re.compile(r"^tenant-(.+?)(?:-(?:limits|config|overrides))?$", re.IGNORECASE)

_ORG_ID = re.compile(r"""x-scope-orgid["']?\s*[:=]\s*["']?([A-Za-z0-9_.|-]+)""", re.IGNORECASE)
_TENANT_KEY = re.compile(
    r"""^\s*["']?tenant(?:_id)?["']?\s*[:=]\s*["']?([A-Za-z0-9_.-]+)""",
    re.IGNORECASE | re.MULTILINE,
)


# ──────────────────────────── Tagged Source Results ───────────────────────────


class SourceStatus(str, Enum):
    OK = "ok"
    PARTIAL = "partial"
    FAILED = "failed"


@dataclass
class SourceResult:
    """Outcome of one discovery sub-source."""

    source: str
    status: SourceStatus
    items: list[Any] = field(default_factory=list)
    errors: list[PartialSourceFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status != SourceStatus.FAILED


@dataclass
class MergedSources:
    """Items of every non-failed source, plus the failures that were folded away."""

    items: dict[str, list[Any]]
    failures: list[PartialSourceFailure]

    @property
    def partial(self) -> bool:
        return bool(self.failures)

    def get(self, source: str) -> list[Any]:
        return self.items.get(source, [])


def collect(source: str, fn: Callable[[], list[Any]]) -> SourceResult:
    """Run one sub-source and tag its outcome."""
    try:
        return SourceResult(source, SourceStatus.OK, list(fn()))
    except PartialSourceFailure as exc:
        return SourceResult(source, SourceStatus.FAILED, errors=[exc])


def combine(source: str, results: list[SourceResult]) -> SourceResult:
    """Fold several listings of one source (e.g. one per namespace) into one result.

    All failed → ``FAILED``; some failed → ``PARTIAL`` carrying both the
    items that were listed and the errors; none failed → ``OK``.
    """
    items: list[Any] = []
    errors: list[PartialSourceFailure] = []
    for r in results:
        items.extend(r.items)
        errors.extend(r.errors)
    if not errors:
        status = SourceStatus.OK
    elif any(r.ok for r in results):
        status = SourceStatus.PARTIAL
    else:
        status = SourceStatus.FAILED
    return SourceResult(source, status, items, errors)


def merge_sources(operation: str, results: list[SourceResult]) -> MergedSources:
    """Fold tagged results, raising only when every source failed."""
    failures: list[PartialSourceFailure] = []
    items: dict[str, list[Any]] = {}
    for r in results:
        if r.errors:
            failures.extend(r.errors)
            for err in r.errors:
                logger.warning("%s: partial source failure: %s", operation, err)
        if r.ok:
            items.setdefault(r.source, []).extend(r.items)

    if results and not any(r.ok for r in results):
        raise TotalDiscoveryFailure(operation, failures)
    return MergedSources(items=items, failures=failures)


# ──────────────────────────── Pure helpers ────────────────────────────────────


def extract_version(image: str) -> str:
    """Return the image tag, or ``"latest"`` when untagged.

    ``grafana/mimir:2.10.3`` → ``2.10.3``; ``registry:5000/mimir`` → ``latest``.
    """
    ref = image.split("@", 1)[0]
    last = ref.rsplit("/", 1)[-1]
    if ":" in last:
        return last.rsplit(":", 1)[1] or "latest"
    return "latest"


def category_token(category: str) -> str:
    return category.replace("_", "-")


def extract_org_ids(text: str) -> list[str]:
    """Find tenant IDs in agent configuration (``X-Scope-OrgID`` headers, ``tenant_id`` keys)."""
    found: list[str] = []
    for m in _ORG_ID.finditer(text):
        # Mimir accepts "a|b" for federated queries
        for org in m.group(1).split("|"):
            if org and org not in found:
                found.append(org)
    for m in _TENANT_KEY.finditer(text):
        if m.group(1) not in found:
            found.append(m.group(1))
    return found


def classify_config(name: str) -> ConfigKind:
    lowered = name.lower()
    if "override" in lowered:
        return ConfigKind.OVERRIDE
    if "tenant" in lowered:
        return ConfigKind.TENANT
    return ConfigKind.GLOBAL


def config_checksum(data: dict[str, str]) -> str:
    """sha256 over the raw content, independent of key order."""
    digest = hashlib.sha256()
    for key in sorted(data):
        digest.update(key.encode("utf-8"))
        digest.update(b"\0")
        digest.update(data[key].encode("utf-8"))
        digest.update(b"\0")
    return digest.hexdigest()


def _flatten(mapping: dict[Any, Any], prefix: str = "") -> dict[str, Any]:
    flat: dict[str, Any] = {}
    for key, value in mapping.items():
        dotted = f"{prefix}{key}"
        if isinstance(value, dict):
            flat.update(_flatten(value, prefix=f"{dotted}."))
        else:
            flat[dotted] = value
    return flat


def parse_config_source(name: str, namespace: str, data: dict[str, str]) -> ConfigSource:
    """Parse a ConfigMap's YAML values into a ``ConfigSource``.

    ``limits:`` becomes the global limit map, ``overrides:`` the per-tenant
    map, and limit-like keys of component sections are added as
    ``<section>.<key>``.  Values that are not YAML mappings are ignored.
    """
    kind = classify_config(name)
    limits: dict[str, Any] = {}
    overrides: dict[str, dict[str, Any]] = {}

    for key in sorted(data):
        try:
            doc = yaml.safe_load(data[key])
        except yaml.YAMLError as exc:
            logger.debug("Skipping %s/%s key %s: %s", namespace, name, key, exc)
            continue
        if not isinstance(doc, dict):
            continue

        section = doc.get("overrides")
        if isinstance(section, dict):
            for tenant, tenant_limits in section.items():
                if isinstance(tenant_limits, dict):
                    overrides.setdefault(str(tenant), {}).update(_flatten(tenant_limits))

        section = doc.get("limits")
        if isinstance(section, dict):
            limits.update(_flatten(section))

        for name_ in _LIMIT_SECTIONS:
            section = doc.get(name_)
            if not isinstance(section, dict):
                continue
            for k, v in _flatten(section).items():
                if any(hint in k.lower() for hint in _LIMIT_KEY_HINTS):
                    limits[f"{name_}.{k}"] = v

        if kind == ConfigKind.TENANT and not limits and "overrides" not in doc:
            limits.update(_flatten(doc))

    if kind == ConfigKind.TENANT and limits:
        m = _TENANT_CONFIG_NAME.match(name)
        if m:
            overrides.setdefault(m.group(1), {}).update(limits)

    return ConfigSource(
        name=name,
        namespace=namespace,
        kind=kind,
        limits=limits,
        tenant_overrides=overrides,
        keys=sorted(data),
        checksum=config_checksum(data),
    )


def consolidate_tenants(candidates: list[TenantCandidate]) -> list[TenantCandidate]:
    """Deduplicate by name: the first source wins, later evidence is appended."""
    merged: dict[str, TenantCandidate] = {}
    for c in candidates:
        existing = merged.get(c.name)
        if existing is None:
            merged[c.name] = c
            continue
        extra = tuple(ev for ev in c.evidence if ev not in existing.evidence)
        merged[c.name] = existing.model_copy(
            update={
                "evidence": existing.evidence + tuple(dict.fromkeys(extra)),
                "namespace": existing.namespace or c.namespace,
                "has_real_data": existing.has_real_data or c.has_real_data,
            }
        )
    return sorted(merged.values(), key=lambda t: t.name)


# ──────────────────────────── Engine ──────────────────────────────────────────


class DiscoveryEngine:
    """Pattern-driven discovery over a read-only cluster lister.

    Parameters
    ----------
    lister : ResourceLister
        Cluster access (``ClusterClient`` in production, a fake in tests).
    settings : Settings
        Namespaces, tenant label keys, confidence floor and exclusions.
    table : PatternTable
        Precompiled component rules.  Defaults to the built-in Mimir table.
    """

    def __init__(
        self,
        lister: ResourceLister,
        settings: Settings | None = None,
        table: PatternTable | None = None,
    ) -> None:
        self.lister = lister
        self.settings = settings or Settings()
        self.table = table or PatternTable.compile()
        self._service_patterns = compile_patterns(SERVICE_PATTERNS, owner="service")
        self._config_patterns = compile_patterns(CONFIG_PATTERNS, owner="config")
        self._agent_patterns = compile_patterns(AGENT_CONFIG_PATTERNS, owner="agent config")
        self._tenant_name_patterns = compile_patterns(TENANT_NAME_PATTERNS, owner="tenant name")

    # ── Helpers ───────────────────────────────────────────────────────────

    @staticmethod
    def _check_cancel(cancel: threading.Event | None, operation: str) -> None:
        if cancel is not None and cancel.is_set():
            raise DiscoveryCancelled(f"{operation} cancelled")

    def _list(
        self,
        kind: ResourceKind,
        namespace: str = "",
        cancel: threading.Event | None = None,
    ) -> SourceResult:
        self._check_cancel(cancel, f"list {kind.value}")
        source = kind.value if not namespace else f"{kind.value}@{namespace}"
        return collect(source, lambda: self.lister.list_resources(kind, namespace))

    def _visible(self, res: ResourceMetadata) -> bool:
        if self.settings.exclude_name and self.settings.exclude_name in res.name:
            return False
        if res.kind == ResourceKind.NAMESPACE:
            return not self.settings.is_system_namespace(res.name)
        return not self.settings.is_system_namespace(res.namespace)

    def _gather(
        self,
        operation: str,
        kinds: tuple[ResourceKind, ...],
        namespaces: list[str],
        cancel: threading.Event | None,
    ) -> dict[ResourceKind, list[ResourceMetadata]]:
        per_kind: dict[ResourceKind, list[SourceResult]] = {kind: [] for kind in kinds}
        for ns in namespaces or [""]:
            for kind in kinds:
                per_kind[kind].append(self._list(kind, ns, cancel))
        results = [combine(kind.value, per_kind[kind]) for kind in kinds]
        for r in results:
            if r.status == SourceStatus.PARTIAL:
                logger.info("%s: %s listed in only some namespaces", operation, r.source)
        merged = merge_sources(operation, results)
        return {
            kind: [res for res in merged.get(kind.value) if self._visible(res)]
            for kind in kinds
        }

    def _classify(self, workload: ResourceMetadata) -> tuple[str, float, list[str], list[str]] | None:
        match = best_match(
            match_resource(
                self.table,
                workload.name,
                workload.namespace,
                workload.labels,
                workload.annotations,
            )
        )
        if match is None:
            return None
        return match.category, match.score, match.matched_by, match.evidence

    # ── Components ────────────────────────────────────────────────────────

    def discover_components(
        self,
        namespaces: list[str] | None = None,
        cancel: threading.Event | None = None,
    ) -> list[DiscoveredComponent]:
        """Return components ranked by descending confidence."""
        targets = list(namespaces or self.settings.namespaces)
        found = self._gather(
            "discover_components",
            (*WORKLOAD_KINDS, ResourceKind.SERVICE, ResourceKind.CONFIGMAP),
            targets,
            cancel,
        )
        services = _by_namespace(found[ResourceKind.SERVICE])
        configmaps = _by_namespace(found[ResourceKind.CONFIGMAP])
        workloads = [w for kind in WORKLOAD_KINDS for w in found[kind]]

        components: list[DiscoveredComponent] = []
        dropped = 0
        for workload in workloads:
            classified = self._classify(workload)
            if classified is None:
                continue
            component = self._build_component(
                workload,
                classified,
                services.get(workload.namespace, []),
                configmaps.get(workload.namespace, []),
            )
            if component.confidence < self.settings.min_confidence:
                dropped += 1
                logger.debug(
                    "Dropping %s (%.2f < %.2f)",
                    workload.qualified_name,
                    component.confidence,
                    self.settings.min_confidence,
                )
                continue
            components.append(component)

        components.sort(key=lambda c: (-c.confidence, c.namespace, c.name))
        logger.info(
            "Discovered %d components (%d below confidence floor) from %d workloads",
            len(components),
            dropped,
            len(workloads),
        )
        return components

    def _build_component(
        self,
        workload: ResourceMetadata,
        classified: tuple[str, float, list[str], list[str]],
        services: list[ResourceMetadata],
        configmaps: list[ResourceMetadata],
    ) -> DiscoveredComponent:
        category, score, matched_by, evidence = classified
        matched_by = list(matched_by)
        token = category_token(category)
        name = workload.name.lower()

        # Service correlation
        related_services = [
            s for s in services
            if name in s.name.lower() or s.name.lower() in name or token in s.name.lower()
        ]
        endpoints = [
            NetworkEndpoint(service=s.name, port=p.port, name=p.name)
            for s in related_services
            for p in s.service_ports
        ]
        if related_services:
            score += _W_SERVICE
            matched_by.append(TAG_SERVICE)

        # ConfigMap references
        related_configs = [
            cm.name for cm in configmaps
            if name in cm.name.lower()
            or token in cm.name.lower()
            or any(workload.name in value for value in cm.data.values())
        ]
        if related_configs:
            score += _W_CONFIGMAP
            matched_by.append(TAG_CONFIGMAP)

        # Metrics endpoint
        port_names = {p.name for p in workload.container_ports} | {e.name for e in endpoints}
        if port_names & METRICS_PORT_NAMES:
            score += _W_METRICS
            matched_by.append(TAG_METRICS)

        image = workload.images[0] if workload.images else ""
        return DiscoveredComponent(
            name=workload.name,
            component_type=COMPONENT_TYPES[category],
            category=category,
            namespace=workload.namespace,
            kind=workload.kind,
            replicas=workload.replicas,
            labels=workload.labels,
            annotations=workload.annotations,
            image=image,
            version=extract_version(image) if image else "latest",
            endpoints=endpoints,
            config_sources=sorted(related_configs),
            validation=ValidationResult(
                confidence=round(min(score, 1.0), 2),
                matched_by=matched_by,
                diagnostics={
                    "evidence": evidence,
                    "services": [s.name for s in related_services],
                    "pattern_score": classified[1],
                },
            ),
        )

    # ── Namespace root ────────────────────────────────────────────────────

    def score_namespaces(self, cancel: threading.Event | None = None) -> dict[str, int]:
        """Composite score for every non-system namespace."""
        found = self._gather(
            "discover_namespace",
            (ResourceKind.NAMESPACE, *WORKLOAD_KINDS, ResourceKind.SERVICE, ResourceKind.CONFIGMAP),
            [],
            cancel,
        )
        ns_patterns = self.table.namespace_patterns
        tokens = [category_token(c) for c in self.table.categories]

        scores: dict[str, int] = {ns.name: 0 for ns in found[ResourceKind.NAMESPACE]}
        for ns in found[ResourceKind.NAMESPACE]:
            if matches_any(ns_patterns, ns.name):
                scores[ns.name] += _PTS_NAME
            for value in ns.labels.values():
                if matches_any(ns_patterns, value):
                    scores[ns.name] += _PTS_LABEL

        # Resources seen in namespaces we could not list still count.
        for kind in WORKLOAD_KINDS:
            for w in found[kind]:
                if self._classify(w) is not None:
                    scores[w.namespace] = scores.get(w.namespace, 0) + _PTS_COMPONENT
        for svc in found[ResourceKind.SERVICE]:
            lowered = svc.name.lower()
            if matches_any(self._service_patterns, svc.name) or any(t in lowered for t in tokens):
                scores[svc.namespace] = scores.get(svc.namespace, 0) + _PTS_SERVICE
        for cm in found[ResourceKind.CONFIGMAP]:
            if matches_any(self._config_patterns, cm.name):
                scores[cm.namespace] = scores.get(cm.namespace, 0) + _PTS_CONFIGMAP
        return scores

    def discover_namespace(self, cancel: threading.Event | None = None) -> str:
        """Select the namespace root: highest score, ties broken alphabetically."""
        scores = self.score_namespaces(cancel)
        if not scores or max(scores.values()) <= 0:
            logger.info("No namespace scored above zero, using %s", self.settings.default_namespace)
            return self.settings.default_namespace
        root = max(sorted(scores), key=lambda ns: scores[ns])
        logger.info("Selected namespace root %s (score %d)", root, scores[root])
        return root

    # ── Config sources ────────────────────────────────────────────────────

    def discover_config_sources(
        self, namespace: str, cancel: threading.Event | None = None
    ) -> list[ConfigSource]:
        """Parse well-known and pattern-matched ConfigMaps in *namespace*."""
        results: list[SourceResult] = []
        for name in (*OVERRIDE_CONFIG_NAMES, *MAIN_CONFIG_NAMES):
            self._check_cancel(cancel, "discover_config_sources")
            results.append(collect("known-name", lambda name=name: self._fetch_known(name, namespace)))
        listed = self._list(ResourceKind.CONFIGMAP, namespace, cancel)
        listed.source = "listing"
        results.append(listed)
        merged = merge_sources("discover_config_sources", results)

        contents: dict[str, dict[str, str]] = {}
        for name, data in merged.get("known-name"):
            contents.setdefault(name, data)
        for cm in merged.get("listing"):
            if cm.name in contents:
                continue
            if matches_any(self._config_patterns, cm.name) or _TENANT_CONFIG_NAME.match(cm.name):
                contents[cm.name] = cm.data

        sources = [parse_config_source(name, namespace, data) for name, data in sorted(contents.items())]
        logger.info("Parsed %d config sources in %s", len(sources), namespace)
        return sources

    def _fetch_known(self, name: str, namespace: str) -> list[tuple[str, dict[str, str]]]:
        data = self.lister.get_config_resource(name, namespace)
        return [(name, data)] if data else []

    # ── Tenants ───────────────────────────────────────────────────────────

    def discover_tenants(self, cancel: threading.Event | None = None) -> list[TenantCandidate]:
        """Aggregate tenant candidates from agent configs, labels, overrides and names."""
        found = self._gather(
            "discover_tenants",
            (ResourceKind.NAMESPACE, ResourceKind.CONFIGMAP),
            [],
            cancel,
        )
        namespaces = found[ResourceKind.NAMESPACE]
        configmaps = found[ResourceKind.CONFIGMAP]
        ns_names = {ns.name for ns in namespaces}

        candidates: list[TenantCandidate] = []
        candidates += self._tenants_from_agents(configmaps)
        candidates += self._tenants_from_labels(namespaces)
        candidates += self._tenants_from_overrides(configmaps, ns_names)
        candidates += self._tenants_from_names(namespaces)

        tenants = self._mark_real_data(consolidate_tenants(candidates), cancel)
        logger.info(
            "Discovered %d tenants from %d candidates (%d with live data)",
            len(tenants),
            len(candidates),
            sum(1 for t in tenants if t.has_real_data),
        )
        return tenants

    def _tenants_from_agents(self, configmaps: list[ResourceMetadata]) -> list[TenantCandidate]:
        out: list[TenantCandidate] = []
        for cm in configmaps:
            if not matches_any(self._agent_patterns, cm.name):
                continue
            for key in sorted(cm.data):
                for org in extract_org_ids(cm.data[key]):
                    out.append(
                        TenantCandidate(
                            name=org,
                            source=TenantSource.HEADER,
                            namespace=cm.namespace,
                            evidence=[f"header:X-Scope-OrgID={org} in {cm.namespace}/{cm.name}"],
                        )
                    )
        return out

    def _tenants_from_labels(self, namespaces: list[ResourceMetadata]) -> list[TenantCandidate]:
        out: list[TenantCandidate] = []
        for ns in namespaces:
            for key in self.settings.tenant_label_keys:
                value = ns.labels.get(key)
                if value:
                    out.append(
                        TenantCandidate(
                            name=value,
                            source=TenantSource.LABEL,
                            namespace=ns.name,
                            evidence=[f"label:{key}={value} on namespace {ns.name}"],
                        )
                    )
        return out

    def _tenants_from_overrides(
        self, configmaps: list[ResourceMetadata], ns_names: set[str]
    ) -> list[TenantCandidate]:
        out: list[TenantCandidate] = []
        for cm in configmaps:
            if not (matches_any(self._config_patterns, cm.name) or _TENANT_CONFIG_NAME.match(cm.name)):
                continue
            source = parse_config_source(cm.name, cm.namespace, cm.data)
            for tenant, limits in sorted(source.tenant_overrides.items()):
                if not limits:
                    continue
                out.append(
                    TenantCandidate(
                        name=tenant,
                        source=TenantSource.CONFIG,
                        namespace=tenant if tenant in ns_names else "",
                        evidence=[
                            f"config:{cm.namespace}/{cm.name} overrides {', '.join(sorted(limits))}"
                        ],
                    )
                )
        return out

    def _tenants_from_names(self, namespaces: list[ResourceMetadata]) -> list[TenantCandidate]:
        out: list[TenantCandidate] = []
        for ns in namespaces:
            # The backend's own namespaces are not tenants.
            if matches_any(self.table.namespace_patterns, ns.name):
                continue
            for pattern in self._tenant_name_patterns:
                m = pattern.match(ns.name)
                if m:
                    out.append(
                        TenantCandidate(
                            name=m.group(1),
                            source=TenantSource.NAME,
                            namespace=ns.name,
                            evidence=[f"namespace-name:{ns.name}"],
                        )
                    )
                    break
        return out

    def _mark_real_data(
        self, tenants: list[TenantCandidate], cancel: threading.Event | None
    ) -> list[TenantCandidate]:
        usage_by_ns: dict[str, bool] = {}
        marked: list[TenantCandidate] = []
        for tenant in tenants:
            ns = tenant.namespace
            if not ns:
                marked.append(tenant)
                continue
            if ns not in usage_by_ns:
                self._check_cancel(cancel, "discover_tenants")
                r = collect(f"pod-usage@{ns}", lambda ns=ns: self.lister.pod_usage(ns))
                for err in r.errors:
                    logger.warning("discover_tenants: partial source failure: %s", err)
                usage_by_ns[ns] = any(p.active for p in r.items)
            marked.append(tenant.model_copy(update={"has_real_data": usage_by_ns[ns]}))
        return marked

    # ── Full cycle ────────────────────────────────────────────────────────

    def component_topology(self, cancel: threading.Event | None = None) -> ComponentTopology:
        """Namespace root, components and config sources for one cycle.

        Only a total failure of component discovery propagates; the namespace
        root and config sources degrade to defaults.
        """
        try:
            root = self.discover_namespace(cancel)
        except TotalDiscoveryFailure as exc:
            logger.warning("Namespace root unavailable, using %s: %s", self.settings.default_namespace, exc)
            root = self.settings.default_namespace
        components = self.discover_components(cancel=cancel)
        try:
            config_sources = self.discover_config_sources(root, cancel)
        except TotalDiscoveryFailure as exc:
            logger.warning("Config sources unavailable in %s: %s", root, exc)
            config_sources = []
        return ComponentTopology(namespace_root=root, components=components, config_sources=config_sources)

    def tenant_topology(self, cancel: threading.Event | None = None) -> TenantTopology:
        return TenantTopology(tenants=self.discover_tenants(cancel))

    def discover_all(self, cancel: threading.Event | None = None) -> DiscoveryResult:
        topology = self.component_topology(cancel)
        tenants = self.tenant_topology(cancel)
        return DiscoveryResult(
            components=topology.components,
            tenants=tenants.tenants,
            config_sources=topology.config_sources,
            namespace_root=topology.namespace_root,
            last_updated=datetime.now(timezone.utc),
        )


def _by_namespace(resources: list[ResourceMetadata]) -> dict[str, list[ResourceMetadata]]:
    grouped: dict[str, list[ResourceMetadata]] = {}
    for r in resources:
        grouped.setdefault(r.namespace, []).append(r)
    return grouped
