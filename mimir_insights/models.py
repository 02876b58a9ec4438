"""Pydantic models for cluster resources, discovery results and capacity reports."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


# ──────────────────────────── Cluster Resources ───────────────────────────────


class ResourceKind(str, Enum):
    """Kubernetes kinds the discovery engine reads."""

    NAMESPACE = "Namespace"
    DEPLOYMENT = "Deployment"
    STATEFULSET = "StatefulSet"
    DAEMONSET = "DaemonSet"
    SERVICE = "Service"
    CONFIGMAP = "ConfigMap"
    POD = "Pod"


WORKLOAD_KINDS = (ResourceKind.DEPLOYMENT, ResourceKind.STATEFULSET, ResourceKind.DAEMONSET)


class ContainerPort(BaseModel):
    """A named port exposed by a container or a service."""

    name: str = ""
    port: int


class ResourceMetadata(BaseModel):
    """The slice of a Kubernetes object that discovery needs."""

    kind: ResourceKind
    name: str
    namespace: str = ""
    labels: dict[str, str] = Field(default_factory=dict)
    annotations: dict[str, str] = Field(default_factory=dict)

    # Workloads
    replicas: int = 0
    images: list[str] = Field(default_factory=list)
    container_ports: list[ContainerPort] = Field(default_factory=list)

    # Services
    service_ports: list[ContainerPort] = Field(default_factory=list)

    # ConfigMaps
    data: dict[str, str] = Field(default_factory=dict)

    @property
    def qualified_name(self) -> str:
        return f"{self.namespace}/{self.kind.value}/{self.name}"

    @classmethod
    def from_item(cls, kind: ResourceKind, item: dict[str, Any]) -> "ResourceMetadata":
        """Build from one element of a ``kubectl get -o json`` item list."""
        meta = item.get("metadata", {})
        spec = item.get("spec", {})
        res = cls(
            kind=kind,
            name=meta.get("name", ""),
            namespace=meta.get("namespace", ""),
            labels=meta.get("labels") or {},
            annotations=meta.get("annotations") or {},
        )

        if kind in WORKLOAD_KINDS:
            if kind == ResourceKind.DAEMONSET:
                res.replicas = int(item.get("status", {}).get("desiredNumberScheduled", 0) or 0)
            else:
                replicas = spec.get("replicas")
                res.replicas = 1 if replicas is None else int(replicas)
            pod_spec = spec.get("template", {}).get("spec", {})
            for container in pod_spec.get("containers", []):
                if container.get("image"):
                    res.images.append(container["image"])
                for p in container.get("ports", []):
                    if "containerPort" in p:
                        res.container_ports.append(
                            ContainerPort(name=p.get("name", ""), port=p["containerPort"])
                        )

        elif kind == ResourceKind.SERVICE:
            res.service_ports = [
                ContainerPort(name=p.get("name", ""), port=p.get("port", 0))
                for p in spec.get("ports", [])
            ]

        elif kind == ResourceKind.CONFIGMAP:
            res.data = {str(k): str(v) for k, v in (item.get("data") or {}).items()}

        return res


class PodUsage(BaseModel):
    """One line of ``kubectl top pods``."""

    name: str
    namespace: str = ""
    cpu_millicores: int = 0
    memory_bytes: int = 0

    @property
    def active(self) -> bool:
        return self.cpu_millicores > 0 or self.memory_bytes > 0


# ──────────────────────────── Components ──────────────────────────────────────


class ComponentType(str, Enum):
    """Role a backend component plays in the write/read path."""

    INGRESS_ROUTER = "ingress-router"
    WRITE_PATH = "write-path"
    STORAGE_QUERY = "storage-query"
    COMPACTOR = "compactor"
    RULES_ENGINE = "rules-engine"
    ALERT_ROUTER = "alert-router"
    OBJECT_GATEWAY = "object-gateway"


class ValidationResult(BaseModel):
    """Weighted evidence behind a discovery decision."""

    model_config = ConfigDict(frozen=True)

    confidence: float = 0.0
    matched_by: tuple[str, ...] = ()
    diagnostics: dict[str, Any] = Field(default_factory=dict)


class NetworkEndpoint(BaseModel):
    """A service port correlated with a component."""

    model_config = ConfigDict(frozen=True)

    service: str
    port: int
    name: str = ""


class DiscoveredComponent(BaseModel):
    """A backend component identified during one discovery cycle."""

    model_config = ConfigDict(frozen=True)

    name: str
    component_type: ComponentType
    category: str
    namespace: str
    kind: ResourceKind = ResourceKind.DEPLOYMENT
    replicas: int = 0
    labels: dict[str, str] = Field(default_factory=dict)
    annotations: dict[str, str] = Field(default_factory=dict)
    image: str = ""
    version: str = "latest"
    endpoints: tuple[NetworkEndpoint, ...] = ()
    config_sources: tuple[str, ...] = ()
    validation: ValidationResult = Field(default_factory=ValidationResult)

    @property
    def confidence(self) -> float:
        return self.validation.confidence


# ──────────────────────────── Tenants & Config ────────────────────────────────


class TenantSource(str, Enum):
    """Where a tenant candidate was first seen."""

    HEADER = "header-derived"
    LABEL = "label-derived"
    CONFIG = "configuration-derived"
    NAME = "name-derived"


class TenantCandidate(BaseModel):
    """A tenant inferred from one or more independent signals."""

    model_config = ConfigDict(frozen=True)

    name: str
    source: TenantSource
    namespace: str = ""
    has_real_data: bool = False
    evidence: tuple[str, ...] = ()


class ConfigKind(str, Enum):
    GLOBAL = "global-config"
    OVERRIDE = "override-config"
    TENANT = "tenant-specific-config"


class ConfigSource(BaseModel):
    """A configuration resource parsed into a flat limit map."""

    model_config = ConfigDict(frozen=True)

    name: str
    namespace: str
    kind: ConfigKind
    limits: dict[str, Any] = Field(default_factory=dict)
    tenant_overrides: dict[str, dict[str, Any]] = Field(default_factory=dict)
    keys: tuple[str, ...] = ()
    checksum: str = ""


# ──────────────────────────── Discovery Snapshots ─────────────────────────────


class ComponentTopology(BaseModel):
    """Payload of the component cache.  Shared by every reader, so immutable."""

    model_config = ConfigDict(frozen=True)

    namespace_root: str = ""
    components: tuple[DiscoveredComponent, ...] = ()
    config_sources: tuple[ConfigSource, ...] = ()


class TenantTopology(BaseModel):
    """Payload of the tenant cache.  Shared by every reader, so immutable."""

    model_config = ConfigDict(frozen=True)

    tenants: tuple[TenantCandidate, ...] = ()


class DiscoveryResult(BaseModel):
    """Everything discovery knows, as exposed to consumers."""

    components: list[DiscoveredComponent] = Field(default_factory=list)
    tenants: list[TenantCandidate] = Field(default_factory=list)
    config_sources: list[ConfigSource] = Field(default_factory=list)
    namespace_root: str = ""
    last_updated: datetime | None = None

    def summary(self) -> dict[str, int]:
        return {
            "components": len(self.components),
            "tenants": len(self.tenants),
            "config_sources": len(self.config_sources),
        }


# ──────────────────────────── Cache & Memory Status ───────────────────────────


class EvictionPolicy(str, Enum):
    SIZE = "size"
    COUNT = "count"
    TTL = "ttl"
    HYBRID = "hybrid"


class MemoryStats(BaseModel):
    """Point-in-time view of the memory budget."""

    current_bytes: int = 0
    max_bytes: int = 0
    usage_percent: float = 0.0
    peak_bytes: int = 0
    item_counts: dict[str, int] = Field(default_factory=dict)
    item_limits: dict[str, int] = Field(default_factory=dict)
    total_items: int = 0
    max_items: int = 0
    eviction_count: int = 0
    warning_count: int = 0
    last_eviction: datetime | None = None
    policy: EvictionPolicy = EvictionPolicy.HYBRID
    memory_threshold: float = 0.8
    eviction_threshold: float = 0.9
    process_memory_bytes: int = 0


class TopologyCacheStatus(BaseModel):
    """State of one cached topology.

    ``state`` is ``"empty"`` (no data yet), ``"populated"`` (fresh) or
    ``"stale"`` (older than the TTL, still served).
    """

    cached: bool = False
    state: str = "empty"
    last_updated: datetime | None = None
    ttl_seconds: float = 0.0
    age_seconds: float | None = None
    is_valid: bool = False
    item_count: int = 0
    last_error: str = ""


class CacheStatus(BaseModel):
    components: TopologyCacheStatus
    tenants: TopologyCacheStatus
    memory: MemoryStats


# ──────────────────────────── Metrics ─────────────────────────────────────────


class MetricPoint(BaseModel):
    timestamp: datetime
    value: float


class TimeSeries(BaseModel):
    """An ordered sequence of samples for one label set."""

    name: str = ""
    labels: dict[str, str] = Field(default_factory=dict)
    points: list[MetricPoint] = Field(default_factory=list)

    @property
    def values(self) -> list[float]:
        return [p.value for p in self.points]


class TimeRange(BaseModel):
    start: datetime
    end: datetime
    step: str = "1h"


# ──────────────────────────── Capacity Planning ───────────────────────────────


class ReportKind(str, Enum):
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class UsageMetrics(BaseModel):
    ingestion_rate: float = 0.0
    active_series: int = 0
    memory_usage: float = 0.0
    rejected_samples: int = 0


class SeasonalPattern(BaseModel):
    kind: str
    peak_hours: list[int] = Field(default_factory=list)
    peak_days: list[int] = Field(default_factory=list)
    multiplier: float = 1.0


class TrendAnalysis(BaseModel):
    ingestion_growth_rate: float = 0.0
    series_growth_rate: float = 0.0
    memory_growth_rate: float = 0.0
    rejection_trend: str = "stable"
    seasonal_patterns: list[SeasonalPattern] = Field(default_factory=list)


class Projection(BaseModel):
    ingestion_rate: float = 0.0
    active_series: int = 0
    memory_usage: float = 0.0
    confidence: float = 0.0


class ProjectionData(BaseModel):
    """Linear extrapolations of current usage over three horizons."""

    next_week: Projection = Field(default_factory=Projection)
    next_month: Projection = Field(default_factory=Projection)
    next_quarter: Projection = Field(default_factory=Projection)


class RiskAssessment(BaseModel):
    overall_risk: RiskLevel = RiskLevel.LOW
    risk_factors: list[str] = Field(default_factory=list)
    mitigations: list[str] = Field(default_factory=list)
    alert_thresholds: dict[str, float] = Field(default_factory=dict)


class ResourceOptimization(BaseModel):
    recommended_replicas: int = 2
    cpu_cores: float = 0.5
    memory_gb: float = 1.0
    storage_gb: float = 10.0
    cost_optimizations: list[str] = Field(default_factory=list)


class CapacityReport(BaseModel):
    tenant: str
    kind: ReportKind
    generated_at: datetime
    time_range: TimeRange
    current_usage: UsageMetrics
    trends: TrendAnalysis
    projections: ProjectionData
    recommendations: list[str] = Field(default_factory=list)
    risk: RiskAssessment
    optimization: ResourceOptimization


# ──────────────────────────── Configuration Drift ─────────────────────────────


class ImpactLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


IMPACT_ORDER = (ImpactLevel.LOW, ImpactLevel.MEDIUM, ImpactLevel.HIGH, ImpactLevel.CRITICAL)


class DriftStatus(str, Enum):
    NO_DRIFT = "no_drift"
    DRIFTED = "drifted"
    NEW = "new"
    DELETED = "deleted"


class ConfigChange(BaseModel):
    """One key that differs between a baseline and the live resource."""

    change_type: str  # added | modified | deleted
    key: str
    old_value: str = ""
    new_value: str = ""
    impact: ImpactLevel = ImpactLevel.MEDIUM


class ConfigBaseline(BaseModel):
    """A ConfigMap's content as last accepted."""

    namespace: str
    name: str
    checksum: str
    data: dict[str, str] = Field(default_factory=dict)
    labels: dict[str, str] = Field(default_factory=dict)
    annotations: dict[str, str] = Field(default_factory=dict)
    created_at: datetime
    last_modified: datetime

    @property
    def key(self) -> str:
        return f"configmap/{self.namespace}/{self.name}"


class DriftEntry(BaseModel):
    namespace: str
    name: str
    status: DriftStatus
    risk: ImpactLevel = ImpactLevel.LOW
    baseline_checksum: str = ""
    current_checksum: str = ""
    changes: list[ConfigChange] = Field(default_factory=list)


class DriftReport(BaseModel):
    generated_at: datetime
    entries: list[DriftEntry] = Field(default_factory=list)
    unreadable_namespaces: list[str] = Field(default_factory=list)

    def count(self, status: DriftStatus) -> int:
        return sum(1 for e in self.entries if e.status == status)

    def risk_counts(self) -> dict[str, int]:
        counts = {level.value: 0 for level in IMPACT_ORDER}
        for e in self.entries:
            counts[e.risk.value] += 1
        return counts


# ──────────────────────────── Tenant Limits ───────────────────────────────────


class LimitRecommendation(BaseModel):
    limit_name: str
    current_value: float
    observed_peak: float
    recommended_value: float
    buffer_percent: float
    utilization_percent: float
    risk: ImpactLevel
    reason: str


class TenantLimits(BaseModel):
    """Effective limits of one tenant compared with its observed peaks."""

    tenant: str
    analyzed_at: datetime
    current_config: dict[str, Any] = Field(default_factory=dict)
    recommendations: list[LimitRecommendation] = Field(default_factory=list)
    missing_limits: list[str] = Field(default_factory=list)
    unavailable_metrics: list[str] = Field(default_factory=list)
    risk_score: float = 0.0


# ──────────────────────────── Tenant Metrics ──────────────────────────────────


class TenantMetrics(BaseModel):
    """Latest value of each usage metric per look-back range (``"1h"``, ``"7d"``...).

    Cached and shared by readers, so immutable.
    """

    model_config = ConfigDict(frozen=True)

    tenant: str
    ingestion_rate: dict[str, float] = Field(default_factory=dict)
    active_series: dict[str, float] = Field(default_factory=dict)
    rejected_samples: dict[str, float] = Field(default_factory=dict)
    memory_usage: dict[str, float] = Field(default_factory=dict)
    last_updated: datetime
    collection_errors: tuple[str, ...] = ()
