"""Application configuration and settings."""

from __future__ import annotations

import os

from pydantic import BaseModel, Field

from mimir_insights.models import EvictionPolicy


DEFAULT_NAMESPACE = "mimir"
DEFAULT_COMPONENT_TTL = 600.0  # 10 minutes
DEFAULT_TENANT_TTL = 300.0  # 5 minutes
DEFAULT_INTERVAL = 30.0

MIB = 1024 * 1024
GIB = 1024 * MIB


class Settings(BaseModel):
    """Runtime settings resolved from env vars and CLI flags."""

    # ── Cluster ──────────────────────────────────────────────────────
    kubeconfig: str = Field(
        default_factory=lambda: os.environ.get("KUBECONFIG", ""),
        description="Path to kubeconfig file. Empty = use default (~/.kube/config).",
    )
    kube_context: str = Field(
        default="",
        description="Kubernetes context to use. Empty = current context.",
    )
    cluster_timeout: int = Field(
        default=30,
        description="Seconds before a single kubectl call is abandoned.",
    )

    # ── Metrics backend ──────────────────────────────────────────────
    metrics_url: str = Field(
        default_factory=lambda: os.environ.get("MIMIR_INSIGHTS_METRICS_URL", ""),
        description="Prometheus-compatible query URL (e.g. http://mimir-query-frontend:8080/prometheus).",
    )
    ca_cert: str = Field(
        default="",
        description="Path to a CA certificate bundle for TLS verification.",
    )
    query_timeout: float = Field(
        default=10.0,
        description="Seconds before a metrics query is abandoned.",
    )

    # ── Discovery ────────────────────────────────────────────────────
    namespaces: list[str] = Field(
        default_factory=list,
        description="Namespaces to search for components. Empty = all non-system namespaces.",
    )
    default_namespace: str = Field(
        default_factory=lambda: os.environ.get("MIMIR_NAMESPACE", DEFAULT_NAMESPACE),
        description="Namespace root used when no namespace scores above zero.",
    )
    tenant_label_keys: list[str] = Field(
        default_factory=lambda: ["tenant", "team"],
        description="Namespace label keys whose value names a tenant.",
    )
    min_confidence: float = Field(
        default=0.30,
        description="Components scoring below this are dropped.",
    )
    exclude_name: str = Field(
        default="mimir-insights",
        description="Resources whose name contains this are never reported (our own deployment).",
    )
    system_namespaces: list[str] = Field(
        default_factory=lambda: ["kube-system", "kube-public", "kube-node-lease", "default"],
    )

    # ── Cache ────────────────────────────────────────────────────────
    component_ttl: float = DEFAULT_COMPONENT_TTL
    tenant_ttl: float = DEFAULT_TENANT_TTL
    collection_interval: float = DEFAULT_INTERVAL

    # ── Memory budget ────────────────────────────────────────────────
    memory_floor_bytes: int = 100 * MIB
    memory_ceiling_bytes: int = 2 * GIB
    max_memory_bytes: int | None = Field(
        default=None,
        description="Fixed budget in bytes. None = size from system memory.",
    )
    max_cache_items: int = 1000
    max_tenant_items: int = 500
    max_component_items: int = 500
    memory_threshold: float = 0.8
    eviction_threshold: float = 0.9
    eviction_policy: EvictionPolicy = EvictionPolicy.HYBRID
    memory_check_interval: float = DEFAULT_INTERVAL

    # Behaviour
    verbose: bool = False

    def is_system_namespace(self, name: str) -> bool:
        return name in self.system_namespaces or self.exclude_name in name

    def validate_metrics_url(self) -> None:
        if not self.metrics_url:
            raise ValueError(
                "MIMIR_INSIGHTS_METRICS_URL is not set. "
                "Export it as an environment variable or pass --metrics-url."
            )
