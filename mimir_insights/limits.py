"""Per-tenant limit analysis: configured limits against observed peaks.

The effective configuration of a tenant is the global limit map of every
non-tenant config source, overlaid with that tenant's overrides.  For each
known limit type whose usage can be observed, the peak over the last week is
compared with the configured value:

    utilization = peak / current * 100
    ≥95 critical   ≥80 high   ≥60 medium   otherwise low

and a new value of ``peak * (1 + buffer / 100)`` is recommended.  A limit
that is not configured at all goes into ``missing_limits`` and adds a fixed
penalty to the tenant's risk score.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable

from mimir_insights.errors import MetricsQueryError, MimirInsightsError, OperationCancelled, QueryCancelled
from mimir_insights.models import (
    ConfigKind,
    ConfigSource,
    ImpactLevel,
    LimitRecommendation,
    TenantLimits,
    TimeRange,
)
from mimir_insights.planner import MetricsSource

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LimitType:
    name: str
    metric: str
    priority: str  # critical | important | standard
    unit: str


LIMIT_TYPES: tuple[LimitType, ...] = (
    LimitType("ingestion_rate", "ingestion_rate", "critical", "samples/sec"),
    LimitType("ingestion_burst_size", "ingestion_rate", "critical", "samples"),
    LimitType("max_global_series_per_user", "active_series", "critical", "series"),
    LimitType("max_series_per_user", "active_series", "important", "series"),
)

BUFFER_PERCENT = {"critical": 20.0, "important": 15.0}
DEFAULT_BUFFER_PERCENT = 10.0

RISK_WEIGHTS = {
    ImpactLevel.CRITICAL: 4.0,
    ImpactLevel.HIGH: 3.0,
    ImpactLevel.MEDIUM: 2.0,
    ImpactLevel.LOW: 1.0,
}
RISK_SCORES = {
    ImpactLevel.CRITICAL: 100.0,
    ImpactLevel.HIGH: 75.0,
    ImpactLevel.MEDIUM: 50.0,
    ImpactLevel.LOW: 25.0,
}
MISSING_LIMIT_PENALTY = 10.0

PEAK_WINDOW = timedelta(days=7)
PEAK_STEP = "1h"

_REASONS = {
    ImpactLevel.CRITICAL: "Critical: utilization is {u:.1f}% of the limit. Raise it now to prevent rejections.",
    ImpactLevel.HIGH: "High: utilization is {u:.1f}% of the limit. Consider raising it before it is reached.",
    ImpactLevel.MEDIUM: "Medium: utilization is {u:.1f}% of the limit. Monitor closely.",
    ImpactLevel.LOW: "Low: utilization is {u:.1f}% of the limit. The limit is adequate for current usage.",
}


# ──────────────────────────── Pure helpers ────────────────────────────────────


def effective_config(tenant: str, sources: Iterable[ConfigSource]) -> dict[str, Any]:
    """Global limits overlaid with the tenant's overrides.

    The tenant is looked up by exact name, then as ``tenant-<t>``,
    ``<t>-tenant``, lower case and upper case.
    """
    sources = list(sources)
    config: dict[str, Any] = {}
    for src in sources:
        if src.kind != ConfigKind.TENANT:
            config.update(src.limits)

    overrides: dict[str, dict[str, Any]] = {}
    for src in sources:
        for name, limits in src.tenant_overrides.items():
            overrides.setdefault(name, {}).update(limits)

    for candidate in (tenant, f"tenant-{tenant}", f"{tenant}-tenant", tenant.lower(), tenant.upper()):
        if candidate in overrides:
            if candidate != tenant:
                logger.info("Limits for %s found under %s", tenant, candidate)
            config.update(overrides[candidate])
            break
    return config


def lookup_limit(name: str, config: dict[str, Any]) -> Any | None:
    """Value of *name*, directly or as the last segment of a dotted key."""
    if name in config:
        return config[name]
    for key in sorted(config):
        if key.rsplit(".", 1)[-1] == name:
            return config[key]
    return None


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def buffer_percent(limit: LimitType) -> float:
    return BUFFER_PERCENT.get(limit.priority, DEFAULT_BUFFER_PERCENT)


def utilization_risk(utilization: float) -> ImpactLevel:
    if utilization >= 95:
        return ImpactLevel.CRITICAL
    if utilization >= 80:
        return ImpactLevel.HIGH
    if utilization >= 60:
        return ImpactLevel.MEDIUM
    return ImpactLevel.LOW


def recommend_limit(limit: LimitType, current: float, peak: float) -> LimitRecommendation:
    """Compare one configured limit with its observed peak.

    A current value of zero or less means "unlimited" and is never at risk.
    """
    buffer = buffer_percent(limit)
    utilization = peak / current * 100 if current > 0 else 0.0
    risk = utilization_risk(utilization)
    return LimitRecommendation(
        limit_name=limit.name,
        current_value=current,
        observed_peak=peak,
        recommended_value=peak * (1 + buffer / 100),
        buffer_percent=buffer,
        utilization_percent=round(utilization, 2),
        risk=risk,
        reason=_REASONS[risk].format(u=utilization),
    )


def risk_score(recommendations: list[LimitRecommendation], missing: list[str]) -> float:
    """Weighted mean of per-limit risk scores plus a penalty per missing limit."""
    if not recommendations and not missing:
        return 0.0
    total = sum(RISK_SCORES[r.risk] * RISK_WEIGHTS[r.risk] for r in recommendations)
    weight = sum(RISK_WEIGHTS[r.risk] for r in recommendations)
    total += MISSING_LIMIT_PENALTY * len(missing)
    return total / weight if weight else total


# ──────────────────────────── Analyzer ────────────────────────────────────────


class LimitsAnalyzer:
    """Recommends per-tenant limits from discovered config and observed usage.

    Parameters
    ----------
    metrics : MetricsSource
        Anything with ``query(tenant, metric_name, time_range, cancel=...)``.
    limit_types : tuple[LimitType, ...]
        Limits to check.  Defaults to ``LIMIT_TYPES``.
    """

    def __init__(self, metrics: MetricsSource, limit_types: tuple[LimitType, ...] = LIMIT_TYPES) -> None:
        self.metrics = metrics
        self.limit_types = limit_types

    def analyze_tenant_limits(
        self,
        tenant: str,
        config_sources: Iterable[ConfigSource],
        now: datetime | None = None,
        cancel: threading.Event | None = None,
    ) -> TenantLimits:
        """Analyze one tenant.

        A metric that cannot be queried counts as a peak of zero and is named
        in ``unavailable_metrics``.  Timeouts and cancellation propagate.
        """
        now = now or datetime.now(timezone.utc)
        config = effective_config(tenant, config_sources)
        window = TimeRange(start=now - PEAK_WINDOW, end=now, step=PEAK_STEP)
        logger.info("Analyzing limits for %s (%d configured values)", tenant, len(config))

        peaks: dict[str, float] = {}
        unavailable: list[str] = []
        recommendations: list[LimitRecommendation] = []
        missing: list[str] = []
        for limit in self.limit_types:
            raw = lookup_limit(limit.name, config)
            if raw is None:
                missing.append(limit.name)
                continue
            current = _as_number(raw)
            if current is None:
                logger.debug("%s: %s=%r is not numeric, skipped", tenant, limit.name, raw)
                continue
            if limit.metric not in peaks:
                peaks[limit.metric] = self._peak(tenant, limit.metric, window, cancel, unavailable)
            recommendations.append(recommend_limit(limit, current, peaks[limit.metric]))

        return TenantLimits(
            tenant=tenant,
            analyzed_at=now,
            current_config=config,
            recommendations=recommendations,
            missing_limits=missing,
            unavailable_metrics=unavailable,
            risk_score=round(risk_score(recommendations, missing), 2),
        )

    def _peak(
        self,
        tenant: str,
        metric: str,
        window: TimeRange,
        cancel: threading.Event | None,
        unavailable: list[str],
    ) -> float:
        if cancel is not None and cancel.is_set():
            raise QueryCancelled(f"limits analysis for {tenant} cancelled before {metric}")
        try:
            series = self.metrics.query(tenant, metric, window, cancel=cancel)
        except MetricsQueryError as exc:
            logger.warning("No %s for %s: %s", metric, tenant, exc)
            unavailable.append(metric)
            return 0.0
        return max((v for s in series for v in s.values), default=0.0)

    def summarize(
        self,
        tenants: Iterable[str],
        config_sources: Iterable[ConfigSource],
        now: datetime | None = None,
        cancel: threading.Event | None = None,
    ) -> dict[str, TenantLimits]:
        """Analyze several tenants; a tenant that fails is logged and left out."""
        sources = list(config_sources)
        summary: dict[str, TenantLimits] = {}
        for tenant in tenants:
            try:
                summary[tenant] = self.analyze_tenant_limits(tenant, sources, now, cancel)
            except OperationCancelled:
                raise
            except MimirInsightsError as exc:
                logger.warning("Limits analysis for %s failed: %s", tenant, exc)
        return summary
