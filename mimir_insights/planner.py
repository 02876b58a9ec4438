"""Trend-based capacity planning for a single tenant.

Projections are a plain linear extrapolation, ``current * (1 + growth *
weight)``, with a fixed weight and confidence per horizon.  This is not a
statistical forecast: it restates the observed growth over the report window
and says how far to trust it.

Reports are recomputed on every call from the latest metrics; nothing is
cached.  A metrics timeout propagates to the caller; any other per-metric
query error is logged and that metric is treated as having no data.
Setting the optional cancellation event stops a report before its next
query with ``QueryCancelled``.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Protocol

from mimir_insights.errors import MetricsQueryError, QueryCancelled
from mimir_insights.models import (
    CapacityReport,
    Projection,
    ProjectionData,
    ReportKind,
    ResourceOptimization,
    RiskAssessment,
    RiskLevel,
    SeasonalPattern,
    TimeRange,
    TimeSeries,
    TrendAnalysis,
    UsageMetrics,
)

logger = logging.getLogger(__name__)


class MetricsSource(Protocol):
    def query(
        self,
        tenant: str,
        metric_name: str,
        time_range: TimeRange,
        *,
        cancel: threading.Event | None = None,
    ) -> list[TimeSeries]: ...


# ──────────────────────────── Tunables ────────────────────────────────────────

REPORT_WINDOWS: dict[ReportKind, timedelta] = {
    ReportKind.WEEKLY: timedelta(days=7),
    ReportKind.MONTHLY: timedelta(days=30),
}
REPORT_STEP = "1h"

PLANNED_METRICS = ("ingestion_rate", "active_series", "memory_usage", "rejected_samples")

TREND_THRESHOLD = 0.10

# horizon → (growth weight, confidence)
HORIZONS: dict[str, tuple[float, float]] = {
    "next_week": (0.1, 0.85),
    "next_month": (0.4, 0.70),
    "next_quarter": (1.2, 0.60),
}

MEMORY_GROWTH_RISK = 0.3
INGESTION_GROWTH_RISK = 0.5
INGESTION_GROWTH_ADVICE = 0.2
SERIES_GROWTH_ADVICE = 0.3
REJECTED_SAMPLES_ADVICE = 1000

SEASONAL_PATTERNS = (
    SeasonalPattern(kind="daily", peak_hours=[9, 10, 11, 14, 15, 16], multiplier=1.3),
    SeasonalPattern(kind="weekly", peak_days=[1, 2, 3, 4, 5], multiplier=1.2),
)

_RISK_ORDER = [RiskLevel.LOW, RiskLevel.MEDIUM, RiskLevel.HIGH]


# ──────────────────────────── Series math ─────────────────────────────────────


def latest_value(series: list[TimeSeries]) -> float:
    """Most recent sample of the first series (0.0 when there is none)."""
    for s in series:
        if s.points:
            return s.points[-1].value
    return 0.0


def growth_rate(series: list[TimeSeries]) -> float:
    """``(last - first) / first`` over the first non-empty series.

    Zero when there are fewer than two points or the first value is not
    positive, so a series starting at 0 never divides by zero.
    """
    for s in series:
        if not s.points:
            continue
        if len(s.points) < 2:
            return 0.0
        first, last = s.points[0].value, s.points[-1].value
        if first <= 0:
            return 0.0
        return (last - first) / first
    return 0.0


def classify_trend(rate: float, threshold: float = TREND_THRESHOLD) -> str:
    if rate > threshold:
        return "increasing"
    if rate < -threshold:
        return "decreasing"
    return "stable"


def escalate(current: RiskLevel, level: RiskLevel) -> RiskLevel:
    """Return the higher of two risk levels; risk never goes down."""
    return max(current, level, key=_RISK_ORDER.index)


# ──────────────────────────── Planner ─────────────────────────────────────────


class CapacityPlanner:
    """Builds ``CapacityReport``s from a metrics source.

    Parameters
    ----------
    metrics : MetricsSource
        Anything with ``query(tenant, metric_name, time_range)``, normally a
        ``MetricsClient``.
    """

    def __init__(self, metrics: MetricsSource) -> None:
        self.metrics = metrics

    def weekly_report(self, tenant: str, cancel: threading.Event | None = None) -> CapacityReport:
        return self.generate_report(tenant, ReportKind.WEEKLY, cancel=cancel)

    def monthly_report(self, tenant: str, cancel: threading.Event | None = None) -> CapacityReport:
        return self.generate_report(tenant, ReportKind.MONTHLY, cancel=cancel)

    def generate_report(
        self,
        tenant: str,
        kind: ReportKind = ReportKind.WEEKLY,
        now: datetime | None = None,
        cancel: threading.Event | None = None,
    ) -> CapacityReport:
        kind = ReportKind(kind)
        now = now or datetime.now(timezone.utc)
        time_range = TimeRange(start=now - REPORT_WINDOWS[kind], end=now, step=REPORT_STEP)
        logger.info("Generating %s capacity report for %s", kind.value, tenant)

        data = self._fetch(tenant, time_range, cancel)
        usage = analyze_usage(data)
        trends = analyze_trends(data)
        projections = project(usage, trends)
        risk = assess_risk(usage, trends)
        return CapacityReport(
            tenant=tenant,
            kind=kind,
            generated_at=now,
            time_range=time_range,
            current_usage=usage,
            trends=trends,
            projections=projections,
            recommendations=recommend(usage, trends, risk),
            risk=risk,
            optimization=optimize_resources(usage, projections),
        )

    def _fetch(
        self, tenant: str, time_range: TimeRange, cancel: threading.Event | None
    ) -> dict[str, list[TimeSeries]]:
        data: dict[str, list[TimeSeries]] = {}
        for metric in PLANNED_METRICS:
            if cancel is not None and cancel.is_set():
                raise QueryCancelled(f"capacity report for {tenant} cancelled before {metric}")
            try:
                data[metric] = self.metrics.query(tenant, metric, time_range, cancel=cancel)
            except MetricsQueryError as exc:
                logger.warning("No %s for %s: %s", metric, tenant, exc)
                data[metric] = []
        return data


# ──────────────────────────── Report sections ─────────────────────────────────


def analyze_usage(data: dict[str, list[TimeSeries]]) -> UsageMetrics:
    return UsageMetrics(
        ingestion_rate=latest_value(data.get("ingestion_rate", [])),
        active_series=int(latest_value(data.get("active_series", []))),
        memory_usage=latest_value(data.get("memory_usage", [])),
        rejected_samples=int(latest_value(data.get("rejected_samples", []))),
    )


def analyze_trends(data: dict[str, list[TimeSeries]]) -> TrendAnalysis:
    return TrendAnalysis(
        ingestion_growth_rate=growth_rate(data.get("ingestion_rate", [])),
        series_growth_rate=growth_rate(data.get("active_series", [])),
        memory_growth_rate=growth_rate(data.get("memory_usage", [])),
        rejection_trend=classify_trend(growth_rate(data.get("rejected_samples", []))),
        seasonal_patterns=[p.model_copy() for p in SEASONAL_PATTERNS],
    )


def project(usage: UsageMetrics, trends: TrendAnalysis) -> ProjectionData:
    horizons: dict[str, Projection] = {}
    for horizon, (weight, confidence) in HORIZONS.items():
        horizons[horizon] = Projection(
            ingestion_rate=usage.ingestion_rate * (1 + trends.ingestion_growth_rate * weight),
            active_series=int(usage.active_series * (1 + trends.series_growth_rate * weight)),
            memory_usage=usage.memory_usage * (1 + trends.memory_growth_rate * weight),
            confidence=confidence,
        )
    return ProjectionData(**horizons)


def assess_risk(usage: UsageMetrics, trends: TrendAnalysis) -> RiskAssessment:
    risk = RiskAssessment(
        alert_thresholds={
            "ingestion_rate": usage.ingestion_rate * 0.8,
            "memory_usage": usage.memory_usage * 0.8,
            "rejected_samples": usage.rejected_samples * 1.5,
        }
    )

    if trends.ingestion_growth_rate > INGESTION_GROWTH_RISK:
        risk.overall_risk = escalate(risk.overall_risk, RiskLevel.HIGH)
        risk.risk_factors.append("High ingestion growth rate")
        risk.mitigations.append("Consider increasing ingestion rate limits")

    if trends.memory_growth_rate > MEMORY_GROWTH_RISK:
        risk.overall_risk = escalate(risk.overall_risk, RiskLevel.MEDIUM)
        risk.risk_factors.append("Increasing memory usage trend")
        risk.mitigations.append("Monitor memory usage and consider scaling")

    if trends.rejection_trend == "increasing":
        risk.overall_risk = escalate(risk.overall_risk, RiskLevel.HIGH)
        risk.risk_factors.append("Increasing sample rejections")
        risk.mitigations.append("Review and adjust tenant limits")

    return risk


def recommend(usage: UsageMetrics, trends: TrendAnalysis, risk: RiskAssessment) -> list[str]:
    recs: list[str] = []
    if trends.ingestion_growth_rate > INGESTION_GROWTH_ADVICE:
        recs.append("Consider increasing ingestion rate limits by 20%")
    if trends.series_growth_rate > SERIES_GROWTH_ADVICE:
        recs.append("Monitor series cardinality and consider increasing max_global_series_per_user")
    if usage.rejected_samples > REJECTED_SAMPLES_ADVICE:
        recs.append("Investigate causes of sample rejections")
    if risk.overall_risk == RiskLevel.HIGH:
        recs.append("Immediate attention required - review all limits")
    if not recs:
        recs.append("Current capacity appears adequate")
    return recs


def optimize_resources(usage: UsageMetrics, projections: ProjectionData) -> ResourceOptimization:
    opt = ResourceOptimization(
        cost_optimizations=[
            "Review retention periods for low-value series",
            "Drop unused high-cardinality labels at the agent",
            "Right-size ingester replicas during off-peak hours",
        ]
    )
    month = projections.next_month
    if month.ingestion_rate > usage.ingestion_rate * 1.5:
        opt.recommended_replicas = 3
        opt.cpu_cores = 1.0
        opt.memory_gb = 2.0
    if month.memory_usage > usage.memory_usage * 2:
        opt.memory_gb *= 1.5
        opt.storage_gb *= 1.5
    return opt
