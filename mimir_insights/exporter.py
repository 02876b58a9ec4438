"""Render capacity reports as JSON, CSV, Markdown or plain text.

Every format is a pure transformation of an already-computed
``CapacityReport``; nothing is re-queried.
"""

from __future__ import annotations

import csv
import io
import logging
from importlib.resources import files as importlib_files
from pathlib import Path

from jinja2 import Environment, FileSystemLoader, select_autoescape

from mimir_insights.models import CapacityReport

logger = logging.getLogger(__name__)

FORMATS = ("json", "csv", "markdown", "text")

# Resolve the templates directory via importlib.resources so it works in
# both editable installs and built wheels / sdists.
_TEMPLATES_REF = importlib_files("mimir_insights") / "templates"

_GIB = 1024**3


def _gib(value: float) -> float:
    return value / _GIB


def _get_jinja_env() -> Environment:
    env = Environment(
        loader=FileSystemLoader(str(_TEMPLATES_REF)),
        autoescape=select_autoescape(default=False),
        trim_blocks=True,
        lstrip_blocks=True,
        keep_trailing_newline=True,
    )
    env.filters["gib"] = _gib
    return env


def _projections(report: CapacityReport) -> list[tuple[str, object]]:
    p = report.projections
    return [("next_week", p.next_week), ("next_month", p.next_month), ("next_quarter", p.next_quarter)]


def render_json(report: CapacityReport) -> str:
    return report.model_dump_json(indent=2)


def render_csv(report: CapacityReport) -> str:
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow(
        [
            "Tenant",
            "Report Type",
            "Generated At",
            "Ingestion Rate",
            "Active Series",
            "Memory Usage",
            "Rejected Samples",
            "Overall Risk",
        ]
    )
    writer.writerow(
        [
            report.tenant,
            report.kind.value,
            report.generated_at.isoformat(),
            f"{report.current_usage.ingestion_rate:.2f}",
            report.current_usage.active_series,
            f"{report.current_usage.memory_usage:.2f}",
            report.current_usage.rejected_samples,
            report.risk.overall_risk.value,
        ]
    )
    return buf.getvalue()


def render_markdown(report: CapacityReport) -> str:
    template = _get_jinja_env().get_template("capacity_report.md.j2")
    return template.render(report=report, projections=_projections(report))


def render_text(report: CapacityReport) -> str:
    """Return a human-readable text summary of the report."""
    usage = report.current_usage
    trends = report.trends
    lines: list[str] = []
    lines.append("=" * 60)
    lines.append(f"  CAPACITY REPORT: {report.tenant} ({report.kind.value})")
    lines.append("=" * 60)
    lines.append(f"  Generated:  {report.generated_at.isoformat()}")
    lines.append(f"  Window:     {report.time_range.start.isoformat()} → {report.time_range.end.isoformat()}")
    lines.append("")
    lines.append("  Current usage:")
    lines.append(f"    Ingestion rate    {usage.ingestion_rate:,.2f} samples/s")
    lines.append(f"    Active series     {usage.active_series:,}")
    lines.append(f"    Memory            {_gib(usage.memory_usage):.2f} GB")
    lines.append(f"    Rejected samples  {usage.rejected_samples:,}")
    lines.append("")
    lines.append("  Growth over window:")
    lines.append(f"    Ingestion  {trends.ingestion_growth_rate:+.1%}")
    lines.append(f"    Series     {trends.series_growth_rate:+.1%}")
    lines.append(f"    Memory     {trends.memory_growth_rate:+.1%}")
    lines.append(f"    Rejections {trends.rejection_trend}")
    lines.append("")
    lines.append("  Projections (linear):")
    for name, p in _projections(report):
        lines.append(
            f"    {name:<13} {p.ingestion_rate:,.2f} samples/s  {p.active_series:,} series  "
            f"{_gib(p.memory_usage):.2f} GB  ({p.confidence:.0%} confidence)"
        )
    lines.append("")
    lines.append(f"  Risk: {report.risk.overall_risk.value.upper()}")
    for factor, mitigation in zip(report.risk.risk_factors, report.risk.mitigations):
        lines.append(f"    • {factor} → {mitigation}")
    lines.append("")
    lines.append("  Recommendations:")
    for rec in report.recommendations:
        lines.append(f"    • {rec}")
    opt = report.optimization
    lines.append("")
    lines.append(
        f"  Suggested sizing: {opt.recommended_replicas} replicas, {opt.cpu_cores} CPU, "
        f"{opt.memory_gb} GB memory, {opt.storage_gb} GB storage"
    )
    lines.append("=" * 60)
    return "\n".join(lines)


_RENDERERS = {
    "json": render_json,
    "csv": render_csv,
    "markdown": render_markdown,
    "text": render_text,
}


def export_report(report: CapacityReport, fmt: str = "json") -> str:
    try:
        renderer = _RENDERERS[fmt.lower()]
    except KeyError:
        raise ValueError(f"Unsupported format '{fmt}'. Choose from: {', '.join(FORMATS)}") from None
    return renderer(report)


def write_report(report: CapacityReport, path: Path, fmt: str = "json") -> Path:
    """Export *report* to *path* and return the path written."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(export_report(report, fmt), encoding="utf-8")
    logger.info("Wrote %s", path)
    return path
