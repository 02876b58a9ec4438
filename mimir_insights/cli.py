"""CLI entry-point for mimir-insights."""

from __future__ import annotations

import json
import logging
import sys
import time
from pathlib import Path

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from mimir_insights import __version__
from mimir_insights.cache import CacheManager
from mimir_insights.cluster import ClusterClient
from mimir_insights.config import Settings
from mimir_insights.discovery import DiscoveryEngine
from mimir_insights.drift import BaselineStore, DriftDetector
from mimir_insights.errors import MimirInsightsError
from mimir_insights.exporter import FORMATS, export_report, write_report
from mimir_insights.limits import LimitsAnalyzer
from mimir_insights.metrics import MetricsClient
from mimir_insights.models import (
    CacheStatus,
    DiscoveryResult,
    DriftReport,
    DriftStatus,
    ImpactLevel,
    ReportKind,
    TenantLimits,
)
from mimir_insights.planner import CapacityPlanner

console = Console()


def _configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s  %(levelname)-8s  %(name)s  %(message)s",
        datefmt="%H:%M:%S",
    )
    # Quieten noisy libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def _fail(exc: Exception) -> None:
    console.print(f"[red bold]Error:[/red bold] {exc}")
    sys.exit(1)


DEFAULT_BASELINE = Path(".mimir-insights") / "baselines.json"


def _cluster(settings: Settings) -> ClusterClient:
    """A cluster client that has answered once; raises if the cluster is unreachable."""
    client = ClusterClient(
        kubeconfig=settings.kubeconfig,
        context=settings.kube_context,
        timeout=settings.cluster_timeout,
    )
    client.require_connectivity()
    return client


def _engine(settings: Settings) -> DiscoveryEngine:
    return DiscoveryEngine(_cluster(settings), settings)


def _confidence_style(score: float) -> str:
    if score >= 0.7:
        return f"[green]{score:.2f}[/green]"
    if score >= 0.5:
        return f"[yellow]{score:.2f}[/yellow]"
    return f"[red]{score:.2f}[/red]"


def _print_components(result: DiscoveryResult) -> None:
    console.print(f"\n[bold]Namespace root:[/bold] {result.namespace_root or '-'}")
    if not result.components:
        console.print("[yellow]No backend components found.[/yellow]")
    else:
        table = Table(title="Components", show_lines=False)
        table.add_column("Name", style="bold")
        table.add_column("Namespace")
        table.add_column("Type")
        table.add_column("Replicas", justify="right")
        table.add_column("Version")
        table.add_column("Confidence", justify="right")
        for c in result.components:
            table.add_row(
                c.name,
                c.namespace,
                c.component_type.value,
                str(c.replicas),
                c.version,
                _confidence_style(c.confidence),
            )
        console.print(table)

    if result.config_sources:
        table = Table(title="Configuration Sources")
        table.add_column("Name", style="bold")
        table.add_column("Kind")
        table.add_column("Tenant overrides", justify="right")
        table.add_column("Checksum")
        for src in result.config_sources:
            table.add_row(src.name, src.kind.value, str(len(src.tenant_overrides)), src.checksum[:12])
        console.print(table)


def _print_tenants(result: DiscoveryResult) -> None:
    if not result.tenants:
        console.print("[yellow]No tenants found.[/yellow]")
        return
    table = Table(title="Tenants")
    table.add_column("Tenant", style="bold")
    table.add_column("Namespace")
    table.add_column("Source")
    table.add_column("Data")
    table.add_column("Evidence")
    for t in result.tenants:
        data = "[green]yes[/green]" if t.has_real_data else "[dim]no[/dim]"
        table.add_row(t.name, t.namespace or "-", t.source.value, data, ", ".join(t.evidence[:3]))
    console.print(table)


_RISK_STYLE = {
    ImpactLevel.LOW: "green",
    ImpactLevel.MEDIUM: "yellow",
    ImpactLevel.HIGH: "red",
    ImpactLevel.CRITICAL: "red bold",
}


def _risk(level: ImpactLevel) -> str:
    style = _RISK_STYLE[level]
    return f"[{style}]{level.value}[/{style}]"


def _print_drift(report: DriftReport) -> None:
    changed = [e for e in report.entries if e.status != DriftStatus.NO_DRIFT]
    console.print(
        f"\n[bold]Checked {len(report.entries)} ConfigMaps:[/bold] "
        f"{report.count(DriftStatus.DRIFTED)} drifted, {report.count(DriftStatus.NEW)} new, "
        f"{report.count(DriftStatus.DELETED)} deleted"
    )
    for ns in report.unreadable_namespaces:
        console.print(f"[yellow]Could not list ConfigMaps in {ns}[/yellow]")
    if not changed:
        console.print("[green]No drift.[/green]")
        return
    table = Table(title="Configuration Drift")
    table.add_column("ConfigMap", style="bold")
    table.add_column("Status")
    table.add_column("Risk")
    table.add_column("Changes")
    for e in changed:
        keys = ", ".join(c.key for c in e.changes[:4])
        if len(e.changes) > 4:
            keys += f" (+{len(e.changes) - 4})"
        table.add_row(f"{e.namespace}/{e.name}", e.status.value, _risk(e.risk), keys or "-")
    console.print(table)


def _print_limits(results: dict[str, TenantLimits]) -> None:
    if not results:
        console.print("[yellow]No tenants analyzed.[/yellow]")
        return
    for tenant, limits in results.items():
        table = Table(title=f"Limits: {tenant} (risk score {limits.risk_score:.1f})")
        table.add_column("Limit", style="bold")
        table.add_column("Current", justify="right")
        table.add_column("Peak", justify="right")
        table.add_column("Recommended", justify="right")
        table.add_column("Utilization", justify="right")
        table.add_column("Risk")
        for r in limits.recommendations:
            table.add_row(
                r.limit_name,
                f"{r.current_value:,.0f}",
                f"{r.observed_peak:,.0f}",
                f"{r.recommended_value:,.0f}",
                f"{r.utilization_percent:.1f}%",
                _risk(r.risk),
            )
        console.print(table)
        if limits.missing_limits:
            console.print(f"  [yellow]Not configured:[/yellow] {', '.join(limits.missing_limits)}")
        if limits.unavailable_metrics:
            console.print(f"  [yellow]No data for:[/yellow] {', '.join(limits.unavailable_metrics)}")


def _print_status(status: CacheStatus) -> None:
    table = Table(title="Cache Status")
    table.add_column("Cache", style="bold")
    table.add_column("State")
    table.add_column("Items", justify="right")
    table.add_column("Age (s)", justify="right")
    table.add_column("TTL (s)", justify="right")
    table.add_column("Last error")
    for name, s in (("components", status.components), ("tenants", status.tenants)):
        state = {
            "populated": "[green]populated[/green]",
            "stale": "[yellow]stale[/yellow]",
            "empty": "[dim]empty[/dim]",
        }.get(s.state, s.state)
        age = "-" if s.age_seconds is None else f"{s.age_seconds:.0f}"
        table.add_row(name, state, str(s.item_count), age, f"{s.ttl_seconds:.0f}", s.last_error[:60])
    console.print(table)

    mem = status.memory
    console.print(
        f"  Memory: [cyan]{mem.current_bytes:,}[/cyan] / {mem.max_bytes:,} bytes "
        f"({mem.usage_percent:.1f}%)  Items: {mem.total_items}/{mem.max_items}  "
        f"Evictions: {mem.eviction_count}  Policy: {mem.policy.value}"
    )


@click.group()
@click.version_option(version=__version__, prog_name="mimir-insights")
def main() -> None:
    """mimir-insights: discovery, caching and capacity planning for Mimir."""


@main.command()
@click.option("--kubeconfig", default="", help="Path to kubeconfig file (default: ~/.kube/config).")
@click.option("--context", "kube_context", default="", help="Kubernetes context to use.")
@click.option("--namespace", "-n", "namespaces", multiple=True, help="Restrict to these namespaces.")
@click.option("--json", "as_json", is_flag=True, help="Print the discovery result as JSON.")
@click.option("--verbose", "-v", is_flag=True, help="Show debug logging.")
def discover(
    kubeconfig: str,
    kube_context: str,
    namespaces: tuple[str, ...],
    as_json: bool,
    verbose: bool,
) -> None:
    """Discover backend components, the namespace root and config sources."""
    _configure_logging(verbose)
    settings = Settings(kube_context=kube_context, namespaces=list(namespaces), verbose=verbose)
    if kubeconfig:
        settings.kubeconfig = kubeconfig

    if not as_json:
        console.print(Panel("Discovering backend components", style="bold cyan"))
    try:
        topology = _engine(settings).component_topology()
    except MimirInsightsError as exc:
        _fail(exc)
        return

    result = DiscoveryResult(
        components=topology.components,
        config_sources=topology.config_sources,
        namespace_root=topology.namespace_root,
    )
    if as_json:
        click.echo(result.model_dump_json(indent=2))
        return
    _print_components(result)


@main.command()
@click.option("--kubeconfig", default="", help="Path to kubeconfig file (default: ~/.kube/config).")
@click.option("--context", "kube_context", default="", help="Kubernetes context to use.")
@click.option("--json", "as_json", is_flag=True, help="Print tenants as JSON.")
@click.option("--verbose", "-v", is_flag=True, help="Show debug logging.")
def tenants(kubeconfig: str, kube_context: str, as_json: bool, verbose: bool) -> None:
    """Discover tenants from labels, agent configs, overrides and names."""
    _configure_logging(verbose)
    settings = Settings(kube_context=kube_context, verbose=verbose)
    if kubeconfig:
        settings.kubeconfig = kubeconfig

    try:
        topology = _engine(settings).tenant_topology()
    except MimirInsightsError as exc:
        _fail(exc)
        return

    if as_json:
        click.echo(topology.model_dump_json(indent=2))
        return
    _print_tenants(DiscoveryResult(tenants=topology.tenants))


@main.command()
@click.argument("tenant")
@click.option(
    "--metrics-url",
    default="",
    help="Prometheus-compatible query URL (or set MIMIR_INSIGHTS_METRICS_URL env var).",
)
@click.option("--ca-cert", default="", help="CA bundle for TLS verification.")
@click.option(
    "--kind",
    type=click.Choice([k.value for k in ReportKind]),
    default=ReportKind.WEEKLY.value,
    show_default=True,
    help="Report window.",
)
@click.option(
    "--format", "fmt", type=click.Choice(FORMATS), default="text", show_default=True, help="Output format."
)
@click.option("--output", "-o", "output", default="", help="Write the report to this file instead of stdout.")
@click.option("--verbose", "-v", is_flag=True, help="Show debug logging.")
def capacity(
    tenant: str,
    metrics_url: str,
    ca_cert: str,
    kind: str,
    fmt: str,
    output: str,
    verbose: bool,
) -> None:
    """Generate a capacity report for TENANT."""
    _configure_logging(verbose)
    settings = Settings(ca_cert=ca_cert, verbose=verbose)
    if metrics_url:
        settings.metrics_url = metrics_url

    try:
        settings.validate_metrics_url()
        with MetricsClient(settings.metrics_url, timeout=settings.query_timeout, ca_cert=settings.ca_cert) as client:
            report = CapacityPlanner(client).generate_report(tenant, ReportKind(kind))
    except (MimirInsightsError, ValueError) as exc:
        _fail(exc)
        return

    if output:
        path = write_report(report, Path(output), fmt)
        console.print(f"  Report saved to [green]{path}[/green]")
        return
    click.echo(export_report(report, fmt))


@main.command()
@click.option("--kubeconfig", default="", help="Path to kubeconfig file (default: ~/.kube/config).")
@click.option("--context", "kube_context", default="", help="Kubernetes context to use.")
@click.option("--interval", default=30.0, type=float, show_default=True, help="Seconds between refreshes.")
@click.option("--iterations", default=0, type=int, help="Stop after N status prints (0 = until Ctrl-C).")
@click.option("--max-memory", default=0, type=int, help="Cache budget in bytes (0 = size from system memory).")
@click.option("--metrics-url", default="", help="Also collect per-tenant usage from this query URL.")
@click.option("--verbose", "-v", is_flag=True, help="Show debug logging.")
def watch(
    kubeconfig: str,
    kube_context: str,
    interval: float,
    iterations: int,
    max_memory: int,
    metrics_url: str,
    verbose: bool,
) -> None:
    """Run background collection and print cache status every interval.

    Examples:

      mimir-insights watch --interval 10

      mimir-insights watch --iterations 3 --max-memory 104857600
    """
    _configure_logging(verbose)
    settings = Settings(
        kube_context=kube_context,
        collection_interval=interval,
        memory_check_interval=interval,
        max_memory_bytes=max_memory or None,
        verbose=verbose,
    )
    if kubeconfig:
        settings.kubeconfig = kubeconfig

    console.print(Panel(f"Watching cluster (refresh every {interval:g}s)", style="bold cyan"))
    try:
        engine = _engine(settings)
    except MimirInsightsError as exc:
        _fail(exc)
        return

    metrics = MetricsClient(metrics_url, timeout=settings.query_timeout) if metrics_url else None
    manager = CacheManager(engine, metrics=metrics)
    printed = 0
    try:
        with manager:
            while iterations <= 0 or printed < iterations:
                time.sleep(interval)
                _print_status(manager.status())
                if metrics is not None:
                    console.print(f"  Tenant metrics: {len(manager.get_all_tenant_metrics())} tenants")
                printed += 1
    except KeyboardInterrupt:
        console.print("\n[dim]Stopped.[/dim]")
    finally:
        if metrics is not None:
            metrics.close()

    final = manager.snapshot()
    _print_components(final)
    _print_tenants(final)


@main.command()
@click.option("--kubeconfig", default="", help="Path to kubeconfig file (default: ~/.kube/config).")
@click.option("--context", "kube_context", default="", help="Kubernetes context to use.")
@click.option("--namespace", "-n", "namespaces", multiple=True, help="Restrict to these namespaces.")
@click.option(
    "--baseline",
    "baseline_path",
    default=str(DEFAULT_BASELINE),
    show_default=True,
    help="JSON file holding the baselines between runs.",
)
@click.option("--init", "init_baseline", is_flag=True, help="Record the current state as the baseline and exit.")
@click.option("--json", "as_json", is_flag=True, help="Print the drift report as JSON.")
@click.option("--verbose", "-v", is_flag=True, help="Show debug logging.")
def drift(
    kubeconfig: str,
    kube_context: str,
    namespaces: tuple[str, ...],
    baseline_path: str,
    init_baseline: bool,
    as_json: bool,
    verbose: bool,
) -> None:
    """Compare backend ConfigMaps against the stored baseline.

    The first run records every monitored ConfigMap as new.  Each later
    run reports what changed since the previous one.

    Examples:

      mimir-insights drift --init -n mimir

      mimir-insights drift -n mimir --json
    """
    _configure_logging(verbose)
    settings = Settings(kube_context=kube_context, verbose=verbose)
    if kubeconfig:
        settings.kubeconfig = kubeconfig

    path = Path(baseline_path)
    try:
        store = BaselineStore.load(path)
        detector = DriftDetector(_cluster(settings), store)
        if init_baseline:
            count = detector.create_baseline(list(namespaces))
        else:
            report = detector.detect_drift(list(namespaces))
        store.save(path)
    except (MimirInsightsError, OSError, ValueError) as exc:
        _fail(exc)
        return

    if init_baseline:
        console.print(f"  Baseline of [cyan]{count}[/cyan] ConfigMaps saved to [green]{path}[/green]")
        return
    if as_json:
        click.echo(report.model_dump_json(indent=2))
        return
    _print_drift(report)


@main.command()
@click.argument("tenants", nargs=-1)
@click.option(
    "--metrics-url",
    default="",
    help="Prometheus-compatible query URL (or set MIMIR_INSIGHTS_METRICS_URL env var).",
)
@click.option("--ca-cert", default="", help="CA bundle for TLS verification.")
@click.option("--kubeconfig", default="", help="Path to kubeconfig file (default: ~/.kube/config).")
@click.option("--context", "kube_context", default="", help="Kubernetes context to use.")
@click.option("--json", "as_json", is_flag=True, help="Print the analysis as JSON.")
@click.option("--verbose", "-v", is_flag=True, help="Show debug logging.")
def limits(
    tenants: tuple[str, ...],
    metrics_url: str,
    ca_cert: str,
    kubeconfig: str,
    kube_context: str,
    as_json: bool,
    verbose: bool,
) -> None:
    """Compare configured limits of TENANTS with their observed peaks.

    With no TENANTS, every discovered tenant is analyzed.
    """
    _configure_logging(verbose)
    settings = Settings(kube_context=kube_context, ca_cert=ca_cert, verbose=verbose)
    if kubeconfig:
        settings.kubeconfig = kubeconfig
    if metrics_url:
        settings.metrics_url = metrics_url

    try:
        settings.validate_metrics_url()
        engine = _engine(settings)
        sources = engine.component_topology().config_sources
        names = list(tenants) or [t.name for t in engine.tenant_topology().tenants]
        with MetricsClient(settings.metrics_url, timeout=settings.query_timeout, ca_cert=settings.ca_cert) as client:
            results = LimitsAnalyzer(client).summarize(names, sources)
    except (MimirInsightsError, ValueError) as exc:
        _fail(exc)
        return

    if as_json:
        click.echo(json.dumps({t: r.model_dump(mode="json") for t, r in results.items()}, indent=2))
        return
    _print_limits(results)


if __name__ == "__main__":
    main()
