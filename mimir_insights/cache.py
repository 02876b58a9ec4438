"""Dual-TTL cache over discovery results with background collection.

Two topologies are cached independently: components (structural, long TTL)
and tenants (volatile, short TTL).  Each goes Empty → Populated → Stale →
Populated as refreshes succeed.  A refresh that fails after the first
population leaves the stale value in place and serves it with a warning; a
failure on first population propagates.

Fresh values are stored only if the memory budget admits them.  A rejected
value is still returned to the caller, just not cached, so the next call
tries again.

Payloads are frozen models with tuple collections, so every reader can share
the cached object.

When a metrics source is given, each collection cycle also records the
latest usage of every discovered tenant over four look-back ranges.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Generic, TypeVar

from mimir_insights.config import Settings
from mimir_insights.discovery import DiscoveryEngine
from mimir_insights.errors import (
    AdmissionRejected,
    MetricsQueryError,
    MimirInsightsError,
    OperationCancelled,
    QueryCancelled,
    QueryTimeout,
    TotalDiscoveryFailure,
)
from mimir_insights.memory import MemoryManager, estimate_size
from mimir_insights.models import (
    CacheStatus,
    ComponentTopology,
    DiscoveryResult,
    TenantMetrics,
    TenantTopology,
    TimeRange,
    TopologyCacheStatus,
)
from mimir_insights.planner import MetricsSource, latest_value

logger = logging.getLogger(__name__)

T = TypeVar("T")

Loader = Callable[[threading.Event | None], T]

TENANT_METRIC_RANGES: dict[str, timedelta] = {
    "1h": timedelta(hours=1),
    "6h": timedelta(hours=6),
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
}
TENANT_METRIC_STEP = "1m"
TENANT_METRICS = ("ingestion_rate", "active_series", "rejected_samples", "memory_usage")
TENANT_METRICS_CATEGORY = "tenant_metrics"


@dataclass
class CacheEntry(Generic[T]):
    """A cached payload with its creation time and estimated size."""

    payload: T
    created_at: float  # clock() reading, for TTL math
    created_wall: datetime
    size_bytes: int


class TopologyCache(Generic[T]):
    """One independently-TTL'd cache slot.

    Parameters
    ----------
    name : str
        Key under which the entry is accounted in the memory budget.
    category : str
        Memory-budget category (``"component"`` or ``"tenant"``).
    ttl : float
        Seconds a value stays fresh.
    loader : Callable
        Runs one discovery cycle; receives the cancellation event.
    count : Callable
        Number of items in a payload, for status reporting.
    """

    def __init__(
        self,
        name: str,
        category: str,
        ttl: float,
        loader: Loader[T],
        memory: MemoryManager,
        count: Callable[[T], int],
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.category = category
        self.ttl = ttl
        self._loader = loader
        self._memory = memory
        self._count = count
        self._clock = clock

        self._lock = threading.RLock()  # guards _entry and last_error
        self._entry: CacheEntry[T] | None = None
        self.last_error = ""
        memory.register_evictor(category, self._on_evicted)

    def peek(self) -> CacheEntry[T] | None:
        with self._lock:
            return self._entry

    def _fresh(self, entry: CacheEntry[T] | None) -> bool:
        return entry is not None and self._clock() - entry.created_at < self.ttl

    def get(self, cancel: threading.Event | None = None) -> T:
        """Serve the cached value while fresh, otherwise refresh synchronously."""
        entry = self.peek()
        if entry is not None and self._fresh(entry):
            self._memory.touch(self.category, self.name)
            return entry.payload
        return self._refresh(cancel, serve_stale=True)

    def force_refresh(self, cancel: threading.Event | None = None) -> T:
        """Rediscover and replace regardless of TTL; errors propagate."""
        return self._refresh(cancel, serve_stale=False)

    def _refresh(self, cancel: threading.Event | None, serve_stale: bool) -> T:
        try:
            payload = self._loader(cancel)
        except TotalDiscoveryFailure as exc:
            with self._lock:
                self.last_error = str(exc)
                prior = self._entry
            if serve_stale and prior is not None:
                logger.warning(
                    "%s refresh failed, serving stale data (%.0fs old): %s",
                    self.name,
                    self._clock() - prior.created_at,
                    exc,
                )
                return prior.payload
            raise
        self._store(payload)
        return payload

    def _store(self, payload: T) -> bool:
        size = estimate_size(payload)
        # Admit and swap under _lock so an evictor callback sees either the
        # old entry or the new one, never a new entry that is not accounted.
        with self._lock:
            try:
                self._memory.admit(self.category, self.name, size, ttl=self.ttl)
            except AdmissionRejected as exc:
                logger.warning("%s not cached: %s", self.name, exc)
                self.last_error = str(exc)
                return False
            self._entry = CacheEntry(payload, self._clock(), datetime.now(timezone.utc), size)
            self.last_error = ""
            # Evicted between admit and swap (same-thread callback).
            if not self._memory.is_admitted(self.category, self.name):
                self._entry = None
                self.last_error = "evicted before it could be cached"
                logger.info("%s evicted while being stored", self.name)
                return False
        logger.debug("%s cached (%d bytes)", self.name, size)
        return True

    def _on_evicted(self, key: str) -> None:
        if key != self.name:
            return
        with self._lock:
            # A refresh may have re-admitted the key since eviction was decided.
            if not self._memory.is_admitted(self.category, self.name):
                self._entry = None
                logger.info("%s dropped by memory eviction", self.name)

    def status(self) -> TopologyCacheStatus:
        with self._lock:
            entry = self._entry
            error = self.last_error
        if entry is None:
            return TopologyCacheStatus(ttl_seconds=self.ttl, last_error=error)
        age = self._clock() - entry.created_at
        valid = age < self.ttl
        return TopologyCacheStatus(
            cached=True,
            state="populated" if valid else "stale",
            last_updated=entry.created_wall,
            ttl_seconds=self.ttl,
            age_seconds=round(age, 3),
            is_valid=valid,
            item_count=self._count(entry.payload),
            last_error=error,
        )


class CacheManager:
    """Owns the component and tenant caches and the background collector.

    Parameters
    ----------
    engine : DiscoveryEngine
        Source of fresh topology.
    memory : MemoryManager
        Budget both caches are admitted against.  Built from *settings* if omitted.
    settings : Settings
        TTLs and the collection interval.  Defaults to ``engine.settings``.
    metrics : MetricsSource
        Optional.  When set, background collection also gathers per-tenant
        usage (see ``collect_tenant_metrics``).
    """

    def __init__(
        self,
        engine: DiscoveryEngine,
        memory: MemoryManager | None = None,
        settings: Settings | None = None,
        clock: Callable[[], float] = time.monotonic,
        metrics: MetricsSource | None = None,
    ) -> None:
        self.engine = engine
        self.metrics = metrics
        self.settings = settings or engine.settings
        self.memory = memory or MemoryManager.from_settings(self.settings)
        self.components: TopologyCache[ComponentTopology] = TopologyCache(
            "components",
            "component",
            self.settings.component_ttl,
            engine.component_topology,
            self.memory,
            count=lambda p: len(p.components),
            clock=clock,
        )
        self.tenants: TopologyCache[TenantTopology] = TopologyCache(
            "tenants",
            "tenant",
            self.settings.tenant_ttl,
            engine.tenant_topology,
            self.memory,
            count=lambda p: len(p.tenants),
            clock=clock,
        )
        self._metrics_lock = threading.RLock()  # guards _tenant_metrics
        self._tenant_metrics: dict[str, TenantMetrics] = {}
        self.memory.register_evictor(TENANT_METRICS_CATEGORY, self._on_tenant_metrics_evicted)
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    # ── On-demand access ──────────────────────────────────────────────────

    def get_components(self) -> ComponentTopology:
        return self.components.get()

    def get_tenants(self) -> TenantTopology:
        return self.tenants.get()

    def force_refresh_components(self) -> ComponentTopology:
        return self.components.force_refresh()

    def force_refresh_tenants(self) -> TenantTopology:
        return self.tenants.force_refresh()

    def refresh_all(self, cancel: threading.Event | None = None) -> DiscoveryResult:
        """Refresh both caches concurrently.

        A failure on one side is logged and the other side is still stored.
        Raises ``TotalDiscoveryFailure`` only if both fail.
        """
        caches = {"components": self.components, "tenants": self.tenants}
        with ThreadPoolExecutor(max_workers=2, thread_name_prefix="refresh") as pool:
            futures = {name: pool.submit(cache.force_refresh, cancel) for name, cache in caches.items()}

        failures: list[MimirInsightsError] = []
        for name, future in futures.items():
            try:
                future.result()
            except OperationCancelled:
                raise
            except MimirInsightsError as exc:
                logger.warning("Refresh of %s failed: %s", name, exc)
                failures.append(exc)
        if len(failures) == len(futures):
            raise TotalDiscoveryFailure("refresh_all", failures)
        return self.snapshot()

    def snapshot(self) -> DiscoveryResult:
        """Current cached view, without triggering discovery."""
        comp = self.components.peek()
        ten = self.tenants.peek()
        stamps = [e.created_wall for e in (comp, ten) if e is not None]
        return DiscoveryResult(
            components=list(comp.payload.components) if comp else [],
            tenants=list(ten.payload.tenants) if ten else [],
            config_sources=list(comp.payload.config_sources) if comp else [],
            namespace_root=comp.payload.namespace_root if comp else "",
            last_updated=max(stamps) if stamps else None,
        )

    # ── Tenant metrics ────────────────────────────────────────────────────

    def collect_tenant_metrics(
        self,
        tenant: str,
        cancel: threading.Event | None = None,
        now: datetime | None = None,
    ) -> TenantMetrics:
        """Query the latest usage of *tenant* over each range and cache it.

        A failing query is recorded in ``collection_errors`` and the rest
        still run.  Cancellation propagates.
        """
        if self.metrics is None:
            raise MimirInsightsError("no metrics source configured")
        now = now or datetime.now(timezone.utc)
        values: dict[str, dict[str, float]] = {m: {} for m in TENANT_METRICS}
        errors: list[str] = []
        for range_name, span in TENANT_METRIC_RANGES.items():
            window = TimeRange(start=now - span, end=now, step=TENANT_METRIC_STEP)
            for metric in TENANT_METRICS:
                if cancel is not None and cancel.is_set():
                    raise QueryCancelled(f"metrics collection for {tenant} cancelled")
                try:
                    series = self.metrics.query(tenant, metric, window, cancel=cancel)
                except (MetricsQueryError, QueryTimeout) as exc:
                    errors.append(f"{metric}/{range_name}: {exc}")
                    continue
                values[metric][range_name] = latest_value(series)

        if errors:
            logger.warning("%d metric queries failed for %s", len(errors), tenant)
        result = TenantMetrics(tenant=tenant, last_updated=now, collection_errors=tuple(errors), **values)
        self._store_tenant_metrics(result)
        return result

    def _store_tenant_metrics(self, result: TenantMetrics) -> bool:
        size = estimate_size(result)
        with self._metrics_lock:
            try:
                self.memory.admit(TENANT_METRICS_CATEGORY, result.tenant, size, ttl=self.settings.collection_interval)
            except AdmissionRejected as exc:
                logger.warning("Metrics for %s not cached: %s", result.tenant, exc)
                return False
            self._tenant_metrics[result.tenant] = result
            if not self.memory.is_admitted(TENANT_METRICS_CATEGORY, result.tenant):
                del self._tenant_metrics[result.tenant]
                return False
        return True

    def _on_tenant_metrics_evicted(self, tenant: str) -> None:
        with self._metrics_lock:
            if not self.memory.is_admitted(TENANT_METRICS_CATEGORY, tenant):
                self._tenant_metrics.pop(tenant, None)

    def collect_all_tenant_metrics(self, cancel: threading.Event | None = None) -> int:
        """Collect metrics for every cached tenant; forget tenants no longer discovered."""
        entry = self.tenants.peek()
        names = [t.name for t in entry.payload.tenants] if entry else []
        for name in names:
            self.collect_tenant_metrics(name, cancel)
        with self._metrics_lock:
            gone = [t for t in self._tenant_metrics if t not in names]
            for tenant in gone:
                del self._tenant_metrics[tenant]
                self.memory.release(TENANT_METRICS_CATEGORY, tenant)
        return len(names)

    def get_tenant_metrics(self, tenant: str) -> TenantMetrics | None:
        with self._metrics_lock:
            result = self._tenant_metrics.get(tenant)
        if result is not None:
            self.memory.touch(TENANT_METRICS_CATEGORY, tenant)
        return result

    def get_all_tenant_metrics(self) -> dict[str, TenantMetrics]:
        with self._metrics_lock:
            return dict(self._tenant_metrics)

    def status(self) -> CacheStatus:
        return CacheStatus(
            components=self.components.status(),
            tenants=self.tenants.status(),
            memory=self.memory.stats(),
        )

    # ── Background collection ─────────────────────────────────────────────

    def start(self) -> None:
        """Start the memory monitor and the periodic collection thread."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self.memory.start_monitor()
        self._thread = threading.Thread(target=self._collection_loop, name="collector", daemon=True)
        self._thread.start()
        logger.info("Background collection started (every %ss)", self.settings.collection_interval)

    def stop(self, timeout: float = 10.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        self.memory.stop_monitor()
        logger.info("Background collection stopped")

    def __enter__(self) -> "CacheManager":
        self.start()
        return self

    def __exit__(self, *args: object) -> None:
        self.stop()

    def _collection_loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.refresh_all(cancel=self._stop)
                if self.metrics is not None:
                    self.collect_all_tenant_metrics(cancel=self._stop)
            except OperationCancelled:
                break
            except MimirInsightsError as exc:
                logger.warning("Background collection failed: %s", exc)
            except Exception:
                logger.exception("Background collection crashed, retrying next tick")
            if self._stop.wait(self.settings.collection_interval):
                break
