"""Bounded memory budget for cached discovery results.

The manager does not measure Python objects directly.  Callers estimate an
item's size with ``estimate_size`` (a deterministic structural walk) and ask
for admission; the manager keeps the accounting, refuses anything that would
break the budget, and evicts already-admitted items when usage crosses the
eviction threshold.

Invariant: ``current_bytes <= max_bytes`` and every per-category count stays
within its limit after every admit/release.  Admission is all-or-nothing.
"""

from __future__ import annotations

import dataclasses
import logging
import threading
import time
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable

import psutil
from pydantic import BaseModel

from mimir_insights.config import GIB, MIB, Settings
from mimir_insights.errors import AdmissionRejected
from mimir_insights.models import EvictionPolicy, MemoryStats

logger = logging.getLogger(__name__)

DEFAULT_FLOOR = 100 * MIB
DEFAULT_CEILING = 2 * GIB
DEFAULT_ITEM_SIZE = 1024
_SCALAR_SIZE = 8


# ──────────────────────────── Sizing ──────────────────────────────────────────


def compute_budget(total_memory: int, floor: int = DEFAULT_FLOOR, ceiling: int = DEFAULT_CEILING) -> int:
    """A quarter of *total_memory*, clamped to ``[floor, ceiling]``."""
    return min(max(total_memory // 4, floor), ceiling)


def system_memory() -> int:
    return int(psutil.virtual_memory().total)


def process_memory() -> int:
    return int(psutil.Process().memory_info().rss)


def estimate_size(value: Any) -> int:
    """Approximate the footprint of *value* in bytes.

    Strings count their UTF-8 length, byte buffers their length, mappings and
    sequences the sum of their parts.  Pydantic models and dataclasses are
    walked field by field.  Numbers and timestamps count 8; anything else
    is charged ``DEFAULT_ITEM_SIZE``.  The same input always gives the same
    answer.
    """
    if value is None:
        return 0
    if isinstance(value, str):
        return len(value.encode("utf-8"))
    if isinstance(value, (bytes, bytearray)):
        return len(value)
    if isinstance(value, (bool, int, float, datetime, date, timedelta)):
        return _SCALAR_SIZE
    if isinstance(value, BaseModel):
        return estimate_size(value.model_dump())
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return estimate_size({f.name: getattr(value, f.name) for f in dataclasses.fields(value)})
    if isinstance(value, Mapping):
        return sum(estimate_size(k) + estimate_size(v) for k, v in value.items())
    if isinstance(value, (list, tuple, set, frozenset)):
        return sum(estimate_size(v) for v in value)
    return DEFAULT_ITEM_SIZE


# ──────────────────────────── Accounting ──────────────────────────────────────


@dataclass
class TrackedItem:
    """Accounting record for one admitted item."""

    category: str
    key: str
    size: int
    admitted_at: float
    last_access: float
    hits: int = 0
    ttl: float | None = None

    @property
    def expires_at(self) -> float:
        return self.admitted_at + self.ttl if self.ttl else float("inf")


class MemoryManager:
    """Admission control and eviction over a fixed byte budget.

    Parameters
    ----------
    max_bytes : int | None
        Byte budget.  ``None`` sizes it from system memory via ``compute_budget``.
    max_items : int
        Cap on the total number of tracked items.
    category_limits : dict[str, int]
        Per-category item caps (``tenant`` and ``component`` by default).
    memory_threshold : float
        Usage ratio that counts as a warning.
    eviction_threshold : float
        Usage ratio that triggers an eviction cycle.
    policy : EvictionPolicy
        How victims are chosen.
    """

    def __init__(
        self,
        max_bytes: int | None = None,
        *,
        max_items: int = 1000,
        category_limits: dict[str, int] | None = None,
        memory_threshold: float = 0.8,
        eviction_threshold: float = 0.9,
        policy: EvictionPolicy = EvictionPolicy.HYBRID,
        check_interval: float = 30.0,
        floor: int = DEFAULT_FLOOR,
        ceiling: int = DEFAULT_CEILING,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_bytes is None:
            max_bytes = compute_budget(system_memory(), floor, ceiling)
        self.max_bytes = max_bytes
        self.max_items = max_items
        self.category_limits = dict(
            category_limits if category_limits is not None else {"tenant": 500, "component": 500}
        )
        self.memory_threshold = memory_threshold
        self.eviction_threshold = eviction_threshold
        self.policy = EvictionPolicy(policy)
        self.check_interval = check_interval
        self._clock = clock

        self._lock = threading.RLock()
        self._items: dict[tuple[str, str], TrackedItem] = {}
        self._counts: dict[str, int] = {}
        self._current = 0
        self._peak = 0
        self._eviction_count = 0
        self._warning_count = 0
        self._last_eviction: datetime | None = None
        self._process_memory = 0
        self._evictors: dict[str, Callable[[str], None]] = {}

        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

        logger.info(
            "Memory budget %.1f MiB, %d items max, policy %s",
            self.max_bytes / MIB,
            self.max_items,
            self.policy.value,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "MemoryManager":
        return cls(
            settings.max_memory_bytes,
            max_items=settings.max_cache_items,
            category_limits={
                "tenant": settings.max_tenant_items,
                "component": settings.max_component_items,
            },
            memory_threshold=settings.memory_threshold,
            eviction_threshold=settings.eviction_threshold,
            policy=settings.eviction_policy,
            check_interval=settings.memory_check_interval,
            floor=settings.memory_floor_bytes,
            ceiling=settings.memory_ceiling_bytes,
        )

    # ── Admission ─────────────────────────────────────────────────────────

    def _rejection(self, category: str, size: int, key: str | None) -> str:
        """Return why (category, size) cannot be admitted, or ``""`` if it can.

        An item already tracked under *key* is being replaced, so its own
        size and count are left out of the check.
        """
        old = self._items.get((category, key)) if key is not None else None
        old_size = old.size if old else 0
        replacing = 1 if old else 0

        limit = self.category_limits.get(category)
        if limit is not None and self._counts.get(category, 0) - replacing + 1 > limit:
            return f"category limit of {limit} items reached"
        if len(self._items) - replacing + 1 > self.max_items:
            return f"total limit of {self.max_items} items reached"
        if self._current - old_size + size > self.max_bytes:
            return f"{self._current - old_size} + {size} bytes exceeds budget of {self.max_bytes}"
        return ""

    def can_admit(self, category: str, size: int, key: str | None = None) -> bool:
        with self._lock:
            return not self._rejection(category, size, key)

    def admit(self, category: str, key: str, size: int, ttl: float | None = None) -> None:
        """Check and account for an item atomically.

        Re-admitting an existing key releases its old size first.  Raises
        ``AdmissionRejected`` and changes nothing if any check fails.
        """
        with self._lock:
            reason = self._rejection(category, size, key)
            if reason:
                raise AdmissionRejected(category, size, reason)
            old = self._items.pop((category, key), None)
            if old is not None:
                self._current -= old.size
                self._counts[category] -= 1
            now = self._clock()
            self._items[(category, key)] = TrackedItem(category, key, size, now, now, ttl=ttl)
            self._current += size
            self._counts[category] = self._counts.get(category, 0) + 1
            self._peak = max(self._peak, self._current)
        logger.debug("Admitted %s/%s (%d bytes)", category, key, size)

    def release(self, category: str, key: str) -> int:
        """Drop an item's accounting and return the size freed (0 if unknown)."""
        with self._lock:
            item = self._items.pop((category, key), None)
            if item is None:
                return 0
            self._current -= item.size
            self._counts[category] -= 1
            return item.size

    def touch(self, category: str, key: str) -> None:
        with self._lock:
            item = self._items.get((category, key))
            if item is not None:
                item.last_access = self._clock()
                item.hits += 1

    def is_admitted(self, category: str, key: str) -> bool:
        with self._lock:
            return (category, key) in self._items

    def register_evictor(self, category: str, callback: Callable[[str], None]) -> None:
        """Call *callback(key)* whenever an item of *category* is evicted."""
        self._evictors[category] = callback

    # ── Eviction ──────────────────────────────────────────────────────────

    def _ordered_victims(self) -> list[TrackedItem]:
        items = list(self._items.values())
        if self.policy == EvictionPolicy.SIZE:
            return sorted(items, key=lambda i: (-i.size, i.admitted_at))
        if self.policy == EvictionPolicy.COUNT:
            return sorted(items, key=lambda i: (i.last_access, i.admitted_at))
        if self.policy == EvictionPolicy.TTL:
            return sorted(items, key=lambda i: (i.expires_at, i.admitted_at))

        # Hybrid: half relative size, half relative staleness
        now = self._clock()
        max_size = max((i.size for i in items), default=0) or 1
        max_age = max((now - i.last_access for i in items), default=0.0) or 1.0

        def score(i: TrackedItem) -> float:
            return 0.5 * i.size / max_size + 0.5 * (now - i.last_access) / max_age

        return sorted(items, key=lambda i: (-score(i), i.admitted_at))

    def run_eviction(self, target_ratio: float | None = None) -> int:
        """Evict by policy until usage is at or below *target_ratio* of the budget.

        Defaults to the memory (warning) threshold.  Returns the number of
        items evicted.  Evictor callbacks run after the budget lock is released.
        """
        ratio = self.memory_threshold if target_ratio is None else target_ratio
        victims: list[TrackedItem] = []
        with self._lock:
            target = int(self.max_bytes * ratio)
            for item in self._ordered_victims():
                if self._current <= target:
                    break
                del self._items[(item.category, item.key)]
                self._current -= item.size
                self._counts[item.category] -= 1
                victims.append(item)
            if victims:
                self._eviction_count += len(victims)
                self._last_eviction = datetime.now(timezone.utc)

        for item in victims:
            logger.info("Evicted %s/%s (%d bytes, policy %s)", item.category, item.key, item.size, self.policy.value)
            callback = self._evictors.get(item.category)
            if callback is not None:
                callback(item.key)
        return len(victims)

    def force_eviction(self) -> int:
        """Run an eviction cycle now, whether or not the threshold was crossed."""
        return self.run_eviction()

    def check_memory(self) -> None:
        """One monitor tick: sample process memory, warn or evict on pressure."""
        rss = process_memory()
        with self._lock:
            self._process_memory = rss
            self._peak = max(self._peak, self._current)
            usage = self._current / self.max_bytes if self.max_bytes else 0.0

        if usage >= self.eviction_threshold:
            logger.warning("Memory usage %.0f%% over eviction threshold, evicting", usage * 100)
            self.run_eviction()
        elif usage >= self.memory_threshold:
            with self._lock:
                self._warning_count += 1
            logger.warning("Memory usage %.0f%% over warning threshold", usage * 100)

    # ── Tuning ────────────────────────────────────────────────────────────

    def set_limits(
        self,
        max_bytes: int | None = None,
        max_items: int | None = None,
        category_limits: dict[str, int] | None = None,
    ) -> None:
        """Change limits.

        Lowering ``max_bytes`` below current usage evicts right away, down to
        the warning threshold of the new budget.  Item limits only apply to
        later admissions.
        """
        with self._lock:
            if max_bytes is not None:
                self.max_bytes = max_bytes
            if max_items is not None:
                self.max_items = max_items
            if category_limits is not None:
                self.category_limits.update(category_limits)
            over = self._current > self.max_bytes
        if over:
            logger.warning("Budget lowered to %d bytes below current usage, evicting", self.max_bytes)
            self.force_eviction()

    def set_policy(self, policy: EvictionPolicy | str) -> None:
        with self._lock:
            self.policy = EvictionPolicy(policy)

    def reset_stats(self) -> None:
        with self._lock:
            self._peak = self._current
            self._eviction_count = 0
            self._warning_count = 0
            self._last_eviction = None

    def stats(self) -> MemoryStats:
        with self._lock:
            return MemoryStats(
                current_bytes=self._current,
                max_bytes=self.max_bytes,
                usage_percent=round(100.0 * self._current / self.max_bytes, 2) if self.max_bytes else 0.0,
                peak_bytes=self._peak,
                item_counts={c: n for c, n in self._counts.items() if n},
                item_limits=dict(self.category_limits),
                total_items=len(self._items),
                max_items=self.max_items,
                eviction_count=self._eviction_count,
                warning_count=self._warning_count,
                last_eviction=self._last_eviction,
                policy=self.policy,
                memory_threshold=self.memory_threshold,
                eviction_threshold=self.eviction_threshold,
                process_memory_bytes=self._process_memory,
            )

    # ── Background monitor ────────────────────────────────────────────────

    def start_monitor(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._monitor_loop, name="memory-monitor", daemon=True)
        self._thread.start()
        logger.info("Memory monitor started (every %ss)", self.check_interval)

    def stop_monitor(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def _monitor_loop(self) -> None:
        while not self._stop.wait(self.check_interval):
            try:
                self.check_memory()
            except Exception:
                logger.exception("Memory check failed")
