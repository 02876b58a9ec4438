"""Classify cluster resources into Mimir component categories by name and label patterns.

Pattern tables are plain data.  They are compiled once into an immutable
``PatternTable``; a pattern that fails to compile is logged and skipped so one
bad entry never takes discovery down.  Matching is a pure function of the
resource metadata and the table.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

from mimir_insights.models import ComponentType

logger = logging.getLogger(__name__)


# ──────────────────────────── Evidence Weights ────────────────────────────────
# Calibrated so that:
#   name alone            → 0.45
#   label alone           → 0.35
#   name + label          → 0.80
#   name + label + ns     → 0.90
#   two labels + name     → 1.00 (capped)
# Every independent signal for the same category accumulates (capped at 1.0).
# Namespace context only counts once something else matched.

_W_NAME = 0.45
_W_LABEL = 0.35
_W_ANNOTATION = 0.10
_W_NAMESPACE = 0.10

TAG_NAME = "name-pattern"
TAG_LABEL = "label-selector"
TAG_ANNOTATION = "annotation"
TAG_NAMESPACE = "namespace-context"


# ──────────────────────────── Rule Declarations ───────────────────────────────


@dataclass(frozen=True)
class PatternRule:
    """Uncompiled patterns for a single category.

    ``label_rules`` pairs a label key with a regex applied to that label's
    value.  ``annotation_patterns`` are searched in ``key=value`` strings.
    """

    category: str
    name_patterns: tuple[str, ...] = ()
    label_rules: tuple[tuple[str, str], ...] = ()
    annotation_patterns: tuple[str, ...] = ()


_COMPONENT_LABEL_KEYS = (
    "app.kubernetes.io/component",
    "app.kubernetes.io/name",
    "app",
    "component",
)


def _labels(value_pattern: str) -> tuple[tuple[str, str], ...]:
    return tuple((key, value_pattern) for key in _COMPONENT_LABEL_KEYS)


# Order matters: on equal scores the earlier category wins.
COMPONENT_RULES: tuple[PatternRule, ...] = (
    PatternRule("distributor", (r"distributor", r"(^|-)dist(-|$)"), _labels(r"distributor")),
    PatternRule("ingester", (r"ingester", r"ingest"), _labels(r"ingest")),
    PatternRule("query_frontend", (r"query-frontend", r"query-scheduler", r"frontend"),
                _labels(r"query-frontend|query-scheduler")),
    PatternRule("querier", (r"querier", r"query"), _labels(r"querier")),
    PatternRule("store_gateway", (r"store-gateway", r"store.*gateway"), _labels(r"store-gateway")),
    PatternRule("compactor", (r"compactor", r"compact"), _labels(r"compactor")),
    PatternRule("ruler", (r"ruler", r"(^|-)rules?(-|$)"), _labels(r"ruler")),
    PatternRule("alertmanager", (r"alertmanager", r"alert"), _labels(r"alertmanager")),
    PatternRule("gateway", (r"(^|-)gateway$", r"nginx"), _labels(r"^gateway$|nginx"),
                annotation_patterns=(r"ingress",)),
)

COMPONENT_TYPES: dict[str, ComponentType] = {
    "distributor": ComponentType.INGRESS_ROUTER,
    "gateway": ComponentType.INGRESS_ROUTER,
    "ingester": ComponentType.WRITE_PATH,
    "querier": ComponentType.STORAGE_QUERY,
    "query_frontend": ComponentType.STORAGE_QUERY,
    "store_gateway": ComponentType.OBJECT_GATEWAY,
    "compactor": ComponentType.COMPACTOR,
    "ruler": ComponentType.RULES_ENGINE,
    "alertmanager": ComponentType.ALERT_ROUTER,
}

NAMESPACE_PATTERNS = (r"^mimir", r"mimir", r"^cortex", r"cortex", r"^observability", r"^monitoring")
SERVICE_PATTERNS = (r"^mimir-", r"^cortex-", r"-mimir-", r"-cortex-")
CONFIG_PATTERNS = (
    r"mimir.*config",
    r"cortex.*config",
    r"runtime.*overrides",
    r"overrides",
    r"limits.*config",
)
METRICS_PORT_NAMES = frozenset({"metrics", "http-metrics", "prometheus", "monitoring"})


# ──────────────────────────── Compilation ─────────────────────────────────────


def compile_patterns(patterns: tuple[str, ...] | list[str], owner: str = "") -> tuple[re.Pattern[str], ...]:
    """Compile *patterns* case-insensitively, skipping (and logging) invalid ones."""
    compiled: list[re.Pattern[str]] = []
    for p in patterns:
        try:
            compiled.append(re.compile(p, re.IGNORECASE))
        except re.error as exc:
            logger.warning("Skipping invalid pattern %r%s: %s", p, f" ({owner})" if owner else "", exc)
    return tuple(compiled)


def matches_any(patterns: tuple[re.Pattern[str], ...], text: str) -> bool:
    return any(p.search(text) for p in patterns)


@dataclass(frozen=True)
class CompiledRule:
    category: str
    name_patterns: tuple[re.Pattern[str], ...]
    label_rules: tuple[tuple[str, re.Pattern[str]], ...]
    annotation_patterns: tuple[re.Pattern[str], ...]


@dataclass(frozen=True)
class PatternTable:
    """Precompiled, immutable lookup table of category rules.

    Parameters
    ----------
    rules : tuple[CompiledRule, ...]
        One entry per category, in priority order.
    namespace_patterns : tuple[re.Pattern, ...]
        Patterns that mark a namespace as likely hosting the backend.
    """

    rules: tuple[CompiledRule, ...]
    namespace_patterns: tuple[re.Pattern[str], ...] = ()

    @classmethod
    def compile(
        cls,
        rules: tuple[PatternRule, ...] | list[PatternRule] = COMPONENT_RULES,
        namespace_patterns: tuple[str, ...] = NAMESPACE_PATTERNS,
    ) -> "PatternTable":
        compiled: list[CompiledRule] = []
        for rule in rules:
            label_rules: list[tuple[str, re.Pattern[str]]] = []
            for key, value_pattern in rule.label_rules:
                pats = compile_patterns([value_pattern], owner=f"{rule.category} label {key}")
                if pats:
                    label_rules.append((key, pats[0]))
            compiled.append(
                CompiledRule(
                    category=rule.category,
                    name_patterns=compile_patterns(rule.name_patterns, owner=rule.category),
                    label_rules=tuple(label_rules),
                    annotation_patterns=compile_patterns(rule.annotation_patterns, owner=rule.category),
                )
            )
        return cls(
            rules=tuple(compiled),
            namespace_patterns=compile_patterns(namespace_patterns, owner="namespace"),
        )

    @property
    def categories(self) -> list[str]:
        return [r.category for r in self.rules]


# ──────────────────────────── Matching ────────────────────────────────────────


@dataclass
class CategoryMatch:
    """Accumulated evidence that a resource belongs to ``category``."""

    category: str
    score: float = 0.0
    matched_by: list[str] = field(default_factory=list)
    evidence: list[str] = field(default_factory=list)


def match_resource(
    table: PatternTable,
    name: str,
    namespace: str = "",
    labels: dict[str, str] | None = None,
    annotations: dict[str, str] | None = None,
) -> dict[str, CategoryMatch]:
    """Score a resource against every category in *table*.

    Returns only categories with at least one name, label or annotation hit.
    Scores are rounded to two places and capped at 1.0.
    """
    labels = labels or {}
    annotations = annotations or {}
    ns_hit = bool(namespace) and matches_any(table.namespace_patterns, namespace)
    results: dict[str, CategoryMatch] = {}

    for rule in table.rules:
        match = CategoryMatch(rule.category)
        raw = 0.0

        # 1. Name: only the first matching pattern fires
        for pattern in rule.name_patterns:
            if pattern.search(name):
                raw += _W_NAME
                match.matched_by.append(TAG_NAME)
                match.evidence.append(f"name:{name}~{pattern.pattern}")
                break

        # 2. Labels: each matching key is an independent signal
        for key, pattern in rule.label_rules:
            value = labels.get(key)
            if value and pattern.search(value):
                raw += _W_LABEL
                if TAG_LABEL not in match.matched_by:
                    match.matched_by.append(TAG_LABEL)
                match.evidence.append(f"label:{key}={value}")

        # 3. Annotations
        for pattern in rule.annotation_patterns:
            hit = next((f"{k}={v}" for k, v in annotations.items() if pattern.search(f"{k}={v}")), "")
            if hit:
                raw += _W_ANNOTATION
                match.matched_by.append(TAG_ANNOTATION)
                match.evidence.append(f"annotation:{hit}")
                break

        if raw == 0.0:
            continue

        # 4. Namespace context
        if ns_hit:
            raw += _W_NAMESPACE
            match.matched_by.append(TAG_NAMESPACE)
            match.evidence.append(f"namespace:{namespace}")

        match.score = round(min(raw, 1.0), 2)
        results[rule.category] = match

    return results


def best_match(matches: dict[str, CategoryMatch]) -> CategoryMatch | None:
    """Pick the highest-scoring category; ties keep table order."""
    best: CategoryMatch | None = None
    for m in matches.values():
        if best is None or m.score > best.score:
            best = m
    return best
