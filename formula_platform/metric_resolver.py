"""
formula_platform/metric_resolver.py
===================================
Metric name → value lookup inside one quarter.

Matching order:
  1. exact   – requested name, then its alias group (normalized or key equality)
  2. partial – requested name is a substring of an available name or vice versa
  3. fallback – OPM-style requests retry 1–2 against the Financing Margin aliases,
                flagging the result as ``normalized``

Resolution never raises. A metric that cannot be found, or whose raw value
cannot be read as a number, resolves to ``None``.
"""
from __future__ import annotations
import logging
import math
from typing import Any, Dict, List, Optional, Sequence

from .metric_patterns import (
    aliases_for,
    fallbacks_for,
    metric_key,
    normalize_metric_name,
)
from .types import Quarter

logger = logging.getLogger(__name__)

_MIN_PARTIAL_KEY = 2

_NULL_TOKENS = frozenset({'', '-', '--', 'N/A', 'NA', 'n/a', 'na', 'nan', 'NaN', 'None', 'null', '#N/A'})


# ─── Value Coercion ───────────────────────────────────────────────────────────

def to_numeric(val: Any, percent_as_fraction: bool = False) -> Optional[float]:
    """
    Convert a raw metric value to float.
    "12.5%" → 12.5 (0.125 with ``percent_as_fraction``), "1,234" → 1234.0,
    "(500)" → -500.0, "₹1,500" → 1500.0. Anything unreadable → None.
    """
    if val is None or isinstance(val, bool):
        return None
    if isinstance(val, (int, float)):
        f = float(val)
        return f if math.isfinite(f) else None
    s = str(val).strip()
    is_percent = s.endswith('%')
    if is_percent:
        s = s[:-1].strip()
    # Parenthetical negatives: (1234) → -1234
    if s.startswith('(') and s.endswith(')'):
        s = '-' + s[1:-1]
    s = (s.replace(',', '').replace('₹', '').replace('$', '')
         .replace('Rs.', '').replace('Rs', '')
         .strip())
    if s in _NULL_TOKENS:
        return None
    try:
        f = float(s)
    except ValueError:
        return None
    if not math.isfinite(f):
        return None
    if is_percent and percent_as_fraction:
        f /= 100.0
    return f


# ─── Name Matching ────────────────────────────────────────────────────────────

class MetricMatch:
    __slots__ = ("requested", "name", "stage", "normalized")

    def __init__(self, requested: str, name: str, stage: str, normalized: bool = False):
        self.requested = requested
        self.name = name
        self.stage = stage          # "exact" | "partial"
        self.normalized = normalized

    def __repr__(self) -> str:
        flag = ", normalized" if self.normalized else ""
        return f"MetricMatch({self.requested!r} → {self.name!r}, {self.stage}{flag})"


def _same_metric(a: str, b: str) -> bool:
    return normalize_metric_name(a) == normalize_metric_name(b) or metric_key(a) == metric_key(b)


def _exact(candidates: Sequence[str], available: Sequence[str]) -> Optional[str]:
    for cand in candidates:
        for name in available:
            if _same_metric(cand, name):
                return name
    return None


def _partial(candidate: str, available: Sequence[str]) -> Optional[str]:
    """Closest-length available name containing, or contained in, ``candidate``."""
    want = metric_key(candidate)
    if len(want) < _MIN_PARTIAL_KEY:
        return None
    best: Optional[str] = None
    best_gap = 0
    for name in available:
        key = metric_key(name)
        if len(key) < _MIN_PARTIAL_KEY:
            continue
        if want in key or key in want:
            gap = abs(len(key) - len(want))
            if best is None or gap < best_gap:
                best, best_gap = name, gap
    return best


def match_metric_name(requested: str, available: Sequence[str]) -> Optional[MetricMatch]:
    """Pick the available metric name answering ``requested``, or None."""
    if not requested or not available:
        return None
    hit = _exact(aliases_for(requested), available)
    if hit is not None:
        return MetricMatch(requested, hit, "exact")
    hit = _partial(requested, available)
    if hit is not None:
        return MetricMatch(requested, hit, "partial")
    return _fallback_match(requested, available)


def _fallback_match(requested: str, available: Sequence[str]) -> Optional[MetricMatch]:
    fallbacks = fallbacks_for(requested)
    if not fallbacks:
        return None
    hit = _exact(fallbacks, available)
    if hit is not None:
        return MetricMatch(requested, hit, "exact", normalized=True)
    for cand in fallbacks:
        hit = _partial(cand, available)
        if hit is not None:
            return MetricMatch(requested, hit, "partial", normalized=True)
    return None


# ─── Resolver ─────────────────────────────────────────────────────────────────

class Resolution:
    __slots__ = ("requested", "matched", "value", "normalized")

    def __init__(self, requested: str, matched: Optional[str], value: Optional[float], normalized: bool):
        self.requested = requested
        self.matched = matched
        self.value = value
        self.normalized = normalized

    @property
    def canonical(self) -> str:
        return self.matched if self.matched is not None else self.requested

    def __repr__(self) -> str:
        return f"Resolution({self.requested!r} → {self.matched!r} = {self.value!r})"


class MetricResolver:
    """
    Resolves metric names against quarters. Name matches are memoised per
    set of available metric names, since every quarter of one company
    usually carries the same rows.
    """

    def __init__(self, percent_as_fraction: bool = False, verbose: bool = False):
        self.percent_as_fraction = percent_as_fraction
        self.verbose = verbose
        self._cache: Dict[tuple, Optional[MetricMatch]] = {}

    def match(self, requested: str, available: Sequence[str]) -> Optional[MetricMatch]:
        key = (requested, tuple(available))
        if key not in self._cache:
            self._cache[key] = match_metric_name(requested, available)
        return self._cache[key]

    def resolve(self, requested: str, quarter: Optional[Quarter]) -> Resolution:
        if quarter is None:
            return Resolution(requested, None, None, False)

        available: List[str] = list(quarter.metrics.keys())
        m = self.match(requested, available)
        value = self._value(quarter, m.name) if m is not None else None

        # OPM present but blank: Financing Margin still stands in.
        if value is None and m is not None and not m.normalized:
            fb = _fallback_match(requested, [n for n in available if n != m.name])
            if fb is not None:
                fb_value = self._value(quarter, fb.name)
                if fb_value is not None:
                    m, value = fb, fb_value

        if self.verbose:
            logger.debug(
                "resolve %r in %s → %r (%s) = %r",
                requested, quarter.label,
                m.name if m else None, m.stage if m else "unmatched", value,
            )
        if m is None:
            return Resolution(requested, None, None, False)
        return Resolution(requested, m.name, value, m.normalized)

    def _value(self, quarter: Quarter, name: str) -> Optional[float]:
        return to_numeric(quarter.metrics.get(name), self.percent_as_fraction)


def find_metric_value(
    quarter: Quarter,
    requested: str,
    percent_as_fraction: bool = False,
) -> Optional[float]:
    """One-off lookup without keeping a resolver around."""
    return MetricResolver(percent_as_fraction).resolve(requested, quarter).value
