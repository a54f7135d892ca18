"""
formula_platform/metric_patterns.py
===================================
Declarative metric alias table.

Each canonical metric lists the spellings screener exports use for it. A
lookup for any member of a group may be satisfied by any other member, tried
in table order. ``fallbacks`` name other canonical groups that stand in only
when nothing in the group itself is available (OPM → Financing Margin, the
line banks and NBFCs report instead of an operating margin).
"""
from __future__ import annotations
from typing import Dict, List, Optional
import re

# ─── Name Keys ────────────────────────────────────────────────────────────────

def normalize_metric_name(name: str) -> str:
    """Lower-case, drop parentheses and percent signs, remove whitespace."""
    return re.sub(r'\s+', '', re.sub(r'[()%]', '', str(name).lower()))


def metric_key(name: str) -> str:
    """Alphanumeric-only key; equal for "Sales Growth(YoY) %" and "Sales_Growth_YoY"."""
    return re.sub(r'[^a-z0-9]', '', str(name).lower())


def sanitize_metric_name(name: str) -> str:
    """
    Human metric name → formula token name.
    e.g. "Sales Growth(YoY) %" → "Sales_Growth_YoY", "OPM %" → "OPM"
    """
    return re.sub(r'_+', '_', re.sub(r'[^A-Za-z0-9]', '_', str(name))).strip('_')


def build_reference(name: str, index: int, relative: bool = False) -> str:
    """Reference text the formula builder emits for a metric and window position."""
    token = sanitize_metric_name(name)
    if relative:
        return f"{token}[{index}]"
    return f"{token}[Q{index}]"


# ─── Alias Definitions ────────────────────────────────────────────────────────

class AliasDef:
    __slots__ = ("aliases", "fallbacks", "category")

    def __init__(
        self,
        aliases: List[str],
        fallbacks: Optional[List[str]] = None,
        category: str = "other",
    ):
        self.aliases = aliases
        self.fallbacks = fallbacks or []
        self.category = category


METRIC_ALIASES: Dict[str, AliasDef] = {
    # ── Income ──────────────────────────────────────────────────────────────
    "Sales": AliasDef(["Sales", "Revenue", "Revenue from Operations", "Net Sales", "Total Revenue", "Turnover"], category="income"),
    "Operating Profit": AliasDef(["Operating Profit", "EBITDA", "Financing Profit"], category="income"),
    "Net Profit": AliasDef(["Net Profit", "Profit After Tax", "PAT", "Net Income"], category="income"),
    "EPS in Rs": AliasDef(["EPS in Rs", "EPS", "Earnings Per Share", "Basic EPS"], category="income"),
    # ── Margins & Returns ───────────────────────────────────────────────────
    "OPM %": AliasDef(["OPM %", "OPM", "Operating Profit Margin %", "Operating Margin %", "OPM Percent"],
                      fallbacks=["Financing Margin %"], category="margin"),
    "Financing Margin %": AliasDef(["Financing Margin %", "Financing Margin", "Financing_Margin", "FinancingMargin"], category="margin"),
    "ROE %": AliasDef(["ROE %", "ROE", "Return on Equity"], category="margin"),
    "ROCE %": AliasDef(["ROCE %", "ROCE", "Return on Capital Employed"], category="margin"),
    # ── Growth ──────────────────────────────────────────────────────────────
    "Sales Growth(YoY) %": AliasDef(["Sales Growth(YoY) %", "Sales Growth YoY %", "Sales YoY %", "Revenue Growth YoY %"], category="growth"),
    "Sales Growth(QoQ) %": AliasDef(["Sales Growth(QoQ) %", "Sales Growth QoQ %", "Sales QoQ %", "Revenue Growth QoQ %"], category="growth"),
    "EPS Growth(YoY) %": AliasDef(["EPS Growth(YoY) %", "EPS Growth YoY %", "EPS YoY %"], category="growth"),
    "EPS Growth(QoQ) %": AliasDef(["EPS Growth(QoQ) %", "EPS Growth QoQ %", "EPS QoQ %"], category="growth"),
    "Net Profit Growth(YoY) %": AliasDef(["Net Profit Growth(YoY) %", "Net Profit Growth YoY %", "PAT Growth YoY %"], category="growth"),
}

OPM_MARKERS = ("opm", "operatingmargin", "operatingprofitmargin")

_KEY_TO_CANONICAL: Dict[str, str] = {}
for _canonical, _defn in METRIC_ALIASES.items():
    for _alias in [_canonical] + _defn.aliases:
        _KEY_TO_CANONICAL.setdefault(metric_key(_alias), _canonical)


def is_opm_metric(name: str) -> bool:
    n = normalize_metric_name(name)
    return any(marker in n for marker in OPM_MARKERS)


def canonical_for(name: str) -> Optional[str]:
    """Canonical group a metric name belongs to, or None."""
    return _KEY_TO_CANONICAL.get(metric_key(name))


def aliases_for(name: str) -> List[str]:
    """Ordered candidate names for a lookup: the requested name, then its group."""
    names = [name]
    canonical = canonical_for(name)
    if canonical:
        defn = METRIC_ALIASES[canonical]
        names.extend(a for a in [canonical] + defn.aliases if a not in names)
    return names


def fallbacks_for(name: str) -> List[str]:
    """
    Stand-in candidates tried only after the group itself came up empty.
    Every OPM-like name falls back to Financing Margin, even when it is not in
    the table.
    """
    canonical = canonical_for(name)
    targets: List[str] = list(METRIC_ALIASES[canonical].fallbacks) if canonical else []
    if is_opm_metric(name) and "Financing Margin %" not in targets:
        targets.append("Financing Margin %")
    names: List[str] = []
    for target in targets:
        for alias in [target] + METRIC_ALIASES[target].aliases:
            if alias not in names:
                names.append(alias)
    return names


def get_all_canonical() -> List[str]:
    return list(METRIC_ALIASES.keys())


def get_canonical_by_category() -> Dict[str, List[str]]:
    result: Dict[str, List[str]] = {}
    for canonical, defn in METRIC_ALIASES.items():
        result.setdefault(defn.category, []).append(canonical)
    return result
