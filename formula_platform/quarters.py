"""
formula_platform/quarters.py
============================
Quarter label parsing, ordering and the evaluation window.

Labels come in whatever shape the exporter produced: "Mar 2024", "Mar-24",
"March 2024", "2024-03-31", "202403", "2024-Q1", "Q4 FY24". Each is parsed to
a (year, month) key; anything unparseable sorts as the oldest possible quarter
(0, 0) instead of raising.

Window indexing: absolute references ``Q1..Q<N>`` count from the oldest slot
of an N-slot window, so ``Q<N>`` is always the newest quarter. When fewer than
N quarters exist the older slots are empty and resolve to null. Relative
offsets (0 = newest, -1 = the quarter before) are a separate addressing mode.
"""
from __future__ import annotations
import logging
import re
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .config import DEFAULT_WINDOW_SIZE
from .types import Quarter

logger = logging.getLogger(__name__)

QuarterKey = Tuple[int, int]

EPOCH: QuarterKey = (0, 0)

MONTHS: Dict[str, int] = {
    "jan": 1, "feb": 2, "mar": 3, "apr": 4, "may": 5, "jun": 6,
    "jul": 7, "aug": 8, "sep": 9, "sept": 9, "oct": 10, "nov": 11, "dec": 12,
    "january": 1, "february": 2, "march": 3, "april": 4, "june": 6, "july": 7,
    "august": 8, "september": 9, "october": 10, "november": 11, "december": 12,
}

_FIRST_YEAR, _LAST_YEAR = 1900, 2099


# ─── Label Parsing ────────────────────────────────────────────────────────────

def _year(text: str) -> Optional[int]:
    y = int(text)
    if len(text) == 2:
        y += 2000
    return y if _FIRST_YEAR <= y <= _LAST_YEAR else None


def parse_quarter_label(label: object) -> QuarterKey:
    """
    Parse a quarter label → (year, month) of the quarter end.
    Returns (0, 0) for anything that cannot be read as a quarter.
    """
    if label is None:
        return EPOCH
    s = str(label).strip()
    if not s:
        return EPOCH

    # YYYYMM
    m = re.match(r'^(\d{4})(\d{2})$', s)
    if m:
        y, mo = _year(m.group(1)), int(m.group(2))
        if y and 1 <= mo <= 12:
            return (y, mo)
        return EPOCH

    # 2024-03-31 / 2024-03 / 2024/03/31
    m = re.match(r'^(\d{4})[-/](\d{1,2})(?:[-/]\d{1,2})?(?:[T\s].*)?$', s)
    if m:
        y, mo = _year(m.group(1)), int(m.group(2))
        if y and 1 <= mo <= 12:
            return (y, mo)

    # Q4 FY24 / Q1FY2025 – Indian fiscal year (Q1 = Apr–Jun of the previous calendar year)
    m = re.match(r"^Q([1-4])\s*[-\s]?\s*FY\s*'?(\d{4}|\d{2})$", s, re.IGNORECASE)
    if m:
        q, fy = int(m.group(1)), _year(m.group(2))
        if fy:
            return (fy, 3) if q == 4 else (fy - 1, q * 3 + 3)

    # 2024-Q3 / 2024 Q3 – calendar quarters
    m = re.match(r'^(\d{4})\s*[-\s]?\s*Q([1-4])$', s, re.IGNORECASE)
    if m:
        y = _year(m.group(1))
        if y:
            return (y, int(m.group(2)) * 3)

    # Q3 2024 / Q3-24
    m = re.match(r"^Q([1-4])\s*[-\s']?\s*(\d{4}|\d{2})$", s, re.IGNORECASE)
    if m:
        y = _year(m.group(2))
        if y:
            return (y, int(m.group(1)) * 3)

    # Mar 2024 / March 2024 / Mar-24 / Mar'24 / Mar. 2024
    m = re.match(r"^([A-Za-z]{3,9})\.?[\s\-'’,/]*(\d{4}|\d{2})$", s)
    if m:
        mo = MONTHS.get(m.group(1).lower())
        y = _year(m.group(2))
        if mo and y:
            return (y, mo)

    return EPOCH


def quarter_sort_key(quarter: Quarter) -> Tuple[int, int, str]:
    y, mo = parse_quarter_label(quarter.label)
    return (y, mo, quarter.label)


def sort_quarters(quarters: Iterable[Quarter], newest_first: bool = False) -> List[Quarter]:
    return sorted(quarters, key=quarter_sort_key, reverse=newest_first)


def merge_duplicate_quarters(quarters: Iterable[Quarter]) -> List[Quarter]:
    """
    Collapse quarters sharing a label. The first occurrence wins; later ones
    only fill in metrics the first did not carry.
    """
    merged: Dict[str, Quarter] = {}
    for q in quarters:
        label = str(q.label).strip()
        if label not in merged:
            merged[label] = Quarter(label, dict(q.metrics))
            continue
        target = merged[label].metrics
        for name, value in q.metrics.items():
            if target.get(name) is None and value is not None:
                target[name] = value
    return list(merged.values())


# ─── Fiscal Labels ────────────────────────────────────────────────────────────

def fiscal_quarter_label(label: str) -> str:
    """Indian fiscal quarter for a label: Apr–Jun → Q1, Jul–Sep → Q2, Oct–Dec → Q3, Jan–Mar → Q4."""
    key = parse_quarter_label(label)
    if key == EPOCH:
        return ""
    month = key[1]
    if month <= 3:
        return "Q4"
    if month <= 6:
        return "Q1"
    if month <= 9:
        return "Q2"
    return "Q3"


def format_quarter_with_label(label: str) -> str:
    """"Mar 2024" → "Mar 2024 (Q4)"."""
    fq = fiscal_quarter_label(label)
    return f"{label} ({fq})" if fq else label


# ─── Evaluation Window ────────────────────────────────────────────────────────

@dataclass(frozen=True)
class QuarterWindow:
    quarters: Tuple[Quarter, ...]            # oldest → newest
    size: int = DEFAULT_WINDOW_SIZE

    @property
    def count(self) -> int:
        return len(self.quarters)

    @property
    def labels(self) -> List[str]:
        return [q.label for q in self.quarters]

    @property
    def is_empty(self) -> bool:
        return not self.quarters

    def quarter_at(self, index: int) -> Optional[Quarter]:
        """Absolute slot lookup: 1 = oldest slot, ``size`` = newest quarter."""
        if index < 1 or index > self.size:
            return None
        return self.quarter_at_offset(index - self.size)

    def quarter_at_offset(self, offset: int) -> Optional[Quarter]:
        """Relative lookup: 0 = newest, -1 = one quarter earlier, ..."""
        if offset > 0:
            return None
        pos = len(self.quarters) - 1 + offset
        if pos < 0:
            return None
        return self.quarters[pos]

    def index_of(self, label: str) -> Optional[int]:
        """Absolute index of a quarter label inside the window."""
        for pos, q in enumerate(self.quarters):
            if q.label == label:
                return self.size - (len(self.quarters) - 1 - pos)
        return None


def select_window(
    quarters: Sequence[Quarter],
    selected: Optional[Sequence[str]] = None,
    window_size: int = DEFAULT_WINDOW_SIZE,
) -> QuarterWindow:
    """
    Build the evaluation window.

    Quarters are de-duplicated, sorted newest first, optionally restricted to
    the ``selected`` labels, cut to the newest ``window_size`` and returned
    oldest → newest. An empty selection means "no selection". Never raises.
    """
    if window_size is None or window_size < 1:
        logger.warning("Window size %r is invalid, clamping to 1", window_size)
        window_size = 1

    pool = sort_quarters(merge_duplicate_quarters(quarters or []), newest_first=True)

    if selected:
        wanted_labels = {str(s).strip() for s in selected}
        wanted_keys = {k for k in (parse_quarter_label(s) for s in wanted_labels) if k != EPOCH}
        pool = [
            q for q in pool
            if q.label in wanted_labels or parse_quarter_label(q.label) in wanted_keys
        ]
        if not pool:
            logger.debug("None of the selected quarters %s exist in the dataset", sorted(wanted_labels))

    chosen = pool[:window_size]
    chosen.reverse()
    return QuarterWindow(tuple(chosen), window_size)
