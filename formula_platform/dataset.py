"""
formula_platform/dataset.py
===========================
Turns quarterly data in its usual shapes into ``Quarter`` lists. Handles:
  - row records   {"quarter": "Mar 2024", "metricName": "Sales", "metricValue": "1,234"}
  - mappings      {"Mar 2024": {"Sales": "1,234", ...}, ...}
  - DataFrames    metrics as rows, quarter labels as columns (screener layout),
                  or long format with quarter / metricName / metricValue columns
  - files         CSV, Excel (.xlsx, .xls) and HTML tables (including HTML saved as .xls)

Raw values are kept as they are; the metric resolver coerces them on lookup.
"""
from __future__ import annotations
import io
import logging
import math
import zipfile
from typing import Any, Dict, Iterable, List, Mapping, Sequence, Tuple

import pandas as pd
from bs4 import BeautifulSoup

from .errors import DatasetError
from .quarters import EPOCH, merge_duplicate_quarters, parse_quarter_label, sort_quarters
from .types import Quarter

logger = logging.getLogger(__name__)

QUARTER_KEYS = ("quarter", "Quarter", "quarter_label", "period")
METRIC_KEYS = ("metricName", "metric_name", "metric", "Metric")
VALUE_KEYS = ("metricValue", "metric_value", "value", "Value")

_HEADER_SCAN_ROWS = 20


def _pick(record: Mapping[str, Any], keys: Sequence[str]) -> Any:
    for k in keys:
        if k in record:
            return record[k]
    return None


def _clean_cell(value: Any) -> Any:
    """Empty / NaN cells → None, text stripped, numbers kept."""
    if value is None:
        return None
    if isinstance(value, float) and math.isnan(value):
        return None
    if isinstance(value, str):
        s = ' '.join(value.split())
        return s or None
    return value


# ─── In-memory Shapes ─────────────────────────────────────────────────────────

def quarters_from_records(records: Iterable[Mapping[str, Any]]) -> List[Quarter]:
    """Group one-row-per-metric records into quarters (first value for a metric wins)."""
    grouped: Dict[str, Dict[str, Any]] = {}
    for rec in records:
        label = _clean_cell(_pick(rec, QUARTER_KEYS))
        name = _clean_cell(_pick(rec, METRIC_KEYS))
        if label is None or name is None:
            continue
        metrics = grouped.setdefault(str(label), {})
        value = _clean_cell(_pick(rec, VALUE_KEYS))
        if metrics.get(str(name)) is None:
            metrics[str(name)] = value
    return [Quarter(label, metrics) for label, metrics in grouped.items()]


def quarters_from_mapping(mapping: Mapping[str, Mapping[str, Any]]) -> List[Quarter]:
    return [
        Quarter(str(label), {str(k): _clean_cell(v) for k, v in (metrics or {}).items()})
        for label, metrics in mapping.items()
    ]


def quarters_from_frame(df: pd.DataFrame) -> List[Quarter]:
    """
    Wide frame: one row per metric, one column per quarter label; the first
    non-quarter column holds the metric names (the index is used when every
    column is a quarter). Long frame: quarter / metricName / metricValue columns.
    """
    columns = [str(c) for c in df.columns]
    if any(c in columns for c in QUARTER_KEYS) and any(c in columns for c in METRIC_KEYS):
        return quarters_from_records(df.to_dict(orient="records"))

    quarter_cols = [c for c in df.columns if parse_quarter_label(c) != EPOCH]
    if not quarter_cols:
        raise DatasetError("No quarter columns found in frame")
    name_cols = [c for c in df.columns if c not in quarter_cols]
    names = df[name_cols[0]] if name_cols else pd.Series(df.index, index=df.index)

    grouped: Dict[str, Dict[str, Any]] = {str(c).strip(): {} for c in quarter_cols}
    for row_idx, raw_name in names.items():
        name = _clean_cell(raw_name if isinstance(raw_name, str) else str(raw_name))
        if name is None or name.lower() in ("nan", "none"):
            continue
        for col in quarter_cols:
            metrics = grouped[str(col).strip()]
            if metrics.get(name) is None:
                metrics[name] = _clean_cell(df.at[row_idx, col])
    return [Quarter(label, metrics) for label, metrics in grouped.items()]


def quarters_to_frame(quarters: Sequence[Quarter]) -> pd.DataFrame:
    """Metrics × quarters grid, columns oldest → newest, metrics in first-seen order."""
    ordered = sort_quarters(merge_duplicate_quarters(quarters))
    names: List[str] = []
    for q in ordered:
        names.extend(n for n in q.metrics if n not in names)
    data = {q.label: [q.metrics.get(n) for n in names] for q in ordered}
    frame = pd.DataFrame(data, index=pd.Index(names, name="metric"))
    return frame


def coerce_quarters(data: Any) -> List[Quarter]:
    """Accept any supported in-memory shape and return a list of quarters."""
    if data is None:
        return []
    if isinstance(data, pd.DataFrame):
        return quarters_from_frame(data)
    if isinstance(data, Mapping):
        return quarters_from_mapping(data)
    items = list(data)
    if not items:
        return []
    if all(isinstance(q, Quarter) for q in items):
        return items
    if all(isinstance(r, Mapping) for r in items):
        return quarters_from_records(items)
    raise DatasetError(f"Unsupported quarterly data of type {type(data).__name__}")


# ─── Tabular Files ────────────────────────────────────────────────────────────

def _rows_to_quarters(rows: List[List[Any]]) -> List[Quarter]:
    """Find the header row with most quarter labels and read the rows below it."""
    best_row = -1
    best_cols: List[Tuple[int, str]] = []
    for i, row in enumerate(rows[:_HEADER_SCAN_ROWS]):
        cols = []
        for j, cell in enumerate(row):
            label = _clean_cell(cell)
            if label is not None and parse_quarter_label(label) != EPOCH:
                cols.append((j, str(label)))
        if len(cols) > len(best_cols):
            best_row, best_cols = i, cols
    if not best_cols:
        return []

    # Metric column = first non-quarter column of the header row
    header = rows[best_row]
    quarter_idx = {j for j, _ in best_cols}
    metric_col = next((j for j in range(min(5, len(header))) if j not in quarter_idx), 0)

    grouped: Dict[str, Dict[str, Any]] = {label: {} for _, label in best_cols}
    for row in rows[best_row + 1:]:
        if metric_col >= len(row):
            continue
        name = _clean_cell(row[metric_col])
        if name is None or len(str(name)) < 2 or str(name).lower() in ('nan', 'none'):
            continue
        name = str(name)
        for col_idx, label in best_cols:
            value = _clean_cell(row[col_idx]) if col_idx < len(row) else None
            if grouped[label].get(name) is None:
                grouped[label][name] = value
    return [Quarter(label, metrics) for label, metrics in grouped.items()]


def _frame_rows(df: pd.DataFrame) -> List[List[Any]]:
    return df.astype(object).where(pd.notna(df), None).values.tolist()


def _parse_html(content: bytes) -> List[Quarter]:
    """Read every <table> in an HTML export; the first table to carry a metric wins."""
    html = _decode_text(content)
    if not html:
        return []
    soup = BeautifulSoup(html, 'lxml')
    found: List[Quarter] = []
    for table in soup.find_all('table'):
        rows = []
        for tr in table.find_all('tr'):
            cells = []
            for td in tr.find_all(['td', 'th']):
                colspan = int(td.get('colspan', 1) or 1)
                text = ' '.join(td.get_text().split())
                cells.extend([text] * colspan)
            rows.append(cells)
        if len(rows) < 2:
            continue
        found.extend(_rows_to_quarters(rows))
    return merge_duplicate_quarters(found)


def _decode_text(content: bytes) -> str:
    """Decode bytes with fallbacks for legacy exports (utf-16/latin1/etc.)."""
    for enc in ("utf-8", "utf-16", "latin1"):
        try:
            text = content.decode(enc)
        except UnicodeDecodeError:
            continue
        if text:
            return text
    return content.decode("utf-8", errors="replace")


def _looks_like_html(content: bytes) -> bool:
    """Heuristic detection for HTML payloads saved with .xls extension."""
    low = content[:4096].lower().replace(b"\x00", b"")
    return any(tok in low for tok in (b"<html", b"<table", b"<!doctype html", b"<tr", b"<td"))


def _parse_excel(file_bytes: bytes, filename: str) -> List[Quarter]:
    engine = 'openpyxl' if filename.lower().endswith('.xlsx') else 'xlrd'
    try:
        xl = pd.ExcelFile(io.BytesIO(file_bytes), engine=engine)
    except (ValueError, OSError, zipfile.BadZipFile) as exc:
        raise DatasetError(f"Cannot open workbook {filename!r}: {exc}") from exc
    found: List[Quarter] = []
    for sheet_name in xl.sheet_names:
        df = xl.parse(sheet_name, header=None, dtype=str)
        sheet = _rows_to_quarters(_frame_rows(df))
        if not sheet:
            logger.debug("Sheet %r of %s has no quarter header, skipped", sheet_name, filename)
        found.extend(sheet)
    return merge_duplicate_quarters(found)


def read_quarterly_file(file_bytes: bytes, filename: str) -> List[Quarter]:
    """
    Parse an exported quarterly results file into quarters.
    Supports csv, xlsx, xls and htm/html; raises DatasetError when nothing
    quarter-shaped can be read.
    """
    fn_lower = filename.lower()
    if fn_lower.endswith(('.htm', '.html')) or (fn_lower.endswith('.xls') and _looks_like_html(file_bytes)):
        quarters = _parse_html(file_bytes)
    elif fn_lower.endswith('.csv'):
        try:
            df = pd.read_csv(io.BytesIO(file_bytes), header=None, dtype=str)
        except (ValueError, UnicodeDecodeError) as exc:
            raise DatasetError(f"Cannot read CSV {filename!r}: {exc}") from exc
        quarters = _rows_to_quarters(_frame_rows(df))
    elif fn_lower.endswith(('.xlsx', '.xls')):
        quarters = _parse_excel(file_bytes, filename)
    else:
        raise DatasetError(f"Unsupported file type: {filename!r}")

    if not quarters:
        raise DatasetError(f"No quarter columns found in {filename!r}")
    logger.info("Read %d quarters from %s", len(quarters), filename)
    return sort_quarters(quarters)
