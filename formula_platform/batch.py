"""
formula_platform/batch.py
=========================
One formula over many companies. Each company is evaluated on its own: a
parse error marks every row, anything else only ever affects its own row.
"""
from __future__ import annotations
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import pandas as pd

from .config import EngineConfig
from .dataset import coerce_quarters
from .engine import compile_formula, evaluate_compiled
from .errors import ParseError
from .parser import ParsedFormula
from .quarters import select_window
from .signals import ERROR_SIGNAL, is_match, signal_for
from .types import EvaluationResult, Formula

logger = logging.getLogger(__name__)

BATCH_COLUMNS = ["ticker", "result", "result_type", "signal", "used_quarters", "error"]


def _row(ticker: str, evaluation: EvaluationResult, label: Optional[str]) -> Dict[str, Any]:
    return {
        "ticker": ticker,
        "result": evaluation.result,
        "result_type": evaluation.result_type,
        "signal": signal_for(evaluation, label),
        "used_quarters": list(evaluation.used_quarters),
        "error": evaluation.error,
    }


def _evaluate_one(
    ticker: str,
    parsed: ParsedFormula,
    data: Any,
    label: Optional[str],
    selected: Optional[Sequence[str]],
    config: EngineConfig,
) -> Dict[str, Any]:
    try:
        window = select_window(coerce_quarters(data), selected, config.window_size)
        evaluation = evaluate_compiled(parsed, window, config)
    except Exception as exc:
        logger.exception("Evaluation failed for %s", ticker)
        evaluation = EvaluationResult(None, "error", [], f"{type(exc).__name__}: {exc}")
    return _row(ticker, evaluation, label)


def evaluate_batch(
    formula: Union[Formula, str],
    datasets: Mapping[str, Any],
    signal: Optional[str] = None,
    selected_quarters: Optional[Sequence[str]] = None,
    config: Optional[EngineConfig] = None,
    max_workers: Optional[int] = None,
) -> pd.DataFrame:
    """
    Evaluate one formula for every ticker in ``datasets`` (ticker → quarterly data).
    Returns one row per ticker with columns ``BATCH_COLUMNS``, in input order.
    Cells hold the plain Python values (``dtype=object``), so ``None`` and
    ``True`` survive as themselves.
    """
    cfg = config or EngineConfig()
    if isinstance(formula, Formula):
        text, label = formula.text, signal or formula.signal
    else:
        text, label = formula, signal

    tickers = list(datasets.keys())
    try:
        parsed = compile_formula(text, cfg)
    except ParseError as exc:
        logger.warning("Formula %r does not parse: %s", text, exc.message)
        rows = [{
            "ticker": t, "result": None, "result_type": "error", "signal": ERROR_SIGNAL,
            "used_quarters": [], "error": exc.message,
        } for t in tickers]
        return pd.DataFrame(rows, columns=BATCH_COLUMNS, dtype=object)

    jobs: List[Tuple[str, Any]] = [(t, datasets[t]) for t in tickers]
    if max_workers and max_workers > 1 and len(jobs) > 1:
        with ThreadPoolExecutor(max_workers=max_workers) as pool:
            rows = list(pool.map(
                lambda job: _evaluate_one(job[0], parsed, job[1], label, selected_quarters, cfg), jobs,
            ))
    else:
        rows = [_evaluate_one(t, parsed, d, label, selected_quarters, cfg) for t, d in jobs]

    df = pd.DataFrame(rows, columns=BATCH_COLUMNS, dtype=object)
    errors = int((df["result_type"] == "error").sum()) if not df.empty else 0
    logger.info("Evaluated %r for %d companies (%d errors)", text, len(df), errors)
    return df


def screen(
    formula: Union[Formula, str],
    datasets: Mapping[str, Any],
    selected_quarters: Optional[Sequence[str]] = None,
    config: Optional[EngineConfig] = None,
    max_workers: Optional[int] = None,
) -> pd.DataFrame:
    """Rows of ``evaluate_batch`` whose result counts as a match (True, non-zero, a signal)."""
    df = evaluate_batch(formula, datasets, None, selected_quarters, config, max_workers)
    if df.empty:
        return df
    mask = df["result"].map(is_match).astype(bool) & (df["result_type"] != "error")
    return df[mask].reset_index(drop=True)
