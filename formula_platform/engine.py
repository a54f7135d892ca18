"""
formula_platform/engine.py
==========================
Public entry points: compile a formula once, evaluate it against a company's
quarterly data, map the result to a signal.

    >>> evaluate_formula('=IF(Sales[Q12]>Sales[Q11],"BUY","HOLD")', quarters).result
    'BUY'

``evaluate_formula`` never raises for a bad formula or missing data: parse
and runtime errors come back as ``result_type == "error"``.
"""
from __future__ import annotations
import logging
import time
from functools import lru_cache
from typing import Any, Optional, Sequence, Union

from .config import EngineConfig
from .dataset import coerce_quarters
from .errors import FormulaError, ParseError
from .evaluator import Evaluator, value_type
from .metric_resolver import MetricResolver
from .parser import ParsedFormula, parse_formula
from .quarters import QuarterWindow, select_window
from .signals import signal_for
from .trace import NullRecorder, TraceRecorder
from .types import EvaluationResult, Formula, SignalResult

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1024)
def _compile_cached(text: str, max_length: int) -> ParsedFormula:
    return parse_formula(text, max_length)


def compile_formula(text: str, config: Optional[EngineConfig] = None) -> ParsedFormula:
    """Parse (and cache) a formula. Raises ParseError."""
    cfg = config or EngineConfig()
    if not isinstance(text, str):
        raise ParseError("Formula must be text", repr(text))
    return _compile_cached(text.strip(), cfg.max_formula_length)


def validate_formula(text: str, config: Optional[EngineConfig] = None) -> Optional[ParseError]:
    """None when the formula parses, otherwise the ParseError."""
    try:
        compile_formula(text, config)
    except ParseError as exc:
        return exc
    return None


def evaluate_compiled(
    formula: ParsedFormula,
    window: QuarterWindow,
    config: Optional[EngineConfig] = None,
    collect_trace: Optional[bool] = None,
) -> EvaluationResult:
    """Evaluate an already-parsed formula over an already-selected window."""
    cfg = config or EngineConfig()
    tracing = cfg.collect_trace if collect_trace is None else collect_trace
    recorder = TraceRecorder(formula.source) if tracing else NullRecorder()
    resolver = MetricResolver(cfg.percent_as_fraction, cfg.verbose_logging)
    evaluator = Evaluator(formula, window, resolver, recorder)

    started = time.perf_counter()
    error: Optional[str] = None
    try:
        result: Any = evaluator.evaluate()
        result_type = value_type(result)
    except FormulaError as exc:
        result, result_type, error = None, "error", exc.message
        logger.debug("Evaluation error in %r: %s", formula.source, exc.message)

    used = evaluator.used_quarters
    if cfg.verbose_logging:
        logger.debug(
            "Evaluated %r over %d quarters in %.2f ms → %r (%s)",
            formula.source, window.count, (time.perf_counter() - started) * 1000.0, result, result_type,
        )
    trace = recorder.build(result, result_type, used, error) if tracing else None
    return EvaluationResult(result, result_type, used, error, trace)


def _error_result(text: str, exc: FormulaError, tracing: bool) -> EvaluationResult:
    trace = None
    if tracing:
        trace = TraceRecorder(str(text)).build(None, "error", [], exc.message)
    return EvaluationResult(None, "error", [], exc.message, trace)


def evaluate_formula(
    text: str,
    quarters: Any,
    selected_quarters: Optional[Sequence[str]] = None,
    window_size: Optional[int] = None,
    collect_trace: Optional[bool] = None,
    config: Optional[EngineConfig] = None,
) -> EvaluationResult:
    """
    Evaluate formula text against one company's quarters.

    ``quarters`` may be a list of Quarter, a mapping label → metrics, row
    records or a DataFrame (see ``dataset.coerce_quarters``).
    """
    cfg = (config or EngineConfig()).with_overrides(window_size=window_size, collect_trace=collect_trace)
    try:
        parsed = compile_formula(text, cfg)
    except ParseError as exc:
        logger.debug("Parse error in %r: %s", text, exc.message)
        return _error_result(text, exc, cfg.collect_trace)

    window = select_window(coerce_quarters(quarters), selected_quarters, cfg.window_size)
    return evaluate_compiled(parsed, window, cfg)


def generate_signal(
    formula: Union[Formula, str],
    quarters: Any,
    signal: Optional[str] = None,
    selected_quarters: Optional[Sequence[str]] = None,
    window_size: Optional[int] = None,
    collect_trace: Optional[bool] = None,
    config: Optional[EngineConfig] = None,
) -> SignalResult:
    """Evaluate a formula and map its result to a signal ("BUY", "No Signal", "Error", ...)."""
    if isinstance(formula, Formula):
        text, label = formula.text, signal or formula.signal
    else:
        text, label = formula, signal
    evaluation = evaluate_formula(text, quarters, selected_quarters, window_size, collect_trace, config)
    return SignalResult(signal_for(evaluation, label), evaluation)
