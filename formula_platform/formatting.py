"""
formula_platform/formatting.py
==============================
Plain-text rendering of values, evaluation steps and whole traces for logs,
reports and notebooks.
"""
from __future__ import annotations
from typing import Any, List, Optional

from .quarters import format_quarter_with_label
from .signals import NO_SIGNAL
from .types import EvaluationResult, EvaluationStep, FormulaTrace

STEP_LABELS = {
    "metric_lookup": "Metric Lookup",
    "function_call": "Function Call",
    "comparison": "Comparison",
    "arithmetic": "Arithmetic",
    "logical": "Logical",
    "unary": "Unary",
}


def format_number(value: Optional[float], decimals: int = 2) -> str:
    if value is None:
        return "—"
    return f"{value:,.{decimals}f}"


def format_percent(value: Optional[float], decimals: int = 1) -> str:
    if value is None:
        return "—"
    return f"{value:+.{decimals}f}%" if abs(value) < 1000 else f"{value:,.{decimals}f}%"


def format_value(value: Any, decimals: int = 2) -> str:
    """Result value as shown to a user: numbers rounded, null as "—"."""
    if value is None:
        return "—"
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, (int, float)):
        f = float(value)
        if f.is_integer() and abs(f) < 1e15:
            return f"{int(f):,}"
        return format_number(f, decimals)
    if isinstance(value, list):
        return "{" + ", ".join(format_value(v, decimals) for v in value) + "}"
    return str(value)


def format_step(step: EvaluationStep) -> str:
    return f"{STEP_LABELS.get(step.type, step.type)}: {step.description}"


def explain_result(result: Any, result_type: Optional[str] = None, error: Optional[str] = None) -> str:
    """One-sentence explanation of what an evaluation result means."""
    if result_type == "error":
        return f"Formula could not be evaluated: {error or 'unknown error'}."
    if result is None:
        return f"Formula evaluation resulted in null, reported as '{NO_SIGNAL}'."
    if isinstance(result, bool):
        if result:
            return "Formula evaluation returned TRUE. The conditions in the formula were satisfied."
        return "Formula evaluation returned FALSE. The conditions in the formula were not satisfied."
    if isinstance(result, str):
        if result == NO_SIGNAL:
            return (f"Formula evaluation returned '{NO_SIGNAL}'. The conditions in the formula were "
                    "not met, or required data was missing.")
        return f'Formula evaluation returned signal "{result}".'
    if isinstance(result, (int, float)):
        return f"Formula evaluation returned numeric value {format_value(result)}."
    return "Formula evaluation completed."


def explain_evaluation(evaluation: EvaluationResult) -> str:
    return explain_result(evaluation.result, evaluation.result_type, evaluation.error)


def render_trace(trace: FormulaTrace) -> str:
    """Multi-line text report of a trace."""
    lines: List[str] = [
        f"Formula:      {trace.original_formula}",
        f"Substituted:  {trace.formula_with_substitutions}",
        f"Result:       {format_value(trace.result)} ({trace.result_type})",
    ]
    if trace.used_quarters:
        lines.append("Quarters:     " + ", ".join(format_quarter_with_label(q) for q in trace.used_quarters))
    lines.append(f"Time:         {trace.evaluation_time:.2f} ms")

    if trace.substitutions:
        lines.append("")
        lines.append("Substitutions:")
        for sub in trace.substitutions:
            where = sub.quarter or "outside window"
            flag = " [fallback]" if sub.normalized else ""
            lines.append(f"  {sub.original} → {sub.canonical} @ {where} = {format_value(sub.value)}{flag}")

    if trace.steps:
        lines.append("")
        lines.append("Steps:")
        for i, step in enumerate(trace.steps, start=1):
            lines.append(f"  {i:>2}. {format_step(step)}")

    lines.append("")
    lines.append(explain_result(trace.result, trace.result_type, trace.error))
    return "\n".join(lines)
