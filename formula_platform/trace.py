"""
formula_platform/trace.py
=========================
Evaluation audit trail.

The evaluator reports every elementary action to a recorder. ``TraceRecorder``
keeps them; ``NullRecorder`` has the same interface and drops everything, so
evaluation runs the same code path with tracing on or off.
"""
from __future__ import annotations
import math
import time
from typing import Any, Dict, List, Optional, Tuple

from .types import EvaluationStep, FormulaTrace, MetricSubstitution, STEP_TYPES

Span = Tuple[int, int]


def snapshot(value: Any) -> Any:
    """Copy a value into plain JSON types (tuples → lists, NaN → None)."""
    if value is None or isinstance(value, (bool, str)):
        return value
    if isinstance(value, (int, float)):
        f = float(value)
        return f if math.isfinite(f) else None
    if isinstance(value, (tuple, list)):
        return [snapshot(v) for v in value]
    if isinstance(value, dict):
        return {str(k): snapshot(v) for k, v in value.items()}
    return repr(value)


def substitute_spans(source: str, replacements: Dict[Span, str]) -> str:
    """Replace character spans of ``source``; overlapping spans keep the outermost."""
    chosen: List[Tuple[Span, str]] = []
    for span, text in sorted(replacements.items(), key=lambda kv: (kv[0][0], -kv[0][1])):
        if chosen and span[0] < chosen[-1][0][1]:
            continue
        chosen.append((span, text))
    out = source
    for (start, end), text in reversed(chosen):
        out = out[:start] + text + out[end:]
    return out


class NullRecorder:
    enabled = False

    def step(self, step_type: str, description: str, input: Any = None,
             output: Any = None, **metadata: Any) -> None:
        return None

    def substitution(self, sub: MetricSubstitution, span: Optional[Span] = None) -> None:
        return None

    def render(self, span: Optional[Span], text: str) -> None:
        return None


class TraceRecorder(NullRecorder):
    enabled = True

    def __init__(self, source: str):
        self.source = source
        self.steps: List[EvaluationStep] = []
        self.substitutions: List[MetricSubstitution] = []
        self._tokens: set = set()
        self._rendered: Dict[Span, str] = {}
        self._start = time.perf_counter()

    def elapsed_ms(self) -> float:
        return round((time.perf_counter() - self._start) * 1000.0, 4)

    def step(self, step_type: str, description: str, input: Any = None,
             output: Any = None, **metadata: Any) -> None:
        if step_type not in STEP_TYPES:
            raise ValueError(f"Unknown step type {step_type!r}")
        self.steps.append(EvaluationStep(
            type=step_type,
            description=description,
            input=snapshot(input),
            output=snapshot(output),
            metadata=snapshot(metadata),
            timestamp=self.elapsed_ms(),
        ))

    def substitution(self, sub: MetricSubstitution, span: Optional[Span] = None) -> None:
        if sub.original not in self._tokens:
            self._tokens.add(sub.original)
            self.substitutions.append(sub)
        if span is not None:
            self.render(span, format_substituted(sub.value))

    def render(self, span: Optional[Span], text: str) -> None:
        if span is not None:
            self._rendered.setdefault(span, text)

    def build(self, result: Any, result_type: str, used_quarters: List[str],
              error: Optional[str] = None) -> FormulaTrace:
        return FormulaTrace(
            original_formula=self.source,
            formula_with_substitutions=substitute_spans(self.source, self._rendered),
            substitutions=list(self.substitutions),
            steps=list(self.steps),
            result=snapshot(result),
            result_type=result_type,
            error=error,
            used_quarters=list(used_quarters),
            evaluation_time=self.elapsed_ms(),
        )


def format_substituted(value: Any) -> str:
    """Inline text for a value placed back into the formula."""
    if value is None:
        return "NULL"
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, (int, float)):
        f = float(value)
        return str(int(f)) if f.is_integer() and abs(f) < 1e15 else repr(f)
    if isinstance(value, (tuple, list)):
        return "{" + ",".join(format_substituted(v) for v in value) + "}"
    return '"' + str(value).replace('"', '""') + '"'
