"""
formula_platform/types.py
=========================
Dataclasses shared across the formula engine: the quarterly dataset, the
formula definition, evaluation results and the audit trace.
"""
from __future__ import annotations
from dataclasses import dataclass, field, asdict
from typing import Dict, List, Optional, Literal, Any, Union

# ─── Core Data Types ──────────────────────────────────────────────────────────

# Raw metric value as stored: "12.5%", "1,234", 42.0 or None
RawValue = Union[str, int, float, None]

# Result of evaluating a formula
ScalarValue = Union[str, float, bool, None]

ResultType = Literal["string", "number", "boolean", "null", "error"]

StepType = Literal[
    "metric_lookup", "function_call", "comparison", "arithmetic", "logical", "unary",
]

FormulaScope = Literal["global", "sector", "company"]

STEP_TYPES = ("metric_lookup", "function_call", "comparison", "arithmetic", "logical", "unary")


@dataclass
class Quarter:
    """One reporting quarter: its label ("Mar 2024") and metric name → raw value."""
    label: str
    metrics: Dict[str, RawValue] = field(default_factory=dict)

    def __repr__(self) -> str:
        return f"Quarter({self.label!r}, {len(self.metrics)} metrics)"


@dataclass(frozen=True)
class Formula:
    """
    A stored formula. ``priority`` and ``scope``/``scope_value`` are carried
    for whoever decides which formula applies to which company; the engine
    itself only reads ``text`` and ``signal``.
    """
    text: str
    signal: str = "BUY"
    name: str = ""
    priority: int = 0
    scope: FormulaScope = "global"
    scope_value: Optional[str] = None


# ─── Trace Types ──────────────────────────────────────────────────────────────

@dataclass
class MetricSubstitution:
    original: str                 # token as written, e.g. "Sales[Q12]"
    metric_name: str              # name requested by the formula
    canonical: str                # dataset metric actually matched (or metric_name)
    quarter: Optional[str]        # quarter label, None when the index is outside the window
    quarter_index: int            # window index (absolute) or offset (relative)
    value: Optional[float]
    normalized: bool = False      # resolved through a fallback alias
    relative: bool = False


@dataclass
class EvaluationStep:
    type: str
    description: str
    input: Any = None
    output: Any = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = 0.0        # ms since evaluation start


@dataclass
class FormulaTrace:
    original_formula: str
    formula_with_substitutions: str
    substitutions: List[MetricSubstitution] = field(default_factory=list)
    steps: List[EvaluationStep] = field(default_factory=list)
    result: ScalarValue = None
    result_type: str = "null"
    error: Optional[str] = None
    used_quarters: List[str] = field(default_factory=list)
    evaluation_time: float = 0.0  # ms

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def steps_of(self, step_type: str) -> List[EvaluationStep]:
        return [s for s in self.steps if s.type == step_type]


# ─── Results ──────────────────────────────────────────────────────────────────

@dataclass
class EvaluationResult:
    result: ScalarValue
    result_type: str
    used_quarters: List[str] = field(default_factory=list)
    error: Optional[str] = None
    trace: Optional[FormulaTrace] = None

    @property
    def is_error(self) -> bool:
        return self.result_type == "error"

    def to_dict(self) -> Dict[str, Any]:
        d = {
            "result": self.result,
            "result_type": self.result_type,
            "used_quarters": list(self.used_quarters),
            "error": self.error,
        }
        if self.trace is not None:
            d["trace"] = self.trace.to_dict()
        return d


@dataclass
class SignalResult:
    signal: Union[str, float]
    evaluation: EvaluationResult

    @property
    def used_quarters(self) -> List[str]:
        return self.evaluation.used_quarters

    @property
    def trace(self) -> Optional[FormulaTrace]:
        return self.evaluation.trace
