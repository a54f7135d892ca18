"""
formula_platform/signals.py
===========================
Maps a raw evaluation result onto the signal a formula emits.
"""
from __future__ import annotations
import math
from typing import Any, Optional, Union

from .types import EvaluationResult

NO_SIGNAL = "No Signal"
ERROR_SIGNAL = "Error"
DEFAULT_SIGNAL = "BUY"


def map_signal(result: Any, label: Optional[str] = None, is_error: bool = False) -> Union[str, float]:
    """
    True → label upper-cased, False / None → "No Signal", text and numbers
    pass through unchanged, an evaluation error → "Error".
    """
    if is_error:
        return ERROR_SIGNAL
    if result is None or result is False:
        return NO_SIGNAL
    if result is True:
        return (label or DEFAULT_SIGNAL).strip().upper()
    if isinstance(result, (int, float)):
        return float(result)
    if isinstance(result, str):
        return result
    return ERROR_SIGNAL


def signal_for(evaluation: EvaluationResult, label: Optional[str] = None) -> Union[str, float]:
    return map_signal(evaluation.result, label, evaluation.is_error)


def is_match(result: Any) -> bool:
    """
    Screening semantics: True, any non-zero number and any text other than
    "No Signal" / "Error" / "" count as a match.
    """
    if isinstance(result, bool):
        return result
    if result is None:
        return False
    if isinstance(result, (int, float)):
        return math.isfinite(result) and result != 0
    if isinstance(result, str):
        return result.strip() not in ("", NO_SIGNAL, ERROR_SIGNAL)
    return False
