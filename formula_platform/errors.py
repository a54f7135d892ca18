"""
formula_platform/errors.py
==========================
Exception taxonomy for formula evaluation.

  - ParseError           malformed formula text, raised before anything is evaluated
  - FormulaRuntimeError  arithmetic/type failure while evaluating a parsed formula

A missing metric is *not* an error: it resolves to ``None`` and flows through
the evaluator as null.
"""
from __future__ import annotations
from typing import Optional


class FormulaError(Exception):
    """Base class for every error the formula engine raises on purpose."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"type": type(self).__name__, "message": self.message}


class ParseError(FormulaError):
    """Syntax error carrying the offending fragment and its character offset."""

    def __init__(self, message: str, fragment: str = "", position: Optional[int] = None):
        if fragment:
            text = f"{message}: {fragment!r}"
        else:
            text = message
        if position is not None:
            text = f"{text} (at position {position})"
        super().__init__(text)
        self.reason = message
        self.fragment = fragment
        self.position = position

    def to_dict(self) -> dict:
        d = super().to_dict()
        d.update({"fragment": self.fragment, "position": self.position})
        return d


class FormulaRuntimeError(FormulaError, RuntimeError):
    """Division by zero, non-numeric operand, empty aggregate and friends."""


class DatasetError(ValueError):
    """Quarterly data could not be read into quarters."""
