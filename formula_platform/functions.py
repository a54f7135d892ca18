"""
formula_platform/functions.py
=============================
Function table (name → category, arity) and the implementations of the
functions that take already-evaluated arguments.

Functions whose arguments must not all be evaluated up front (IF, AND, OR,
IFERROR, NOTNULL, COALESCE, CHOOSE, LET, LAMBDA, MAP) are marked ``lazy`` and
implemented in the evaluator.
"""
from __future__ import annotations
import math
import re
from dataclasses import dataclass
from decimal import Decimal, ROUND_DOWN, ROUND_HALF_UP, ROUND_UP, InvalidOperation
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from .errors import FormulaRuntimeError, ParseError

EPSILON = 1e-7
MAX_SEQUENCE = 10_000


# ─── Registry ─────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class FunctionSpec:
    name: str
    category: str               # logical | math | text | error | conditional | array
    min_args: int
    max_args: Optional[int]     # None = unbounded
    lazy: bool = False
    odd_args: bool = False

    @property
    def arity_text(self) -> str:
        if self.max_args is None:
            return f"at least {self.min_args}"
        if self.min_args == self.max_args:
            return f"exactly {self.min_args}"
        return f"{self.min_args} to {self.max_args}"


def _spec(name, category, lo, hi, lazy=False, odd=False) -> Tuple[str, FunctionSpec]:
    return name, FunctionSpec(name, category, lo, hi, lazy, odd)


FUNCTIONS: Dict[str, FunctionSpec] = dict([
    # ── Logical ─────────────────────────────────────────────────────────────
    _spec("IF", "logical", 3, 3, lazy=True),
    _spec("AND", "logical", 1, None, lazy=True),
    _spec("OR", "logical", 1, None, lazy=True),
    _spec("NOT", "logical", 1, 1),
    _spec("XOR", "logical", 2, 2),
    _spec("ISNUMBER", "logical", 1, 1),
    _spec("ISBLANK", "logical", 1, 1),
    # ── Math ────────────────────────────────────────────────────────────────
    _spec("SUM", "math", 0, None),
    _spec("AVERAGE", "math", 1, None),
    _spec("MAX", "math", 1, None),
    _spec("MIN", "math", 1, None),
    _spec("COUNT", "math", 0, None),
    _spec("ROUND", "math", 2, 2),
    _spec("ROUNDUP", "math", 2, 2),
    _spec("ROUNDDOWN", "math", 2, 2),
    _spec("ABS", "math", 1, 1),
    _spec("SQRT", "math", 1, 1),
    _spec("POWER", "math", 2, 2),
    _spec("LOG", "math", 1, 2),
    _spec("CEILING", "math", 1, 2),
    _spec("FLOOR", "math", 1, 2),
    # ── Text ────────────────────────────────────────────────────────────────
    _spec("TRIM", "text", 1, 1),
    _spec("CONCAT", "text", 2, None),
    _spec("CONCATENATE", "text", 2, None),
    # ── Error handling ──────────────────────────────────────────────────────
    _spec("IFERROR", "error", 2, 2, lazy=True),
    _spec("NOTNULL", "error", 1, 2, lazy=True),
    _spec("COALESCE", "error", 1, None, lazy=True),
    # ── Conditional aggregation ─────────────────────────────────────────────
    _spec("SUMIF", "conditional", 2, 3),
    _spec("COUNTIF", "conditional", 2, 2),
    # ── Arrays ──────────────────────────────────────────────────────────────
    _spec("CHOOSE", "array", 2, None, lazy=True),
    _spec("INDEX", "array", 2, 2),
    _spec("SEQUENCE", "array", 1, 4),
    _spec("XLOOKUP", "array", 3, 6),
    _spec("MAP", "array", 2, 2, lazy=True),
    _spec("LET", "array", 3, None, lazy=True, odd=True),
    _spec("LAMBDA", "array", 2, None, lazy=True),
])


def get_function(name: str) -> Optional[FunctionSpec]:
    return FUNCTIONS.get(name.upper())


def is_function(name: str) -> bool:
    return name.upper() in FUNCTIONS


def check_arity(name: str, count: int, fragment: str = "", position: Optional[int] = None) -> FunctionSpec:
    """Raise ParseError unless ``name`` is known and accepts ``count`` arguments."""
    spec = get_function(name)
    if spec is None:
        raise ParseError("Unknown function", name, position)
    too_few = count < spec.min_args
    too_many = spec.max_args is not None and count > spec.max_args
    if too_few or too_many or (spec.odd_args and count % 2 == 0):
        expected = spec.arity_text + (" (odd count)" if spec.odd_args else "")
        raise ParseError(
            f"{spec.name} expects {expected} argument(s), got {count}",
            fragment or name, position,
        )
    return spec


def functions_by_category() -> Dict[str, List[str]]:
    out: Dict[str, List[str]] = {}
    for spec in FUNCTIONS.values():
        out.setdefault(spec.category, []).append(spec.name)
    return out


# ─── Value Helpers ────────────────────────────────────────────────────────────

def is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def is_array(value: Any) -> bool:
    return isinstance(value, tuple)


def flatten(values: Sequence[Any]) -> List[Any]:
    out: List[Any] = []
    for v in values:
        if isinstance(v, tuple):
            out.extend(flatten(v))
        else:
            out.append(v)
    return out


def numbers_in(values: Sequence[Any]) -> List[float]:
    return [float(v) for v in flatten(values) if is_number(v)]


def to_boolean(value: Any) -> bool:
    """null → False; numbers ≠ 0; strings non-empty and not "false"; arrays non-empty."""
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if is_number(value):
        return value != 0
    if isinstance(value, str):
        return value != "" and value.strip().lower() != "false"
    if isinstance(value, tuple):
        return len(value) > 0
    return True


def to_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if is_number(value):
        f = float(value)
        return str(int(f)) if f.is_integer() and abs(f) < 1e15 else repr(f)
    if isinstance(value, tuple):
        return ",".join(to_text(v) for v in value)
    return str(value)


def scalar_number(name: str, value: Any, position: str = "argument") -> Optional[float]:
    """
    Scalar numeric argument: None stays None, booleans become 1/0, anything
    else non-numeric is an error.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if is_number(value):
        return float(value)
    raise FormulaRuntimeError(f"{name}: {position} is not a number ({to_text(value)!r})")


def finite(name: str, value: float) -> float:
    if not math.isfinite(value):
        raise FormulaRuntimeError(f"{name}: result is not a finite number")
    return value


def values_equal(a: Any, b: Any) -> bool:
    if is_number(a) and is_number(b):
        return abs(float(a) - float(b)) < EPSILON
    if isinstance(a, str) and isinstance(b, str):
        return a.lower() == b.lower()
    return a == b and type(a) is type(b)


# ─── Logical ──────────────────────────────────────────────────────────────────

def fn_not(value):
    return not to_boolean(value)


def fn_xor(a, b):
    return to_boolean(a) != to_boolean(b)


def fn_isnumber(value):
    return is_number(value)


def fn_isblank(value):
    return value is None or value == ""


# ─── Math ─────────────────────────────────────────────────────────────────────

def total(name: str, values) -> float:
    try:
        return finite(name, math.fsum(values))
    except OverflowError:
        raise FormulaRuntimeError(f"{name}: result is not a finite number")


def fn_sum(*args):
    return total("SUM", numbers_in(args))


def fn_count(*args):
    # numbers and text count, nulls and booleans do not
    return float(sum(1 for v in flatten(args) if is_number(v) or isinstance(v, str)))


def _require_numbers(name: str, args) -> List[float]:
    nums = numbers_in(args)
    if not nums:
        raise FormulaRuntimeError(f"{name}: no numeric values")
    return nums


def fn_average(*args):
    nums = _require_numbers("AVERAGE", args)
    return total("AVERAGE", nums) / len(nums)


def fn_max(*args):
    return max(_require_numbers("MAX", args))


def fn_min(*args):
    return min(_require_numbers("MIN", args))


def _decimal_round(name: str, value, digits, rounding) -> Optional[float]:
    x = scalar_number(name, value)
    d = scalar_number(name, digits, "digits")
    if x is None or d is None:
        return None
    try:
        q = Decimal(repr(x)).quantize(Decimal(1).scaleb(-int(d)), rounding=rounding)
    except InvalidOperation:
        raise FormulaRuntimeError(f"{name}: cannot round {x!r} to {int(d)} digits")
    return float(q)


def fn_round(value, digits):
    return _decimal_round("ROUND", value, digits, ROUND_HALF_UP)


def fn_roundup(value, digits):
    return _decimal_round("ROUNDUP", value, digits, ROUND_UP)


def fn_rounddown(value, digits):
    return _decimal_round("ROUNDDOWN", value, digits, ROUND_DOWN)


def fn_abs(value):
    x = scalar_number("ABS", value)
    return None if x is None else abs(x)


def fn_sqrt(value):
    x = scalar_number("SQRT", value)
    if x is None:
        return None
    if x < 0:
        raise FormulaRuntimeError("SQRT: negative argument")
    return math.sqrt(x)


def power(name: str, base: Optional[float], exponent: Optional[float]) -> Optional[float]:
    if base is None or exponent is None:
        return None
    try:
        return finite(name, math.pow(base, exponent))
    except (OverflowError, ValueError, ZeroDivisionError):
        raise FormulaRuntimeError(f"{name}: {base!r} ^ {exponent!r} is not a finite number")


def fn_power(base, exponent):
    return power("POWER", scalar_number("POWER", base), scalar_number("POWER", exponent, "exponent"))


def fn_log(value, base=10.0):
    x = scalar_number("LOG", value)
    b = scalar_number("LOG", base, "base")
    if x is None or b is None:
        return None
    if x <= 0:
        raise FormulaRuntimeError("LOG: argument must be positive")
    if b <= 0 or b == 1:
        raise FormulaRuntimeError("LOG: invalid base")
    return math.log(x) / math.log(b)


def fn_ceiling(value, significance=1.0):
    x = scalar_number("CEILING", value)
    s = scalar_number("CEILING", significance, "significance")
    if x is None or s is None:
        return None
    if s == 0:
        return 0.0
    return _to_multiple("CEILING", x, s, math.ceil)


def fn_floor(value, significance=1.0):
    x = scalar_number("FLOOR", value)
    s = scalar_number("FLOOR", significance, "significance")
    if x is None or s is None:
        return None
    if s == 0:
        raise FormulaRuntimeError("FLOOR: significance must not be zero")
    return _to_multiple("FLOOR", x, s, math.floor)


def _to_multiple(name: str, x: float, s: float, to_int) -> float:
    try:
        return finite(name, to_int(x / s) * s)
    except (OverflowError, ValueError):
        raise FormulaRuntimeError(f"{name}: {x!r} / {s!r} is not a finite number")


# ─── Text ─────────────────────────────────────────────────────────────────────

def fn_trim(value):
    return " ".join(to_text(value).split())


def fn_concat(*args):
    return "".join(to_text(v) for v in flatten(args))


# ─── Conditional Aggregation ──────────────────────────────────────────────────

_CRITERIA_RE = re.compile(r'^\s*(>=|<=|<>|!=|>|<|=)?\s*(.*?)\s*$', re.DOTALL)


def parse_criteria(criteria: Any) -> Callable[[Any], bool]:
    """
    Build a predicate from a SUMIF/COUNTIF criterion:
    ">10", "<=0", "<>x", "=BUY", "BUY" or a plain number.
    """
    if not isinstance(criteria, str):
        return lambda v: v is not None and values_equal(v, criteria)

    m = _CRITERIA_RE.match(criteria)
    op = m.group(1) or "="
    operand_text = m.group(2)
    if op == "!=":
        op = "<>"
    try:
        operand: Any = float(operand_text)
    except ValueError:
        operand = operand_text

    def predicate(v: Any) -> bool:
        if v is None:
            return op == "<>" and operand_text != ""
        if op == "=":
            return values_equal(v, operand)
        if op == "<>":
            return not values_equal(v, operand)
        if not (is_number(v) and is_number(operand)):
            return False
        return compare_numbers(op, float(v), float(operand))

    return predicate


def compare_numbers(op: str, left: float, right: float) -> bool:
    close = abs(left - right) < EPSILON
    if op == "=":
        return close
    if op == "<>":
        return not close
    if op == ">":
        return left > right and not close
    if op == "<":
        return left < right and not close
    if op == ">=":
        return left > right or close
    if op == "<=":
        return left < right or close
    raise FormulaRuntimeError(f"Unknown comparison operator {op!r}")


def _as_list(value: Any) -> List[Any]:
    return list(flatten((value,)))


def fn_sumif(range_values, criteria, sum_range=None):
    pred = parse_criteria(criteria)
    cells = _as_list(range_values)
    targets = cells if sum_range is None else _as_list(sum_range)
    matched = [targets[i] for i in range(min(len(cells), len(targets))) if pred(cells[i])]
    return total("SUMIF", [float(v) for v in matched if is_number(v)])


def fn_countif(range_values, criteria):
    pred = parse_criteria(criteria)
    return float(sum(1 for v in _as_list(range_values) if pred(v)))


# ─── Arrays ───────────────────────────────────────────────────────────────────

def fn_index(array, position):
    n = scalar_number("INDEX", position, "position")
    if n is None:
        return None
    items = array if is_array(array) else (array,)
    i = int(round(n))
    if i < 1 or i > len(items):
        raise FormulaRuntimeError(f"INDEX: position {i} is outside 1..{len(items)}")
    return items[i - 1]


def fn_sequence(rows, cols=1.0, start=1.0, step=1.0):
    r = scalar_number("SEQUENCE", rows, "rows")
    c = scalar_number("SEQUENCE", cols, "columns")
    s = scalar_number("SEQUENCE", start, "start")
    st = scalar_number("SEQUENCE", step, "step")
    if None in (r, c, s, st):
        return None
    r, c = int(r), int(c)
    if r < 1 or c < 1:
        raise FormulaRuntimeError("SEQUENCE: rows and columns must be at least 1")
    if r * c > MAX_SEQUENCE:
        raise FormulaRuntimeError(f"SEQUENCE: more than {MAX_SEQUENCE} values requested")
    return tuple(s + k * st for k in range(r * c))


def fn_xlookup(lookup_value, lookup_array, return_array, if_not_found=None,
               match_mode=0.0, search_mode=1.0):
    keys = _as_list(lookup_array)
    values = _as_list(return_array)
    mode = int(scalar_number("XLOOKUP", match_mode, "match_mode") or 0)
    order = list(range(len(keys)))
    if int(scalar_number("XLOOKUP", search_mode, "search_mode") or 1) < 0:
        order.reverse()

    found: Optional[int] = None
    for i in order:
        if values_equal(keys[i], lookup_value):
            found = i
            break
    if found is None and mode in (-1, 1) and is_number(lookup_value):
        # exact match or next smaller (-1) / next larger (1)
        best = None
        for i in order:
            k = keys[i]
            if not is_number(k):
                continue
            if (mode == -1 and k < lookup_value) or (mode == 1 and k > lookup_value):
                if best is None or abs(k - lookup_value) < abs(keys[best] - lookup_value):
                    best = i
        found = best

    if found is None or found >= len(values):
        if if_not_found is not None:
            return if_not_found
        raise FormulaRuntimeError(f"XLOOKUP: {to_text(lookup_value)!r} not found")
    return values[found]


# Eager functions: called with evaluated arguments, in source order.
IMPLEMENTATIONS: Dict[str, Callable[..., Any]] = {
    "NOT": fn_not,
    "XOR": fn_xor,
    "ISNUMBER": fn_isnumber,
    "ISBLANK": fn_isblank,
    "SUM": fn_sum,
    "AVERAGE": fn_average,
    "MAX": fn_max,
    "MIN": fn_min,
    "COUNT": fn_count,
    "ROUND": fn_round,
    "ROUNDUP": fn_roundup,
    "ROUNDDOWN": fn_rounddown,
    "ABS": fn_abs,
    "SQRT": fn_sqrt,
    "POWER": fn_power,
    "LOG": fn_log,
    "CEILING": fn_ceiling,
    "FLOOR": fn_floor,
    "TRIM": fn_trim,
    "CONCAT": fn_concat,
    "CONCATENATE": fn_concat,
    "SUMIF": fn_sumif,
    "COUNTIF": fn_countif,
    "INDEX": fn_index,
    "SEQUENCE": fn_sequence,
    "XLOOKUP": fn_xlookup,
}
