"""
formula_platform/evaluator.py
=============================
Walks a parsed formula over one quarter window.

Values flowing through the tree are ``None`` (no data), ``bool``, ``float``,
``str``, tuples (ranges, array literals, MAP/SEQUENCE output) and ``Lambda``
closures. Missing data propagates as ``None``; things that cannot be computed
raise FormulaRuntimeError, which only IFERROR catches.

The evaluator's only state is the set of quarters it touched; the lexical
scope for LET/LAMBDA is passed down as an argument, so one Evaluator per
call is all the isolation concurrent callers need.
"""
from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from .errors import FormulaRuntimeError
from .functions import (
    FUNCTIONS,
    IMPLEMENTATIONS,
    compare_numbers,
    finite,
    is_array,
    is_number,
    power,
    to_boolean,
    to_text,
    values_equal,
)
from .metric_resolver import MetricResolver
from .nodes import (
    ArrayNode,
    BinaryNode,
    BooleanNode,
    CallNode,
    ComparisonNode,
    MetricRefNode,
    NameNode,
    Node,
    NullNode,
    NumberNode,
    RangeNode,
    StringNode,
    UnaryNode,
)
from .parser import ParsedFormula
from .quarters import QuarterWindow, parse_quarter_label
from .trace import NullRecorder, format_substituted
from .types import MetricSubstitution


Scope = Mapping[str, Any]

_ARITH_NAMES = {"+": "add", "-": "subtract", "*": "multiply", "/": "divide", "^": "power", "&": "concatenate"}


@dataclass(frozen=True)
class Lambda:
    params: Tuple[str, ...]
    body: Node
    scope: Tuple[Tuple[str, Any], ...]

    def __repr__(self) -> str:
        return f"LAMBDA({', '.join(self.params)})"


def value_type(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if is_number(value):
        return "number"
    if isinstance(value, str):
        return "string"
    if is_array(value):
        return "array"
    return "lambda"


class Evaluator:
    def __init__(
        self,
        formula: ParsedFormula,
        window: QuarterWindow,
        resolver: Optional[MetricResolver] = None,
        recorder: Optional[NullRecorder] = None,
    ):
        self.formula = formula
        self.window = window
        self.resolver = resolver or MetricResolver()
        self.recorder = recorder or NullRecorder()
        self._touched: Dict[str, tuple] = {}
        self._dispatch: Dict[type, Callable[[Any, Scope], Any]] = {
            NumberNode: self._eval_literal,
            StringNode: self._eval_literal,
            BooleanNode: self._eval_literal,
            NullNode: self._eval_null,
            ArrayNode: self._eval_array,
            MetricRefNode: self._eval_ref,
            RangeNode: self._eval_range,
            NameNode: self._eval_name,
            UnaryNode: self._eval_unary,
            BinaryNode: self._eval_binary,
            ComparisonNode: self._eval_comparison,
            CallNode: self._eval_call,
        }

    # ── entry points ─────────────────────────────────────────────────────────

    def evaluate(self) -> Any:
        """Evaluate the whole formula. Arrays and lambdas are not valid final results."""
        value = self.eval(self.formula.root, {})
        if is_array(value):
            raise FormulaRuntimeError("Formula evaluates to an array, not a single value")
        if isinstance(value, Lambda):
            raise FormulaRuntimeError("Formula evaluates to a LAMBDA, not a value")
        return value

    @property
    def used_quarters(self) -> List[str]:
        """Labels of every quarter a lookup touched, newest first."""
        return sorted(self._touched, key=lambda label: (self._touched[label], label), reverse=True)

    def eval(self, node: Node, scope: Scope) -> Any:
        handler = self._dispatch.get(type(node))
        if handler is None:
            raise FormulaRuntimeError(f"Cannot evaluate {node.node_type} node")
        return handler(node, scope)

    # ── leaves ───────────────────────────────────────────────────────────────

    def _eval_literal(self, node, scope: Scope) -> Any:
        return node.value

    def _eval_null(self, node: NullNode, scope: Scope) -> Any:
        return None

    def _eval_array(self, node: ArrayNode, scope: Scope) -> tuple:
        items: List[Any] = []
        for item in node.items:
            v = self.eval(item, scope)
            if is_array(v):
                items.extend(v)
            else:
                items.append(v)
        return tuple(items)

    def _eval_name(self, node: NameNode, scope: Scope) -> Any:
        if node.name not in scope:
            raise FormulaRuntimeError(f"Unbound name {node.name!r}")
        return scope[node.name]

    def _eval_ref(self, node: MetricRefNode, scope: Scope) -> Optional[float]:
        if node.relative:
            quarter = self.window.quarter_at_offset(node.index)
        else:
            quarter = self.window.quarter_at(node.index)
        res = self.resolver.resolve(node.metric, quarter)
        if quarter is not None:
            self._touched[quarter.label] = parse_quarter_label(quarter.label)

        self.recorder.substitution(MetricSubstitution(
            original=node.token,
            metric_name=node.metric,
            canonical=res.canonical,
            quarter=quarter.label if quarter is not None else None,
            quarter_index=node.index,
            value=res.value,
            normalized=res.normalized,
            relative=node.relative,
        ), node.span)
        self.recorder.step(
            "metric_lookup",
            f"{node.token} → {format_substituted(res.value)}",
            input={"metric": node.metric, "index": node.index, "relative": node.relative},
            output=res.value,
            quarter=quarter.label if quarter is not None else None,
            matched=res.matched,
            normalized=res.normalized,
            in_window=quarter is not None,
        )
        return res.value

    def _eval_range(self, node: RangeNode, scope: Scope) -> tuple:
        values = tuple(self._eval_ref(ref, scope) for ref in node.refs)
        self.recorder.render(node.span, format_substituted(values))
        return values

    # ── operators ────────────────────────────────────────────────────────────

    def _eval_unary(self, node: UnaryNode, scope: Scope) -> Any:
        operand = self.eval(node.operand, scope)
        label = {"-": "negate", "+": "plus", "%": "percent"}[node.op]
        try:
            x = self._operand(operand, node.op)
            if x is None:
                result = None
            elif node.op == "-":
                result = -x
            elif node.op == "%":
                result = x / 100.0
            else:
                result = x
        except FormulaRuntimeError as exc:
            self.recorder.step("unary", f"{label} failed", input=operand, error=exc.message, op=node.op)
            raise
        self.recorder.step("unary", f"{label} {to_text(operand)}", input=operand, output=result, op=node.op)
        return result

    def _eval_binary(self, node: BinaryNode, scope: Scope) -> Any:
        left = self.eval(node.left, scope)
        right = self.eval(node.right, scope)
        inputs = {"left": left, "right": right}
        try:
            result = self._arith(node.op, left, right)
        except FormulaRuntimeError as exc:
            self.recorder.step("arithmetic", f"{_ARITH_NAMES[node.op]} failed", input=inputs,
                               op=node.op, error=exc.message)
            raise
        self.recorder.step(
            "arithmetic",
            f"{to_text(left) if left is not None else 'NULL'} {node.op} "
            f"{to_text(right) if right is not None else 'NULL'} = {format_substituted(result)}",
            input=inputs, output=result, op=node.op,
        )
        return result

    @staticmethod
    def _operand(value: Any, op: str) -> Optional[float]:
        if value is None:
            return None
        if isinstance(value, bool):
            return 1.0 if value else 0.0
        if is_number(value):
            return float(value)
        raise FormulaRuntimeError(f"Non-numeric operand {to_text(value)!r} for '{op}'")

    def _arith(self, op: str, left: Any, right: Any) -> Any:
        if op == "&":
            return to_text(left) + to_text(right)
        a = self._operand(left, op)
        b = self._operand(right, op)
        if a is None or b is None:
            return None
        if op == "+":
            return finite("+", a + b)
        if op == "-":
            return finite("-", a - b)
        if op == "*":
            return finite("*", a * b)
        if op == "/":
            if b == 0:
                raise FormulaRuntimeError("Division by zero")
            return finite("/", a / b)
        if op == "^":
            return power("^", a, b)
        raise FormulaRuntimeError(f"Unknown operator {op!r}")

    def _eval_comparison(self, node: ComparisonNode, scope: Scope) -> bool:
        left = self.eval(node.left, scope)
        right = self.eval(node.right, scope)
        try:
            result = compare(node.op, left, right)
        except FormulaRuntimeError as exc:
            self.recorder.step("comparison", f"{node.op} failed", input={"left": left, "right": right},
                               op=node.op, error=exc.message)
            raise
        self.recorder.step(
            "comparison",
            f"{format_substituted(left)} {node.op} {format_substituted(right)} → {format_substituted(result)}",
            input={"left": left, "right": right}, output=result, op=node.op,
        )
        return result

    # ── functions ────────────────────────────────────────────────────────────

    def _eval_call(self, node: CallNode, scope: Scope) -> Any:
        spec = FUNCTIONS[node.name]
        step_type = "logical" if spec.category == "logical" else "function_call"
        if spec.lazy:
            handler = getattr(self, f"_fn_{node.name.lower()}")
            try:
                result, meta = handler(node, scope)
            except FormulaRuntimeError as exc:
                self.recorder.step(step_type, f"{node.name} failed", error=exc.message, function=node.name)
                raise
            self.recorder.step(step_type, f"{node.name} → {_describe(result)}", output=result,
                               function=node.name, **meta)
            return result

        args = [self.eval(arg, scope) for arg in node.args]
        try:
            result = IMPLEMENTATIONS[node.name](*args)
        except FormulaRuntimeError as exc:
            self.recorder.step(step_type, f"{node.name} failed", input=[_describe(a) for a in args],
                               error=exc.message, function=node.name)
            raise
        self.recorder.step(step_type, f"{node.name}({', '.join(_describe(a) for a in args)}) → {_describe(result)}",
                           input=args, output=result, function=node.name)
        return result

    def _fn_if(self, node: CallNode, scope: Scope):
        condition = to_boolean(self.eval(node.args[0], scope))
        branch = node.args[1] if condition else node.args[2]
        return self.eval(branch, scope), {"condition": condition, "branch": "then" if condition else "else"}

    def _short_circuit(self, node: CallNode, scope: Scope, stop_on: bool):
        evaluated = 0
        for arg in node.args:
            evaluated += 1
            value = self.eval(arg, scope)
            items = value if is_array(value) else (value,)
            for item in items:
                if to_boolean(item) == stop_on:
                    return stop_on, {"evaluated": evaluated, "skipped": len(node.args) - evaluated}
        return not stop_on, {"evaluated": evaluated, "skipped": 0}

    def _fn_and(self, node: CallNode, scope: Scope):
        return self._short_circuit(node, scope, stop_on=False)

    def _fn_or(self, node: CallNode, scope: Scope):
        return self._short_circuit(node, scope, stop_on=True)

    def _fn_iferror(self, node: CallNode, scope: Scope):
        try:
            value = self.eval(node.args[0], scope)
        except FormulaRuntimeError as exc:
            return self.eval(node.args[1], scope), {"caught": exc.message}
        if value is None:
            return self.eval(node.args[1], scope), {"caught": "null value"}
        return value, {"caught": None}

    def _fn_notnull(self, node: CallNode, scope: Scope):
        value = self.eval(node.args[0], scope)
        if value is not None:
            return value, {"used_fallback": False}
        fallback = self.eval(node.args[1], scope) if len(node.args) > 1 else None
        return fallback, {"used_fallback": True}

    def _fn_coalesce(self, node: CallNode, scope: Scope):
        for position, arg in enumerate(node.args, start=1):
            value = self.eval(arg, scope)
            if value is not None:
                return value, {"position": position}
        return None, {"position": None}

    def _fn_choose(self, node: CallNode, scope: Scope):
        raw = self.eval(node.args[0], scope)
        options = node.args[1:]
        if is_array(raw):
            picks = tuple(self._choose_one(p, options, scope) for p in raw)
            return picks, {"index": list(raw)}
        return self._choose_one(raw, options, scope), {"index": raw}

    def _choose_one(self, raw: Any, options: Tuple[Node, ...], scope: Scope) -> Any:
        if raw is None:
            return None
        if not is_number(raw):
            raise FormulaRuntimeError(f"CHOOSE: index {to_text(raw)!r} is not a number")
        i = int(raw)
        if i < 1 or i > len(options):
            raise FormulaRuntimeError(f"CHOOSE: index {i} is outside 1..{len(options)}")
        return self.eval(options[i - 1], scope)

    def _fn_let(self, node: CallNode, scope: Scope):
        inner = dict(scope)
        names = []
        pairs = node.args[:-1]
        for i in range(0, len(pairs), 2):
            name: NameNode = pairs[i]
            inner[name.name] = self.eval(pairs[i + 1], inner)
            names.append(name.name)
        return self.eval(node.args[-1], inner), {"bindings": names}

    def _fn_lambda(self, node: CallNode, scope: Scope):
        params = tuple(p.name for p in node.args[:-1])
        return Lambda(params, node.args[-1], tuple(scope.items())), {"params": list(params)}

    def _fn_map(self, node: CallNode, scope: Scope):
        source = self.eval(node.args[0], scope)
        fn = self.eval(node.args[1], scope)
        if not isinstance(fn, Lambda):
            raise FormulaRuntimeError("MAP: second argument must be a LAMBDA")
        if len(fn.params) != 1:
            raise FormulaRuntimeError("MAP: LAMBDA must take exactly one parameter")
        items = source if is_array(source) else (source,)
        out = []
        for item in items:
            inner = dict(fn.scope)
            inner[fn.params[0]] = item
            out.append(self.eval(fn.body, inner))
        return tuple(out), {"count": len(out)}


# ─── Comparison Semantics ─────────────────────────────────────────────────────

def compare(op: str, left: Any, right: Any) -> bool:
    """
    null on either side → False, except ``<>`` which is True when exactly one
    side is null. Numbers compare with a small tolerance; text and booleans
    only support ``=`` and ``<>``.
    """
    if is_array(left) or is_array(right):
        raise FormulaRuntimeError("Cannot compare an array; aggregate it first")
    if isinstance(left, Lambda) or isinstance(right, Lambda):
        raise FormulaRuntimeError("Cannot compare a LAMBDA")
    if left is None or right is None:
        if op == "<>":
            return (left is None) != (right is None)
        return False
    if is_number(left) and is_number(right):
        return compare_numbers(op, float(left), float(right))
    if op == "=":
        return values_equal(left, right)
    if op == "<>":
        return not values_equal(left, right)
    return False


def _describe(value: Any) -> str:
    if isinstance(value, Lambda):
        return repr(value)
    return format_substituted(value)
