"""
formula_platform/parser.py
==========================
Recursive-descent parser: formula text → immutable AST.

Precedence, lowest first:
  comparison      >  <  >=  <=  =  <>      (not chainable)
  additive        +  -  &
  multiplicative  *  /
  unary           -  +                      (prefix)
  power           ^                         (right-associative)
  postfix         %
  primary         number, "text", TRUE/FALSE/NULL, Metric[Qn], Metric[Q1]:Metric[Q4],
                  FUNC(...), (expr), {a, b, ...}, LET/LAMBDA variable

Nothing is evaluated while parsing; every syntax problem raises ParseError
with the offending fragment before evaluation starts.
"""
from __future__ import annotations
from dataclasses import dataclass, fields, replace
from typing import FrozenSet, List, Optional, Tuple

from . import tokenizer as tk
from .errors import ParseError
from .functions import check_arity, get_function
from .metric_patterns import metric_key
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
from .tokenizer import Token, describe, tokenize

MAX_RANGE_SPAN = 400
MAX_NESTING = 64
MAX_DEPTH = 128
_KEYWORDS = {"TRUE", "FALSE", "NULL"}


@dataclass(frozen=True)
class ParsedFormula:
    source: str
    root: Node
    references: Tuple[MetricRefNode, ...]

    @property
    def metrics(self) -> List[str]:
        """Distinct metric names referenced, in order of first appearance."""
        seen: List[str] = []
        for ref in self.references:
            if ref.metric not in seen:
                seen.append(ref.metric)
        return seen


class Parser:
    def __init__(self, source: str):
        self.source = source
        self.tokens = tokenize(source)
        self.pos = 0
        self.nesting = 0
        self.references: List[MetricRefNode] = []

    # ── token helpers ────────────────────────────────────────────────────────

    def peek(self, offset: int = 0) -> Token:
        i = min(self.pos + offset, len(self.tokens) - 1)
        return self.tokens[i]

    def advance(self) -> Token:
        tok = self.tokens[self.pos]
        if tok.kind != tk.EOF:
            self.pos += 1
        return tok

    def expect(self, kind: str, message: str, start: int) -> Token:
        tok = self.peek()
        if tok.kind != kind:
            raise ParseError(message, self.source[start:tok.end] or describe(tok), start)
        return self.advance()

    def fragment(self, start: int, end: int) -> str:
        return self.source[start:end]

    # ── grammar ──────────────────────────────────────────────────────────────

    def parse(self) -> ParsedFormula:
        tok = self.peek()
        if tok.kind == tk.COMP and tok.value == "=":
            self.advance()
        if self.peek().kind == tk.EOF:
            raise ParseError("Empty formula", self.source, 0)
        root = self.expression(frozenset())
        tok = self.peek()
        if tok.kind != tk.EOF:
            if tok.kind == tk.RPAREN:
                raise ParseError("Unbalanced parentheses", tok.text, tok.start)
            raise ParseError("Unexpected input", self.source[tok.start:], tok.start)
        if tree_depth(root) > MAX_DEPTH:
            raise ParseError("Formula nested too deeply", _excerpt(self.source), 0)
        return ParsedFormula(self.source, root, tuple(self.references))

    def expression(self, scope: FrozenSet[str]) -> Node:
        left = self.additive(scope)
        tok = self.peek()
        if tok.kind != tk.COMP:
            return left
        self.advance()
        right = self.additive(scope)
        node = ComparisonNode(tok.value, left, right, (left.span[0], right.span[1]))
        nxt = self.peek()
        if nxt.kind == tk.COMP:
            raise ParseError("Chained comparison", self.fragment(node.span[0], nxt.end), nxt.start)
        return node

    def additive(self, scope: FrozenSet[str]) -> Node:
        node = self.term(scope)
        while self.peek().is_op("+", "-", "&"):
            op = self.advance().text
            right = self.term(scope)
            node = BinaryNode(op, node, right, (node.span[0], right.span[1]))
        return node

    def term(self, scope: FrozenSet[str]) -> Node:
        node = self.unary(scope)
        while self.peek().is_op("*", "/"):
            op = self.advance().text
            right = self.unary(scope)
            node = BinaryNode(op, node, right, (node.span[0], right.span[1]))
        return node

    def unary(self, scope: FrozenSet[str]) -> Node:
        # every nested operand passes through here once per level
        tok = self.peek()
        self.nesting += 1
        if self.nesting > MAX_NESTING:
            raise ParseError("Formula nested too deeply", self.fragment(tok.start, tok.end) or describe(tok), tok.start)
        try:
            if tok.is_op("-", "+"):
                self.advance()
                operand = self.unary(scope)
                return UnaryNode(tok.text, operand, (tok.start, operand.span[1]))
            return self.power(scope)
        finally:
            self.nesting -= 1

    def power(self, scope: FrozenSet[str]) -> Node:
        base = self.postfix(scope)
        if self.peek().is_op("^"):
            self.advance()
            exponent = self.unary(scope)
            return BinaryNode("^", base, exponent, (base.span[0], exponent.span[1]))
        return base

    def postfix(self, scope: FrozenSet[str]) -> Node:
        node = self.primary(scope)
        while self.peek().kind == tk.PERCENT:
            tok = self.advance()
            node = UnaryNode("%", node, (node.span[0], tok.end))
        return node

    def primary(self, scope: FrozenSet[str]) -> Node:
        tok = self.peek()

        if tok.kind == tk.NUMBER:
            self.advance()
            return NumberNode(tok.value, (tok.start, tok.end))

        if tok.kind == tk.STRING:
            self.advance()
            return StringNode(tok.value, (tok.start, tok.end))

        if tok.kind == tk.REF:
            return self.reference()

        if tok.kind == tk.IDENT:
            return self.identifier(scope)

        if tok.kind == tk.LPAREN:
            self.advance()
            inner = self.expression(scope)
            close = self.peek()
            if close.kind != tk.RPAREN:
                raise ParseError("Unbalanced parentheses", self.fragment(tok.start, close.end), tok.start)
            self.advance()
            # keep the parenthesised span so substitution text stays aligned
            return _with_span(inner, (tok.start, close.end))

        if tok.kind == tk.LBRACE:
            return self.array(scope)

        if tok.kind == tk.EOF:
            raise ParseError("Unexpected end of formula", self.source, tok.start)
        raise ParseError("Unexpected token", tok.text, tok.start)

    def reference(self) -> Node:
        tok = self.advance()
        ref = self._ref_node(tok)
        if self.peek().kind != tk.COLON:
            self.references.append(ref)
            return ref
        self.advance()
        end_tok = self.peek()
        if end_tok.kind != tk.REF:
            raise ParseError("Malformed range", self.fragment(tok.start, end_tok.end), tok.start)
        self.advance()
        end = self._ref_node(end_tok)
        span = (tok.start, end_tok.end)
        if metric_key(ref.metric) != metric_key(end.metric) or ref.relative != end.relative:
            raise ParseError("Range must use one metric and one addressing mode", self.fragment(*span), tok.start)
        lo, hi = sorted((ref.index, end.index))
        if hi - lo + 1 > MAX_RANGE_SPAN:
            raise ParseError("Range too large", self.fragment(*span), tok.start)
        refs = tuple(_expanded_ref(ref.metric, i, ref.relative) for i in range(lo, hi + 1))
        self.references.extend(refs)
        return RangeNode(ref, end, refs, span)

    @staticmethod
    def _ref_node(tok: Token) -> MetricRefNode:
        ref: tk.RefValue = tok.value
        return MetricRefNode(tok.text, ref.metric, ref.index, ref.relative, (tok.start, tok.end))

    def identifier(self, scope: FrozenSet[str]) -> Node:
        tok = self.peek()
        name = tok.text
        upper = name.upper()
        is_call = self.peek(1).kind == tk.LPAREN

        if not is_call:
            self.advance()
            if upper in _KEYWORDS:
                span = (tok.start, tok.end)
                if upper == "NULL":
                    return NullNode(span)
                return BooleanNode(upper == "TRUE", span)
            if name in scope:
                return NameNode(name, (tok.start, tok.end))
            if get_function(name) is not None:
                raise ParseError("Function used without arguments", name, tok.start)
            raise ParseError("Unknown name", name, tok.start)

        if get_function(name) is None:
            rel = self._relative_call_ref()
            if rel is not None:
                return rel
            raise ParseError("Unknown function", name, tok.start)

        if upper == "LET":
            return self.let_call(scope)
        if upper == "LAMBDA":
            return self.lambda_call(scope)
        return self.call(scope)

    def _relative_call_ref(self) -> Optional[MetricRefNode]:
        """``Sales(0)`` / ``Sales(-2)``: relative reference in builder syntax."""
        name_tok = self.peek()
        toks = [self.peek(i) for i in range(1, 5)]
        if toks[1].kind == tk.NUMBER and toks[2].kind == tk.RPAREN:
            sign, num, close = 1, toks[1], toks[2]
            consumed = 4
        elif toks[1].is_op("-") and toks[2].kind == tk.NUMBER and toks[3].kind == tk.RPAREN:
            sign, num, close = -1, toks[2], toks[3]
            consumed = 5
        else:
            return None
        if not float(num.value).is_integer():
            raise ParseError("Malformed metric reference", self.fragment(name_tok.start, close.end), name_tok.start)
        offset = sign * int(num.value)
        if offset > 0:
            return None
        for _ in range(consumed):
            self.advance()
        text = self.fragment(name_tok.start, close.end)
        ref = MetricRefNode(text, name_tok.text, offset, True, (name_tok.start, close.end))
        self.references.append(ref)
        return ref

    def _arguments(self, scope: FrozenSet[str], start: int) -> Tuple[List[Node], Token]:
        self.expect(tk.LPAREN, "Expected '('", start)
        args: List[Node] = []
        if self.peek().kind != tk.RPAREN:
            while True:
                args.append(self.expression(scope))
                if self.peek().kind == tk.COMMA:
                    self.advance()
                    continue
                break
        close = self.peek()
        if close.kind != tk.RPAREN:
            if close.kind == tk.EOF:
                raise ParseError("Unbalanced parentheses", self.fragment(start, close.end), start)
            raise ParseError("Expected ',' or ')'", self.fragment(start, close.end), close.start)
        self.advance()
        return args, close

    def call(self, scope: FrozenSet[str]) -> Node:
        name_tok = self.advance()
        args, close = self._arguments(scope, name_tok.start)
        span = (name_tok.start, close.end)
        spec = check_arity(name_tok.text, len(args), self.fragment(*span), name_tok.start)
        return CallNode(spec.name, tuple(args), span)

    def let_call(self, scope: FrozenSet[str]) -> Node:
        """LET(name1, value1, [name2, value2, ...], body)"""
        name_tok = self.advance()
        self.expect(tk.LPAREN, "Expected '('", name_tok.start)
        args: List[Node] = []
        inner = scope
        body_expected = True
        while self.peek().kind == tk.IDENT and self.peek(1).kind == tk.COMMA:
            var = self.advance()
            self._check_variable(var)
            self.advance()
            args.append(NameNode(var.text, (var.start, var.end)))
            args.append(self.expression(inner))
            inner = inner | {var.text}
            if self.peek().kind != tk.COMMA:
                body_expected = False
                break
            self.advance()
        if body_expected and self.peek().kind not in (tk.RPAREN, tk.EOF):
            args.append(self.expression(inner))
        close = self.peek()
        if close.kind != tk.RPAREN:
            raise ParseError("Unbalanced parentheses", self.fragment(name_tok.start, close.end), name_tok.start)
        self.advance()
        span = (name_tok.start, close.end)
        check_arity("LET", len(args), self.fragment(*span), name_tok.start)
        return CallNode("LET", tuple(args), span)

    def lambda_call(self, scope: FrozenSet[str]) -> Node:
        """LAMBDA(param1, [param2, ...], body)"""
        name_tok = self.advance()
        self.expect(tk.LPAREN, "Expected '('", name_tok.start)
        params: List[Node] = []
        while self.peek().kind == tk.IDENT and self.peek(1).kind == tk.COMMA:
            var = self.advance()
            self._check_variable(var)
            self.advance()
            params.append(NameNode(var.text, (var.start, var.end)))
        inner = scope | {p.name for p in params}
        args = list(params)
        if self.peek().kind not in (tk.RPAREN, tk.EOF):
            args.append(self.expression(inner))
        close = self.peek()
        if close.kind != tk.RPAREN:
            raise ParseError("Unbalanced parentheses", self.fragment(name_tok.start, close.end), name_tok.start)
        self.advance()
        span = (name_tok.start, close.end)
        check_arity("LAMBDA", len(args), self.fragment(*span), name_tok.start)
        return CallNode("LAMBDA", tuple(args), span)

    @staticmethod
    def _check_variable(tok: Token) -> None:
        if tok.text.upper() in _KEYWORDS or get_function(tok.text) is not None:
            raise ParseError("Reserved word used as a variable name", tok.text, tok.start)

    def array(self, scope: FrozenSet[str]) -> Node:
        open_tok = self.advance()
        items: List[Node] = []
        if self.peek().kind != tk.RBRACE:
            while True:
                items.append(self.expression(scope))
                if self.peek().kind == tk.COMMA:
                    self.advance()
                    continue
                break
        close = self.peek()
        if close.kind != tk.RBRACE:
            raise ParseError("Unbalanced braces", self.fragment(open_tok.start, close.end), open_tok.start)
        self.advance()
        if not items:
            raise ParseError("Empty array literal", self.fragment(open_tok.start, close.end), open_tok.start)
        return ArrayNode(tuple(items), (open_tok.start, close.end))


def _expanded_ref(metric: str, index: int, relative: bool) -> MetricRefNode:
    token = f"{metric}[{index}]" if relative else f"{metric}[Q{index}]"
    return MetricRefNode(token, metric, index, relative, None)


def _with_span(node: Node, span: Tuple[int, int]) -> Node:
    # metric references keep their own span: it is where the value gets substituted
    if isinstance(node, MetricRefNode) or not hasattr(node, "span"):
        return node
    return replace(node, span=span)


def _excerpt(text: str) -> str:
    return text if len(text) <= 40 else text[:40] + "..."


def tree_depth(root: Node) -> int:
    """Depth of an AST, walked without recursion (long operator chains nest deeply)."""
    deepest = 0
    stack = [(root, 1)]
    while stack:
        node, depth = stack.pop()
        deepest = max(deepest, depth)
        for f in fields(node):
            value = getattr(node, f.name)
            for child in value if isinstance(value, tuple) else (value,):
                if isinstance(child, Node):
                    stack.append((child, depth + 1))
    return deepest


def parse_formula(source: str, max_length: Optional[int] = None) -> ParsedFormula:
    """
    Parse formula text. Raises ParseError on any syntax problem, including
    formulas nested deeper than MAX_NESTING operands or MAX_DEPTH tree levels.
    """
    if source is None:
        raise ParseError("Empty formula")
    text = str(source)
    if max_length is not None and len(text) > max_length:
        raise ParseError(f"Formula longer than {max_length} characters", text[:40] + "...", 0)
    return Parser(text).parse()
