"""
formula_platform/nodes.py
=========================
Immutable AST produced by the parser. Every node carries the (start, end)
character span it was parsed from, so traces can point back at the text.
"""
from __future__ import annotations
from dataclasses import dataclass, fields
from typing import Any, ClassVar, Dict, Optional, Tuple

Span = Tuple[int, int]


@dataclass(frozen=True)
class Node:
    node_type: ClassVar[str] = "NODE"

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"type": self.node_type}
        for f in fields(self):
            d[f.name] = _plain(getattr(self, f.name))
        return d


def _plain(value: Any) -> Any:
    if isinstance(value, Node):
        return value.to_dict()
    if isinstance(value, tuple):
        return [_plain(v) for v in value]
    return value


def node_to_dict(node: Node) -> Dict[str, Any]:
    return node.to_dict()


# ─── Literals ─────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class NumberNode(Node):
    node_type: ClassVar[str] = "NUMBER"
    value: float
    span: Span = (0, 0)


@dataclass(frozen=True)
class StringNode(Node):
    node_type: ClassVar[str] = "STRING"
    value: str
    span: Span = (0, 0)


@dataclass(frozen=True)
class BooleanNode(Node):
    node_type: ClassVar[str] = "BOOLEAN"
    value: bool
    span: Span = (0, 0)


@dataclass(frozen=True)
class NullNode(Node):
    node_type: ClassVar[str] = "NULL"
    span: Span = (0, 0)


@dataclass(frozen=True)
class ArrayNode(Node):
    node_type: ClassVar[str] = "ARRAY"
    items: Tuple[Node, ...]
    span: Span = (0, 0)


# ─── References ───────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class MetricRefNode(Node):
    """
    ``index`` is the window slot (1 = oldest) for absolute references and the
    offset from the newest quarter (0, -1, ...) for relative ones. References
    produced by range expansion have no span of their own.
    """
    node_type: ClassVar[str] = "METRIC_REF"
    token: str
    metric: str
    index: int
    relative: bool = False
    span: Optional[Span] = None


@dataclass(frozen=True)
class RangeNode(Node):
    node_type: ClassVar[str] = "RANGE"
    start: MetricRefNode
    end: MetricRefNode
    refs: Tuple[MetricRefNode, ...]
    span: Span = (0, 0)


@dataclass(frozen=True)
class NameNode(Node):
    """A LET / LAMBDA variable."""
    node_type: ClassVar[str] = "NAME"
    name: str
    span: Span = (0, 0)


# ─── Operators ────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class UnaryNode(Node):
    node_type: ClassVar[str] = "UNARY"
    op: str                     # "-", "+" or postfix "%"
    operand: Node
    span: Span = (0, 0)


@dataclass(frozen=True)
class BinaryNode(Node):
    node_type: ClassVar[str] = "BINARY"
    op: str                     # + - * / ^ &
    left: Node
    right: Node
    span: Span = (0, 0)


@dataclass(frozen=True)
class ComparisonNode(Node):
    node_type: ClassVar[str] = "COMPARISON"
    op: str                     # > < >= <= = <>
    left: Node
    right: Node
    span: Span = (0, 0)


@dataclass(frozen=True)
class CallNode(Node):
    node_type: ClassVar[str] = "CALL"
    name: str
    args: Tuple[Node, ...]
    span: Span = (0, 0)
