"""
formula_platform/tokenizer.py
=============================
Lexer for the formula language.

Metric references are recognised here rather than in the parser, because
``Sales[Q12]`` and ``OPM %[Q3]`` only make sense as one unit: the bracket
suffix decides whether an identifier is a metric or a function name.
"""
from __future__ import annotations
import re
from dataclasses import dataclass
from typing import Any, List, Optional

from .errors import ParseError

# ─── Token Kinds ──────────────────────────────────────────────────────────────

NUMBER = "NUMBER"
STRING = "STRING"
IDENT = "IDENT"
REF = "REF"
OP = "OP"              # + - * / ^ &
PERCENT = "PERCENT"
COMP = "COMP"          # > < >= <= = <> !=
LPAREN = "LPAREN"
RPAREN = "RPAREN"
LBRACE = "LBRACE"
RBRACE = "RBRACE"
COMMA = "COMMA"
COLON = "COLON"
EOF = "EOF"

_PUNCT = {
    "(": LPAREN, ")": RPAREN, "{": LBRACE, "}": RBRACE, ",": COMMA, ":": COLON,
    "%": PERCENT,
}
_OPERATORS = "+-*/^&"
_COMPARATORS = (">=", "<=", "<>", "!=", "==", ">", "<", "=")

_NUMBER_RE = re.compile(r'(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?')
_IDENT_RE = re.compile(r'[A-Za-z_][A-Za-z0-9_]*')
# identifier, optional " %", then "[...]" – the bracket body is validated separately
_REF_TAIL_RE = re.compile(r'(\s*%)?\s*\[([^\]\[]*)\]')
_ABS_INDEX_RE = re.compile(r'^[Qq](\d+)$')
_REL_INDEX_RE = re.compile(r'^(-?\d+)$')


@dataclass(frozen=True)
class Token:
    kind: str
    text: str
    start: int
    end: int
    value: Any = None

    def is_op(self, *ops: str) -> bool:
        return self.kind == OP and self.text in ops

    def __repr__(self) -> str:
        return f"Token({self.kind}, {self.text!r}@{self.start})"


@dataclass(frozen=True)
class RefValue:
    """Decoded metric reference: metric name plus absolute index or relative offset."""
    metric: str
    index: int
    relative: bool


def _read_string(source: str, pos: int) -> Token:
    quote = source[pos]
    i = pos + 1
    chars: List[str] = []
    while i < len(source):
        ch = source[i]
        if ch == quote:
            # doubled quote is an escaped quote: "say ""hi"""
            if i + 1 < len(source) and source[i + 1] == quote:
                chars.append(quote)
                i += 2
                continue
            return Token(STRING, source[pos:i + 1], pos, i + 1, "".join(chars))
        chars.append(ch)
        i += 1
    raise ParseError("Unterminated string literal", source[pos:], pos)


def _decode_ref(name: str, percent: bool, body: str, fragment: str, pos: int) -> RefValue:
    metric = f"{name} %" if percent else name
    inner = body.strip()
    m = _ABS_INDEX_RE.match(inner)
    if m:
        index = int(m.group(1))
        if index < 1:
            raise ParseError("Malformed metric reference", fragment, pos)
        return RefValue(metric, index, False)
    m = _REL_INDEX_RE.match(inner)
    if m:
        n = int(m.group(1))
        # Name[3] is the absolute slot 3; Name[0] / Name[-2] count back from the newest quarter
        return RefValue(metric, n, n <= 0)
    raise ParseError("Malformed metric reference", fragment, pos)


def tokenize(source: str) -> List[Token]:
    """Split formula text into tokens. Raises ParseError on any unknown character."""
    tokens: List[Token] = []
    pos = 0
    n = len(source)
    while pos < n:
        ch = source[pos]
        if ch.isspace():
            pos += 1
            continue

        if ch.isdigit() or (ch == "." and pos + 1 < n and source[pos + 1].isdigit()):
            m = _NUMBER_RE.match(source, pos)
            tokens.append(Token(NUMBER, m.group(0), pos, m.end(), float(m.group(0))))
            pos = m.end()
            continue

        if ch in "\"'":
            tok = _read_string(source, pos)
            tokens.append(tok)
            pos = tok.end
            continue

        m = _IDENT_RE.match(source, pos)
        if m:
            name = m.group(0)
            tail = _REF_TAIL_RE.match(source, m.end())
            if tail:
                fragment = source[pos:tail.end()]
                ref = _decode_ref(name, bool(tail.group(1)), tail.group(2), fragment, pos)
                tokens.append(Token(REF, fragment, pos, tail.end(), ref))
                pos = tail.end()
                continue
            rest = source[m.end():].lstrip()
            if rest.startswith("[") or (rest.startswith("%") and rest[1:].lstrip().startswith("[")):
                raise ParseError("Malformed metric reference", source[pos:], pos)
            tokens.append(Token(IDENT, name, pos, m.end(), name))
            pos = m.end()
            continue

        comp = next((c for c in _COMPARATORS if source.startswith(c, pos)), None)
        if comp is not None:
            canonical = {"==": "=", "!=": "<>"}.get(comp, comp)
            tokens.append(Token(COMP, comp, pos, pos + len(comp), canonical))
            pos += len(comp)
            continue

        if ch in _OPERATORS:
            tokens.append(Token(OP, ch, pos, pos + 1, ch))
            pos += 1
            continue

        if ch in _PUNCT:
            tokens.append(Token(_PUNCT[ch], ch, pos, pos + 1, ch))
            pos += 1
            continue

        raise ParseError("Unexpected character", ch, pos)

    tokens.append(Token(EOF, "", n, n))
    return tokens


def describe(token: Optional[Token]) -> str:
    if token is None or token.kind == EOF:
        return "end of formula"
    return repr(token.text)
