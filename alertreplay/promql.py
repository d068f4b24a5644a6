"""Lexical checks and selector rewriting for PromQL expressions.

Expressions are never evaluated here; the backend does that. This module only
has to reject text the backend would refuse to parse and find every vector
selector so extra label matchers can be injected into it.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List, Mapping, Optional, Tuple

from alertreplay.errors import ParseError
from alertreplay.labels import quote_label_value

_TOKEN_PATTERNS = [
    ("COMMENT", r"#[^\n]*"),
    ("SPACE", r"\s+"),
    ("STRING", r'"(?:[^"\\\n]|\\.)*"|\'(?:[^\'\\\n]|\\.)*\'|`[^`]*`'),
    ("DURATION", r"\d+(?:ms|[smhdwy])(?:\d+(?:ms|[smhdwy]))*(?!\w)"),
    ("NUMBER", r"0[xX][0-9a-fA-F]+|(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?"),
    ("IDENT", r"[a-zA-Z_][a-zA-Z0-9_:]*"),
    ("MATCH_OP", r"=~|!~"),
    ("OP", r"==|!=|>=|<=|[-+*/%^<>=]"),
    ("PUNCT", r"[(){}\[\],:@]"),
]
_TOKEN_RE = re.compile("|".join(f"(?P<{name}>{pattern})" for name, pattern in _TOKEN_PATTERNS))
_LABEL_NAME_RE = re.compile(r"[a-zA-Z_][a-zA-Z0-9_]*")

BINARY_KEYWORDS = frozenset({"and", "or", "unless", "atan2"})
GROUPING_KEYWORDS = frozenset({"by", "without", "on", "ignoring", "group_left", "group_right"})
_NUMBER_LITERALS = frozenset({"inf", "nan"})
_COMPARISON_OPS = frozenset({"==", "!=", ">=", "<=", ">", "<"})


@dataclass(frozen=True)
class Token:
    kind: str
    text: str
    start: int
    end: int


@dataclass(frozen=True)
class Selector:
    """Where extra matchers go for one vector selector.

    ``bare`` selectors are a metric name without braces; the matcher block is
    inserted at ``position``. Otherwise ``position`` is the closing brace.
    """

    position: int
    bare: bool
    has_matchers: bool = False
    trailing_comma: bool = False


def tokenize(expr: str) -> List[Token]:
    tokens: List[Token] = []
    position = 0
    while position < len(expr):
        match = _TOKEN_RE.match(expr, position)
        if match is None:
            if expr[position] in "\"'`":
                raise ParseError("unterminated string", position)
            raise ParseError(f"unexpected character {expr[position]!r}", position)
        kind = match.lastgroup or ""
        if kind not in ("SPACE", "COMMENT"):
            tokens.append(Token(kind, match.group(), match.start(), match.end()))
        position = match.end()
    return tokens


class _Scanner:
    def __init__(self, expr: str) -> None:
        self._tokens = tokenize(expr)
        self._index = 0
        self._stack: List[str] = []
        self._expect_operand = True
        self._pending_call = False
        self._end = len(expr)
        self.selectors: List[Selector] = []

    def _peek(self, offset: int = 0) -> Optional[Token]:
        index = self._index + offset
        if index < len(self._tokens):
            return self._tokens[index]
        return None

    def _next(self, what: str) -> Token:
        token = self._peek()
        if token is None:
            raise ParseError(f"unexpected end of expression, expected {what}", self._end)
        self._index += 1
        return token

    @staticmethod
    def _fail(token: Token, message: Optional[str] = None) -> ParseError:
        return ParseError(message or f"unexpected {token.text!r}", token.start)

    def scan(self) -> List[Selector]:
        if not self._tokens:
            raise ParseError("empty expression")
        while self._peek() is not None:
            self._step(self._next("token"))
        if self._stack:
            raise ParseError(f"unclosed {self._stack[-1]}", self._end)
        if self._expect_operand:
            raise ParseError("unexpected end of expression", self._end)
        return self.selectors

    def _step(self, token: Token) -> None:
        if token.kind == "IDENT":
            self._identifier(token)
        elif token.kind in ("NUMBER", "STRING", "DURATION"):
            self._operand(token)
        elif token.kind == "OP":
            self._operator(token)
        elif token.kind == "MATCH_OP":
            raise self._fail(token)
        elif token.text == "(":
            self._open_paren(token)
        elif token.text == ")":
            self._close_paren(token)
        elif token.text == ",":
            if not self._stack or self._stack[-1] != "call" or self._expect_operand:
                raise self._fail(token)
            self._expect_operand = True
        elif token.text == "{":
            if not self._expect_operand:
                raise self._fail(token)
            self._matchers()
            self._expect_operand = False
        elif token.text == "[":
            if self._expect_operand:
                raise self._fail(token)
            self._range()
        elif token.text == "@":
            self._at_modifier(token)
        else:
            raise self._fail(token)

    def _operand(self, token: Token) -> None:
        if not self._expect_operand:
            raise self._fail(token)
        self._expect_operand = False

    def _identifier(self, token: Token) -> None:
        name = token.text
        if name in BINARY_KEYWORDS:
            if self._expect_operand:
                raise self._fail(token)
            self._expect_operand = True
            return
        if name == "bool":
            previous = self._tokens[self._index - 2] if self._index >= 2 else None
            if previous is None or previous.text not in _COMPARISON_OPS:
                raise self._fail(token, "bool modifier must follow a comparison operator")
            return
        if name in GROUPING_KEYWORDS:
            self._grouping(token)
            return
        if name == "offset":
            if self._expect_operand:
                raise self._fail(token)
            following = self._next("offset duration")
            if following.text == "-":
                following = self._next("offset duration")
            if following.kind not in ("DURATION", "NUMBER"):
                raise self._fail(following, "offset requires a duration")
            return

        if not self._expect_operand:
            raise self._fail(token)
        following = self._peek()
        if following is not None and following.text == "(":
            self._pending_call = True
            return
        if following is not None and following.text in ("by", "without"):
            self._pending_call = True
            return
        if following is not None and following.text == "{":
            self._index += 1
            self._matchers()
            self._expect_operand = False
            return
        if name.lower() not in _NUMBER_LITERALS:
            self.selectors.append(Selector(position=token.end, bare=True))
        self._expect_operand = False

    def _grouping(self, token: Token) -> None:
        following = self._peek()
        if following is None or following.text != "(":
            if token.text in ("group_left", "group_right"):
                return
            raise self._fail(token, f"{token.text} requires a label list")
        self._index += 1
        expect_name = True
        while True:
            item = self._next("label name or ')'")
            if item.text == ")":
                break
            if expect_name and item.kind in ("IDENT", "STRING"):
                expect_name = False
            elif not expect_name and item.text == ",":
                expect_name = True
            else:
                raise self._fail(item)
        if token.text in ("by", "without") and self._pending_call:
            nxt = self._peek()
            if nxt is None or nxt.text != "(":
                raise self._fail(token, "aggregation requires an argument list")

    def _operator(self, token: Token) -> None:
        if token.text == "=":
            raise self._fail(token)
        if self._expect_operand:
            if token.text not in ("+", "-"):
                raise self._fail(token)
            return
        self._expect_operand = True

    def _open_paren(self, token: Token) -> None:
        if self._pending_call:
            self._pending_call = False
            self._stack.append("call")
            nxt = self._peek()
            if nxt is not None and nxt.text == ")":
                self._index += 1
                self._stack.pop()
                self._expect_operand = False
                return
            self._expect_operand = True
            return
        if not self._expect_operand:
            raise self._fail(token)
        self._stack.append("parenthesis")

    def _close_paren(self, token: Token) -> None:
        if not self._stack or self._expect_operand:
            raise self._fail(token)
        self._stack.pop()
        self._expect_operand = False

    def _matchers(self) -> None:
        has_matchers = False
        trailing_comma = False
        while True:
            item = self._next("label matcher or '}'")
            if item.text == "}":
                self.selectors.append(
                    Selector(
                        position=item.start,
                        bare=False,
                        has_matchers=has_matchers,
                        trailing_comma=trailing_comma,
                    )
                )
                return
            if item.kind not in ("IDENT", "STRING"):
                raise self._fail(item)
            operator = self._next("matcher operator")
            if operator.kind == "MATCH_OP" or operator.text in ("=", "!="):
                value = self._next("label value")
                if value.kind != "STRING":
                    raise self._fail(value, "label value must be a string")
            elif item.kind == "STRING" and operator.text in (",", "}"):
                self._index -= 1
            else:
                raise self._fail(operator)
            has_matchers = True
            separator = self._next("',' or '}'")
            if separator.text == "}":
                self._index -= 1
                trailing_comma = False
            elif separator.text == ",":
                trailing_comma = True
            else:
                raise self._fail(separator)

    def _range(self) -> None:
        window = self._next("range duration")
        if window.kind not in ("DURATION", "NUMBER"):
            raise self._fail(window, "range requires a duration")
        closing = self._next("']'")
        if closing.text == ":":
            closing = self._next("subquery step or ']'")
            if closing.kind in ("DURATION", "NUMBER"):
                closing = self._next("']'")
        if closing.text != "]":
            raise self._fail(closing)

    def _at_modifier(self, token: Token) -> None:
        if self._expect_operand:
            raise self._fail(token)
        target = self._next("@ timestamp")
        if target.text in ("+", "-"):
            target = self._next("@ timestamp")
        if target.kind == "NUMBER":
            return
        if target.text in ("start", "end"):
            opening = self._next("'('")
            closing = self._next("')'")
            if opening.text == "(" and closing.text == ")":
                return
        raise self._fail(target, "@ requires a timestamp, start() or end()")


def validate_expr(expr: str) -> List[Selector]:
    """Raise :class:`ParseError` unless ``expr`` is well-formed PromQL.

    Returns the vector selectors found, in source order.
    """

    return _Scanner(expr).scan()


def format_matchers(filters: Mapping[str, str]) -> str:
    for name in filters:
        if not _LABEL_NAME_RE.fullmatch(name):
            raise ParseError(f"invalid label name {name!r}")
    return ", ".join(f"{name}={quote_label_value(value)}" for name, value in filters.items())


def rewrite_expr(expr: str, filters: Mapping[str, str]) -> str:
    """Add equality matchers for ``filters`` to every vector selector in ``expr``."""

    if not filters:
        return expr
    selectors = validate_expr(expr)
    matchers = format_matchers(filters)
    edits: List[Tuple[int, str]] = []
    for selector in selectors:
        if selector.bare:
            edits.append((selector.position, "{" + matchers + "}"))
        elif selector.has_matchers and not selector.trailing_comma:
            edits.append((selector.position, ", " + matchers))
        else:
            edits.append((selector.position, matchers))

    rewritten = expr
    for position, text in sorted(edits, reverse=True):
        rewritten = rewritten[:position] + text + rewritten[position:]
    return rewritten
