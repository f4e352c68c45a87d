"""
Composition expressions compiled into tagged trees.

Grammar (keywords are case-insensitive)::

    expr    := unary (("AND" | "OR") unary)*
    unary   := "NOT" unary | primary
    primary := NAME | "(" expr ")"

AND and OR share a single precedence level and associate left, so
``a OR b AND c`` reads as ``(a OR b) AND c``. NOT binds tighter than both.
Expressions are parsed once when a node is built, never per evaluation.
"""

import re
from collections.abc import Collection, Mapping
from dataclasses import dataclass

from cohort_engine.domain.errors import MalformedExpression
from cohort_engine.domain.models import IndividualId

_TOKEN = re.compile(r"\s*(?:(?P<paren>[()])|(?P<word>[A-Za-z_][A-Za-z0-9_.\-]*)|(?P<bad>\S))")
_KEYWORDS = {"AND", "OR", "NOT"}

Cohort = frozenset[IndividualId]


@dataclass(frozen=True)
class Leaf:
    name: str

    def operands(self) -> frozenset[str]:
        return frozenset({self.name})

    def evaluate(self, results: Mapping[str, Cohort], universe: Cohort) -> Cohort:
        return results[self.name]

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True)
class Not:
    operand: "Expression"

    def operands(self) -> frozenset[str]:
        return self.operand.operands()

    def evaluate(self, results: Mapping[str, Cohort], universe: Cohort) -> Cohort:
        return universe - self.operand.evaluate(results, universe)

    def __str__(self) -> str:
        return f"NOT {self.operand}"


@dataclass(frozen=True)
class And:
    left: "Expression"
    right: "Expression"

    def operands(self) -> frozenset[str]:
        return self.left.operands() | self.right.operands()

    def evaluate(self, results: Mapping[str, Cohort], universe: Cohort) -> Cohort:
        return self.left.evaluate(results, universe) & self.right.evaluate(results, universe)

    def __str__(self) -> str:
        return f"({self.left} AND {self.right})"


@dataclass(frozen=True)
class Or:
    left: "Expression"
    right: "Expression"

    def operands(self) -> frozenset[str]:
        return self.left.operands() | self.right.operands()

    def evaluate(self, results: Mapping[str, Cohort], universe: Cohort) -> Cohort:
        return self.left.evaluate(results, universe) | self.right.evaluate(results, universe)

    def __str__(self) -> str:
        return f"({self.left} OR {self.right})"


Expression = Leaf | Not | And | Or


def _tokenize(text: str) -> list[tuple[str, str, int]]:
    tokens: list[tuple[str, str, int]] = []
    position = 0
    while position < len(text):
        match = _TOKEN.match(text, position)
        if match is None:  # only trailing whitespace left
            break
        if match.group("bad") is not None:
            raise MalformedExpression(
                text, f"unexpected character {match.group('bad')!r}", match.start("bad")
            )
        if match.group("paren") is not None:
            tokens.append(("paren", match.group("paren"), match.start("paren")))
        else:
            word = match.group("word")
            kind = "keyword" if word.upper() in _KEYWORDS else "name"
            tokens.append((kind, word.upper() if kind == "keyword" else word, match.start("word")))
        position = match.end()
    return tokens


class _Parser:
    """Recursive descent over the token list."""

    def __init__(self, text: str) -> None:
        self.text = text
        self.tokens = _tokenize(text)
        self.index = 0

    def _peek(self) -> tuple[str, str, int] | None:
        return self.tokens[self.index] if self.index < len(self.tokens) else None

    def _fail(self, reason: str) -> MalformedExpression:
        token = self._peek()
        position = token[2] if token else len(self.text)
        return MalformedExpression(self.text, reason, position)

    def parse(self) -> Expression:
        if not self.tokens:
            raise MalformedExpression(self.text, "expression is empty")
        expression = self._expr()
        token = self._peek()
        if token is not None:
            if token[1] == ")":
                raise self._fail("unbalanced parentheses: unexpected ')'")
            raise self._fail(f"unexpected {token[1]!r} after complete expression")
        return expression

    def _expr(self) -> Expression:
        expression = self._unary()
        while (token := self._peek()) is not None and token[1] in ("AND", "OR"):
            self.index += 1
            right = self._unary()
            expression = And(expression, right) if token[1] == "AND" else Or(expression, right)
        return expression

    def _unary(self) -> Expression:
        token = self._peek()
        if token is not None and token[1] == "NOT":
            self.index += 1
            return Not(self._unary())
        return self._primary()

    def _primary(self) -> Expression:
        token = self._peek()
        if token is None:
            raise self._fail("expected an operand but the expression ended")
        kind, value, _ = token
        if kind == "name":
            self.index += 1
            return Leaf(value)
        if value == "(":
            self.index += 1
            inner = self._expr()
            closing = self._peek()
            if closing is None or closing[1] != ")":
                raise self._fail("unbalanced parentheses: missing ')'")
            self.index += 1
            return inner
        raise self._fail(f"expected an operand, found {value!r}")


def parse_composition(text: str, declared: Collection[str] | None = None) -> Expression:
    """
    Compile a composition string into an expression tree.

    Args:
        text: e.g. ``"supp AND NOT (dead OR transferredOut)"``
        declared: operand names the expression may reference; when given, any
            other name raises MalformedExpression.
    """
    expression = _Parser(text).parse()
    if declared is not None:
        unknown = expression.operands() - set(declared)
        if unknown:
            raise MalformedExpression(
                text, f"references undeclared operands: {', '.join(sorted(unknown))}"
            )
    return expression
