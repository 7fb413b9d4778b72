"""
Arithmetic for ``{{math:...}}`` expressions.

Supports ``+ - * / %``, parentheses, unary signs, numbers and value
references (``$variable``, ``@table.property``). Expressions are parsed into
a small tree first, so a malformed expression is reported before anything
is resolved.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable, Union

from ..exceptions import ExpressionSyntaxError, MathEvaluationError

TOKEN_PATTERN = re.compile(
    r"\s*(?:(?P<number>\d+(?:\.\d+)?|\.\d+)"
    r"|(?P<reference>[$@][A-Za-z_][\w-]*(?:\.[A-Za-z_][\w-]*)*)"
    r"|(?P<operator>[-+*/%()]))"
)

ValueResolver = Callable[[str], Union[str, None]]


@dataclass(frozen=True)
class Number:
    value: float


@dataclass(frozen=True)
class Reference:
    name: str


@dataclass(frozen=True)
class Negate:
    operand: "MathNode"


@dataclass(frozen=True)
class BinaryOp:
    operator: str
    left: "MathNode"
    right: "MathNode"


MathNode = Union[Number, Reference, Negate, BinaryOp]


def _tokenize(expression: str) -> list[tuple[str, str]]:
    text = expression.rstrip()
    tokens = []
    position = 0
    while position < len(text):
        match = TOKEN_PATTERN.match(text, position)
        if match is None:
            raise ExpressionSyntaxError(
                f"Unexpected character '{text[position:].strip()[:1]}' in math expression '{expression}'"
            )
        tokens.append((match.lastgroup, match.group(match.lastgroup)))
        position = match.end()
    return tokens


class _Parser:
    """Recursive descent over the token list, lowest precedence first."""

    def __init__(self, expression: str):
        self.expression = expression
        self.tokens = _tokenize(expression)
        self.index = 0

    def parse(self) -> MathNode:
        if not self.tokens:
            raise ExpressionSyntaxError("Empty math expression")
        node = self._sum()
        if self.index < len(self.tokens):
            raise self._error(f"unexpected '{self.tokens[self.index][1]}'")
        return node

    def _peek(self) -> str | None:
        if self.index < len(self.tokens):
            kind, text = self.tokens[self.index]
            if kind == "operator":
                return text
        return None

    def _sum(self) -> MathNode:
        node = self._product()
        while self._peek() in ("+", "-"):
            operator = self.tokens[self.index][1]
            self.index += 1
            node = BinaryOp(operator, node, self._product())
        return node

    def _product(self) -> MathNode:
        node = self._unary()
        while self._peek() in ("*", "/", "%"):
            operator = self.tokens[self.index][1]
            self.index += 1
            node = BinaryOp(operator, node, self._unary())
        return node

    def _unary(self) -> MathNode:
        sign = self._peek()
        if sign in ("+", "-"):
            self.index += 1
            operand = self._unary()
            return Negate(operand) if sign == "-" else operand
        return self._primary()

    def _primary(self) -> MathNode:
        if self.index >= len(self.tokens):
            raise self._error("unexpected end")
        kind, text = self.tokens[self.index]
        self.index += 1
        if kind == "number":
            return Number(float(text))
        if kind == "reference":
            return Reference(text)
        if text == "(":
            node = self._sum()
            if self._peek() != ")":
                raise self._error("missing ')'")
            self.index += 1
            return node
        raise self._error(f"unexpected '{text}'")

    def _error(self, reason: str) -> ExpressionSyntaxError:
        return ExpressionSyntaxError(f"Invalid math expression '{self.expression}': {reason}")


def parse_math(expression: str) -> MathNode:
    """Parse a math expression.

    Raises:
        ExpressionSyntaxError: If the expression is malformed
    """
    return _Parser(expression).parse()


def evaluate_math(expression: str, resolve: ValueResolver) -> float:
    """Parse and compute ``expression``.

    Args:
        expression: Body of a ``{{math:...}}`` expression
        resolve: Returns the text value of a ``$variable`` or
            ``@table.property`` reference, or None when it is not set

    Raises:
        ExpressionSyntaxError: If the expression is malformed
        MathEvaluationError: On a non-numeric operand or a division by zero
    """
    return _evaluate(parse_math(expression), resolve, expression)


def _evaluate(node: MathNode, resolve: ValueResolver, expression: str) -> float:
    if isinstance(node, Number):
        return node.value
    if isinstance(node, Reference):
        raw = resolve(node.name)
        if raw is None or raw == "":
            raise MathEvaluationError(expression, f"{node.name} has no value")
        try:
            return float(raw)
        except ValueError:
            raise MathEvaluationError(expression, f"{node.name} is not a number ('{raw}')") from None
    if isinstance(node, Negate):
        return -_evaluate(node.operand, resolve, expression)

    left = _evaluate(node.left, resolve, expression)
    right = _evaluate(node.right, resolve, expression)
    if node.operator == "+":
        return left + right
    if node.operator == "-":
        return left - right
    if node.operator == "*":
        return left * right
    if right == 0:
        raise MathEvaluationError(expression, "division by zero")
    if node.operator == "/":
        return left / right
    return left % right


def format_number(value: float) -> str:
    """Integral results without a decimal point, others rounded to 6 places."""
    if value.is_integer():
        return str(int(value))
    return str(round(value, 6))
