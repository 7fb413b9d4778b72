"""
When-clauses for document conditionals and ``switch`` expressions.

A clause compares values with ``== != > < >= <= contains matches`` and
combines comparisons with ``&&``, ``||``, ``!`` and parentheses::

    @creatures.size == "huge" && !($mood == calm)
    $level >= 5 || @loot.rarity contains rare

Operands starting with ``@`` or ``$`` are looked up through a resolver;
quoted strings and bare words are literals. A lone operand is true when it
has a non-empty value.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable, Union

from ..exceptions import ExpressionSyntaxError

TOKEN_PATTERN = re.compile(
    r"""\s*(?:"(?P<double>[^"]*)"|'(?P<single>[^']*)'"""
    r"""|(?P<op>&&|\|\||==|!=|>=|<=|>|<|!|\(|\))"""
    r"""|(?P<word>[^\s()!=<>&|"']+))"""
)

COMPARATORS = ("==", "!=", ">", "<", ">=", "<=", "contains", "matches")

ValueResolver = Callable[[str], Union[str, None]]


@dataclass(frozen=True)
class Operand:
    text: str
    quoted: bool = False

    @property
    def is_reference(self) -> bool:
        return not self.quoted and self.text[:1] in ("$", "@")


@dataclass(frozen=True)
class Comparison:
    left: Operand
    operator: str | None = None
    right: Operand | None = None


@dataclass(frozen=True)
class Not:
    operand: "WhenNode"


@dataclass(frozen=True)
class Logical:
    operator: str
    left: "WhenNode"
    right: "WhenNode"


WhenNode = Union[Comparison, Not, Logical]


def _tokenize(when: str) -> list[tuple[str, str]]:
    text = when.rstrip()
    tokens = []
    position = 0
    while position < len(text):
        match = TOKEN_PATTERN.match(text, position)
        if match is None:
            raise ExpressionSyntaxError(f"Cannot parse condition '{when}'")
        kind = match.lastgroup
        if kind in ("double", "single"):
            kind = "string"
        tokens.append((kind, match.group(match.lastgroup)))
        position = match.end()
    return tokens


class _Parser:
    def __init__(self, when: str):
        self.when = when
        self.tokens = _tokenize(when)
        self.index = 0

    def parse(self) -> WhenNode:
        if not self.tokens:
            raise ExpressionSyntaxError("Empty condition")
        node = self._or()
        if self.index < len(self.tokens):
            raise self._error(f"unexpected '{self.tokens[self.index][1]}'")
        return node

    def _peek_op(self) -> str | None:
        if self.index < len(self.tokens):
            kind, text = self.tokens[self.index]
            if kind == "op" or (kind == "word" and text in COMPARATORS):
                return text
        return None

    def _or(self) -> WhenNode:
        node = self._and()
        while self._peek_op() == "||":
            self.index += 1
            node = Logical("||", node, self._and())
        return node

    def _and(self) -> WhenNode:
        node = self._not()
        while self._peek_op() == "&&":
            self.index += 1
            node = Logical("&&", node, self._not())
        return node

    def _not(self) -> WhenNode:
        if self._peek_op() == "!":
            self.index += 1
            return Not(self._not())
        if self._peek_op() == "(":
            self.index += 1
            node = self._or()
            if self._peek_op() != ")":
                raise self._error("missing ')'")
            self.index += 1
            return node
        return self._comparison()

    def _comparison(self) -> Comparison:
        left = self._operand()
        operator = self._peek_op()
        if operator not in COMPARATORS:
            return Comparison(left)
        self.index += 1
        return Comparison(left, operator, self._operand(join=True))

    def _operand(self, join: bool = False) -> Operand:
        """One operand; on the right-hand side consecutive bare words are joined."""
        if self.index >= len(self.tokens) or self._peek_op() is not None:
            raise self._error("missing operand")
        kind, text = self.tokens[self.index]
        self.index += 1
        if kind == "string":
            return Operand(text, quoted=True)
        words = [text]
        while join and self.index < len(self.tokens) and self._peek_op() is None:
            if self.tokens[self.index][0] != "word":
                break
            words.append(self.tokens[self.index][1])
            self.index += 1
        return Operand(" ".join(words))

    def _error(self, reason: str) -> ExpressionSyntaxError:
        return ExpressionSyntaxError(f"Invalid condition '{self.when}': {reason}")


def parse_when(when: str) -> WhenNode:
    """Parse a when-clause.

    Raises:
        ExpressionSyntaxError: If the clause is malformed
    """
    return _Parser(when).parse()


def evaluate_when(when: str, resolve: ValueResolver) -> bool:
    """Evaluate a when-clause, resolving ``@``/``$`` operands with ``resolve``."""
    return _evaluate(parse_when(when), resolve)


def _evaluate(node: WhenNode, resolve: ValueResolver) -> bool:
    if isinstance(node, Not):
        return not _evaluate(node.operand, resolve)
    if isinstance(node, Logical):
        if node.operator == "&&":
            return _evaluate(node.left, resolve) and _evaluate(node.right, resolve)
        return _evaluate(node.left, resolve) or _evaluate(node.right, resolve)

    left = _value(node.left, resolve)
    if node.operator is None:
        if node.left.is_reference:
            return left != ""
        number = _number(left)
        return number != 0 if number is not None else left != ""
    return compare(left, node.operator, _value(node.right, resolve))


def _value(operand: Operand, resolve: ValueResolver) -> str:
    if operand.is_reference:
        return resolve(operand.text) or ""
    return operand.text


def _number(value: str) -> float | None:
    try:
        return float(value)
    except ValueError:
        return None


def compare(left: str, operator: str, right: str) -> bool:
    """Apply one comparison operator to two text values.

    ``==``/``!=`` compare numerically when both sides are numbers and as
    text otherwise. Ordering operators are false unless both sides are
    numbers. ``contains`` is case-insensitive; ``matches`` is a
    case-insensitive regular expression search.
    """
    if operator in ("==", "!="):
        left_number, right_number = _number(left), _number(right)
        if left_number is not None and right_number is not None:
            equal = left_number == right_number
        else:
            equal = left == right
        return equal if operator == "==" else not equal
    if operator == "contains":
        return right.lower() in left.lower()
    if operator == "matches":
        try:
            return re.search(right, left, re.IGNORECASE) is not None
        except re.error:
            return False

    left_number, right_number = _number(left), _number(right)
    if left_number is None or right_number is None:
        return False
    if operator == ">":
        return left_number > right_number
    if operator == "<":
        return left_number < right_number
    if operator == ">=":
        return left_number >= right_number
    return left_number <= right_number
