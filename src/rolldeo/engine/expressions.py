"""
Parser for ``{{...}}`` expressions embedded in entry values and templates.

Supported expression forms:

    {{weapons}}                 table or template reference
    {{core.weapons}}            reference qualified by import alias or namespace
    {{3*weapons}}               roll three times, joined by the separator
    {{3*unique*weapons}}        same, never repeating an entry
    {{npc#guard}}               named instance, rolled once and reused
    {{again}}                   re-roll the current table, excluding the current entry
    {{dice:2d6+1}}              dice expression
    {{math:$level * 2 + 1}}     arithmetic over numbers, variables and placeholders
    {{$name}}                   shared, static or captured variable
    {{@weapons.damage}}         placeholder exported by the last ``weapons`` entry
    {{@core.weapons.damage}}    same, for a qualified table
    {{3*loot >> $found}}        roll and capture the results (``|silent`` hides them)
    {{$found[0].value}}         one captured item, or a property of it
    {{$found.count}}            number of captured items
    {{collect:$found.rarity}}   a property of every captured item (``|unique`` dedupes)
    {{$mood.switch[$ == "angry":"snarls"][$ == calm:"nods"].else["waits"]}}
                                first branch whose condition holds
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum

from ..exceptions import ExpressionSyntaxError
from .arithmetic import parse_math
from .conditions import parse_when

EXPRESSION_PATTERN = re.compile(r"\{\{(.*?)\}\}", re.DOTALL)

_SEGMENT = r"[A-Za-z0-9_][\w-]*"
_NAME = r"[A-Za-z_][\w-]*"
REFERENCE_PATTERN = re.compile(rf"^{_SEGMENT}(?:\.{_SEGMENT})*$")
MULTI_ROLL_PATTERN = re.compile(r"^(\d+)\s*\*\s*(unique\s*\*\s*)?(.+)$")
NAME_PATTERN = re.compile(rf"^{_NAME}$")
CAPTURE_ACCESS_PATTERN = re.compile(rf"^\$({_NAME})(?:\[\s*(-?\d+)\s*\])?(?:\.@?({_NAME}))?$")
COLLECT_PATTERN = re.compile(rf"^\$({_NAME})(?:\.@?({_NAME}))?$")
VALUE_REFERENCE_PATTERN = re.compile(rf"^(?:\${_NAME}|@{_NAME}(?:\.{_NAME})*)$")


class TokenKind(str, Enum):
    """Kinds of pattern tokens."""
    LITERAL = "literal"
    TABLE = "table"
    MULTI_ROLL = "multi_roll"
    INSTANCE = "instance"
    AGAIN = "again"
    DICE = "dice"
    MATH = "math"
    VARIABLE = "variable"
    PLACEHOLDER = "placeholder"
    CAPTURE = "capture"
    CAPTURE_ACCESS = "capture_access"
    COLLECT = "collect"
    SWITCH = "switch"


@dataclass(frozen=True)
class SwitchCase:
    """One branch of a switch; ``when`` is None for the ``.else`` branch.

    ``result`` is literal text, or a ``$``/``@`` reference when
    ``is_reference`` is set.
    """
    when: str | None
    result: str
    is_reference: bool = False


@dataclass(frozen=True)
class ExpressionToken:
    """A literal run of text or one parsed ``{{...}}`` expression.

    Only the attributes relevant to ``kind`` are set.
    """
    kind: TokenKind
    raw: str
    reference: str | None = None
    count: int = 1
    unique: bool = False
    instance: str | None = None
    name: str | None = None
    prop: str | None = None
    index: int | None = None
    dice: str | None = None
    math: str | None = None
    silent: bool = False
    subject: str | None = None
    cases: tuple[SwitchCase, ...] = ()

    @property
    def is_literal(self) -> bool:
        return self.kind == TokenKind.LITERAL


def parse_expression(content: str) -> ExpressionToken:
    """Classify the text between ``{{`` and ``}}``.

    Args:
        content: Expression body without the braces

    Returns:
        Parsed token

    Raises:
        ExpressionSyntaxError: If the body matches no known form
    """
    raw = f"{{{{{content}}}}}"
    body = content.strip()
    if not body:
        raise ExpressionSyntaxError("Empty expression '{{}}'")

    if "switch[" in body:
        return _parse_switch(body, raw)

    if body.startswith("dice:"):
        notation = body[len("dice:"):].strip()
        if not notation:
            raise ExpressionSyntaxError(f"Missing dice notation in {raw}")
        return ExpressionToken(TokenKind.DICE, raw, dice=notation)

    if body.startswith("math:"):
        expression = body[len("math:"):].strip()
        parse_math(expression)
        return ExpressionToken(TokenKind.MATH, raw, math=expression)

    if body.startswith("collect:"):
        return _parse_collect(body[len("collect:"):].strip(), raw)

    if ">>" in body:
        return _parse_capture(body, raw)

    if body.startswith("$"):
        access = CAPTURE_ACCESS_PATTERN.match(body)
        if not access:
            raise ExpressionSyntaxError(f"Invalid variable name in {raw}")
        name, index, prop = access.groups()
        if index is None and prop is None:
            return ExpressionToken(TokenKind.VARIABLE, raw, name=name)
        return ExpressionToken(
            TokenKind.CAPTURE_ACCESS,
            raw,
            name=name,
            index=int(index) if index is not None else None,
            prop=prop,
        )

    if body.startswith("@"):
        segments = body[1:].split(".")
        if not all(NAME_PATTERN.match(segment) for segment in segments):
            raise ExpressionSyntaxError(f"Invalid placeholder in {raw}")
        if len(segments) == 1:
            return ExpressionToken(TokenKind.PLACEHOLDER, raw, name=segments[0])
        return ExpressionToken(
            TokenKind.PLACEHOLDER, raw, name=".".join(segments[:-1]), prop=segments[-1]
        )

    count, unique, body, multi = _split_multi_roll(body)

    if body == "again":
        return ExpressionToken(TokenKind.AGAIN, raw, count=count, unique=unique)

    reference, hash_sign, instance = body.partition("#")
    reference = _check_reference(reference, raw)

    if hash_sign:
        instance = instance.strip()
        if multi or not NAME_PATTERN.match(instance):
            raise ExpressionSyntaxError(f"Invalid instance expression {raw}")
        return ExpressionToken(TokenKind.INSTANCE, raw, reference=reference, instance=instance)

    if multi:
        return ExpressionToken(
            TokenKind.MULTI_ROLL, raw, reference=reference, count=count, unique=unique
        )
    return ExpressionToken(TokenKind.TABLE, raw, reference=reference)


def _split_multi_roll(body: str) -> tuple[int, bool, str, bool]:
    """Strip an ``N*`` or ``N*unique*`` prefix: (count, unique, rest, had_prefix)."""
    multi = MULTI_ROLL_PATTERN.match(body)
    if not multi:
        return 1, False, body, False
    return int(multi.group(1)), multi.group(2) is not None, multi.group(3).strip(), True


def _check_reference(reference: str, raw: str) -> str:
    reference = reference.strip()
    if not REFERENCE_PATTERN.match(reference):
        raise ExpressionSyntaxError(f"Invalid table reference in {raw}")
    return reference


def _parse_capture(body: str, raw: str) -> ExpressionToken:
    source, _, target = body.partition(">>")
    target = target.strip()
    silent = target.endswith("|silent")
    if silent:
        target = target[:-len("|silent")].strip()
    if not target.startswith("$") or not NAME_PATTERN.match(target[1:]):
        raise ExpressionSyntaxError(f"Invalid capture variable in {raw}")

    count, unique, reference, _ = _split_multi_roll(source.strip())
    return ExpressionToken(
        TokenKind.CAPTURE,
        raw,
        reference=_check_reference(reference, raw),
        count=count,
        unique=unique,
        name=target[1:],
        silent=silent,
    )


def _parse_collect(body: str, raw: str) -> ExpressionToken:
    unique = body.endswith("|unique")
    if unique:
        body = body[:-len("|unique")].strip()
    match = COLLECT_PATTERN.match(body)
    if not match:
        raise ExpressionSyntaxError(f"Invalid collect expression {raw}")
    name, prop = match.groups()
    return ExpressionToken(TokenKind.COLLECT, raw, name=name, prop=prop or "value", unique=unique)


def _find_unquoted(text: str, targets: str, start: int = 0) -> int:
    """Index of the first character in ``targets`` outside quotes, or -1."""
    quote = None
    for index in range(start, len(text)):
        char = text[index]
        if quote:
            if char == quote:
                quote = None
        elif char in "\"'":
            quote = char
        elif char in targets:
            return index
    return -1


def _parse_result(text: str, raw: str) -> tuple[str, bool]:
    text = text.strip()
    if len(text) >= 2 and text[0] == text[-1] and text[0] in "\"'":
        return text[1:-1], False
    if text[:1] in ("$", "@"):
        if not VALUE_REFERENCE_PATTERN.match(text):
            raise ExpressionSyntaxError(f"Invalid switch result '{text}' in {raw}")
        return text, True
    return text, False


def _parse_switch(body: str, raw: str) -> ExpressionToken:
    subject_text, _, rest = body.partition("switch[")
    subject = None
    if subject_text:
        subject = subject_text.strip()
        if not subject.endswith("."):
            raise ExpressionSyntaxError(f"Invalid switch subject in {raw}")
        subject = subject[:-1]
        if not VALUE_REFERENCE_PATTERN.match(subject):
            raise ExpressionSyntaxError(f"Switch subject must be a $variable or @placeholder in {raw}")

    text = "[" + rest
    cases: list[SwitchCase] = []
    position = 0
    while position < len(text):
        if text.startswith(".else[", position):
            end = _find_unquoted(text, "]", position + len(".else["))
            if end < 0 or not cases or end != len(text) - 1:
                raise ExpressionSyntaxError(f"Misplaced .else in {raw}")
            result, is_reference = _parse_result(text[position + len(".else["):end], raw)
            cases.append(SwitchCase(None, result, is_reference))
            break
        if text[position] != "[":
            raise ExpressionSyntaxError(f"Expected '[' in switch {raw}")
        end = _find_unquoted(text, "]", position + 1)
        if end < 0:
            raise ExpressionSyntaxError(f"Unclosed switch branch in {raw}")
        branch = text[position + 1:end]
        colon = _find_unquoted(branch, ":")
        if colon < 0:
            raise ExpressionSyntaxError(f"Switch branch needs 'condition:result' in {raw}")
        when = branch[:colon].strip()
        parse_when(when)
        result, is_reference = _parse_result(branch[colon + 1:], raw)
        cases.append(SwitchCase(when, result, is_reference))
        position = end + 1

    if not cases or cases[0].when is None:
        raise ExpressionSyntaxError(f"Switch without branches in {raw}")
    return ExpressionToken(TokenKind.SWITCH, raw, subject=subject, cases=tuple(cases))


def parse_pattern(text: str) -> list[ExpressionToken]:
    """Split ``text`` into literal and expression tokens, left to right.

    Raises:
        ExpressionSyntaxError: On a malformed expression or an unterminated ``{{``
    """
    tokens: list[ExpressionToken] = []
    position = 0
    for match in EXPRESSION_PATTERN.finditer(text):
        if match.start() > position:
            tokens.append(_literal(text[position:match.start()]))
        tokens.append(parse_expression(match.group(1)))
        position = match.end()
    if position < len(text):
        tokens.append(_literal(text[position:]))
    return tokens


def _literal(text: str) -> ExpressionToken:
    if "{{" in text:
        raise ExpressionSyntaxError(f"Unterminated expression in '{text}'")
    return ExpressionToken(TokenKind.LITERAL, text)


def has_expressions(text: str) -> bool:
    """Whether ``text`` contains at least one ``{{...}}`` expression."""
    return EXPRESSION_PATTERN.search(text) is not None


def extract_references(text: str) -> list[str]:
    """Table/template references used by ``text``, in order of appearance.

    Malformed expressions are skipped; use :func:`parse_pattern` to surface them.
    """
    references = []
    for match in EXPRESSION_PATTERN.finditer(text):
        try:
            token = parse_expression(match.group(1))
        except ExpressionSyntaxError:
            continue
        if token.reference:
            references.append(token.reference)
    return references


def strip_expressions(text: str, replacement: str = "[...]") -> str:
    """Replace every expression with ``replacement`` for compact display."""
    return EXPRESSION_PATTERN.sub(replacement, text).strip()
