"""
Dice expressions for ``{{dice:...}}``.

Grammar: ``[N]dS[!][khK|klK][(+|-|*)M]``, e.g. ``d20``, ``3d6+2``,
``4d6kh3``, ``2d10!`` or ``1d4*10``.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from ..exceptions import DiceSyntaxError
from .weights import RandomSource

DICE_PATTERN = re.compile(
    r"^(?P<count>\d*)d(?P<sides>\d+)"
    r"(?P<explode>!)?"
    r"(?:k(?P<keep_mode>[hl])(?P<keep>\d+))?"
    r"(?:(?P<operator>[+\-*])(?P<modifier>\d+))?$"
)

MAX_DICE = 1000


@dataclass
class DiceResult:
    """Outcome of a dice expression."""
    expression: str
    rolls: list[int] = field(default_factory=list)
    kept: list[int] = field(default_factory=list)
    operator: str | None = None
    modifier: int = 0
    total: int = 0
    exploded: bool = False

    @property
    def breakdown(self) -> str:
        """Human-readable summary, e.g. ``[4, 2, 6] +2 = 14``."""
        modifier_text = f" {self.operator}{self.modifier}" if self.operator else ""
        return f"[{', '.join(map(str, self.kept))}]{modifier_text} = {self.total}"


def roll_dice(expression: str, rng: RandomSource, max_exploding: int = 100) -> DiceResult:
    """Roll a dice expression.

    Args:
        expression: Dice notation
        rng: Random source (``randint`` is used for each die)
        max_exploding: Maximum extra dice an exploding roll may add

    Returns:
        DiceResult with every die rolled, the dice kept and the total

    Raises:
        DiceSyntaxError: If the notation is invalid
    """
    notation = expression.replace(" ", "").lower()
    match = DICE_PATTERN.match(notation)
    if not match:
        raise DiceSyntaxError(f"Invalid dice notation: {expression}")

    count = int(match.group("count") or 1)
    sides = int(match.group("sides"))
    if count < 1 or count > MAX_DICE or sides < 1:
        raise DiceSyntaxError(f"Dice out of range: {expression}")

    explode = match.group("explode") is not None
    if explode and sides == 1:
        raise DiceSyntaxError(f"A d1 cannot explode: {expression}")

    rolls: list[int] = []
    extra = 0
    pending = count
    while pending:
        pending -= 1
        value = rng.randint(1, sides)
        rolls.append(value)
        if explode and value == sides and extra < max_exploding:
            extra += 1
            pending += 1

    kept = list(rolls)
    keep_mode = match.group("keep_mode")
    if keep_mode:
        keep = int(match.group("keep"))
        ordered = sorted(rolls, reverse=(keep_mode == "h"))
        kept = ordered[:keep]

    total = sum(kept)
    operator = match.group("operator")
    modifier = int(match.group("modifier") or 0)
    if operator == "+":
        total += modifier
    elif operator == "-":
        total -= modifier
    elif operator == "*":
        total *= modifier

    return DiceResult(
        expression=notation,
        rolls=rolls,
        kept=kept,
        operator=operator,
        modifier=modifier,
        total=total,
        exploded=extra > 0,
    )
