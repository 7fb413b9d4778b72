"""
Weight model and cumulative-weight selection.
"""

from __future__ import annotations

from typing import Callable, Protocol, Sequence, TypeVar

from ..exceptions import EmptyPoolError

T = TypeVar("T")

DEFAULT_WEIGHT = 1.0


class RandomSource(Protocol):
    """Minimal random interface the engine draws from.

    ``random.Random`` satisfies it; tests may pass a scripted stub.
    """

    def random(self) -> float: ...

    def randint(self, a: int, b: int) -> int: ...


class Weighted(Protocol):
    weight: float | None


def effective_weight(item: Weighted) -> float:
    """Explicit weight when present and non-negative, otherwise 1."""
    weight = getattr(item, "weight", None)
    if weight is None or weight < 0:
        return DEFAULT_WEIGHT
    return float(weight)


def total_weight(items: Sequence[T], weight: Callable[[T], float] = effective_weight) -> float:
    """Sum of the weights of ``items``."""
    return sum(weight(item) for item in items)


def select_weighted(
    items: Sequence[T],
    rng: RandomSource,
    weight: Callable[[T], float] = effective_weight,
    pool_name: str = "<pool>",
) -> tuple[int, T]:
    """Pick one item by cumulative weight.

    Draws ``r`` uniformly in ``[0, total)`` and returns the first item, in
    declaration order, whose running weight exceeds ``r``. Zero-weight
    items can never satisfy the strict comparison and are skipped.

    Args:
        items: Candidates in declaration order
        rng: Random source
        weight: Weight function for a candidate
        pool_name: Table id used in the error message

    Returns:
        Tuple of (index into ``items``, chosen item)

    Raises:
        EmptyPoolError: If the total weight is zero
    """
    weights = [weight(item) for item in items]
    total = sum(weights)
    if total <= 0:
        reason = "no candidates" if not items else "total weight is zero"
        raise EmptyPoolError(pool_name, reason)

    r = rng.random() * total
    cumulative = 0.0
    last_positive = -1
    for index, w in enumerate(weights):
        if w <= 0:
            continue
        cumulative += w
        last_positive = index
        if cumulative > r:
            return index, items[index]

    # Floating point accumulation can leave r == cumulative on the last item
    return last_positive, items[last_positive]


def probability(item_weight: float, total: float) -> float:
    """Selection probability as a fraction in [0, 1]."""
    return item_weight / total if total > 0 else 0.0
