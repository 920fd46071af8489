"""Integer ordering of sibling cards and columns.

Siblings carry plain integer orders. Gaps are left between them so that an
insertion usually touches a single row; only when two neighbours are adjacent
integers is the whole parent renumbered with ``ORDER_STEP`` spacing.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

ORDER_STEP = 1000

# virtual neighbour before index 0, keeps computed orders non-negative
_FLOOR = -1


class OrderGapExhausted(Exception):
    def __init__(self, index: int, left: int, right: int) -> None:
        super().__init__(f"no integer strictly between {left} and {right} at index {index}")
        self.index = index
        self.left = left
        self.right = right


@dataclass(frozen=True)
class Placement:
    order: int
    # new orders of the siblings, in their logical order, when a renumber was needed
    renumbered: tuple[int, ...] | None = None


def resolve_index(count: int, index: int) -> int:
    """Clamps an insertion index past the end of ``count`` siblings to an append."""
    if index < 0:
        raise ValueError(f"index must be non-negative, got {index}")
    return min(index, count)


def compute_insertion_order(sibling_orders: Sequence[int], target_index: int) -> int:
    """Return an order that places a new sibling at ``target_index``.

    ``sibling_orders`` are the orders of the siblings in display order, not
    including the entity being placed. Appending at the end returns the
    maximum plus ``ORDER_STEP``; inserting elsewhere returns the integer
    midpoint between the neighbours.

    Raises ``OrderGapExhausted`` when the neighbours leave no room.
    """
    count = len(sibling_orders)
    if not 0 <= target_index <= count:
        raise ValueError(f"target_index {target_index} outside [0, {count}]")

    if count == 0:
        return ORDER_STEP
    if target_index == count:
        return max(sibling_orders) + ORDER_STEP

    left = sibling_orders[target_index - 1] if target_index > 0 else _FLOOR
    right = sibling_orders[target_index]
    if right - left < 2:
        raise OrderGapExhausted(target_index, left, right)
    return left + (right - left) // 2


def renumber(count: int) -> tuple[int, ...]:
    return tuple((i + 1) * ORDER_STEP for i in range(count))


def _is_strictly_increasing(orders: Sequence[int]) -> bool:
    return all(a < b for a, b in zip(orders, orders[1:]))


def plan_insertion(sibling_orders: Sequence[int], target_index: int) -> Placement:
    """Like ``compute_insertion_order`` but falls back to renumbering the siblings.

    Siblings that already share an order (or are out of order) are renumbered
    as well, so the parent ends up consistent after any placement.
    """
    if _is_strictly_increasing(sibling_orders):
        try:
            return Placement(compute_insertion_order(sibling_orders, target_index))
        except OrderGapExhausted:
            pass

    fresh = renumber(len(sibling_orders))
    return Placement(compute_insertion_order(fresh, target_index), renumbered=fresh)
