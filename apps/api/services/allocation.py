"""Pool allocation for generation costs.

Pure functions only: admission feeds in what it read from storage and gets
back the pools to draw from, so the consumption order is testable without a
database.
"""

from __future__ import annotations

from enum import Enum
from typing import List, Tuple


class CostClass(str, Enum):
    FULL = "full"
    HALF = "half"


class FundingPool(str, Enum):
    ANONYMOUS = "anonymous"
    FREE = "free"
    PAID = "paid"


HALF_UNITS_PER_GENERATION = 2

Allocation = List[Tuple[FundingPool, int]]


def half_units_for(cost_class: CostClass) -> int:
    return HALF_UNITS_PER_GENERATION if cost_class == CostClass.FULL else 1


def allocate(cost_class: CostClass, free_remaining: int, paid_half_units: int) -> Allocation:
    """
    Decide which pool pays for an authenticated request.

    Returns ``[(pool, amount)]`` where amount is free slots for ``FREE`` and
    half-units for ``PAID``; an empty list means the request is denied.
    Full-cost requests use a free slot first, then two paid half-units.
    Half-cost (partial regeneration) requests are paid-only.
    """
    cost_class = CostClass(cost_class)
    needed = half_units_for(cost_class)
    if cost_class == CostClass.FULL and free_remaining > 0:
        return [(FundingPool.FREE, 1)]
    if paid_half_units >= needed:
        return [(FundingPool.PAID, needed)]
    return []


def allocate_anonymous(cost_class: CostClass, used: int, limit: int) -> Allocation:
    """Anonymous requesters only have the free tier, and only for full-cost requests."""
    if CostClass(cost_class) != CostClass.FULL:
        return []
    if used >= limit:
        return []
    return [(FundingPool.ANONYMOUS, 1)]


def remaining_generations(free_remaining: int, paid_half_units: int) -> float:
    """Generations left across both pools; fractional when a half-unit is left over."""
    total = max(free_remaining, 0) + max(paid_half_units, 0) / HALF_UNITS_PER_GENERATION
    return int(total) if float(total).is_integer() else total
