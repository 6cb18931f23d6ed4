"""Budget allocation helpers.

Pure hour arithmetic that decides how much of a tracked block is absorbed by a
task's pre-paid ceiling and how much is billable overage. Nothing here touches
the database or converts cents; callers hand in hours as decimals.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from decimal import Decimal

ZERO = Decimal("0")


@dataclass(frozen=True)
class Allocation:
    within_budget_hours: Decimal
    overage_hours: Decimal


def allocate(ceiling_hours: Decimal, hours_already_consumed: Decimal, new_hours: Decimal) -> Allocation:
    """Split `new_hours` into the part the ceiling still covers and the overage.

    Rules:
    - hours already consumed count against the ceiling only up to the ceiling
    - the new block fills whatever ceiling remains, the rest is overage
    - a zero ceiling makes the whole block overage

    `within_budget_hours + overage_hours == new_hours` always holds.
    """
    consumed_within_ceiling = max(ZERO, min(hours_already_consumed, ceiling_hours))
    remaining_ceiling = max(ZERO, ceiling_hours - consumed_within_ceiling)
    within_budget_hours = min(new_hours, remaining_ceiling)
    overage_hours = max(ZERO, new_hours - within_budget_hours)
    return Allocation(within_budget_hours=within_budget_hours, overage_hours=overage_hours)


def replay(ceiling_hours: Decimal, hours_sequence: Iterable[Decimal]) -> list[Allocation]:
    """Allocate a chronological run of blocks against one ceiling."""
    allocations: list[Allocation] = []
    consumed = ZERO
    for hours in hours_sequence:
        allocations.append(allocate(ceiling_hours, consumed, hours))
        consumed += hours
    return allocations
