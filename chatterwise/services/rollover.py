"""
Token Rollover Policy
=====================

Pure functions for the rollover credit computed on each period transition.

POLICY:
    rollover = max(0, previous_plan_limit - tokens_used_last_period)

    Only the unused balance of the immediately preceding period carries
    forward. Earlier rollover credits are never added back in, so credit
    cannot accumulate across periods.

USAGE WINDOW:
    The previous snapshot's own period when the user had one, cut off at the
    current period start. When the subscription skipped periods (no event
    for the months in between) the window still ends at the snapshot's
    period end, so only one period of usage is counted. Without an earlier
    snapshot: one calendar month back from the current period start.
"""

from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Tuple

__all__ = [
    "RolloverDecision",
    "compute_rollover",
    "shift_months",
    "usage_window",
]


@dataclass(frozen=True)
class RolloverDecision:
    """Inputs and result of one rollover computation."""
    window_start: datetime
    window_end: datetime
    tokens_used: int
    previous_limit: int
    limit_source: str  # "previous_plan" | "current_plan"
    tokens_rolled_over: int


def compute_rollover(previous_limit: int, tokens_used: int) -> int:
    """Unused balance of the previous period, floored at zero."""
    if previous_limit < 0 or tokens_used < 0:
        raise ValueError("previous_limit and tokens_used must be non-negative")
    return max(0, previous_limit - tokens_used)


def shift_months(value: datetime, months: int) -> datetime:
    """Shift by whole calendar months, clamping the day to the target month.

    2025-03-31 shifted by -1 gives 2025-02-28.
    """
    month_index = value.year * 12 + (value.month - 1) + months
    year, month = divmod(month_index, 12)
    month += 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def usage_window(
    current_period_start: datetime,
    previous_period_start: Optional[datetime] = None,
    previous_period_end: Optional[datetime] = None,
) -> Tuple[datetime, datetime]:
    """(start, end) of the period whose unused tokens roll over."""
    if previous_period_start is not None and previous_period_start < current_period_start:
        end = current_period_start
        if previous_period_end is not None:
            end = min(previous_period_end, current_period_start)
        if end <= previous_period_start:
            end = current_period_start
        return previous_period_start, end
    return shift_months(current_period_start, -1), current_period_start
