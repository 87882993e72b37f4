"""Checkpoint calendar: when a run contributes, rebalances and values the portfolio."""

from __future__ import annotations

import calendar
from datetime import date
from typing import List

from portfolio_lab.backtest.config import MONTHS_PER_REBALANCE, normalize_frequency
from portfolio_lab.backtest.errors import InvalidPeriodError
from portfolio_lab.backtest.models import Checkpoint


def _add_months(year: int, month: int, offset: int) -> tuple[int, int]:
    total = (year * 12 + (month - 1)) + offset
    return total // 12, total % 12 + 1


def clamp_day(year: int, month: int, day: int) -> date:
    """Day-of-month in (year, month), falling back to the month's last day."""
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(day, last_day))


def months_between(start_date: date, end_date: date) -> int:
    """Inclusive count of calendar months touched by [start_date, end_date]."""
    if start_date > end_date:
        return 0
    return (end_date.year - start_date.year) * 12 + (end_date.month - start_date.month) + 1


def contribution_dates(start_date: date, end_date: date) -> List[date]:
    dates: List[date] = []
    offset = 0
    while True:
        year, month = _add_months(start_date.year, start_date.month, offset)
        current = clamp_day(year, month, start_date.day)
        if current > end_date:
            break
        dates.append(current)
        offset += 1
    return dates


def resolve_checkpoints(start_date: date, end_date: date, rebalance_frequency: str) -> List[Checkpoint]:
    """
    Builds the ordered checkpoint sequence for one run.

    Every month from start_date's month contributes on start_date's day (clamped to the
    month end). Rebalance flags land every 1/3/12 months counted from the first checkpoint;
    a date carrying both actions is a single checkpoint. A trailing valuation-only
    checkpoint is appended when end_date falls after the last contribution date.
    """
    if start_date >= end_date:
        raise InvalidPeriodError(start_date, end_date)

    frequency = normalize_frequency(rebalance_frequency)
    step = MONTHS_PER_REBALANCE[frequency]

    checkpoints: List[Checkpoint] = [
        Checkpoint(date=d, index=i, contribution=True, rebalance=(i % step == 0))
        for i, d in enumerate(contribution_dates(start_date, end_date))
    ]

    if checkpoints[-1].date < end_date:
        checkpoints.append(Checkpoint(date=end_date, index=len(checkpoints)))

    return checkpoints
