from __future__ import annotations

from datetime import date

import pytest

from portfolio_lab.backtest.errors import InvalidFrequencyError, InvalidPeriodError
from portfolio_lab.backtest.periods import clamp_day, contribution_dates, months_between, resolve_checkpoints


def test_month_end_start_clamps_to_shorter_months() -> None:
    checkpoints = resolve_checkpoints(date(2024, 1, 31), date(2024, 4, 30), "monthly")
    assert [c.date for c in checkpoints] == [
        date(2024, 1, 31),
        date(2024, 2, 29),
        date(2024, 3, 31),
        date(2024, 4, 30),
    ]
    assert all(c.contribution and c.rebalance for c in checkpoints)


def test_non_leap_february_clamps_to_28th() -> None:
    assert clamp_day(2023, 2, 31) == date(2023, 2, 28)
    assert contribution_dates(date(2023, 1, 30), date(2023, 3, 1))[1] == date(2023, 2, 28)


def test_quarterly_flags_every_third_month_and_appends_valuation() -> None:
    checkpoints = resolve_checkpoints(date(2020, 1, 1), date(2020, 12, 31), "quarterly")

    assert len(checkpoints) == 13
    assert [c.index for c in checkpoints if c.rebalance] == [0, 3, 6, 9]
    assert all(c.contribution for c in checkpoints[:12])

    trailing = checkpoints[-1]
    assert trailing.date == date(2020, 12, 31)
    assert not trailing.contribution and not trailing.rebalance
    assert trailing.kinds == ("VALUATION",)


def test_annual_and_yearly_alias_agree() -> None:
    annual = resolve_checkpoints(date(2020, 1, 15), date(2022, 1, 15), "annual")
    yearly = resolve_checkpoints(date(2020, 1, 15), date(2022, 1, 15), "Yearly")

    assert annual == yearly
    assert len(annual) == 25
    assert [c.date for c in annual if c.rebalance] == [date(2020, 1, 15), date(2021, 1, 15), date(2022, 1, 15)]


def test_checkpoint_with_both_actions_is_single_entry() -> None:
    checkpoints = resolve_checkpoints(date(2021, 3, 10), date(2021, 9, 10), "quarterly")
    dates = [c.date for c in checkpoints]
    assert len(dates) == len(set(dates))
    assert checkpoints[0].kinds == ("CONTRIBUTION", "REBALANCE")
    assert checkpoints[1].kinds == ("CONTRIBUTION",)


@pytest.mark.parametrize(
    "start,end",
    [
        (date(2020, 6, 1), date(2020, 6, 1)),
        (date(2020, 6, 2), date(2020, 6, 1)),
    ],
)
def test_invalid_period_rejected(start: date, end: date) -> None:
    with pytest.raises(InvalidPeriodError):
        resolve_checkpoints(start, end, "monthly")


def test_unknown_frequency_rejected() -> None:
    with pytest.raises(InvalidFrequencyError):
        resolve_checkpoints(date(2020, 1, 1), date(2020, 6, 1), "weekly")


def test_months_between_counts_touched_months() -> None:
    assert months_between(date(2020, 1, 15), date(2020, 3, 1)) == 3
    assert months_between(date(2020, 12, 1), date(2021, 1, 31)) == 2
    assert months_between(date(2021, 1, 1), date(2020, 1, 1)) == 0
