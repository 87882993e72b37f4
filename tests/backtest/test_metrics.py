from __future__ import annotations

import math
from datetime import date
from decimal import Decimal

import pytest

from portfolio_lab.backtest.metrics import (
    annualized_volatility,
    compute_metrics,
    consistency,
    max_drawdown,
    period_returns,
    sharpe_ratio,
)
from portfolio_lab.backtest.models import PortfolioSnapshot
from portfolio_lab.backtest.money import Number


def _snap(month: int, value: Number, contribution: Number = 0.0, dividends: Number = 0.0) -> PortfolioSnapshot:
    return PortfolioSnapshot(
        date=date(2021, month, 1),
        total_value=value,
        cash_balance=0.0,
        per_asset_value={"A": value},
        contribution=contribution,
        cumulative_dividends=dividends,
    )


def test_period_returns_exclude_contributions() -> None:
    snapshots = [_snap(1, 1000.0, 1000.0), _snap(2, 2100.0, 1000.0), _snap(3, 3000.0, 1000.0)]
    returns = period_returns(snapshots)
    assert returns == pytest.approx([0.1, (3000.0 - 2100.0 - 1000.0) / 2100.0])


def test_pure_contributions_on_flat_prices_are_zero_return() -> None:
    snapshots = [_snap(m, 1000.0 * m, 1000.0) for m in range(1, 13)]
    metrics = compute_metrics(snapshots)

    assert period_returns(snapshots) == [0.0] * 11
    assert metrics.sharpe_ratio == 0.0
    assert metrics.volatility == 0.0
    assert metrics.max_drawdown == 0.0
    assert metrics.consistency == 0.0
    assert metrics.total_invested == pytest.approx(12_000.0)
    assert metrics.total_return == pytest.approx(0.0)


def test_non_positive_base_periods_are_skipped() -> None:
    snapshots = [_snap(1, 0.0), _snap(2, 500.0, 500.0), _snap(3, 550.0)]
    assert period_returns(snapshots) == pytest.approx([0.1])


def test_hand_computed_sharpe_and_volatility() -> None:
    returns = [0.02, -0.01, 0.03, 0.00]
    mean = sum(returns) / 4
    std = math.sqrt(sum((r - mean) ** 2 for r in returns) / 4)

    assert annualized_volatility(returns) == pytest.approx(std * math.sqrt(12))
    assert sharpe_ratio(returns) == pytest.approx(mean / std * math.sqrt(12))

    rf_monthly = 1.03 ** (1 / 12) - 1
    assert sharpe_ratio(returns, risk_free_rate=0.03) == pytest.approx((mean - rf_monthly) / std * math.sqrt(12))


def test_sharpe_is_zero_for_single_period() -> None:
    assert sharpe_ratio([0.05]) == 0.0
    assert annualized_volatility([0.05]) == 0.0


def test_max_drawdown_single_pass() -> None:
    # Peak 1320 before the fall to 1056.
    values = [1000.0, 1100.0, 990.0, 1320.0, 1056.0]
    assert max_drawdown(values) == pytest.approx(-0.2)
    assert max_drawdown([1000.0, 1100.0, 1210.0]) == 0.0
    assert max_drawdown([1000.0, 0.0, 500.0]) == pytest.approx(-1.0)
    assert max_drawdown([0.0, 0.0, 100.0, 50.0]) == pytest.approx(-0.5)
    assert max_drawdown([]) == 0.0


def test_drawdown_follows_total_value_series() -> None:
    # Price halves after the first month but deposits keep the value rising.
    snapshots = [
        _snap(1, 1000.0, 1000.0),
        _snap(2, 1500.0, 1000.0),
        _snap(3, 2500.0, 1000.0),
        _snap(4, 3500.0, 1000.0),
    ]
    metrics = compute_metrics(snapshots)
    assert period_returns(snapshots)[0] == pytest.approx(-0.5)
    assert metrics.max_drawdown == 0.0

    falling = [_snap(1, 1000.0, 1000.0), _snap(2, 1900.0, 1000.0), _snap(3, 1710.0)]
    assert compute_metrics(falling).max_drawdown == pytest.approx(-0.1)


def test_consistency_bounds() -> None:
    assert consistency([]) == 0.0
    assert consistency([0.1, -0.1, 0.0, 0.2]) == pytest.approx(0.5)
    assert consistency([0.1, 0.2]) == 1.0


def test_compute_metrics_summary_fields() -> None:
    snapshots = [_snap(1, 10_000.0, 10_000.0), _snap(2, 11_000.0), _snap(3, 9_900.0), _snap(4, 12_000.0, dividends=50.0)]
    metrics = compute_metrics(snapshots)

    assert metrics.periods == 3
    assert metrics.positive_periods == 2
    assert metrics.negative_periods == 1
    assert metrics.consistency == pytest.approx(2 / 3)
    assert metrics.final_value == pytest.approx(12_000.0)
    assert metrics.total_return == pytest.approx(0.2)
    assert metrics.annualized_return == pytest.approx(1.2 ** 4 - 1)
    assert metrics.total_dividends == pytest.approx(50.0)
    assert metrics.max_drawdown == pytest.approx(-0.1)


def test_compute_metrics_requires_snapshots() -> None:
    with pytest.raises(ValueError):
        compute_metrics([])


def test_single_snapshot_has_defined_metrics() -> None:
    metrics = compute_metrics([_snap(1, 1000.0, 1000.0)])
    assert metrics.periods == 0
    assert metrics.sharpe_ratio == 0.0
    assert metrics.max_drawdown == 0.0
    assert metrics.consistency == 0.0


def test_decimal_snapshots_give_the_same_metrics() -> None:
    values = [(1000, 1000), (2100, 1000), (1900, 0), (3050, 1000)]
    as_float = [_snap(i + 1, float(v), float(c)) for i, (v, c) in enumerate(values)]
    as_decimal = [_snap(i + 1, Decimal(v), Decimal(c)) for i, (v, c) in enumerate(values)]

    assert compute_metrics(as_decimal) == compute_metrics(as_float)
