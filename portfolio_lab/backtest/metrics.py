"""
Risk/return metrics computed from a snapshot series alone.

Period returns strip external contributions out of the value change, so a
deposit is never read as an investment gain:

    r[i] = (V[i] - V[i-1] - C[i]) / V[i-1]

where C[i] is the cash contributed at snapshot i. Periods that start from a
non-positive value have no defined return and are skipped.
"""

from __future__ import annotations

import math
from typing import List, Sequence

import numpy as np

from portfolio_lab.backtest.models import PerformanceMetrics, PortfolioSnapshot

# Population stdev below this is treated as a flat series.
_ZERO_VARIANCE = 1e-12


def period_returns(snapshots: Sequence[PortfolioSnapshot]) -> List[float]:
    returns: List[float] = []
    for prev, curr in zip(snapshots, snapshots[1:]):
        base = float(prev.total_value)
        if base <= 0:
            continue
        returns.append((float(curr.total_value) - base - float(curr.contribution)) / base)
    return returns


def annualized_volatility(returns: Sequence[float], *, periods_per_year: int = 12) -> float:
    if len(returns) < 2:
        return 0.0
    std = float(np.std(np.asarray(returns, dtype=float), ddof=0))
    if std <= _ZERO_VARIANCE:
        return 0.0
    return std * math.sqrt(periods_per_year)


def sharpe_ratio(returns: Sequence[float], *, periods_per_year: int = 12, risk_free_rate: float = 0.0) -> float:
    """Annualized Sharpe ratio; 0.0 for a flat or too-short series."""
    if len(returns) < 2:
        return 0.0
    arr = np.asarray(returns, dtype=float)
    std = float(np.std(arr, ddof=0))
    if std <= _ZERO_VARIANCE:
        return 0.0
    rf_per_period = (1.0 + float(risk_free_rate)) ** (1.0 / periods_per_year) - 1.0
    return (float(np.mean(arr)) - rf_per_period) / std * math.sqrt(periods_per_year)


def max_drawdown(values: Sequence[float]) -> float:
    """
    Largest peak-to-trough fall of the total-value series, as a fraction in [-1, 0].

    Single forward pass tracking the running peak; non-positive peaks are skipped.
    """
    peak = 0.0
    worst = 0.0
    for value in values:
        value = float(value)
        peak = max(peak, value)
        if peak > 0:
            worst = min(worst, (value - peak) / peak)
    return max(-1.0, worst)


def consistency(returns: Sequence[float]) -> float:
    if not returns:
        return 0.0
    return sum(1 for r in returns if r > 0) / len(returns)


def compute_metrics(
    snapshots: Sequence[PortfolioSnapshot],
    *,
    periods_per_year: int = 12,
    risk_free_rate: float = 0.0,
) -> PerformanceMetrics:
    if not snapshots:
        raise ValueError("compute_metrics requires at least one snapshot.")

    returns = period_returns(snapshots)
    final = snapshots[-1]
    total_invested = math.fsum(float(s.contribution) for s in snapshots)
    final_value = float(final.total_value)

    total_return = final_value / total_invested - 1.0 if total_invested > 0 else 0.0
    annualized_return = 0.0
    if returns and total_invested > 0 and final_value > 0:
        annualized_return = (final_value / total_invested) ** (periods_per_year / len(returns)) - 1.0

    return PerformanceMetrics(
        sharpe_ratio=sharpe_ratio(returns, periods_per_year=periods_per_year, risk_free_rate=risk_free_rate),
        max_drawdown=max_drawdown([s.total_value for s in snapshots]),
        volatility=annualized_volatility(returns, periods_per_year=periods_per_year),
        consistency=consistency(returns),
        total_invested=total_invested,
        final_value=final_value,
        total_return=total_return,
        annualized_return=annualized_return,
        positive_periods=sum(1 for r in returns if r > 0),
        negative_periods=sum(1 for r in returns if r < 0),
        total_dividends=float(final.cumulative_dividends),
        periods=len(returns),
    )
