"""Portfolio backtesting: periodic contributions, rebalancing, metrics and attribution."""

from portfolio_lab.backtest.config import AllocationTarget, BacktestConfig
from portfolio_lab.backtest.engine import BacktestEngine, simulate
from portfolio_lab.backtest.errors import (
    AllocationSumError,
    BacktestError,
    ConfigurationError,
    InvalidContributionError,
    InvalidFrequencyError,
    InvalidPeriodError,
    NoPriceDataError,
)
from portfolio_lab.backtest.models import BacktestResult, PortfolioSnapshot, PriceObservation
from portfolio_lab.backtest.periods import resolve_checkpoints
from portfolio_lab.backtest.runner import BacktestRunResult, run_and_report, run_backtest

__all__ = [
    "AllocationSumError",
    "AllocationTarget",
    "BacktestConfig",
    "BacktestEngine",
    "BacktestError",
    "BacktestResult",
    "BacktestRunResult",
    "ConfigurationError",
    "InvalidContributionError",
    "InvalidFrequencyError",
    "InvalidPeriodError",
    "NoPriceDataError",
    "PortfolioSnapshot",
    "PriceObservation",
    "resolve_checkpoints",
    "run_and_report",
    "run_backtest",
    "simulate",
]
