from __future__ import annotations

from datetime import date
from typing import Dict, Optional, Sequence


class BacktestError(ValueError):
    """Base class for failures surfaced to the caller of a backtest run."""


class ConfigurationError(BacktestError):
    """Invalid run parameters. Fatal and never retried."""


class InvalidPeriodError(ConfigurationError):
    def __init__(self, start_date: date, end_date: date) -> None:
        self.start_date = start_date
        self.end_date = end_date
        super().__init__(
            f"start_date must be before end_date (got {start_date.isoformat()} >= {end_date.isoformat()})."
        )


class AllocationSumError(ConfigurationError):
    def __init__(self, total: float, *, tolerance: float, weights: Optional[Dict[str, float]] = None) -> None:
        self.total = float(total)
        self.tolerance = float(tolerance)
        self.weights = dict(weights or {})
        super().__init__(
            f"Allocation weights must sum to 1.0 (+/- {tolerance:g}); got {total:.6f}."
        )


class InvalidContributionError(ConfigurationError):
    pass


class InvalidFrequencyError(ConfigurationError):
    def __init__(self, value: object, *, allowed: Sequence[str]) -> None:
        self.value = value
        self.allowed = tuple(allowed)
        super().__init__(f"rebalance_frequency must be one of {list(self.allowed)} (got {value!r}).")


class NoPriceDataError(BacktestError):
    def __init__(self, asset_ids: Sequence[str], start_date: date, end_date: date) -> None:
        self.asset_ids = tuple(asset_ids)
        self.start_date = start_date
        self.end_date = end_date
        super().__init__(
            "No price data available for any asset in the allocation "
            f"({', '.join(self.asset_ids)}) between {start_date.isoformat()} and {end_date.isoformat()}."
        )
