from __future__ import annotations

from datetime import date
from typing import Dict, List, Mapping, Optional, Sequence

from portfolio_lab.backtest.models import DataAvailability, DataQuality, PriceObservation
from portfolio_lab.backtest.periods import months_between


def grade_completeness(completeness: float) -> DataQuality:
    if completeness >= 0.95:
        return "excellent"
    if completeness >= 0.85:
        return "good"
    if completeness >= 0.70:
        return "fair"
    return "poor"


def assess_asset(
    asset_id: str,
    history: Sequence[PriceObservation],
    start_date: date,
    end_date: date,
    *,
    invalid_rows: int = 0,
) -> DataAvailability:
    """Coverage of one asset's history over the requested range, by calendar month."""
    in_range = [obs for obs in history if start_date <= obs.date <= end_date]
    expected = months_between(start_date, end_date)
    warnings: List[str] = []

    if not in_range:
        warnings.append(f"No price history found for {asset_id} in the requested range.")
        return DataAvailability(
            asset_id=asset_id,
            available_from=None,
            available_to=None,
            observations=0,
            observed_months=0,
            expected_months=expected,
            missing_months=expected,
            invalid_rows=invalid_rows,
            quality="poor",
            warnings=warnings,
        )

    observed_months = len({(obs.date.year, obs.date.month) for obs in in_range})
    missing = max(0, expected - observed_months)
    available_from = in_range[0].date
    available_to = in_range[-1].date

    if missing:
        warnings.append(f"{missing} month(s) without price data.")
    if months_between(start_date, available_from) > 1:
        warnings.append(f"Data available only from {available_from.isoformat()}.")
    if months_between(available_to, end_date) > 1:
        warnings.append(f"Data available only until {available_to.isoformat()}.")
    if invalid_rows:
        warnings.append(f"{invalid_rows} row(s) with missing or non-positive prices were discarded.")

    return DataAvailability(
        asset_id=asset_id,
        available_from=available_from,
        available_to=available_to,
        observations=len(in_range),
        observed_months=observed_months,
        expected_months=expected,
        missing_months=missing,
        invalid_rows=invalid_rows,
        quality=grade_completeness(observed_months / expected if expected else 0.0),
        warnings=warnings,
    )


def assess_data_availability(
    histories: Mapping[str, Sequence[PriceObservation]],
    start_date: date,
    end_date: date,
    *,
    invalid_rows: Optional[Mapping[str, int]] = None,
) -> List[DataAvailability]:
    invalid: Dict[str, int] = dict(invalid_rows or {})
    return [
        assess_asset(asset_id, histories[asset_id], start_date, end_date, invalid_rows=invalid.get(asset_id, 0))
        for asset_id in sorted(histories)
    ]
