from __future__ import annotations

import bisect
import logging
import math
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date
from typing import Dict, Iterable, List, Mapping, Optional, Protocol, Sequence, Tuple

import pandas as pd

from portfolio_lab.backtest.models import PriceObservation

logger = logging.getLogger(__name__)


class PriceSeriesProvider(Protocol):
    """Read-only access to historical closes (and dividends) per asset."""

    def get_price_history(self, asset_id: str, start_date: date, end_date: date) -> Sequence[PriceObservation]:
        ...


def _maybe_float(value: object) -> Optional[float]:
    try:
        out = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None
    if math.isnan(out) or math.isinf(out):
        return None
    return out


def clean_history(asset_id: str, observations: Iterable[PriceObservation]) -> List[PriceObservation]:
    """
    Sorts observations by date and collapses duplicate dates.

    For a repeated date the last close wins and dividends are summed.
    """
    by_date: Dict[date, PriceObservation] = {}
    for obs in observations:
        if obs.close is None or not obs.close > 0:
            continue
        dividend = max(0.0, float(obs.dividend or 0.0))
        existing = by_date.get(obs.date)
        if existing is not None:
            dividend += existing.dividend
        by_date[obs.date] = PriceObservation(asset_id=asset_id, date=obs.date, close=float(obs.close), dividend=dividend)
    return [by_date[d] for d in sorted(by_date)]


@dataclass
class InMemoryPriceProvider:
    histories: Mapping[str, Sequence[PriceObservation]]

    def get_price_history(self, asset_id: str, start_date: date, end_date: date) -> List[PriceObservation]:
        return [
            obs
            for obs in self.histories.get(asset_id, ())
            if start_date <= obs.date <= end_date
        ]


_COLUMN_CANDIDATES: Dict[str, Tuple[str, ...]] = {
    "date": ("date", "Date", "obs_date"),
    "asset_id": ("asset_id", "symbol", "Symbol", "ticker", "Ticker"),
    "close": ("close", "Close", "adj_close", "Adj Close", "adjusted_close", "adjustedClose"),
    "dividend": ("dividend", "dividends", "Dividends", "dividend_per_share", "dividendPerShare"),
}


def _find_column(df: pd.DataFrame, candidates: Iterable[str]) -> Optional[str]:
    cols = list(df.columns)
    lower_map = {str(c).lower(): str(c) for c in cols}
    for candidate in candidates:
        if candidate in cols:
            return candidate
        mapped = lower_map.get(str(candidate).lower())
        if mapped:
            return mapped
    return None


def normalize_price_frame(prices: pd.DataFrame) -> Tuple[pd.DataFrame, Dict[str, int]]:
    """
    Normalizes a long-format price frame to columns: date, asset_id, close, dividend.

    Returns the cleaned frame and, per asset, the number of rows dropped for a
    missing or non-positive close.
    """
    if prices is None or prices.empty:
        raise ValueError("prices DataFrame is required and cannot be empty.")

    rename_map = {}
    for target, candidates in _COLUMN_CANDIDATES.items():
        found = _find_column(prices, candidates)
        if found is not None:
            rename_map[found] = target
    df = prices.rename(columns=rename_map)

    missing = {"date", "asset_id", "close"}.difference(df.columns)
    if missing:
        raise ValueError(f"prices missing required columns: {sorted(missing)}")

    df = df.copy()
    if "dividend" not in df.columns:
        df["dividend"] = 0.0
    df["date"] = pd.to_datetime(df["date"], errors="coerce").dt.date
    df = df.dropna(subset=["date", "asset_id"])
    df["asset_id"] = df["asset_id"].astype(str).str.strip()
    df["close"] = pd.to_numeric(df["close"], errors="coerce")
    df["dividend"] = pd.to_numeric(df["dividend"], errors="coerce").fillna(0.0).clip(lower=0.0)

    invalid = df["close"].isna() | (df["close"] <= 0)
    invalid_rows = {str(k): int(v) for k, v in df.loc[invalid, "asset_id"].value_counts().items()}
    df = df.loc[~invalid, ["date", "asset_id", "close", "dividend"]]
    df = df.sort_values(["asset_id", "date"]).reset_index(drop=True)
    return df, invalid_rows


@dataclass
class FramePriceProvider:
    """Serves price histories out of a long-format pandas DataFrame."""

    prices: pd.DataFrame
    invalid_rows: Dict[str, int] = field(default_factory=dict, init=False)
    _by_asset: Dict[str, List[PriceObservation]] = field(default_factory=dict, init=False, repr=False)

    def __post_init__(self) -> None:
        frame, self.invalid_rows = normalize_price_frame(self.prices)
        for asset_id, group in frame.groupby("asset_id", sort=True):
            self._by_asset[str(asset_id)] = [
                PriceObservation(
                    asset_id=str(asset_id),
                    date=row.date,
                    close=float(row.close),
                    dividend=_maybe_float(row.dividend) or 0.0,
                )
                for row in group.itertuples(index=False)
            ]

    @property
    def asset_ids(self) -> List[str]:
        return sorted(self._by_asset)

    def get_price_history(self, asset_id: str, start_date: date, end_date: date) -> List[PriceObservation]:
        return [obs for obs in self._by_asset.get(asset_id, ()) if start_date <= obs.date <= end_date]


def prefetch_price_histories(
    provider: PriceSeriesProvider,
    asset_ids: Iterable[str],
    start_date: date,
    end_date: date,
    *,
    max_workers: int = 4,
) -> Dict[str, List[PriceObservation]]:
    """
    Fetches every asset's history before the simulation starts.

    Provider calls are read-only and run concurrently; provider errors propagate.
    """
    unique = list(dict.fromkeys(asset_ids))
    if not unique:
        return {}

    workers = max(1, min(int(max_workers), len(unique)))
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="price-prefetch") as executor:
        futures: Dict[str, Future[Sequence[PriceObservation]]] = {
            asset_id: executor.submit(provider.get_price_history, asset_id, start_date, end_date)
            for asset_id in unique
        }
        histories = {asset_id: clean_history(asset_id, futures[asset_id].result()) for asset_id in unique}

    logger.debug(
        "Prefetched price histories: assets=%d observations=%d",
        len(histories),
        sum(len(h) for h in histories.values()),
    )
    return histories


@dataclass(frozen=True)
class ResolvedPrice:
    price: float
    observed_on: date


class PriceBook:
    """
    In-memory, date-indexed view of prefetched histories.

    Lookups use carry-forward: the close on or before the requested date.
    """

    def __init__(self, histories: Mapping[str, Sequence[PriceObservation]]) -> None:
        self._dates: Dict[str, List[date]] = {}
        self._closes: Dict[str, List[float]] = {}
        self._dividends: Dict[str, List[Tuple[date, float]]] = {}
        for asset_id, history in histories.items():
            cleaned = clean_history(asset_id, history)
            self._dates[asset_id] = [obs.date for obs in cleaned]
            self._closes[asset_id] = [obs.close for obs in cleaned]
            self._dividends[asset_id] = [(obs.date, obs.dividend) for obs in cleaned if obs.dividend > 0]

    @property
    def asset_ids(self) -> List[str]:
        return sorted(self._dates)

    def has_history(self, asset_id: str) -> bool:
        return bool(self._dates.get(asset_id))

    def first_date(self, asset_id: str) -> Optional[date]:
        dates = self._dates.get(asset_id)
        return dates[0] if dates else None

    def price_on_or_before(self, asset_id: str, as_of: date) -> Optional[ResolvedPrice]:
        dates = self._dates.get(asset_id)
        if not dates:
            return None
        idx = bisect.bisect_right(dates, as_of) - 1
        if idx < 0:
            return None
        return ResolvedPrice(price=self._closes[asset_id][idx], observed_on=dates[idx])

    def dividends_between(self, asset_id: str, after: Optional[date], upto: date) -> float:
        """Sum of per-share dividends dated in (after, upto]."""
        total = 0.0
        for paid_on, amount in self._dividends.get(asset_id, ()):
            if paid_on > upto:
                break
            if after is not None and paid_on <= after:
                continue
            total += amount
        return total
