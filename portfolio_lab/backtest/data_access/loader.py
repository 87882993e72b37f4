from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Optional, Sequence

import pandas as pd

from portfolio_lab.backtest.config import BacktestConfig, DataConfig
from portfolio_lab.backtest.errors import ConfigurationError
from portfolio_lab.backtest.prices import FramePriceProvider, _COLUMN_CANDIDATES, _find_column

logger = logging.getLogger(__name__)

_PLACEHOLDER_PATTERN = re.compile(r"{\s*(?:symbol|asset_id)\s*}")


def _validate_asset_for_path(asset_id: str) -> str:
    text = str(asset_id)
    if "/" in text or "\\" in text or ".." in text:
        raise ConfigurationError(f"Invalid asset_id for path templating: {asset_id!r}")
    return text


def _read_local_table(path: Path, price_format: str = "auto") -> pd.DataFrame:
    fmt = price_format
    if fmt == "auto":
        suffix = path.suffix.lower()
        if suffix == ".csv":
            fmt = "csv"
        elif suffix in {".parquet", ".pq"}:
            fmt = "parquet"
        else:
            raise ConfigurationError(f"Unsupported local file type for {path} (expected .csv or .parquet).")
    if fmt == "csv":
        return pd.read_csv(path)
    return pd.read_parquet(path)


def load_price_frame(data: DataConfig, asset_ids: Sequence[str]) -> pd.DataFrame:
    """
    Reads long-format prices from a local CSV or Parquet file.

    A `{symbol}` (or `{asset_id}`) placeholder in price_path reads one file per asset;
    files without an asset column get one filled in from the asset id.
    """
    if not data.price_path:
        raise ConfigurationError("data.price_path is required to load prices from disk.")

    path_text = str(data.price_path)
    if not _PLACEHOLDER_PATTERN.search(path_text):
        return _read_local_table(Path(path_text), data.price_format)

    frames = []
    for asset_id in asset_ids:
        resolved = Path(_PLACEHOLDER_PATTERN.sub(_validate_asset_for_path(asset_id), path_text))
        if not resolved.exists():
            logger.warning("Price file not found for %s: %s", asset_id, resolved)
            continue
        df = _read_local_table(resolved, data.price_format)
        if _find_column(df, _COLUMN_CANDIDATES["asset_id"]) is None:
            df = df.copy()
            df["asset_id"] = asset_id
        frames.append(df)
    return pd.concat(frames, ignore_index=True) if frames else pd.DataFrame()


def load_price_provider(config: BacktestConfig, *, data: Optional[DataConfig] = None) -> FramePriceProvider:
    resolved = data or config.data
    if resolved is None:
        raise ConfigurationError("No price source configured: set data.price_path or pass prices explicitly.")

    frame = load_price_frame(resolved, config.asset_ids)
    if frame.empty:
        raise ConfigurationError(f"No price rows loaded from {resolved.price_path}.")

    try:
        provider = FramePriceProvider(frame)
    except ValueError as exc:
        raise ConfigurationError(f"Invalid price data in {resolved.price_path}: {exc}") from exc

    logger.info(
        "Loaded prices: path=%s assets=%d rows=%d",
        resolved.price_path,
        len(provider.asset_ids),
        len(frame),
    )
    return provider
