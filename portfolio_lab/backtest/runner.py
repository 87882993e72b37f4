from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Optional

import pandas as pd

from portfolio_lab.backtest.attribution import compute_attribution
from portfolio_lab.backtest.config import BacktestConfig, generate_run_id
from portfolio_lab.backtest.data_quality import assess_data_availability
from portfolio_lab.backtest.engine import BacktestEngine
from portfolio_lab.backtest.metrics import compute_metrics
from portfolio_lab.backtest.models import BacktestResult
from portfolio_lab.backtest.periods import resolve_checkpoints
from portfolio_lab.backtest.prices import FramePriceProvider, PriceBook, PriceSeriesProvider, prefetch_price_histories
from portfolio_lab.backtest.settings import BacktestSettings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BacktestRunResult:
    run_id: str
    output_dir: Path
    result: BacktestResult


def _resolve_provider(
    config: BacktestConfig,
    provider: Optional[PriceSeriesProvider],
    prices: Optional[pd.DataFrame],
) -> PriceSeriesProvider:
    if provider is not None:
        return provider
    if prices is not None:
        return FramePriceProvider(prices)

    from portfolio_lab.backtest.data_access import load_price_provider

    return load_price_provider(config)


def run_backtest(
    config: BacktestConfig,
    *,
    provider: Optional[PriceSeriesProvider] = None,
    prices: Optional[pd.DataFrame] = None,
    settings: Optional[BacktestSettings] = None,
    run_id: Optional[str] = None,
) -> BacktestResult:
    """
    Runs one backtest end to end and returns the frozen result.

    Price histories are fetched once, up front, with a lookback of
    max_staleness_days so the first checkpoint can carry forward an earlier close.
    """
    config.validate()
    resolved_settings = settings or BacktestSettings()
    resolved_run_id = run_id or generate_run_id()
    staleness = (
        resolved_settings.max_staleness_days
        if resolved_settings.max_staleness_days is not None
        else config.max_staleness_days
    )

    checkpoints = resolve_checkpoints(config.start_date, config.end_date, config.rebalance_frequency)
    source = _resolve_provider(config, provider, prices)

    context = {
        "run_id": resolved_run_id,
        "run_name": config.run_name,
        "assets": config.asset_ids,
        "checkpoints": len(checkpoints),
        "rebalance_frequency": config.rebalance_frequency,
    }
    logger.info(
        "Backtest started: run_id=%s assets=%d checkpoints=%d",
        resolved_run_id,
        len(config.asset_ids),
        len(checkpoints),
        extra={"context": context},
    )
    started = time.perf_counter()

    fetch_start = checkpoints[0].date - timedelta(days=staleness)
    histories = prefetch_price_histories(
        source,
        config.asset_ids,
        fetch_start,
        checkpoints[-1].date,
        max_workers=resolved_settings.prefetch_workers,
    )

    invalid_rows = source.invalid_rows if isinstance(source, FramePriceProvider) else None
    data_quality = assess_data_availability(
        histories, config.start_date, config.end_date, invalid_rows=invalid_rows
    )

    engine = BacktestEngine(
        targets=config.allocation,
        checkpoints=checkpoints,
        contribution_amount=config.monthly_contribution,
        prices=PriceBook(histories),
        initial_capital=config.initial_capital,
        max_staleness_days=staleness,
    )
    output = engine.run()

    metrics = compute_metrics(
        output.snapshots,
        periods_per_year=resolved_settings.periods_per_year,
        risk_free_rate=config.risk_free_rate,
    )
    attribution = compute_attribution(output.snapshots, output.transactions)

    result = BacktestResult(
        snapshots=tuple(output.snapshots),
        metrics=metrics,
        attribution=attribution,
        transactions=tuple(output.transactions),
        warnings=tuple(output.warnings),
        data_quality=tuple(data_quality),
        coverage=output.coverage,
        config=config,
        run_id=resolved_run_id,
    )

    logger.info(
        "Backtest finished: run_id=%s final_value=%.2f total_invested=%.2f warnings=%d",
        resolved_run_id,
        metrics.final_value,
        metrics.total_invested,
        len(result.warnings),
        extra={
            "context": {
                **context,
                "final_value": metrics.final_value,
                "total_return": metrics.total_return,
                "sharpe_ratio": metrics.sharpe_ratio,
                "max_drawdown": metrics.max_drawdown,
                "missed_contributions": output.coverage.missed_contributions if output.coverage else 0,
                "warnings": len(result.warnings),
                "elapsed_ms": round((time.perf_counter() - started) * 1000.0, 1),
            }
        },
    )
    return result


def run_and_report(
    config: BacktestConfig,
    *,
    provider: Optional[PriceSeriesProvider] = None,
    prices: Optional[pd.DataFrame] = None,
    settings: Optional[BacktestSettings] = None,
    run_id: Optional[str] = None,
    output_base_dir: Optional[Path] = None,
) -> BacktestRunResult:
    from portfolio_lab.backtest.reporter import Reporter

    resolved_settings = settings or BacktestSettings()
    result = run_backtest(config, provider=provider, prices=prices, settings=resolved_settings, run_id=run_id)
    reporter = Reporter.create(
        config,
        run_id=str(result.run_id),
        output_dir=output_base_dir or resolved_settings.output_base_dir,
        write_run_index=resolved_settings.write_run_index,
    )
    reporter.write_artifacts(result)
    return BacktestRunResult(run_id=str(result.run_id), output_dir=reporter.output_dir, result=result)
