"""
Command-line entry point: one backtest from a YAML config to a run directory.

The run directory (<output>/<run_id>/) receives config.yaml, snapshots.csv,
snapshots.parquet, transactions.csv, attribution.csv, metrics.json,
warnings.json, data_quality.json and result.json; run_index.csv beside it
gains one row per run.
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Optional, Sequence

from portfolio_lab.backtest.config import BacktestConfig
from portfolio_lab.backtest.errors import BacktestError
from portfolio_lab.backtest.runner import run_and_report
from portfolio_lab.backtest.settings import BacktestSettings
from portfolio_lab.core.logging_config import configure_logging


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="portfolio-backtest",
        description=(
            "Simulate periodic contributions and rebalancing for one allocation, "
            "then write snapshots, metrics and attribution."
        ),
        epilog="Exit status is 0 on success and 2 on a configuration, price data or I/O error.",
    )
    parser.add_argument(
        "-c", "--config", required=True, help="Backtest YAML (dates, allocation, contribution, rebalance frequency, data)."
    )
    parser.add_argument(
        "--run-id", default=None, help="Run directory name (defaults to a generated RUN<timestamp>-<hex> id)."
    )
    parser.add_argument(
        "--output-dir",
        default=None,
        help="Parent directory for run directories and run_index.csv (defaults to BACKTEST_OUTPUT_DIR, then output.local_dir).",
    )
    parser.add_argument(
        "--no-strict",
        dest="strict",
        action="store_false",
        help="Accept unknown keys in the YAML config instead of rejecting them.",
    )
    parser.add_argument("--log-level", default=None, help="Log level for this run (overrides LOG_LEVEL).")
    parser.set_defaults(strict=True)
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _build_parser().parse_args(list(argv) if argv is not None else None)
    configure_logging(level=args.log_level)

    try:
        settings = BacktestSettings.from_env()
        cfg = BacktestConfig.from_yaml(args.config, strict=bool(args.strict))

        output_dir = Path(args.output_dir) if args.output_dir else None
        run = run_and_report(
            cfg,
            settings=settings,
            run_id=args.run_id,
            output_base_dir=output_dir,
        )

        print(f"run_id={run.run_id}")
        print(f"output_dir={run.output_dir}")
        metrics = run.result.metrics
        print(f"final_value={metrics.final_value:.2f}")
        print(f"total_invested={metrics.total_invested:.2f}")
        print(f"max_drawdown={metrics.max_drawdown:.6f}")
        print(f"warnings={len(run.result.warnings)}")
        return 0
    except (BacktestError, OSError, ValueError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
